"""
Statistics aggregation for one publish window.

The data source runs the counting query; this module owns the shaping rules
that turn its raw counter row into an immutable StatisticsSnapshot.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping, Optional

from station_agent.config import AggregationPolicy
from station_agent.datasource import DataSource, DataSourceError

logger = logging.getLogger(__name__)

# Raw counters expected from DataSource.run_aggregation_query
RAW_COUNTERS = (
    "total_items",
    "no_weight",
    "no_dimensions",
    "valid_items",
    "complete_items",
    "out_of_spec_flags",
    "more_than_one_item",
    "no_reads",
    "good_reads",
    "sent",
    "not_sent",
)


@dataclass(frozen=True, slots=True)
class StatisticsSnapshot:
    total_items: int
    no_weight: int
    no_dimensions: int
    good_reads: int
    no_reads: int
    success: int
    out_of_spec: int
    more_than_one_item: int
    sent: int
    not_sent: int
    window_start: datetime
    window_end: datetime

    def __post_init__(self) -> None:
        if self.window_end <= self.window_start:
            raise ValueError("window_end must be after window_start")

    @property
    def duration(self) -> timedelta:
        return self.window_end - self.window_start

    @property
    def is_balanced(self) -> bool:
        """True when every item in the window is accounted for as sent or not sent."""
        return self.sent + self.not_sent == self.total_items


def _counter(row: Mapping[str, Any], key: str) -> int:
    value = row.get(key)
    if value is None:
        return 0
    if isinstance(value, bool):
        return int(value)
    try:
        n = int(value)
    except (TypeError, ValueError) as exc:
        raise DataSourceError(f"Malformed counter {key}={value!r}") from exc
    if n != value:
        raise DataSourceError(f"Malformed counter {key}={value!r}")
    if n < 0:
        raise DataSourceError(f"Negative counter {key}={value!r}")
    return n


def shape_snapshot(
    row: Mapping[str, Any],
    window_start: datetime,
    window_end: datetime,
    policy: AggregationPolicy = AggregationPolicy.FLAG,
) -> StatisticsSnapshot:
    """Build a snapshot from one raw counter row. Raises DataSourceError on a malformed row."""
    if not isinstance(row, Mapping):
        raise DataSourceError(f"Expected a counter row, got {type(row).__name__}")

    c = {key: _counter(row, key) for key in RAW_COUNTERS}

    if policy is AggregationPolicy.COMPLETE:
        success = c["complete_items"]
        out_of_spec = max(0, c["total_items"] - c["complete_items"])
    else:
        success = c["valid_items"]
        out_of_spec = c["out_of_spec_flags"]

    return StatisticsSnapshot(
        total_items=c["total_items"],
        no_weight=c["no_weight"],
        no_dimensions=c["no_dimensions"],
        good_reads=c["good_reads"],
        no_reads=c["no_reads"],
        success=success,
        out_of_spec=out_of_spec,
        more_than_one_item=c["more_than_one_item"],
        sent=c["sent"],
        not_sent=c["not_sent"],
        window_start=window_start,
        window_end=window_end,
    )


class Aggregator:
    """
    Produces one StatisticsSnapshot per call over [now - window, now).

    The window is computed at call time and is not aligned to wall-clock
    boundaries. Either a full snapshot is returned or DataSourceError is raised.
    """

    def __init__(
        self,
        source: DataSource,
        *,
        policy: AggregationPolicy = AggregationPolicy.FLAG,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.source = source
        self.policy = policy
        self._clock = clock or datetime.now

    def aggregate(self, window: timedelta) -> StatisticsSnapshot:
        if window <= timedelta(0):
            raise ValueError("window must be positive")

        window_end = self._clock()
        window_start = window_end - window

        try:
            row = self.source.run_aggregation_query(window_start, window_end)
        except DataSourceError:
            raise
        except Exception as exc:
            raise DataSourceError(f"Aggregation query failed: {exc}") from exc

        snapshot = shape_snapshot(row, window_start, window_end, self.policy)

        if not snapshot.is_balanced:
            logger.warning(
                "Unbalanced statistics for %s - %s: sent=%d + not_sent=%d != total_items=%d",
                window_start,
                window_end,
                snapshot.sent,
                snapshot.not_sent,
                snapshot.total_items,
            )

        logger.info(
            "Retrieved %.0f-minute statistics: total=%d no_weight=%d good_reads=%d no_reads=%d success=%d",
            snapshot.duration.total_seconds() / 60,
            snapshot.total_items,
            snapshot.no_weight,
            snapshot.good_reads,
            snapshot.no_reads,
            snapshot.success,
        )
        return snapshot
