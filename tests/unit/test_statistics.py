from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from station_agent.config import AggregationPolicy
from station_agent.core.statistics import Aggregator, StatisticsSnapshot, shape_snapshot
from station_agent.datasource import DataSourceError

NOW = datetime(2024, 5, 1, 12, 0, 0)


def _row(**overrides):
    row = {
        "total_items": 264,
        "no_weight": 4,
        "no_dimensions": 1,
        "valid_items": 249,
        "complete_items": 250,
        "out_of_spec_flags": 1,
        "more_than_one_item": 10,
        "no_reads": 15,
        "good_reads": 249,
        "sent": 264,
        "not_sent": 0,
    }
    row.update(overrides)
    return row


class FakeSource:
    def __init__(self, row=None, exc=None):
        self.row = row if row is not None else _row()
        self.exc = exc
        self.calls = []

    def run_aggregation_query(self, window_start, window_end):
        self.calls.append((window_start, window_end))
        if self.exc is not None:
            raise self.exc
        return self.row

    def test_connection(self):
        return True


def test_aggregate_queries_trailing_window():
    src = FakeSource()
    agg = Aggregator(src, clock=lambda: NOW)

    snap = agg.aggregate(timedelta(minutes=15))

    assert src.calls == [(NOW - timedelta(minutes=15), NOW)]
    assert snap.window_start == datetime(2024, 5, 1, 11, 45)
    assert snap.window_end == NOW
    assert snap.duration == timedelta(minutes=15)


def test_flag_policy_counts():
    snap = Aggregator(FakeSource(), clock=lambda: NOW).aggregate(timedelta(minutes=15))

    assert snap.total_items == 264
    assert snap.no_weight == 4
    assert snap.no_dimensions == 1
    assert snap.good_reads == 249
    assert snap.no_reads == 15
    assert snap.success == 249
    assert snap.out_of_spec == 1
    assert snap.more_than_one_item == 10
    assert snap.sent == 264
    assert snap.not_sent == 0
    assert snap.is_balanced


def test_complete_policy_derives_out_of_spec():
    agg = Aggregator(FakeSource(), policy=AggregationPolicy.COMPLETE, clock=lambda: NOW)
    snap = agg.aggregate(timedelta(minutes=15))

    assert snap.success == 250
    assert snap.out_of_spec == 14


def test_complete_policy_never_negative():
    snap = shape_snapshot(
        _row(total_items=3, complete_items=5, sent=3),
        NOW - timedelta(minutes=1),
        NOW,
        AggregationPolicy.COMPLETE,
    )
    assert snap.out_of_spec == 0


def test_empty_window_is_all_zero():
    row = {key: None for key in _row()}
    row["total_items"] = 0
    snap = Aggregator(FakeSource(row), clock=lambda: NOW).aggregate(timedelta(minutes=15))

    assert snap.total_items == 0
    assert snap.sent == 0
    assert snap.not_sent == 0
    assert snap.is_balanced


def test_decimal_counters_accepted():
    snap = shape_snapshot(_row(no_weight=Decimal("4")), NOW - timedelta(minutes=1), NOW)
    assert snap.no_weight == 4
    assert isinstance(snap.no_weight, int)


def test_unbalanced_row_is_reported_not_corrected(caplog):
    src = FakeSource(_row(sent=200, not_sent=10))

    with caplog.at_level(logging.WARNING, logger="station_agent.core.statistics"):
        snap = Aggregator(src, clock=lambda: NOW).aggregate(timedelta(minutes=15))

    assert snap.sent == 200
    assert snap.not_sent == 10
    assert not snap.is_balanced
    assert "Unbalanced statistics" in caplog.text


@pytest.mark.parametrize("bad", [-1, "lots", 2.5])
def test_malformed_counter_raises(bad):
    agg = Aggregator(FakeSource(_row(no_reads=bad)), clock=lambda: NOW)
    with pytest.raises(DataSourceError):
        agg.aggregate(timedelta(minutes=15))


def test_non_mapping_row_raises():
    agg = Aggregator(FakeSource(row=[1, 2, 3]), clock=lambda: NOW)
    with pytest.raises(DataSourceError, match="counter row"):
        agg.aggregate(timedelta(minutes=15))


def test_source_error_propagates_unchanged():
    err = DataSourceError("db down")
    agg = Aggregator(FakeSource(exc=err), clock=lambda: NOW)

    with pytest.raises(DataSourceError) as exc:
        agg.aggregate(timedelta(minutes=15))
    assert exc.value is err


def test_unexpected_source_error_is_wrapped():
    agg = Aggregator(FakeSource(exc=TimeoutError("slow")), clock=lambda: NOW)

    with pytest.raises(DataSourceError, match="slow") as exc:
        agg.aggregate(timedelta(minutes=15))
    assert isinstance(exc.value.__cause__, TimeoutError)


@pytest.mark.parametrize("window", [timedelta(0), timedelta(minutes=-5)])
def test_non_positive_window_rejected(window):
    src = FakeSource()
    with pytest.raises(ValueError):
        Aggregator(src, clock=lambda: NOW).aggregate(window)
    assert src.calls == []


def test_snapshot_rejects_inverted_window():
    with pytest.raises(ValueError):
        StatisticsSnapshot(
            total_items=0,
            no_weight=0,
            no_dimensions=0,
            good_reads=0,
            no_reads=0,
            success=0,
            out_of_spec=0,
            more_than_one_item=0,
            sent=0,
            not_sent=0,
            window_start=NOW,
            window_end=NOW,
        )
