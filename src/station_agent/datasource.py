"""
Item log data source.

One counting query per window; all queries for the agent live here.
No shaping or business rules beyond the per-item counting predicates.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any, Mapping, Protocol

from sqlalchemy import DateTime, bindparam, create_engine, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError

from station_agent.config import DatabaseSettings

logger = logging.getLogger(__name__)

_TABLE_RE = re.compile(r"^[A-Za-z0-9_]+(\.[A-Za-z0-9_]+)?$")


class DataSourceError(RuntimeError):
    """Raised when the aggregation query fails or returns a malformed result."""


class DataSource(Protocol):
    def run_aggregation_query(
        self, window_start: datetime, window_end: datetime
    ) -> Mapping[str, Any]: ...

    def test_connection(self) -> bool: ...


def _stats_sql(table: str) -> str:
    # COALESCE keeps every counter non-NULL when the window is empty
    return f"""
        SELECT
            COUNT(*) AS total_items,
            COALESCE(SUM(CASE WHEN Weight = 0 OR Weight IS NULL THEN 1 ELSE 0 END), 0) AS no_weight,
            COALESCE(SUM(CASE WHEN Length = 0 OR Width = 0 OR Height = 0
                                OR Length IS NULL OR Width IS NULL OR Height IS NULL
                         THEN 1 ELSE 0 END), 0) AS no_dimensions,
            COALESCE(SUM(CASE WHEN Valid = 1 THEN 1 ELSE 0 END), 0) AS valid_items,
            COALESCE(SUM(CASE WHEN Complete = 1 THEN 1 ELSE 0 END), 0) AS complete_items,
            COALESCE(SUM(CASE WHEN ItemSpec = '1' THEN 1 ELSE 0 END), 0) AS out_of_spec_flags,
            COALESCE(SUM(CASE WHEN ItemCount > 1 THEN 1 ELSE 0 END), 0) AS more_than_one_item,
            COALESCE(SUM(CASE WHEN Barcode = :no_read THEN 1 ELSE 0 END), 0) AS no_reads,
            COALESCE(SUM(CASE WHEN Barcode <> :no_read AND Barcode IS NOT NULL
                         THEN 1 ELSE 0 END), 0) AS good_reads,
            COALESCE(SUM(CASE WHEN Sent = 1 THEN 1 ELSE 0 END), 0) AS sent,
            COALESCE(SUM(CASE WHEN Sent = 0 OR Sent IS NULL THEN 1 ELSE 0 END), 0) AS not_sent
        FROM {table}
        WHERE ItemDateTime >= :start_time
          AND ItemDateTime < :end_time
    """


def create_engine_from_settings(settings: DatabaseSettings) -> Engine:
    url = make_url(settings.url)
    logger.info("[DB] Creating engine %s", url.render_as_string(hide_password=True))
    return create_engine(url, pool_pre_ping=True)


class SqlDataSource:
    """Counts item log rows through SQLAlchemy. Works on SQL Server and SQLite."""

    def __init__(self, engine: Engine, *, table: str = "dbo.ItemLog", no_read_sentinel: str = "NOREAD") -> None:
        if not _TABLE_RE.fullmatch(table):
            raise ValueError(f"Invalid table name: {table!r}")
        self.engine = engine
        self.table = table
        self.no_read_sentinel = no_read_sentinel
        self._stmt = text(_stats_sql(table)).bindparams(
            bindparam("start_time", type_=DateTime()),
            bindparam("end_time", type_=DateTime()),
        )

    def run_aggregation_query(self, window_start: datetime, window_end: datetime) -> dict[str, Any]:
        params = {
            "start_time": window_start,
            "end_time": window_end,
            "no_read": self.no_read_sentinel,
        }
        try:
            with self.engine.connect() as conn:
                row = conn.execute(self._stmt, params).mappings().one()
        except SQLAlchemyError as exc:
            logger.error("Error retrieving statistics from %s: %s", self.table, exc)
            raise DataSourceError(f"Statistics query on {self.table} failed") from exc
        return dict(row)

    def test_connection(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            logger.info("[DB] Connection test OK")
            return True
        except SQLAlchemyError:
            logger.exception("[DB] Connection test failed")
            return False


class UnavailableDataSource:
    """Stands in when the engine cannot be built; every query fails, presence keeps working."""

    def __init__(self, reason: str) -> None:
        self.reason = reason

    def run_aggregation_query(self, window_start: datetime, window_end: datetime) -> dict[str, Any]:
        raise DataSourceError(f"Data source unavailable: {self.reason}")

    def test_connection(self) -> bool:
        logger.error("[DB] Data source unavailable: %s", self.reason)
        return False
