"""
Station Agent entrypoint.

CLI:
  station-agent run          -> run agent (periodic statistics + storage publishing)
  station-agent check        -> data source and broker connectivity checks, then exit
  station-agent send-sample  -> publish one sample statistics/storage pair, then exit
"""

from __future__ import annotations

import argparse
import logging
import signal
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import partial
from importlib.metadata import PackageNotFoundError, version as pkg_version
from typing import Any, Optional

from station_agent.core.health import HealthSnapshot, VolumeStatus
from station_agent.core.log_config import configure_logging
from station_agent.core.statistics import StatisticsSnapshot

configure_logging()
logger = logging.getLogger(__name__)

_GIB = 1024 ** 3


def get_version_string() -> str:
    try:
        return pkg_version("station-agent")
    except PackageNotFoundError:
        return "0.0.0+dev"


@dataclass
class Runtime:
    shutdown: threading.Event
    config: Any
    identity: Any = None
    topics: Any = None
    engine: Any = None
    source: Any = None
    connection: Any = None
    scheduler: Any = None


def build_runtime(cfg: Any, shutdown: Optional[threading.Event] = None) -> Runtime:
    """Wire collaborators from config. Raises TopicError for an invalid identity."""
    # Lazy imports keep --version and argument errors independent of the runtime stack.
    from station_agent.core.health import PsutilHealthProbe, collect_health
    from station_agent.core.statistics import Aggregator
    from sqlalchemy.exc import ArgumentError

    from station_agent.datasource import (
        SqlDataSource,
        UnavailableDataSource,
        create_engine_from_settings,
    )
    from station_agent.mqtt_client import ConnectionManager
    from station_agent.scheduler import Scheduler
    from station_agent.topics import DeviceIdentity, TopicSet

    rt = Runtime(shutdown=shutdown or threading.Event(), config=cfg)
    rt.identity = DeviceIdentity.from_settings(cfg.device)
    rt.topics = TopicSet.build(rt.identity, cfg.topics)

    try:
        rt.engine = create_engine_from_settings(cfg.database)
        rt.source = SqlDataSource(
            rt.engine,
            table=cfg.database.table,
            no_read_sentinel=cfg.database.no_read_sentinel,
        )
    except (ArgumentError, ImportError, ValueError) as exc:
        # NoSuchModuleError is an ArgumentError; a missing DBAPI driver is an ImportError
        logger.error("Cannot set up data source, statistics will be skipped: %s", exc)
        if rt.engine is not None:
            rt.engine.dispose()
            rt.engine = None
        rt.source = UnavailableDataSource(str(exc))
    aggregator = Aggregator(rt.source, policy=cfg.database.policy)
    health = partial(
        collect_health,
        PsutilHealthProbe(),
        enabled=cfg.monitoring.enabled,
        warning_threshold=cfg.monitoring.disk_warning_threshold,
    )

    rt.connection = ConnectionManager(
        cfg.broker,
        rt.identity,
        rt.topics,
        status_policy=cfg.publishing.status,
        last_will=cfg.last_will,
        shutdown=rt.shutdown,
    )
    rt.scheduler = Scheduler(
        aggregator,
        health,
        rt.connection,
        rt.identity,
        rt.topics,
        cfg.publishing,
        combined=cfg.topics.combined,
    )
    return rt


def _install_signal_handlers(rt: Runtime) -> None:
    def _handler(signum: int, frame) -> None:  # frame is unused, keep signature
        logger.info("Received signal %s; requesting shutdown", signum)
        rt.shutdown.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def run_startup_checks(rt: Runtime) -> bool:
    """Data source and broker connectivity. Logs failures; never raises."""
    from station_agent.mqtt_client import ConnectError

    db_ok = rt.source.test_connection()
    if not db_ok:
        logger.error("Startup check: data source unreachable")

    broker_ok = True
    try:
        rt.connection.ensure_connected()
    except ConnectError as exc:
        broker_ok = False
        logger.error("Startup check: MQTT broker unreachable: %s", exc)

    return db_ok and broker_ok


def _log_banner(rt: Runtime) -> None:
    cfg = rt.config
    logger.info("============================================================")
    logger.info("Station Agent")
    logger.info("Version: %s", get_version_string())
    logger.info("Device serial number: %s", rt.identity.serial_number)
    logger.info("Broker: %s", cfg.broker.uri)
    logger.info("Status topic: %s", rt.topics.status)
    if cfg.topics.combined:
        logger.info("Data topic: %s", rt.topics.data)
    else:
        logger.info("Statistics topic: %s", rt.topics.statistics)
        logger.info("Storage topic: %s", rt.topics.storage)
    logger.info("Publish interval: %d minutes", cfg.publishing.interval_min)
    logger.info("============================================================")


def _prepare(cfg: Any, shutdown: Optional[threading.Event] = None) -> Optional[Runtime]:
    from station_agent.topics import TopicError

    try:
        rt = build_runtime(cfg, shutdown)
    except TopicError as exc:
        logger.error("Invalid device identity or topic settings: %s", exc)
        return None
    _log_banner(rt)
    return rt


def run_agent() -> int:
    """
    Runtime mode: startup checks, then publish on the configured interval until
    SIGINT/SIGTERM. Returns process exit code.
    """
    from station_agent.config import load_config

    cfg = load_config()
    rt = _prepare(cfg)
    if rt is None:
        return 2
    _install_signal_handlers(rt)

    if not run_startup_checks(rt):
        logger.warning("Startup checks failed; continuing into the publish loop")

    try:
        rt.scheduler.run(rt.shutdown)
    finally:
        _shutdown(rt)

    return 0


def run_check() -> int:
    from station_agent.config import load_config

    rt = _prepare(load_config())
    if rt is None:
        return 2
    try:
        ok = run_startup_checks(rt)
    finally:
        _shutdown(rt)
    logger.info("Startup checks %s", "passed" if ok else "failed")
    return 0 if ok else 1


def sample_snapshots(
    window: timedelta, now: Optional[datetime] = None
) -> tuple[StatisticsSnapshot, HealthSnapshot]:
    """Fixed sample data used to verify the broker path end to end."""
    end = now or datetime.now()
    stats = StatisticsSnapshot(
        total_items=264,
        no_weight=4,
        no_dimensions=1,
        good_reads=249,
        no_reads=15,
        success=249,
        out_of_spec=1,
        more_than_one_item=10,
        sent=264,
        not_sent=0,
        window_start=end - window,
        window_end=end,
    )

    def _vol(volume_id: str, free_gb: float, used_gb: float, used_pct: float) -> VolumeStatus:
        free = int(free_gb * _GIB)
        used = int(used_gb * _GIB)
        return VolumeStatus(
            volume_id=volume_id,
            is_ready=True,
            total_bytes=free + used,
            used_bytes=used,
            free_bytes=free,
            used_percent=used_pct,
            filesystem="NTFS",
            label="Unlabeled",
        )

    health = HealthSnapshot(
        volumes=(
            _vol("C:\\", 156.8, 297.4, 65.5),
            _vol("E:\\", 14.7, 0.14, 0.97),
        ),
    )
    return stats, health


def send_sample() -> int:
    from station_agent.config import load_config
    from station_agent.mqtt_client import PublishError

    rt = _prepare(load_config())
    if rt is None:
        return 2

    stats, health = sample_snapshots(rt.scheduler.window)
    policy = rt.config.publishing.data
    try:
        for topic, payload in rt.scheduler.build_messages(stats, health):
            logger.info("Sample payload for %s: %s", topic, payload)
            rt.connection.publish(topic, payload, qos=policy.qos, retain=policy.retain)
            logger.info("Sample message published to %s", topic)
    except PublishError as exc:
        logger.error("Sample publish failed: %s", exc)
        return 1
    finally:
        _shutdown(rt)
    return 0


def _shutdown(rt: Runtime) -> None:
    logger.info("Shutting down...")
    rt.shutdown.set()

    if rt.connection:
        try:
            rt.connection.close()
        except Exception:
            logger.exception("Error disconnecting MQTT")

    if rt.engine is not None:
        rt.engine.dispose()
        logger.info("Database engine disposed")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="station-agent")
    p.add_argument("--version", action="version", version=get_version_string())

    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("run", help="Run agent runtime")
    sub.add_parser("check", help="Check data source and broker connectivity, then exit")
    sub.add_parser("send-sample", help="Publish one sample statistics/storage message pair")

    return p


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)

    if args.cmd == "run":
        raise SystemExit(run_agent())

    if args.cmd == "check":
        raise SystemExit(run_check())

    if args.cmd == "send-sample":
        raise SystemExit(send_sample())

    raise SystemExit(2)


if __name__ == "__main__":
    main()
