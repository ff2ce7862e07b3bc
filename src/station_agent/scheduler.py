"""
Publish scheduler: wait, acquire, build, publish, repeat.

Single-threaded. Waits go through the shutdown event so a signal interrupts
them promptly. A failing tick is logged and skipped; the next one runs after
the shorter recovery delay instead of the full interval.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from station_agent.config import DeliveryGuarantee, PublishSettings
from station_agent.core.health import HealthSnapshot
from station_agent.core.payloads import (
    Clock,
    build_data_message,
    build_statistics_message,
    build_storage_message,
)
from station_agent.core.statistics import StatisticsSnapshot
from station_agent.topics import DeviceIdentity, TopicSet

logger = logging.getLogger(__name__)


class StatisticsProvider(Protocol):
    def aggregate(self, window: timedelta) -> StatisticsSnapshot: ...


class Publisher(Protocol):
    def publish(
        self, topic: str, payload: str, *, qos: DeliveryGuarantee, retain: bool
    ) -> None: ...


class Scheduler:
    def __init__(
        self,
        aggregator: StatisticsProvider,
        health: Callable[[], HealthSnapshot],
        connection: Publisher,
        identity: DeviceIdentity,
        topics: TopicSet,
        settings: PublishSettings,
        *,
        combined: bool = False,
        clock: Optional[Clock] = None,
    ) -> None:
        self.aggregator = aggregator
        self.health = health
        self.connection = connection
        self.identity = identity
        self.topics = topics
        self.settings = settings
        self.combined = combined
        self._clock = clock

    @property
    def window(self) -> timedelta:
        return timedelta(minutes=self.settings.interval_min)

    def build_messages(
        self, stats: StatisticsSnapshot, health: HealthSnapshot
    ) -> list[tuple[str, str]]:
        """Messages for one tick; statistics always precede storage."""
        if self.combined:
            return [build_data_message(self.identity, self.topics, stats, health, clock=self._clock)]
        return [
            build_statistics_message(self.identity, self.topics, stats, clock=self._clock),
            build_storage_message(self.identity, self.topics, health, clock=self._clock),
        ]

    def tick(self, shutdown: Optional[threading.Event] = None) -> None:
        """One acquisition + publication cycle. Raises on any failure."""
        stats = self.aggregator.aggregate(self.window)
        health = self.health()

        if shutdown is not None and shutdown.is_set():
            logger.info("Shutdown requested; skipping publish for this cycle")
            return

        policy = self.settings.data
        for topic, payload in self.build_messages(stats, health):
            self.connection.publish(topic, payload, qos=policy.qos, retain=policy.retain)
            logger.info("Published data to topic %s", topic)

        logger.info(
            "Successfully sent %d-minute statistics and storage data to MQTT broker",
            self.settings.interval_min,
        )

    def _run_tick(self, shutdown: threading.Event) -> bool:
        logger.info(
            "Executing at %s - querying last %d minutes of data and system health",
            datetime.now().isoformat(timespec="seconds"),
            self.settings.interval_min,
        )
        try:
            self.tick(shutdown)
        except Exception as exc:
            if shutdown.is_set():
                logger.info("Tick abandoned for shutdown: %s", exc)
                return True
            logger.exception("Error in scheduler tick; cycle skipped")
            return False
        return True

    def run(self, shutdown: threading.Event) -> None:
        """Block until shutdown is set."""
        logger.info(
            "Scheduler started - will send statistics every %d minutes",
            self.settings.interval_min,
        )
        if shutdown.wait(timeout=self.settings.initial_delay_s):
            logger.info("Scheduler stopped before first run")
            return

        while not shutdown.is_set():
            ok = self._run_tick(shutdown)
            if shutdown.is_set():
                break
            if ok:
                delay = self.settings.interval_s
                next_at = datetime.now() + timedelta(seconds=delay)
                logger.info(
                    "Next statistics update in %d minutes at %s",
                    self.settings.interval_min,
                    next_at.strftime("%Y-%m-%d %H:%M:%S"),
                )
            else:
                delay = self.settings.recovery_delay_s
                logger.info("Retrying in %.0f seconds", delay)

            if shutdown.wait(timeout=delay):
                break

        logger.info("Scheduler stopped")
