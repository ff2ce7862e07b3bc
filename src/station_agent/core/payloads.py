"""
Payload builders for Station Agent.

Pure functions that map snapshots to (topic, json) messages. Field names on the
wire are fixed and independent of the snapshot attribute names. The only
non-deterministic input is the clock, which callers can inject.
"""

from __future__ import annotations

import json
import time
from enum import Enum
from typing import Any, Callable, Optional

from station_agent.core.health import HealthSnapshot, volume_key
from station_agent.core.statistics import StatisticsSnapshot
from station_agent.topics import DeviceIdentity, TopicSet

Clock = Callable[[], int]

# wire name -> snapshot attribute
STATISTICS_FIELDS: tuple[tuple[str, str], ...] = (
    ("total_items", "total_items"),
    ("no_weight", "no_weight"),
    ("good_reads", "good_reads"),
    ("no_reads", "no_reads"),
    ("no_dimensions", "no_dimensions"),
    ("success", "success"),
    ("out_of_spec", "out_of_spec"),
    ("more_than_one_item", "more_than_one_item"),
    ("not_sent", "not_sent"),
    ("sent", "sent"),
)


class PresenceStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


def now_ms() -> int:
    """Current UTC time as milliseconds since epoch."""
    return time.time_ns() // 1_000_000


def _dumps(payload: dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"))


def status_payload(identity: DeviceIdentity, status: PresenceStatus, ts: int) -> dict[str, Any]:
    return {
        "device_id": identity.serial_number,
        "ts": ts,
        "device_status": PresenceStatus(status).value,
        "device_os_version": identity.os_version,
    }


def statistics_object(stats: StatisticsSnapshot) -> dict[str, int]:
    return {wire: int(getattr(stats, attr)) for wire, attr in STATISTICS_FIELDS}


def storage_object(health: HealthSnapshot) -> dict[str, dict[str, float]]:
    """Ready volumes only, keyed by the volume id with separators stripped."""
    storage: dict[str, dict[str, float]] = {}
    for vol in health.ready_volumes:
        storage[volume_key(vol.volume_id)] = {
            "free_gb": vol.free_gb,
            "used_gb": vol.used_gb,
            "total_gb": vol.total_gb,
            "used_pct": round(vol.used_percent, 2),
        }
    return storage


def build_status_message(
    identity: DeviceIdentity,
    topics: TopicSet,
    status: PresenceStatus,
    *,
    clock: Optional[Clock] = None,
) -> tuple[str, str]:
    ts = (clock or now_ms)()
    return topics.status, _dumps(status_payload(identity, status, ts))


def build_last_will(
    identity: DeviceIdentity,
    topics: TopicSet,
    *,
    clock: Optional[Clock] = None,
) -> tuple[str, str]:
    """Offline status registered with the broker at connect time; ts is the session start."""
    return build_status_message(identity, topics, PresenceStatus.OFFLINE, clock=clock)


def build_statistics_message(
    identity: DeviceIdentity,
    topics: TopicSet,
    stats: StatisticsSnapshot,
    *,
    clock: Optional[Clock] = None,
) -> tuple[str, str]:
    payload = {
        "device_id": identity.serial_number,
        "ts": (clock or now_ms)(),
        "statistics": statistics_object(stats),
    }
    return topics.statistics, _dumps(payload)


def build_storage_message(
    identity: DeviceIdentity,
    topics: TopicSet,
    health: HealthSnapshot,
    *,
    clock: Optional[Clock] = None,
) -> tuple[str, str]:
    payload = {
        "device_id": identity.serial_number,
        "ts": (clock or now_ms)(),
        "storage": storage_object(health),
    }
    return topics.storage, _dumps(payload)


def build_data_message(
    identity: DeviceIdentity,
    topics: TopicSet,
    stats: StatisticsSnapshot,
    health: HealthSnapshot,
    *,
    clock: Optional[Clock] = None,
) -> tuple[str, str]:
    """Combined statistics + storage on the data topic."""
    payload = {
        "device_id": identity.serial_number,
        "ts": (clock or now_ms)(),
        "statistics": statistics_object(stats),
        "storage": storage_object(health),
    }
    return topics.data, _dumps(payload)
