"""
MQTT topic schema for Station Agent.

All topics under <base>/<client>/<location>/<station>/.
Retained: status (online/offline presence, also the last-will topic).
Stream: statistics, storage, or the combined data topic.
"""

from __future__ import annotations

import platform
import re
from dataclasses import dataclass

from station_agent.config import DeviceSettings, TopicSettings

# MQTT wildcards and the level separator cannot appear inside a single level
_INVALID_SEGMENT_RE = re.compile(r"[/+#\x00]")


class TopicError(ValueError):
    """Raised when an invalid identifier is used to construct topics."""


def _validate_segment(name: str, value: str) -> str:
    if not isinstance(value, str) or not value:
        raise TopicError(f"{name} must be a non-empty string")
    if _INVALID_SEGMENT_RE.search(value):
        raise TopicError(f"{name} '{value}' is invalid; '/', '+', '#' are not allowed")
    return value


def os_descriptor() -> str:
    return platform.platform() or "unknown"


@dataclass(frozen=True, slots=True)
class DeviceIdentity:
    """Static identity of this station; fixed for the lifetime of the process."""

    client_name: str
    location: str
    station: str
    serial_number: str
    os_version: str = "unknown"

    def __post_init__(self) -> None:
        _validate_segment("client_name", self.client_name)
        _validate_segment("location", self.location)
        _validate_segment("station", self.station)
        if not self.serial_number:
            raise TopicError("serial_number must be a non-empty string")

    @classmethod
    def from_settings(cls, device: DeviceSettings) -> "DeviceIdentity":
        return cls(
            client_name=device.client_name,
            location=device.location,
            station=device.station,
            serial_number=device.serial_number,
            os_version=os_descriptor(),
        )


@dataclass(frozen=True, slots=True)
class TopicSet:
    """
    Topics for a single station, computed once at startup.
    Root: <base>/<client>/<location>/<station>
    """

    base: str
    status: str
    statistics: str
    storage: str
    data: str

    @classmethod
    def build(cls, identity: DeviceIdentity, settings: TopicSettings | None = None) -> "TopicSet":
        s = settings or TopicSettings()
        base = s.base.strip("/")
        if not base or "+" in base or "#" in base:
            raise TopicError(f"topic base '{s.base}' is invalid")
        for name, suffix in (
            ("status_suffix", s.status_suffix),
            ("statistics_suffix", s.statistics_suffix),
            ("storage_suffix", s.storage_suffix),
            ("data_suffix", s.data_suffix),
        ):
            _validate_segment(name, suffix)

        root = f"{base}/{identity.client_name}/{identity.location}/{identity.station}"
        return cls(
            base=root,
            status=f"{root}/{s.status_suffix}",
            statistics=f"{root}/{s.statistics_suffix}",
            storage=f"{root}/{s.storage_suffix}",
            data=f"{root}/{s.data_suffix}",
        )
