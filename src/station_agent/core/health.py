"""
Host health snapshot: volume usage and process memory.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import NamedTuple, Protocol

import psutil

logger = logging.getLogger(__name__)

_GIB = 1024.0 ** 3


class RawVolume(NamedTuple):
    volume_id: str
    ready: bool
    total_bytes: int
    free_bytes: int
    filesystem: str
    label: str


class HealthProbe(Protocol):
    def enumerate_volumes(self) -> list[RawVolume]: ...

    def current_process_memory(self) -> int: ...


@dataclass(frozen=True, slots=True)
class VolumeStatus:
    volume_id: str
    is_ready: bool
    total_bytes: int = 0
    used_bytes: int = 0
    free_bytes: int = 0
    used_percent: float = 0.0
    filesystem: str = ""
    label: str = ""

    @property
    def total_gb(self) -> float:
        return round(self.total_bytes / _GIB, 2)

    @property
    def used_gb(self) -> float:
        return round(self.used_bytes / _GIB, 2)

    @property
    def free_gb(self) -> float:
        return round(self.free_bytes / _GIB, 2)


@dataclass(frozen=True, slots=True)
class HealthSnapshot:
    volumes: tuple[VolumeStatus, ...] = ()
    process_memory_bytes: int = 0

    @property
    def ready_volumes(self) -> tuple[VolumeStatus, ...]:
        return tuple(v for v in self.volumes if v.is_ready)

    @property
    def process_memory_mb(self) -> float:
        return round(self.process_memory_bytes / (1024.0 * 1024.0), 2)


def volume_key(volume_id: str) -> str:
    """'C:\\' -> 'C', '/var/log' -> 'varlog', '/' -> 'root'."""
    key = volume_id.replace(":", "").replace("\\", "").replace("/", "")
    return key or "root"


def _volume_status(raw: RawVolume) -> VolumeStatus:
    if not raw.ready:
        return VolumeStatus(volume_id=raw.volume_id, is_ready=False)

    total = max(0, int(raw.total_bytes))
    free = min(max(0, int(raw.free_bytes)), total)
    used = total - free
    pct = round(used / total * 100, 2) if total > 0 else 0.0
    return VolumeStatus(
        volume_id=raw.volume_id,
        is_ready=True,
        total_bytes=total,
        used_bytes=used,
        free_bytes=free,
        used_percent=min(100.0, max(0.0, pct)),
        filesystem=raw.filesystem,
        label=raw.label or "Unlabeled",
    )


def collect_health(
    probe: HealthProbe,
    *,
    enabled: bool = True,
    warning_threshold: float = 80.0,
) -> HealthSnapshot:
    """Build a HealthSnapshot from the probe. Returns an empty snapshot when monitoring is disabled."""
    if not enabled:
        logger.debug("System monitoring is disabled")
        return HealthSnapshot()

    volumes: list[VolumeStatus] = []
    for raw in probe.enumerate_volumes():
        status = _volume_status(raw)
        if not status.is_ready:
            logger.debug("Volume %s is not ready", raw.volume_id)
        elif status.used_percent >= warning_threshold:
            logger.warning(
                "Volume %s is %.1f%% full (%.1f GB / %.1f GB)",
                status.volume_id,
                status.used_percent,
                status.used_gb,
                status.total_gb,
            )
        volumes.append(status)

    snapshot = HealthSnapshot(
        volumes=tuple(volumes), process_memory_bytes=probe.current_process_memory()
    )
    logger.info(
        "Retrieved statistics for %d volumes; agent memory %.2f MB",
        len(volumes),
        snapshot.process_memory_mb,
    )
    return snapshot


class PsutilHealthProbe:
    """Host probe backed by psutil."""

    def enumerate_volumes(self) -> list[RawVolume]:
        volumes: list[RawVolume] = []
        for part in psutil.disk_partitions(all=False):
            try:
                usage = psutil.disk_usage(part.mountpoint)
            except OSError as exc:
                # removable/unmounted media: still listed, flagged not ready
                logger.debug("Cannot read usage for %s: %s", part.mountpoint, exc)
                volumes.append(RawVolume(part.mountpoint, False, 0, 0, part.fstype, ""))
                continue
            volumes.append(
                RawVolume(
                    volume_id=part.mountpoint,
                    ready=True,
                    total_bytes=usage.total,
                    free_bytes=usage.free,
                    filesystem=part.fstype,
                    label=part.device,
                )
            )
        return volumes

    def current_process_memory(self) -> int:
        return int(psutil.Process().memory_info().rss)
