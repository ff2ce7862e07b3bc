"""
Station Agent configuration.

Single source for runtime configuration. Values come from environment variables,
optionally loaded from standard env files.

Priority (lowest -> highest):
1) /etc/station-agent/agent.env (system install)
2) ~/.config/station-agent/.env (user install)
3) ./.env (project override)
4) process environment variables (always win)

A malformed value never stops the agent: the parser raises ConfigParseError,
the loader logs a warning and falls back to the documented default.
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from enum import Enum, IntEnum
from importlib.metadata import PackageNotFoundError, version as _pkg_version
from pathlib import Path
from typing import Callable, Iterable, Optional, TypeVar
from urllib.parse import quote_plus

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ConfigParseError(ValueError):
    """Raised when a configuration value cannot be parsed."""


class DeliveryGuarantee(IntEnum):
    AT_MOST_ONCE = 0
    AT_LEAST_ONCE = 1
    EXACTLY_ONCE = 2


class AggregationPolicy(str, Enum):
    """
    How success/out_of_spec are derived from the raw counters.

    FLAG: success counts valid items, out_of_spec counts items flagged by the station.
    COMPLETE: success counts complete items, out_of_spec is total minus complete.
    """

    FLAG = "flag"
    COMPLETE = "complete"


_QOS_NAMES = {
    "atmostonce": DeliveryGuarantee.AT_MOST_ONCE,
    "atleastonce": DeliveryGuarantee.AT_LEAST_ONCE,
    "exactlyonce": DeliveryGuarantee.EXACTLY_ONCE,
    "0": DeliveryGuarantee.AT_MOST_ONCE,
    "1": DeliveryGuarantee.AT_LEAST_ONCE,
    "2": DeliveryGuarantee.EXACTLY_ONCE,
}

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _package_version() -> str:
    try:
        return _pkg_version("station-agent")
    except PackageNotFoundError:
        return "0.0.0+dev"


def _env_paths() -> Iterable[Path]:
    # 1) system install
    yield Path("/etc/station-agent/agent.env")

    # 2) user config dir
    if sys.platform == "win32":
        base = Path(os.environ.get("APPDATA", str(Path.home())))
    else:
        base = Path(os.environ.get("XDG_CONFIG_HOME", str(Path.home() / ".config")))
    yield base / "station-agent" / ".env"

    # 3) project override
    yield Path(".env")


# -------------------------
# Parsers (raise ConfigParseError)
# -------------------------
def parse_int(key: str, raw: str) -> int:
    try:
        return int(raw.strip())
    except ValueError as exc:
        raise ConfigParseError(f"Invalid integer for {key}: {raw!r}") from exc


def parse_float(key: str, raw: str) -> float:
    try:
        return float(raw.strip())
    except ValueError as exc:
        raise ConfigParseError(f"Invalid number for {key}: {raw!r}") from exc


def parse_bool(key: str, raw: str) -> bool:
    v = raw.strip().lower()
    if v in _TRUE:
        return True
    if v in _FALSE:
        return False
    raise ConfigParseError(f"Invalid boolean for {key}: {raw!r}")


def parse_qos(key: str, raw: str) -> DeliveryGuarantee:
    v = raw.strip().lower().replace("_", "").replace("-", "")
    try:
        return _QOS_NAMES[v]
    except KeyError:
        raise ConfigParseError(f"Invalid delivery guarantee for {key}: {raw!r}") from None


def parse_policy(key: str, raw: str) -> AggregationPolicy:
    try:
        return AggregationPolicy(raw.strip().lower())
    except ValueError as exc:
        raise ConfigParseError(f"Invalid aggregation policy for {key}: {raw!r}") from exc


def _setting(
    key: str,
    default: T,
    parser: Callable[[str, str], T],
    check: Optional[Callable[[T], bool]] = None,
) -> T:
    """Read one env value; fall back to default (with a warning) when it is malformed."""
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = parser(key, raw)
        if check is not None and not check(value):
            raise ConfigParseError(f"Out of range value for {key}: {raw!r}")
    except ConfigParseError as exc:
        logger.warning("%s; using default %r", exc, default)
        return default
    return value


def _text(key: str, default: str) -> str:
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip()


# -------------------------
# Settings
# -------------------------
@dataclass(frozen=True, slots=True)
class BrokerSettings:
    host: str = "localhost"
    port: int = 1883
    path: str = "/mqtt"
    use_websockets: bool = False
    use_tls: bool = False
    username: Optional[str] = None
    password: Optional[str] = None
    client_id_prefix: str = "station-agent"
    clean_session: bool = True
    keepalive_s: int = 60
    connect_timeout_s: float = 30.0
    publish_timeout_s: float = 10.0
    reconnect_delay_s: float = 5.0
    max_reconnect_attempts: int = 10

    @property
    def uri(self) -> str:
        if self.use_websockets:
            scheme = "wss" if self.use_tls else "ws"
            return f"{scheme}://{self.host}:{self.port}{self.path}"
        return f"{self.host}:{self.port}"


@dataclass(frozen=True, slots=True)
class TopicSettings:
    base: str = "systems-one"
    status_suffix: str = "status"
    statistics_suffix: str = "statistics"
    storage_suffix: str = "storage"
    data_suffix: str = "data"
    combined: bool = False


@dataclass(frozen=True, slots=True)
class PublishPolicy:
    qos: DeliveryGuarantee = DeliveryGuarantee.AT_LEAST_ONCE
    retain: bool = False


@dataclass(frozen=True, slots=True)
class PublishSettings:
    status: PublishPolicy = PublishPolicy(retain=True)
    data: PublishPolicy = PublishPolicy()
    interval_min: int = 15
    initial_delay_s: float = 5.0
    error_delay_s: float = 300.0

    @property
    def interval_s(self) -> float:
        return self.interval_min * 60.0

    @property
    def recovery_delay_s(self) -> float:
        # recovery never waits longer than a normal cycle
        return min(self.error_delay_s, self.interval_s)


@dataclass(frozen=True, slots=True)
class LastWillSettings:
    enabled: bool = True
    qos: DeliveryGuarantee = DeliveryGuarantee.AT_LEAST_ONCE
    retain: bool = True


@dataclass(frozen=True, slots=True)
class DeviceSettings:
    client_name: str = "PEPKOR"
    location: str = "JBH"
    station: str = "DIM"
    serial_number: str = "DIM-001"


@dataclass(frozen=True, slots=True)
class DatabaseSettings:
    url: str = "sqlite://"
    table: str = "dbo.ItemLog"
    no_read_sentinel: str = "NOREAD"
    policy: AggregationPolicy = AggregationPolicy.FLAG


@dataclass(frozen=True, slots=True)
class MonitoringSettings:
    enabled: bool = True
    disk_warning_threshold: float = 80.0


@dataclass(frozen=True, slots=True)
class AgentConfig:
    broker: BrokerSettings
    topics: TopicSettings
    publishing: PublishSettings
    last_will: LastWillSettings
    device: DeviceSettings
    database: DatabaseSettings
    monitoring: MonitoringSettings
    version: str


def build_mssql_url(
    server: str,
    database: str,
    user: str,
    password: str,
    *,
    trust_server_certificate: bool = True,
    driver: str = "ODBC Driver 18 for SQL Server",
) -> str:
    # odbc_connect form handles passwords with special characters and driver names with spaces
    odbc_str = (
        f"DRIVER={{{driver}}};"
        f"SERVER={server};"
        f"DATABASE={database};"
        f"UID={user};"
        f"PWD={password};"
        f"TrustServerCertificate={'yes' if trust_server_certificate else 'no'};"
    )
    return f"mssql+pyodbc:///?odbc_connect={quote_plus(odbc_str)}"


def _load_broker() -> BrokerSettings:
    d = BrokerSettings()
    return BrokerSettings(
        host=_text("MQTT_HOST", d.host),
        port=_setting("MQTT_PORT", d.port, parse_int, lambda p: 1 <= p <= 65535),
        path=_text("MQTT_PATH", d.path),
        use_websockets=_setting("MQTT_USE_WEBSOCKETS", d.use_websockets, parse_bool),
        use_tls=_setting("MQTT_USE_TLS", d.use_tls, parse_bool),
        username=os.getenv("MQTT_USERNAME") or None,
        password=os.getenv("MQTT_PASSWORD") or None,
        client_id_prefix=_text("MQTT_CLIENT_ID_PREFIX", d.client_id_prefix),
        clean_session=_setting("MQTT_CLEAN_SESSION", d.clean_session, parse_bool),
        keepalive_s=_setting("MQTT_KEEPALIVE_S", d.keepalive_s, parse_int, lambda v: v > 0),
        connect_timeout_s=_setting(
            "MQTT_CONNECT_TIMEOUT_S", d.connect_timeout_s, parse_float, lambda v: v > 0
        ),
        publish_timeout_s=_setting(
            "MQTT_PUBLISH_TIMEOUT_S", d.publish_timeout_s, parse_float, lambda v: v > 0
        ),
        reconnect_delay_s=_setting(
            "MQTT_RECONNECT_DELAY_S", d.reconnect_delay_s, parse_float, lambda v: v >= 0
        ),
        max_reconnect_attempts=_setting(
            "MQTT_MAX_RECONNECT_ATTEMPTS", d.max_reconnect_attempts, parse_int, lambda v: v >= 0
        ),
    )


def _load_publishing() -> PublishSettings:
    d = PublishSettings()
    return PublishSettings(
        status=PublishPolicy(
            qos=_setting("MQTT_STATUS_QOS", d.status.qos, parse_qos),
            retain=_setting("MQTT_RETAIN_STATUS", d.status.retain, parse_bool),
        ),
        data=PublishPolicy(
            qos=_setting("MQTT_QOS", d.data.qos, parse_qos),
            retain=_setting("MQTT_RETAIN", d.data.retain, parse_bool),
        ),
        interval_min=_setting("PUBLISH_INTERVAL_MIN", d.interval_min, parse_int, lambda v: v > 0),
        initial_delay_s=_setting(
            "PUBLISH_INITIAL_DELAY_S", d.initial_delay_s, parse_float, lambda v: v >= 0
        ),
        error_delay_s=_setting(
            "PUBLISH_ERROR_DELAY_S", d.error_delay_s, parse_float, lambda v: v > 0
        ),
    )


def _load_database() -> DatabaseSettings:
    d = DatabaseSettings()
    url = os.getenv("DB_URL")
    if not url:
        url = build_mssql_url(
            _text("DB_SERVER", "localhost"),
            _text("DB_NAME", "Systems_One"),
            _text("DB_USER", "sa"),
            os.getenv("DB_PASSWORD", ""),
            trust_server_certificate=_setting("DB_TRUST_SERVER_CERTIFICATE", True, parse_bool),
            driver=_text("DB_ODBC_DRIVER", "ODBC Driver 18 for SQL Server"),
        )
    return DatabaseSettings(
        url=url,
        table=_text("DB_TABLE", d.table),
        no_read_sentinel=_text("DB_NO_READ_SENTINEL", d.no_read_sentinel),
        policy=_setting("STATS_POLICY", d.policy, parse_policy),
    )


def load_config(*, dotenv_enabled: bool = True) -> AgentConfig:
    """
    Load config by reading env files (via python-dotenv) and then parsing
    environment variables.

    Returns an immutable AgentConfig. Malformed values are replaced by their
    defaults with a warning; this function does not raise for bad values.
    """
    if dotenv_enabled:
        from dotenv import load_dotenv

        for p in _env_paths():
            if p.is_file():
                # do not override existing env vars; later files can fill missing
                load_dotenv(p, override=False)

    device_default = DeviceSettings()
    station = _text("DEVICE_STATION", device_default.station)
    device = DeviceSettings(
        client_name=_text("DEVICE_CLIENT_NAME", device_default.client_name),
        location=_text("DEVICE_LOCATION", device_default.location),
        station=station,
        serial_number=_text("DEVICE_SERIAL_NUMBER", f"{station}-001"),
    )

    topics_default = TopicSettings()
    topics = TopicSettings(
        base=_text("TOPIC_BASE", topics_default.base),
        status_suffix=_text("TOPIC_STATUS_SUFFIX", topics_default.status_suffix),
        statistics_suffix=_text("TOPIC_STATISTICS_SUFFIX", topics_default.statistics_suffix),
        storage_suffix=_text("TOPIC_STORAGE_SUFFIX", topics_default.storage_suffix),
        data_suffix=_text("TOPIC_DATA_SUFFIX", topics_default.data_suffix),
        combined=_setting("TOPIC_COMBINED", topics_default.combined, parse_bool),
    )

    lw_default = LastWillSettings()
    last_will = LastWillSettings(
        enabled=_setting("MQTT_LWT_ENABLED", lw_default.enabled, parse_bool),
        qos=_setting("MQTT_LWT_QOS", lw_default.qos, parse_qos),
        retain=_setting("MQTT_LWT_RETAIN", lw_default.retain, parse_bool),
    )

    mon_default = MonitoringSettings()
    monitoring = MonitoringSettings(
        enabled=_setting("SYSTEM_MONITORING_ENABLED", mon_default.enabled, parse_bool),
        disk_warning_threshold=_setting(
            "DISK_WARNING_THRESHOLD_PCT",
            mon_default.disk_warning_threshold,
            parse_float,
            lambda v: 0 <= v <= 100,
        ),
    )

    return AgentConfig(
        broker=_load_broker(),
        topics=topics,
        publishing=_load_publishing(),
        last_will=last_will,
        device=device,
        database=_load_database(),
        monitoring=monitoring,
        version=_package_version(),
    )
