from __future__ import annotations

import logging
import os
from urllib.parse import unquote_plus

import pytest

from station_agent.config import (
    AggregationPolicy,
    ConfigParseError,
    DeliveryGuarantee,
    PublishSettings,
    build_mssql_url,
    load_config,
    parse_bool,
    parse_qos,
)

_PREFIXES = ("MQTT_", "DEVICE_", "DB_", "PUBLISH_", "TOPIC_", "STATS_", "SYSTEM_", "DISK_")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for k in list(os.environ):
        if k.startswith(_PREFIXES):
            monkeypatch.delenv(k, raising=False)


def test_defaults_without_env():
    cfg = load_config(dotenv_enabled=False)

    assert cfg.broker.host == "localhost"
    assert cfg.broker.port == 1883
    assert cfg.broker.max_reconnect_attempts == 10
    assert cfg.broker.reconnect_delay_s == 5.0
    assert cfg.publishing.interval_min == 15
    assert cfg.publishing.status.retain is True
    assert cfg.publishing.status.qos is DeliveryGuarantee.AT_LEAST_ONCE
    assert cfg.publishing.data.retain is False
    assert cfg.last_will.enabled is True
    assert cfg.last_will.retain is True
    assert cfg.device.serial_number == "DIM-001"
    assert cfg.database.policy is AggregationPolicy.FLAG
    assert cfg.database.url.startswith("mssql+pyodbc:///?odbc_connect=")
    assert cfg.topics.combined is False
    assert cfg.version


def test_valid_env_loads(mock_env):
    cfg = load_config(dotenv_enabled=False)

    assert cfg.broker.host == "test.mqtt.local"
    assert cfg.broker.username == "station"
    assert cfg.broker.password == "test-password"
    assert cfg.device.client_name == "ACME"
    assert cfg.device.serial_number == "DIM-042"
    assert cfg.database.url == "sqlite://"


def test_serial_number_defaults_from_station(monkeypatch):
    monkeypatch.setenv("DEVICE_STATION", "SORT")
    cfg = load_config(dotenv_enabled=False)
    assert cfg.device.serial_number == "SORT-001"


def test_invalid_port_falls_back_with_warning(monkeypatch, caplog):
    monkeypatch.setenv("MQTT_PORT", "not-a-number")

    with caplog.at_level(logging.WARNING, logger="station_agent.config"):
        cfg = load_config(dotenv_enabled=False)

    assert cfg.broker.port == 1883
    assert "Invalid integer for MQTT_PORT" in caplog.text


def test_out_of_range_port_falls_back(monkeypatch, caplog):
    monkeypatch.setenv("MQTT_PORT", "70000")

    with caplog.at_level(logging.WARNING, logger="station_agent.config"):
        cfg = load_config(dotenv_enabled=False)

    assert cfg.broker.port == 1883
    assert "Out of range value for MQTT_PORT" in caplog.text


def test_malformed_values_never_raise(monkeypatch):
    monkeypatch.setenv("MQTT_RETAIN", "maybe")
    monkeypatch.setenv("MQTT_QOS", "Sometimes")
    monkeypatch.setenv("PUBLISH_INTERVAL_MIN", "0")
    monkeypatch.setenv("STATS_POLICY", "median")
    monkeypatch.setenv("DISK_WARNING_THRESHOLD_PCT", "120")

    cfg = load_config(dotenv_enabled=False)

    assert cfg.publishing.data.retain is False
    assert cfg.publishing.data.qos is DeliveryGuarantee.AT_LEAST_ONCE
    assert cfg.publishing.interval_min == 15
    assert cfg.database.policy is AggregationPolicy.FLAG
    assert cfg.monitoring.disk_warning_threshold == 80.0


def test_overrides_are_applied(monkeypatch):
    monkeypatch.setenv("MQTT_QOS", "ExactlyOnce")
    monkeypatch.setenv("MQTT_RETAIN_STATUS", "false")
    monkeypatch.setenv("MQTT_USE_WEBSOCKETS", "yes")
    monkeypatch.setenv("PUBLISH_INTERVAL_MIN", "5")
    monkeypatch.setenv("STATS_POLICY", "COMPLETE")
    monkeypatch.setenv("TOPIC_COMBINED", "1")
    monkeypatch.setenv("DB_TABLE", "ItemLog")

    cfg = load_config(dotenv_enabled=False)

    assert cfg.publishing.data.qos is DeliveryGuarantee.EXACTLY_ONCE
    assert cfg.publishing.status.retain is False
    assert cfg.broker.use_websockets is True
    assert cfg.publishing.interval_min == 5
    assert cfg.database.policy is AggregationPolicy.COMPLETE
    assert cfg.topics.combined is True
    assert cfg.database.table == "ItemLog"


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("AtMostOnce", DeliveryGuarantee.AT_MOST_ONCE),
        ("at_least_once", DeliveryGuarantee.AT_LEAST_ONCE),
        ("EXACTLY-ONCE", DeliveryGuarantee.EXACTLY_ONCE),
        ("2", DeliveryGuarantee.EXACTLY_ONCE),
    ],
)
def test_parse_qos_names(raw, expected):
    assert parse_qos("MQTT_QOS", raw) is expected


def test_parse_qos_rejects_unknown():
    with pytest.raises(ConfigParseError, match="MQTT_QOS"):
        parse_qos("MQTT_QOS", "3")


def test_parse_bool_rejects_garbage():
    assert parse_bool("X", " On ") is True
    with pytest.raises(ConfigParseError):
        parse_bool("X", "perhaps")


def test_recovery_delay_is_capped_by_interval():
    assert PublishSettings(interval_min=15, error_delay_s=300).recovery_delay_s == 300
    assert PublishSettings(interval_min=1, error_delay_s=300).recovery_delay_s == 60


def test_mssql_url_escapes_credentials():
    url = build_mssql_url("db01", "Systems_One", "sa", "p@ss;word", trust_server_certificate=False)
    odbc = unquote_plus(url.split("odbc_connect=", 1)[1])

    assert "SERVER=db01;" in odbc
    assert "PWD=p@ss;word;" in odbc
    assert "TrustServerCertificate=no;" in odbc
    assert "DRIVER={ODBC Driver 18 for SQL Server};" in odbc


def test_dotenv_file_does_not_override_process_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    (tmp_path / ".env").write_text("MQTT_HOST=from-file\nDEVICE_STATION=PACK\n")
    monkeypatch.setenv("MQTT_HOST", "from-env")

    cfg = load_config()

    assert cfg.broker.host == "from-env"
    assert cfg.device.station == "PACK"
    # load_dotenv writes into os.environ; drop it so other tests stay isolated
    os.environ.pop("DEVICE_STATION", None)


def test_zero_error_delay_falls_back(monkeypatch, caplog):
    monkeypatch.setenv("PUBLISH_ERROR_DELAY_S", "0")

    with caplog.at_level(logging.WARNING, logger="station_agent.config"):
        cfg = load_config(dotenv_enabled=False)

    assert cfg.publishing.error_delay_s == 300.0
    assert cfg.publishing.recovery_delay_s == 300.0
    assert "PUBLISH_ERROR_DELAY_S" in caplog.text
