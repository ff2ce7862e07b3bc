"""
Pytest configuration and shared fixtures
"""
import os
import sys
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from station_agent.config import BrokerSettings, TopicSettings  # noqa: E402
from station_agent.topics import DeviceIdentity, TopicSet  # noqa: E402

FIXED_TS = 1_700_000_000_000


@pytest.fixture
def mock_env(monkeypatch):
    """Set up mock environment variables"""
    env_vars = {
        'MQTT_HOST': 'test.mqtt.local',
        'MQTT_PORT': '1883',
        'MQTT_USERNAME': 'station',
        'MQTT_PASSWORD': 'test-password',
        'DEVICE_CLIENT_NAME': 'ACME',
        'DEVICE_LOCATION': 'JHB',
        'DEVICE_STATION': 'DIM',
        'DEVICE_SERIAL_NUMBER': 'DIM-042',
        'DB_URL': 'sqlite://',
    }

    for key, value in env_vars.items():
        monkeypatch.setenv(key, value)

    return env_vars


@pytest.fixture
def identity():
    return DeviceIdentity(
        client_name='ACME',
        location='JHB',
        station='DIM',
        serial_number='DIM-042',
        os_version='Linux-6.1-x86_64',
    )


@pytest.fixture
def topics(identity):
    return TopicSet.build(identity, TopicSettings())


@pytest.fixture
def fixed_clock():
    return lambda: FIXED_TS


@pytest.fixture
def broker_settings():
    return BrokerSettings(
        host='localhost',
        port=1883,
        username='station',
        password='pw',
        connect_timeout_s=0.5,
        publish_timeout_s=0.5,
        reconnect_delay_s=0,
        max_reconnect_attempts=3,
    )


@pytest.fixture
def fake_paho_client(monkeypatch):
    """
    Patch paho.mqtt.client.Client to return a controllable fake.
    """
    fake = MagicMock()
    fake.is_connected.return_value = True
    fake.publish.return_value = MagicMock(rc=0)
    fake.publish.return_value.is_published.return_value = True

    def _ctor(*args, **kwargs):
        return fake

    monkeypatch.setattr("paho.mqtt.client.Client", _ctor)
    return fake


@pytest.fixture
def window():
    end = datetime(2024, 5, 1, 12, 0, 0)
    return end - timedelta(minutes=15), end
