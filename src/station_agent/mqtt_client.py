"""
MQTT connection manager for Station Agent.

Owns exactly one broker session at a time: connect with a retained offline
last-will, publish online on connect, detect broker-side disconnects, reconnect
with a bounded number of fixed-delay attempts, and publish offline before a
clean disconnect on shutdown.

State transitions are serialized: one lock guards ConnectionState, a second
one ensures only one connect/reconnect attempt is in flight. The paho network
thread only ever takes the state lock.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import paho.mqtt.client as mqtt

from station_agent.config import (
    BrokerSettings,
    DeliveryGuarantee,
    LastWillSettings,
    PublishPolicy,
)
from station_agent.core.payloads import (
    Clock,
    PresenceStatus,
    build_last_will,
    build_status_message,
)
from station_agent.topics import DeviceIdentity, TopicSet

logger = logging.getLogger(__name__)


class ConnectError(RuntimeError):
    """Raised when the broker cannot be reached or refuses the session."""


class PublishError(RuntimeError):
    """Raised when a message cannot be handed to the broker."""


class Phase(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    GIVEN_UP = "given_up"


@dataclass(frozen=True, slots=True)
class ConnectionState:
    """Connection phase; attempt is only meaningful while reconnecting."""

    phase: Phase
    attempt: int = 0

    def __str__(self) -> str:
        if self.phase is Phase.RECONNECTING:
            return f"reconnecting({self.attempt})"
        return self.phase.value


DISCONNECTED = ConnectionState(Phase.DISCONNECTED)
CONNECTING = ConnectionState(Phase.CONNECTING)
CONNECTED = ConnectionState(Phase.CONNECTED)
GIVEN_UP = ConnectionState(Phase.GIVEN_UP)


def reconnecting(attempt: int) -> ConnectionState:
    return ConnectionState(Phase.RECONNECTING, attempt)


class ConnectionManager:
    """
    Broker session for one station.

    The scheduler only calls publish(); ensure_connected() runs lazily inside it.
    close() must be called on shutdown to publish offline and disconnect cleanly.
    """

    def __init__(
        self,
        broker: BrokerSettings,
        identity: DeviceIdentity,
        topics: TopicSet,
        *,
        status_policy: PublishPolicy = PublishPolicy(retain=True),
        last_will: LastWillSettings = LastWillSettings(),
        shutdown: Optional[threading.Event] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.broker = broker
        self.identity = identity
        self.topics = topics
        self.status_policy = status_policy
        self.last_will = last_will
        self._clock = clock
        self._shutdown = shutdown or threading.Event()

        self._state_lock = threading.Lock()
        self._transition_lock = threading.Lock()
        self._state = DISCONNECTED

        self._client: Optional[mqtt.Client] = None
        self._connack = threading.Event()
        self._connack_ok = False
        self._connack_reason: Any = None
        self._reconnect_thread: Optional[threading.Thread] = None

    # -------------------------
    # State
    # -------------------------
    @property
    def state(self) -> ConnectionState:
        with self._state_lock:
            return self._state

    def _set_state(self, new: ConnectionState) -> None:
        with self._state_lock:
            old = self._state
            self._state = new
        if old != new:
            logger.debug("Connection state %s -> %s", old, new)

    def is_connected(self) -> bool:
        client = self._client
        return bool(client and client.is_connected() and self.state.phase is Phase.CONNECTED)

    # -------------------------
    # Session setup
    # -------------------------
    def _build_client(self) -> mqtt.Client:
        b = self.broker
        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=f"{b.client_id_prefix}_{uuid.uuid4().hex}",
            clean_session=b.clean_session,
            protocol=mqtt.MQTTv311,
            transport="websockets" if b.use_websockets else "tcp",
            reconnect_on_failure=False,
        )
        if b.use_websockets:
            client.ws_set_options(path=b.path)
        if b.use_tls:
            client.tls_set()
        if b.username:
            client.username_pw_set(b.username, b.password)
        client.connect_timeout = b.connect_timeout_s

        if self.last_will.enabled:
            # Set once per session; the broker publishes it if we vanish without DISCONNECT.
            topic, payload = build_last_will(self.identity, self.topics, clock=self._clock)
            client.will_set(
                topic,
                payload=payload,
                qos=int(self.last_will.qos),
                retain=self.last_will.retain,
            )
            logger.debug("Last will configured on %s: %s", topic, payload)

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        return client

    def _open_session(self) -> None:
        """Open a fresh session and wait for CONNACK. Caller holds the transition lock."""
        self._close_client()

        client = self._build_client()
        self._connack.clear()
        self._connack_ok = False
        self._connack_reason = None
        self._client = client

        logger.info("Connecting to MQTT broker at %s...", self.broker.uri)
        try:
            client.connect(self.broker.host, self.broker.port, keepalive=self.broker.keepalive_s)
        except (OSError, ValueError) as exc:
            self._client = None
            raise ConnectError(f"Cannot reach MQTT broker at {self.broker.uri}: {exc}") from exc
        client.loop_start()

        if not self._connack.wait(timeout=self.broker.connect_timeout_s):
            self._close_client()
            raise ConnectError(
                f"No CONNACK from {self.broker.uri} within {self.broker.connect_timeout_s}s"
            )
        if not self._connack_ok:
            reason = self._connack_reason
            self._close_client()
            raise ConnectError(f"MQTT broker refused connection: {reason}")

    def _close_client(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        try:
            client.disconnect()
            client.loop_stop()
        except Exception as exc:
            logger.warning("Error closing MQTT session: %s", exc)

    # -------------------------
    # paho callbacks (network thread)
    # -------------------------
    def _on_connect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        if client is not self._client:
            return
        self._connack_ok = reason_code == 0
        self._connack_reason = reason_code
        self._connack.set()

    def _on_disconnect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        if client is not self._client or self._shutdown.is_set():
            return

        with self._state_lock:
            phase = self._state.phase
            if phase is Phase.CONNECTED:
                max_attempts = self.broker.max_reconnect_attempts
                self._state = reconnecting(1) if max_attempts > 0 else GIVEN_UP

        if phase is not Phase.CONNECTED:
            # dropped before CONNACK: wake the connecting thread
            if not self._connack.is_set():
                self._connack_ok = False
                self._connack_reason = reason_code
                self._connack.set()
            return

        logger.warning("Disconnected from MQTT broker: %s", reason_code)
        if self.state.phase is Phase.GIVEN_UP:
            logger.critical("Reconnection disabled (max attempts 0); giving up")
            return
        self._start_reconnect()

    # -------------------------
    # Reconnect
    # -------------------------
    def _start_reconnect(self) -> None:
        t = threading.Thread(target=self._reconnect_loop, name="mqtt-reconnect", daemon=True)
        self._reconnect_thread = t
        t.start()

    def _reconnect_loop(self) -> None:
        max_attempts = self.broker.max_reconnect_attempts
        while True:
            state = self.state
            if state.phase is not Phase.RECONNECTING:
                return
            attempt = state.attempt

            logger.info("Attempting reconnection %d/%d", attempt, max_attempts)
            if self._shutdown.wait(timeout=self.broker.reconnect_delay_s):
                logger.info("Reconnect cancelled by shutdown")
                return

            with self._transition_lock:
                try:
                    self._open_session()
                except ConnectError as exc:
                    logger.error("Failed to reconnect to MQTT broker (attempt %d): %s", attempt, exc)
                    if attempt >= max_attempts:
                        self._set_state(GIVEN_UP)
                        logger.critical(
                            "Maximum reconnection attempts (%d) reached. Giving up.", max_attempts
                        )
                        return
                    self._set_state(reconnecting(attempt + 1))
                    continue
                self._set_state(CONNECTED)

            logger.info("Reconnected to MQTT broker after %d attempt(s)", attempt)
            self._publish_presence(PresenceStatus.ONLINE)
            return

    # -------------------------
    # Public API
    # -------------------------
    def ensure_connected(self) -> None:
        """
        Connect if there is no live session. Raises ConnectError on failure or
        while a background reconnect owns the session.
        """
        if self._shutdown.is_set():
            raise ConnectError("Connection manager is shutting down")
        if self.is_connected():
            return
        state = self.state
        if state.phase is Phase.RECONNECTING:
            raise ConnectError(f"Reconnect in progress (attempt {state.attempt})")

        with self._transition_lock:
            with self._state_lock:
                state = self._state
                if state.phase is Phase.RECONNECTING:
                    raise ConnectError(f"Reconnect in progress (attempt {state.attempt})")
                if state.phase is Phase.CONNECTED and self._client and self._client.is_connected():
                    return
                self._state = CONNECTING

            try:
                self._open_session()
            except ConnectError as exc:
                self._set_state(DISCONNECTED)
                logger.error("Error connecting to MQTT broker: %s", exc)
                raise
            self._set_state(CONNECTED)

        logger.info("Connected successfully to MQTT broker")
        self._publish_presence(PresenceStatus.ONLINE)

    def publish(
        self,
        topic: str,
        payload: str,
        *,
        qos: DeliveryGuarantee = DeliveryGuarantee.AT_LEAST_ONCE,
        retain: bool = False,
    ) -> None:
        try:
            self.ensure_connected()
        except ConnectError as exc:
            raise PublishError(f"Not connected: {exc}") from exc
        self._send(topic, payload, qos, retain)
        logger.debug("Published %d bytes to %s (qos=%d retain=%s)", len(payload), topic, qos, retain)

    def publish_status(self, status: PresenceStatus) -> None:
        topic, payload = build_status_message(self.identity, self.topics, status, clock=self._clock)
        self.publish(topic, payload, qos=self.status_policy.qos, retain=self.status_policy.retain)

    def _send(self, topic: str, payload: str, qos: DeliveryGuarantee, retain: bool) -> None:
        client = self._client
        if client is None:
            raise PublishError("MQTT client not connected")

        info = client.publish(topic, payload=payload, qos=int(qos), retain=retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise PublishError(f"Publish to {topic} rejected: {mqtt.error_string(info.rc)}")
        if int(qos) > 0:
            try:
                info.wait_for_publish(timeout=self.broker.publish_timeout_s)
            except (RuntimeError, ValueError) as exc:
                raise PublishError(f"Publish to {topic} failed: {exc}") from exc
            if not info.is_published():
                raise PublishError(
                    f"Publish to {topic} not acknowledged within {self.broker.publish_timeout_s}s"
                )

    def _publish_presence(self, status: PresenceStatus) -> None:
        """Best effort: a failed presence publish is logged, never raised."""
        topic, payload = build_status_message(self.identity, self.topics, status, clock=self._clock)
        try:
            self._send(topic, payload, self.status_policy.qos, self.status_policy.retain)
        except PublishError as exc:
            logger.error("Error publishing %s status: %s", status.value, exc)
            return
        logger.info(
            "Published status message: %s for device %s to topic %s with retain=%s",
            status.value,
            self.identity.serial_number,
            topic,
            self.status_policy.retain,
        )

    def close(self) -> None:
        """Publish offline, disconnect cleanly and stop any reconnect in progress."""
        self._shutdown.set()

        t = self._reconnect_thread
        if t is not None and t is not threading.current_thread():
            t.join(timeout=self.broker.connect_timeout_s + 1.0)
            if t.is_alive():
                logger.warning("Reconnect thread did not stop within timeout")
        self._reconnect_thread = None

        with self._transition_lock:
            client = self._client
            if client is not None and client.is_connected():
                self._publish_presence(PresenceStatus.OFFLINE)
            if client is not None:
                self._close_client()
                logger.info("Disconnected from MQTT broker")
            self._set_state(DISCONNECTED)
