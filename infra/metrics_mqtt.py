"""Low-level MQTT transport for the bench metrics feed.

This module provides direct MQTT connectivity to the broker that relays
benchmark metrics. It handles plain TCP or WebSocket connections with
optional TLS and username/password authentication, topic subscription
with wildcard callback dispatch, publishing, and automatic reconnection
with exponential backoff.

Architecture note:
    Uses synchronous paho-mqtt with its own network thread
    (``loop_start()``). Message callbacks run inline in that IO thread,
    so they must only hand work off (e.g. push to a command queue).

Connection semantics:
    ``clean_session=True``: at-most-once delivery and no replay on
    reconnect. Subscriptions are kept in a local source-of-truth dict
    and replayed on every successful ``on_connect``.

Callbacks registered via ``subscribe()`` must not block.
"""

import logging
import random
import threading
from enum import Enum
from typing import Callable, Iterator, Literal

import paho.mqtt.client as mqtt
from paho.mqtt.reasoncodes import ReasonCode
from pydantic import BaseModel, Field

logger: logging.Logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Type aliases
# ---------------------------------------------------------------------------

MessageCallback = Callable[[str, bytes], None]
"""Callback signature: ``(topic: str, payload: bytes) -> None``."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ClientState(str, Enum):
    """Connection state machine for :class:`MetricsMQTTClient`.

    States:
        INIT: Client created but ``connect()`` not yet called.
        CONNECTING: MQTT connect in progress.
        CONNECTED: MQTT connected and subscriptions active.
        RECONNECTING: Disconnected, background reconnect loop running.
        SHUTDOWN: ``shutdown()`` called. Terminal state.
    """

    INIT = "INIT"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    RECONNECTING = "RECONNECTING"
    SHUTDOWN = "SHUTDOWN"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class MetricsMQTTConfig(BaseModel):
    """Configuration for :class:`MetricsMQTTClient`.

    Attributes:
        host: Broker hostname.
        port: Broker port. Default 1883.
        transport: ``"tcp"`` or ``"websockets"``.
        websocket_path: Request path for the WebSocket transport.
        use_tls: Enable TLS with the system CA bundle.
        username: Optional broker username.
        password: Optional broker password.
        client_id: MQTT client id. Empty lets the broker assign one.
        keepalive: MQTT keepalive interval in seconds.
        reconnect_min_delay: Minimum reconnect backoff delay in seconds.
        reconnect_max_delay: Maximum reconnect backoff delay in seconds.
    """

    host: str = Field(min_length=1, description="Broker hostname")
    port: int = Field(default=1883, gt=0, le=65535, description="Broker port")
    transport: Literal["tcp", "websockets"] = Field(
        default="tcp",
        description="Socket transport",
    )
    websocket_path: str = Field(
        default="/mqtt",
        description="WebSocket request path (websockets transport only)",
    )
    use_tls: bool = Field(default=False, description="Enable TLS")
    username: str | None = Field(default=None, description="Broker username")
    password: str | None = Field(default=None, description="Broker password")
    client_id: str = Field(default="", description="MQTT client id")
    keepalive: int = Field(
        default=30,
        ge=5,
        le=300,
        description="MQTT keepalive interval in seconds",
    )
    reconnect_min_delay: float = Field(
        default=1.0,
        ge=0.1,
        description="Minimum reconnect backoff delay in seconds",
    )
    reconnect_max_delay: float = Field(
        default=30.0,
        ge=1.0,
        description="Maximum reconnect backoff delay in seconds",
    )


# ---------------------------------------------------------------------------
# MQTT Client
# ---------------------------------------------------------------------------


_COUNTERS: tuple[str, ...] = (
    "messages_received",
    "messages_published",
    "callback_errors",
    "reconnect_count",
)


class MetricsMQTTClient:
    """MQTT transport with subscription replay and auto-reconnect.

    Every paho client instance gets a generation number. Messages that
    arrive from a retired instance after a reconnect are ignored. State,
    subscriptions and counters share one lock, which is never held while
    calling into paho or a subscriber callback.

    Args:
        config: MQTT client configuration.

    Example::

        client = MetricsMQTTClient(MetricsMQTTConfig(host="localhost"))
        client.subscribe("mzbench/metrics/data/#", my_callback)
        client.connect()
        client.publish("mzbench/metrics/subscribe", b"{...}")
        client.shutdown()
    """

    def __init__(self, config: MetricsMQTTConfig) -> None:
        self._config: MetricsMQTTConfig = config
        self._client: mqtt.Client | None = None
        self._generation: int = 0

        self._lock: threading.Lock = threading.Lock()
        self._state: ClientState = ClientState.INIT
        self._subscriptions: dict[str, list[MessageCallback]] = {}
        self._reconnecting: bool = False
        self._counts: dict[str, int] = dict.fromkeys(_COUNTERS, 0)
        self._stop: threading.Event = threading.Event()

    @property
    def connected(self) -> bool:
        return self.state == ClientState.CONNECTED

    @property
    def state(self) -> ClientState:
        with self._lock:
            return self._state

    def connect(self) -> None:
        """Connect to the broker and start the paho network thread.

        Raises:
            RuntimeError: If ``connect()`` was already called.
            OSError: If the socket cannot be opened.
        """
        with self._lock:
            if self._state != ClientState.INIT:
                raise RuntimeError(f"Cannot connect: client is in {self._state} state")
            self._state = ClientState.CONNECTING
        self._open()
        logger.info(
            "Connecting to MQTT broker %s:%d over %s",
            self._config.host,
            self._config.port,
            self._config.transport,
        )

    def subscribe(self, topic: str, callback: MessageCallback) -> None:
        """Register ``callback`` for messages matching the filter ``topic``.

        The broker subscription is sent once per filter: immediately when
        connected, otherwise on the next successful connect.
        """
        with self._lock:
            callbacks: list[MessageCallback] = self._subscriptions.setdefault(topic, [])
            callbacks.append(callback)
            client: mqtt.Client | None = self._live_client(first=len(callbacks) == 1)
        if client is not None:
            client.subscribe(topic)
            logger.info("Subscribed to %s", topic)

    def unsubscribe(self, topic: str) -> None:
        """Drop every callback for ``topic`` and unsubscribe at the broker."""
        with self._lock:
            known: bool = self._subscriptions.pop(topic, None) is not None
            client: mqtt.Client | None = self._live_client(first=known)
        if client is not None:
            client.unsubscribe(topic)
            logger.info("Unsubscribed from %s", topic)

    def publish(self, topic: str, payload: bytes, qos: int = 0) -> bool:
        """Hand ``payload`` to paho for ``topic``.

        Returns:
            ``False`` without publishing when not connected.
        """
        with self._lock:
            client: mqtt.Client | None = self._live_client(first=True)
        if client is None:
            logger.warning("Not connected, dropping publish to %s", topic)
            return False
        client.publish(topic, payload=payload, qos=qos)
        self._bump("messages_published")
        return True

    def shutdown(self) -> None:
        """Stop reconnecting and close the connection. Idempotent."""
        with self._lock:
            if self._state == ClientState.SHUTDOWN:
                return
            self._state = ClientState.SHUTDOWN
            client: mqtt.Client | None = self._client
        self._stop.set()
        if client is not None:
            self._retire(client)
        logger.info("MQTT client shut down: %s", self.stats())

    def stats(self) -> dict[str, str | int | bool]:
        with self._lock:
            state: ClientState = self._state
            counts: dict[str, int] = dict(self._counts)
        return {
            "state": state.value,
            "connected": state == ClientState.CONNECTED,
            **counts,
        }

    # ------------------------------------------------------------------
    # paho client lifecycle
    # ------------------------------------------------------------------

    def _live_client(self, first: bool) -> mqtt.Client | None:
        """Return the paho client if ``first`` holds and we are connected.

        Caller must hold ``_lock``.
        """
        if first and self._state == ClientState.CONNECTED:
            return self._client
        return None

    def _open(self) -> None:
        """Replace the paho client with a fresh one and connect it."""
        if self._client is not None:
            self._retire(self._client)
        client: mqtt.Client = self._create_mqtt_client()
        self._client = client
        client.connect(
            host=self._config.host,
            port=self._config.port,
            keepalive=self._config.keepalive,
        )
        client.loop_start()

    @staticmethod
    def _retire(client: mqtt.Client) -> None:
        try:
            client.loop_stop()
            client.disconnect()
        except Exception:
            logger.debug("Error while closing paho client", exc_info=True)

    def _create_mqtt_client(self) -> mqtt.Client:
        """Build a configured paho client tagged with a new generation."""
        with self._lock:
            self._generation += 1
            generation: int = self._generation

        client: mqtt.Client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=self._config.client_id,
            clean_session=True,
            transport=self._config.transport,
        )
        if self._config.use_tls:
            client.tls_set()
        if self._config.transport == "websockets":
            client.ws_set_options(path=self._config.websocket_path)
        if self._config.username is not None:
            client.username_pw_set(self._config.username, self._config.password)

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = lambda c, u, m: self._on_message(
            client=c,
            userdata=u,
            msg=m,
            generation=generation,
        )
        return client

    # ------------------------------------------------------------------
    # paho callbacks (network thread)
    # ------------------------------------------------------------------

    def _on_connect(
        self,
        client: mqtt.Client,
        userdata: object,
        flags: object,
        reason_code: ReasonCode,
        properties: object = None,
    ) -> None:
        if reason_code.is_failure:
            logger.error("Broker refused connection: %s", reason_code)
            self._schedule_reconnect()
            return

        with self._lock:
            if self._state == ClientState.SHUTDOWN:
                return
            self._state = ClientState.CONNECTED
            topics: list[str] = list(self._subscriptions)
        for topic in topics:
            client.subscribe(topic)
        logger.info(
            "Connected to %s, %d subscriptions restored",
            self._config.host,
            len(topics),
        )

    def _on_disconnect(
        self,
        client: mqtt.Client,
        userdata: object,
        flags: object,
        reason_code: ReasonCode,
        properties: object = None,
    ) -> None:
        if not reason_code.is_failure:
            logger.info("Disconnected from MQTT broker")
            return
        if self.state == ClientState.SHUTDOWN:
            return
        logger.warning("Lost MQTT connection: %s", reason_code)
        self._schedule_reconnect()

    def _on_message(
        self,
        client: mqtt.Client,
        userdata: object,
        msg: mqtt.MQTTMessage,
        generation: int,
    ) -> None:
        """Fan a message out to every callback whose filter matches.

        **HOT PATH**: runs inline in the paho network thread.
        """
        if generation != self._generation:
            return

        topic: str = msg.topic
        with self._lock:
            self._counts["messages_received"] += 1
            matched: list[MessageCallback] = [
                cb
                for pattern, callbacks in self._subscriptions.items()
                if mqtt.topic_matches_sub(pattern, topic)
                for cb in callbacks
            ]
        for cb in matched:
            try:
                cb(topic, msg.payload)
            except Exception:
                self._bump("callback_errors")
                logger.exception("Subscriber callback failed for %s", topic)

    # ------------------------------------------------------------------
    # Reconnection
    # ------------------------------------------------------------------

    def _schedule_reconnect(self) -> None:
        """Start the background reconnect loop unless one is running."""
        with self._lock:
            if self._reconnecting or self._state == ClientState.SHUTDOWN:
                return
            self._state = ClientState.RECONNECTING
            self._reconnecting = True
        threading.Thread(
            target=self._reconnect_loop,
            daemon=True,
            name="mqtt-reconnect",
        ).start()

    def _backoff_delays(self) -> Iterator[float]:
        """Yield jittered delays doubling from the minimum to the maximum."""
        delay: float = self._config.reconnect_min_delay
        while True:
            yield delay * random.uniform(0.8, 1.2)
            delay = min(delay * 2, self._config.reconnect_max_delay)

    def _reconnect_loop(self) -> None:
        """Reopen the connection until it succeeds or shutdown is requested.

        Success here only means the socket is open; the state becomes
        CONNECTED when the broker acknowledges in ``_on_connect``.
        """
        delays: Iterator[float] = self._backoff_delays()
        try:
            while not self._stop.is_set():
                try:
                    self._open()
                except Exception:
                    logger.exception("Reconnect attempt failed")
                    self._stop.wait(timeout=next(delays))
                    continue
                self._bump("reconnect_count")
                logger.info("Reopened MQTT connection (generation %d)", self._generation)
                return
        finally:
            with self._lock:
                self._reconnecting = False

    def _bump(self, counter: str) -> None:
        with self._lock:
            self._counts[counter] += 1
