"""MQTT adapter between the metrics broker and the metrics store.

This module provides the ``MetricsFeedAdapter`` that sits between the
MQTT transport and :class:`core.metrics_store.MetricsStore`. It turns
broker messages into typed commands, and subscription requests from the
store into broker publishes.

Topic layout (``{prefix}`` is ``MetricsFeedAdapterConfig.topic_prefix``):
    - ``{prefix}/data/{token}/{metric}``: payload is a raw metric batch
      (UTF-8 text, tab/newline format). ``metric`` may contain ``/``.
      Produces :class:`MetricData`.
    - ``{prefix}/finished/{token}``: empty payload. Produces
      :class:`MetricsBatchFinished`.
    - ``{prefix}/subscribe``: outbound JSON
      ``{"bench": ..., "metrics": [...], "guid": ...}``.

Architecture note:
    ``_on_message`` runs inline in the MQTT IO thread. It only decodes
    the topic and hands a command to ``on_command`` (normally
    ``MetricsStore.submit``). Parsing of the batch body happens later on
    the store's consumer path.

Error isolation:
    Decode errors and callback errors are counted separately. A message
    increments exactly one of ``messages_forwarded``, ``parse_errors``
    or ``callback_errors``. Logging is rate-limited: the first 10 errors
    of each kind with a traceback, then every 1000th.

Example:
    >>> from core.metrics_store import MetricsStore
    >>> from infra.metrics_mqtt import MetricsMQTTClient, MetricsMQTTConfig
    >>>
    >>> store = MetricsStore()
    >>> client = MetricsMQTTClient(MetricsMQTTConfig(host="localhost"))
    >>> adapter = MetricsFeedAdapter(
    ...     config=MetricsFeedAdapterConfig(),
    ...     mqtt_client=client,
    ...     on_command=store.submit,
    ... )
    >>> store.set_subscription_sender(adapter.send_subscribe)
    >>> adapter.start()
    >>> client.connect()
"""

import logging
from typing import Callable

from pydantic import BaseModel, Field

from core.commands import Command, MetricData, MetricsBatchFinished
from core.session import BenchId
from infra.metrics_mqtt import MetricsMQTTClient

logger: logging.Logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Type aliases
# ---------------------------------------------------------------------------

CommandCallback = Callable[[Command], None]
"""Callback signature for command consumers: ``(command) -> None``.

Must be non-blocking. Runs in the MQTT IO thread.
"""

# ---------------------------------------------------------------------------
# Rate-limited logging thresholds
# ---------------------------------------------------------------------------

_LOG_FIRST_N: int = 10
"""Log full stack trace for the first N errors of each type."""

_LOG_EVERY_N: int = 1000
"""After the first N errors, log every Nth occurrence."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class MetricsFeedAdapterConfig(BaseModel):
    """Configuration for :class:`MetricsFeedAdapter`.

    Attributes:
        topic_prefix: Root of every topic used by the adapter. No
            leading or trailing slash.
        subscribe_qos: QoS of outbound subscription requests.
    """

    topic_prefix: str = Field(
        default="mzbench/metrics",
        min_length=1,
        pattern=r"^[^/#+](.*[^/#+])?$",
        description="Topic root, without leading or trailing slash",
    )
    subscribe_qos: int = Field(
        default=1,
        ge=0,
        le=2,
        description="QoS for subscription requests",
    )


class SubscribeRequest(BaseModel):
    """Outbound subscription request payload.

    Attributes:
        bench: Benchmark id of the current session.
        metrics: Requested metric names, sorted.
        guid: Session token the server must echo on deliveries.
    """

    bench: BenchId | None
    metrics: list[str]
    guid: str | None


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class MetricsFeedAdapter:
    """Maps broker messages to store commands and back.

    Args:
        config: Adapter configuration.
        mqtt_client: Transport used for subscriptions and publishes.
        on_command: Callback invoked with each decoded command. Runs in
            the MQTT IO thread.
    """

    def __init__(
        self,
        config: MetricsFeedAdapterConfig,
        mqtt_client: MetricsMQTTClient,
        on_command: CommandCallback,
    ) -> None:
        self._config: MetricsFeedAdapterConfig = config
        self._mqtt_client: MetricsMQTTClient = mqtt_client
        self._on_command: CommandCallback = on_command

        prefix: str = config.topic_prefix
        self._data_root: str = f"{prefix}/data/"
        self._finished_root: str = f"{prefix}/finished/"
        self._subscribe_topic: str = f"{prefix}/subscribe"
        self._started: bool = False

        self._messages_forwarded: int = 0
        self._parse_errors: int = 0
        self._callback_errors: int = 0
        self._subscribe_requests: int = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def inbound_topics(self) -> tuple[str, str]:
        """Topic filters the adapter listens on."""
        return (f"{self._data_root}#", f"{self._finished_root}+")

    def start(self) -> None:
        """Register inbound topic filters on the transport. Idempotent."""
        if self._started:
            return
        for topic in self.inbound_topics:
            self._mqtt_client.subscribe(topic=topic, callback=self._on_message)
        self._started = True
        logger.info("MetricsFeedAdapter listening on %s", self._config.topic_prefix)

    def stop(self) -> None:
        if not self._started:
            return
        for topic in self.inbound_topics:
            self._mqtt_client.unsubscribe(topic=topic)
        self._started = False
        logger.info("MetricsFeedAdapter stopped")

    def send_subscribe(
        self,
        bench_id: BenchId | None,
        metrics: frozenset[str],
        token: str | None,
    ) -> None:
        """Publish a subscription request for ``metrics``.

        Matches :data:`core.metrics_store.SubscriptionSender`.
        """
        request: SubscribeRequest = SubscribeRequest(
            bench=bench_id,
            metrics=sorted(metrics),
            guid=token,
        )
        self._mqtt_client.publish(
            topic=self._subscribe_topic,
            payload=request.model_dump_json().encode("utf-8"),
            qos=self._config.subscribe_qos,
        )
        self._subscribe_requests += 1
        logger.info(
            "Requested %d metrics for bench %s (token=%s)",
            len(request.metrics),
            bench_id,
            token,
        )

    def stats(self) -> dict[str, object]:
        return {
            "started": self._started,
            "messages_forwarded": self._messages_forwarded,
            "parse_errors": self._parse_errors,
            "callback_errors": self._callback_errors,
            "subscribe_requests": self._subscribe_requests,
        }

    # ------------------------------------------------------------------
    # Hot Path (MQTT IO thread)
    # ------------------------------------------------------------------

    def _on_message(self, topic: str, payload: bytes) -> None:
        """Decode a broker message and forward the resulting command."""
        try:
            command: Command = self._decode(topic, payload)
        except Exception:
            self._parse_errors += 1
            self._log_error("Failed to decode message on", topic, self._parse_errors)
            return

        try:
            self._on_command(command)
        except Exception:
            self._callback_errors += 1
            self._log_error("Command callback error for", topic, self._callback_errors)
            return

        self._messages_forwarded += 1

    def _decode(self, topic: str, payload: bytes) -> Command:
        """Build a command from ``topic`` and ``payload``.

        Raises:
            ValueError: If the topic is outside the adapter's layout, or
                its token or metric segment is empty.
            UnicodeDecodeError: If a data payload is not valid UTF-8.
        """
        if topic.startswith(self._data_root):
            token, _, metric = topic[len(self._data_root):].partition("/")
            if not token or not metric:
                raise ValueError(f"Malformed data topic: {topic}")
            return MetricData.model_construct(
                metric=metric,
                token=token,
                data=payload.decode("utf-8"),
            )
        if topic.startswith(self._finished_root):
            token = topic[len(self._finished_root):]
            if not token or "/" in token:
                raise ValueError(f"Malformed finished topic: {topic}")
            return MetricsBatchFinished.model_construct(token=token)
        raise ValueError(f"Unexpected topic: {topic}")

    # ------------------------------------------------------------------
    # Rate-Limited Logging
    # ------------------------------------------------------------------

    @staticmethod
    def _log_error(message: str, topic: str, count: int) -> None:
        """Log with a traceback for the first N errors, then every Nth."""
        if count <= _LOG_FIRST_N:
            logger.exception(
                "%s %s (%d/%d)",
                message,
                topic,
                count,
                _LOG_FIRST_N,
            )
        elif count % _LOG_EVERY_N == 0:
            logger.error("%s %s: %d total", message, topic, count)
