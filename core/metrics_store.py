"""Metrics store: single owner of session identity and metric series.

``MetricsStore`` is created once at startup and passed by reference to
whoever needs it. It owns:

- a :class:`SessionContext` (bench id, token, origin, loaded flag),
- a :class:`SeriesAccumulator` (metric → observations),
- an :class:`IngestionPipeline` (token check + parse + append),
- an :class:`ObserverRegistry` (change notifications),
- a :class:`CommandQueue` (inbound typed commands).

Architecture note:
    The store behaves as an actor. Producers in any thread (the MQTT IO
    thread, UI code) call :meth:`MetricsStore.submit` only; pushes are
    serialized by a lock so the queue sees a single producer. The owning thread
    drains the queue with :meth:`MetricsStore.process_pending`, which
    applies each command synchronously and to completion before the
    next one. Session-control operations therefore clear the table and
    the origin atomically with respect to ingestion.

Command semantics:
    - ``SubscribeMetrics`` → subscription request via the configured
      sender, carrying the current bench id and token. No notification.
    - ``MetricData`` → ``ingest()``, then a change notification. The
      notification is sent even if the token was stale.
    - ``ResetSubscriptions`` / ``ChangeSession`` / ``MetricsBatchFinished``
      → the matching session-control operation, then a notification.

    The session-control methods can also be called directly on the
    store from the owning thread; direct calls do not notify.

Example:
    >>> from core.commands import MetricData, ResetSubscriptions
    >>> store = MetricsStore()
    >>> store.reset_subscriptions(7)
    >>> store.submit(MetricData(metric="cpu", token=store.session.token,
    ...                         data="1000\\t0.5\\n1001\\t0.7"))
    >>> store.process_pending()
    1
    >>> store.get_max_relative_date("cpu")
    1
"""

import logging
import threading
from typing import Callable

from pydantic import BaseModel, ConfigDict, Field

from core.commands import (
    ChangeSession,
    Command,
    MetricData,
    MetricsBatchFinished,
    ResetSubscriptions,
    SubscribeMetrics,
)
from core.dispatcher import CommandQueue, CommandQueueConfig, CommandQueueStats
from core.observations import Observation
from core.observers import ChangeCallback, ObserverHandle, ObserverRegistry
from core.pipeline import IngestionPipeline, PipelineStats
from core.series import SeriesAccumulator, SeriesStats
from core.session import BenchId, SessionContext, SessionSnapshot

logger: logging.Logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Type aliases
# ---------------------------------------------------------------------------

SubscriptionSender = Callable[[BenchId | None, frozenset[str], str | None], None]
"""Outbound subscription request: ``(bench_id, metrics, token) -> None``.

Fire-and-forget. Exceptions raised by the sender are logged and counted
by the store, never propagated. Implemented by
:meth:`infra.metrics_adapter.MetricsFeedAdapter.send_subscribe`.
"""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class MetricsStoreConfig(BaseModel):
    """Configuration for :class:`MetricsStore`.

    Attributes:
        max_commands_per_poll: Default batch size of
            :meth:`MetricsStore.process_pending`.
        queue: Configuration of the inbound command queue.
    """

    max_commands_per_poll: int = Field(
        default=1000,
        gt=0,
        description="Default number of commands applied per process_pending() call",
    )
    queue: CommandQueueConfig = Field(
        default_factory=CommandQueueConfig,
        description="Inbound command queue configuration",
    )


class MetricsStoreStats(BaseModel):
    """Immutable snapshot of the whole store.

    Attributes:
        session: Current session identity.
        series: Accumulator contents.
        pipeline: Lifetime ingestion counters.
        queue: Command queue counters.
        observers: Number of registered observers.
        observer_errors: Observer callbacks that raised.
        subscribe_errors: Subscription sender calls that raised.
        commands_applied: Commands applied since construction.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    session: SessionSnapshot
    series: SeriesStats
    pipeline: PipelineStats
    queue: CommandQueueStats
    observers: int = Field(ge=0)
    observer_errors: int = Field(ge=0)
    subscribe_errors: int = Field(ge=0)
    commands_applied: int = Field(ge=0)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class MetricsStore:
    """Accumulates live metric series for the current benchmark session.

    Args:
        config: Store configuration. Defaults to ``MetricsStoreConfig()``.
        send_subscribe: Outbound subscription sender. May be bound
            later with :meth:`set_subscription_sender`.
    """

    def __init__(
        self,
        config: MetricsStoreConfig | None = None,
        send_subscribe: SubscriptionSender | None = None,
    ) -> None:
        self._config: MetricsStoreConfig = config or MetricsStoreConfig()
        self._send_subscribe: SubscriptionSender | None = send_subscribe

        self._session: SessionContext = SessionContext()
        self._series: SeriesAccumulator = SeriesAccumulator(self._session)
        self._pipeline: IngestionPipeline = IngestionPipeline(
            self._session,
            self._series,
        )
        self._observers: ObserverRegistry = ObserverRegistry()
        self._commands: CommandQueue[Command] = CommandQueue(
            config=self._config.queue,
        )
        self._submit_lock: threading.Lock = threading.Lock()
        self._commands_applied: int = 0
        self._subscribe_errors: int = 0

    def set_subscription_sender(self, send_subscribe: SubscriptionSender) -> None:
        self._send_subscribe = send_subscribe

    # ------------------------------------------------------------------
    # Command path
    # ------------------------------------------------------------------

    def submit(self, command: Command) -> None:
        """Enqueue ``command`` for the owner. Safe from any thread."""
        with self._submit_lock:
            self._commands.push(command)

    def process_pending(self, max_commands: int | None = None) -> int:
        """Apply up to ``max_commands`` queued commands in FIFO order.

        Args:
            max_commands: Batch bound. Defaults to
                ``config.max_commands_per_poll``.

        Returns:
            Number of commands applied.

        Raises:
            ValueError: If ``max_commands`` is not greater than zero.
        """
        limit: int = (
            max_commands
            if max_commands is not None
            else self._config.max_commands_per_poll
        )
        commands: list[Command] = self._commands.poll(max_items=limit)
        for command in commands:
            self.handle(command)
        return len(commands)

    def handle(self, command: Command) -> None:
        """Apply one command immediately, bypassing the queue.

        Raises:
            TypeError: If ``command`` is not a known command type.
        """
        if isinstance(command, SubscribeMetrics):
            self.add_subscription(command.metrics)
            self._commands_applied += 1
            return

        if isinstance(command, MetricData):
            self.ingest(command.metric, command.token, command.data)
        elif isinstance(command, ResetSubscriptions):
            self.reset_subscriptions(command.bench_id)
        elif isinstance(command, ChangeSession):
            self.change_session(command.bench_id, command.token)
        elif isinstance(command, MetricsBatchFinished):
            self.mark_batch_finished(command.token)
        else:
            raise TypeError(f"Unsupported command: {type(command).__name__}")
        self._commands_applied += 1
        self._observers.notify()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def reset_subscriptions(self, bench_id: BenchId) -> None:
        """Start a new session for ``bench_id`` and drop all series."""
        self._session.reset_subscriptions(bench_id)
        self._series.clear()

    def change_session(self, bench_id: BenchId, token: str) -> None:
        """Resume the session ``(bench_id, token)`` and drop all series."""
        self._session.change_session(bench_id, token)
        self._series.clear()

    def mark_batch_finished(self, token: str) -> None:
        self._session.mark_batch_finished(token)

    def add_subscription(self, metrics: frozenset[str]) -> None:
        """Ask the network layer to subscribe the session to ``metrics``."""
        if self._send_subscribe is None:
            logger.warning(
                "No subscription sender bound, dropping request for %d metrics",
                len(metrics),
            )
            return
        try:
            self._send_subscribe(self._session.bench_id, metrics, self._session.token)
        except Exception:
            self._subscribe_errors += 1
            logger.exception(
                "Subscription request for %d metrics failed (%d total)",
                len(metrics),
                self._subscribe_errors,
            )

    def ingest(self, metric: str, token: str, raw_text: str) -> int:
        """Ingest a raw batch if ``token`` is the current session token.

        Returns:
            Number of samples appended.
        """
        return self._pipeline.ingest(metric, token, raw_text)

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def on_change(self, callback: ChangeCallback) -> ObserverHandle:
        return self._observers.add(callback)

    def off(self, handle: ObserverHandle) -> bool:
        return self._observers.remove(handle)

    def emit_change(self) -> int:
        return self._observers.notify()

    # ------------------------------------------------------------------
    # Read accessors
    # ------------------------------------------------------------------

    def get_current_bench_id(self) -> BenchId | None:
        return self._session.bench_id

    def get_series(self, metric: str) -> tuple[Observation, ...]:
        return self._series.get_series(metric)

    def get_max_relative_date(self, metric: str) -> int:
        return self._series.get_max_relative_date(metric)

    def is_loaded(self) -> bool:
        return self._session.is_loaded()

    def metric_names(self) -> list[str]:
        return self._series.metric_names()

    @property
    def session(self) -> SessionSnapshot:
        return self._session.snapshot()

    def stats(self) -> MetricsStoreStats:
        return MetricsStoreStats(
            session=self._session.snapshot(),
            series=self._series.stats(),
            pipeline=self._pipeline.stats(),
            queue=self._commands.stats(),
            observers=len(self._observers),
            observer_errors=self._observers.callback_errors,
            subscribe_errors=self._subscribe_errors,
            commands_applied=self._commands_applied,
        )
