"""Bounded command queue between feed producers and the metrics store.

This module provides :class:`CommandQueue`, a ``collections.deque(maxlen)``
backed FIFO. Producers push typed commands through
:meth:`core.metrics_store.MetricsStore.submit`, which serializes them.
The store is the single consumer and polls them in batches. The queue
is the only path through which store state is mutated from outside
the consumer.

SPSC contract:
    **Single-producer, single-consumer.** ``push()`` and ``poll()`` are
    lock-free and rely on CPython's atomic ``deque.append()`` and
    ``deque.popleft()``. Multiple producers need an external lock in
    front, as ``MetricsStore.submit`` provides.

Counter contract:
    - ``_total_pushed`` / ``_total_dropped`` are written by the push
      side only.
    - ``_total_polled`` is written by the poll side only.
    - Under quiescent conditions
      ``total_pushed - total_dropped - total_polled == queue_len``.

Backpressure policy:
    Drop-oldest. When the queue is full ``deque.append()`` evicts the
    oldest command. A warning is logged once per overflow episode and
    an info line when the queue has room again.

Example:
    >>> from core.dispatcher import CommandQueue, CommandQueueConfig
    >>> queue = CommandQueue(config=CommandQueueConfig(maxlen=2))
    >>> queue.push("a"); queue.push("b"); queue.push("c")
    >>> queue.poll(max_items=10)
    ['b', 'c']
    >>> queue.stats().total_dropped
    1
"""

import collections
import logging
from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field

logger: logging.Logger = logging.getLogger(__name__)

T = TypeVar("T")
"""Type of the items carried by the queue (``Command`` for the store)."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class CommandQueueConfig(BaseModel):
    """Configuration for :class:`CommandQueue`.

    Attributes:
        maxlen: Maximum number of queued items. Must be greater than
            zero. When full, the oldest item is evicted on push.

    Example:
        >>> CommandQueueConfig().maxlen
        100000
    """

    maxlen: int = Field(
        default=100_000,
        gt=0,
        description="Maximum queue length. Oldest items are dropped when exceeded.",
    )


# ---------------------------------------------------------------------------
# Stats Model
# ---------------------------------------------------------------------------


class CommandQueueStats(BaseModel):
    """Immutable snapshot of queue counters.

    Attributes:
        total_pushed: Items pushed, including those that evicted another.
        total_polled: Items consumed via ``poll()``.
        total_dropped: Items evicted because the queue was full.
        queue_len: Items currently queued.
        maxlen: Configured maximum length.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    total_pushed: int = Field(ge=0, description="Items pushed")
    total_polled: int = Field(ge=0, description="Items consumed via poll()")
    total_dropped: int = Field(ge=0, description="Items evicted on overflow")
    queue_len: int = Field(ge=0, description="Items currently queued")
    maxlen: int = Field(gt=0, description="Configured maximum queue length")


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------


class CommandQueue(Generic[T]):
    """Bounded drop-oldest FIFO with a single producer and consumer.

    Args:
        config: Queue configuration. Defaults to
            ``CommandQueueConfig()`` with ``maxlen=100_000``.
    """

    def __init__(self, config: CommandQueueConfig | None = None) -> None:
        self._config: CommandQueueConfig = config or CommandQueueConfig()
        self._maxlen: int = self._config.maxlen
        self._queue: collections.deque[T] = collections.deque(
            maxlen=self._maxlen,
        )

        self._total_pushed: int = 0
        self._total_polled: int = 0
        self._total_dropped: int = 0
        self._overflowing: bool = False

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def push(self, item: T) -> None:
        """Append ``item``, evicting the oldest item if the queue is full."""
        if len(self._queue) == self._maxlen:
            self._total_dropped += 1
            if not self._overflowing:
                logger.warning(
                    "Command queue full (maxlen=%d), dropping oldest commands",
                    self._maxlen,
                )
                self._overflowing = True
        elif self._overflowing:
            logger.info(
                "Command queue recovered (%d dropped so far)",
                self._total_dropped,
            )
            self._overflowing = False
        self._queue.append(item)
        self._total_pushed += 1

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    def poll(self, max_items: int = 100) -> list[T]:
        """Consume up to ``max_items`` in FIFO order. Non-blocking.

        Args:
            max_items: Upper bound on the batch size. Must be > 0.

        Returns:
            The consumed items, possibly empty.

        Raises:
            ValueError: If ``max_items`` is not greater than zero.
        """
        if max_items <= 0:
            raise ValueError(f"max_items must be > 0, got {max_items}")

        items: list[T] = []
        for _ in range(max_items):
            if not self._queue:
                break
            items.append(self._queue.popleft())
        self._total_polled += len(items)
        return items

    def __len__(self) -> int:
        return len(self._queue)

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def stats(self) -> CommandQueueStats:
        return CommandQueueStats(
            total_pushed=self._total_pushed,
            total_polled=self._total_polled,
            total_dropped=self._total_dropped,
            queue_len=len(self._queue),
            maxlen=self._maxlen,
        )

    def _invariant_ok(self) -> bool:
        """Check ``pushed - dropped - polled == queue_len`` (quiescent only)."""
        return (
            self._total_pushed - self._total_dropped - self._total_polled
            == len(self._queue)
        )
