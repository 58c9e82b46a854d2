"""Typed inbound commands for :class:`core.metrics_store.MetricsStore`.

Producers (the MQTT adapter, UI code, tests) build these messages and
submit them to the store's command queue. The store is the single
consumer and applies them in FIFO order.

Commands:
    - :class:`SubscribeMetrics` asks the network layer to subscribe the
      current session to a set of metric names.
    - :class:`MetricData` delivers a raw batch for one metric.
    - :class:`ResetSubscriptions`, :class:`ChangeSession` and
      :class:`MetricsBatchFinished` drive the session lifecycle.

All commands are frozen Pydantic models. Validated construction is the
default; the MQTT hot path uses ``model_construct()`` once it has
decoded the topic itself.

Example:
    >>> from core.commands import MetricData
    >>> cmd = MetricData(metric="cpu", token="abc", data="1000\\t0.5")
    >>> cmd.metric
    'cpu'
"""

from typing import Union

from pydantic import BaseModel, ConfigDict, Field

from core.session import BenchId


class SubscribeMetrics(BaseModel):
    """Request a subscription for ``metrics`` in the current session."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    metrics: frozenset[str] = Field(description="Metric names to subscribe to")


class MetricData(BaseModel):
    """A raw batch of samples for one metric.

    Attributes:
        metric: Metric name.
        token: Session token the batch was produced for.
        data: Raw batch text (tab-separated fields, newline-separated
            records).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    metric: str = Field(description="Metric name")
    token: str = Field(description="Session token of the delivery")
    data: str = Field(description="Raw batch text")


class ResetSubscriptions(BaseModel):
    """Start a fresh session for ``bench_id`` with a generated token."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    bench_id: BenchId = Field(description="Benchmark to track")


class ChangeSession(BaseModel):
    """Resume a known session identified by ``bench_id`` and ``token``."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    bench_id: BenchId = Field(description="Benchmark to track")
    token: str = Field(description="Existing session token")


class MetricsBatchFinished(BaseModel):
    """The server finished sending the initial batch for ``token``."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    token: str = Field(description="Session token of the finished batch")


Command = Union[
    SubscribeMetrics,
    MetricData,
    ResetSubscriptions,
    ChangeSession,
    MetricsBatchFinished,
]
"""Union of every command the store accepts."""
