"""Core domain layer for the bench metrics feed.

This package provides the observation models and parser, the session
context, the per-metric series accumulator, the ingestion pipeline,
typed commands, the command queue, the observer registry, and the
:class:`MetricsStore` that owns them. All value models are
Pydantic-based with frozen configuration.
"""

from core.commands import (
    ChangeSession,
    Command,
    MetricData,
    MetricsBatchFinished,
    ResetSubscriptions,
    SubscribeMetrics,
)
from core.dispatcher import CommandQueue, CommandQueueConfig, CommandQueueStats
from core.metrics_store import MetricsStore, MetricsStoreConfig, MetricsStoreStats
from core.observations import (
    Observation,
    ObservationBatch,
    Sample,
    parse_observations,
)
from core.observers import ObserverRegistry
from core.pipeline import IngestionPipeline, PipelineStats
from core.series import AccumulatorState, SeriesAccumulator, SeriesStats
from core.session import SessionContext, SessionSnapshot

__all__: list[str] = [
    "AccumulatorState",
    "ChangeSession",
    "Command",
    "CommandQueue",
    "CommandQueueConfig",
    "CommandQueueStats",
    "IngestionPipeline",
    "MetricData",
    "MetricsBatchFinished",
    "MetricsStore",
    "MetricsStoreConfig",
    "MetricsStoreStats",
    "Observation",
    "ObservationBatch",
    "ObserverRegistry",
    "PipelineStats",
    "ResetSubscriptions",
    "Sample",
    "SeriesAccumulator",
    "SeriesStats",
    "SessionContext",
    "SessionSnapshot",
    "SubscribeMetrics",
    "parse_observations",
]
