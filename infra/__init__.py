"""Infrastructure layer for the bench metrics feed.

This package provides the MQTT transport and the adapter that maps
broker messages to metrics-store commands.
"""

from infra.metrics_adapter import MetricsFeedAdapter, MetricsFeedAdapterConfig
from infra.metrics_mqtt import ClientState, MetricsMQTTClient, MetricsMQTTConfig

__all__: list[str] = [
    "ClientState",
    "MetricsFeedAdapter",
    "MetricsFeedAdapterConfig",
    "MetricsMQTTClient",
    "MetricsMQTTConfig",
]
