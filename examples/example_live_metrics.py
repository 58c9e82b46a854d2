"""Example: follow live metrics of a running benchmark over MQTT.

Pipeline:

    MetricsMQTTClient → MetricsFeedAdapter → MetricsStore.submit
                                                  ↓
                               main thread: process_pending() → observers

Prerequisites:
    1. Create a ``.env`` file (or export variables):
       - ``METRICS_MQTT_HOST`` (required)
       - ``METRICS_MQTT_PORT`` (default 1883)
       - ``METRICS_MQTT_USERNAME`` / ``METRICS_MQTT_PASSWORD`` (optional)
    2. Install dependencies: ``pip install -e ".[examples]"``

Usage:
    python -m examples.example_live_metrics --bench 42 --metric cpu
    python -m examples.example_live_metrics --bench 42 --metric cpu --metric mem

Press Ctrl+C to stop.
"""

import argparse
import logging
import os
import time

from dotenv import load_dotenv

from core.commands import ResetSubscriptions, SubscribeMetrics
from core.metrics_store import MetricsStore
from infra.metrics_adapter import MetricsFeedAdapter, MetricsFeedAdapterConfig
from infra.metrics_mqtt import MetricsMQTTClient, MetricsMQTTConfig

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger: logging.Logger = logging.getLogger(__name__)


def main() -> None:
    """Subscribe to metrics of one benchmark and log series growth."""
    load_dotenv()

    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="Follow live benchmark metrics",
    )
    parser.add_argument("--bench", type=int, required=True, help="Benchmark id")
    parser.add_argument(
        "--metric",
        action="append",
        required=True,
        help="Metric name to follow (repeatable)",
    )
    parser.add_argument(
        "--topic-prefix",
        type=str,
        default="mzbench/metrics",
        help="MQTT topic prefix (default: mzbench/metrics)",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=0.1,
        help="Command poll interval in seconds (default: 0.1)",
    )
    args: argparse.Namespace = parser.parse_args()

    host: str = os.environ.get("METRICS_MQTT_HOST", "")
    if not host:
        logger.error("Missing METRICS_MQTT_HOST environment variable.")
        return

    mqtt_config: MetricsMQTTConfig = MetricsMQTTConfig(
        host=host,
        port=int(os.environ.get("METRICS_MQTT_PORT", "1883")),
        username=os.environ.get("METRICS_MQTT_USERNAME") or None,
        password=os.environ.get("METRICS_MQTT_PASSWORD") or None,
    )

    store: MetricsStore = MetricsStore()
    client: MetricsMQTTClient = MetricsMQTTClient(config=mqtt_config)
    adapter: MetricsFeedAdapter = MetricsFeedAdapter(
        config=MetricsFeedAdapterConfig(topic_prefix=args.topic_prefix),
        mqtt_client=client,
        on_command=store.submit,
    )
    store.set_subscription_sender(adapter.send_subscribe)

    metrics: list[str] = args.metric

    def on_change() -> None:
        for metric in metrics:
            logger.info(
                "%s: %d points, last at +%d",
                metric,
                len(store.get_series(metric)),
                store.get_max_relative_date(metric),
            )

    store.on_change(on_change)

    adapter.start()
    client.connect()

    # Wait for the broker before asking for data
    while not client.connected:
        time.sleep(0.1)

    store.submit(ResetSubscriptions(bench_id=args.bench))
    store.submit(SubscribeMetrics(metrics=frozenset(metrics)))

    try:
        while True:
            store.process_pending()
            time.sleep(args.poll_interval)
    except KeyboardInterrupt:
        logger.info("Stopping")
    finally:
        adapter.stop()
        client.shutdown()
        logger.info("Final stats: %s", store.stats().model_dump())


if __name__ == "__main__":
    main()
