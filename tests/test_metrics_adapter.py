"""Unit tests for infra.metrics_adapter module.

The MQTT transport is a Mock; the adapter is exercised through its
``_on_message`` hot path and ``send_subscribe`` outbound path.
"""

import json
import logging
from unittest.mock import MagicMock, Mock, call

import pytest
from pydantic import ValidationError

from core.commands import MetricData, MetricsBatchFinished
from core.metrics_store import MetricsStore
from infra.metrics_adapter import MetricsFeedAdapter, MetricsFeedAdapterConfig


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def mqtt_client() -> MagicMock:
    """Return a mocked MetricsMQTTClient."""
    return MagicMock()


@pytest.fixture()
def on_command() -> Mock:
    """Return a mock command callback."""
    return Mock()


@pytest.fixture()
def adapter(mqtt_client: MagicMock, on_command: Mock) -> MetricsFeedAdapter:
    """Return an adapter with the default prefix."""
    return MetricsFeedAdapter(
        config=MetricsFeedAdapterConfig(),
        mqtt_client=mqtt_client,
        on_command=on_command,
    )


# ---------------------------------------------------------------------------
# Config Tests
# ---------------------------------------------------------------------------


class TestMetricsFeedAdapterConfig:
    """Tests for MetricsFeedAdapterConfig Pydantic model."""

    def test_defaults(self) -> None:
        """Default prefix and QoS."""
        config: MetricsFeedAdapterConfig = MetricsFeedAdapterConfig()
        assert config.topic_prefix == "mzbench/metrics"
        assert config.subscribe_qos == 1

    @pytest.mark.parametrize(
        "prefix",
        ["", "/metrics", "metrics/", "metrics/#", "+/metrics"],
    )
    def test_bad_prefix_rejected(self, prefix: str) -> None:
        """Prefixes with edge slashes or wildcards are rejected."""
        with pytest.raises(ValidationError):
            MetricsFeedAdapterConfig(topic_prefix=prefix)

    def test_single_char_prefix(self) -> None:
        """A one-character prefix is valid."""
        assert MetricsFeedAdapterConfig(topic_prefix="m").topic_prefix == "m"

    def test_qos_bounds(self) -> None:
        """QoS must be 0..2."""
        with pytest.raises(ValidationError):
            MetricsFeedAdapterConfig(subscribe_qos=3)


# ---------------------------------------------------------------------------
# Lifecycle Tests
# ---------------------------------------------------------------------------


class TestLifecycle:
    """Tests for start() / stop()."""

    def test_start_subscribes_inbound_topics(
        self,
        adapter: MetricsFeedAdapter,
        mqtt_client: MagicMock,
    ) -> None:
        """start() registers the data and finished filters."""
        adapter.start()
        topics: list[str] = [
            c.kwargs["topic"] for c in mqtt_client.subscribe.call_args_list
        ]
        assert topics == ["mzbench/metrics/data/#", "mzbench/metrics/finished/+"]
        assert adapter.stats()["started"] is True

    def test_start_is_idempotent(
        self,
        adapter: MetricsFeedAdapter,
        mqtt_client: MagicMock,
    ) -> None:
        """A second start() does not subscribe again."""
        adapter.start()
        adapter.start()
        assert mqtt_client.subscribe.call_count == 2

    def test_stop_unsubscribes(
        self,
        adapter: MetricsFeedAdapter,
        mqtt_client: MagicMock,
    ) -> None:
        """stop() removes both filters; stopping twice is harmless."""
        adapter.start()
        adapter.stop()
        adapter.stop()
        assert mqtt_client.unsubscribe.call_args_list == [
            call(topic="mzbench/metrics/data/#"),
            call(topic="mzbench/metrics/finished/+"),
        ]
        assert adapter.stats()["started"] is False

    def test_stop_before_start(
        self,
        adapter: MetricsFeedAdapter,
        mqtt_client: MagicMock,
    ) -> None:
        """stop() without start() does nothing."""
        adapter.stop()
        mqtt_client.unsubscribe.assert_not_called()


# ---------------------------------------------------------------------------
# Decode Tests
# ---------------------------------------------------------------------------


class TestDecode:
    """Tests for topic/payload decoding on the hot path."""

    def test_data_message(
        self,
        adapter: MetricsFeedAdapter,
        on_command: Mock,
    ) -> None:
        """A data topic produces MetricData."""
        adapter._on_message("mzbench/metrics/data/tok/cpu", b"1000\t0.5")
        cmd = on_command.call_args.args[0]
        assert isinstance(cmd, MetricData)
        assert cmd.metric == "cpu"
        assert cmd.token == "tok"
        assert cmd.data == "1000\t0.5"
        assert adapter.stats()["messages_forwarded"] == 1

    def test_metric_name_with_slashes(
        self,
        adapter: MetricsFeedAdapter,
        on_command: Mock,
    ) -> None:
        """Everything after the token is the metric name."""
        adapter._on_message("mzbench/metrics/data/tok/net/eth0/rx", b"")
        cmd = on_command.call_args.args[0]
        assert cmd.metric == "net/eth0/rx"
        assert cmd.data == ""

    def test_finished_message(
        self,
        adapter: MetricsFeedAdapter,
        on_command: Mock,
    ) -> None:
        """A finished topic produces MetricsBatchFinished."""
        adapter._on_message("mzbench/metrics/finished/tok", b"")
        cmd = on_command.call_args.args[0]
        assert isinstance(cmd, MetricsBatchFinished)
        assert cmd.token == "tok"

    @pytest.mark.parametrize(
        "topic",
        [
            "mzbench/metrics/data/tok",
            "mzbench/metrics/data//cpu",
            "mzbench/metrics/finished/",
            "mzbench/metrics/other/tok",
            "elsewhere/data/tok/cpu",
        ],
    )
    def test_malformed_topic_counted(
        self,
        adapter: MetricsFeedAdapter,
        on_command: Mock,
        topic: str,
    ) -> None:
        """Topics outside the layout are parse errors."""
        adapter._on_message(topic, b"")
        on_command.assert_not_called()
        assert adapter.stats()["parse_errors"] == 1

    def test_invalid_utf8_counted(
        self,
        adapter: MetricsFeedAdapter,
        on_command: Mock,
    ) -> None:
        """A non-UTF-8 data payload is a parse error."""
        adapter._on_message("mzbench/metrics/data/tok/cpu", b"\xff\xfe")
        on_command.assert_not_called()
        assert adapter.stats()["parse_errors"] == 1

    def test_custom_prefix(self, mqtt_client: MagicMock, on_command: Mock) -> None:
        """Decoding follows the configured prefix."""
        adapter: MetricsFeedAdapter = MetricsFeedAdapter(
            config=MetricsFeedAdapterConfig(topic_prefix="lab/bench"),
            mqtt_client=mqtt_client,
            on_command=on_command,
        )
        adapter._on_message("lab/bench/finished/x", b"")
        assert on_command.call_args.args[0].token == "x"


# ---------------------------------------------------------------------------
# Error Isolation Tests
# ---------------------------------------------------------------------------


class TestErrorIsolation:
    """Tests for callback error counting and rate-limited logging."""

    def test_callback_error_counted_separately(
        self,
        adapter: MetricsFeedAdapter,
        on_command: Mock,
    ) -> None:
        """A raising consumer is a callback error, not a parse error."""
        on_command.side_effect = RuntimeError("boom")
        adapter._on_message("mzbench/metrics/finished/tok", b"")
        stats = adapter.stats()
        assert stats["callback_errors"] == 1
        assert stats["parse_errors"] == 0
        assert stats["messages_forwarded"] == 0

    def test_logging_rate_limited(
        self,
        adapter: MetricsFeedAdapter,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """Only the first 10 errors are logged until the 1000th."""
        with caplog.at_level(logging.ERROR, logger="infra.metrics_adapter"):
            for _ in range(1000):
                adapter._on_message("bad", b"")
        assert len(caplog.records) == 11
        assert adapter.stats()["parse_errors"] == 1000


# ---------------------------------------------------------------------------
# Outbound Tests
# ---------------------------------------------------------------------------


class TestSendSubscribe:
    """Tests for subscription request publishing."""

    def test_publishes_json_request(
        self,
        adapter: MetricsFeedAdapter,
        mqtt_client: MagicMock,
    ) -> None:
        """The request carries bench, sorted metrics and token."""
        adapter.send_subscribe(7, frozenset({"mem", "cpu"}), "tok")
        kwargs = mqtt_client.publish.call_args.kwargs
        assert kwargs["topic"] == "mzbench/metrics/subscribe"
        assert kwargs["qos"] == 1
        assert json.loads(kwargs["payload"]) == {
            "bench": 7,
            "metrics": ["cpu", "mem"],
            "guid": "tok",
        }
        assert adapter.stats()["subscribe_requests"] == 1

    def test_no_session_yet(
        self,
        adapter: MetricsFeedAdapter,
        mqtt_client: MagicMock,
    ) -> None:
        """Null bench id and token are sent as JSON null."""
        adapter.send_subscribe(None, frozenset(), None)
        payload = json.loads(mqtt_client.publish.call_args.kwargs["payload"])
        assert payload == {"bench": None, "metrics": [], "guid": None}


# ---------------------------------------------------------------------------
# Integration with MetricsStore
# ---------------------------------------------------------------------------


def test_end_to_end_with_store(mqtt_client: MagicMock) -> None:
    """Messages flow through the store queue into the series table."""
    store: MetricsStore = MetricsStore()
    adapter: MetricsFeedAdapter = MetricsFeedAdapter(
        config=MetricsFeedAdapterConfig(),
        mqtt_client=mqtt_client,
        on_command=store.submit,
    )
    store.set_subscription_sender(adapter.send_subscribe)
    store.reset_subscriptions(3)
    token: str = store.session.token

    store.add_subscription(frozenset({"cpu"}))
    adapter._on_message(f"mzbench/metrics/data/{token}/cpu", b"10\t1.0\n12\t2.0")
    adapter._on_message("mzbench/metrics/data/stale/cpu", b"11\t9.0")
    adapter._on_message(f"mzbench/metrics/finished/{token}", b"")
    assert store.process_pending() == 3

    assert [o.relative_date for o in store.get_series("cpu")] == [0, 2]
    assert store.session.loaded is True
    payload = json.loads(mqtt_client.publish.call_args.kwargs["payload"])
    assert payload["guid"] == token
