"""Unit tests for core.metrics_store module.

Tests MetricsStore: command handling through the queue, session-control
operations clearing the table, subscription requests, change
notifications, read accessors and stats.
"""

import logging
import threading
from unittest.mock import Mock

import pytest
from pydantic import ValidationError

from core.commands import (
    ChangeSession,
    MetricData,
    MetricsBatchFinished,
    ResetSubscriptions,
    SubscribeMetrics,
)
from core.dispatcher import CommandQueueConfig
from core.metrics_store import MetricsStore, MetricsStoreConfig, MetricsStoreStats
from core.observations import Observation


@pytest.fixture()
def sender() -> Mock:
    """Return a mock subscription sender."""
    return Mock()


@pytest.fixture()
def store(sender: Mock) -> MetricsStore:
    """Return a store in session (bench=1, token='T')."""
    sut: MetricsStore = MetricsStore(send_subscribe=sender)
    sut.change_session(1, "T")
    return sut


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


class TestConfig:
    """Tests for MetricsStoreConfig."""

    def test_defaults(self) -> None:
        """Default batch size and queue length."""
        config: MetricsStoreConfig = MetricsStoreConfig()
        assert config.max_commands_per_poll == 1000
        assert config.queue.maxlen == 100_000

    def test_zero_batch_rejected(self) -> None:
        """max_commands_per_poll must be > 0."""
        with pytest.raises(ValidationError):
            MetricsStoreConfig(max_commands_per_poll=0)


# ---------------------------------------------------------------------------
# Session control
# ---------------------------------------------------------------------------


class TestSessionControl:
    """Tests for reset_subscriptions / change_session / mark_batch_finished."""

    def test_reset_clears_all_series(self, store: MetricsStore) -> None:
        """After a reset, every metric is empty and bench id is updated."""
        store.ingest("cpu", "T", "1000\t0.5")
        store.ingest("mem", "T", "1001\t2.0")
        store.reset_subscriptions(99)
        assert store.get_current_bench_id() == 99
        assert store.get_series("cpu") == ()
        assert store.get_series("mem") == ()
        assert store.metric_names() == []
        assert store.session.origin_date is None

    def test_reset_invalidates_old_token(self, store: MetricsStore) -> None:
        """Data for the pre-reset token is discarded."""
        store.reset_subscriptions(2)
        assert store.ingest("cpu", "T", "1\t1.0") == 0
        assert store.ingest("cpu", store.session.token, "1\t1.0") == 1

    def test_change_session_clears_loaded(self, store: MetricsStore) -> None:
        """change_session() clears the raw loaded flag."""
        store.mark_batch_finished("T")
        assert store.session.loaded is True
        store.change_session(2, "U")
        assert store.session.loaded is False
        assert store.is_loaded() is True

    def test_mark_batch_finished_stale(self, store: MetricsStore) -> None:
        """A stale token does not set the loaded flag."""
        store.mark_batch_finished("nope")
        assert store.session.loaded is False


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


class TestCommands:
    """Tests for the queued command path."""

    def test_metric_data_ingested_and_notifies(self, store: MetricsStore) -> None:
        """MetricData is ingested, then observers are notified."""
        seen: list[tuple[Observation, ...]] = []
        store.on_change(lambda: seen.append(store.get_series("cpu")))
        store.submit(MetricData(metric="cpu", token="T", data="1000\t0.5\n1001\t0.7"))
        assert store.process_pending() == 1
        assert seen == [
            (
                Observation(relative_date=0, value=0.5),
                Observation(relative_date=1, value=0.7),
            ),
        ]

    def test_stale_metric_data_still_notifies(self, store: MetricsStore) -> None:
        """A stale MetricData changes nothing but still notifies."""
        observer: Mock = Mock()
        store.on_change(observer)
        store.submit(MetricData(metric="cpu", token="old", data="1\t1.0"))
        store.process_pending()
        observer.assert_called_once_with()
        assert store.get_series("cpu") == ()

    def test_subscribe_sends_request(self, store: MetricsStore, sender: Mock) -> None:
        """SubscribeMetrics forwards bench id, metrics and token."""
        observer: Mock = Mock()
        store.on_change(observer)
        store.submit(SubscribeMetrics(metrics=frozenset({"cpu", "mem"})))
        store.process_pending()
        sender.assert_called_once_with(1, frozenset({"cpu", "mem"}), "T")
        observer.assert_not_called()

    def test_failing_sender_does_not_drop_later_commands(
        self,
        store: MetricsStore,
        sender: Mock,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """A raising sender is logged and counted; the batch continues."""
        sender.side_effect = OSError("publish failed")
        store.submit(SubscribeMetrics(metrics=frozenset({"cpu"})))
        store.submit(MetricData(metric="cpu", token="T", data="1000\t0.5"))
        with caplog.at_level(logging.ERROR, logger="core.metrics_store"):
            assert store.process_pending() == 2
        assert store.get_series("cpu") == (Observation(relative_date=0, value=0.5),)
        assert store.stats().subscribe_errors == 1
        assert store.stats().queue.queue_len == 0
        assert any("Subscription request" in r.getMessage() for r in caplog.records)

    def test_subscribe_without_sender_is_dropped(self) -> None:
        """With no sender bound, the request is dropped without error."""
        store: MetricsStore = MetricsStore()
        store.handle(SubscribeMetrics(metrics=frozenset({"cpu"})))
        assert store.stats().commands_applied == 1

    def test_subscribe_uses_late_bound_sender(self) -> None:
        """set_subscription_sender() binds the sender after construction."""
        store: MetricsStore = MetricsStore()
        sender: Mock = Mock()
        store.set_subscription_sender(sender)
        store.handle(SubscribeMetrics(metrics=frozenset({"cpu"})))
        sender.assert_called_once()

    def test_session_commands(self, store: MetricsStore) -> None:
        """Session-control commands apply and notify."""
        observer: Mock = Mock()
        store.on_change(observer)
        store.submit(ResetSubscriptions(bench_id=5))
        store.submit(ChangeSession(bench_id=6, token="V"))
        store.submit(MetricsBatchFinished(token="V"))
        assert store.process_pending() == 3
        assert store.get_current_bench_id() == 6
        assert store.session.token == "V"
        assert store.session.loaded is True
        assert observer.call_count == 3

    def test_commands_applied_in_order(self, store: MetricsStore) -> None:
        """A reset between two batches drops the earlier data."""
        store.submit(MetricData(metric="cpu", token="T", data="1\t1.0"))
        store.submit(ChangeSession(bench_id=1, token="U"))
        store.submit(MetricData(metric="cpu", token="U", data="50\t2.0"))
        store.process_pending()
        assert store.get_series("cpu") == (Observation(relative_date=0, value=2.0),)

    def test_process_pending_batch_limit(self, store: MetricsStore) -> None:
        """process_pending() applies at most max_commands."""
        for i in range(5):
            store.submit(MetricData(metric="cpu", token="T", data=f"{i}\t1.0"))
        assert store.process_pending(max_commands=2) == 2
        assert len(store.get_series("cpu")) == 2
        assert store.process_pending() == 3

    def test_unknown_command_rejected(self, store: MetricsStore) -> None:
        """handle() raises TypeError for unsupported objects."""
        with pytest.raises(TypeError):
            store.handle("not a command")  # type: ignore[arg-type]

    def test_queue_config_applied(self) -> None:
        """The store's queue uses the configured maxlen."""
        store: MetricsStore = MetricsStore(
            config=MetricsStoreConfig(queue=CommandQueueConfig(maxlen=3)),
        )
        assert store.stats().queue.maxlen == 3


# ---------------------------------------------------------------------------
# Observers
# ---------------------------------------------------------------------------


class TestObservers:
    """Tests for on_change / off."""

    def test_off_stops_notifications(self, store: MetricsStore) -> None:
        """A removed observer is not called again."""
        observer: Mock = Mock()
        handle: int = store.on_change(observer)
        assert store.off(handle) is True
        store.emit_change()
        observer.assert_not_called()

    def test_direct_calls_do_not_notify(self, store: MetricsStore) -> None:
        """Direct session-control calls do not emit."""
        observer: Mock = Mock()
        store.on_change(observer)
        store.reset_subscriptions(2)
        store.ingest("cpu", store.session.token, "1\t1.0")
        observer.assert_not_called()


# ---------------------------------------------------------------------------
# Accessors
# ---------------------------------------------------------------------------


class TestAccessors:
    """Tests for read accessors and stats."""

    def test_unknown_metric_sentinels(self, store: MetricsStore) -> None:
        """Unknown metrics answer with empty series and 0."""
        assert store.get_series("nope") == ()
        assert store.get_max_relative_date("nope") == 0

    def test_fresh_store(self) -> None:
        """A brand-new store has no bench id and reports loaded."""
        store: MetricsStore = MetricsStore()
        assert store.get_current_bench_id() is None
        assert store.is_loaded() is True

    def test_stats(self, store: MetricsStore) -> None:
        """stats() aggregates every component."""
        store.on_change(Mock())
        store.submit(MetricData(metric="cpu", token="T", data="1\t1.0\nbad"))
        store.process_pending()
        stats: MetricsStoreStats = store.stats()
        assert stats.session.token == "T"
        assert stats.series.observation_count == 1
        assert stats.pipeline.lines_dropped == 1
        assert stats.queue.total_polled == 1
        assert stats.observers == 1
        assert stats.observer_errors == 0
        assert stats.subscribe_errors == 0
        assert stats.commands_applied == 1


def test_submit_from_many_threads() -> None:
    """Concurrent producers lose no commands and keep the counters consistent."""
    store: MetricsStore = MetricsStore()
    store.change_session(1, "T")
    per_thread: int = 2000

    def produce(metric: str) -> None:
        for i in range(per_thread):
            store.submit(MetricData(metric=metric, token="T", data=f"{i}\t1.0"))

    producers: list[threading.Thread] = [
        threading.Thread(target=produce, args=(f"m{n}",)) for n in range(4)
    ]
    for producer in producers:
        producer.start()
    for producer in producers:
        producer.join()

    assert store.stats().queue.total_pushed == 4 * per_thread
    assert store.process_pending(max_commands=10_000) == 4 * per_thread
    for n in range(4):
        assert len(store.get_series(f"m{n}")) == per_thread
