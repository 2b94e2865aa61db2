from __future__ import annotations

import asyncio
import threading
import time
from collections import Counter

import pytest

from pgsub.domain.errors import DuplicateTopic, TopicNotFound
from pgsub.domain.lifecycle import MessageStatus, RetryPolicy
from pgsub.domain.models import WorkerState
from pgsub.pubsub import PubSub
from pgsub.workers.runner import WorkerRuntimeSettings

FAST_SETTINGS = WorkerRuntimeSettings(poll_interval_ms=50, error_backoff_ms=5, heartbeat_interval_ms=1000)


async def _wait_until(predicate, *, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def _setter(event: asyncio.Event):
    async def _handler(content: bytes) -> None:
        event.set()

    return _handler


@pytest.mark.unit
def test_subscriber_receives_exact_payload_once() -> None:
    received: list[bytes] = []
    payload = bytes(range(256))

    async def _run() -> None:
        async with PubSub.in_memory(settings=FAST_SETTINGS) as pubsub:
            await pubsub.add_topic("orders")
            message_id = await pubsub.push("orders", payload)
            subscription = await pubsub.subscribe("orders", received.append)
            await _wait_until(lambda: subscription.metrics()["acked_total"] == 1)

            snapshot = await pubsub.get_message(message_id)
            assert snapshot is not None
            assert snapshot.status == MessageStatus.PROCESSED

    asyncio.run(_run())
    assert received == [payload]


@pytest.mark.unit
def test_poll_timer_delivers_when_notifications_are_dead() -> None:
    async def _run() -> float:
        done = asyncio.Event()
        async with PubSub.in_memory(settings=FAST_SETTINGS, notifications_enabled=False) as pubsub:
            await pubsub.add_topic("orders")
            await pubsub.subscribe("orders", _setter(done))
            await asyncio.sleep(0.01)
            loop = asyncio.get_running_loop()
            pushed_at = loop.time()
            await pubsub.push("orders", b"x")
            await asyncio.wait_for(done.wait(), timeout=1)
            return loop.time() - pushed_at

    elapsed = asyncio.run(_run())
    assert elapsed <= 2 * FAST_SETTINGS.poll_interval_ms / 1000 + 0.02


@pytest.mark.unit
def test_notification_wakes_subscriber_before_poll_interval() -> None:
    settings = WorkerRuntimeSettings(poll_interval_ms=60000)

    async def _run() -> None:
        done = asyncio.Event()
        async with PubSub.in_memory(settings=settings) as pubsub:
            await pubsub.add_topic("orders")
            await pubsub.subscribe("orders", _setter(done))
            await asyncio.sleep(0.01)
            await pubsub.push("orders", b"x")
            await asyncio.wait_for(done.wait(), timeout=1)

    asyncio.run(_run())


@pytest.mark.unit
def test_cancelled_subscription_leaves_in_flight_message_new() -> None:
    async def _run() -> None:
        started = asyncio.Event()

        async def _slow(content: bytes) -> None:
            started.set()
            await asyncio.sleep(10)

        async with PubSub.in_memory(settings=FAST_SETTINGS) as pubsub:
            await pubsub.add_topic("orders")
            message_id = await pubsub.push("orders", b"x")
            subscription = await pubsub.subscribe("orders", _slow)
            await asyncio.wait_for(started.wait(), timeout=1)

            subscription.task.cancel()
            await subscription.wait()

            snapshot = await pubsub.get_message(message_id)
            assert snapshot is not None
            assert snapshot.status == MessageStatus.NEW
            assert snapshot.attempts == 0
            assert subscription.done is True

    asyncio.run(_run())


@pytest.mark.unit
def test_competing_subscribers_never_share_a_message() -> None:
    seen: Counter[bytes] = Counter()

    async def _run() -> None:
        async with PubSub.in_memory(settings=FAST_SETTINGS) as pubsub:
            await pubsub.add_topic("orders")

            async def _handler(content: bytes) -> None:
                seen[content] += 1
                await asyncio.sleep(0)

            subscriptions = [await pubsub.subscribe("orders", _handler) for _ in range(10)]
            for index in range(100):
                await pubsub.push("orders", f"m-{index}".encode())

            await _wait_until(lambda: sum(s.metrics()["acked_total"] for s in subscriptions) == 100)

    asyncio.run(_run())
    assert len(seen) == 100
    assert set(seen.values()) == {1}


@pytest.mark.unit
def test_concurrent_duplicate_topic_registration_keeps_one_topic() -> None:
    async def _run() -> None:
        pubsub = PubSub.in_memory()
        results = await asyncio.gather(
            pubsub.add_topic("orders"),
            pubsub.add_topic("orders"),
            return_exceptions=True,
        )
        assert sum(isinstance(result, DuplicateTopic) for result in results) == 1
        assert [topic.name for topic in await pubsub.list_topics()] == ["orders"]

    asyncio.run(_run())


@pytest.mark.unit
def test_always_failing_handler_keeps_message_cycling() -> None:
    async def _run() -> None:
        async with PubSub.in_memory(settings=FAST_SETTINGS) as pubsub:
            await pubsub.add_topic("orders")
            message_id = await pubsub.push("orders", b"poison")
            subscription = await pubsub.subscribe("orders", lambda content: False)
            await _wait_until(lambda: subscription.metrics()["nacked_total"] >= 3)
            await subscription.stop()

            snapshot = await pubsub.get_message(message_id)
            assert snapshot is not None
            assert snapshot.status == MessageStatus.NEW
            assert snapshot.attempts >= 3
            assert subscription.state == WorkerState.STOPPED

    asyncio.run(_run())


@pytest.mark.unit
def test_retry_ceiling_dead_letters_the_message() -> None:
    dead_letters: list[bytes] = []

    async def _run() -> None:
        async with PubSub.in_memory(settings=FAST_SETTINGS) as pubsub:
            await pubsub.add_topic("orders")
            await pubsub.add_topic("orders.dlq")
            message_id = await pubsub.push("orders", b"poison")

            def _fail(content: bytes) -> None:
                raise RuntimeError("cannot handle")

            subscription = await pubsub.subscribe(
                "orders",
                _fail,
                retry_policy=RetryPolicy(max_attempts=3, dead_letter_topic="orders.dlq"),
            )
            await pubsub.subscribe("orders.dlq", dead_letters.append)
            await _wait_until(lambda: len(dead_letters) == 1)

            snapshot = await pubsub.get_message(message_id)
            assert snapshot is not None
            assert snapshot.status == MessageStatus.PROCESSED
            assert snapshot.attempts == 3
            assert subscription.metrics()["nacked_total"] == 3

    asyncio.run(_run())
    assert dead_letters == [b"poison"]


@pytest.mark.unit
def test_subscribe_and_push_validate_inputs() -> None:
    async def _run() -> None:
        pubsub = PubSub.in_memory()
        await pubsub.add_topic("orders")
        with pytest.raises(TopicNotFound):
            await pubsub.subscribe("missing", lambda content: None)
        with pytest.raises(TopicNotFound):
            await pubsub.subscribe(
                "orders",
                lambda content: None,
                retry_policy=RetryPolicy(max_attempts=1, dead_letter_topic="missing.dlq"),
            )
        with pytest.raises(TopicNotFound):
            await pubsub.push("missing", b"x")
        with pytest.raises(TypeError):
            await pubsub.push("orders", "text")  # type: ignore[arg-type]
        assert pubsub.subscriptions == []
        assert pubsub.started is False

    asyncio.run(_run())


@pytest.mark.unit
def test_shutdown_stops_every_subscription_and_is_idempotent() -> None:
    async def _run() -> None:
        pubsub = PubSub.in_memory(settings=FAST_SETTINGS)
        await pubsub.add_topic("a")
        await pubsub.add_topic("b")
        first = await pubsub.subscribe("a", lambda content: None)
        second = await pubsub.subscribe("b", lambda content: None)
        assert pubsub.started is True

        await pubsub.shutdown()
        await pubsub.shutdown()

        assert first.done and second.done
        assert first.metrics()["stopped"] is True
        assert second.state == WorkerState.STOPPED
        assert pubsub.subscriptions == []

    asyncio.run(_run())


@pytest.mark.unit
def test_blocking_sync_handler_does_not_stall_other_subscriptions() -> None:
    slow_started = threading.Event()

    def _blocking(content: bytes) -> None:
        slow_started.set()
        time.sleep(0.5)

    async def _run() -> float:
        done = asyncio.Event()
        async with PubSub.in_memory(settings=FAST_SETTINGS, notifications_enabled=False) as pubsub:
            await pubsub.add_topic("slow")
            await pubsub.add_topic("fast")
            await pubsub.subscribe("slow", _blocking)
            await pubsub.subscribe("fast", _setter(done))
            await pubsub.push("slow", b"x")
            await _wait_until(slow_started.is_set)

            loop = asyncio.get_running_loop()
            pushed_at = loop.time()
            await pubsub.push("fast", b"y")
            await asyncio.wait_for(done.wait(), timeout=1)
            return loop.time() - pushed_at

    elapsed = asyncio.run(_run())
    assert elapsed <= 2 * FAST_SETTINGS.poll_interval_ms / 1000 + 0.02


@pytest.mark.unit
def test_stop_during_blocking_sync_handler_releases_message() -> None:
    started = threading.Event()
    finished = threading.Event()

    def _blocking(content: bytes) -> None:
        started.set()
        time.sleep(0.3)
        finished.set()

    async def _run() -> None:
        async with PubSub.in_memory(settings=FAST_SETTINGS) as pubsub:
            await pubsub.add_topic("orders")
            message_id = await pubsub.push("orders", b"x")
            subscription = await pubsub.subscribe("orders", _blocking)
            await _wait_until(started.is_set)

            await asyncio.wait_for(subscription.stop(), timeout=0.2)
            assert finished.is_set() is False
            assert subscription.metrics()["released_total"] == 1

            snapshot = await pubsub.get_message(message_id)
            assert snapshot is not None
            assert snapshot.status == MessageStatus.NEW
            assert snapshot.attempts == 0
            assert snapshot.claimed_by is None

    asyncio.run(_run())
