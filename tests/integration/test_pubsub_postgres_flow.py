from __future__ import annotations

import asyncio
from collections import Counter

import pytest

from examples.json_payloads import MyData, main as json_payloads_main
from pgsub.domain.lifecycle import MessageStatus
from pgsub.pubsub import PubSub
from pgsub.workers.listener import PostgresNotificationListener
from pgsub.workers.runner import WorkerRuntimeSettings
from tests.integration.postgres_test_utils import fresh_schema, require_postgres

SLOW_POLL_SETTINGS = WorkerRuntimeSettings(poll_interval_ms=60000, listener_health_check_ms=200)


async def _wait_until(predicate, *, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.mark.integration
def test_listener_receives_insert_notifications() -> None:
    dsn = require_postgres()

    async def _run() -> None:
        await fresh_schema(dsn=dsn)
        listener = PostgresNotificationListener(dsn=dsn, health_check_interval_ms=200)
        stream = listener.open_stream()
        await listener.start()
        try:
            await _wait_until(lambda: listener.connected)
            async with PubSub.from_dsn(dsn, settings=SLOW_POLL_SETTINGS) as pubsub:
                await pubsub.add_topic("orders")
                message_id = await pubsub.push("orders", b"x")
            event = await asyncio.wait_for(stream.next(), timeout=5)
            assert event.message_id == message_id
            assert event.source == "notification"
        finally:
            await listener.stop()

    asyncio.run(_run())


@pytest.mark.integration
def test_notification_driven_delivery_end_to_end() -> None:
    dsn = require_postgres()
    received: list[bytes] = []

    async def _run() -> None:
        await fresh_schema(dsn=dsn)
        async with PubSub.from_dsn(dsn, settings=SLOW_POLL_SETTINGS) as pubsub:
            await pubsub.add_topic("orders")
            subscription = await pubsub.subscribe("orders", received.append)
            await _wait_until(lambda: pubsub.listener_connected)

            message_id = await pubsub.push("orders", b"\x00payload\xff")
            await _wait_until(lambda: subscription.metrics()["acked_total"] == 1)

            snapshot = await pubsub.get_message(message_id)
            assert snapshot is not None
            assert snapshot.status == MessageStatus.PROCESSED

    asyncio.run(_run())
    assert received == [b"\x00payload\xff"]


@pytest.mark.integration
def test_competing_subscribers_across_instances_never_duplicate() -> None:
    dsn = require_postgres()
    seen: Counter[bytes] = Counter()
    settings = WorkerRuntimeSettings(poll_interval_ms=200)

    async def _handler(content: bytes) -> None:
        seen[content] += 1
        await asyncio.sleep(0)

    async def _run() -> None:
        await fresh_schema(dsn=dsn)
        first = PubSub.from_dsn(dsn, settings=settings)
        second = PubSub.from_dsn(dsn, settings=settings)
        async with first, second:
            await first.add_topic("orders")
            subscriptions = [await first.subscribe("orders", _handler) for _ in range(5)]
            subscriptions += [await second.subscribe("orders", _handler) for _ in range(5)]
            for index in range(100):
                await first.push("orders", f"m-{index}".encode())

            await _wait_until(lambda: sum(s.metrics()["acked_total"] for s in subscriptions) == 100, timeout=30)

    asyncio.run(_run())
    assert len(seen) == 100
    assert set(seen.values()) == {1}


@pytest.mark.integration
def test_shutdown_mid_handler_releases_message() -> None:
    dsn = require_postgres()

    async def _run() -> None:
        await fresh_schema(dsn=dsn)
        started = asyncio.Event()

        async def _slow(content: bytes) -> None:
            started.set()
            await asyncio.sleep(30)

        async with PubSub.from_dsn(dsn, settings=SLOW_POLL_SETTINGS) as pubsub:
            await pubsub.add_topic("orders")
            message_id = await pubsub.push("orders", b"x")
            subscription = await pubsub.subscribe("orders", _slow)
            await asyncio.wait_for(started.wait(), timeout=5)
            await subscription.stop()

            snapshot = await pubsub.get_message(message_id)
            assert snapshot is not None
            assert snapshot.status == MessageStatus.NEW
            assert snapshot.claimed_by is None
            assert snapshot.attempts == 0

    asyncio.run(_run())


@pytest.mark.integration
def test_json_payload_example_round_trips_through_postgres() -> None:
    dsn = require_postgres()

    async def _run() -> MyData:
        await fresh_schema(dsn=dsn)
        return await json_payloads_main(dsn)

    assert asyncio.run(_run()) == MyData(field1="Hello", field2=42)
