from __future__ import annotations

import asyncio
import logging
from typing import Any

import asyncpg

from pgsub.domain.contracts import NOTIFY_CHANNEL
from pgsub.domain.error_taxonomy import is_transport_failure
from pgsub.domain.models import WakeEvent

logger = logging.getLogger("pgsub.listener")


class WakeStream:
    """Per-subscriber queue of wake events fanned out by a broadcaster.

    Wake events only mean "check for work", so when the queue is full new
    events are dropped instead of blocking the broadcaster.
    """

    def __init__(self, broadcaster: WakeBroadcaster, *, maxsize: int = 256) -> None:
        self._broadcaster = broadcaster
        self._queue: asyncio.Queue[WakeEvent] = asyncio.Queue(maxsize=max(maxsize, 1))
        self.closed = False
        self.dropped_total = 0

    def offer(self, event: WakeEvent) -> None:
        if self.closed:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped_total += 1

    async def next(self) -> WakeEvent:
        return await self._queue.get()

    def drain(self) -> int:
        drained = 0
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return drained
            drained += 1

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._broadcaster.discard(self)

    def __aiter__(self) -> WakeStream:
        return self

    async def __anext__(self) -> WakeEvent:
        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        return await self.next()


class WakeBroadcaster:
    def __init__(self) -> None:
        self._streams: set[WakeStream] = set()

    def open_stream(self, *, maxsize: int = 256) -> WakeStream:
        stream = WakeStream(self, maxsize=maxsize)
        self._streams.add(stream)
        return stream

    def discard(self, stream: WakeStream) -> None:
        self._streams.discard(stream)

    def broadcast(self, event: WakeEvent) -> None:
        for stream in list(self._streams):
            stream.offer(event)

    def close_streams(self) -> None:
        for stream in list(self._streams):
            stream.close()

    @property
    def subscriber_count(self) -> int:
        return len(self._streams)


def parse_notification_payload(payload: str | None) -> WakeEvent:
    try:
        message_id = int(payload) if payload is not None else None
    except ValueError:
        message_id = None
    return WakeEvent(message_id=message_id, source="notification")


class PostgresNotificationListener(WakeBroadcaster):
    """Holds one dedicated LISTEN connection and reconnects when it is lost.

    Notifications sent while disconnected are lost; after every reconnect a
    generic ``reconnect`` wake is broadcast so workers re-check their topics.
    """

    def __init__(
        self,
        *,
        dsn: str,
        channel: str = NOTIFY_CHANNEL,
        reconnect_initial_backoff_ms: int = 500,
        reconnect_max_backoff_ms: int = 10000,
        health_check_interval_ms: int = 5000,
        connect_timeout_seconds: float = 10.0,
    ) -> None:
        super().__init__()
        self.dsn = dsn
        self.channel = channel
        self.reconnect_initial_backoff_ms = reconnect_initial_backoff_ms
        self.reconnect_max_backoff_ms = reconnect_max_backoff_ms
        self.health_check_interval_ms = health_check_interval_ms
        self.connect_timeout_seconds = connect_timeout_seconds
        self.reconnects_total = 0
        self._conn: Any | None = None
        self._connected = False
        self._stop_event = asyncio.Event()
        self._lost_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def connected(self) -> bool:
        return self._connected

    async def start(self) -> None:
        if self._task is not None:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._supervise(), name=f"pgsub-listener-{self.channel}")

    async def stop(self) -> None:
        self._stop_event.set()
        self._lost_event.set()
        if self._task is not None:
            await self._task
            self._task = None
        self.close_streams()

    async def _supervise(self) -> None:
        backoff_ms = self.reconnect_initial_backoff_ms
        connected_before = False
        while not self._stop_event.is_set():
            try:
                await self._connect()
            except Exception as exc:
                level = logging.WARNING if is_transport_failure(exc) else logging.ERROR
                logger.log(
                    level,
                    "listener connect failed",
                    extra={"channel": self.channel, "retry_in_ms": backoff_ms, "error": str(exc)},
                )
                await self._sleep_unless_stopped(backoff_ms)
                backoff_ms = min(backoff_ms * 2, self.reconnect_max_backoff_ms)
                continue

            backoff_ms = self.reconnect_initial_backoff_ms
            if connected_before:
                self.reconnects_total += 1
                logger.info("listener reconnected", extra={"channel": self.channel})
                self.broadcast(WakeEvent(message_id=None, source="reconnect"))
            else:
                logger.info("listener connected", extra={"channel": self.channel})
            connected_before = True

            try:
                await self._watch_connection()
            finally:
                await self._disconnect()

            if not self._stop_event.is_set():
                logger.warning("listener connection lost", extra={"channel": self.channel})
                await self._sleep_unless_stopped(backoff_ms)

    async def _connect(self) -> None:
        self._lost_event.clear()
        conn = await asyncpg.connect(dsn=self.dsn, timeout=self.connect_timeout_seconds)
        try:
            conn.add_termination_listener(self._on_termination)
            await conn.add_listener(self.channel, self._on_notification)
        except BaseException:
            await conn.close()
            raise
        self._conn = conn
        self._connected = True

    async def _watch_connection(self) -> None:
        interval_seconds = max(self.health_check_interval_ms, 1) / 1000
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._lost_event.wait(), timeout=interval_seconds)
                return
            except TimeoutError:
                pass

            try:
                await asyncio.wait_for(self._conn.fetchval("SELECT 1"), timeout=interval_seconds)
            except Exception as exc:
                logger.warning(
                    "listener health check failed",
                    extra={"channel": self.channel, "error": str(exc)},
                )
                return

    async def _disconnect(self) -> None:
        conn, self._conn = self._conn, None
        self._connected = False
        if conn is None:
            return
        try:
            if not conn.is_closed():
                await conn.remove_listener(self.channel, self._on_notification)
                await conn.close(timeout=5)
        except Exception as exc:
            if not is_transport_failure(exc):
                raise
            conn.terminate()

    async def _sleep_unless_stopped(self, delay_ms: int) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay_ms / 1000)
        except TimeoutError:
            pass

    def _on_termination(self, conn: Any) -> None:
        del conn
        self._connected = False
        self._lost_event.set()

    def _on_notification(self, conn: Any, pid: int, channel: str, payload: str) -> None:
        del conn, pid
        if channel != self.channel:
            return
        self.broadcast(parse_notification_payload(payload))
