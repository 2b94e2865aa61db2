from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from enum import StrEnum

from pgsub.domain.contracts import MessageHandler, ProcessHandler
from pgsub.domain.errors import HandlerError, InvalidTransition, TransportError
from pgsub.domain.models import Message, MessageId, WorkerState
from pgsub.workers.claim import ClaimEngine

logger = logging.getLogger("pgsub.runtime")


def _is_async_callable(target: object) -> bool:
    return inspect.iscoroutinefunction(target) or inspect.iscoroutinefunction(getattr(target, "__call__", None))


def as_process_handler(handler: object) -> ProcessHandler:
    """Adapt a handler object, async function or plain function.

    Objects matching ``MessageHandler`` win over ``__call__``. Synchronous
    handlers run in a worker thread so they never block the event loop.
    """
    if isinstance(handler, MessageHandler) and callable(handler.process):
        target = handler.process
    else:
        target = handler
    if not callable(target):
        raise TypeError(f"handler must be callable or define process(), got {type(handler).__name__}")

    if _is_async_callable(target):

        async def _process(content: bytes) -> bool | None:
            return await target(content)

        return _process

    async def _process_in_thread(content: bytes) -> bool | None:
        result = await asyncio.to_thread(target, content)
        if inspect.isawaitable(result):
            result = await result
        return result

    return _process_in_thread


class _Outcome(StrEnum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    STOPPED = "stopped"
    LEASE_LOST = "lease_lost"


@dataclass
class SubscriptionWorker:
    topic: str
    engine: ClaimEngine
    process: ProcessHandler
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    heartbeat_interval_ms: int = 10000
    subscription_id: str = ""
    state: WorkerState = WorkerState.IDLE
    acked_total: int = 0
    nacked_total: int = 0
    released_total: int = 0
    dead_lettered_total: int = 0

    def enter(self, state: WorkerState) -> None:
        if state == self.state:
            return
        logger.debug(
            "subscription state changed",
            extra={
                "topic": self.topic,
                "subscription_id": self.subscription_id,
                "state": state.value,
                "previous_state": self.state.value,
            },
        )
        self.state = state

    async def run_once(self) -> bool:
        """Claim one message, run the handler and settle it.

        Returns False when there was nothing to claim.
        """
        if self.stop_event.is_set():
            return False

        self.enter(WorkerState.CLAIMING)
        message = await self.engine.claim(self.topic)
        if message is None:
            self.enter(WorkerState.WAITING_FOR_EVENT)
            return False

        self.enter(WorkerState.INVOKING)
        try:
            outcome, error = await self._invoke(message)
        except asyncio.CancelledError:
            self.enter(WorkerState.SHUTTING_DOWN)
            await asyncio.shield(self._release(message.id))
            raise

        if outcome == _Outcome.STOPPED:
            self.enter(WorkerState.SHUTTING_DOWN)
            await self._release(message.id)
            return True
        if outcome == _Outcome.LEASE_LOST:
            raise InvalidTransition("claim ownership is stale")

        self.enter(WorkerState.COMPLETING)
        if outcome == _Outcome.SUCCEEDED:
            await self.engine.ack(message.id)
            self.acked_total += 1
        else:
            nack_outcome = await self.engine.nack(message.id, error=error)
            self.nacked_total += 1
            if nack_outcome is not None and nack_outcome.dead_lettered:
                self.dead_lettered_total += 1
        self.enter(WorkerState.WAITING_FOR_EVENT)
        return True

    async def _invoke(self, message: Message) -> tuple[_Outcome, str | None]:
        lease_lost = asyncio.Event()
        handler_task = asyncio.create_task(self._call_handler(message))
        stop_task = asyncio.create_task(self.stop_event.wait())
        heartbeat_task = asyncio.create_task(self._heartbeat_loop(message.id, lease_lost))
        finished = False
        try:
            await asyncio.wait({handler_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
            finished = handler_task.done()
        finally:
            stop_task.cancel()
            heartbeat_task.cancel()
            if not handler_task.done():
                handler_task.cancel()
            await asyncio.gather(stop_task, heartbeat_task, handler_task, return_exceptions=True)

        if not finished:
            return _Outcome.STOPPED, None
        if lease_lost.is_set():
            return _Outcome.LEASE_LOST, None
        if handler_task.cancelled():
            return _Outcome.FAILED, str(HandlerError(message.id, asyncio.CancelledError()))
        return handler_task.result()

    async def _call_handler(self, message: Message) -> tuple[_Outcome, str | None]:
        try:
            result = await self.process(message.content)
        except Exception as exc:
            error = HandlerError(message.id, exc)
            logger.warning(
                "handler failed",
                exc_info=exc,
                extra=self._log_extra(message.id, attempts=message.attempts),
            )
            return _Outcome.FAILED, str(error)

        if result is False:
            error = HandlerError(message.id)
            logger.warning("handler reported failure", extra=self._log_extra(message.id, attempts=message.attempts))
            return _Outcome.FAILED, str(error)
        return _Outcome.SUCCEEDED, None

    async def _heartbeat_loop(self, message_id: MessageId, lease_lost: asyncio.Event) -> None:
        interval_seconds = max(self.heartbeat_interval_ms, 1) / 1000
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                heartbeat_ok = await self.engine.heartbeat(message_id)
            except TransportError:
                logger.warning("lease heartbeat failed", extra=self._log_extra(message_id))
                continue
            if not heartbeat_ok:
                logger.warning("claim lease lost", extra=self._log_extra(message_id))
                lease_lost.set()
                return

    async def _release(self, message_id: MessageId) -> None:
        try:
            await self.engine.release(message_id)
        except (InvalidTransition, TransportError):
            # The lease reclaim requeues the message if the release did not land.
            logger.exception("release on shutdown failed", extra=self._log_extra(message_id))
            return
        self.released_total += 1
        logger.info("in-flight message released", extra=self._log_extra(message_id))

    def _log_extra(self, message_id: MessageId, **extra: object) -> dict[str, object]:
        return {
            "topic": self.topic,
            "subscription_id": self.subscription_id,
            "worker_id": self.engine.worker_id,
            "message_id": message_id,
            **extra,
        }
