from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass

from pgsub.domain.lifecycle import RetryPolicy
from pgsub.domain.models import WakeSource, WorkerState
from pgsub.workers.listener import WakeStream
from pgsub.workers.loop import SubscriptionWorker
from pgsub.workers.poller import PollTimer


@dataclass(frozen=True)
class WorkerRuntimeSettings:
    poll_interval_ms: int = 2000
    error_backoff_ms: int = 1000
    claim_lease_seconds: int = 30
    heartbeat_interval_ms: int = 10000
    reconnect_initial_backoff_ms: int = 500
    reconnect_max_backoff_ms: int = 10000
    listener_health_check_ms: int = 5000
    transport_retry_attempts: int = 3
    transport_retry_backoff_ms: int = 200


@dataclass
class WorkerRuntimeState:
    started: bool = False
    stopped: bool = False
    ticks_total: int = 0
    claims_total: int = 0
    idle_ticks_total: int = 0
    errors_total: int = 0
    notification_wakeups_total: int = 0
    poll_wakeups_total: int = 0


def worker_runtime_settings_from_env() -> WorkerRuntimeSettings:
    return WorkerRuntimeSettings(
        poll_interval_ms=_env_int("PGSUB_POLL_INTERVAL_MS", 2000),
        error_backoff_ms=_env_int("PGSUB_ERROR_BACKOFF_MS", 1000),
        claim_lease_seconds=_env_int("PGSUB_CLAIM_LEASE_SECONDS", 30),
        heartbeat_interval_ms=_env_int("PGSUB_HEARTBEAT_INTERVAL_MS", 10000),
        reconnect_initial_backoff_ms=_env_int("PGSUB_RECONNECT_INITIAL_BACKOFF_MS", 500),
        reconnect_max_backoff_ms=_env_int("PGSUB_RECONNECT_MAX_BACKOFF_MS", 10000),
        listener_health_check_ms=_env_int("PGSUB_LISTENER_HEALTH_CHECK_MS", 5000),
        transport_retry_attempts=_env_int("PGSUB_TRANSPORT_RETRY_ATTEMPTS", 3),
        transport_retry_backoff_ms=_env_int("PGSUB_TRANSPORT_RETRY_BACKOFF_MS", 200),
    )


def retry_policy_from_env() -> RetryPolicy:
    max_attempts = _env_int("PGSUB_MAX_ATTEMPTS", 0) or None
    dead_letter_topic = os.getenv("PGSUB_DEAD_LETTER_TOPIC") or None
    if max_attempts is None:
        dead_letter_topic = None
    return RetryPolicy(max_attempts=max_attempts, dead_letter_topic=dead_letter_topic)


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default

    try:
        parsed = int(value)
    except ValueError:
        return default

    return parsed if parsed > 0 else default


async def run_worker_until_stopped(
    *,
    worker: SubscriptionWorker,
    wake_stream: WakeStream,
    poll_timer: PollTimer,
    settings: WorkerRuntimeSettings,
    logger: logging.Logger,
    run_id: str = "",
    state: WorkerRuntimeState | None = None,
) -> None:
    """Drive one subscription until its stop event is set or it is cancelled.

    A claim pass runs at start, then after every wake from the notification
    stream or the poll timer, whichever fires first. Each pass claims until
    the topic has nothing pending.
    """
    stop_event = worker.stop_event
    log_extra = {"run_id": run_id, "topic": worker.topic, "subscription_id": worker.subscription_id}
    if state is not None:
        state.started = True

    logger.info("subscription started", extra=log_extra)
    worker.enter(WorkerState.WAITING_FOR_EVENT)
    reclaim_due = True
    try:
        while not stop_event.is_set():
            try:
                if reclaim_due:
                    await worker.engine.reclaim_expired(worker.topic)
                    reclaim_due = False
                await _claim_until_idle(worker, state, logger, log_extra)
            except Exception:
                if state is not None:
                    state.ticks_total += 1
                    state.errors_total += 1
                logger.exception("subscription tick error", extra={**log_extra, "state": worker.state.value})
                worker.enter(WorkerState.WAITING_FOR_EVENT)
                await _wait_stop(stop_event, settings.error_backoff_ms)
                continue

            if stop_event.is_set():
                break

            worker.enter(WorkerState.WAITING_FOR_EVENT)
            source = await _wait_for_wake(wake_stream, poll_timer, stop_event)
            if source is None:
                break
            wake_stream.drain()
            if state is not None:
                if source == "poll":
                    state.poll_wakeups_total += 1
                else:
                    state.notification_wakeups_total += 1
            reclaim_due = source == "poll"
    finally:
        worker.enter(WorkerState.SHUTTING_DOWN)
        wake_stream.close()
        worker.enter(WorkerState.STOPPED)
        if state is not None:
            state.stopped = True
        logger.info("subscription stopped", extra=log_extra)


async def _claim_until_idle(
    worker: SubscriptionWorker,
    state: WorkerRuntimeState | None,
    logger: logging.Logger,
    log_extra: dict[str, str],
) -> None:
    while not worker.stop_event.is_set():
        did_work = await worker.run_once()
        if state is not None:
            state.ticks_total += 1
            if did_work:
                state.claims_total += 1
            else:
                state.idle_ticks_total += 1
        logger.debug("subscription tick", extra={**log_extra, "did_work": str(did_work).lower()})
        if not did_work:
            return


async def _wait_for_wake(
    wake_stream: WakeStream,
    poll_timer: PollTimer,
    stop_event: asyncio.Event,
) -> WakeSource | None:
    wake_task = asyncio.create_task(wake_stream.next())
    tick_task = asyncio.create_task(poll_timer.wait_next_tick())
    stop_task = asyncio.create_task(stop_event.wait())
    tasks = (wake_task, tick_task, stop_task)
    try:
        await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    if stop_task.done() and not stop_task.cancelled():
        return None
    # A finished tick has already advanced the timer, so it wins over a wake
    # that completed in the same step; otherwise its reclaim would be lost.
    if tick_task.done() and not tick_task.cancelled():
        return "poll"
    return wake_task.result().source


async def _wait_stop(stop_event: asyncio.Event, delay_ms: int) -> None:
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=delay_ms / 1000)
    except TimeoutError:
        pass
