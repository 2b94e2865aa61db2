from __future__ import annotations

import asyncio
import logging
import os
import socket
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from types import TracebackType

from pgsub.domain.contracts import MessageRepository, NotificationSource
from pgsub.domain.errors import TopicNotFound
from pgsub.domain.lifecycle import RetryPolicy
from pgsub.domain.models import MessageId, MessageSnapshot, Topic, WorkerState
from pgsub.domain.validation import validate_content
from pgsub.repositories.postgres import AsyncpgPoolManager, PostgresMessageRepository
from pgsub.repositories.stub import InMemoryMessageRepository, InMemoryNotificationHub
from pgsub.workers.claim import ClaimEngine
from pgsub.workers.listener import PostgresNotificationListener, WakeStream
from pgsub.workers.loop import SubscriptionWorker, as_process_handler
from pgsub.workers.poller import PollTimer
from pgsub.workers.runner import (
    WorkerRuntimeSettings,
    WorkerRuntimeState,
    run_worker_until_stopped,
    worker_runtime_settings_from_env,
)

logger = logging.getLogger("pgsub.runtime")


def _new_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"


@dataclass
class Subscription:
    topic: str
    subscription_id: str
    worker: SubscriptionWorker
    wake_stream: WakeStream
    runtime_state: WorkerRuntimeState
    task: asyncio.Task[None]

    @property
    def state(self) -> WorkerState:
        return self.worker.state

    @property
    def done(self) -> bool:
        return self.task.done()

    def metrics(self) -> dict[str, int | bool]:
        return {
            "started": self.runtime_state.started,
            "stopped": self.runtime_state.stopped,
            "ticks_total": self.runtime_state.ticks_total,
            "claims_total": self.runtime_state.claims_total,
            "idle_ticks_total": self.runtime_state.idle_ticks_total,
            "errors_total": self.runtime_state.errors_total,
            "acked_total": self.worker.acked_total,
            "nacked_total": self.worker.nacked_total,
            "released_total": self.worker.released_total,
        }

    async def stop(self) -> None:
        """Signal the worker and wait for it to settle its in-flight message."""
        self.worker.stop_event.set()
        await self.wait()

    async def wait(self) -> None:
        """Wait for the worker task to end; a cancelled task counts as ended."""
        await asyncio.wait({self.task})
        if not self.task.cancelled() and self.task.exception() is not None:
            raise self.task.exception()


@dataclass
class PubSub:
    """Topic registry, publisher and subscription supervisor.

    The instance owns the notification source and, for the Postgres backend,
    the connection pool. Subscriptions share the notification source; each one
    runs as its own task with its own claimant id.
    """

    repository: MessageRepository
    notifications: NotificationSource
    settings: WorkerRuntimeSettings = field(default_factory=WorkerRuntimeSettings)
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    on_startup: Callable[[], Awaitable[None]] | None = None
    on_shutdown: Callable[[], Awaitable[None]] | None = None
    mode: str = "skeleton"
    run_id: str = ""
    subscriptions: list[Subscription] = field(default_factory=list)
    started: bool = False

    @classmethod
    def from_dsn(
        cls,
        dsn: str,
        *,
        settings: WorkerRuntimeSettings | None = None,
        retry_policy: RetryPolicy | None = None,
        run_id: str = "",
    ) -> PubSub:
        settings = settings or worker_runtime_settings_from_env()
        pool_manager = AsyncpgPoolManager(dsn=dsn)
        listener = PostgresNotificationListener(
            dsn=dsn,
            reconnect_initial_backoff_ms=settings.reconnect_initial_backoff_ms,
            reconnect_max_backoff_ms=settings.reconnect_max_backoff_ms,
            health_check_interval_ms=settings.listener_health_check_ms,
        )
        return cls(
            repository=PostgresMessageRepository(pool_manager=pool_manager),
            notifications=listener,
            settings=settings,
            retry_policy=retry_policy or RetryPolicy(),
            on_startup=pool_manager.startup,
            on_shutdown=pool_manager.shutdown,
            mode="postgres",
            run_id=run_id,
        )

    @classmethod
    def in_memory(
        cls,
        *,
        settings: WorkerRuntimeSettings | None = None,
        retry_policy: RetryPolicy | None = None,
        notifications_enabled: bool = True,
        run_id: str = "",
    ) -> PubSub:
        hub = InMemoryNotificationHub(enabled=notifications_enabled)
        return cls(
            repository=InMemoryMessageRepository(notifications=hub),
            notifications=hub,
            settings=settings or WorkerRuntimeSettings(),
            retry_policy=retry_policy or RetryPolicy(),
            run_id=run_id,
        )

    async def start(self) -> None:
        if self.started:
            return
        if self.on_startup is not None:
            await self.on_startup()
        await self.notifications.start()
        self.started = True
        logger.info("pubsub started", extra={"run_id": self.run_id, "mode": self.mode})

    async def shutdown(self) -> None:
        if not self.started:
            return
        subscriptions, self.subscriptions = self.subscriptions, []
        for subscription in subscriptions:
            subscription.worker.stop_event.set()
        results = await asyncio.gather(
            *(subscription.wait() for subscription in subscriptions),
            return_exceptions=True,
        )
        for subscription, result in zip(subscriptions, results):
            if isinstance(result, Exception):
                logger.error(
                    "subscription ended with error",
                    exc_info=result,
                    extra={"run_id": self.run_id, "topic": subscription.topic, "subscription_id": subscription.subscription_id},
                )
        await self.notifications.stop()
        if self.on_shutdown is not None:
            await self.on_shutdown()
        self.started = False
        logger.info("pubsub stopped", extra={"run_id": self.run_id, "mode": self.mode})

    async def __aenter__(self) -> PubSub:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.shutdown()

    async def add_topic(self, name: str) -> Topic:
        return await self.repository.add_topic(name=name)

    async def remove_topic(self, name: str) -> None:
        await self.repository.remove_topic(name=name)

    async def list_topics(self) -> list[Topic]:
        return await self.repository.list_topics()

    async def push(self, topic: str, content: bytes) -> MessageId:
        payload = validate_content(content)
        return await self.repository.push(topic=topic, content=payload)

    async def get_message(self, message_id: MessageId) -> MessageSnapshot | None:
        return await self.repository.get_message(message_id=message_id)

    async def subscribe(
        self,
        topic: str,
        handler: object,
        *,
        retry_policy: RetryPolicy | None = None,
    ) -> Subscription:
        """Start consuming ``topic`` with ``handler`` in a background task.

        The handler receives the message content and may be an async or sync
        callable or an object with a ``process`` method.
        """
        process = as_process_handler(handler)
        policy = retry_policy or self.retry_policy
        if await self.repository.get_topic(name=topic) is None:
            raise TopicNotFound(topic)
        if policy.dead_letter_topic is not None and await self.repository.get_topic(name=policy.dead_letter_topic) is None:
            raise TopicNotFound(policy.dead_letter_topic)

        await self.start()
        subscription_id = uuid.uuid4().hex[:12]
        engine = ClaimEngine(
            repository=self.repository,
            worker_id=_new_worker_id(),
            lease_seconds=self.settings.claim_lease_seconds,
            retry_policy=policy,
            transport_retry_attempts=self.settings.transport_retry_attempts,
            transport_retry_backoff_ms=self.settings.transport_retry_backoff_ms,
        )
        worker = SubscriptionWorker(
            topic=topic,
            engine=engine,
            process=process,
            heartbeat_interval_ms=self.settings.heartbeat_interval_ms,
            subscription_id=subscription_id,
        )
        # Opened before the first claim pass so no notification is missed in between.
        wake_stream = self.notifications.open_stream()
        runtime_state = WorkerRuntimeState()
        task = asyncio.create_task(
            run_worker_until_stopped(
                worker=worker,
                wake_stream=wake_stream,
                poll_timer=PollTimer(interval_ms=self.settings.poll_interval_ms),
                settings=self.settings,
                logger=logger,
                run_id=self.run_id,
                state=runtime_state,
            ),
            name=f"pgsub-subscription-{topic}-{subscription_id}",
        )
        subscription = Subscription(
            topic=topic,
            subscription_id=subscription_id,
            worker=worker,
            wake_stream=wake_stream,
            runtime_state=runtime_state,
            task=task,
        )
        self.subscriptions.append(subscription)
        logger.info(
            "subscription registered",
            extra={"run_id": self.run_id, "topic": topic, "subscription_id": subscription_id, "worker_id": engine.worker_id},
        )
        return subscription

    @property
    def listener_connected(self) -> bool:
        return self.notifications.connected
