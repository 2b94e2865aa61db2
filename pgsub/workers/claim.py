from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from pgsub.domain.contracts import MessageRepository
from pgsub.domain.error_taxonomy import classify_error
from pgsub.domain.errors import InvalidTransition
from pgsub.domain.lifecycle import RetryPolicy
from pgsub.domain.models import Message, MessageId, NackOutcome

logger = logging.getLogger("pgsub.claim")

T = TypeVar("T")


@dataclass
class ClaimEngine:
    """Single entry point for every status-changing write on messages.

    Atomicity of ``claim`` comes from the repository; this layer adds the
    claimant identity, the retry policy and transport retries.
    """

    repository: MessageRepository
    worker_id: str
    lease_seconds: int = 30
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    transport_retry_attempts: int = 3
    transport_retry_backoff_ms: int = 200

    async def claim(self, topic: str) -> Message | None:
        return await self._call(
            "claim",
            lambda: self.repository.claim_next(
                topic=topic,
                worker_id=self.worker_id,
                lease_seconds=self.lease_seconds,
            ),
        )

    async def ack(self, message_id: MessageId) -> None:
        await self._call(
            "ack",
            lambda: self.repository.ack(message_id=message_id, worker_id=self.worker_id),
            message_id=message_id,
            settle=True,
        )

    async def nack(self, message_id: MessageId, *, error: str | None = None) -> NackOutcome | None:
        outcome = await self._call(
            "nack",
            lambda: self.repository.nack(
                message_id=message_id,
                worker_id=self.worker_id,
                error=error,
                max_attempts=self.retry_policy.max_attempts,
                dead_letter_topic=self.retry_policy.dead_letter_topic,
            ),
            message_id=message_id,
            settle=True,
        )
        if outcome is not None and outcome.dead_lettered:
            logger.warning(
                "message dead-lettered",
                extra={
                    "message_id": message_id,
                    "worker_id": self.worker_id,
                    "attempts": outcome.attempts,
                    "dead_letter_topic": self.retry_policy.dead_letter_topic,
                    "dead_letter_message_id": outcome.dead_letter_message_id,
                },
            )
        return outcome

    async def release(self, message_id: MessageId) -> None:
        await self._call(
            "release",
            lambda: self.repository.release(message_id=message_id, worker_id=self.worker_id),
            message_id=message_id,
            settle=True,
        )

    async def heartbeat(self, message_id: MessageId) -> bool:
        return await self._call(
            "heartbeat",
            lambda: self.repository.heartbeat_claim(
                message_id=message_id,
                worker_id=self.worker_id,
                lease_seconds=self.lease_seconds,
            ),
            message_id=message_id,
        )

    async def reclaim_expired(self, topic: str) -> int:
        reclaimed = await self._call("reclaim", lambda: self.repository.reclaim_expired_claims(topic=topic))
        if reclaimed:
            logger.warning(
                "expired claims requeued",
                extra={"topic": topic, "worker_id": self.worker_id, "reclaimed": reclaimed},
            )
        return reclaimed

    async def _call(
        self,
        operation: str,
        call: Callable[[], Awaitable[T]],
        *,
        message_id: MessageId | None = None,
        settle: bool = False,
    ) -> T | None:
        attempt = 0
        delay_ms = self.transport_retry_backoff_ms
        transport_failed = False
        while True:
            try:
                return await call()
            except InvalidTransition:
                # The first attempt may have committed before the connection
                # dropped; the ownership guard then rejects the retry.
                if settle and transport_failed:
                    logger.warning(
                        "settle outcome ambiguous after transport failure",
                        extra={"operation": operation, "message_id": message_id, "worker_id": self.worker_id},
                    )
                    return None
                raise
            except Exception as exc:
                if classify_error(exc) != "recoverable":
                    raise
                attempt += 1
                transport_failed = True
                if attempt >= self.transport_retry_attempts:
                    raise
                logger.warning(
                    "transport failure, retrying",
                    extra={
                        "operation": operation,
                        "message_id": message_id,
                        "worker_id": self.worker_id,
                        "attempt": attempt,
                        "retry_in_ms": delay_ms,
                        "error": str(exc),
                    },
                )
                await asyncio.sleep(delay_ms / 1000)
                delay_ms *= 2
