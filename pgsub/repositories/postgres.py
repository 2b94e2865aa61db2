from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

import asyncpg

from pgsub.domain.error_taxonomy import is_foreign_key_violation, is_transport_failure, is_unique_violation
from pgsub.domain.errors import (
    DuplicateTopic,
    InvalidTransition,
    PubSubError,
    TopicInUse,
    TopicNotFound,
    TransportError,
)
from pgsub.domain.lifecycle import LEASE_EXPIRED_ERROR, MessageStatus
from pgsub.domain.models import Message, MessageId, MessageSnapshot, NackOutcome, Topic
from pgsub.domain.validation import validate_topic_name
from pgsub.repositories.sql_loader import load_sql


SQL_ADD_TOPIC = load_sql("add_topic.sql")
SQL_REMOVE_TOPIC = load_sql("remove_topic.sql")
SQL_GET_TOPIC = load_sql("get_topic.sql")
SQL_LIST_TOPICS = load_sql("list_topics.sql")
SQL_PUSH = load_sql("push.sql")
SQL_CLAIM_NEXT = load_sql("claim_next.sql")
SQL_ACK = load_sql("ack.sql")
SQL_NACK = load_sql("nack.sql")
SQL_RELEASE = load_sql("release.sql")
SQL_HEARTBEAT_CLAIM = load_sql("heartbeat_claim.sql")
SQL_RECLAIM_EXPIRED = load_sql("reclaim_expired.sql")
SQL_GET_MESSAGE = load_sql("get_message.sql")
SQL_COUNT_MESSAGES = load_sql("count_messages.sql")


@dataclass
class AsyncpgPoolManager:
    dsn: str
    min_size: int = 1
    max_size: int = 10
    pool: Any | None = None

    async def startup(self) -> None:
        if self.pool is not None:
            return
        try:
            self.pool = await asyncpg.create_pool(
                dsn=self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
            )
        except Exception as exc:
            if is_transport_failure(exc):
                raise TransportError(f"cannot connect to database: {exc}") from exc
            raise PubSubError(f"cannot connect to database: {exc}") from exc

    async def shutdown(self) -> None:
        if self.pool is None:
            return
        await self.pool.close()
        self.pool = None


@dataclass
class PostgresMessageRepository:
    pool_manager: AsyncpgPoolManager

    def _pool(self) -> Any:
        if self.pool_manager.pool is None:
            raise RuntimeError("postgres pool is not initialized")
        return self.pool_manager.pool

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[Any]:
        pool = self._pool()
        try:
            async with pool.acquire() as conn:
                yield conn
        except PubSubError:
            raise
        except Exception as exc:
            if is_transport_failure(exc):
                raise TransportError(str(exc) or type(exc).__name__) from exc
            raise

    async def add_topic(self, *, name: str) -> Topic:
        validate_topic_name(name)
        async with self._connection() as conn:
            try:
                row = await conn.fetchrow(SQL_ADD_TOPIC, name)
            except Exception as exc:
                if is_unique_violation(exc):
                    raise DuplicateTopic(name) from exc
                raise
        return Topic(id=row["id"], name=row["name"])

    async def remove_topic(self, *, name: str) -> None:
        async with self._connection() as conn:
            try:
                row = await conn.fetchrow(SQL_REMOVE_TOPIC, name)
            except Exception as exc:
                if is_foreign_key_violation(exc):
                    raise TopicInUse(name) from exc
                raise
        if row is None:
            raise TopicNotFound(name)

    async def get_topic(self, *, name: str) -> Topic | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(SQL_GET_TOPIC, name)
        if row is None:
            return None
        return Topic(id=row["id"], name=row["name"])

    async def list_topics(self) -> list[Topic]:
        async with self._connection() as conn:
            rows = await conn.fetch(SQL_LIST_TOPICS)
        return [Topic(id=row["id"], name=row["name"]) for row in rows]

    async def push(self, *, topic: str, content: bytes) -> MessageId:
        async with self._connection() as conn:
            message_id = await conn.fetchval(SQL_PUSH, topic, bytes(content))
        if message_id is None:
            raise TopicNotFound(topic)
        return message_id

    async def claim_next(self, *, topic: str, worker_id: str, lease_seconds: int = 30) -> Message | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(SQL_CLAIM_NEXT, topic, worker_id, lease_seconds)
        if row is None:
            return None
        return Message(
            id=row["id"],
            topic=topic,
            content=bytes(row["content"]),
            attempts=row["attempts"],
            published_at=row["published_at"],
        )

    async def ack(self, *, message_id: MessageId, worker_id: str) -> None:
        async with self._connection() as conn:
            row = await conn.fetchrow(SQL_ACK, message_id, worker_id)
        if row is None:
            raise InvalidTransition(f"ack rejected: message {message_id} is not processing for {worker_id}")

    async def nack(
        self,
        *,
        message_id: MessageId,
        worker_id: str,
        error: str | None = None,
        max_attempts: int | None = None,
        dead_letter_topic: str | None = None,
    ) -> NackOutcome:
        async with self._connection() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(SQL_NACK, message_id, worker_id, error, max_attempts)
                if row is None:
                    raise InvalidTransition(f"nack rejected: message {message_id} is not processing for {worker_id}")
                if row["status"] != MessageStatus.PROCESSED:
                    return NackOutcome(message_id=message_id, attempts=row["attempts"])

                dead_letter_message_id = None
                if dead_letter_topic is not None:
                    dead_letter_message_id = await conn.fetchval(SQL_PUSH, dead_letter_topic, row["content"])
                    if dead_letter_message_id is None:
                        # Rolls back the nack too; the lease reclaim requeues the message later.
                        raise TopicNotFound(dead_letter_topic)
        return NackOutcome(
            message_id=message_id,
            attempts=row["attempts"],
            dead_lettered=True,
            dead_letter_message_id=dead_letter_message_id,
        )

    async def release(self, *, message_id: MessageId, worker_id: str) -> None:
        async with self._connection() as conn:
            row = await conn.fetchrow(SQL_RELEASE, message_id, worker_id)
        if row is None:
            raise InvalidTransition(f"release rejected: message {message_id} is not processing for {worker_id}")

    async def heartbeat_claim(self, *, message_id: MessageId, worker_id: str, lease_seconds: int = 30) -> bool:
        async with self._connection() as conn:
            row = await conn.fetchrow(SQL_HEARTBEAT_CLAIM, message_id, worker_id, lease_seconds)
        return row is not None

    async def reclaim_expired_claims(self, *, topic: str) -> int:
        async with self._connection() as conn:
            rows = await conn.fetch(SQL_RECLAIM_EXPIRED, topic, LEASE_EXPIRED_ERROR)
        return len(rows)

    async def get_message(self, *, message_id: MessageId) -> MessageSnapshot | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(SQL_GET_MESSAGE, message_id)
        if row is None:
            return None
        return MessageSnapshot(
            id=row["id"],
            topic=row["topic"] or "",
            status=MessageStatus(row["status"]),
            attempts=row["attempts"],
            last_error=row["last_error"],
            claimed_by=row["claimed_by"],
            claimed_at=row["claimed_at"],
            lease_expires_at=row["lease_expires_at"],
            published_at=row["published_at"],
        )

    async def count_messages(self, *, topic: str, status: str | None = None) -> int:
        async with self._connection() as conn:
            count = await conn.fetchval(SQL_COUNT_MESSAGES, topic, status)
        return int(count or 0)
