from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from pgsub.domain.errors import DuplicateTopic, InvalidTransition, TopicInUse, TopicNotFound
from pgsub.domain.lifecycle import LEASE_EXPIRED_ERROR, MessageStatus, RetryPolicy, is_allowed_transition
from pgsub.domain.models import Message, MessageId, MessageSnapshot, NackOutcome, Topic, WakeEvent
from pgsub.domain.validation import validate_topic_name
from pgsub.workers.listener import WakeBroadcaster


class InMemoryNotificationHub(WakeBroadcaster):
    """Stands in for the insert trigger plus LISTEN connection.

    With ``enabled=False`` nothing is ever broadcast, which models a dead
    notification channel.
    """

    def __init__(self, *, enabled: bool = True) -> None:
        super().__init__()
        self.enabled = enabled
        self.notifications_total = 0

    @property
    def connected(self) -> bool:
        return self.enabled

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        self.close_streams()

    def notify(self, message_id: MessageId) -> None:
        if not self.enabled:
            return
        self.notifications_total += 1
        self.broadcast(WakeEvent(message_id=message_id, source="notification"))


@dataclass
class _MessageRow:
    id: MessageId
    topic_id: int
    content: bytes
    status: MessageStatus = MessageStatus.NEW
    attempts: int = 0
    last_error: str | None = None
    claimed_by: str | None = None
    claimed_at: datetime | None = None
    lease_expires_at: datetime | None = None
    published_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))


@dataclass
class InMemoryMessageRepository:
    """Non-network repository with the same guards as the Postgres one.

    Each operation runs without awaiting between its read and its write, so a
    claim is atomic with respect to other coroutines on the event loop.
    """

    notifications: InMemoryNotificationHub | None = None
    topics: dict[str, Topic] = field(default_factory=dict)
    messages: dict[MessageId, _MessageRow] = field(default_factory=dict)
    transitions: list[tuple[MessageId, str, str]] = field(default_factory=list)
    next_topic_id: int = 1
    next_message_id: int = 1

    async def add_topic(self, *, name: str) -> Topic:
        validate_topic_name(name)
        if name in self.topics:
            raise DuplicateTopic(name)
        topic = Topic(id=self.next_topic_id, name=name)
        self.next_topic_id += 1
        self.topics[name] = topic
        return topic

    async def remove_topic(self, *, name: str) -> None:
        topic = self.topics.get(name)
        if topic is None:
            raise TopicNotFound(name)
        if any(row.topic_id == topic.id for row in self.messages.values()):
            raise TopicInUse(name)
        del self.topics[name]

    async def get_topic(self, *, name: str) -> Topic | None:
        return self.topics.get(name)

    async def list_topics(self) -> list[Topic]:
        return sorted(self.topics.values(), key=lambda topic: topic.id)

    async def push(self, *, topic: str, content: bytes) -> MessageId:
        return self._insert(topic=topic, content=bytes(content))

    def _insert(self, *, topic: str, content: bytes) -> MessageId:
        topic_row = self.topics.get(topic)
        if topic_row is None:
            raise TopicNotFound(topic)
        message_id = self.next_message_id
        self.next_message_id += 1
        self.messages[message_id] = _MessageRow(id=message_id, topic_id=topic_row.id, content=content)
        if self.notifications is not None:
            self.notifications.notify(message_id)
        return message_id

    async def claim_next(self, *, topic: str, worker_id: str, lease_seconds: int = 30) -> Message | None:
        topic_row = self.topics.get(topic)
        if topic_row is None:
            return None
        now = datetime.now(tz=UTC)
        for message_id in sorted(self.messages):
            row = self.messages[message_id]
            if row.topic_id != topic_row.id or row.status != MessageStatus.NEW:
                continue
            self._transition(row, MessageStatus.PROCESSING)
            row.claimed_by = worker_id
            row.claimed_at = now
            row.lease_expires_at = now + timedelta(seconds=lease_seconds)
            return Message(
                id=row.id,
                topic=topic,
                content=row.content,
                attempts=row.attempts,
                published_at=row.published_at,
            )
        return None

    async def ack(self, *, message_id: MessageId, worker_id: str) -> None:
        row = self._owned_row(message_id=message_id, worker_id=worker_id, operation="ack")
        self._transition(row, MessageStatus.PROCESSED)
        row.lease_expires_at = None

    async def nack(
        self,
        *,
        message_id: MessageId,
        worker_id: str,
        error: str | None = None,
        max_attempts: int | None = None,
        dead_letter_topic: str | None = None,
    ) -> NackOutcome:
        row = self._owned_row(message_id=message_id, worker_id=worker_id, operation="nack")
        attempts = row.attempts + 1
        exhausted = RetryPolicy(max_attempts=max_attempts, dead_letter_topic=dead_letter_topic).is_exhausted(attempts)
        if exhausted and dead_letter_topic is not None and dead_letter_topic not in self.topics:
            raise TopicNotFound(dead_letter_topic)

        row.attempts = attempts
        row.last_error = error
        self._clear_claim(row)
        if not exhausted:
            self._transition(row, MessageStatus.NEW)
            return NackOutcome(message_id=message_id, attempts=attempts)

        self._transition(row, MessageStatus.PROCESSED)
        dead_letter_message_id = None
        if dead_letter_topic is not None:
            dead_letter_message_id = self._insert(topic=dead_letter_topic, content=row.content)
        return NackOutcome(
            message_id=message_id,
            attempts=attempts,
            dead_lettered=True,
            dead_letter_message_id=dead_letter_message_id,
        )

    async def release(self, *, message_id: MessageId, worker_id: str) -> None:
        row = self._owned_row(message_id=message_id, worker_id=worker_id, operation="release")
        self._clear_claim(row)
        self._transition(row, MessageStatus.NEW)

    async def heartbeat_claim(self, *, message_id: MessageId, worker_id: str, lease_seconds: int = 30) -> bool:
        row = self.messages.get(message_id)
        if row is None:
            return False
        now = datetime.now(tz=UTC)
        if (
            row.status != MessageStatus.PROCESSING
            or row.claimed_by != worker_id
            or row.lease_expires_at is None
            or row.lease_expires_at <= now
        ):
            return False
        row.lease_expires_at = now + timedelta(seconds=lease_seconds)
        return True

    async def reclaim_expired_claims(self, *, topic: str) -> int:
        topic_row = self.topics.get(topic)
        if topic_row is None:
            return 0
        reclaimed = 0
        now = datetime.now(tz=UTC)
        for row in self.messages.values():
            if (
                row.topic_id == topic_row.id
                and row.status == MessageStatus.PROCESSING
                and row.lease_expires_at is not None
                and row.lease_expires_at <= now
            ):
                row.attempts += 1
                row.last_error = LEASE_EXPIRED_ERROR
                self._clear_claim(row)
                self._transition(row, MessageStatus.NEW)
                reclaimed += 1
        return reclaimed

    async def get_message(self, *, message_id: MessageId) -> MessageSnapshot | None:
        row = self.messages.get(message_id)
        if row is None:
            return None
        topic_name = next((topic.name for topic in self.topics.values() if topic.id == row.topic_id), "")
        return MessageSnapshot(
            id=row.id,
            topic=topic_name,
            status=row.status,
            attempts=row.attempts,
            last_error=row.last_error,
            claimed_by=row.claimed_by,
            claimed_at=row.claimed_at,
            lease_expires_at=row.lease_expires_at,
            published_at=row.published_at,
        )

    async def count_messages(self, *, topic: str, status: str | None = None) -> int:
        topic_row = self.topics.get(topic)
        if topic_row is None:
            return 0
        return sum(
            1
            for row in self.messages.values()
            if row.topic_id == topic_row.id and (status is None or row.status == status)
        )

    def _owned_row(self, *, message_id: MessageId, worker_id: str, operation: str) -> _MessageRow:
        row = self.messages.get(message_id)
        if row is None or row.status != MessageStatus.PROCESSING or row.claimed_by != worker_id:
            raise InvalidTransition(f"{operation} rejected: message {message_id} is not processing for {worker_id}")
        return row

    def _transition(self, row: _MessageRow, to_status: MessageStatus) -> None:
        if not is_allowed_transition(row.status, to_status):
            raise InvalidTransition(f"message {row.id} cannot move from {row.status.value} to {to_status.value}")
        self.transitions.append((row.id, row.status.value, to_status.value))
        row.status = to_status

    @staticmethod
    def _clear_claim(row: _MessageRow) -> None:
        row.claimed_by = None
        row.claimed_at = None
        row.lease_expires_at = None
