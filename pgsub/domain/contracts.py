from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from pgsub.domain.models import Message, MessageId, MessageSnapshot, NackOutcome, Topic

if TYPE_CHECKING:
    from pgsub.workers.listener import WakeStream


CLAIM_SQL_CONTRACT = "UPDATE ... WHERE id = (SELECT ... FOR UPDATE SKIP LOCKED) RETURNING ..."
NOTIFY_CHANNEL = "new_message"

# A handler returns False to report failure; raising counts as failure too.
ProcessHandler = Callable[[bytes], Awaitable[bool | None]]


@runtime_checkable
class MessageHandler(Protocol):
    async def process(self, content: bytes) -> bool | None: ...


@runtime_checkable
class MessageRepository(Protocol):
    """Persistence contract for topics and the message claim lifecycle.

    ``claim_next`` must select and transition a message in one indivisible
    step, compatible with Postgres ``FOR UPDATE SKIP LOCKED`` row claims.
    ``ack``, ``nack`` and ``release`` are guarded by both the ``processing``
    status and the claimant id.
    """

    async def add_topic(self, *, name: str) -> Topic: ...

    async def remove_topic(self, *, name: str) -> None: ...

    async def get_topic(self, *, name: str) -> Topic | None: ...

    async def list_topics(self) -> list[Topic]: ...

    async def push(self, *, topic: str, content: bytes) -> MessageId: ...

    async def claim_next(self, *, topic: str, worker_id: str, lease_seconds: int = 30) -> Message | None: ...

    async def ack(self, *, message_id: MessageId, worker_id: str) -> None: ...

    async def nack(
        self,
        *,
        message_id: MessageId,
        worker_id: str,
        error: str | None = None,
        max_attempts: int | None = None,
        dead_letter_topic: str | None = None,
    ) -> NackOutcome: ...

    async def release(self, *, message_id: MessageId, worker_id: str) -> None: ...

    async def heartbeat_claim(self, *, message_id: MessageId, worker_id: str, lease_seconds: int = 30) -> bool: ...

    async def reclaim_expired_claims(self, *, topic: str) -> int: ...

    async def get_message(self, *, message_id: MessageId) -> MessageSnapshot | None: ...

    async def count_messages(self, *, topic: str, status: str | None = None) -> int: ...


@runtime_checkable
class NotificationSource(Protocol):
    @property
    def connected(self) -> bool: ...

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    def open_stream(self, *, maxsize: int = 256) -> WakeStream: ...
