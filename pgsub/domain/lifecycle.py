from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


# Keep synchronized with the message_status enum in
# pgsub/db/migrations/0001_init.up.sql.
class MessageStatus(StrEnum):
    NEW = "new"
    PROCESSING = "processing"
    PROCESSED = "processed"


LEASE_EXPIRED_ERROR = "lease_expired"


ALLOWED_TRANSITIONS: dict[MessageStatus, frozenset[MessageStatus]] = {
    MessageStatus.NEW: frozenset({MessageStatus.PROCESSING}),
    MessageStatus.PROCESSING: frozenset({MessageStatus.PROCESSED, MessageStatus.NEW}),
    MessageStatus.PROCESSED: frozenset(),
}


def is_allowed_transition(from_status: str, to_status: str) -> bool:
    try:
        source = MessageStatus(from_status)
        target = MessageStatus(to_status)
    except ValueError:
        return False
    return target in ALLOWED_TRANSITIONS[source]


@dataclass(frozen=True)
class RetryPolicy:
    """Failure ceiling for a subscription.

    ``max_attempts=None`` requeues failed messages forever. Once a message has
    failed ``max_attempts`` times it is marked processed and, when
    ``dead_letter_topic`` is set, its content is republished there.
    """

    max_attempts: int | None = None
    dead_letter_topic: str | None = None

    def __post_init__(self) -> None:
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValueError("max_attempts must be a positive integer or None")
        if self.dead_letter_topic is not None and self.max_attempts is None:
            raise ValueError("dead_letter_topic requires max_attempts")

    def is_exhausted(self, attempts: int) -> bool:
        return self.max_attempts is not None and attempts >= self.max_attempts
