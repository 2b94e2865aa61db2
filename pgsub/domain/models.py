from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Literal

from pgsub.domain.lifecycle import MessageStatus

MessageId = int

TOPIC_NAME_MAX_LENGTH = 255


@dataclass(frozen=True)
class Topic:
    id: int
    name: str


@dataclass(frozen=True)
class Message:
    id: MessageId
    topic: str
    content: bytes
    attempts: int = 0
    published_at: datetime | None = None


@dataclass(frozen=True)
class MessageSnapshot:
    id: MessageId
    topic: str
    status: MessageStatus
    attempts: int
    last_error: str | None
    claimed_by: str | None
    claimed_at: datetime | None
    lease_expires_at: datetime | None
    published_at: datetime | None


@dataclass(frozen=True)
class NackOutcome:
    message_id: MessageId
    attempts: int
    dead_lettered: bool = False
    dead_letter_message_id: MessageId | None = None


WakeSource = Literal["notification", "reconnect", "poll"]


@dataclass(frozen=True)
class WakeEvent:
    message_id: MessageId | None = None
    source: WakeSource = "notification"


class WorkerState(StrEnum):
    IDLE = "idle"
    WAITING_FOR_EVENT = "waiting_for_event"
    CLAIMING = "claiming"
    INVOKING = "invoking"
    COMPLETING = "completing"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"
