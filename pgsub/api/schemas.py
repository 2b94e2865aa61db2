from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from pgsub.domain.models import TOPIC_NAME_MAX_LENGTH


class ErrorResponse(BaseModel):
    detail: str


class SubscriptionMetrics(BaseModel):
    started: bool
    stopped: bool
    ticks_total: int
    claims_total: int
    idle_ticks_total: int
    errors_total: int
    acked_total: int
    nacked_total: int
    released_total: int


class SubscriptionStatus(BaseModel):
    topic: str
    subscription_id: str
    state: str
    metrics: SubscriptionMetrics


class HealthResponse(BaseModel):
    status: str
    mode: str


class ReadyResponse(BaseModel):
    status: str
    mode: str
    listener_connected: bool
    subscriptions: list[SubscriptionStatus]


class CreateTopicRequest(BaseModel):
    name: str = Field(min_length=1, max_length=TOPIC_NAME_MAX_LENGTH)


class TopicResponse(BaseModel):
    id: int
    name: str


class ListTopicsResponse(BaseModel):
    items: list[TopicResponse]


class PushMessageResponse(BaseModel):
    message_id: int
    topic: str


class MessageStatusResponse(BaseModel):
    message_id: int
    topic: str
    status: str
    attempts: int
    last_error: str | None = None
    claimed_by: str | None = None
    lease_expires_at: datetime | None = None
    published_at: datetime | None = None
