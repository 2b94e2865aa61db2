from __future__ import annotations

from pgsub.api.handlers.deps import ApiDeps
from pgsub.api.schemas import MessageStatusResponse, PushMessageResponse

COMPONENT_ID_PUSH = "api.push_message"
COMPONENT_ID_STATUS = "api.get_message_status"


async def push_message_handler(*, topic: str, payload: bytes, api_deps: ApiDeps) -> PushMessageResponse:
    message_id = await api_deps.pubsub.push(topic, payload)
    return PushMessageResponse(message_id=message_id, topic=topic)


async def get_message_status_handler(*, message_id: int, api_deps: ApiDeps) -> MessageStatusResponse | None:
    """Delivery bookkeeping for one message; content is not echoed back."""
    snapshot = await api_deps.pubsub.get_message(message_id)
    if snapshot is None:
        return None
    return MessageStatusResponse(
        message_id=snapshot.id,
        topic=snapshot.topic,
        status=str(snapshot.status),
        attempts=snapshot.attempts,
        last_error=snapshot.last_error,
        claimed_by=snapshot.claimed_by,
        lease_expires_at=snapshot.lease_expires_at,
        published_at=snapshot.published_at,
    )
