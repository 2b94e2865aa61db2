from __future__ import annotations

from pgsub.api.handlers.deps import ApiDeps
from pgsub.api.schemas import ListTopicsResponse, TopicResponse

COMPONENT_ID_CREATE = "api.create_topic"
COMPONENT_ID_REMOVE = "api.remove_topic"
COMPONENT_ID_LIST = "api.list_topics"


async def create_topic_handler(*, name: str, api_deps: ApiDeps) -> TopicResponse:
    topic = await api_deps.pubsub.add_topic(name)
    return TopicResponse(id=topic.id, name=topic.name)


async def remove_topic_handler(*, name: str, api_deps: ApiDeps) -> None:
    await api_deps.pubsub.remove_topic(name)


async def list_topics_handler(*, api_deps: ApiDeps) -> ListTopicsResponse:
    topics = await api_deps.pubsub.list_topics()
    return ListTopicsResponse(items=[TopicResponse(id=topic.id, name=topic.name) for topic in topics])
