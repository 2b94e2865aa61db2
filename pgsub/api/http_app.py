from __future__ import annotations

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, HTTPException, Request, Response

from pgsub.api.handlers.deps import ApiDeps
from pgsub.api.handlers.messages import get_message_status_handler, push_message_handler
from pgsub.api.handlers.topics import create_topic_handler, list_topics_handler, remove_topic_handler
from pgsub.api.schemas import (
    CreateTopicRequest,
    ErrorResponse,
    HealthResponse,
    ListTopicsResponse,
    MessageStatusResponse,
    PushMessageResponse,
    ReadyResponse,
    SubscriptionMetrics,
    SubscriptionStatus,
    TopicResponse,
)
from pgsub.domain.errors import DuplicateTopic, TopicInUse, TopicNotFound, TopicValidationError, TransportError


def build_app(run_id: str, api_deps: ApiDeps) -> FastAPI:
    logger = logging.getLogger("pgsub.runtime")
    pubsub = api_deps.pubsub

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        del app
        logger.info("http runtime started", extra={"run_id": run_id, "mode": pubsub.mode})
        await pubsub.start()

        yield

        await pubsub.shutdown()
        logger.info("http runtime stopped", extra={"run_id": run_id, "mode": pubsub.mode})

    app = FastAPI(title="pgsub", version="0.1.0", lifespan=lifespan)

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health() -> HealthResponse:
        return HealthResponse(status="ok", mode=pubsub.mode)

    @app.get("/ready", response_model=ReadyResponse, tags=["System"])
    async def ready() -> ReadyResponse:
        return ReadyResponse(
            status="ready" if pubsub.started else "starting",
            mode=pubsub.mode,
            listener_connected=pubsub.listener_connected,
            subscriptions=[
                SubscriptionStatus(
                    topic=subscription.topic,
                    subscription_id=subscription.subscription_id,
                    state=subscription.state.value,
                    metrics=SubscriptionMetrics(**subscription.metrics()),
                )
                for subscription in pubsub.subscriptions
            ],
        )

    @app.post(
        "/topics",
        response_model=TopicResponse,
        status_code=201,
        responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
        tags=["Topics"],
    )
    async def create_topic(request: CreateTopicRequest) -> TopicResponse:
        try:
            return await create_topic_handler(name=request.name, api_deps=api_deps)
        except TopicValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except DuplicateTopic as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except TransportError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc

    @app.get("/topics", response_model=ListTopicsResponse, tags=["Topics"])
    async def list_topics() -> ListTopicsResponse:
        return await list_topics_handler(api_deps=api_deps)

    @app.delete(
        "/topics/{name}",
        status_code=204,
        responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
        tags=["Topics"],
    )
    async def remove_topic(name: str) -> Response:
        try:
            await remove_topic_handler(name=name, api_deps=api_deps)
        except TopicNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except TopicInUse as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except TransportError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return Response(status_code=204)

    @app.post(
        "/topics/{name}/messages",
        response_model=PushMessageResponse,
        status_code=201,
        responses={404: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
        tags=["Messages"],
    )
    async def push_message(name: str, request: Request) -> PushMessageResponse:
        payload = await request.body()
        try:
            return await push_message_handler(topic=name, payload=payload, api_deps=api_deps)
        except TopicNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except TransportError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc

    @app.get(
        "/messages/{message_id}",
        response_model=MessageStatusResponse,
        responses={404: {"model": ErrorResponse}},
        tags=["Messages"],
    )
    async def get_message_status(message_id: int) -> MessageStatusResponse:
        status = await get_message_status_handler(message_id=message_id, api_deps=api_deps)
        if status is None:
            raise HTTPException(status_code=404, detail="message not found")
        return status

    return app
