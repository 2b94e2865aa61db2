from __future__ import annotations

from dataclasses import dataclass
import os

from pgsub.api.handlers.deps import ApiDeps
from pgsub.pubsub import PubSub
from pgsub.workers.runner import retry_policy_from_env, worker_runtime_settings_from_env


@dataclass
class RuntimeContainer:
    pubsub: PubSub
    api_deps: ApiDeps
    mode: str


def build_runtime_container(run_id: str = "", database_url: str | None = None) -> RuntimeContainer:
    database_url = database_url or os.getenv("DATABASE_URL")
    settings = worker_runtime_settings_from_env()
    retry_policy = retry_policy_from_env()
    if database_url:
        pubsub = PubSub.from_dsn(database_url, settings=settings, retry_policy=retry_policy, run_id=run_id)
    else:
        pubsub = PubSub.in_memory(settings=settings, retry_policy=retry_policy, run_id=run_id)

    return RuntimeContainer(
        pubsub=pubsub,
        api_deps=ApiDeps(pubsub=pubsub),
        mode=pubsub.mode,
    )
