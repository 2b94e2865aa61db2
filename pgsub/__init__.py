from pgsub.domain.errors import (
    DuplicateTopic,
    HandlerError,
    InvalidTransition,
    MigrationError,
    PubSubError,
    TopicInUse,
    TopicNotFound,
    TopicValidationError,
    TransportError,
)
from pgsub.domain.lifecycle import MessageStatus, RetryPolicy
from pgsub.pubsub import PubSub, Subscription
from pgsub.repositories.migrations import rollback_migrations, run_migrations
from pgsub.workers.runner import WorkerRuntimeSettings

__all__ = [
    "DuplicateTopic",
    "HandlerError",
    "InvalidTransition",
    "MessageStatus",
    "MigrationError",
    "PubSub",
    "PubSubError",
    "RetryPolicy",
    "Subscription",
    "TopicInUse",
    "TopicNotFound",
    "TopicValidationError",
    "TransportError",
    "WorkerRuntimeSettings",
    "rollback_migrations",
    "run_migrations",
]
