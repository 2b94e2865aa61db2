from __future__ import annotations


class PubSubError(Exception):
    pass


class TopicNotFound(PubSubError):
    def __init__(self, topic: str) -> None:
        super().__init__(f"topic '{topic}' is not registered")
        self.topic = topic


class DuplicateTopic(PubSubError):
    def __init__(self, topic: str) -> None:
        super().__init__(f"topic '{topic}' already exists")
        self.topic = topic


class TopicInUse(PubSubError):
    def __init__(self, topic: str) -> None:
        super().__init__(f"topic '{topic}' still has messages")
        self.topic = topic


class TopicValidationError(PubSubError, ValueError):
    pass


class TransportError(PubSubError):
    pass


class InvalidTransition(PubSubError):
    pass


class HandlerError(PubSubError):
    def __init__(self, message_id: int, cause: BaseException | None = None) -> None:
        detail = f"{type(cause).__name__}: {cause}" if cause is not None else "handler reported failure"
        super().__init__(f"handler failed for message {message_id}: {detail}")
        self.message_id = message_id
        self.cause = cause


class MigrationError(PubSubError):
    pass
