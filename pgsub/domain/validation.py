from __future__ import annotations

from pgsub.domain.errors import TopicValidationError
from pgsub.domain.models import TOPIC_NAME_MAX_LENGTH


def validate_topic_name(name: str) -> str:
    if not isinstance(name, str) or not name.strip():
        raise TopicValidationError("topic name must be a non-empty string")
    if len(name) > TOPIC_NAME_MAX_LENGTH:
        raise TopicValidationError(f"topic name must be at most {TOPIC_NAME_MAX_LENGTH} characters")
    return name


def validate_content(content: object) -> bytes:
    if not isinstance(content, (bytes, bytearray, memoryview)):
        raise TypeError(f"message content must be bytes, got {type(content).__name__}")
    return bytes(content)
