from __future__ import annotations

from typing import Literal

import asyncpg

from pgsub.domain.errors import TransportError

RetryClassification = Literal["recoverable", "terminal"]

SQLSTATE_UNIQUE_VIOLATION = "23505"
SQLSTATE_FOREIGN_KEY_VIOLATION = "23503"

# Class 08 is connection exceptions; 57P0x are admin/crash shutdown and
# "cannot connect now" during server startup.
TRANSPORT_SQLSTATE_PREFIXES: tuple[str, ...] = ("08",)
TRANSPORT_SQLSTATES: frozenset[str] = frozenset({"57P01", "57P02", "57P03"})

TRANSPORT_EXCEPTION_TYPES: tuple[type[BaseException], ...] = (
    OSError,
    TimeoutError,
    asyncpg.exceptions.ConnectionDoesNotExistError,
    asyncpg.exceptions.PostgresConnectionError,
)


def sqlstate_of(exc: BaseException) -> str | None:
    value = getattr(exc, "sqlstate", None)
    if isinstance(value, str):
        return value
    return None


def is_unique_violation(exc: BaseException) -> bool:
    return sqlstate_of(exc) == SQLSTATE_UNIQUE_VIOLATION


def is_foreign_key_violation(exc: BaseException) -> bool:
    return sqlstate_of(exc) == SQLSTATE_FOREIGN_KEY_VIOLATION


def is_transport_failure(exc: BaseException) -> bool:
    if isinstance(exc, TRANSPORT_EXCEPTION_TYPES):
        return True
    sqlstate = sqlstate_of(exc)
    if sqlstate is None:
        return False
    return sqlstate in TRANSPORT_SQLSTATES or sqlstate.startswith(TRANSPORT_SQLSTATE_PREFIXES)


def classify_error(exc: BaseException) -> RetryClassification:
    if isinstance(exc, TransportError) or is_transport_failure(exc):
        return "recoverable"
    return "terminal"
