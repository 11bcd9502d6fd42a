"""Error taxonomy for message processing."""

import asyncio
import enum
import socket
from typing import Tuple, Type

import asyncpg
import nats.errors


class ProcessingError(Exception):
    """Base class for failures while handling one message."""


class TransientInfraError(ProcessingError):
    """Infrastructure hiccup; the message should be redelivered."""


class NonRetryableError(ProcessingError):
    """The message can never succeed; route it to the DLQ."""


class ErrorClass(str, enum.Enum):
    TRANSIENT = "transient"
    NON_RETRYABLE = "non_retryable"


_TRANSIENT_TYPES: Tuple[Type[BaseException], ...] = (
    TransientInfraError,
    asyncio.TimeoutError,
    TimeoutError,
    ConnectionError,
    socket.gaierror,
    socket.herror,
    socket.timeout,
    asyncpg.PostgresConnectionError,
    asyncpg.TooManyConnectionsError,
    asyncpg.CannotConnectNowError,
    asyncpg.ConnectionDoesNotExistError,
    nats.errors.ConnectionClosedError,
    nats.errors.NoServersError,
    nats.errors.StaleConnectionError,
    nats.errors.TimeoutError,
)

# Lowercase substrings that mark an untyped error as a connectivity problem
_TRANSIENT_MARKERS = ('econnrefused', 'etimedout', 'enotfound', 'timeout', 'timed out', 'connection refused')


def classify_error(error: BaseException) -> ErrorClass:
    """Decide whether a processing failure is worth a redelivery."""
    if isinstance(error, NonRetryableError):
        return ErrorClass.NON_RETRYABLE
    if isinstance(error, _TRANSIENT_TYPES):
        return ErrorClass.TRANSIENT

    message = str(error).lower()
    if any(marker in message for marker in _TRANSIENT_MARKERS):
        return ErrorClass.TRANSIENT

    return ErrorClass.NON_RETRYABLE
