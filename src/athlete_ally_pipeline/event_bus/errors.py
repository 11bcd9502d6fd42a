"""Exceptions raised by the event bus client."""

from typing import Any, Dict, List, Optional


class EventBusError(Exception):
    """Base class for event bus failures."""


class EventBusNotConnectedError(EventBusError):
    """Raised when an operation needs a live NATS connection and there is none."""

    def __init__(self, operation: str):
        super().__init__(f"Event bus is not connected (operation: {operation})")
        self.operation = operation


class StreamNotFoundError(EventBusError):
    """None of the candidate streams exist on the server."""

    def __init__(self, candidates: List[str]):
        super().__init__(f"No stream found among candidates: {', '.join(candidates)}")
        self.candidates = candidates


class SchemaValidationError(EventBusError):
    """An event failed its topic contract and was not published."""

    def __init__(
        self,
        topic: str,
        errors: Optional[List[Dict[str, Any]]] = None,
        message: Optional[str] = None
    ):
        super().__init__(message or f"Schema validation failed for topic {topic}")
        self.topic = topic
        self.errors = errors or []
