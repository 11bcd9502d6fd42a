"""Tracing capability with a null-object default.

Components depend on the ``Tracer`` interface only. The implementation is
chosen once at startup from configuration.
"""

import logging
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from .config import TelemetryConfig

logger = logging.getLogger(__name__)


class Span:
    """Span handle passed to instrumented code."""

    def set_attribute(self, key: str, value: Any) -> None:
        pass

    def set_status(self, ok: bool, message: Optional[str] = None) -> None:
        pass

    def record_exception(self, error: BaseException) -> None:
        pass


class Tracer:
    """Tracer interface. The base class is the no-op implementation."""

    @contextmanager
    def start_span(self, name: str, attributes: Optional[Dict[str, Any]] = None) -> Iterator[Span]:
        yield Span()


NullTracer = Tracer


class _LoggedSpan(Span):

    def __init__(self, name: str, attributes: Optional[Dict[str, Any]]):
        self.name = name
        self.attributes: Dict[str, Any] = dict(attributes or {})
        self.ok = True
        self.message: Optional[str] = None
        self.error: Optional[BaseException] = None

    def set_attribute(self, key: str, value: Any) -> None:
        self.attributes[key] = value

    def set_status(self, ok: bool, message: Optional[str] = None) -> None:
        self.ok = ok
        self.message = message

    def record_exception(self, error: BaseException) -> None:
        self.error = error


class LoggingTracer(Tracer):
    """Emits one debug log line per finished span."""

    @contextmanager
    def start_span(self, name: str, attributes: Optional[Dict[str, Any]] = None) -> Iterator[Span]:
        span = _LoggedSpan(name, attributes)
        start = time.perf_counter()
        try:
            yield span
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.debug(
                f"span {span.name} finished in {duration_ms:.2f}ms "
                f"status={'ok' if span.ok else 'error'}",
                extra={
                    'ctx_span': span.name,
                    'ctx_attributes': span.attributes,
                    'ctx_error': repr(span.error) if span.error else None,
                    'ctx_status_message': span.message,
                }
            )


def create_tracer(config: TelemetryConfig) -> Tracer:
    """Select the tracer implementation from configuration."""
    if config.tracer == 'logging':
        return LoggingTracer()
    return NullTracer()
