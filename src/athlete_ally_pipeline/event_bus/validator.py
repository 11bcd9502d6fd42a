"""Contract validation with a bounded cache of compiled validators."""

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Type

from pydantic import BaseModel, TypeAdapter, ValidationError

from ..shared.metrics import PipelineMetrics
from .contracts import CONTRACTS


logger = logging.getLogger(__name__)

DEFAULT_SCHEMA_VERSION = 'v1'


@dataclass
class ValidationResult:
    valid: bool
    errors: List[Dict[str, Any]] = field(default_factory=list)
    message: Optional[str] = None


class EventValidator:
    """
    Validates events against the contract registered for their topic.

    Compiled TypeAdapters are cached per ``topic:version`` with LRU eviction
    and a TTL. Only the cache is shared between callers; it is guarded by a
    lock so the validator can be used from worker threads as well.
    """

    def __init__(
        self,
        enabled: bool = True,
        cache_size: int = 1000,
        cache_ttl_seconds: float = 300.0,
        registry: Optional[Mapping[Tuple[str, str], Type[BaseModel]]] = None,
        metrics: Optional[PipelineMetrics] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.enabled = enabled
        self.cache_size = cache_size
        self.cache_ttl_seconds = cache_ttl_seconds
        self.registry = dict(registry if registry is not None else CONTRACTS)
        self.metrics = metrics
        self._clock = clock

        self._cache: "OrderedDict[str, Tuple[TypeAdapter, float]]" = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

        logger.info(
            f"EventValidator initialized: enabled={enabled}, cache_size={cache_size}, "
            f"ttl={cache_ttl_seconds}s, contracts={len(self.registry)}"
        )

    def validate(self, topic: str, event: Any) -> ValidationResult:
        """
        Validate an event for a topic.

        Unknown topics and versions pass through as valid.
        """
        if not self.enabled:
            return ValidationResult(valid=True)

        version = DEFAULT_SCHEMA_VERSION
        if isinstance(event, dict):
            version = event.get('schemaVersion') or DEFAULT_SCHEMA_VERSION

        model = self.registry.get((topic, version))
        if model is None:
            logger.debug(f"No contract registered for {topic}:{version}, skipping validation")
            return ValidationResult(valid=True)

        adapter = self._get_adapter(f"{topic}:{version}", model)

        try:
            adapter.validate_python(event)
        except ValidationError as e:
            errors = [
                {
                    'path': '.'.join(str(part) for part in err['loc']),
                    'message': err['msg'],
                    'type': err['type'],
                }
                for err in e.errors()
            ]
            summary = '; '.join(f"{err['path'] or '<root>'}: {err['message']}" for err in errors)
            return ValidationResult(
                valid=False,
                errors=errors,
                message=f"Schema validation failed for {topic}:{version}: {summary}"
            )

        return ValidationResult(valid=True)

    def _get_adapter(self, key: str, model: Type[BaseModel]) -> TypeAdapter:
        now = self._clock()

        with self._lock:
            entry = self._cache.get(key)
            if entry is not None:
                adapter, compiled_at = entry
                if now - compiled_at < self.cache_ttl_seconds:
                    self._cache.move_to_end(key)
                    self._hits += 1
                    if self.metrics:
                        self.metrics.schema_cache_hits.inc()
                    return adapter
                del self._cache[key]

            self._misses += 1
            if self.metrics:
                self.metrics.schema_cache_misses.inc()

            adapter = TypeAdapter(model)
            self._cache[key] = (adapter, now)

            while len(self._cache) > self.cache_size:
                evicted, _ = self._cache.popitem(last=False)
                logger.debug(f"Evicted compiled validator {evicted}")

            return adapter

    def get_cache_status(self) -> Dict[str, Any]:
        with self._lock:
            total = self._hits + self._misses
            return {
                'size': len(self._cache),
                'max_size': self.cache_size,
                'ttl_seconds': self.cache_ttl_seconds,
                'hits': self._hits,
                'misses': self._misses,
                'hit_rate': self._hits / total if total else 0.0,
                'keys': list(self._cache.keys()),
            }

    def clear_cache(self):
        with self._lock:
            self._cache.clear()
