"""Idempotency window for vendor webhook deliveries."""

import logging
import time
from collections import OrderedDict, defaultdict
from typing import Any, Callable, Dict

logger = logging.getLogger(__name__)


class WebhookDeduplicator:
    """
    Remembers webhook idempotency keys for a fixed window.

    Keys are tracked per vendor in insertion order, so expiry and the
    per-vendor size cap both drop the oldest keys first.
    """

    def __init__(
        self,
        ttl_seconds: float = 600,
        max_keys_per_vendor: int = 100000,
        cleanup_interval_seconds: float = 60,
        clock: Callable[[], float] = time.monotonic
    ):
        self.ttl_seconds = ttl_seconds
        self.max_keys_per_vendor = max_keys_per_vendor
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self._clock = clock

        # vendor -> {key: first_seen}
        self._seen: Dict[str, "OrderedDict[str, float]"] = defaultdict(OrderedDict)
        self._last_cleanup = clock()

        self.stats = {
            'total_checks': 0,
            'duplicates_found': 0,
            'unique_keys': 0,
            'cleanup_runs': 0,
            'keys_cleaned': 0
        }

        logger.info(
            f"WebhookDeduplicator initialized: ttl={ttl_seconds}s, "
            f"max_per_vendor={max_keys_per_vendor}"
        )

    def check_and_remember(self, key: str, vendor: str = "default") -> bool:
        """
        Record a delivery key.

        Returns:
            True the first time a key is seen within the window, False for a duplicate
        """
        self.stats['total_checks'] += 1

        if self.ttl_seconds <= 0:
            self.stats['unique_keys'] += 1
            return True

        now = self._clock()
        if now - self._last_cleanup > self.cleanup_interval_seconds:
            self._cleanup_expired(now)

        seen = self._seen[vendor]
        first_seen = seen.get(key)

        if first_seen is not None and now - first_seen < self.ttl_seconds:
            self.stats['duplicates_found'] += 1
            logger.debug(f"Duplicate webhook delivery for {vendor}: {key}")
            return False

        seen.pop(key, None)
        seen[key] = now
        self.stats['unique_keys'] += 1

        while len(seen) > self.max_keys_per_vendor:
            seen.popitem(last=False)
            self.stats['keys_cleaned'] += 1

        return True

    def _cleanup_expired(self, now: float):
        cutoff = now - self.ttl_seconds
        cleaned = 0

        for vendor in list(self._seen):
            seen = self._seen[vendor]
            while seen:
                key, first_seen = next(iter(seen.items()))
                if first_seen >= cutoff:
                    break
                seen.popitem(last=False)
                cleaned += 1
            if not seen:
                del self._seen[vendor]

        self._last_cleanup = now
        self.stats['cleanup_runs'] += 1
        self.stats['keys_cleaned'] += cleaned

        if cleaned:
            logger.debug(f"Expired {cleaned} webhook idempotency keys")

    def forget(self, key: str, vendor: str = "default"):
        """Drop a key so a failed delivery can be retried by the vendor."""
        seen = self._seen.get(vendor)
        if seen is not None:
            seen.pop(key, None)

    def clear(self):
        self._seen.clear()

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            'tracked_keys': {vendor: len(keys) for vendor, keys in self._seen.items()},
            'ttl_seconds': self.ttl_seconds,
        }
