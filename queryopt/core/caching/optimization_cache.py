"""
In-memory response cache for the optimization engine.

Entries expire a fixed time after they are stored and are only removed when
looked up after expiry. When the cache is full the oldest stored entry is
evicted, regardless of how recently it was read.
"""

import copy
import hashlib
import json
import logging
import threading
import time
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, Optional

from queryopt.core.sql.models import OptimizationRequest, OptimizationResponse, to_serializable

logger = logging.getLogger(__name__)

DEFAULT_TTL_HOURS = 2
DEFAULT_MAX_ENTRIES = 500


@dataclass
class CacheMetrics:
    """Cache performance metrics."""
    hits: int = 0
    misses: int = 0
    expirations: int = 0
    evictions: int = 0
    total_requests: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        if self.total_requests == 0:
            return 0.0
        return (self.hits / self.total_requests) * 100

    def add_hit(self):
        self.hits += 1
        self.total_requests += 1

    def add_miss(self, expired: bool = False):
        self.misses += 1
        self.total_requests += 1
        if expired:
            self.expirations += 1


def make_cache_key(request: OptimizationRequest) -> str:
    """Stable MD5 over every request field that influences the response."""
    key_data = {
        'query': request.original_query,
        'level': request.optimization_level.name if request.optimization_level else None,
        'enabled': sorted(t.name for t in request.enabled_optimizations),
        'analyze_execution_plan': request.analyze_execution_plan,
        'generate_alternatives': request.generate_alternatives,
        'estimate_costs': request.estimate_costs,
        'max_alternatives': request.max_alternatives,
        'database_type': request.database_type,
        'schema_name': request.schema_name,
        'table_statistics': to_serializable(list(request.table_statistics)),
        'existing_indexes': to_serializable(list(request.existing_indexes)),
    }
    key_str = json.dumps(key_data, sort_keys=True, default=str)
    return hashlib.md5(key_str.encode()).hexdigest()


class OptimizationCache:
    """Thread-safe TTL cache of optimization responses."""

    def __init__(self, ttl_seconds: float = DEFAULT_TTL_HOURS * 3600,
                 max_entries: int = DEFAULT_MAX_ENTRIES,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()
        self.metrics = CacheMetrics()

    @classmethod
    def from_config(cls, config: Dict[str, Any] = None) -> "OptimizationCache":
        cache_config = (config or {}).get('query_optimization', {})
        return cls(
            ttl_seconds=cache_config.get('cache_ttl_hours', DEFAULT_TTL_HOURS) * 3600,
            max_entries=cache_config.get('max_cache_entries', DEFAULT_MAX_ENTRIES),
        )

    def get(self, key: str) -> Optional[OptimizationResponse]:
        """Stored response for key, or None when absent or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.metrics.add_miss()
                return None

            if self._clock() - entry['created_at'] >= self.ttl_seconds:
                del self._entries[key]
                self.metrics.add_miss(expired=True)
                logger.debug(f"Cache entry {key} expired")
                return None

            self.metrics.add_hit()
            response = entry['data']
        return copy.deepcopy(response)

    def put(self, key: str, response: OptimizationResponse):
        data = copy.deepcopy(response)
        with self._lock:
            # Re-inserting moves the key to the end so dict order stays creation order
            self._entries.pop(key, None)
            if self._entries and len(self._entries) >= self.max_entries:
                oldest_key = next(iter(self._entries))
                del self._entries[oldest_key]
                self.metrics.evictions += 1
                logger.debug(f"Evicted oldest cache entry {oldest_key}")
            self._entries[key] = {'data': data, 'created_at': self._clock()}

    def clear(self):
        with self._lock:
            cleared = len(self._entries)
            self._entries.clear()
        logger.info(f"Optimization cache cleared ({cleared} entries)")

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def __len__(self) -> int:
        return self.size

    def get_cache_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._lock:
            return {
                'metrics': asdict(self.metrics),
                'hit_rate': self.metrics.hit_rate,
                'size': len(self._entries),
                'configuration': {
                    'ttl_hours': self.ttl_seconds / 3600,
                    'max_entries': self.max_entries,
                },
            }
