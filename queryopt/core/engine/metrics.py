# queryopt/core/engine/metrics.py

import threading
from collections import Counter
from datetime import timedelta
from typing import Any, Dict, Iterable

from queryopt.core.sql.models import OptimizationType

# Upper bounds in milliseconds; anything slower lands in the last bucket
LATENCY_BUCKETS = [
    (100, "<100ms"),
    (500, "100-500ms"),
    (1000, "500ms-1s"),
    (5000, "1-5s"),
]
SLOWEST_BUCKET = ">5s"


def latency_bucket(processing_time: timedelta) -> str:
    millis = processing_time.total_seconds() * 1000
    for upper_bound, label in LATENCY_BUCKETS:
        if millis < upper_bound:
            return label
    return SLOWEST_BUCKET


class OptimizationMetrics:
    """Aggregate counters over every optimization the engine has answered."""

    def __init__(self):
        self._lock = threading.Lock()
        self.total_optimizations = 0
        self.successful_optimizations = 0
        self.type_distribution: Counter = Counter()
        self.processing_time_distribution: Counter = Counter()

    def record_optimization(self, applied_types: Iterable[OptimizationType],
                            processing_time: timedelta, success: bool):
        with self._lock:
            self.total_optimizations += 1
            if success:
                self.successful_optimizations += 1
            for optimization_type in applied_types:
                self.type_distribution[optimization_type.name] += 1
            self.processing_time_distribution[latency_bucket(processing_time)] += 1

    def get_metrics(self) -> Dict[str, Any]:
        with self._lock:
            total = self.total_optimizations
            return {
                'total_optimizations': total,
                'successful_optimizations': self.successful_optimizations,
                'success_rate': self.successful_optimizations / total if total else 0.0,
                'optimization_type_distribution': dict(self.type_distribution),
                'processing_time_distribution': dict(self.processing_time_distribution),
            }

    def reset(self):
        with self._lock:
            self.total_optimizations = 0
            self.successful_optimizations = 0
            self.type_distribution.clear()
            self.processing_time_distribution.clear()
