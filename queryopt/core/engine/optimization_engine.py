"""
Query Optimization Engine
Sequences the analysis components for each request, caches successful
responses and records metrics. Every public optimization call returns an
OptimizationResponse; failures are reported in it rather than raised.
"""

import asyncio
import logging
import threading
import time
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FuturesTimeoutError
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence

from queryopt.core.caching.optimization_cache import OptimizationCache, make_cache_key
from queryopt.core.engine.errors import (
    OptimizationComputationError, OptimizationError, OptimizationTimeoutError,
    OptimizationValidationError, timeout_advisory
)
from queryopt.core.engine.metrics import OptimizationMetrics
from queryopt.core.engine.request_validator import RequestValidator
from queryopt.core.sql.cost_estimator import CostEstimator
from queryopt.core.sql.index_optimizer import IndexOptimizer
from queryopt.core.sql.models import (
    CostAnalysis, CostEstimate, IndexInformation, OptimizationRequest,
    OptimizationResponse, OptimizationType, OptimizedQuery,
    PerformanceEstimate, PerformanceImprovement, TableStatistics
)
from queryopt.core.sql.plan_analyzer import ExecutionPlanAnalyzer
from queryopt.core.sql.query_rewriter import QueryRewriter
from queryopt.core.sql.statistics_collector import StatisticsCollector

logger = logging.getLogger(__name__)

DEFAULT_WORKERS = 6
DEFAULT_SHUTDOWN_TIMEOUT = 30


class QueryOptimizationEngine:
    """Cost-based SQL optimization engine backed by a worker pool."""

    def __init__(self, config: Dict[str, Any] = None,
                 cache: Optional[OptimizationCache] = None,
                 metrics: Optional[OptimizationMetrics] = None):
        self.config = config or {}
        optimization_config = self.config.get('query_optimization', {})

        self.statistics_collector = StatisticsCollector()
        self.cost_estimator = CostEstimator(statistics_collector=self.statistics_collector)
        self.plan_analyzer = ExecutionPlanAnalyzer(self.cost_estimator, self.statistics_collector)
        self.query_rewriter = QueryRewriter(
            default_limit=optimization_config.get('default_limit', 1000),
            max_projection_columns=optimization_config.get('max_projection_columns', 5),
        )
        self.index_optimizer = IndexOptimizer()
        self.validator = RequestValidator()

        self.cache = cache if cache is not None else OptimizationCache.from_config(self.config)
        self.metrics = metrics if metrics is not None else OptimizationMetrics()

        self.worker_count = optimization_config.get('worker_count', DEFAULT_WORKERS)
        self.shutdown_timeout = optimization_config.get('shutdown_timeout_seconds', DEFAULT_SHUTDOWN_TIMEOUT)
        self.executor = ThreadPoolExecutor(max_workers=self.worker_count, thread_name_prefix='queryopt')

        self._lock = threading.Lock()
        self._in_flight = set()
        self._initialized = True

        logger.info(f"Query optimization engine initialized with {self.worker_count} workers")

    # Public API

    def submit(self, request: OptimizationRequest) -> Future:
        """Schedule an optimization; the future always resolves to an OptimizationResponse."""
        started = time.perf_counter()

        try:
            errors = self.validate_request(request)
        except Exception as e:
            logger.error(f"Request validation failed unexpectedly: {e}")
            return self._completed(self._fail(request, OptimizationComputationError('validation', e), started))
        if errors:
            logger.warning(f"Rejected optimization request: {'; '.join(errors)}")
            return self._completed(self._fail(request, OptimizationValidationError(errors), started))

        with self._lock:
            if not self._initialized:
                failure = OptimizationComputationError('submit', RuntimeError('engine has been shut down'))
                return self._completed(self._fail(request, failure, started))
            future = self.executor.submit(self._optimize, request, started)
            self._in_flight.add(future)
        future.add_done_callback(self._discard_in_flight)
        return future

    def optimize(self, request: OptimizationRequest, timeout: Optional[float] = None) -> OptimizationResponse:
        """Blocking optimization. A timeout cancels the work and reports a failed response."""
        future = self.submit(request)
        try:
            return future.result(timeout=timeout)
        except (FuturesTimeoutError, CancelledError):
            cancelled = future.cancel()
            failure = OptimizationTimeoutError(timeout)
            logger.warning(f"Optimization {request.request_id} abandoned: {failure}")
            response = self._failure_response(request, failure)
            response.optimization_time = timedelta(seconds=timeout or 0)
            if cancelled:
                # The worker never ran, so nothing else records this request
                self._record(response)
            return response

    async def optimize_async(self, request: OptimizationRequest) -> OptimizationResponse:
        return await asyncio.wrap_future(self.submit(request))

    def analyze_query(self, query: str, table_stats: Sequence[TableStatistics] = ()) -> Future:
        """Execution plan analysis only, without rewriting."""
        return self.executor.submit(self.plan_analyzer.analyze, query, list(table_stats))

    def suggest_indexes(self, query: str, table_stats: Sequence[TableStatistics] = (),
                        existing_indexes: Sequence[IndexInformation] = ()) -> Future:
        return self.executor.submit(
            self.index_optimizer.suggest_indexes, query, list(table_stats), list(existing_indexes)
        )

    def estimate_query_cost(self, query: str, table_stats: Sequence[TableStatistics] = ()) -> Future:
        return self.executor.submit(self.cost_estimator.estimate, query, list(table_stats))

    def validate_request(self, request: OptimizationRequest) -> List[str]:
        return self.validator.validate(request)

    def get_metrics(self) -> Dict[str, Any]:
        metrics = self.metrics.get_metrics()
        metrics['cache_size'] = self.cache.size
        metrics['cache'] = self.cache.get_cache_stats()
        metrics['is_initialized'] = self.is_initialized
        return metrics

    def clear_cache(self):
        self.cache.clear()

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def shutdown(self, timeout: Optional[float] = None):
        """Stop accepting work, cancel queued work and wait for running work to finish."""
        with self._lock:
            if not self._initialized:
                return
            self._initialized = False
            pending = list(self._in_flight)

        self.executor.shutdown(wait=False, cancel_futures=True)
        timeout = self.shutdown_timeout if timeout is None else timeout
        _, not_done = wait(pending, timeout=timeout)
        if not_done:
            logger.warning(f"{len(not_done)} optimizations still running after {timeout}s shutdown timeout")
        logger.info("Query optimization engine shut down")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()
        return False

    # Orchestration

    def _optimize(self, request: OptimizationRequest, started: float) -> OptimizationResponse:
        response = OptimizationResponse(request_id=request.request_id, original_query=request.original_query)

        try:
            cache_key = self._run_stage('cache lookup', make_cache_key, request)
            cached = self._run_stage('cache lookup', self.cache.get, cache_key)
            if cached is not None:
                logger.debug(f"Cache hit for request {request.request_id}")
                self.metrics.record_optimization(cached.applied_optimizations, self._elapsed(started), cached.success)
                return cached

            self._compute(request, response)
            response.success = True
        except OptimizationError as e:
            logger.error(f"Optimization {request.request_id} failed: {e}")
            self._apply_failure(response, e)

        response.optimization_time = self._elapsed(started)
        budget = request.max_optimization_time
        if response.optimization_time > budget:
            advisory = timeout_advisory(response.optimization_time, budget)
            logger.warning(f"Request {request.request_id}: {advisory}")
            response.warnings.append(advisory)

        if response.success:
            self.cache.put(cache_key, response)
            logger.info(
                f"Optimization {request.request_id} completed in "
                f"{response.optimization_time.total_seconds() * 1000:.1f}ms with "
                f"{len(response.optimized_queries)} alternatives and {len(response.suggestions)} suggestions"
            )

        self._record(response)
        return response

    def _compute(self, request: OptimizationRequest, response: OptimizationResponse):
        query = request.original_query
        table_stats = list(request.table_statistics)
        level = request.optimization_level

        if request.analyze_execution_plan:
            response.execution_plan_analysis = self._run_stage(
                'execution plan analysis', self.plan_analyzer.analyze, query, table_stats
            )

        if request.generate_alternatives:
            candidates = self._run_stage('query rewrite', self.query_rewriter.rewrite, query, level, table_stats)
            response.optimized_queries = self._select_candidates(candidates, request)
            for candidate in response.optimized_queries:
                for warning in candidate.warnings:
                    if warning not in response.warnings:
                        response.warnings.append(warning)

        if OptimizationType.INDEX_OPTIMIZATION in request.enabled_optimizations \
                and level.permits(OptimizationType.INDEX_OPTIMIZATION):
            response.suggestions.extend(self._run_stage(
                'index optimization', self.index_optimizer.suggest_indexes,
                query, table_stats, list(request.existing_indexes)
            ))

        if request.estimate_costs:
            self._run_stage('cost estimation', self._estimate_costs, request, response)

        query_stats = self._run_stage('statistics collection', self.statistics_collector.collect, query)
        response.metadata.update(query_stats.to_dict())
        response.metadata['database_type'] = request.database_type
        response.metadata['schema_name'] = request.schema_name

    @staticmethod
    def _select_candidates(candidates: List[OptimizedQuery], request: OptimizationRequest) -> List[OptimizedQuery]:
        """Keep candidates allowed by the request policy, most confident first."""
        level = request.optimization_level
        allowed = [
            candidate for candidate in candidates
            if all(t in request.enabled_optimizations and level.permits(t)
                   for t in candidate.applied_optimizations)
        ]
        allowed.sort(key=lambda candidate: candidate.confidence_score, reverse=True)
        return allowed[:request.max_alternatives]

    def _estimate_costs(self, request: OptimizationRequest, response: OptimizationResponse):
        table_stats = list(request.table_statistics)
        original_cost = self.cost_estimator.estimate(request.original_query, table_stats)
        analysis = CostAnalysis(original_cost=original_cost)

        best: Optional[OptimizedQuery] = None
        for position, candidate in enumerate(response.optimized_queries, start=1):
            candidate.cost_estimate = self.cost_estimator.estimate(candidate.optimized_sql, table_stats)
            candidate.performance_improvement = self._performance_improvement(original_cost, candidate.cost_estimate)
            analysis.alternative_costs[f"alternative_{position}"] = candidate.cost_estimate
            if best is None or candidate.cost_estimate.total_cost < best.cost_estimate.total_cost:
                best = candidate

        if best is not None:
            optimized_cost = best.cost_estimate
            analysis.optimized_cost = optimized_cost
            analysis.cost_reduction = original_cost.total_cost - optimized_cost.total_cost
            analysis.improvement_percentage = improvement_percentage(original_cost.total_cost,
                                                                     optimized_cost.total_cost)
            response.performance_estimate = self._performance_estimate(original_cost, optimized_cost)

        response.cost_analysis = analysis

    @staticmethod
    def _performance_improvement(original: CostEstimate, optimized: CostEstimate) -> PerformanceImprovement:
        execution = percent_reduction(original.estimated_execution_time.total_seconds(),
                                      optimized.estimated_execution_time.total_seconds())
        memory = percent_reduction(original.estimated_memory_usage, optimized.estimated_memory_usage)
        return PerformanceImprovement(
            execution_time_improvement=execution,
            memory_usage_improvement=memory,
            cpu_usage_improvement=percent_reduction(original.cpu_cost, optimized.cpu_cost),
            io_reduction=percent_reduction(original.io_cost, optimized.io_cost),
            improvement_summary=f"{execution:.1f}% execution time, {memory:.1f}% memory",
        )

    @staticmethod
    def _performance_estimate(original: CostEstimate, optimized: CostEstimate) -> PerformanceEstimate:
        if optimized.total_cost > 0:
            speedup = float(original.total_cost / optimized.total_cost)
        else:
            speedup = 1.0
        return PerformanceEstimate(
            original_execution_time=original.estimated_execution_time,
            optimized_execution_time=optimized.estimated_execution_time,
            time_saved=original.estimated_execution_time - optimized.estimated_execution_time,
            speedup_factor=speedup,
            original_memory_usage=original.estimated_memory_usage,
            optimized_memory_usage=optimized.estimated_memory_usage,
            memory_saved=original.estimated_memory_usage - optimized.estimated_memory_usage,
        )

    # Helpers

    @staticmethod
    def _run_stage(stage: str, func: Callable, *args):
        try:
            return func(*args)
        except Exception as e:
            raise OptimizationComputationError(stage, e) from e

    def _fail(self, request: Optional[OptimizationRequest], error: OptimizationError,
              started: float) -> OptimizationResponse:
        response = self._failure_response(request, error)
        response.optimization_time = self._elapsed(started)
        self._record(response)
        return response

    def _failure_response(self, request: Optional[OptimizationRequest],
                          error: OptimizationError) -> OptimizationResponse:
        response = OptimizationResponse(
            request_id=getattr(request, 'request_id', None),
            original_query=getattr(request, 'original_query', None),
        )
        self._apply_failure(response, error)
        return response

    @staticmethod
    def _apply_failure(response: OptimizationResponse, error: OptimizationError):
        response.success = False
        response.error_code = error.error_code
        response.error_message = error.response_message

    def _record(self, response: OptimizationResponse):
        self.metrics.record_optimization(response.applied_optimizations, response.optimization_time,
                                         response.success)

    def _discard_in_flight(self, future: Future):
        with self._lock:
            self._in_flight.discard(future)

    @staticmethod
    def _completed(response: OptimizationResponse) -> Future:
        future = Future()
        future.set_result(response)
        return future

    @staticmethod
    def _elapsed(started: float) -> timedelta:
        return timedelta(seconds=time.perf_counter() - started)


def improvement_percentage(original_total: Decimal, optimized_total: Decimal) -> float:
    """Relative cost reduction in percent, rounded to two decimals; 0.0 when the original is free."""
    if original_total == 0:
        return 0.0
    ratio = ((original_total - optimized_total) / original_total).quantize(Decimal('0.0001'), ROUND_HALF_UP)
    return float(ratio * 100)


def percent_reduction(before, after) -> float:
    before, after = float(before), float(after)
    if before == 0:
        return 0.0
    return (before - after) / before * 100
