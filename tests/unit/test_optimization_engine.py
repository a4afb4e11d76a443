"""
Tests for the optimization engine orchestration
"""

import asyncio
import threading
from concurrent.futures import Future
from datetime import timedelta
from decimal import Decimal
from unittest.mock import Mock

import pytest

from queryopt.core.caching.optimization_cache import make_cache_key
from queryopt.core.engine.errors import COMPUTATION_ERROR, TIMEOUT_ERROR, VALIDATION_ERROR
from queryopt.core.engine.optimization_engine import (
    QueryOptimizationEngine, improvement_percentage, percent_reduction
)
from queryopt.core.sql.models import (
    ExecutionPlanAnalysis, OptimizationLevel, OptimizationRequest, OptimizationResponse,
    OptimizationType, TableStatistics, to_serializable
)


@pytest.fixture
def engine():
    engine = QueryOptimizationEngine({"query_optimization": {"worker_count": 2}})
    yield engine
    engine.shutdown(timeout=5)


@pytest.fixture
def orders():
    return TableStatistics(table_name="orders", row_count=500000)


def orders_request(orders, **overrides):
    return OptimizationRequest(original_query="SELECT * FROM orders", table_statistics=[orders], **overrides)


class TestOptimize:
    """End-to-end optimization of a single request"""

    def test_select_star_on_large_table(self, engine, orders):
        response = engine.optimize(orders_request(orders))

        assert response.success is True
        assert response.error_code is None
        assert [query.optimized_sql for query in response.optimized_queries] == [
            "SELECT column1, column2, column3 FROM orders",
            "SELECT * FROM orders LIMIT 1000",
        ]
        assert response.applied_optimizations == [
            OptimizationType.PROJECTION_PRUNING,
            OptimizationType.QUERY_REWRITE,
        ]

        cost_analysis = response.cost_analysis
        assert cost_analysis.original_cost.total_cost == Decimal(5000)
        assert cost_analysis.optimized_cost.total_cost == Decimal(10)
        assert cost_analysis.cost_reduction == Decimal(4990)
        assert cost_analysis.improvement_percentage == pytest.approx(99.8)
        assert set(cost_analysis.alternative_costs) == {"alternative_1", "alternative_2"}
        assert response.performance_estimate.speedup_factor == pytest.approx(500.0)

        assert any("placeholder" in warning for warning in response.warnings)
        assert len(response.execution_plan_analysis.bottlenecks) == 2
        assert response.metadata["database_type"] == "generic"
        assert response.metadata["statement_type"] == "SELECT"

    def test_candidates_carry_costs(self, engine, orders):
        response = engine.optimize(orders_request(orders))

        limit_candidate = response.optimized_queries[1]
        assert limit_candidate.cost_estimate.total_cost == Decimal(10)
        assert limit_candidate.performance_improvement.io_reduction == pytest.approx(99.8)

    def test_repeated_request_is_served_from_cache(self, engine, orders):
        first = engine.optimize(orders_request(orders))
        second = engine.optimize(orders_request(orders))

        assert engine.cache.metrics.hits == 1
        assert engine.cache.size == 1
        assert to_serializable(second) == to_serializable(first)
        assert engine.get_metrics()["total_optimizations"] == 2

    def test_candidates_in_descending_confidence(self, engine):
        response = engine.optimize(OptimizationRequest(
            original_query="SELECT * FROM orders WHERE customer_id IN (SELECT id FROM customers)",
            optimization_level=OptimizationLevel.ADVANCED,
        ))

        scores = [query.confidence_score for query in response.optimized_queries]
        assert scores == [0.9, 0.8, 0.7]
        assert scores == sorted(scores, reverse=True)

    def test_cache_hit_records_its_own_latency(self, orders):
        metrics = Mock()
        engine = QueryOptimizationEngine(metrics=metrics)
        request = orders_request(orders)
        stored = OptimizationResponse(
            request_id="earlier", original_query=request.original_query,
            optimization_time=timedelta(seconds=60), success=True,
        )
        engine.cache.put(make_cache_key(request), stored)
        try:
            response = engine.optimize(request)
        finally:
            engine.shutdown(timeout=5)

        assert response.optimization_time == timedelta(seconds=60)
        _, processing_time, success = metrics.record_optimization.call_args.args
        assert processing_time < timedelta(seconds=60)
        assert success is True

    def test_level_gates_subquery_rewrite(self, engine):
        sql = "SELECT id FROM orders WHERE customer_id IN (SELECT id FROM customers)"

        intermediate = engine.optimize(OptimizationRequest(original_query=sql))
        advanced = engine.optimize(OptimizationRequest(
            original_query=sql, optimization_level=OptimizationLevel.ADVANCED
        ))

        assert OptimizationType.SUBQUERY_OPTIMIZATION not in intermediate.applied_optimizations
        assert OptimizationType.SUBQUERY_OPTIMIZATION in advanced.applied_optimizations

    def test_disabled_types_are_filtered(self, engine, orders):
        response = engine.optimize(orders_request(
            orders, enabled_optimizations={OptimizationType.QUERY_REWRITE}
        ))

        assert response.applied_optimizations == [OptimizationType.QUERY_REWRITE]
        assert response.suggestions == []

    def test_max_alternatives(self, engine, orders):
        response = engine.optimize(orders_request(orders, max_alternatives=1))

        assert len(response.optimized_queries) == 1
        assert response.optimized_queries[0].confidence_score == 0.9

    def test_index_suggestions(self, engine):
        response = engine.optimize(OptimizationRequest(original_query="SELECT * FROM a JOIN b ON a.id = b.a_id"))

        assert [s.implementation for s in response.suggestions] == ["CREATE INDEX idx_join_a_id ON b (a_id)"]

    def test_optional_stages_can_be_skipped(self, engine, orders):
        response = engine.optimize(orders_request(
            orders, analyze_execution_plan=False, generate_alternatives=False, estimate_costs=False
        ))

        assert response.success is True
        assert response.execution_plan_analysis is None
        assert response.optimized_queries == []
        assert response.cost_analysis is None

    def test_overrunning_budget_adds_warning(self, engine, orders):
        response = engine.optimize(orders_request(orders, max_optimization_time=timedelta(0)))

        assert response.success is True
        assert any("exceeding" in warning for warning in response.warnings)


class TestFailures:
    """Failures are reported in the response, never raised"""

    def test_validation_failure_skips_components(self, engine):
        engine.plan_analyzer = Mock()
        response = engine.optimize(OptimizationRequest(original_query="   "))

        assert response.success is False
        assert response.error_code == VALIDATION_ERROR
        assert response.error_message == "Invalid optimization request: Query text is required"
        engine.plan_analyzer.analyze.assert_not_called()
        assert engine.get_metrics()["total_optimizations"] == 1
        assert engine.get_metrics()["success_rate"] == 0.0

    def test_negative_budget_is_rejected(self, engine):
        errors = engine.validate_request(OptimizationRequest(
            original_query="SELECT 1", max_optimization_time=timedelta(seconds=-1)
        ))
        assert errors == ["Maximum optimization time must not be negative"]

    @pytest.mark.parametrize("row_count", [None, "many", 1.5])
    def test_malformed_row_count_is_reported(self, engine, row_count):
        response = engine.optimize(OptimizationRequest(
            original_query="SELECT * FROM t",
            table_statistics=[TableStatistics(table_name="t", row_count=row_count)],
        ))

        assert response.success is False
        assert response.error_code == VALIDATION_ERROR
        assert "Row count of table t must be an integer" in response.error_message

    def test_malformed_statistics_objects_are_reported(self, engine):
        response = engine.optimize(OptimizationRequest(
            original_query="SELECT * FROM t",
            table_statistics=[{"table_name": "t", "row_count": 10}],
            existing_indexes=["idx_t"],
        ))

        assert response.success is False
        assert response.error_code == VALIDATION_ERROR
        assert "Table statistics must be TableStatistics, got dict" in response.error_message
        assert "Existing indexes must be IndexInformation, got str" in response.error_message

    def test_unexpected_validation_error(self, engine):
        engine.validator = Mock()
        engine.validator.validate.side_effect = RuntimeError("bad statistics")

        response = engine.optimize(OptimizationRequest(original_query="SELECT 1"))

        assert response.success is False
        assert response.error_code == COMPUTATION_ERROR
        assert response.error_message == "Error during optimization: validation failed: bad statistics"

    def test_missing_request(self, engine):
        response = engine.optimize(None)
        assert response.error_code == VALIDATION_ERROR
        assert response.request_id is None

    def test_component_failure(self, engine, orders):
        engine.query_rewriter = Mock()
        engine.query_rewriter.rewrite.side_effect = RuntimeError("boom")

        response = engine.optimize(orders_request(orders))

        assert response.success is False
        assert response.error_code == COMPUTATION_ERROR
        assert response.error_message == "Error during optimization: query rewrite failed: boom"
        assert engine.cache.size == 0

    def test_timeout_cancels_waiting(self, orders):
        release = threading.Event()
        engine = QueryOptimizationEngine({"query_optimization": {"worker_count": 1}})
        engine.plan_analyzer = Mock()
        engine.plan_analyzer.analyze.side_effect = lambda *args: release.wait(5) and ExecutionPlanAnalysis()
        try:
            response = engine.optimize(orders_request(orders), timeout=0.05)

            assert response.success is False
            assert response.error_code == TIMEOUT_ERROR
            assert response.error_message.startswith("Optimization timed out: ")
        finally:
            release.set()
            engine.shutdown(timeout=5)

    def test_submit_after_shutdown(self, orders):
        engine = QueryOptimizationEngine()
        engine.shutdown()

        response = engine.optimize(orders_request(orders))

        assert engine.is_initialized is False
        assert response.error_code == COMPUTATION_ERROR
        assert "shut down" in response.error_message


class TestConcurrency:
    """Non-blocking entry points and lifecycle"""

    def test_submit_returns_future(self, engine, orders):
        future = engine.submit(orders_request(orders))
        assert isinstance(future, Future)
        assert future.result(timeout=5).success is True

    def test_concurrent_requests(self, engine, orders):
        futures = [engine.submit(OptimizationRequest(original_query=f"SELECT * FROM t{n}")) for n in range(10)]
        responses = [future.result(timeout=10) for future in futures]

        assert all(response.success for response in responses)
        assert engine.get_metrics()["total_optimizations"] == 10

    def test_optimize_async(self, engine, orders):
        response = asyncio.run(engine.optimize_async(orders_request(orders)))
        assert response.success is True

    def test_component_futures(self, engine, orders):
        analysis = engine.analyze_query("SELECT * FROM orders", [orders]).result(timeout=5)
        suggestions = engine.suggest_indexes("SELECT id FROM orders WHERE status = 1").result(timeout=5)
        cost = engine.estimate_query_cost("SELECT * FROM orders", [orders]).result(timeout=5)

        assert analysis.plan_text.endswith("SELECT * FROM orders")
        assert suggestions[0].implementation == "CREATE INDEX idx_status ON orders (status)"
        assert cost.total_cost == Decimal(5000)

    def test_get_metrics(self, engine, orders):
        engine.optimize(orders_request(orders))
        metrics = engine.get_metrics()

        assert metrics["successful_optimizations"] == 1
        assert metrics["success_rate"] == 1.0
        assert metrics["cache_size"] == 1
        assert metrics["is_initialized"] is True
        assert metrics["optimization_type_distribution"] == {"PROJECTION_PRUNING": 1, "QUERY_REWRITE": 1}

    def test_clear_cache(self, engine, orders):
        engine.optimize(orders_request(orders))
        engine.clear_cache()
        assert engine.get_metrics()["cache_size"] == 0

    def test_context_manager_shuts_down(self):
        with QueryOptimizationEngine() as engine:
            assert engine.is_initialized
        assert not engine.is_initialized


class TestImprovementMath:

    def test_improvement_percentage_rounding(self):
        assert improvement_percentage(Decimal(3), Decimal(1)) == 66.67
        assert improvement_percentage(Decimal(5000), Decimal(10)) == 99.8

    def test_improvement_percentage_of_free_query(self):
        assert improvement_percentage(Decimal(0), Decimal(0)) == 0.0

    def test_percent_reduction(self):
        assert percent_reduction(200, 50) == 75.0
        assert percent_reduction(0, 10) == 0.0
