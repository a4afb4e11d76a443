"""
Tests for the linear cost model
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from queryopt.core.sql.cost_estimator import CostEstimator, CostWeights
from queryopt.core.sql.models import TableStatistics


@pytest.fixture
def estimator():
    return CostEstimator()


@pytest.fixture
def orders():
    return TableStatistics(table_name="orders", row_count=500000)


class TestCostEstimator:
    """Cost components, totals and row volume"""

    def test_full_scan_cost(self, estimator, orders):
        cost = estimator.estimate("SELECT * FROM orders", [orders])

        assert cost.cpu_cost == Decimal(0)
        assert cost.io_cost == Decimal(5000)
        assert cost.network_cost == Decimal(0)
        assert cost.total_cost == Decimal(5000)
        assert cost.estimated_execution_time == timedelta(milliseconds=5000)
        assert cost.estimated_memory_usage == 500000 * 50

    def test_total_is_sum_of_components(self, estimator, orders):
        customers = TableStatistics(table_name="customers", row_count=1234)
        sql = ("SELECT o.id FROM orders o JOIN customers c ON o.customer_id = c.id "
               "WHERE c.id IN (SELECT customer_id FROM vip) ORDER BY o.id")
        cost = estimator.estimate(sql, [orders, customers])

        assert cost.total_cost == cost.cpu_cost + cost.io_cost + cost.network_cost
        # JOIN(2) + ORDER BY(1) + nested SELECT(3)
        assert cost.cpu_cost == Decimal(600)
        assert cost.network_cost == Decimal(6 * 501234) / Decimal(10000)

    def test_trailing_limit_caps_row_volume(self, estimator, orders):
        cost = estimator.estimate("SELECT * FROM orders LIMIT 1000", [orders])

        assert cost.io_cost == Decimal(10)
        assert cost.total_cost == Decimal(10)
        assert cost.estimated_memory_usage == 1000 * 50

    def test_limit_after_sort_reads_every_row(self, estimator, orders):
        cost = estimator.estimate("SELECT * FROM orders ORDER BY created_at LIMIT 10", [orders])

        assert cost.cpu_cost == Decimal(100)
        assert cost.io_cost == Decimal(5000)
        assert cost.network_cost == Decimal(50)
        assert cost.total_cost == Decimal(5150)

    def test_no_statistics_means_no_row_cost(self, estimator):
        cost = estimator.estimate("SELECT * FROM a JOIN b ON a.id = b.a_id", [])

        assert cost.io_cost == Decimal(0)
        assert cost.total_cost == Decimal(200)
        assert cost.estimated_memory_usage == 0

    def test_injected_weights(self, orders):
        estimator = CostEstimator(CostWeights(cpu_weight=10, io_divisor=1000, network_divisor=100, bytes_per_row=8))
        cost = estimator.estimate("SELECT * FROM orders GROUP BY status", [orders])

        assert cost.cpu_cost == Decimal(10)
        assert cost.io_cost == Decimal(500)
        assert cost.network_cost == Decimal(5000)
        assert cost.estimated_memory_usage == 500000 * 8

    def test_scan_cost_is_io_only(self, estimator, orders):
        cost = estimator.scan_cost(orders)

        assert cost.cpu_cost == Decimal(0)
        assert cost.total_cost == cost.io_cost == Decimal(5000)

    def test_row_volume_ignores_limit_inside_subquery(self, estimator, orders):
        sql = "SELECT * FROM orders WHERE id IN (SELECT order_id FROM items LIMIT 5) AND total > 3"
        assert estimator.row_volume(sql, [orders]) == 500000
