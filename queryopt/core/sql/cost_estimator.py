# queryopt/core/sql/cost_estimator.py

from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Optional, Sequence

from queryopt.core.sql.models import CostEstimate, TableStatistics
from queryopt.core.sql.sql_patterns import count_keyword, prepare_for_analysis, trailing_limit
from queryopt.core.sql.statistics_collector import StatisticsCollector

# Clauses that need every input row before a LIMIT can stop the scan
FULL_SCAN_CLAUSES = ('ORDER BY', 'GROUP BY', 'DISTINCT', 'UNION')


@dataclass(frozen=True)
class CostWeights:
    """Weight table of the linear cost model."""
    cpu_weight: int = 100
    io_divisor: int = 100
    network_divisor: int = 10000
    bytes_per_row: int = 50


class CostEstimator:
    """
    Linear cost model over query complexity and table sizes.

    cpu = complexity * cpu_weight
    io = rows / io_divisor
    network = complexity * rows / network_divisor
    total = cpu + io + network

    Swap the weight table to recalibrate the model.
    """

    def __init__(self, weights: Optional[CostWeights] = None,
                 statistics_collector: Optional[StatisticsCollector] = None):
        self.weights = weights or CostWeights()
        self.statistics_collector = statistics_collector or StatisticsCollector()

    def estimate(self, query: str, table_stats: Sequence[TableStatistics]) -> CostEstimate:
        """Estimate the cost of running query against the given tables."""
        complexity = self.statistics_collector.collect(query).complexity_score
        rows = self.row_volume(query, table_stats)

        cpu_cost = Decimal(complexity * self.weights.cpu_weight)
        io_cost = Decimal(rows) / Decimal(self.weights.io_divisor)
        network_cost = Decimal(complexity * rows) / Decimal(self.weights.network_divisor)
        total_cost = cpu_cost + io_cost + network_cost

        return CostEstimate(
            cpu_cost=cpu_cost,
            io_cost=io_cost,
            network_cost=network_cost,
            total_cost=total_cost,
            estimated_execution_time=timedelta(milliseconds=int(total_cost)),
            estimated_memory_usage=rows * self.weights.bytes_per_row,
        )

    def scan_cost(self, table_stats: TableStatistics) -> CostEstimate:
        """IO-only cost of reading every row of one table."""
        io_cost = Decimal(table_stats.row_count) / Decimal(self.weights.io_divisor)
        return CostEstimate(
            io_cost=io_cost,
            total_cost=io_cost,
            estimated_execution_time=timedelta(milliseconds=int(io_cost)),
            estimated_memory_usage=table_stats.row_count * self.weights.bytes_per_row,
        )

    def row_volume(self, query: str, table_stats: Sequence[TableStatistics]) -> int:
        """Rows the query is expected to touch: all table rows, or the LIMIT cap when it can stop early."""
        total_rows = sum(stats.row_count for stats in table_stats)

        text = prepare_for_analysis(query)
        limit = trailing_limit(text)
        if limit is None:
            return total_rows
        if any(count_keyword(text, clause) for clause in FULL_SCAN_CLAUSES):
            return total_rows
        return min(total_rows, limit)
