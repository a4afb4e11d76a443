# queryopt/core/sql/plan_analyzer.py

import logging
from enum import Enum
from typing import List, Optional, Sequence

from queryopt.core.sql.cost_estimator import CostEstimator
from queryopt.core.sql.models import CostEstimate, ExecutionPlanAnalysis, PlanNode, TableStatistics
from queryopt.core.sql.sql_patterns import (
    count_keyword, has_limit, has_select_star, is_select, join_conditions,
    prepare_for_analysis, table_references, trailing_limit
)
from queryopt.core.sql.statistics_collector import StatisticsCollector

logger = logging.getLogger(__name__)


class Bottleneck(Enum):
    """Text patterns associated with likely inefficiency, each with its fixed recommendation."""
    SELECT_STAR = (
        "SELECT * pode retornar colunas desnecessárias",
        "Especificar apenas as colunas necessárias",
    )
    MISSING_LIMIT = (
        "Consulta sem LIMIT pode retornar muitos registros",
        "Adicionar cláusula LIMIT para limitar resultados",
    )
    UNINDEXED_JOIN = (
        "JOINs podem estar sem índices apropriados",
        "Criar índices nas colunas de JOIN e WHERE",
    )
    SUBQUERY = (
        "Subconsultas podem ser otimizadas com JOINs",
        "Considerar reescrever subconsultas como JOINs",
    )

    def __init__(self, message: str, recommendation: str):
        self.message = message
        self.recommendation = recommendation


class ExecutionPlanAnalyzer:
    """
    Simulates an execution plan from the query text and table statistics.

    No database is consulted. The plan tree is a plausible shape for the
    statement (scans, joins, aggregation, sort, limit) and the bottlenecks
    are rule based.
    """

    def __init__(self, cost_estimator: Optional[CostEstimator] = None,
                 statistics_collector: Optional[StatisticsCollector] = None):
        self.statistics_collector = statistics_collector or StatisticsCollector()
        self.cost_estimator = cost_estimator or CostEstimator(statistics_collector=self.statistics_collector)

    def analyze(self, query: str, table_stats: Sequence[TableStatistics] = ()) -> ExecutionPlanAnalysis:
        text = prepare_for_analysis(query)
        bottlenecks = self.identify_bottlenecks(text, table_stats)
        root = self.build_plan(text, table_stats)

        statistics = self.statistics_collector.collect(query).to_dict()
        statistics['tables_scanned'] = len(self._collect_scans(root))
        statistics['bottleneck_count'] = len(bottlenecks)

        analysis = ExecutionPlanAnalysis(
            plan_text=f"Simulated execution plan for: {query}",
            plan_nodes=[root] if root else [],
            total_cost=self.cost_estimator.estimate(query, table_stats),
            bottlenecks=[bottleneck.message for bottleneck in bottlenecks],
            recommendations=[bottleneck.recommendation for bottleneck in bottlenecks],
            statistics=statistics,
        )
        logger.debug(f"Plan analysis found {len(bottlenecks)} bottlenecks")
        return analysis

    def identify_bottlenecks(self, text: str, table_stats: Sequence[TableStatistics]) -> List[Bottleneck]:
        bottlenecks = []
        if not text:
            return bottlenecks

        if has_select_star(text):
            bottlenecks.append(Bottleneck.SELECT_STAR)
        if is_select(text) and not has_limit(text):
            bottlenecks.append(Bottleneck.MISSING_LIMIT)
        if count_keyword(text, 'JOIN') and not any(stats.index_size > 0 for stats in table_stats):
            bottlenecks.append(Bottleneck.UNINDEXED_JOIN)
        if count_keyword(text, 'SELECT') > 1:
            bottlenecks.append(Bottleneck.SUBQUERY)
        return bottlenecks

    def build_plan(self, text: str, table_stats: Sequence[TableStatistics]) -> Optional[PlanNode]:
        """Synthesize a plan tree: root -> LIMIT / SORT / AGGREGATE -> HASH JOIN -> scans."""
        if not text:
            return None

        stats_by_table = {stats.table_name.lower(): stats for stats in table_stats}
        table_names = []
        for table, _ in table_references(text):
            bare_table = table.split('.')[-1]
            if bare_table.lower() not in (name.lower() for name in table_names):
                table_names.append(bare_table)
        if not table_names:
            table_names = [stats.table_name for stats in table_stats]

        scans = [self._scan_node(name, stats_by_table.get(name.lower())) for name in table_names]
        node = self._join_nodes(scans, join_conditions(text))

        if count_keyword(text, 'GROUP BY'):
            node = self._operator('AGGREGATE', 'Hash aggregate', node)
        if count_keyword(text, 'ORDER BY'):
            node = self._operator('SORT', 'Sort', node)
        if has_limit(text):
            node = self._operator('LIMIT', 'Limit', node, row_cap=trailing_limit(text))

        statement = self.statistics_collector.collect(text).statement_type
        return self._operator(statement, f"{statement} statement", node)

    def _scan_node(self, table_name: str, stats: Optional[TableStatistics]) -> PlanNode:
        if stats is None:
            return PlanNode(node_type='SEQ SCAN', operation=f"Sequential scan on {table_name}",
                            table_name=table_name)

        if stats.index_size > 0:
            node_type, operation = 'INDEX SCAN', f"Index scan on {table_name}"
        else:
            node_type, operation = 'SEQ SCAN', f"Sequential scan on {table_name}"
        return PlanNode(
            node_type=node_type,
            operation=operation,
            cost=self.cost_estimator.scan_cost(stats),
            estimated_rows=stats.row_count,
            table_name=table_name,
        )

    def _join_nodes(self, scans: List[PlanNode], conditions: List[str]) -> Optional[PlanNode]:
        if not scans:
            return None
        node = scans[0]
        for position, right in enumerate(scans[1:]):
            join_condition = conditions[position:position + 1]
            node = PlanNode(
                node_type='HASH JOIN',
                operation=f"Hash join {node.table_name or 'intermediate'} with {right.table_name}",
                cost=self._roll_up([node, right]),
                estimated_rows=max(node.estimated_rows, right.estimated_rows),
                conditions=join_condition,
                children=[node, right],
            )
        return node

    def _operator(self, node_type: str, operation: str, child: Optional[PlanNode],
                  row_cap: Optional[int] = None) -> PlanNode:
        children = [child] if child else []
        rows = child.estimated_rows if child else 0
        if row_cap is not None:
            rows = min(rows, row_cap)
        return PlanNode(
            node_type=node_type,
            operation=operation,
            cost=self._roll_up(children),
            estimated_rows=rows,
            children=children,
        )

    @staticmethod
    def _roll_up(children: List[PlanNode]) -> CostEstimate:
        total = CostEstimate()
        for child in children:
            total.cpu_cost += child.cost.cpu_cost
            total.io_cost += child.cost.io_cost
            total.network_cost += child.cost.network_cost
            total.total_cost += child.cost.total_cost
            total.estimated_execution_time += child.cost.estimated_execution_time
            total.estimated_memory_usage += child.cost.estimated_memory_usage
        return total

    def _collect_scans(self, node: Optional[PlanNode]) -> List[PlanNode]:
        if node is None:
            return []
        if not node.children:
            return [node] if node.table_name else []
        scans = []
        for child in node.children:
            scans.extend(self._collect_scans(child))
        return scans
