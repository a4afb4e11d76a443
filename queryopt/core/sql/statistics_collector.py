# queryopt/core/sql/statistics_collector.py

from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

from queryopt.core.sql.sql_patterns import count_keyword, has_limit, prepare_for_analysis, statement_type


# Complexity weights per structural feature
JOIN_WEIGHT = 2
GROUP_BY_WEIGHT = 1
ORDER_BY_WEIGHT = 1
HAVING_WEIGHT = 1
UNION_WEIGHT = 2
SUBQUERY_WEIGHT = 3


@dataclass
class QueryStatistics:
    """Structural metrics of a query text."""
    query_length: int = 0
    select_count: int = 0
    join_count: int = 0
    where_conditions: int = 0
    group_by_count: int = 0
    order_by_count: int = 0
    has_limit: bool = False
    has_having: bool = False
    has_union: bool = False
    subquery_count: int = 0
    complexity_score: int = 0
    statement_type: str = 'UNKNOWN'

    def to_dict(self) -> Dict[str, Any]:
        stats = asdict(self)
        del stats['has_having']
        del stats['has_union']
        return stats


class StatisticsCollector:
    """Derives lightweight structural metrics from a query string."""

    def collect(self, query: Optional[str]) -> QueryStatistics:
        text = prepare_for_analysis(query)
        if not text:
            return QueryStatistics()

        select_count = count_keyword(text, 'SELECT')
        stats = QueryStatistics(
            query_length=len(query),
            select_count=select_count,
            join_count=count_keyword(text, 'JOIN'),
            where_conditions=count_keyword(text, 'WHERE'),
            group_by_count=count_keyword(text, 'GROUP BY'),
            order_by_count=count_keyword(text, 'ORDER BY'),
            has_limit=has_limit(text),
            has_having=count_keyword(text, 'HAVING') > 0,
            has_union=count_keyword(text, 'UNION') > 0,
            subquery_count=max(select_count - 1, 0),
            statement_type=statement_type(text),
        )
        stats.complexity_score = self.complexity_score(stats)
        return stats

    def complexity_score(self, stats: QueryStatistics) -> int:
        """Integer complexity score. Clauses count once; every nested SELECT counts."""
        score = 0
        if stats.join_count:
            score += JOIN_WEIGHT
        if stats.group_by_count:
            score += GROUP_BY_WEIGHT
        if stats.order_by_count:
            score += ORDER_BY_WEIGHT
        if stats.has_having:
            score += HAVING_WEIGHT
        if stats.has_union:
            score += UNION_WEIGHT
        score += SUBQUERY_WEIGHT * stats.subquery_count
        return score
