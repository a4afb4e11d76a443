# queryopt/core/sql/query_rewriter.py

import logging
import re
from typing import List, Sequence

from queryopt.core.sql.models import OptimizationLevel, OptimizationType, OptimizedQuery, TableStatistics
from queryopt.core.sql.sql_patterns import (
    IDENTIFIER, SELECT_STAR_PATTERN, count_keyword, find_closing_paren, has_limit, has_select_star,
    is_select, mask_literals_and_comments, prepare_for_analysis, strip_comments, table_references
)

logger = logging.getLogger(__name__)

PLACEHOLDER_COLUMNS = ['column1', 'column2', 'column3']

PROJECTION_CONFIDENCE = 0.9
LIMIT_CONFIDENCE = 0.8
SUBQUERY_CONFIDENCE = 0.7

MANUAL_REVIEW_WARNING = (
    'Subquery to JOIN conversion is a textual rewrite and requires manual review '
    'before it is used in production'
)

IN_SUBQUERY_PATTERN = re.compile(
    rf'\bWHERE\s+((?:{IDENTIFIER}\.)?{IDENTIFIER})\s+IN\s*\(\s*SELECT\b',
    re.IGNORECASE
)
SUBQUERY_PROJECTION_PATTERN = re.compile(
    rf'^\s*SELECT\s+(DISTINCT\s+)?((?:{IDENTIFIER}\.)?{IDENTIFIER})\s+FROM\b',
    re.IGNORECASE
)


class QueryRewriter:
    """
    Policy-gated textual rewrite rules. Every rule that fires produces its own
    standalone candidate; rules are never chained into a single SQL string.
    """

    def __init__(self, default_limit: int = 1000, max_projection_columns: int = 5):
        self.default_limit = default_limit
        self.max_projection_columns = max_projection_columns

    def rewrite(self, query: str, level: OptimizationLevel,
                table_stats: Sequence[TableStatistics] = ()) -> List[OptimizedQuery]:
        """Produce candidate rewrites allowed at the given optimization level."""
        candidates = []
        analysis_text = prepare_for_analysis(query)
        if not analysis_text:
            return candidates
        masked = mask_literals_and_comments(query)

        if level.permits(OptimizationType.PROJECTION_PRUNING) and has_select_star(masked):
            candidates.append(self._prune_projection(query, table_stats))

        if level.permits(OptimizationType.QUERY_REWRITE) and is_select(analysis_text) \
                and not has_limit(analysis_text):
            candidates.append(self._inject_limit(query))

        if level.permits(OptimizationType.SUBQUERY_OPTIMIZATION) \
                and count_keyword(analysis_text, 'SELECT') > 1:
            candidates.append(self._convert_subquery(query))

        logger.debug(f"Rewriter produced {len(candidates)} candidates at level {level.name}")
        return candidates

    # Rule 1: projection pruning
    def _prune_projection(self, query: str, table_stats: Sequence[TableStatistics]) -> OptimizedQuery:
        columns = self._projection_columns(query, table_stats)
        warnings = []
        if not columns:
            columns = PLACEHOLDER_COLUMNS
            warnings.append('No column statistics were supplied; replace the placeholder column names')

        # Match on the masked copy so a SELECT * inside a literal or comment is left alone
        star = SELECT_STAR_PATTERN.search(mask_literals_and_comments(query))
        rewritten = f"{query[:star.start()]}SELECT {', '.join(columns)}{query[star.end():]}"
        return OptimizedQuery(
            optimized_sql=rewritten,
            explanation='Replaced SELECT * with an explicit column list to reduce the data read and transferred',
            applied_optimizations=[OptimizationType.PROJECTION_PRUNING],
            confidence_score=PROJECTION_CONFIDENCE,
            warnings=warnings,
            metadata={'projected_columns': list(columns)},
        )

    def _projection_columns(self, query: str, table_stats: Sequence[TableStatistics]) -> List[str]:
        """Columns of the table selected from, or of the first table that has column statistics."""
        referenced = {table.split('.')[-1].lower() for table, _ in table_references(prepare_for_analysis(query))[:1]}
        ordered = sorted(table_stats, key=lambda stats: stats.table_name.lower() not in referenced)
        for stats in ordered:
            if stats.column_statistics:
                return list(stats.column_statistics)[:self.max_projection_columns]
        return []

    # Rule 2: limit injection
    def _inject_limit(self, query: str) -> OptimizedQuery:
        rewritten = f"{strip_comments(query).rstrip(';').rstrip()} LIMIT {self.default_limit}"
        return OptimizedQuery(
            optimized_sql=rewritten,
            explanation=f'Added LIMIT {self.default_limit} to avoid returning an unbounded result set',
            applied_optimizations=[OptimizationType.QUERY_REWRITE],
            confidence_score=LIMIT_CONFIDENCE,
            metadata={'limit': self.default_limit},
        )

    # Rule 3: subquery to join conversion
    def _convert_subquery(self, query: str) -> OptimizedQuery:
        rewritten, join_column = self.convert_in_subquery(query)
        if rewritten is None:
            rewritten = query
            explanation = ('Query has nested subqueries but no WHERE ... IN (SELECT ...) pattern '
                           'that can be converted textually; the query was left unchanged')
        else:
            explanation = 'Converted the IN subquery into an INNER JOIN on a distinct derived table'

        return OptimizedQuery(
            optimized_sql=rewritten,
            explanation=explanation,
            applied_optimizations=[OptimizationType.SUBQUERY_OPTIMIZATION],
            confidence_score=SUBQUERY_CONFIDENCE,
            required_indexes=[join_column] if join_column else [],
            warnings=[MANUAL_REVIEW_WARNING],
        )

    def convert_in_subquery(self, query: str):
        """
        Rewrite the first `WHERE col IN (SELECT x FROM ...)` into
        `INNER JOIN (SELECT DISTINCT x FROM ...) sq1 ON col = sq1.x`.

        Returns (rewritten_sql, join_column), or (None, None) when the pattern
        is absent or cannot be converted without changing the predicate logic
        (e.g. the IN is followed by an OR).
        """
        masked = mask_literals_and_comments(query)
        match = IN_SUBQUERY_PATTERN.search(masked)
        if not match:
            return None, None

        open_index = masked.index('(', match.end(1))
        close_index = find_closing_paren(masked, open_index)
        if close_index is None:
            return None, None

        subquery = query[open_index + 1:close_index].strip()
        projection = SUBQUERY_PROJECTION_PATTERN.match(subquery)
        if not projection:
            return None, None

        outer_column = match.group(1)
        inner_column = projection.group(2)
        if not projection.group(1):
            subquery = re.sub(r'^\s*SELECT\s+', 'SELECT DISTINCT ', subquery, count=1, flags=re.IGNORECASE)

        remainder = query[close_index + 1:].strip()
        if re.match(r'OR\b', remainder, re.IGNORECASE):
            return None, None
        if re.match(r'AND\b', remainder, re.IGNORECASE):
            remainder = re.sub(r'^AND\b', 'WHERE', remainder, count=1, flags=re.IGNORECASE)

        alias = 'sq1'
        join_key = inner_column.split('.')[-1]
        head = query[:match.start()].rstrip()
        rewritten = f"{head} INNER JOIN ({subquery}) {alias} ON {outer_column} = {alias}.{join_key}"
        if remainder:
            rewritten = f"{rewritten} {remainder}"
        return rewritten, outer_column.split('.')[-1]
