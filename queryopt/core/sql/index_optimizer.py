# queryopt/core/sql/index_optimizer.py

import logging
import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, List, Optional, Sequence, Set

from queryopt.core.sql.models import (
    IndexInformation, OptimizationSuggestion, OptimizationType, TableStatistics
)
from queryopt.core.sql.sql_patterns import (
    IDENTIFIER, SQL_KEYWORDS, alias_map, join_conditions, prepare_for_analysis, table_references
)

logger = logging.getLogger(__name__)

WHERE_IMPACT = 0.8
JOIN_IMPACT = 0.9
DEFAULT_DIFFICULTY = 'Low'
DEFAULT_IMPLEMENTATION_TIME = timedelta(minutes=5)

# Conventional surrogate primary key, assumed indexed when it appears in a JOIN predicate
SURROGATE_KEY = 'id'

WHERE_COLUMN_PATTERN = re.compile(
    rf'\bWHERE\s+(?:NOT\s+)?\(?\s*((?:{IDENTIFIER}\.)?{IDENTIFIER})',
    re.IGNORECASE
)
QUALIFIED_COLUMN_PATTERN = re.compile(rf'\b({IDENTIFIER})\.({IDENTIFIER})\b')


@dataclass
class IndexCandidate:
    """A column seen in a filter or join predicate."""
    column: str
    table: str
    source: str  # 'where' or 'join'


class IndexOptimizer:
    """
    Suggests single-column indexes for columns used in WHERE filters and JOIN
    predicates that are not already covered by an index.
    """

    def suggest_indexes(self, query: str, table_stats: Sequence[TableStatistics] = (),
                        existing_indexes: Sequence[IndexInformation] = ()) -> List[OptimizationSuggestion]:
        text = prepare_for_analysis(query)
        if not text:
            return []

        covered = self._covered_columns(table_stats, existing_indexes)
        suggestions = []
        for candidate in self.extract_candidates(text):
            column = candidate.column.lower()
            if column in covered or (candidate.source == 'join' and column == SURROGATE_KEY):
                continue
            suggestions.append(self._build_suggestion(candidate))

        logger.debug(f"Index optimizer produced {len(suggestions)} suggestions")
        return suggestions

    def extract_candidates(self, text: str) -> List[IndexCandidate]:
        """WHERE and JOIN columns, one per column name; a JOIN occurrence replaces a WHERE one."""
        aliases = alias_map(text)
        references = table_references(text)
        default_table = references[0][0].split('.')[-1] if references else None

        candidates: Dict[str, IndexCandidate] = {}

        for match in WHERE_COLUMN_PATTERN.finditer(text):
            reference = match.group(1)
            qualifier, _, column = reference.rpartition('.')
            if column.upper() in SQL_KEYWORDS:
                continue
            table = self._resolve_table(qualifier, aliases, default_table)
            candidates.setdefault(column.lower(), IndexCandidate(column, table, 'where'))

        for condition in join_conditions(text):
            for qualifier, column in QUALIFIED_COLUMN_PATTERN.findall(condition):
                table = self._resolve_table(qualifier, aliases, default_table)
                existing = candidates.get(column.lower())
                if existing is None or existing.source == 'where':
                    candidates[column.lower()] = IndexCandidate(column, table, 'join')

        return list(candidates.values())

    @staticmethod
    def _resolve_table(qualifier: str, aliases: Dict[str, str], default_table: Optional[str]) -> str:
        if qualifier:
            return aliases.get(qualifier.lower(), qualifier)
        return default_table or 'table_name'

    @staticmethod
    def _covered_columns(table_stats: Sequence[TableStatistics],
                         existing_indexes: Sequence[IndexInformation]) -> Set[str]:
        covered = set()
        for index in existing_indexes:
            covered.update(column.lower() for column in index.columns)
        for stats in table_stats:
            for name, column_stats in stats.column_statistics.items():
                if column_stats.is_indexed:
                    covered.add(name.lower())
        return covered

    @staticmethod
    def _build_suggestion(candidate: IndexCandidate) -> OptimizationSuggestion:
        if candidate.source == 'join':
            index_name = f"idx_join_{candidate.column}"
            title = f"Index JOIN column {candidate.table}.{candidate.column}"
            description = f"Column {candidate.column} is used in a JOIN predicate but no index covers it"
            impact = JOIN_IMPACT
        else:
            index_name = f"idx_{candidate.column}"
            title = f"Index WHERE column {candidate.table}.{candidate.column}"
            description = f"Column {candidate.column} is used in a WHERE filter but no index covers it"
            impact = WHERE_IMPACT

        return OptimizationSuggestion(
            type=OptimizationType.INDEX_OPTIMIZATION,
            title=title,
            description=description,
            implementation=f"CREATE INDEX {index_name} ON {candidate.table} ({candidate.column})",
            impact_score=impact,
            difficulty=DEFAULT_DIFFICULTY,
            estimated_implementation_time=DEFAULT_IMPLEMENTATION_TIME,
            prerequisites=[f"Write access to table {candidate.table}"],
            risks=['Additional index maintenance cost on INSERT, UPDATE and DELETE'],
            parameters={'column': candidate.column, 'table': candidate.table, 'source': candidate.source},
        )
