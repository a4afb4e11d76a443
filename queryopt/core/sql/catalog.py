"""
Catalog statistics adapter.

Builds the TableStatistics and IndexInformation the optimization engine
consumes from a live database, using SQLAlchemy's inspector for structure and
plain aggregate queries for counts.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from queryopt.core.sql.models import ColumnStatistics, IndexInformation, TableStatistics

logger = logging.getLogger(__name__)

# Size estimates used when the dialect does not report storage sizes
DEFAULT_COLUMN_WIDTH = 8
INDEX_ENTRY_BYTES = 16

NUMERIC_TYPES = ['INTEGER', 'FLOAT', 'DECIMAL', 'NUMERIC', 'REAL', 'DOUBLE', 'BIGINT', 'SMALLINT']
STRING_TYPES = ['VARCHAR', 'CHAR', 'TEXT', 'STRING', 'CLOB']
DATE_TYPES = ['DATE', 'TIME', 'TIMESTAMP']


class CatalogStatisticsProvider:
    """Collects optimizer statistics from a database through SQLAlchemy."""

    def __init__(self, engine: Engine, config: Dict[str, Any] = None):
        self.engine = engine
        self.config = config or {}
        catalog_config = self.config.get('query_optimization', {}).get('catalog', {})
        self.enable_column_stats = catalog_config.get('enable_column_statistics', True)
        self.enable_selectivity = catalog_config.get('enable_index_selectivity', True)
        self.inspector = inspect(engine)
        self.db_dialect = engine.dialect.name.lower()

        logger.info(f"Catalog statistics provider initialized for {self.db_dialect}")

    def collect(self, table_names: Optional[Sequence[str]] = None) -> Tuple[List[TableStatistics], List[IndexInformation]]:
        """Table statistics and index information for the given tables (all tables by default)."""
        names = list(table_names) if table_names else self.inspector.get_table_names()
        indexes = self.collect_index_information(names)
        tables = self.collect_table_statistics(names, indexes)
        logger.info(f"Collected statistics for {len(tables)} tables and {len(indexes)} indexes")
        return tables, indexes

    def collect_table_statistics(self, table_names: Optional[Sequence[str]] = None,
                                 indexes: Optional[Sequence[IndexInformation]] = None) -> List[TableStatistics]:
        names = list(table_names) if table_names else self.inspector.get_table_names()
        if indexes is None:
            indexes = self.collect_index_information(names)

        statistics = []
        for table_name in names:
            try:
                table_indexes = [index for index in indexes if index.table_name == table_name]
                statistics.append(self._table_statistics(table_name, table_indexes))
            except SQLAlchemyError as e:
                logger.warning(f"Failed to collect statistics for table {table_name}: {e}")
        return statistics

    def collect_index_information(self, table_names: Optional[Sequence[str]] = None) -> List[IndexInformation]:
        names = list(table_names) if table_names else self.inspector.get_table_names()

        indexes = []
        for table_name in names:
            try:
                indexes.extend(self._table_indexes(table_name))
            except SQLAlchemyError as e:
                logger.warning(f"Failed to collect index information for {table_name}: {e}")
        return indexes

    def _table_statistics(self, table_name: str, indexes: List[IndexInformation]) -> TableStatistics:
        row_count = self._get_row_count(table_name)
        indexed_columns: Set[str] = {column for index in indexes for column in index.columns}

        column_statistics = {}
        for column in self.inspector.get_columns(table_name):
            column_name = column['name']
            column_type = str(column['type'])
            column_stats = ColumnStatistics(
                column_name=column_name,
                data_type=column_type,
                is_indexed=column_name in indexed_columns,
            )
            if self.enable_column_stats and row_count > 0:
                self._analyze_column(table_name, column_stats, row_count)
            column_statistics[column_name] = column_stats

        row_width = sum(
            int(stats.average_length) if stats.average_length else DEFAULT_COLUMN_WIDTH
            for stats in column_statistics.values()
        )
        index_width = sum(len(index.columns) for index in indexes) * INDEX_ENTRY_BYTES

        stats = TableStatistics(
            table_name=table_name,
            row_count=row_count,
            data_size=row_count * row_width,
            index_size=row_count * index_width,
            column_statistics=column_statistics,
            last_updated=datetime.now(),
        )
        logger.debug(f"Table {table_name}: {row_count:,} rows, {len(column_statistics)} columns")
        return stats

    def _table_indexes(self, table_name: str) -> List[IndexInformation]:
        indexes = []

        primary_key = self.inspector.get_pk_constraint(table_name) or {}
        pk_columns = primary_key.get('constrained_columns') or []
        if pk_columns:
            indexes.append(IndexInformation(
                index_name=primary_key.get('name') or f"pk_{table_name}",
                table_name=table_name,
                columns=list(pk_columns),
                index_type='PRIMARY KEY',
                is_unique=True,
                is_primary=True,
                selectivity=1.0,
            ))

        for index in self.inspector.get_indexes(table_name):
            columns = [column for column in index['column_names'] if column]
            indexes.append(IndexInformation(
                index_name=index['name'],
                table_name=table_name,
                columns=columns,
                index_type='UNIQUE' if index.get('unique') else 'INDEX',
                is_unique=bool(index.get('unique', False)),
                selectivity=self._calculate_index_selectivity(table_name, columns),
            ))

        logger.debug(f"Found {len(indexes)} indexes for {table_name}")
        return indexes

    def _get_row_count(self, table_name: str) -> int:
        query = text(f"SELECT COUNT(*) FROM {self._quote_identifier(table_name)}")
        with self.engine.connect() as conn:
            return conn.execute(query).scalar() or 0

    def _analyze_column(self, table_name: str, column_stats: ColumnStatistics, total_rows: int):
        """Fill distinct count, null percentage, min/max and average length in place."""
        quoted_table = self._quote_identifier(table_name)
        quoted_column = self._quote_identifier(column_stats.column_name)
        column_type = column_stats.data_type or ''

        stats_query = text(f"""
            SELECT
                COUNT({quoted_column}) as non_null_count,
                COUNT(DISTINCT {quoted_column}) as unique_count
            FROM {quoted_table}
        """)

        try:
            with self.engine.connect() as conn:
                non_null_count, unique_count = conn.execute(stats_query).fetchone()
                column_stats.distinct_values = unique_count
                column_stats.null_percentage = (total_rows - non_null_count) / total_rows * 100

                if self._is_numeric_type(column_type) or self._is_date_type(column_type):
                    minmax_query = text(f"""
                        SELECT MIN({quoted_column}), MAX({quoted_column})
                        FROM {quoted_table}
                        WHERE {quoted_column} IS NOT NULL
                    """)
                    row = conn.execute(minmax_query).fetchone()
                    if row:
                        column_stats.min_value, column_stats.max_value = row[0], row[1]

                if self._is_string_type(column_type):
                    length_query = text(f"""
                        SELECT AVG(LENGTH({quoted_column}))
                        FROM {quoted_table}
                        WHERE {quoted_column} IS NOT NULL
                    """)
                    average_length = conn.execute(length_query).scalar()
                    if average_length is not None:
                        column_stats.average_length = float(average_length)

        except SQLAlchemyError as e:
            logger.debug(f"Column analysis failed for {table_name}.{column_stats.column_name}: {e}")

    def _calculate_index_selectivity(self, table_name: str, columns: List[str]) -> float:
        """Distinct key combinations over total rows; 0.0 when unknown."""
        if not columns or not self.enable_selectivity:
            return 0.0

        quoted_table = self._quote_identifier(table_name)
        quoted_columns = ', '.join(self._quote_identifier(column) for column in columns)
        selectivity_query = text(f"""
            SELECT
                (SELECT COUNT(*) FROM {quoted_table}) as total_rows,
                (SELECT COUNT(*) FROM (SELECT DISTINCT {quoted_columns} FROM {quoted_table}) distinct_keys) as unique_keys
        """)

        try:
            with self.engine.connect() as conn:
                total_rows, unique_keys = conn.execute(selectivity_query).fetchone()
                if total_rows:
                    return unique_keys / total_rows
        except SQLAlchemyError as e:
            logger.debug(f"Index selectivity calculation failed for {table_name}.{columns}: {e}")

        return 0.0

    def _quote_identifier(self, identifier: str) -> str:
        """Quote database identifier based on dialect."""
        if self.db_dialect == 'mysql':
            return f'`{identifier}`'
        return f'"{identifier}"'

    @staticmethod
    def _is_numeric_type(column_type: str) -> bool:
        return any(ntype in column_type.upper() for ntype in NUMERIC_TYPES)

    @staticmethod
    def _is_string_type(column_type: str) -> bool:
        return any(stype in column_type.upper() for stype in STRING_TYPES)

    @staticmethod
    def _is_date_type(column_type: str) -> bool:
        return any(dtype in column_type.upper() for dtype in DATE_TYPES)
