# queryopt/core/sql/models.py

import uuid
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Sequence, Union


class OptimizationType(Enum):
    """Kinds of optimization the engine can apply or suggest."""
    INDEX_OPTIMIZATION = ("Index Optimization", "Suggests creating or changing indexes")
    QUERY_REWRITE = ("Query Rewrite", "Rewrites the query for better performance")
    JOIN_OPTIMIZATION = ("Join Optimization", "Optimizes join order and join types")
    SUBQUERY_OPTIMIZATION = ("Subquery Optimization", "Converts subqueries into joins where possible")
    PREDICATE_PUSHDOWN = ("Predicate Pushdown", "Moves WHERE conditions closer to the data")
    PROJECTION_PRUNING = ("Projection Pruning", "Removes unnecessary columns")
    PARTITION_PRUNING = ("Partition Pruning", "Skips partitions that cannot match")
    MATERIALIZED_VIEW = ("Materialized View", "Suggests materialized views for frequent queries")
    STATISTICS_UPDATE = ("Statistics Update", "Suggests refreshing table statistics")
    PARALLEL_EXECUTION = ("Parallel Execution", "Suggests parallelizing the query")
    CACHING_STRATEGY = ("Caching Strategy", "Suggests result caching strategies")
    COST_BASED_OPTIMIZATION = ("Cost Based Optimization", "Optimization driven by cost estimates")

    def __init__(self, display_name: str, description: str):
        self.display_name = display_name
        self.description = description


class OptimizationLevel(Enum):
    """Optimization levels, ordered by increasing aggressiveness."""
    BASIC = ("Basic", 1, "Simple and safe optimizations")
    INTERMEDIATE = ("Intermediate", 2, "Moderate optimizations with impact analysis")
    ADVANCED = ("Advanced", 3, "Complex optimizations with query restructuring")
    AGGRESSIVE = ("Aggressive", 4, "Maximum optimization with possible side effects")
    EXPERIMENTAL = ("Experimental", 5, "Experimental, untested optimizations")

    def __init__(self, display_name: str, level: int, description: str):
        self.display_name = display_name
        self.level = level
        self.description = description

    def permits(self, optimization_type: OptimizationType) -> bool:
        """Whether this level may apply the given optimization type."""
        return self.level >= _MINIMUM_LEVEL[optimization_type]

    @classmethod
    def from_value(cls, value: Union["OptimizationLevel", str, int]) -> "OptimizationLevel":
        """Resolve a level from a member, its name or its ordinal."""
        if isinstance(value, cls):
            return value
        if isinstance(value, bool):
            raise ValueError(f"Unknown optimization level: {value!r}")
        if isinstance(value, int):
            for member in cls:
                if member.level == value:
                    return member
        elif isinstance(value, str):
            key = value.strip().upper()
            if key.isdigit():
                return cls.from_value(int(key))
            if key in cls.__members__:
                return cls[key]
        raise ValueError(f"Unknown optimization level: {value!r}")


# Lowest level at which each optimization type may be applied
_MINIMUM_LEVEL: Dict[OptimizationType, int] = {
    OptimizationType.INDEX_OPTIMIZATION: 1,
    OptimizationType.QUERY_REWRITE: 1,
    OptimizationType.PROJECTION_PRUNING: 1,
    OptimizationType.STATISTICS_UPDATE: 1,
    OptimizationType.CACHING_STRATEGY: 1,
    OptimizationType.JOIN_OPTIMIZATION: 2,
    OptimizationType.PREDICATE_PUSHDOWN: 2,
    OptimizationType.COST_BASED_OPTIMIZATION: 2,
    OptimizationType.SUBQUERY_OPTIMIZATION: 3,
    OptimizationType.PARTITION_PRUNING: 3,
    OptimizationType.MATERIALIZED_VIEW: 4,
    OptimizationType.PARALLEL_EXECUTION: 4,
}


@dataclass
class ColumnStatistics:
    """Statistics for a single column, as reported by the catalog."""
    column_name: str
    distinct_values: int = 0
    null_percentage: float = 0.0
    min_value: Optional[Any] = None
    max_value: Optional[Any] = None
    average_length: Optional[float] = None
    data_type: Optional[str] = None
    is_indexed: bool = False


@dataclass
class TableStatistics:
    """Statistics for a database table."""
    table_name: str
    row_count: int = 0
    schema_name: Optional[str] = None
    data_size: int = 0
    index_size: int = 0
    column_statistics: Dict[str, ColumnStatistics] = field(default_factory=dict)
    last_updated: Optional[datetime] = None


@dataclass
class IndexInformation:
    """An existing index on a table."""
    index_name: str
    table_name: str
    columns: List[str] = field(default_factory=list)
    index_type: Optional[str] = None
    is_unique: bool = False
    is_primary: bool = False
    size: int = 0
    selectivity: float = 0.0
    usage_count: int = 0
    last_used: Optional[datetime] = None


@dataclass
class CostEstimate:
    """Model-derived cost of executing a query. total_cost is the sum of the components."""
    cpu_cost: Decimal = Decimal(0)
    io_cost: Decimal = Decimal(0)
    network_cost: Decimal = Decimal(0)
    total_cost: Decimal = Decimal(0)
    estimated_execution_time: timedelta = timedelta(0)
    estimated_memory_usage: int = 0


@dataclass
class PerformanceImprovement:
    """Expected improvement of one rewritten query over the original."""
    execution_time_improvement: float = 0.0
    memory_usage_improvement: float = 0.0
    cpu_usage_improvement: float = 0.0
    io_reduction: float = 0.0
    improvement_summary: str = ""


@dataclass
class OptimizedQuery:
    """One candidate rewrite of the original query."""
    optimized_sql: str
    explanation: str
    applied_optimizations: List[OptimizationType] = field(default_factory=list)
    confidence_score: float = 0.0
    cost_estimate: Optional[CostEstimate] = None
    performance_improvement: Optional[PerformanceImprovement] = None
    required_indexes: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class OptimizationSuggestion:
    """A recommendation that does not rewrite the query (e.g. create an index)."""
    type: OptimizationType
    title: str
    description: str
    implementation: str
    impact_score: float
    difficulty: str
    estimated_implementation_time: timedelta
    prerequisites: List[str] = field(default_factory=list)
    risks: List[str] = field(default_factory=list)
    parameters: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PlanNode:
    """Node of a simulated execution plan tree."""
    node_type: str
    operation: str
    cost: CostEstimate = field(default_factory=CostEstimate)
    estimated_rows: int = 0
    table_name: Optional[str] = None
    index_name: Optional[str] = None
    conditions: List[str] = field(default_factory=list)
    children: List["PlanNode"] = field(default_factory=list)


@dataclass
class ExecutionPlanAnalysis:
    """Simulated plan with its bottlenecks and recommendations."""
    plan_text: str = ""
    plan_nodes: List[PlanNode] = field(default_factory=list)
    total_cost: CostEstimate = field(default_factory=CostEstimate)
    bottlenecks: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    statistics: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CostAnalysis:
    """Original versus best optimized cost."""
    original_cost: CostEstimate
    optimized_cost: Optional[CostEstimate] = None
    cost_reduction: Optional[Decimal] = None
    improvement_percentage: Optional[float] = None
    alternative_costs: Dict[str, CostEstimate] = field(default_factory=dict)


@dataclass
class PerformanceEstimate:
    """Execution time and memory forecast for the best optimized query."""
    original_execution_time: timedelta = timedelta(0)
    optimized_execution_time: timedelta = timedelta(0)
    time_saved: timedelta = timedelta(0)
    speedup_factor: float = 1.0
    original_memory_usage: int = 0
    optimized_memory_usage: int = 0
    memory_saved: int = 0


def _all_types() -> FrozenSet[OptimizationType]:
    return frozenset(OptimizationType)


@dataclass(frozen=True)
class OptimizationRequest:
    """
    Input of one optimization call. Never mutated after creation; sequences
    are stored as tuples and the enabled type set as a frozenset.
    """
    original_query: Optional[str]
    database_type: Optional[str] = "generic"
    schema_name: Optional[str] = None
    table_statistics: Sequence[TableStatistics] = ()
    existing_indexes: Sequence[IndexInformation] = ()
    optimization_level: Optional[OptimizationLevel] = OptimizationLevel.INTERMEDIATE
    enabled_optimizations: FrozenSet[OptimizationType] = field(default_factory=_all_types)
    max_optimization_time: Optional[timedelta] = timedelta(minutes=2)
    analyze_execution_plan: bool = True
    generate_alternatives: bool = True
    estimate_costs: bool = True
    max_alternatives: int = 5
    query_context: Dict[str, Any] = field(default_factory=dict)
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        object.__setattr__(self, 'table_statistics', tuple(self.table_statistics or ()))
        object.__setattr__(self, 'existing_indexes', tuple(self.existing_indexes or ()))
        object.__setattr__(self, 'enabled_optimizations', frozenset(self.enabled_optimizations or ()))


@dataclass
class OptimizationResponse:
    """Aggregate result of one optimization call."""
    request_id: str
    original_query: Optional[str]
    optimized_queries: List[OptimizedQuery] = field(default_factory=list)
    suggestions: List[OptimizationSuggestion] = field(default_factory=list)
    execution_plan_analysis: Optional[ExecutionPlanAnalysis] = None
    cost_analysis: Optional[CostAnalysis] = None
    performance_estimate: Optional[PerformanceEstimate] = None
    optimization_time: timedelta = timedelta(0)
    success: bool = False
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def applied_optimizations(self) -> List[OptimizationType]:
        """Every optimization type applied across the candidate rewrites."""
        return [t for query in self.optimized_queries for t in query.applied_optimizations]


def to_serializable(value: Any) -> Any:
    """Convert model objects into JSON-safe primitives."""
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_serializable(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, Enum):
        return value.name
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, timedelta):
        return value.total_seconds()
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(to_serializable(k)): to_serializable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [to_serializable(v) for v in value]
        if isinstance(value, (set, frozenset)):
            items.sort(key=str)
        return items
    return value
