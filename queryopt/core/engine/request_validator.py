# queryopt/core/engine/request_validator.py

import logging
from datetime import timedelta
from typing import List

from queryopt.core.sql.models import (
    IndexInformation, OptimizationLevel, OptimizationRequest, OptimizationType, TableStatistics
)

logger = logging.getLogger(__name__)


class RequestValidator:
    """Checks an OptimizationRequest before any component runs."""

    def validate(self, request: OptimizationRequest) -> List[str]:
        """Return the list of problems with the request; empty when it is valid."""
        if request is None:
            return ["Request is required"]

        errors = []

        if not isinstance(request.original_query, str) or not request.original_query.strip():
            errors.append("Query text is required")

        if not isinstance(request.database_type, str) or not request.database_type.strip():
            errors.append("Database type is required")

        if not isinstance(request.optimization_level, OptimizationLevel):
            errors.append("Optimization level is required")

        budget = request.max_optimization_time
        if not isinstance(budget, timedelta):
            errors.append("Maximum optimization time is required")
        elif budget < timedelta(0):
            errors.append("Maximum optimization time must not be negative")

        if not isinstance(request.max_alternatives, int) or request.max_alternatives < 0:
            errors.append("Maximum number of alternatives must be a non-negative integer")

        unknown_types = [t for t in request.enabled_optimizations if not isinstance(t, OptimizationType)]
        if unknown_types:
            errors.append(f"Unknown optimization types: {', '.join(map(str, unknown_types))}")

        for stats in request.table_statistics:
            if not isinstance(stats, TableStatistics):
                errors.append(f"Table statistics must be TableStatistics, got {type(stats).__name__}")
            elif not isinstance(stats.row_count, int) or isinstance(stats.row_count, bool):
                errors.append(f"Row count of table {stats.table_name} must be an integer")
            elif stats.row_count < 0:
                errors.append(f"Row count of table {stats.table_name} must not be negative")

        for index in request.existing_indexes:
            if not isinstance(index, IndexInformation):
                errors.append(f"Existing indexes must be IndexInformation, got {type(index).__name__}")

        if errors:
            logger.debug(f"Request {request.request_id} failed validation: {errors}")
        return errors

    def is_valid(self, request: OptimizationRequest) -> bool:
        return not self.validate(request)
