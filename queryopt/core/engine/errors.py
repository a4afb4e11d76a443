# queryopt/core/engine/errors.py

from datetime import timedelta
from typing import List, Optional

VALIDATION_ERROR = "VALIDATION_ERROR"
COMPUTATION_ERROR = "COMPUTATION_ERROR"
TIMEOUT_ERROR = "TIMEOUT_ERROR"


class OptimizationError(Exception):
    """Base class for failures reported in an OptimizationResponse."""
    error_code: Optional[str] = None
    message_prefix = "Optimization failed: "

    @property
    def response_message(self) -> str:
        return f"{self.message_prefix}{self}"


class OptimizationValidationError(OptimizationError):
    """The request is malformed or incomplete; no component was invoked."""
    error_code = VALIDATION_ERROR
    message_prefix = "Invalid optimization request: "

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class OptimizationComputationError(OptimizationError):
    """A component raised while computing the response."""
    error_code = COMPUTATION_ERROR
    message_prefix = "Error during optimization: "

    def __init__(self, stage: str, cause: BaseException):
        self.stage = stage
        self.cause = cause
        super().__init__(f"{stage} failed: {cause}")


class OptimizationTimeoutError(OptimizationError):
    """The caller stopped waiting for a result; queued work was cancelled."""
    error_code = TIMEOUT_ERROR
    message_prefix = "Optimization timed out: "

    def __init__(self, timeout: Optional[float]):
        self.timeout = timeout
        super().__init__(f"no result within {timeout}s")


def timeout_advisory(elapsed: timedelta, budget: timedelta) -> str:
    """Warning text for an optimization that overran its time budget."""
    return (f"Optimization took {elapsed.total_seconds():.3f}s, exceeding the "
            f"{budget.total_seconds():.3f}s budget; results are best-effort")
