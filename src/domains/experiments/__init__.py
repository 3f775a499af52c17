"""A/B testing engine domain."""

from .activation import (
    change_status,
    complete_due_tests,
    register_test,
    start_due_tests,
    update_allocations,
)
from .assignment import assign_visitor
from .decision import declare_winner, decide, select_winner
from .errors import (
    ABTestNotFoundError,
    AggregationFailure,
    AssignmentConflict,
    ConfigError,
    ExperimentEngineError,
    InvalidTransitionError,
)
from .hashing import assign_bucket, bucket_for, validate_allocations
from .ingestion import record_event
from .models import (
    ABTestDefinition,
    ABTestStatus,
    AssignmentDecision,
    EventRequest,
    IngestResult,
    ResultSnapshot,
)

__all__ = [
    "ABTestDefinition",
    "ABTestNotFoundError",
    "ABTestStatus",
    "AggregationFailure",
    "AssignmentConflict",
    "AssignmentDecision",
    "ConfigError",
    "EventRequest",
    "ExperimentEngineError",
    "IngestResult",
    "InvalidTransitionError",
    "ResultSnapshot",
    "assign_bucket",
    "assign_visitor",
    "bucket_for",
    "change_status",
    "complete_due_tests",
    "decide",
    "declare_winner",
    "record_event",
    "register_test",
    "select_winner",
    "start_due_tests",
    "update_allocations",
    "validate_allocations",
]
