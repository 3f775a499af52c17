"""Error taxonomy for the experimentation engine.

Duplicate events and data-quality alerts are deliberately absent: the first
is an idempotent no-op and the second is a record surfaced in results.
"""


class ExperimentEngineError(Exception):
    """Base class for engine errors."""


class ConfigError(ExperimentEngineError, ValueError):
    """Invalid test configuration, rejected at activation time."""


class InvalidTransitionError(ExperimentEngineError, ValueError):
    """Requested lifecycle transition is not allowed from the current status."""

    def __init__(self, test_id: str, current: str, target: str) -> None:
        super().__init__(f"test {test_id} cannot move from {current} to {target}")
        self.test_id = test_id
        self.current = current
        self.target = target


class ABTestNotFoundError(ExperimentEngineError, LookupError):
    """No test with this id exists for the tenant."""

    def __init__(self, test_id: str) -> None:
        super().__init__(f"test {test_id} not found")
        self.test_id = test_id


class AssignmentConflict(ExperimentEngineError):
    """Insert-if-absent lost a race and the winning row could not be re-read."""


class AggregationFailure(ExperimentEngineError):
    """A pipeline run was aborted before commit; the watermark did not move."""

    def __init__(self, tenant_id: str, test_id: str, reason: str) -> None:
        super().__init__(f"pipeline for {tenant_id}/{test_id} aborted: {reason}")
        self.tenant_id = tenant_id
        self.test_id = test_id
        self.reason = reason
