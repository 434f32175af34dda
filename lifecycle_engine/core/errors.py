# lifecycle_engine/core/errors.py

# -----------------------------
# Base Errors
# -----------------------------

class LifecycleError(Exception):
    """Base class for all lifecycle orchestrator errors."""
    code = "lifecycle_error"


# -----------------------------
# Input / Registry Errors
# -----------------------------

class ValidationError(LifecycleError):
    """Bad input. Nothing was mutated."""
    code = "validation_error"

    def __init__(self, message: str, key: str | None = None):
        super().__init__(message)
        self.key = key


class Conflict(LifecycleError):
    """Domain or port collision with another customer."""
    code = "conflict"


class StaleRecord(Conflict):
    """The record was written by someone else since it was read."""


class AlreadyExists(LifecycleError):
    """Idempotent no-op: the target already exists."""
    code = "already_exists"


class CustomerNotFound(LifecycleError):
    code = "not_found"


class ResourceExhausted(LifecycleError):
    """Configured port range has no free triple left."""
    code = "resource_exhausted"


# -----------------------------
# State Errors
# -----------------------------

class InvalidTransition(LifecycleError):
    """Operation not allowed in the customer's current status."""
    code = "invalid_transition"


class Cancelled(LifecycleError):
    code = "cancelled"


# -----------------------------
# External Collaborator Errors
# -----------------------------

class SupervisorUnavailable(LifecycleError):
    """Process supervisor could not be reached. Says nothing about liveness."""
    code = "supervisor_unavailable"


class DatabaseConnectionError(LifecycleError):
    """Database engine or cache unreachable."""
    code = "connection_error"


class StepFailed(LifecycleError):
    """A provisioning step failed; carries the step name for diagnosis."""
    code = "step_failed"

    def __init__(self, step: str, detail: str):
        super().__init__(f"{step}: {detail}")
        self.step = step
        self.detail = detail


class PartialFailure(LifecycleError):
    """Aggregate of the failed sub-operations of a best-effort cleanup."""
    code = "partial_failure"

    def __init__(self, report):
        failed = ", ".join(r.name for r in report.failures)
        super().__init__(f"cleanup incomplete for {report.customer_id}: {failed}")
        self.report = report
