"""Error taxonomy and result objects for data-loss-risk operations.

Every failure here has a local-only fallback: storage and sync errors are
caught at the gateway/engine boundary and only ``StorageQuotaExceeded``
reaches callers of the repository as a failed write.
"""

from pydantic import BaseModel, Field


class ProgressStoreError(Exception):
    """Base class for progress store errors."""

    code = "PROGRESS_STORE_ERROR"


class StorageUnavailable(ProgressStoreError):
    """The persistent medium cannot be used."""

    code = "STORAGE_UNAVAILABLE"


class StorageQuotaExceeded(ProgressStoreError):
    """A write does not fit in the budget even after cleanup."""

    code = "QUOTA_EXCEEDED"

    def __init__(self, key: str, required: int, budget: int):
        self.key = key
        self.required = required
        self.budget = budget
        super().__init__(
            f"Writing {key!r} needs {required} bytes but the budget is {budget} bytes"
        )


class RemoteUnavailable(ProgressStoreError):
    """The remote document store could not be reached."""

    code = "REMOTE_UNAVAILABLE"


class RemoteTimeout(RemoteUnavailable):
    """The remote document store did not answer in time."""

    code = "REMOTE_TIMEOUT"


class MigrationIncomplete(ProgressStoreError):
    """A document was left partially in a legacy shape."""

    code = "MIGRATION_INCOMPLETE"


class IntegrityViolation(ProgressStoreError):
    """Invariant violations that policy does not allow to auto-correct."""

    code = "INTEGRITY_VIOLATION"

    def __init__(self, violations: list):
        self.violations = violations
        super().__init__(f"{len(violations)} integrity violation(s) need a decision")


class OperationResult(BaseModel):
    """Outcome of a reset, migration or repair."""

    success: bool
    message: str
    changes: list[str] = Field(default_factory=list)
