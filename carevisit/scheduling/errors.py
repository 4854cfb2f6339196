"""Scheduling Error Types.

Every failure the scheduling engine reports is one of these types. Validation
errors are raised locally and synchronously before any side effect:

- INVALID_RULE: Malformed recurrence input
- RECURRENCE_TOO_LARGE: Expansion would exceed the safety cap
- UNKNOWN_OCCURRENCE: Edit or commit references a stale or removed key
- UNRESOLVED_CONFLICTS: Commit attempted while selected occurrences carry open conflicts
- EMPTY_SELECTION: Commit attempted with nothing selected
- PREVIEW_CONSUMED: Preview was already committed or abandoned
- UNKNOWN_CONFLICT: Acknowledgement references a conflict id the preview does not hold
- PREVIEW_NOT_FOUND: No open preview with the given id

Errors from the persistence sink are surfaced verbatim with per-occurrence detail:

- COMMIT_TIMEOUT: Batch persistence exceeded its deadline (retryable)
- COMMIT_CANCELLED: Caller cancelled the commit before anything was written
- PARTIAL_COMMIT_FAILURE: Batch persistence failed for a subset of occurrences
- DIRECTORY_UNAVAILABLE: A directory lookup failed (not a missing record)
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from carevisit.scheduling.models import ConflictDescriptor, OccurrenceKey


class SchedulingError(Exception):
    """Base exception for scheduling engine failures.

    Attributes:
        code: Stable machine-readable error code
        message: Human-readable description
    """

    code = "SCHEDULING_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def detail(self) -> dict:
        """Structured detail for API responses."""
        return {}


class InvalidRule(SchedulingError):
    """Raised when a recurrence rule or anchor fails its own invariants."""

    code = "INVALID_RULE"


class RecurrenceTooLarge(SchedulingError):
    """Raised when expansion would generate more dates than the safety cap."""

    code = "RECURRENCE_TOO_LARGE"

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"Recurrence would generate more than {limit} occurrences")

    def detail(self) -> dict:
        return {"limit": self.limit}


class UnknownOccurrence(SchedulingError):
    """Raised when an edit references keys that are not in the preview."""

    code = "UNKNOWN_OCCURRENCE"

    def __init__(self, keys: Iterable[OccurrenceKey], reason: str = "not in preview"):
        self.keys = sorted(keys)
        self.reason = reason
        tokens = ", ".join(key.token for key in self.keys)
        super().__init__(f"Occurrence(s) {reason}: {tokens}")

    def detail(self) -> dict:
        return {"keys": [key.token for key in self.keys], "reason": self.reason}


class UnknownConflict(SchedulingError):
    """Raised when an acknowledgement references a conflict id the preview does not hold."""

    code = "UNKNOWN_CONFLICT"

    def __init__(self, conflict_ids: Iterable[str]):
        self.conflict_ids = sorted(conflict_ids)
        super().__init__(f"Unknown conflict id(s): {', '.join(self.conflict_ids)}")

    def detail(self) -> dict:
        return {"conflict_ids": self.conflict_ids}


class UnresolvedConflicts(SchedulingError):
    """Raised when commit is attempted while selected occurrences carry open conflicts."""

    code = "UNRESOLVED_CONFLICTS"

    def __init__(self, conflicts: list[ConflictDescriptor]):
        self.conflicts = conflicts
        super().__init__(
            f"Please resolve all conflicts before saving. {len(conflicts)} conflict(s) remaining."
        )

    def detail(self) -> dict:
        return {
            "conflicts": [
                {
                    "conflict_id": c.conflict_id,
                    "occurrence_key": c.occurrence_key.token,
                    "kind": c.kind.value,
                    "message": c.message,
                }
                for c in self.conflicts
            ]
        }


class EmptySelection(SchedulingError):
    """Raised when commit is attempted with no occurrence selected."""

    code = "EMPTY_SELECTION"

    def __init__(self):
        super().__init__("Please select at least one event to save")


class PreviewConsumed(SchedulingError):
    """Raised when a committed or abandoned preview is used again."""

    code = "PREVIEW_CONSUMED"

    def __init__(self, preview_id: str, state: str):
        self.preview_id = preview_id
        self.state = state
        super().__init__(f"Preview {preview_id} is {state}; build a new preview to continue scheduling")

    def detail(self) -> dict:
        return {"preview_id": self.preview_id, "state": self.state}


class PreviewNotFound(SchedulingError):
    """Raised when no open preview exists for an id."""

    code = "PREVIEW_NOT_FOUND"

    def __init__(self, preview_id: str):
        self.preview_id = preview_id
        super().__init__(f"Preview {preview_id} not found or expired")


class CommitTimeout(SchedulingError):
    """Raised when batch persistence exceeds the caller's deadline.

    The engine never retries on its own. ``outcome`` records what the sink
    reported after it was told to cancel:

    - NOT_WRITTEN: the sink confirmed nothing was persisted; retrying is safe
    - WRITTEN: the batch landed after the deadline; ``written`` holds the ids
    - UNKNOWN: the sink did not answer in time; do not retry without checking

    Attributes:
        retryable: True only for NOT_WRITTEN
        written: Occurrence key -> persisted visit id, for WRITTEN
    """

    code = "COMMIT_TIMEOUT"

    NOT_WRITTEN = "not_written"
    WRITTEN = "written"
    UNKNOWN = "unknown"

    def __init__(
        self,
        timeout_seconds: float,
        keys: list[OccurrenceKey],
        outcome: str = NOT_WRITTEN,
        written: Mapping[OccurrenceKey, str] | None = None,
    ):
        self.timeout_seconds = timeout_seconds
        self.keys = keys
        self.outcome = outcome
        self.written = dict(written or {})
        message = f"Creating {len(keys)} visit(s) did not finish within {timeout_seconds:g}s"
        if outcome == self.WRITTEN:
            message += f"; {len(self.written)} visit(s) were created after the deadline"
        elif outcome == self.UNKNOWN:
            message += "; the write may still complete, check before retrying"
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.outcome == self.NOT_WRITTEN

    def detail(self) -> dict:
        return {
            "timeout_seconds": self.timeout_seconds,
            "retryable": self.retryable,
            "outcome": self.outcome,
            "keys": [key.token for key in self.keys],
            "written": {key.token: visit_id for key, visit_id in sorted(self.written.items())},
        }


class CommitCancelled(SchedulingError):
    """Raised when the caller cancels a commit; nothing was written."""

    code = "COMMIT_CANCELLED"

    def __init__(self, message: str = "Commit cancelled before any visit was written"):
        super().__init__(message)


class PartialCommitFailure(SchedulingError):
    """Raised when batch persistence failed for some or all occurrences.

    Attributes:
        succeeded: Occurrence key -> persisted visit id
        failed: Occurrence key -> failure reason
    """

    code = "PARTIAL_COMMIT_FAILURE"

    def __init__(self, succeeded: Mapping[OccurrenceKey, str], failed: Mapping[OccurrenceKey, str]):
        self.succeeded = dict(succeeded)
        self.failed = dict(failed)
        super().__init__(
            f"{len(self.failed)} visit(s) could not be created; {len(self.succeeded)} visit(s) were created"
        )

    def detail(self) -> dict:
        return {
            "succeeded": {key.token: visit_id for key, visit_id in sorted(self.succeeded.items())},
            "failed": {key.token: reason for key, reason in sorted(self.failed.items())},
        }


class DirectoryUnavailable(SchedulingError):
    """Raised when a directory lookup fails for a reason other than a missing record."""

    code = "DIRECTORY_UNAVAILABLE"

    def __init__(self, resource: str, reason: str):
        self.resource = resource
        self.reason = reason
        super().__init__(f"Directory lookup failed for {resource}: {reason}")

    def detail(self) -> dict:
        return {"resource": self.resource}
