"""Commit coordination: turn the selected part of a preview into persisted visits.

Validation (selection, conflicts, preview state) happens locally and before any
write. The write itself is one batch handed to a VisitBatchSink, bounded by a
deadline and cancellable through a CancellationToken.

Times are sent exactly as the wall-clock ``HH:MM`` pair held by the preview;
no timezone conversion happens on the way to persistence.
"""

from __future__ import annotations

import concurrent.futures
import functools
import threading
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import date
from typing import NoReturn, Protocol

from loguru import logger

from carevisit.scheduling.conflicts import ConflictDetector
from carevisit.scheduling.errors import (
    CommitCancelled,
    CommitTimeout,
    EmptySelection,
    PartialCommitFailure,
    UnknownOccurrence,
    UnresolvedConflicts,
)
from carevisit.scheduling.logging import log_commit_failure, log_validation_failure
from carevisit.scheduling.models import (
    CandidateOccurrence,
    ConflictDescriptor,
    ConflictFinding,
    OccurrenceKey,
    VisitStatus,
)
from carevisit.scheduling.preview import SchedulePreview

DEFAULT_COMMIT_TIMEOUT_SECONDS = 30.0
DEFAULT_CANCEL_GRACE_SECONDS = 5.0


class CancellationToken:
    """Cooperative cancellation flag shared between the caller and the sink."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CommitCancelled()


@dataclass(frozen=True)
class VisitDraft:
    """One visit to create, in the shape the persistence sink receives."""

    occurrence_key: OccurrenceKey
    client_id: str
    authorization_id: str
    service_code: str
    visit_date: date
    start_time: str
    end_time: str
    planned_units: int
    staff_id: str | None = None
    comment: str = ""
    status: VisitStatus = VisitStatus.PLANNED

    @classmethod
    def from_occurrence(cls, occurrence: CandidateOccurrence) -> VisitDraft:
        return cls(
            occurrence_key=occurrence.key,
            client_id=occurrence.client_id,
            authorization_id=occurrence.authorization_id,
            service_code=occurrence.service_code,
            visit_date=occurrence.occurrence_date,
            start_time=occurrence.start_time.strftime("%H:%M"),
            end_time=occurrence.end_time.strftime("%H:%M"),
            planned_units=occurrence.planned_units,
            staff_id=occurrence.staff_id,
            comment=occurrence.comment,
            status=occurrence.status,
        )


class BatchWriteError(Exception):
    """Raised by a sink when some drafts could not be written.

    A transactional sink that rolled back reports an empty ``created`` map.
    """

    def __init__(self, created: Mapping[OccurrenceKey, str], failed: Mapping[OccurrenceKey, str]):
        self.created = dict(created)
        self.failed = dict(failed)
        super().__init__(f"{len(self.failed)} visit(s) failed, {len(self.created)} created")


class VisitBatchSink(Protocol):
    """Write-only "create visits batch" collaborator.

    Implementations create every draft or none, check ``cancel_token`` before
    making writes visible, and return the persisted visit id per occurrence key.
    """

    def create_visits(
        self,
        drafts: Sequence[VisitDraft],
        cancel_token: CancellationToken,
    ) -> Mapping[OccurrenceKey, str]: ...


@dataclass(frozen=True)
class CommittedVisit:
    occurrence_key: OccurrenceKey
    visit_id: str
    visit_date: date
    start_time: str
    end_time: str


@dataclass(frozen=True)
class CommitResult:
    """Persisted visits keyed by occurrence, in occurrence order."""

    preview_id: str
    visits: list[CommittedVisit]

    @property
    def visit_ids(self) -> dict[OccurrenceKey, str]:
        return {visit.occurrence_key: visit.visit_id for visit in self.visits}


def _log_late_outcome(preview_id: str, future: concurrent.futures.Future) -> None:
    error = future.exception()
    if error is None:
        logger.warning(
            "[COMMIT] Batch write finished after its deadline",
            preview_id=preview_id,
            visits_written=len(future.result()),
        )
    else:
        logger.info(f"[COMMIT] Batch write abandoned after its deadline: {error!r}", preview_id=preview_id)


def _identity(conflict: ConflictFinding | ConflictDescriptor) -> tuple:
    return (conflict.kind, conflict.conflicting_visit_id, conflict.message)


class CommitCoordinator:
    """Validates a preview and persists its selected occurrences as one batch.

    With a detector, the occurrences being committed are checked again against
    current commitments just before the write, since a preview can sit open for
    a long time.
    """

    def __init__(
        self,
        sink: VisitBatchSink,
        detector: ConflictDetector | None = None,
        *,
        timeout_seconds: float = DEFAULT_COMMIT_TIMEOUT_SECONDS,
        cancel_grace_seconds: float = DEFAULT_CANCEL_GRACE_SECONDS,
    ) -> None:
        self.sink = sink
        self.detector = detector
        self.timeout_seconds = timeout_seconds
        self.cancel_grace_seconds = cancel_grace_seconds

    def validate(self, preview: SchedulePreview, keys: Iterable[OccurrenceKey] | None = None) -> list[OccurrenceKey]:
        """Check that a preview (or a subset of its selection) is committable.

        Args:
            preview: Preview to check
            keys: Keys to persist; defaults to the whole selection

        Returns:
            Keys to persist, in occurrence order

        Raises:
            PreviewConsumed: If the preview was already committed or abandoned
            UnknownOccurrence: If a requested key is not in the preview or not selected
            EmptySelection: If nothing would be persisted
            UnresolvedConflicts: If any key to persist carries an unresolved conflict
        """
        preview.ensure_open()
        try:
            if keys is None:
                requested = set(preview.selected)
            else:
                requested = set(keys)
                missing = preview.missing_keys(requested)
                if missing:
                    raise UnknownOccurrence(missing)
                not_selected = requested - preview.selected
                if not_selected:
                    raise UnknownOccurrence(not_selected, reason="not selected")

            if not requested:
                raise EmptySelection()

            unresolved = preview.unresolved_conflicts(requested)
            if unresolved:
                raise UnresolvedConflicts(unresolved)
        except (UnknownOccurrence, EmptySelection, UnresolvedConflicts) as err:
            log_validation_failure(err, {"preview_id": preview.preview_id})
            raise

        return [key for key in preview.keys if key in requested]

    def recheck(self, preview: SchedulePreview, targets: list[OccurrenceKey]) -> None:
        """Re-run conflict detection for the keys about to be committed.

        Findings that match an acknowledged conflict keep their acknowledgement.
        When anything new shows up, the occurrence's conflicts are replaced with
        the fresh findings and the commit is refused.

        Raises:
            UnresolvedConflicts: If a new conflict appeared since the preview was built
        """
        if self.detector is None:
            return

        changed = 0
        for key in targets:
            findings = self.detector.check(preview.occurrence(key), prior_units=preview.prior_units(key))
            previous = {_identity(c): c.resolved for c in preview.conflicts_for(key)}
            if all(_identity(f) in previous for f in findings):
                continue
            preview.replace_conflicts(key, findings)
            for conflict in preview.conflicts_for(key):
                conflict.resolved = previous.get(_identity(conflict), False)
            changed += 1

        if changed:
            preview.touch()
            unresolved = preview.unresolved_conflicts(targets)
            if unresolved:
                err = UnresolvedConflicts(unresolved)
                log_validation_failure(err, {"preview_id": preview.preview_id, "rechecked": changed})
                raise err

    def commit(
        self,
        preview: SchedulePreview,
        keys: Iterable[OccurrenceKey] | None = None,
        *,
        timeout: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> CommitResult:
        """Persist the selected occurrences atomically.

        On success the preview is consumed. On PartialCommitFailure the
        occurrences that were persisted are dropped from the preview, which stays
        open so the caller can retry just the failed subset. Visits that a timed-out
        sink still wrote are dropped the same way. Otherwise CommitTimeout and
        CommitCancelled leave the preview unchanged.

        Args:
            preview: Open preview
            keys: Subset of the selection to persist; defaults to the whole selection
            timeout: Deadline in seconds; defaults to the coordinator's timeout
            cancel_token: Token the caller may fire to abandon the write

        Returns:
            CommitResult with one CommittedVisit per persisted occurrence

        Raises:
            UnresolvedConflicts: If a selected occurrence has an open conflict, old or new
            CommitTimeout: If the sink did not finish before the deadline; see its outcome
            CommitCancelled: If the caller cancelled before the write became visible
            PartialCommitFailure: If the sink failed for some or all occurrences
        """
        targets = self.validate(preview, keys)
        self.recheck(preview, targets)
        drafts = [VisitDraft.from_occurrence(preview.occurrence(key)) for key in targets]
        token = cancel_token or CancellationToken()
        deadline = self.timeout_seconds if timeout is None else timeout
        token.raise_if_cancelled()

        logger.info(
            "[COMMIT] Batch write started",
            preview_id=preview.preview_id,
            occurrences=len(drafts),
            timeout_seconds=deadline,
        )

        created = self._write(preview, drafts, token, deadline)

        missing = [draft.occurrence_key for draft in drafts if draft.occurrence_key not in created]
        if missing:
            self._partial_failure(
                preview,
                {key: created[key] for key in targets if key in created},
                dict.fromkeys(missing, "No visit id returned by persistence"),
            )

        preview.mark_committed()
        visits = [
            CommittedVisit(
                occurrence_key=draft.occurrence_key,
                visit_id=created[draft.occurrence_key],
                visit_date=draft.visit_date,
                start_time=draft.start_time,
                end_time=draft.end_time,
            )
            for draft in drafts
        ]
        logger.info(
            "[COMMIT] Batch write committed",
            preview_id=preview.preview_id,
            visits_written=len(visits),
        )
        return CommitResult(preview_id=preview.preview_id, visits=visits)

    def _write(
        self,
        preview: SchedulePreview,
        drafts: list[VisitDraft],
        token: CancellationToken,
        deadline: float,
    ) -> Mapping[OccurrenceKey, str]:
        keys = [draft.occurrence_key for draft in drafts]
        executor = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="visit-commit")
        try:
            future = executor.submit(self.sink.create_visits, drafts, token)
            return future.result(timeout=deadline)
        except concurrent.futures.TimeoutError:
            token.cancel()
        except CommitCancelled:
            logger.warning("[COMMIT] Batch write cancelled", preview_id=preview.preview_id)
            raise
        except BatchWriteError as e:
            self._partial_failure(preview, e.created, e.failed, cause=e)
        except Exception as e:
            self._partial_failure(preview, {}, dict.fromkeys(keys, str(e)), cause=e)
        finally:
            # Never block on a stuck sink; it has been told to cancel
            executor.shutdown(wait=False)

        self._timed_out(preview, future, keys, deadline)

    def _timed_out(
        self,
        preview: SchedulePreview,
        future: concurrent.futures.Future,
        keys: list[OccurrenceKey],
        deadline: float,
    ) -> NoReturn:
        """Wait briefly for the cancelled sink to settle, then report what it did.

        Only a sink that confirms nothing was persisted yields a retryable
        timeout. Visits that landed after the deadline are dropped from the
        preview so a retry cannot create them twice.
        """
        written: Mapping[OccurrenceKey, str] = {}
        try:
            written = future.result(timeout=self.cancel_grace_seconds)
            outcome = CommitTimeout.WRITTEN
        except concurrent.futures.TimeoutError:
            outcome = CommitTimeout.UNKNOWN
            future.add_done_callback(functools.partial(_log_late_outcome, preview.preview_id))
        except BatchWriteError as e:
            written = e.created
            outcome = CommitTimeout.WRITTEN if written else CommitTimeout.NOT_WRITTEN
        except CommitCancelled:
            outcome = CommitTimeout.NOT_WRITTEN
        except Exception as e:
            logger.warning(f"[COMMIT] Sink failed after cancellation: {e!r}", preview_id=preview.preview_id)
            outcome = CommitTimeout.NOT_WRITTEN

        for key in written:
            if preview.has(key):
                preview.drop(key)

        err = CommitTimeout(deadline, keys, outcome=outcome, written=written)
        log_commit_failure(err, {"preview_id": preview.preview_id})
        raise err

    def _partial_failure(
        self,
        preview: SchedulePreview,
        succeeded: Mapping[OccurrenceKey, str],
        failed: Mapping[OccurrenceKey, str],
        cause: Exception | None = None,
    ) -> NoReturn:
        for key in succeeded:
            if preview.has(key):
                preview.drop(key)
        err = PartialCommitFailure(succeeded, failed)
        log_commit_failure(err, {"preview_id": preview.preview_id})
        raise err from cause
