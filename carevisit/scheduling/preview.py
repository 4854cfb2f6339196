"""Schedule previews: unpersisted, editable draft sets of visit occurrences.

PreviewBuilder expands the anchor, checks every candidate for conflicts and
returns a SchedulePreview with everything selected. The operator opts out of
occurrences rather than opting in.
"""

from __future__ import annotations

import math
import uuid
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime, timezone
from enum import StrEnum

from loguru import logger

from carevisit.scheduling.conflicts import ConflictDetector, Directory
from carevisit.scheduling.errors import InvalidRule, PreviewConsumed, SchedulingError, UnknownOccurrence
from carevisit.scheduling.logging import log_validation_failure
from carevisit.scheduling.models import (
    AnchorOccurrence,
    CandidateOccurrence,
    ConflictDescriptor,
    ConflictFinding,
    OccurrenceKey,
    RecurrenceRule,
)
from carevisit.scheduling.recurrence import MAX_OCCURRENCES, expand


class PreviewState(StrEnum):
    OPEN = "open"
    COMMITTED = "committed"
    ABANDONED = "abandoned"


class SchedulePreview:
    """Draft occurrences, their conflicts and the operator's selection.

    Not safe for concurrent mutation; one editing session owns a preview.

    Invariants:
        - Every key in ``selected`` references an existing occurrence
        - Every conflict belongs to exactly one existing occurrence
        - ``can_commit`` is True iff the selection is non-empty and no selected
          occurrence carries an unresolved conflict
    """

    def __init__(
        self,
        anchor: AnchorOccurrence,
        rule: RecurrenceRule | None,
        *,
        cumulative_units: bool = True,
        preview_id: str | None = None,
    ) -> None:
        self.preview_id = preview_id or uuid.uuid4().hex
        self.anchor = anchor
        self.rule = rule
        self.cumulative_units = cumulative_units
        self.state = PreviewState.OPEN
        self.created_at = datetime.now(timezone.utc)
        self.touched_at = self.created_at
        self._occurrences: dict[OccurrenceKey, CandidateOccurrence] = {}
        self._conflicts: dict[OccurrenceKey, list[ConflictDescriptor]] = {}
        self._conflict_seq = 0
        self.selected: set[OccurrenceKey] = set()

    # ---- Queries ----

    @property
    def occurrences(self) -> list[CandidateOccurrence]:
        return list(self._occurrences.values())

    @property
    def keys(self) -> list[OccurrenceKey]:
        return list(self._occurrences)

    @property
    def conflicts(self) -> list[ConflictDescriptor]:
        """All conflicts, grouped in occurrence order."""
        return [conflict for key in self._occurrences for conflict in self._conflicts.get(key, [])]

    def has(self, key: OccurrenceKey) -> bool:
        return key in self._occurrences

    def occurrence(self, key: OccurrenceKey) -> CandidateOccurrence:
        try:
            return self._occurrences[key]
        except KeyError:
            raise UnknownOccurrence([key]) from None

    def conflicts_for(self, key: OccurrenceKey) -> list[ConflictDescriptor]:
        return list(self._conflicts.get(key, []))

    def unresolved_conflicts(self, keys: Iterable[OccurrenceKey] | None = None) -> list[ConflictDescriptor]:
        """Unresolved conflicts on the given keys (default: the selection), in occurrence order."""
        wanted = set(self.selected if keys is None else keys)
        return [c for c in self.conflicts if c.occurrence_key in wanted and not c.resolved]

    @property
    def can_commit(self) -> bool:
        return bool(self.selected) and not self.unresolved_conflicts()

    @property
    def message(self) -> str:
        count = len(self._occurrences)
        if count == 1:
            return "1 event will be created"
        return f"{count} events will be created"

    def missing_keys(self, keys: Iterable[OccurrenceKey]) -> set[OccurrenceKey]:
        return {key for key in keys if key not in self._occurrences}

    def prior_units(self, key: OccurrenceKey) -> int:
        """Units claimed on the same authorization by occurrences ordered before ``key``."""
        if not self.cumulative_units:
            return 0
        target = self.occurrence(key)
        total = 0
        for occurrence in self._occurrences.values():
            if occurrence.key == key:
                break
            if occurrence.authorization_id == target.authorization_id:
                total += occurrence.planned_units
        return total

    # ---- Mutation (used by PreviewBuilder / PreviewEditor / CommitCoordinator) ----

    def ensure_open(self) -> None:
        if self.state != PreviewState.OPEN:
            raise PreviewConsumed(self.preview_id, self.state.value)

    def touch(self) -> None:
        self.touched_at = datetime.now(timezone.utc)

    def add_occurrence(self, occurrence: CandidateOccurrence, findings: Iterable[ConflictFinding]) -> None:
        self._occurrences[occurrence.key] = occurrence
        self.replace_conflicts(occurrence.key, findings)

    def replace_occurrence(self, occurrence: CandidateOccurrence) -> None:
        if occurrence.key not in self._occurrences:
            raise UnknownOccurrence([occurrence.key])
        self._occurrences[occurrence.key] = occurrence

    def replace_conflicts(self, key: OccurrenceKey, findings: Iterable[ConflictFinding]) -> None:
        """Swap in freshly derived conflicts for one occurrence; acknowledgements do not carry over."""
        descriptors = []
        for finding in findings:
            self._conflict_seq += 1
            descriptors.append(finding.attach(f"c{self._conflict_seq}", key))
        if descriptors:
            self._conflicts[key] = descriptors
        else:
            self._conflicts.pop(key, None)

    def find_conflict(self, conflict_id: str) -> ConflictDescriptor | None:
        for conflicts in self._conflicts.values():
            for conflict in conflicts:
                if conflict.conflict_id == conflict_id:
                    return conflict
        return None

    def drop(self, key: OccurrenceKey) -> None:
        del self._occurrences[key]
        self._conflicts.pop(key, None)
        self.selected.discard(key)

    def mark_committed(self) -> None:
        self.state = PreviewState.COMMITTED

    def mark_abandoned(self) -> None:
        self.state = PreviewState.ABANDONED


def validate_anchor(anchor: AnchorOccurrence) -> None:
    """Check the anchor occurrence before expansion.

    Raises:
        InvalidRule: If required references are missing or the time window is empty
    """
    if not anchor.client_id:
        raise InvalidRule("Client is required")
    if not anchor.authorization_id:
        raise InvalidRule("Authorization is required")
    if anchor.start_time >= anchor.end_time:
        raise InvalidRule("End time must be after start time")
    if anchor.planned_units is not None and anchor.planned_units < 0:
        raise InvalidRule(f"Planned units cannot be negative, got {anchor.planned_units}")


class PreviewBuilder:
    """Builds SchedulePreviews from an anchor occurrence and optional recurrence rule."""

    def __init__(
        self,
        detector: ConflictDetector,
        directory: Directory | None = None,
        *,
        max_occurrences: int = MAX_OCCURRENCES,
        workers: int = 1,
        cumulative_units: bool = True,
        minutes_per_unit: int = 15,
    ) -> None:
        self.detector = detector
        self.directory = directory
        self.max_occurrences = max_occurrences
        self.workers = workers
        self.cumulative_units = cumulative_units
        self.minutes_per_unit = minutes_per_unit

    def planned_units(self, anchor: AnchorOccurrence) -> int:
        if anchor.planned_units is not None:
            return anchor.planned_units
        return math.ceil(anchor.duration_minutes / self.minutes_per_unit)

    def build(self, anchor: AnchorOccurrence, rule: RecurrenceRule | None = None) -> SchedulePreview:
        """Expand, conflict-check and assemble a new preview.

        Args:
            anchor: First occurrence of the series
            rule: Recurrence rule, or None for a single visit

        Returns:
            Open SchedulePreview with every generated occurrence selected

        Raises:
            InvalidRule: If the anchor or rule is malformed
            RecurrenceTooLarge: If the rule exceeds the safety cap
        """
        try:
            validate_anchor(anchor)
            dates = expand(anchor, rule, max_occurrences=self.max_occurrences)
        except SchedulingError as err:
            log_validation_failure(err, {"client_id": anchor.client_id, "visit_date": anchor.visit_date.isoformat()})
            raise

        units = self.planned_units(anchor)
        client_name = self.directory.client_name(anchor.client_id) if self.directory else None
        staff_name = self.directory.staff_name(anchor.staff_id) if self.directory and anchor.staff_id else None

        preview = SchedulePreview(anchor, rule, cumulative_units=self.cumulative_units)
        candidates = [
            replace(
                CandidateOccurrence.from_anchor(anchor, occurrence_date, units),
                client_name=client_name,
                staff_name=staff_name,
            )
            for occurrence_date in dates
        ]

        prior = [units * index if self.cumulative_units else 0 for index in range(len(candidates))]
        findings = self._check_all(candidates, prior)

        for candidate, candidate_findings in zip(candidates, findings, strict=True):
            preview.add_occurrence(candidate, candidate_findings)
        preview.selected = set(preview.keys)

        logger.info(
            "[SCHEDULING] Preview built",
            preview_id=preview.preview_id,
            client_id=anchor.client_id,
            occurrences=len(candidates),
            conflicts=len(preview.conflicts),
            can_commit=preview.can_commit,
        )
        return preview

    def _check_all(self, candidates: list[CandidateOccurrence], prior: list[int]) -> list[list[ConflictFinding]]:
        def _check(index: int) -> list[ConflictFinding]:
            return self.detector.check(candidates[index], prior_units=prior[index])

        if self.workers <= 1 or len(candidates) <= 1:
            return [_check(index) for index in range(len(candidates))]

        # map() yields in submission order regardless of completion order
        with ThreadPoolExecutor(max_workers=min(self.workers, len(candidates))) as executor:
            return list(executor.map(_check, range(len(candidates))))
