"""Scheduling service facade.

Wires the builder, editor and commit coordinator around one session store so
the API layer can work with preview ids instead of preview objects.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import timedelta

from carevisit.config.settings import Settings, settings
from carevisit.scheduling.commit import CancellationToken, CommitCoordinator, CommitResult, VisitBatchSink
from carevisit.scheduling.conflicts import AuthorizationLookup, CommitmentLookup, ConflictDetector, Directory
from carevisit.scheduling.editor import PreviewEditor
from carevisit.scheduling.models import AnchorOccurrence, ConflictDescriptor, OccurrenceKey, RecurrenceRule
from carevisit.scheduling.preview import PreviewBuilder, SchedulePreview
from carevisit.scheduling.sessions import PreviewSessionStore


class SchedulingService:
    def __init__(
        self,
        commitments: CommitmentLookup,
        authorizations: AuthorizationLookup,
        sink: VisitBatchSink,
        directory: Directory | None = None,
        *,
        store: PreviewSessionStore | None = None,
        config: Settings = settings,
    ) -> None:
        detector = ConflictDetector(commitments, authorizations, directory)
        self.config = config
        self.builder = PreviewBuilder(
            detector,
            directory,
            max_occurrences=config.recurrence_max_occurrences,
            workers=config.conflict_check_workers,
            cumulative_units=config.cumulative_authorization_units,
            minutes_per_unit=config.minutes_per_unit,
        )
        self.editor = PreviewEditor(detector, directory)
        self.coordinator = CommitCoordinator(
            sink,
            detector,
            timeout_seconds=config.commit_timeout_seconds,
            cancel_grace_seconds=config.commit_cancel_grace_seconds,
        )
        self.store = store or PreviewSessionStore(idle_ttl=timedelta(minutes=config.preview_idle_ttl_minutes))

    def create_preview(self, anchor: AnchorOccurrence, rule: RecurrenceRule | None = None) -> SchedulePreview:
        preview = self.builder.build(anchor, rule)
        self.store.open(preview)
        return preview

    def get_preview(self, preview_id: str) -> SchedulePreview:
        return self.store.get(preview_id)

    def select(self, preview_id: str, keys: Iterable[OccurrenceKey]) -> SchedulePreview:
        with self.store.editing(preview_id) as preview:
            self.editor.select(preview, keys)
        return preview

    def deselect(self, preview_id: str, keys: Iterable[OccurrenceKey]) -> SchedulePreview:
        with self.store.editing(preview_id) as preview:
            self.editor.deselect(preview, keys)
        return preview

    def remove(self, preview_id: str, keys: Iterable[OccurrenceKey]) -> SchedulePreview:
        with self.store.editing(preview_id) as preview:
            self.editor.remove(preview, keys)
        return preview

    def reassign_staff(self, preview_id: str, keys: Iterable[OccurrenceKey], staff_id: str | None) -> SchedulePreview:
        with self.store.editing(preview_id) as preview:
            self.editor.reassign_staff(preview, keys, staff_id)
        return preview

    def acknowledge(
        self,
        preview_id: str,
        conflict_ids: Iterable[str],
        *,
        resolved: bool = True,
    ) -> list[ConflictDescriptor]:
        with self.store.editing(preview_id) as preview:
            return self.editor.acknowledge(preview, conflict_ids, resolved=resolved)

    def commit(
        self,
        preview_id: str,
        keys: Iterable[OccurrenceKey] | None = None,
        *,
        timeout: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> CommitResult:
        with self.store.editing(preview_id) as preview:
            return self.coordinator.commit(preview, keys, timeout=timeout, cancel_token=cancel_token)

    def abandon(self, preview_id: str) -> None:
        self.store.discard(preview_id)
