"""Operator edits on a held SchedulePreview.

Every operation validates all of its input before touching the preview, so a
rejected edit leaves the preview exactly as it was. Edits are synchronous;
callers serialize edits per preview (see PreviewSessionStore.editing).
"""

from __future__ import annotations

from collections.abc import Iterable

from loguru import logger

from carevisit.scheduling.conflicts import ConflictDetector, Directory
from carevisit.scheduling.errors import UnknownConflict, UnknownOccurrence
from carevisit.scheduling.logging import log_validation_failure
from carevisit.scheduling.models import ConflictDescriptor, OccurrenceKey
from carevisit.scheduling.preview import SchedulePreview


class PreviewEditor:
    """Applies select / deselect / remove / reassign / acknowledge edits."""

    def __init__(self, detector: ConflictDetector, directory: Directory | None = None) -> None:
        self.detector = detector
        self.directory = directory

    @staticmethod
    def _known_keys(preview: SchedulePreview, keys: Iterable[OccurrenceKey]) -> list[OccurrenceKey]:
        preview.ensure_open()
        wanted = list(dict.fromkeys(keys))
        missing = preview.missing_keys(wanted)
        if missing:
            err = UnknownOccurrence(missing)
            log_validation_failure(err, {"preview_id": preview.preview_id})
            raise err
        return wanted

    def select(self, preview: SchedulePreview, keys: Iterable[OccurrenceKey]) -> None:
        """Add occurrences to the selection.

        Raises:
            UnknownOccurrence: If any key is not in the preview
            PreviewConsumed: If the preview is no longer open
        """
        wanted = self._known_keys(preview, keys)
        preview.selected.update(wanted)
        preview.touch()

    def deselect(self, preview: SchedulePreview, keys: Iterable[OccurrenceKey]) -> None:
        """Remove occurrences from the selection; they stay in the preview."""
        wanted = self._known_keys(preview, keys)
        preview.selected.difference_update(wanted)
        preview.touch()

    def remove(self, preview: SchedulePreview, keys: Iterable[OccurrenceKey]) -> None:
        """Permanently drop occurrences and their conflicts.

        Conflicts on the remaining occurrences are left untouched.
        """
        wanted = self._known_keys(preview, keys)
        for key in wanted:
            preview.drop(key)
        preview.touch()
        logger.info(
            "[SCHEDULING] Occurrences removed",
            preview_id=preview.preview_id,
            removed=len(wanted),
            remaining=len(preview.keys),
        )

    def reassign_staff(
        self,
        preview: SchedulePreview,
        keys: Iterable[OccurrenceKey],
        staff_id: str | None,
    ) -> None:
        """Change the staff member on some occurrences and re-check exactly those.

        Passing ``staff_id=None`` clears the assignment, which also clears any
        staff double-booking on those occurrences. Re-derived conflicts start
        unacknowledged.
        """
        wanted = self._known_keys(preview, keys)
        staff_name = self.directory.staff_name(staff_id) if self.directory and staff_id else None

        for key in wanted:
            preview.replace_occurrence(preview.occurrence(key).with_staff(staff_id, staff_name))

        # Re-check in occurrence order so running unit totals see earlier edits
        edited = set(wanted)
        for key in [k for k in preview.keys if k in edited]:
            findings = self.detector.check(preview.occurrence(key), prior_units=preview.prior_units(key))
            preview.replace_conflicts(key, findings)

        preview.touch()
        logger.info(
            "[SCHEDULING] Staff reassigned",
            preview_id=preview.preview_id,
            staff_id=staff_id,
            occurrences=len(wanted),
            can_commit=preview.can_commit,
        )

    def acknowledge(
        self,
        preview: SchedulePreview,
        conflict_ids: Iterable[str],
        *,
        resolved: bool = True,
    ) -> list[ConflictDescriptor]:
        """Set or clear operator acknowledgement on individual conflicts.

        Raises:
            UnknownConflict: If any id is not held by the preview
        """
        preview.ensure_open()
        wanted = list(dict.fromkeys(conflict_ids))
        found = {conflict_id: preview.find_conflict(conflict_id) for conflict_id in wanted}
        missing = [conflict_id for conflict_id, conflict in found.items() if conflict is None]
        if missing:
            err = UnknownConflict(missing)
            log_validation_failure(err, {"preview_id": preview.preview_id})
            raise err

        conflicts = [conflict for conflict in found.values() if conflict is not None]
        for conflict in conflicts:
            conflict.resolved = resolved
        preview.touch()
        return conflicts
