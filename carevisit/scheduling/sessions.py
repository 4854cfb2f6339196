"""Caller-owned preview handles.

Previews live here between round-trips of an editing session. A preview leaves
the store when it is committed, abandoned or left idle past its TTL.
"""

from __future__ import annotations

import threading
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from loguru import logger

from carevisit.scheduling.errors import PreviewNotFound
from carevisit.scheduling.preview import PreviewState, SchedulePreview


class PreviewSessionStore:
    """In-process registry of open previews with one edit lock per preview."""

    def __init__(self, idle_ttl: timedelta = timedelta(minutes=60)) -> None:
        self.idle_ttl = idle_ttl
        self._previews: dict[str, SchedulePreview] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def __len__(self) -> int:
        with self._guard:
            return len(self._previews)

    def open(self, preview: SchedulePreview) -> str:
        with self._guard:
            self._previews[preview.preview_id] = preview
            self._locks[preview.preview_id] = threading.Lock()
        return preview.preview_id

    def get(self, preview_id: str) -> SchedulePreview:
        """Return an open preview.

        Raises:
            PreviewNotFound: If the id is unknown, expired or already closed
        """
        self.purge_expired()
        with self._guard:
            preview = self._previews.get(preview_id)
        if preview is None:
            raise PreviewNotFound(preview_id)
        return preview

    @contextmanager
    def editing(self, preview_id: str) -> Generator[SchedulePreview, None, None]:
        """Hold a preview exclusively for one edit or commit.

        The preview is released from the store when the block leaves it
        committed or abandoned.
        """
        preview = self.get(preview_id)
        with self._guard:
            lock = self._locks.get(preview_id)
        if lock is None:
            raise PreviewNotFound(preview_id)
        with lock:
            try:
                yield preview
            finally:
                if preview.state != PreviewState.OPEN:
                    self._forget(preview_id)

    def discard(self, preview_id: str) -> None:
        """Abandon a preview; later use raises PreviewNotFound."""
        with self.editing(preview_id) as preview:
            preview.mark_abandoned()
        logger.info("[SCHEDULING] Preview abandoned", preview_id=preview_id)

    def purge_expired(self, now: datetime | None = None) -> list[str]:
        """Abandon and drop previews idle longer than the TTL."""
        cutoff = (now or datetime.now(timezone.utc)) - self.idle_ttl
        with self._guard:
            expired = [
                pid
                for pid, preview in self._previews.items()
                if preview.touched_at < cutoff and not self._locks[pid].locked()
            ]
            for preview_id in expired:
                self._previews.pop(preview_id).mark_abandoned()
                self._locks.pop(preview_id, None)
        if expired:
            logger.info("[SCHEDULING] Expired previews discarded", count=len(expired))
        return expired

    def _forget(self, preview_id: str) -> None:
        with self._guard:
            self._previews.pop(preview_id, None)
            self._locks.pop(preview_id, None)
