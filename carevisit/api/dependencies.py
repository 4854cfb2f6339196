"""FastAPI dependency providers for the scheduling API.

The service holds open previews in memory, so one instance is shared by all
requests of a process. Tests replace it through ``app.dependency_overrides``.
"""

from __future__ import annotations

from loguru import logger

from carevisit.db.visit_store import SqlVisitStore
from carevisit.integrations.directory_client import DirectoryClient
from carevisit.scheduling.service import SchedulingService

# Lazy initialization to avoid import-time database and HTTP clients
_service: SchedulingService | None = None


def get_scheduling_service() -> SchedulingService:
    """Get or create the process-wide scheduling service."""
    global _service
    if _service is None:
        store = SqlVisitStore()
        directory = DirectoryClient()
        _service = SchedulingService(
            commitments=store,
            authorizations=directory,
            sink=store,
            directory=directory,
        )
        logger.info("[SCHEDULING] Scheduling service initialized")
    return _service
