"""SQL-backed visit store.

Reference adapter for the scheduling engine's persistence collaborators:
- CommitmentLookup: existing visits for a staff member or client on a date
- VisitBatchSink: create a batch of visits in a single transaction

Either every visit in a batch is committed or none is.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from datetime import date, time

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from carevisit.db.models import ScheduledVisit
from carevisit.db.session import get_session_local
from carevisit.scheduling.commit import BatchWriteError, CancellationToken, VisitDraft
from carevisit.scheduling.conflicts import Commitment
from carevisit.scheduling.errors import CommitCancelled
from carevisit.scheduling.models import OccurrenceKey, VisitStatus


def _to_commitment(visit: ScheduledVisit) -> Commitment:
    return Commitment(
        visit_id=visit.id,
        client_id=visit.client_id,
        staff_id=visit.staff_id,
        visit_date=visit.visit_date,
        start_time=time.fromisoformat(visit.start_time),
        end_time=time.fromisoformat(visit.end_time),
    )


class SqlVisitStore:
    """Commitment lookup and batch sink over the ``scheduled_visits`` table."""

    def __init__(self, session_factory: Callable[[], Session] | None = None) -> None:
        self._session_factory = session_factory or get_session_local()

    def commitments_for_staff(self, staff_id: str, on_date: date) -> list[Commitment]:
        return self._commitments(ScheduledVisit.staff_id == staff_id, on_date)

    def commitments_for_client(self, client_id: str, on_date: date) -> list[Commitment]:
        return self._commitments(ScheduledVisit.client_id == client_id, on_date)

    def _commitments(self, identity_clause, on_date: date) -> list[Commitment]:
        with self._session_factory() as session:
            visits = session.execute(
                select(ScheduledVisit)
                .where(
                    identity_clause,
                    ScheduledVisit.visit_date == on_date,
                    ScheduledVisit.status != VisitStatus.CANCELLED.value,
                )
                .order_by(ScheduledVisit.start_time)
            ).scalars()
            return [_to_commitment(visit) for visit in visits]

    def create_visits(
        self,
        drafts: Sequence[VisitDraft],
        cancel_token: CancellationToken,
    ) -> Mapping[OccurrenceKey, str]:
        """Insert all drafts in one transaction.

        Raises:
            CommitCancelled: If the token fired before the transaction committed
            BatchWriteError: If the database rejected the batch (nothing written)
        """
        with self._session_factory() as session:
            try:
                created: dict[OccurrenceKey, ScheduledVisit] = {}
                for draft in drafts:
                    cancel_token.raise_if_cancelled()
                    visit = ScheduledVisit(
                        client_id=draft.client_id,
                        staff_id=draft.staff_id,
                        authorization_id=draft.authorization_id,
                        service_code=draft.service_code,
                        visit_date=draft.visit_date,
                        start_time=draft.start_time,
                        end_time=draft.end_time,
                        planned_units=draft.planned_units,
                        status=draft.status.value,
                        comment=draft.comment or None,
                        occurrence_key=draft.occurrence_key.token,
                    )
                    session.add(visit)
                    created[draft.occurrence_key] = visit

                session.flush()
                visit_ids = {key: visit.id for key, visit in created.items()}
                cancel_token.raise_if_cancelled()
                session.commit()
            except CommitCancelled:
                session.rollback()
                logger.warning("[COMMIT] Visit batch rolled back after cancellation", drafts=len(drafts))
                raise
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"[COMMIT] Visit batch rolled back: {e!r}")
                raise BatchWriteError(
                    created={},
                    failed={draft.occurrence_key: str(e.__cause__ or e) for draft in drafts},
                ) from e

        logger.info("[COMMIT] Visit batch inserted", visits=len(visit_ids))
        return visit_ids
