from __future__ import annotations

import uuid
from datetime import date, datetime, timezone

from sqlalchemy import Date, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models."""


class ScheduledVisit(Base):
    """Visits created by committing a schedule preview.

    Start and end are stored as the wall-clock ``HH:MM`` strings of the visit's
    own date, exactly as they appeared in the preview.
    """

    __tablename__ = "scheduled_visits"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()), index=True)
    client_id: Mapped[str] = mapped_column(String, nullable=False)
    staff_id: Mapped[str | None] = mapped_column(String, nullable=True)
    authorization_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    service_code: Mapped[str] = mapped_column(String, nullable=False, default="")

    visit_date: Mapped[date] = mapped_column(Date, nullable=False)
    start_time: Mapped[str] = mapped_column(String(5), nullable=False)  # HH:MM
    end_time: Mapped[str] = mapped_column(String(5), nullable=False)  # HH:MM
    planned_units: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    status: Mapped[str] = mapped_column(String, nullable=False, default="PLANNED")  # PLANNED, CONFIRMED, CANCELLED
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    occurrence_key: Mapped[str] = mapped_column(String, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        Index("idx_scheduled_visits_staff_date", "staff_id", "visit_date"),
        Index("idx_scheduled_visits_client_date", "client_id", "visit_date"),
    )
