"""Domain types for the recurring-visit scheduling engine.

Wall-clock times are plain ``datetime.time`` values on the occurrence's own
calendar date. Absolute instants are derived only for presentation, using the
single configured facility timezone.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime, time
from enum import IntEnum, StrEnum
from zoneinfo import ZoneInfo


class Frequency(StrEnum):
    """Recurrence step unit."""

    WEEK = "WEEK"
    MONTH = "MONTH"


class Weekday(IntEnum):
    """Day of week, numbered 0=Sunday..6=Saturday."""

    SUNDAY = 0
    MONDAY = 1
    TUESDAY = 2
    WEDNESDAY = 3
    THURSDAY = 4
    FRIDAY = 5
    SATURDAY = 6

    @classmethod
    def of(cls, day: date) -> Weekday:
        # date.weekday() is 0=Monday; shift to 0=Sunday
        return cls((day.weekday() + 1) % 7)


class VisitStatus(StrEnum):
    PLANNED = "PLANNED"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"


class ConflictKind(StrEnum):
    """Machine-readable conflict categories."""

    STAFF_DOUBLE_BOOKED = "STAFF_DOUBLE_BOOKED"
    CLIENT_DOUBLE_BOOKED = "CLIENT_DOUBLE_BOOKED"
    OUTSIDE_AUTHORIZATION_WINDOW = "OUTSIDE_AUTHORIZATION_WINDOW"
    OTHER = "OTHER"


@dataclass(frozen=True)
class EndOnDate:
    """Stop after the given date (inclusive)."""

    end_date: date


@dataclass(frozen=True)
class EndAfterOccurrences:
    """Stop once ``count`` dates have been emitted, anchor included."""

    count: int


EndCondition = EndOnDate | EndAfterOccurrences


@dataclass(frozen=True)
class RecurrenceRule:
    """Repeat configuration for an anchor occurrence.

    Attributes:
        interval: Step size in weeks or months (>= 1)
        frequency: WEEK or MONTH
        end_condition: Either EndOnDate or EndAfterOccurrences
        days_of_week: Weekdays to emit within each included week (WEEK only)
    """

    interval: int
    frequency: Frequency
    end_condition: EndCondition
    days_of_week: frozenset[Weekday] = frozenset()


@dataclass(frozen=True, order=True)
class OccurrenceKey:
    """Synthetic occurrence identity assigned at expansion time.

    Keys order chronologically and render as ``YYYY-MM-DDTHH:MM`` tokens for
    transport. A key is never re-derived from display strings.
    """

    occurrence_date: date
    start_time: time

    @property
    def token(self) -> str:
        return f"{self.occurrence_date.isoformat()}T{self.start_time.strftime('%H:%M')}"

    @classmethod
    def parse(cls, token: str) -> OccurrenceKey:
        """Parse a transport token back into a key.

        Raises:
            ValueError: If the token is not ``YYYY-MM-DDTHH:MM``
        """
        date_part, sep, time_part = token.partition("T")
        if not sep:
            raise ValueError(f"Malformed occurrence key: {token!r}")
        return cls(date.fromisoformat(date_part), time.fromisoformat(time_part))

    def __str__(self) -> str:
        return self.token


@dataclass(frozen=True)
class AnchorOccurrence:
    """The first, operator-specified visit of a series.

    ``planned_units`` may be left as None; the builder then derives it from
    the visit duration.
    """

    client_id: str
    authorization_id: str
    service_code: str
    visit_date: date
    start_time: time
    end_time: time
    staff_id: str | None = None
    planned_units: int | None = None
    comment: str = ""
    status: VisitStatus = VisitStatus.PLANNED

    @property
    def duration_minutes(self) -> int:
        start = self.start_time.hour * 60 + self.start_time.minute
        end = self.end_time.hour * 60 + self.end_time.minute
        return end - start


@dataclass(frozen=True)
class CandidateOccurrence:
    """One concrete, not-yet-persisted visit derived from an anchor."""

    key: OccurrenceKey
    client_id: str
    authorization_id: str
    service_code: str
    start_time: time
    end_time: time
    planned_units: int
    staff_id: str | None = None
    comment: str = ""
    status: VisitStatus = VisitStatus.PLANNED
    client_name: str | None = None
    staff_name: str | None = None

    @property
    def occurrence_date(self) -> date:
        return self.key.occurrence_date

    def starts_at(self, tz: ZoneInfo) -> datetime:
        return datetime.combine(self.occurrence_date, self.start_time, tzinfo=tz)

    def ends_at(self, tz: ZoneInfo) -> datetime:
        return datetime.combine(self.occurrence_date, self.end_time, tzinfo=tz)

    def with_staff(self, staff_id: str | None, staff_name: str | None) -> CandidateOccurrence:
        return replace(self, staff_id=staff_id, staff_name=staff_name)

    @classmethod
    def from_anchor(cls, anchor: AnchorOccurrence, occurrence_date: date, planned_units: int) -> CandidateOccurrence:
        return cls(
            key=OccurrenceKey(occurrence_date, anchor.start_time),
            client_id=anchor.client_id,
            authorization_id=anchor.authorization_id,
            service_code=anchor.service_code,
            start_time=anchor.start_time,
            end_time=anchor.end_time,
            planned_units=planned_units,
            staff_id=anchor.staff_id,
            comment=anchor.comment,
            status=anchor.status,
        )


@dataclass
class ConflictDescriptor:
    """A scheduling problem attached to exactly one occurrence.

    Attributes:
        conflict_id: Identifier unique within its preview
        occurrence_key: Key of the occurrence this conflict belongs to
        kind: Conflict category
        message: Operator-facing description
        resolved: Operator acknowledgement flag, False until acknowledged
        conflicting_visit_id: Existing visit that caused a double booking, if any
        conflicting_window: Wall-clock (start, end) of that visit, if any
        conflicting_with_name: Display name of the counterpart on the existing
            visit, if known. For a staff double booking this is the client the
            staff member is already visiting; for a client double booking it is
            the staff member already visiting the client.
    """

    conflict_id: str
    occurrence_key: OccurrenceKey
    kind: ConflictKind
    message: str
    resolved: bool = False
    conflicting_visit_id: str | None = None
    conflicting_window: tuple[time, time] | None = None
    conflicting_with_name: str | None = None


@dataclass(frozen=True)
class ConflictFinding:
    """Detector output before a preview assigns it an identifier."""

    kind: ConflictKind
    message: str
    conflicting_visit_id: str | None = None
    conflicting_window: tuple[time, time] | None = None
    conflicting_with_name: str | None = None

    def attach(self, conflict_id: str, key: OccurrenceKey) -> ConflictDescriptor:
        return ConflictDescriptor(
            conflict_id=conflict_id,
            occurrence_key=key,
            kind=self.kind,
            message=self.message,
            conflicting_visit_id=self.conflicting_visit_id,
            conflicting_window=self.conflicting_window,
            conflicting_with_name=self.conflicting_with_name,
        )
