"""Request and response schemas for the scheduling API.

Occurrence keys travel as ``YYYY-MM-DDTHH:MM`` tokens. Wall-clock times travel
as ``HH:MM`` strings; ``starts_at``/``ends_at`` are presentation-only instants
in the facility timezone.
"""

from __future__ import annotations

from datetime import date, time
from zoneinfo import ZoneInfo

from pydantic import BaseModel, Field

from carevisit.scheduling.commit import CommitResult
from carevisit.scheduling.errors import InvalidRule
from carevisit.scheduling.models import (
    AnchorOccurrence,
    CandidateOccurrence,
    ConflictDescriptor,
    ConflictKind,
    EndAfterOccurrences,
    EndOnDate,
    Frequency,
    OccurrenceKey,
    RecurrenceRule,
    VisitStatus,
    Weekday,
)
from carevisit.scheduling.preview import SchedulePreview


def _hhmm(value: time) -> str:
    return value.strftime("%H:%M")


class RepeatConfig(BaseModel):
    """Recurrence rule as submitted by the scheduling form."""

    interval: int = Field(..., description="Repeat every N weeks or months")
    frequency: Frequency = Field(..., description="WEEK or MONTH")
    days_of_week: list[int] = Field(
        default_factory=list,
        description="Weekdays for WEEK repeat, 0=Sunday..6=Saturday",
    )
    end_date: date | None = Field(default=None, description="Last date to schedule (inclusive)")
    occurrences: int | None = Field(default=None, description="Total number of visits, first visit included")

    def to_rule(self) -> RecurrenceRule:
        """Convert to a domain rule.

        Raises:
            InvalidRule: If both or neither end conditions are set, or a weekday is out of range
        """
        if (self.end_date is None) == (self.occurrences is None):
            raise InvalidRule("Exactly one end condition (end date or occurrences) is required")
        invalid_days = [d for d in self.days_of_week if not 0 <= d <= 6]
        if invalid_days:
            raise InvalidRule(f"Days of week must be 0 (Sunday) to 6 (Saturday), got {invalid_days}")

        if self.end_date is not None:
            end_condition = EndOnDate(self.end_date)
        else:
            end_condition = EndAfterOccurrences(self.occurrences)
        return RecurrenceRule(
            interval=self.interval,
            frequency=self.frequency,
            end_condition=end_condition,
            days_of_week=frozenset(Weekday(d) for d in self.days_of_week),
        )


class BuildPreviewRequest(BaseModel):
    """Anchor occurrence plus optional repeat configuration."""

    client_id: str
    authorization_id: str
    service_code: str = ""
    visit_date: date
    start_time: time
    end_time: time
    staff_id: str | None = None
    planned_units: int | None = Field(default=None, description="Derived from duration when omitted")
    comment: str = ""
    status: VisitStatus = VisitStatus.PLANNED
    repeat: RepeatConfig | None = None

    def to_anchor(self) -> AnchorOccurrence:
        """Convert to a domain anchor with times truncated to whole minutes.

        Raises:
            InvalidRule: If a time carries a UTC offset; visit times are facility wall-clock
        """
        if self.start_time.tzinfo is not None or self.end_time.tzinfo is not None:
            raise InvalidRule("Start and end times must be wall-clock HH:MM without a UTC offset")
        return AnchorOccurrence(
            client_id=self.client_id,
            authorization_id=self.authorization_id,
            service_code=self.service_code,
            visit_date=self.visit_date,
            start_time=self.start_time.replace(second=0, microsecond=0),
            end_time=self.end_time.replace(second=0, microsecond=0),
            staff_id=self.staff_id,
            planned_units=self.planned_units,
            comment=self.comment,
            status=self.status,
        )

    def to_rule(self) -> RecurrenceRule | None:
        return self.repeat.to_rule() if self.repeat else None


class OccurrenceKeysRequest(BaseModel):
    """Occurrence keys for select / deselect / remove."""

    keys: list[str] = Field(..., min_length=1)


class ReassignStaffRequest(BaseModel):
    keys: list[str] = Field(..., min_length=1)
    staff_id: str | None = Field(default=None, description="New staff member, or null to unassign")


class AcknowledgeRequest(BaseModel):
    conflict_ids: list[str] = Field(..., min_length=1)
    resolved: bool = True


class CommitRequest(BaseModel):
    keys: list[str] | None = Field(default=None, description="Subset of the selection; defaults to all selected")
    timeout_seconds: float | None = Field(default=None, gt=0)


class OccurrenceResponse(BaseModel):
    key: str
    visit_date: date
    start_time: str  # HH:MM
    end_time: str  # HH:MM
    starts_at: str  # ISO datetime in the facility timezone
    ends_at: str
    client_id: str
    client_name: str | None
    staff_id: str | None
    staff_name: str | None
    authorization_id: str
    service_code: str
    planned_units: int
    status: VisitStatus
    comment: str
    selected: bool

    @classmethod
    def from_occurrence(cls, occurrence: CandidateOccurrence, *, selected: bool, tz: ZoneInfo) -> OccurrenceResponse:
        return cls(
            key=occurrence.key.token,
            visit_date=occurrence.occurrence_date,
            start_time=_hhmm(occurrence.start_time),
            end_time=_hhmm(occurrence.end_time),
            starts_at=occurrence.starts_at(tz).isoformat(),
            ends_at=occurrence.ends_at(tz).isoformat(),
            client_id=occurrence.client_id,
            client_name=occurrence.client_name,
            staff_id=occurrence.staff_id,
            staff_name=occurrence.staff_name,
            authorization_id=occurrence.authorization_id,
            service_code=occurrence.service_code,
            planned_units=occurrence.planned_units,
            status=occurrence.status,
            comment=occurrence.comment,
            selected=selected,
        )


class ConflictResponse(BaseModel):
    conflict_id: str
    occurrence_key: str
    kind: ConflictKind
    message: str
    resolved: bool
    conflicting_visit_id: str | None = None
    conflicting_start_time: str | None = None
    conflicting_end_time: str | None = None
    conflicting_with_name: str | None = None

    @classmethod
    def from_descriptor(cls, conflict: ConflictDescriptor) -> ConflictResponse:
        window = conflict.conflicting_window
        return cls(
            conflict_id=conflict.conflict_id,
            occurrence_key=conflict.occurrence_key.token,
            kind=conflict.kind,
            message=conflict.message,
            resolved=conflict.resolved,
            conflicting_visit_id=conflict.conflicting_visit_id,
            conflicting_start_time=_hhmm(window[0]) if window else None,
            conflicting_end_time=_hhmm(window[1]) if window else None,
            conflicting_with_name=conflict.conflicting_with_name,
        )


class PreviewResponse(BaseModel):
    preview_id: str
    state: str
    message: str
    occurrences: list[OccurrenceResponse]
    conflicts: list[ConflictResponse]
    selected_count: int
    can_commit: bool

    @classmethod
    def from_preview(cls, preview: SchedulePreview, tz: ZoneInfo) -> PreviewResponse:
        return cls(
            preview_id=preview.preview_id,
            state=preview.state.value,
            message=preview.message,
            occurrences=[
                OccurrenceResponse.from_occurrence(o, selected=o.key in preview.selected, tz=tz)
                for o in preview.occurrences
            ],
            conflicts=[ConflictResponse.from_descriptor(c) for c in preview.conflicts],
            selected_count=len(preview.selected),
            can_commit=preview.can_commit,
        )


class CommittedVisitResponse(BaseModel):
    occurrence_key: str
    visit_id: str
    visit_date: date
    start_time: str  # HH:MM, exactly as previewed
    end_time: str


class CommitResponse(BaseModel):
    preview_id: str
    visits: list[CommittedVisitResponse]

    @classmethod
    def from_result(cls, result: CommitResult) -> CommitResponse:
        return cls(
            preview_id=result.preview_id,
            visits=[
                CommittedVisitResponse(
                    occurrence_key=visit.occurrence_key.token,
                    visit_id=visit.visit_id,
                    visit_date=visit.visit_date,
                    start_time=visit.start_time,
                    end_time=visit.end_time,
                )
                for visit in result.visits
            ],
        )


def parse_keys(tokens: list[str]) -> list[OccurrenceKey]:
    """Parse occurrence key tokens.

    Raises:
        InvalidRule: If a token is malformed
    """
    keys = []
    for token in tokens:
        try:
            keys.append(OccurrenceKey.parse(token))
        except ValueError as e:
            raise InvalidRule(f"Malformed occurrence key {token!r}: {e}") from e
    return keys
