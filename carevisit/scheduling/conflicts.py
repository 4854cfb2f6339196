"""Conflict detection for candidate visit occurrences.

Pure reads against external collaborators, no side effects. Safe to call
repeatedly and from several threads at once.

A candidate conflicts when:
- Its staff member has another visit on the same date whose [start, end)
  window overlaps the candidate's (STAFF_DOUBLE_BOOKED)
- Its client has another visit overlapping the same way (CLIENT_DOUBLE_BOOKED)
- Its date falls outside the authorization period, or its units would exceed the
  units still remaining on the authorization (OUTSIDE_AUTHORIZATION_WINDOW)
- The directory cannot vouch for the references it carries (OTHER)

All applicable conflicts are returned, not just the first one found.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date, time
from typing import Protocol

from carevisit.scheduling.models import CandidateOccurrence, ConflictFinding, ConflictKind


@dataclass(frozen=True)
class Commitment:
    """An already-persisted visit, as seen by conflict detection."""

    visit_id: str
    client_id: str
    visit_date: date
    start_time: time
    end_time: time
    staff_id: str | None = None
    client_name: str | None = None
    staff_name: str | None = None


@dataclass(frozen=True)
class AuthorizationWindow:
    """Read-only view of a service authorization.

    Attributes:
        authorization_id: Authorization identifier
        client_id: Client the authorization belongs to
        start_date: First day services may be delivered (None = open)
        end_date: Last day services may be delivered (None = open)
        remaining_units: Units not yet used by persisted visits (None = unlimited)
    """

    authorization_id: str
    client_id: str
    start_date: date | None
    end_date: date | None
    remaining_units: int | None = None


class CommitmentLookup(Protocol):
    """Existing-commitment oracle."""

    def commitments_for_staff(self, staff_id: str, on_date: date) -> Sequence[Commitment]: ...

    def commitments_for_client(self, client_id: str, on_date: date) -> Sequence[Commitment]: ...


class AuthorizationLookup(Protocol):
    def get_authorization(self, authorization_id: str) -> AuthorizationWindow | None: ...


class Directory(Protocol):
    """Read-only client/staff directory."""

    def client_name(self, client_id: str) -> str | None: ...

    def staff_name(self, staff_id: str) -> str | None: ...


def intervals_overlap(start1: time, end1: time, start2: time, end2: time) -> bool:
    """Half-open interval overlap: [start1, end1) and [start2, end2).

    Touching intervals (one ends exactly when the other starts) do not overlap.
    """
    return start1 < end2 and start2 < end1


def _window(start: time, end: time) -> str:
    return f"{start.strftime('%H:%M')}-{end.strftime('%H:%M')}"


class ConflictDetector:
    """Checks one candidate occurrence against existing commitments and authorization rules."""

    def __init__(
        self,
        commitments: CommitmentLookup,
        authorizations: AuthorizationLookup,
        directory: Directory | None = None,
    ) -> None:
        self.commitments = commitments
        self.authorizations = authorizations
        self.directory = directory

    def check(self, candidate: CandidateOccurrence, *, prior_units: int = 0) -> list[ConflictFinding]:
        """Return every conflict that applies to a candidate.

        Args:
            candidate: Occurrence to check
            prior_units: Units already claimed against the same authorization by
                earlier occurrences of the same preview

        Returns:
            Findings in a fixed kind order (staff, client, authorization, other)
        """
        findings: list[ConflictFinding] = []
        findings.extend(self.staff_conflicts(candidate))
        findings.extend(self._client_conflicts(candidate))
        findings.extend(self._authorization_conflicts(candidate, prior_units))
        findings.extend(self._directory_conflicts(candidate))
        return findings

    def staff_conflicts(self, candidate: CandidateOccurrence) -> list[ConflictFinding]:
        if candidate.staff_id is None:
            return []
        findings = []
        for existing in self.commitments.commitments_for_staff(candidate.staff_id, candidate.occurrence_date):
            if existing.visit_date != candidate.occurrence_date:
                continue
            if intervals_overlap(existing.start_time, existing.end_time, candidate.start_time, candidate.end_time):
                findings.append(
                    ConflictFinding(
                        kind=ConflictKind.STAFF_DOUBLE_BOOKED,
                        message=(
                            "Staff member already has a visit scheduled during this time "
                            f"({_window(existing.start_time, existing.end_time)})"
                        ),
                        conflicting_visit_id=existing.visit_id,
                        conflicting_window=(existing.start_time, existing.end_time),
                        conflicting_with_name=existing.client_name,
                    )
                )
        return findings

    def _client_conflicts(self, candidate: CandidateOccurrence) -> list[ConflictFinding]:
        findings = []
        for existing in self.commitments.commitments_for_client(candidate.client_id, candidate.occurrence_date):
            if existing.visit_date != candidate.occurrence_date:
                continue
            if intervals_overlap(existing.start_time, existing.end_time, candidate.start_time, candidate.end_time):
                findings.append(
                    ConflictFinding(
                        kind=ConflictKind.CLIENT_DOUBLE_BOOKED,
                        message=(
                            "Client already has a visit scheduled during this time "
                            f"({_window(existing.start_time, existing.end_time)})"
                        ),
                        conflicting_visit_id=existing.visit_id,
                        conflicting_window=(existing.start_time, existing.end_time),
                        conflicting_with_name=existing.staff_name,
                    )
                )
        return findings

    def _authorization_conflicts(self, candidate: CandidateOccurrence, prior_units: int) -> list[ConflictFinding]:
        authorization = self.authorizations.get_authorization(candidate.authorization_id)
        if authorization is None:
            return [
                ConflictFinding(
                    kind=ConflictKind.OTHER,
                    message=f"Authorization {candidate.authorization_id} not found",
                )
            ]

        findings = []
        if authorization.client_id != candidate.client_id:
            findings.append(
                ConflictFinding(
                    kind=ConflictKind.OTHER,
                    message="Authorization does not belong to this client",
                )
            )

        visit_date = candidate.occurrence_date
        before_start = authorization.start_date is not None and visit_date < authorization.start_date
        after_end = authorization.end_date is not None and visit_date > authorization.end_date
        if before_start or after_end:
            start = authorization.start_date.isoformat() if authorization.start_date else "open"
            end = authorization.end_date.isoformat() if authorization.end_date else "open"
            findings.append(
                ConflictFinding(
                    kind=ConflictKind.OUTSIDE_AUTHORIZATION_WINDOW,
                    message=f"Visit date {visit_date.isoformat()} is outside the authorization period {start} to {end}",
                )
            )

        if authorization.remaining_units is not None:
            available = authorization.remaining_units - prior_units
            if candidate.planned_units > available:
                findings.append(
                    ConflictFinding(
                        kind=ConflictKind.OUTSIDE_AUTHORIZATION_WINDOW,
                        message=(
                            f"Visit needs {candidate.planned_units} unit(s) but only {max(available, 0)} "
                            "authorized unit(s) remain"
                        ),
                    )
                )
        return findings

    def _directory_conflicts(self, candidate: CandidateOccurrence) -> list[ConflictFinding]:
        if self.directory is None:
            return []
        findings = []
        if self.directory.client_name(candidate.client_id) is None:
            findings.append(
                ConflictFinding(kind=ConflictKind.OTHER, message=f"Client {candidate.client_id} not found")
            )
        if candidate.staff_id is not None and self.directory.staff_name(candidate.staff_id) is None:
            findings.append(
                ConflictFinding(kind=ConflictKind.OTHER, message=f"Staff member {candidate.staff_id} not found")
            )
        return findings
