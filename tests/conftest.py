"""Root conftest for all tests.

In-memory doubles for the scheduling engine's collaborators, plus the
standard anchor visit used across the scheduling tests:
client-1 with staff-1 on Monday 2024-06-03, 09:00-11:00.
"""

import threading
import time as time_module
from datetime import date, time

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from carevisit.db.models import Base
from carevisit.scheduling.commit import BatchWriteError
from carevisit.scheduling.conflicts import AuthorizationWindow, Commitment, ConflictDetector
from carevisit.scheduling.errors import CommitCancelled
from carevisit.scheduling.models import (
    AnchorOccurrence,
    EndAfterOccurrences,
    Frequency,
    RecurrenceRule,
    Weekday,
)
from carevisit.scheduling.preview import PreviewBuilder


class InMemoryCommitments:
    """CommitmentLookup over a plain list."""

    def __init__(self):
        self.commitments: list[Commitment] = []

    def add(self, commitment: Commitment) -> None:
        self.commitments.append(commitment)

    def commitments_for_staff(self, staff_id, on_date):
        return [c for c in self.commitments if c.staff_id == staff_id and c.visit_date == on_date]

    def commitments_for_client(self, client_id, on_date):
        return [c for c in self.commitments if c.client_id == client_id and c.visit_date == on_date]


class InMemoryAuthorizations:
    def __init__(self):
        self.windows: dict[str, AuthorizationWindow] = {}

    def add(self, window: AuthorizationWindow) -> None:
        self.windows[window.authorization_id] = window

    def get_authorization(self, authorization_id):
        return self.windows.get(authorization_id)


class InMemoryDirectory:
    def __init__(self):
        self.clients = {"client-1": "Doe, Jane", "client-2": "Roe, Rick"}
        self.staff = {"staff-1": "Smith, Anna", "staff-2": "Jones, Ben"}

    def client_name(self, client_id):
        return self.clients.get(client_id)

    def staff_name(self, staff_id):
        return self.staff.get(staff_id)


class RecordingSink:
    """VisitBatchSink that records batches.

    Attributes:
        delay: Seconds to wait (cancellably) before writing
        fail: Occurrence key -> reason; those drafts fail, the rest succeed
        error: Exception raised instead of writing anything
    """

    def __init__(self):
        self.batches = []
        self.delay = 0.0
        self.fail = {}
        self.error = None
        self.started = threading.Event()
        self._seq = 0

    def create_visits(self, drafts, cancel_token):
        self.started.set()
        deadline = time_module.monotonic() + self.delay
        while time_module.monotonic() < deadline:
            if cancel_token.cancelled:
                raise CommitCancelled()
            time_module.sleep(0.01)
        cancel_token.raise_if_cancelled()
        if self.error is not None:
            raise self.error

        self.batches.append(list(drafts))
        created = {}
        for draft in drafts:
            if draft.occurrence_key in self.fail:
                continue
            self._seq += 1
            created[draft.occurrence_key] = f"visit-{self._seq}"
        if self.fail:
            failed = {d.occurrence_key: self.fail[d.occurrence_key] for d in drafts if d.occurrence_key in self.fail}
            raise BatchWriteError(created=created, failed=failed)
        return created


@pytest.fixture
def commitments() -> InMemoryCommitments:
    return InMemoryCommitments()


@pytest.fixture
def authorizations() -> InMemoryAuthorizations:
    lookup = InMemoryAuthorizations()
    lookup.add(
        AuthorizationWindow(
            authorization_id="auth-1",
            client_id="client-1",
            start_date=date(2024, 1, 1),
            end_date=date(2024, 12, 31),
        )
    )
    return lookup


@pytest.fixture
def directory() -> InMemoryDirectory:
    return InMemoryDirectory()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def detector(commitments, authorizations, directory) -> ConflictDetector:
    return ConflictDetector(commitments, authorizations, directory)


@pytest.fixture
def builder(detector, directory) -> PreviewBuilder:
    return PreviewBuilder(detector, directory)


@pytest.fixture
def anchor() -> AnchorOccurrence:
    """Monday 2024-06-03, 09:00-11:00, client-1 with staff-1 (8 units)."""
    return AnchorOccurrence(
        client_id="client-1",
        authorization_id="auth-1",
        service_code="PCS",
        visit_date=date(2024, 6, 3),
        start_time=time(9, 0),
        end_time=time(11, 0),
        staff_id="staff-1",
    )


@pytest.fixture
def mon_wed_rule() -> RecurrenceRule:
    """Weekly on Monday and Wednesday, four visits in total."""
    return RecurrenceRule(
        interval=1,
        frequency=Frequency.WEEK,
        end_condition=EndAfterOccurrences(4),
        days_of_week=frozenset({Weekday.MONDAY, Weekday.WEDNESDAY}),
    )


@pytest.fixture
def staff_busy_on_wednesday(commitments) -> Commitment:
    """staff-1 already visits client-2 on 2024-06-05, 10:00-12:00."""
    commitment = Commitment(
        visit_id="existing-1",
        client_id="client-2",
        staff_id="staff-1",
        visit_date=date(2024, 6, 5),
        start_time=time(10, 0),
        end_time=time(12, 0),
        client_name="Roe, Rick",
        staff_name="Smith, Anna",
    )
    commitments.add(commitment)
    return commitment


@pytest.fixture
def session_factory():
    """Session factory over an isolated in-memory SQLite database."""
    engine = create_engine(
        "sqlite:///:memory:",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    try:
        yield sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    finally:
        engine.dispose()
