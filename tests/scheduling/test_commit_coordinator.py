"""Tests for CommitCoordinator: gating, atomic batches, timeouts and partial failures."""

import threading
import time as time_module
from datetime import date, time

import pytest

from carevisit.scheduling.commit import CancellationToken, CommitCoordinator
from carevisit.scheduling.conflicts import Commitment
from carevisit.scheduling.errors import (
    CommitCancelled,
    CommitTimeout,
    EmptySelection,
    PartialCommitFailure,
    PreviewConsumed,
    UnknownOccurrence,
    UnresolvedConflicts,
)
from carevisit.scheduling.models import ConflictKind, OccurrenceKey, VisitStatus
from carevisit.scheduling.preview import PreviewState


def key(day: int) -> OccurrenceKey:
    return OccurrenceKey(date(2024, 6, day), time(9))


class SlowSink:
    """Sink that ignores cancellation and writes after a fixed delay."""

    def __init__(self, delay: float):
        self.delay = delay
        self.finished = threading.Event()

    def create_visits(self, drafts, cancel_token):
        time_module.sleep(self.delay)
        self.finished.set()
        return {draft.occurrence_key: f"late-{i}" for i, draft in enumerate(drafts, start=1)}


@pytest.fixture
def coordinator(sink) -> CommitCoordinator:
    return CommitCoordinator(sink, timeout_seconds=5)


@pytest.fixture
def preview(builder, anchor, mon_wed_rule):
    """Conflict-free Mon/Wed preview with four occurrences."""
    return builder.build(anchor, mon_wed_rule)


class TestValidation:
    def test_unresolved_conflict_blocks_commit(self, builder, anchor, mon_wed_rule, staff_busy_on_wednesday, coordinator, sink):
        preview = builder.build(anchor, mon_wed_rule)

        with pytest.raises(UnresolvedConflicts) as exc_info:
            coordinator.commit(preview)

        assert [c.occurrence_key for c in exc_info.value.conflicts] == [key(5)]
        assert "1 conflict(s) remaining" in exc_info.value.message
        assert sink.batches == []

    def test_conflict_on_deselected_occurrence_does_not_block(
        self, builder, anchor, mon_wed_rule, staff_busy_on_wednesday, coordinator
    ):
        preview = builder.build(anchor, mon_wed_rule)
        preview.selected.discard(key(5))

        result = coordinator.commit(preview)

        assert list(result.visit_ids) == [key(3), key(10), key(12)]

    def test_empty_selection_rejected(self, preview, coordinator, sink):
        preview.selected.clear()

        with pytest.raises(EmptySelection):
            coordinator.commit(preview)
        assert sink.batches == []

    def test_subset_must_be_selected(self, preview, coordinator):
        preview.selected.discard(key(10))

        with pytest.raises(UnknownOccurrence) as exc_info:
            coordinator.commit(preview, [key(3), key(10)])
        assert exc_info.value.reason == "not selected"

    def test_subset_must_exist(self, preview, coordinator):
        with pytest.raises(UnknownOccurrence):
            coordinator.commit(preview, [OccurrenceKey(date(2024, 6, 4), time(9))])


class TestCommit:
    def test_commits_selection_as_one_batch(self, preview, coordinator, sink):
        result = coordinator.commit(preview)

        assert len(sink.batches) == 1
        assert [d.occurrence_key for d in sink.batches[0]] == [key(3), key(5), key(10), key(12)]
        assert result.visit_ids == {
            key(3): "visit-1",
            key(5): "visit-2",
            key(10): "visit-3",
            key(12): "visit-4",
        }

    def test_wall_clock_times_echoed_verbatim(self, preview, coordinator, sink):
        result = coordinator.commit(preview)

        for draft in sink.batches[0]:
            assert (draft.start_time, draft.end_time) == ("09:00", "11:00")
            assert draft.status == VisitStatus.PLANNED
            assert draft.service_code == "PCS"
        assert {(v.start_time, v.end_time) for v in result.visits} == {("09:00", "11:00")}

    def test_subset_commit(self, preview, coordinator, sink):
        result = coordinator.commit(preview, [key(12), key(3)])

        assert [d.occurrence_key for d in sink.batches[0]] == [key(3), key(12)]
        assert list(result.visit_ids) == [key(3), key(12)]

    def test_preview_consumed_after_commit(self, preview, coordinator):
        coordinator.commit(preview)

        assert preview.state == PreviewState.COMMITTED
        with pytest.raises(PreviewConsumed):
            coordinator.commit(preview)


class TestFailures:
    def test_timeout_is_retryable_and_cancels_sink(self, preview, coordinator, sink):
        sink.delay = 2.0
        token = CancellationToken()

        with pytest.raises(CommitTimeout) as exc_info:
            coordinator.commit(preview, timeout=0.1, cancel_token=token)

        assert exc_info.value.retryable is True
        assert exc_info.value.keys == preview.keys
        assert token.cancelled
        assert preview.state == PreviewState.OPEN
        assert sink.batches == []

    def test_cancel_before_write(self, preview, coordinator, sink):
        token = CancellationToken()
        token.cancel()

        with pytest.raises(CommitCancelled):
            coordinator.commit(preview, cancel_token=token)
        assert sink.batches == []
        assert preview.state == PreviewState.OPEN

    def test_cancel_during_write(self, preview, coordinator, sink):
        sink.delay = 2.0
        token = CancellationToken()

        def cancel_once_started():
            sink.started.wait(timeout=5)
            token.cancel()

        canceller = threading.Thread(target=cancel_once_started)
        canceller.start()
        with pytest.raises(CommitCancelled):
            coordinator.commit(preview, cancel_token=token)
        canceller.join()

        assert sink.batches == []
        assert preview.state == PreviewState.OPEN

    def test_partial_failure_reports_each_occurrence(self, preview, coordinator, sink):
        sink.fail = {key(10): "staff record locked"}

        with pytest.raises(PartialCommitFailure) as exc_info:
            coordinator.commit(preview)

        err = exc_info.value
        assert set(err.succeeded) == {key(3), key(5), key(12)}
        assert err.failed == {key(10): "staff record locked"}
        assert err.detail()["failed"] == {"2024-06-10T09:00": "staff record locked"}

    def test_retry_after_partial_failure_commits_only_failed(self, preview, coordinator, sink):
        sink.fail = {key(10): "staff record locked"}
        with pytest.raises(PartialCommitFailure):
            coordinator.commit(preview)

        assert preview.keys == [key(10)]
        assert preview.state == PreviewState.OPEN

        sink.fail = {}
        result = coordinator.commit(preview)

        assert list(result.visit_ids) == [key(10)]
        assert preview.state == PreviewState.COMMITTED

    def test_unexpected_sink_error_fails_every_occurrence(self, preview, coordinator, sink):
        sink.error = RuntimeError("connection reset")

        with pytest.raises(PartialCommitFailure) as exc_info:
            coordinator.commit(preview)

        assert exc_info.value.succeeded == {}
        assert set(exc_info.value.failed) == set(preview.keys)
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    def test_write_landing_after_deadline_is_not_retryable(self, preview):
        sink = SlowSink(delay=0.3)
        coordinator = CommitCoordinator(sink, timeout_seconds=5, cancel_grace_seconds=5)

        with pytest.raises(CommitTimeout) as exc_info:
            coordinator.commit(preview, timeout=0.05)

        err = exc_info.value
        assert err.outcome == CommitTimeout.WRITTEN
        assert err.retryable is False
        assert err.written == {key(3): "late-1", key(5): "late-2", key(10): "late-3", key(12): "late-4"}
        assert err.detail()["written"]["2024-06-03T09:00"] == "late-1"
        # Written occurrences are gone, so a retry cannot create them again
        assert preview.keys == []
        with pytest.raises(EmptySelection):
            coordinator.commit(preview)

    def test_unsettled_write_is_not_retryable(self, preview):
        sink = SlowSink(delay=0.5)
        coordinator = CommitCoordinator(sink, timeout_seconds=5, cancel_grace_seconds=0.05)

        with pytest.raises(CommitTimeout) as exc_info:
            coordinator.commit(preview, timeout=0.05)
        sink.finished.wait(timeout=5)

        assert exc_info.value.outcome == CommitTimeout.UNKNOWN
        assert exc_info.value.retryable is False
        assert exc_info.value.detail()["retryable"] is False
        assert preview.keys == [key(3), key(5), key(10), key(12)]
        assert preview.state == PreviewState.OPEN


class TestRecheckAtCommit:
    def test_booking_made_after_build_blocks_commit(self, preview, detector, commitments, sink):
        coordinator = CommitCoordinator(sink, detector, timeout_seconds=5)
        assert preview.can_commit is True
        commitments.add(
            Commitment(
                visit_id="booked-later",
                client_id="client-2",
                staff_id="staff-1",
                visit_date=date(2024, 6, 3),
                start_time=time(10),
                end_time=time(12),
            )
        )

        with pytest.raises(UnresolvedConflicts) as exc_info:
            coordinator.commit(preview)

        assert [(c.occurrence_key, c.kind) for c in exc_info.value.conflicts] == [
            (key(3), ConflictKind.STAFF_DOUBLE_BOOKED)
        ]
        assert sink.batches == []
        assert preview.can_commit is False
        assert preview.state == PreviewState.OPEN

    def test_new_conflict_can_be_acknowledged_then_committed(self, preview, detector, commitments, sink):
        coordinator = CommitCoordinator(sink, detector, timeout_seconds=5)
        commitments.add(
            Commitment(
                visit_id="booked-later",
                client_id="client-2",
                staff_id="staff-1",
                visit_date=date(2024, 6, 10),
                start_time=time(8),
                end_time=time(10),
            )
        )
        with pytest.raises(UnresolvedConflicts):
            coordinator.commit(preview)

        for conflict in preview.conflicts:
            conflict.resolved = True
        result = coordinator.commit(preview)

        assert list(result.visit_ids) == [key(3), key(5), key(10), key(12)]

    def test_acknowledged_conflicts_survive_recheck(
        self, builder, anchor, mon_wed_rule, staff_busy_on_wednesday, detector, sink
    ):
        preview = builder.build(anchor, mon_wed_rule)
        preview.conflicts[0].resolved = True
        coordinator = CommitCoordinator(sink, detector, timeout_seconds=5)

        result = coordinator.commit(preview)

        assert len(result.visits) == 4

    def test_booking_on_deselected_occurrence_ignored(self, preview, detector, commitments, sink):
        coordinator = CommitCoordinator(sink, detector, timeout_seconds=5)
        preview.selected.discard(key(3))
        commitments.add(
            Commitment(
                visit_id="booked-later",
                client_id="client-2",
                staff_id="staff-1",
                visit_date=date(2024, 6, 3),
                start_time=time(10),
                end_time=time(12),
            )
        )

        result = coordinator.commit(preview)

        assert list(result.visit_ids) == [key(5), key(10), key(12)]
