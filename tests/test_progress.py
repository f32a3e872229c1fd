"""Tests for the progress tracker and status views."""

from datetime import datetime, timedelta

import pytest

from docqueue.errors import InvalidTransition, NotFound, ValidationError
from docqueue.history import HistoryStore
from docqueue.progress.tracker import ProgressTracker
from docqueue.queue.store import PriorityQueueStore
from docqueue.states import HistoryStatus, OperationStatus, Priority


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 10, 14, 12, 0))


@pytest.fixture
def timed_tracker(db_manager, queue_store, history_store, clock) -> ProgressTracker:
    return ProgressTracker(db_manager, queue=queue_store, history=history_store, clock=clock)


class TestProgressUpdates:
    """Monotonic progress and range checks."""

    def test_start_creates_running_operation(self, tracker: ProgressTracker) -> None:
        operation = tracker.start("user-1", total_pages=4)

        assert operation.status is OperationStatus.RUNNING
        assert operation.progress_percent == 0
        assert tracker.get(operation.operation_id).total_pages == 4

    def test_progress_never_moves_backwards(self, tracker: ProgressTracker) -> None:
        operation_id = tracker.start("user-1").operation_id

        assert tracker.update(operation_id, 10).accepted
        assert tracker.update(operation_id, 45).accepted
        assert tracker.update(operation_id, 45).accepted

        regressed = tracker.update(operation_id, 30)
        assert regressed.accepted is False
        assert regressed.progress_percent == 45
        assert tracker.get(operation_id).progress_percent == 45

    @pytest.mark.parametrize("percent", [-1, 101])
    def test_percent_out_of_range(self, tracker: ProgressTracker, percent: int) -> None:
        operation_id = tracker.start("user-1").operation_id
        with pytest.raises(ValidationError):
            tracker.update(operation_id, percent)

    def test_current_page_cannot_exceed_total(self, tracker: ProgressTracker) -> None:
        operation_id = tracker.start("user-1", total_pages=3).operation_id

        tracker.update(operation_id, 60, current_page=2)
        with pytest.raises(ValidationError):
            tracker.update(operation_id, 80, current_page=4)
        tracker.update(operation_id, 80, current_page=4, total_pages=5)

    def test_metadata_is_merged(self, tracker: ProgressTracker) -> None:
        operation_id = tracker.start("user-1", metadata={"original_filename": "a.pdf"}).operation_id
        tracker.update(operation_id, 20, metadata={"stage": "ocr"})

        assert tracker.get(operation_id).metadata_json == {"original_filename": "a.pdf", "stage": "ocr"}

    def test_accepted_update_refreshes_heartbeat(
        self, timed_tracker: ProgressTracker, clock: FakeClock
    ) -> None:
        operation_id = timed_tracker.start("user-1").operation_id
        started = timed_tracker.get(operation_id).last_heartbeat_at

        clock.now += timedelta(minutes=5)
        timed_tracker.update(operation_id, 50)
        assert timed_tracker.get(operation_id).last_heartbeat_at == started + timedelta(minutes=5)

        clock.now += timedelta(minutes=5)
        timed_tracker.update(operation_id, 40)
        assert timed_tracker.get(operation_id).last_heartbeat_at == started + timedelta(minutes=5)

    def test_unknown_operation(self, tracker: ProgressTracker) -> None:
        with pytest.raises(NotFound):
            tracker.update("missing", 10)


class TestTerminalStates:
    """Completed, failed and cancelled operations are final."""

    def test_complete_sets_full_progress(self, tracker: ProgressTracker) -> None:
        operation_id = tracker.start("user-1", total_pages=3).operation_id
        tracker.update(operation_id, 33, current_page=1)

        operation = tracker.complete(operation_id, result={"page_count": 3})
        assert operation.status is OperationStatus.COMPLETED
        assert operation.progress_percent == 100
        assert operation.current_page == 3

    def test_update_after_completion_rejected(self, tracker: ProgressTracker) -> None:
        operation_id = tracker.start("user-1").operation_id
        tracker.complete(operation_id)

        with pytest.raises(InvalidTransition):
            tracker.update(operation_id, 100)
        with pytest.raises(InvalidTransition):
            tracker.fail(operation_id, "late failure")

    def test_cancellation_is_terminal(self, tracker: ProgressTracker) -> None:
        operation_id = tracker.start("user-1").operation_id
        operation = tracker.record_cancellation(operation_id, "engine gave up")

        assert operation.status is OperationStatus.CANCELLED
        assert operation.error_message == "engine gave up"
        with pytest.raises(InvalidTransition):
            tracker.complete(operation_id)

    def test_get_hides_other_owners(self, tracker: ProgressTracker) -> None:
        operation_id = tracker.start("user-1").operation_id
        with pytest.raises(NotFound):
            tracker.get(operation_id, owner_id="user-2")


class TestExpiry:
    """Stale heartbeats time out; old terminal operations are purged."""

    def test_expire_stale(self, timed_tracker: ProgressTracker, clock: FakeClock) -> None:
        stale_id = timed_tracker.start("user-1").operation_id
        clock.now += timedelta(hours=1, minutes=30)
        fresh_id = timed_tracker.start("user-1").operation_id

        expired = timed_tracker.expire_stale(clock.now + timedelta(hours=1))

        assert expired == 1
        stale = timed_tracker.get(stale_id)
        assert stale.status is OperationStatus.FAILED
        assert stale.error_message == "Operation timed out"
        assert timed_tracker.get(fresh_id).status is OperationStatus.RUNNING
        assert timed_tracker.expire_stale(clock.now + timedelta(hours=1)) == 0

    def test_purge_terminal(self, timed_tracker: ProgressTracker, clock: FakeClock) -> None:
        done_id = timed_tracker.start("user-1").operation_id
        timed_tracker.complete(done_id)
        running_id = timed_tracker.start("user-1").operation_id

        assert timed_tracker.purge_terminal(clock.now - timedelta(hours=1)) == 0
        assert timed_tracker.purge_terminal(clock.now + timedelta(hours=25)) == 1

        with pytest.raises(NotFound):
            timed_tracker.get(done_id)
        assert timed_tracker.get(running_id).status is OperationStatus.RUNNING


class TestStatusViews:
    """Aggregated status and per-job progress."""

    def _enqueue(self, store: PriorityQueueStore, pid: str, owner: str, priority=Priority.STANDARD):
        return store.enqueue(owner, pid, f"uploads/{pid}.pdf", f"{pid}.pdf", priority=priority)

    def test_aggregated_status(
        self,
        tracker: ProgressTracker,
        queue_store: PriorityQueueStore,
        history_store: HistoryStore,
    ) -> None:
        self._enqueue(queue_store, "other-elevated", "user-2", Priority.ELEVATED)
        self._enqueue(queue_store, "mine-1", "user-1")
        self._enqueue(queue_store, "mine-2", "user-1")
        tracker.start("user-1", processing_id="mine-0", total_pages=2)
        history_store.record("old", "user-1", "old.pdf", 2, HistoryStatus.COMPLETED)

        status = tracker.get_aggregated_status("user-1")

        positions = {item["processing_id"]: item["queue_position"] for item in status["queue_items"]}
        assert positions == {"mine-1": 2, "mine-2": 3}
        assert status["summary"]["total_queued"] == 2
        assert status["summary"]["total_active"] == 1
        assert status["summary"]["total_processing"] == 0
        assert status["summary"]["estimated_total_wait"] == 60 + 90
        assert [r["processing_id"] for r in status["recent_history"]] == ["old"]

    def test_job_progress_for_queued_job(
        self, tracker: ProgressTracker, queue_store: PriorityQueueStore
    ) -> None:
        self._enqueue(queue_store, "first", "user-2")
        self._enqueue(queue_store, "mine", "user-1")

        progress = tracker.get_job_progress("user-1", "mine")
        assert progress["status"] == "queued"
        assert progress["queue_position"] == 2
        assert progress["estimated_wait_seconds"] == 60

    def test_job_progress_for_finished_job(
        self, tracker: ProgressTracker, history_store: HistoryStore
    ) -> None:
        history_store.record(
            "done", "user-1", "done.pdf", 4, HistoryStatus.COMPLETED, document_type="Certificate"
        )
        progress = tracker.get_job_progress("user-1", "done")

        assert progress["status"] == "completed"
        assert progress["progress_percent"] == 100
        assert progress["document_type"] == "Certificate"

    def test_job_progress_hides_other_owners(
        self, tracker: ProgressTracker, queue_store: PriorityQueueStore
    ) -> None:
        self._enqueue(queue_store, "theirs", "user-2")

        with pytest.raises(NotFound):
            tracker.get_job_progress("user-1", "theirs")
        with pytest.raises(NotFound):
            tracker.get_job_progress("user-1", "missing")
