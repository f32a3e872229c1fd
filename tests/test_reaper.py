"""Tests for the reaper."""

import os
import time
from datetime import timedelta
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from conftest import fake_pdf

from docqueue.admission.controller import AdmissionController
from docqueue.blobs import FilesystemBlobStore
from docqueue.db.base import utcnow
from docqueue.db.manager import DatabaseManager
from docqueue.history import HistoryStore
from docqueue.ledger.ledger import QuotaLedger
from docqueue.progress.tracker import ProgressTracker
from docqueue.queue.store import PriorityQueueStore
from docqueue.reaper import Reaper
from docqueue.states import HistoryStatus, JobStatus, OperationStatus


@pytest.fixture
def scratch_dir(tmp_path: Path) -> Path:
    path = tmp_path / "scratch"
    path.mkdir()
    return path


def make_reaper(
    queue_store: PriorityQueueStore,
    tracker: ProgressTracker,
    history_store: HistoryStore,
    ledger: QuotaLedger,
    blob_store: FilesystemBlobStore,
    controller: AdmissionController | None = None,
    scratch_dir: Path | None = None,
    hours_ahead: int = 48,
    **overrides,
) -> Reaper:
    later = utcnow() + timedelta(hours=hours_ahead)
    return Reaper(
        queue=overrides.pop("queue", queue_store),
        tracker=tracker,
        history=overrides.pop("history", history_store),
        ledger=ledger,
        blobs=blob_store,
        controller=controller,
        scratch_dir=scratch_dir,
        clock=lambda: later,
        **overrides,
    )


class TestPasses:
    """Individual cleanup passes."""

    def test_purges_terminal_jobs_and_their_blobs(
        self,
        queue_store: PriorityQueueStore,
        tracker: ProgressTracker,
        history_store: HistoryStore,
        ledger: QuotaLedger,
        blob_store: FilesystemBlobStore,
    ) -> None:
        upload = blob_store.put("uploads/done.pdf", fake_pdf(1))
        processed = blob_store.put("processed/done.pdf", fake_pdf(1))
        queue_store.enqueue("user-1", "done", upload, "done.pdf")
        queue_store.enqueue("user-1", "waiting", "uploads/waiting.pdf", "waiting.pdf")
        queue_store.dequeue_next()
        queue_store.complete("done", {"processed_locator": processed})

        reaper = make_reaper(queue_store, tracker, history_store, ledger, blob_store)
        report = reaper.sweep()

        assert report.counts["jobs_purged"] == 1
        assert queue_store.get("done") is None
        assert queue_store.get("waiting") is not None
        assert not blob_store.exists(upload)
        assert not blob_store.exists(processed)

    def test_recent_terminal_jobs_are_kept(
        self,
        queue_store: PriorityQueueStore,
        tracker: ProgressTracker,
        history_store: HistoryStore,
        ledger: QuotaLedger,
        blob_store: FilesystemBlobStore,
    ) -> None:
        queue_store.enqueue("user-1", "done", "uploads/done.pdf", "done.pdf")
        queue_store.dequeue_next()
        queue_store.complete("done")

        reaper = make_reaper(queue_store, tracker, history_store, ledger, blob_store, hours_ahead=1)
        assert reaper.sweep().counts["jobs_purged"] == 0

    def test_removes_only_old_scratch_files(
        self,
        queue_store: PriorityQueueStore,
        tracker: ProgressTracker,
        history_store: HistoryStore,
        ledger: QuotaLedger,
        blob_store: FilesystemBlobStore,
        scratch_dir: Path,
    ) -> None:
        old = scratch_dir / "abc_processed.pdf"
        fresh = scratch_dir / "def_processed.pdf"
        unrelated = scratch_dir / "notes.pdf"
        for path in (old, fresh, unrelated):
            path.write_bytes(b"x")
        two_days_ago = time.time() - 2 * 24 * 3600
        os.utime(old, (two_days_ago, two_days_ago))
        os.utime(unrelated, (two_days_ago, two_days_ago))

        reaper = make_reaper(
            queue_store, tracker, history_store, ledger, blob_store,
            scratch_dir=scratch_dir, hours_ahead=0,
        )
        report = reaper.sweep()

        assert report.counts["scratch_files_removed"] == 1
        assert not old.exists()
        assert fresh.exists()
        assert unrelated.exists()

    def test_missing_scratch_directory_is_skipped(
        self,
        queue_store: PriorityQueueStore,
        tracker: ProgressTracker,
        history_store: HistoryStore,
        ledger: QuotaLedger,
        blob_store: FilesystemBlobStore,
        tmp_path: Path,
    ) -> None:
        reaper = make_reaper(
            queue_store, tracker, history_store, ledger, blob_store,
            scratch_dir=tmp_path / "does-not-exist",
        )
        report = reaper.sweep()

        assert report.ok
        assert report.counts["scratch_files_removed"] == 0

    def test_expires_stale_operations(
        self,
        queue_store: PriorityQueueStore,
        tracker: ProgressTracker,
        history_store: HistoryStore,
        ledger: QuotaLedger,
        blob_store: FilesystemBlobStore,
    ) -> None:
        operation_id = tracker.start("user-1").operation_id

        reaper = make_reaper(queue_store, tracker, history_store, ledger, blob_store, hours_ahead=3)
        report = reaper.sweep()

        assert report.counts["operations_expired"] == 1
        assert tracker.get(operation_id).status is OperationStatus.FAILED

    def test_recovers_stalled_jobs(
        self,
        controller: AdmissionController,
        queue_store: PriorityQueueStore,
        tracker: ProgressTracker,
        history_store: HistoryStore,
        ledger: QuotaLedger,
        blob_store: FilesystemBlobStore,
    ) -> None:
        queue_store.enqueue("user-1", "retry-me", "uploads/a.pdf", "a.pdf")
        queue_store.dequeue_next()
        queue_store.begin_immediate("user-1", "no-retries", "uploads/b.pdf", "b.pdf")

        reaper = make_reaper(
            queue_store, tracker, history_store, ledger, blob_store,
            controller=controller, hours_ahead=3,
        )
        report = reaper.sweep()

        assert report.counts["stalled_jobs_recovered"] == 2
        assert queue_store.get("retry-me").status is JobStatus.QUEUED
        assert queue_store.get("no-retries").status is JobStatus.FAILED
        assert history_store.get("no-retries").status is HistoryStatus.FAILED

    def test_long_running_job_with_heartbeat_is_left_alone(
        self,
        db_manager: DatabaseManager,
        controller: AdmissionController,
        queue_store: PriorityQueueStore,
        tracker: ProgressTracker,
        history_store: HistoryStore,
        ledger: QuotaLedger,
        blob_store: FilesystemBlobStore,
    ) -> None:
        queue_store.enqueue("user-1", "long", "uploads/long.pdf", "long.pdf")
        queue_store.enqueue("user-1", "dead", "uploads/dead.pdf", "dead.pdf")
        queue_store.dequeue_next()
        queue_store.dequeue_next()
        long_op = tracker.start("user-1", processing_id="long", total_pages=10).operation_id
        dead_op = tracker.start("user-1", processing_id="dead", total_pages=10).operation_id

        later = utcnow() + timedelta(hours=3)
        later_tracker = ProgressTracker(db_manager, queue=queue_store, history=history_store, clock=lambda: later)
        later_tracker.update(long_op, progress_percent=50, current_page=5)

        reaper = make_reaper(
            queue_store, tracker, history_store, ledger, blob_store,
            controller=controller, hours_ahead=3,
        )
        report = reaper.sweep()

        assert report.counts["stalled_jobs_recovered"] == 1
        assert queue_store.get("long").status is JobStatus.PROCESSING
        assert tracker.get(long_op).status is OperationStatus.RUNNING
        assert queue_store.get("dead").status is JobStatus.QUEUED
        assert tracker.get(dead_op).status is OperationStatus.FAILED

    def test_purges_old_history(
        self,
        queue_store: PriorityQueueStore,
        tracker: ProgressTracker,
        history_store: HistoryStore,
        ledger: QuotaLedger,
        blob_store: FilesystemBlobStore,
    ) -> None:
        history_store.record("old", "user-1", "old.pdf", 1, HistoryStatus.COMPLETED)

        assert make_reaper(queue_store, tracker, history_store, ledger, blob_store).sweep().counts[
            "history_purged"
        ] == 0
        reaper = make_reaper(
            queue_store, tracker, history_store, ledger, blob_store, hours_ahead=91 * 24
        )
        assert reaper.sweep().counts["history_purged"] == 1


class TestSweep:
    """Sweep-level guarantees."""

    def test_second_sweep_changes_nothing(
        self,
        controller: AdmissionController,
        queue_store: PriorityQueueStore,
        tracker: ProgressTracker,
        history_store: HistoryStore,
        ledger: QuotaLedger,
        blob_store: FilesystemBlobStore,
        scratch_dir: Path,
    ) -> None:
        queue_store.enqueue("user-1", "done", "uploads/done.pdf", "done.pdf")
        queue_store.dequeue_next()
        queue_store.complete("done")
        queue_store.begin_immediate("user-1", "stuck", "uploads/stuck.pdf", "stuck.pdf")
        tracker.start("user-1")
        ledger.record_usage("user-1", 2)

        reaper = make_reaper(
            queue_store, tracker, history_store, ledger, blob_store,
            controller=controller, scratch_dir=scratch_dir, hours_ahead=30 * 24,
        )
        first = reaper.sweep()
        second = reaper.sweep()

        assert first.ok and second.ok
        assert first.total_changes > 0
        assert second.total_changes == 0

    def test_failing_pass_does_not_stop_the_others(
        self,
        queue_store: PriorityQueueStore,
        tracker: ProgressTracker,
        history_store: HistoryStore,
        ledger: QuotaLedger,
        blob_store: FilesystemBlobStore,
    ) -> None:
        broken_history = MagicMock()
        broken_history.purge_before.side_effect = RuntimeError("disk full")
        operation_id = tracker.start("user-1").operation_id

        reaper = make_reaper(
            queue_store, tracker, history_store, ledger, blob_store,
            history=broken_history, hours_ahead=3,
        )
        report = reaper.sweep()

        assert not report.ok
        assert report.errors == {"history_purged": "disk full"}
        assert report.counts["operations_expired"] == 1
        assert "accounts_rolled_over" in report.counts
        assert tracker.get(operation_id).status is OperationStatus.FAILED

    def test_report_to_dict(
        self,
        queue_store: PriorityQueueStore,
        tracker: ProgressTracker,
        history_store: HistoryStore,
        ledger: QuotaLedger,
        blob_store: FilesystemBlobStore,
    ) -> None:
        data = make_reaper(queue_store, tracker, history_store, ledger, blob_store).sweep().to_dict()
        assert data["ok"] is True
        assert set(data["counts"]) == {
            "jobs_purged",
            "scratch_files_removed",
            "stalled_jobs_recovered",
            "operations_expired",
            "operations_purged",
            "history_purged",
            "accounts_rolled_over",
        }
