"""Pytest configuration and fixtures."""

import os
import tempfile
from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest

from docqueue.admission.controller import AdmissionController
from docqueue.blobs import FilesystemBlobStore
from docqueue.db.manager import DatabaseManager
from docqueue.engine import ProgressCallback, TransformEngine, TransformOutput
from docqueue.errors import ValidationError
from docqueue.history import HistoryStore
from docqueue.ledger.ledger import QuotaLedger
from docqueue.progress.tracker import ProgressTracker
from docqueue.queue.store import PriorityQueueStore


def fake_pdf(pages: int) -> bytes:
    """Document bytes understood by FakeEngine."""
    return f"%PDF-fake pages={pages}".encode()


def make_pdf(page_texts: list[str]) -> bytes:
    """Build a minimal but well-formed PDF with one text line per page."""
    page_count = len(page_texts)
    font_id = 3
    first_page_id = 4
    objects: dict[int, bytes] = {
        1: b"<< /Type /Catalog /Pages 2 0 R >>",
        font_id: b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>",
    }
    kids = []
    for index, text in enumerate(page_texts):
        page_id = first_page_id + 2 * index
        content_id = page_id + 1
        kids.append(f"{page_id} 0 R")
        stream = f"BT /F1 12 Tf 72 720 Td ({text}) Tj ET".encode()
        objects[page_id] = (
            f"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] "
            f"/Resources << /Font << /F1 {font_id} 0 R >> >> /Contents {content_id} 0 R >>"
        ).encode()
        objects[content_id] = (
            f"<< /Length {len(stream)} >>\nstream\n".encode() + stream + b"\nendstream"
        )
    objects[2] = f"<< /Type /Pages /Kids [{' '.join(kids)}] /Count {page_count} >>".encode()

    out = bytearray(b"%PDF-1.4\n")
    offsets = {}
    for obj_id in sorted(objects):
        offsets[obj_id] = len(out)
        out += f"{obj_id} 0 obj\n".encode() + objects[obj_id] + b"\nendobj\n"

    xref_at = len(out)
    size = max(objects) + 1
    out += f"xref\n0 {size}\n".encode()
    out += b"0000000000 65535 f \n"
    for obj_id in range(1, size):
        out += f"{offsets[obj_id]:010d} 00000 n \n".encode()
    out += f"trailer\n<< /Size {size} /Root 1 0 R >>\nstartxref\n{xref_at}\n%%EOF\n".encode()
    return bytes(out)


class FakeEngine(TransformEngine):
    """
    Deterministic engine for tests.

    Reads the page count from ``fake_pdf`` bytes, reports progress per page
    and raises the queued-up failures in order before succeeding.
    """

    def __init__(self) -> None:
        self.failures: list[Exception] = []
        self.calls = 0

    def count_pages(self, data: bytes) -> int:
        if not data.startswith(b"%PDF-fake pages="):
            raise ValidationError("Document is not a readable PDF")
        return int(data.split(b"=", 1)[1])

    def transform(
        self,
        data: bytes,
        options: dict[str, Any],
        elevated: bool,
        progress: ProgressCallback | None = None,
    ) -> TransformOutput:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        total = self.count_pages(data)
        for page in range(1, total + 1):
            if progress is not None:
                progress(page * 100 // total, page, total)
        return TransformOutput(
            data=data,
            page_count=total,
            document_type="Invoice/Bill" if options.get("classify") else None,
            metadata={"elevated": elevated},
        )


@pytest.fixture
def temp_db_path() -> Generator[str, None, None]:
    """Create a temporary database file."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name
    yield db_path
    # Cleanup, including WAL side files
    for suffix in ("", "-wal", "-shm"):
        try:
            os.unlink(db_path + suffix)
        except OSError:
            pass


@pytest.fixture
def db_manager(temp_db_path: str) -> Generator[DatabaseManager, None, None]:
    """Create a DatabaseManager with a temporary database."""
    manager = DatabaseManager(database_url=f"sqlite:///{temp_db_path}")
    manager.init_db()
    yield manager
    manager.close()


@pytest.fixture
def queue_store(db_manager: DatabaseManager) -> PriorityQueueStore:
    return PriorityQueueStore(db_manager)


@pytest.fixture
def history_store(db_manager: DatabaseManager) -> HistoryStore:
    return HistoryStore(db_manager)


@pytest.fixture
def ledger(db_manager: DatabaseManager, history_store: HistoryStore) -> QuotaLedger:
    return QuotaLedger(db_manager, history=history_store)


@pytest.fixture
def tracker(
    db_manager: DatabaseManager,
    queue_store: PriorityQueueStore,
    history_store: HistoryStore,
) -> ProgressTracker:
    return ProgressTracker(db_manager, queue=queue_store, history=history_store)


@pytest.fixture
def blob_store(tmp_path: Path) -> FilesystemBlobStore:
    return FilesystemBlobStore(tmp_path / "blobs")


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def controller(
    db_manager: DatabaseManager,
    queue_store: PriorityQueueStore,
    ledger: QuotaLedger,
    history_store: HistoryStore,
    tracker: ProgressTracker,
    engine: FakeEngine,
    blob_store: FilesystemBlobStore,
) -> AdmissionController:
    return AdmissionController(
        db_manager,
        queue=queue_store,
        ledger=ledger,
        history=history_store,
        tracker=tracker,
        engine=engine,
        blobs=blob_store,
        max_concurrent_jobs=4,
    )
