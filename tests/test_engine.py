"""Tests for the text-extraction engine and blob storage."""

import errno
from pathlib import Path

import pytest
from conftest import make_pdf
from pdfminer.pdfpage import PDFPage

from docqueue.blobs import FilesystemBlobStore
from docqueue.engine import DEFAULT_DOCUMENT_TYPE, PdfTextEngine, classify_document
from docqueue.errors import NotFound, PersistenceError, TransformFailure, ValidationError


class TestClassifyDocument:
    """Keyword classification."""

    @pytest.mark.parametrize(
        "text, expected",
        [
            ("INVOICE 42 - amount due: 10 EUR incl. tax", "Invoice/Bill"),
            ("Curriculum Vitae. Experience and education", "Resume/CV"),
            ("This agreement is made between each party", "Contract/Legal"),
            ("Certificate of completion", "Certificate"),
            ("A short note about lunch", DEFAULT_DOCUMENT_TYPE),
        ],
    )
    def test_classification(self, text: str, expected: str) -> None:
        assert classify_document(text) == expected

    def test_first_matching_rule_wins(self) -> None:
        # Matches both the resume and the report rules
        assert classify_document("Skills and experience summary report analysis") == "Resume/CV"


class TestPdfTextEngine:
    """Tests for the pdfminer-backed engine."""

    @pytest.fixture
    def pdf_engine(self) -> PdfTextEngine:
        return PdfTextEngine()

    def test_count_pages(self, pdf_engine: PdfTextEngine) -> None:
        assert pdf_engine.count_pages(make_pdf(["one", "two", "three"])) == 3

    def test_count_pages_rejects_garbage(self, pdf_engine: PdfTextEngine) -> None:
        with pytest.raises(ValidationError):
            pdf_engine.count_pages(b"this is not a pdf at all")

    @pytest.mark.parametrize("error", [KeyError("Root"), TypeError("bad xref"), AssertionError()])
    def test_count_pages_maps_parser_errors(
        self, pdf_engine: PdfTextEngine, monkeypatch: pytest.MonkeyPatch, error: Exception
    ) -> None:
        def broken_get_pages(*args, **kwargs):
            raise error

        monkeypatch.setattr(PDFPage, "get_pages", broken_get_pages)
        with pytest.raises(ValidationError):
            pdf_engine.count_pages(make_pdf(["one"]))

    def test_transform_reports_progress_per_page(self, pdf_engine: PdfTextEngine) -> None:
        updates: list[tuple[int, int, int]] = []

        output = pdf_engine.transform(
            make_pdf(["Invoice number 7", "Amount due with tax"]),
            {"classify": True},
            elevated=True,
            progress=lambda percent, page, total: updates.append((percent, page, total)),
        )

        assert updates == [(50, 1, 2), (100, 2, 2)]
        assert output.page_count == 2
        assert output.document_type == "Invoice/Bill"
        assert output.metadata["elevated"] is True
        assert output.metadata["text_characters"] > 0

    def test_transform_without_classification(self, pdf_engine: PdfTextEngine) -> None:
        data = make_pdf(["Invoice"])
        output = pdf_engine.transform(data, {}, elevated=False)
        assert output.document_type is None
        assert output.data == data

    def test_transform_unreadable_document_is_permanent(self, pdf_engine: PdfTextEngine) -> None:
        with pytest.raises(TransformFailure) as exc_info:
            pdf_engine.transform(b"%PDF-broken", {}, elevated=False)
        assert exc_info.value.retryable is False


class TestFilesystemBlobStore:
    """Tests for blob storage."""

    def test_put_get_delete(self, blob_store: FilesystemBlobStore) -> None:
        locator = blob_store.put("uploads/user-1/a.pdf", b"%PDF-data")

        assert blob_store.exists(locator)
        assert blob_store.get(locator) == b"%PDF-data"
        assert blob_store.delete(locator) is True
        assert blob_store.delete(locator) is False
        assert not blob_store.exists(locator)

    def test_missing_blob(self, blob_store: FilesystemBlobStore) -> None:
        with pytest.raises(NotFound):
            blob_store.get("uploads/nothing.pdf")

    @pytest.mark.parametrize("locator", ["", "../outside.pdf", "uploads/../../outside.pdf"])
    def test_rejects_locators_outside_root(self, blob_store: FilesystemBlobStore, locator: str) -> None:
        with pytest.raises(ValidationError):
            blob_store.put(locator, b"x")

    def test_files_live_under_root(self, tmp_path: Path) -> None:
        store = FilesystemBlobStore(tmp_path / "root")
        store.put("processed/x.pdf", b"x")
        assert (tmp_path / "root" / "processed" / "x.pdf").read_bytes() == b"x"

    def test_disk_errors_become_persistence_errors(
        self, blob_store: FilesystemBlobStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        locator = blob_store.put("uploads/a.pdf", b"x")

        def disk_full(*args, **kwargs):
            raise OSError(errno.ENOSPC, "No space left on device")

        monkeypatch.setattr(Path, "write_bytes", disk_full)
        monkeypatch.setattr(Path, "read_bytes", disk_full)
        monkeypatch.setattr(Path, "unlink", disk_full)

        with pytest.raises(PersistenceError):
            blob_store.put("processed/a.pdf", b"y")
        with pytest.raises(PersistenceError):
            blob_store.get(locator)
        with pytest.raises(PersistenceError):
            blob_store.delete(locator)
