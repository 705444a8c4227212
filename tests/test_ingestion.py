from __future__ import annotations

import io
from pathlib import Path

import pytest

from studyshelf.errors import InvalidInputError, UnsupportedContentTypeError
from studyshelf.services.ingestion import (
    DOCX_MIME_TYPE,
    DOC_MIME_TYPE,
    PDF_MIME_TYPE,
    IncomingFile,
    ensure_supported,
    guess_mime_type,
    read_upload,
)


def test_guess_mime_type_knows_word_documents() -> None:
    assert guess_mime_type("notes.PDF") == PDF_MIME_TYPE
    assert guess_mime_type("essay.doc") == DOC_MIME_TYPE
    assert guess_mime_type("essay.docx") == DOCX_MIME_TYPE
    assert guess_mime_type("readme.txt") == "text/plain"


def test_ensure_supported_normalises_parameters() -> None:
    assert ensure_supported("a.pdf", "Application/PDF; charset=binary") == PDF_MIME_TYPE


def test_ensure_supported_rejects_other_types() -> None:
    with pytest.raises(UnsupportedContentTypeError) as excinfo:
        ensure_supported("notes.txt", "text/plain")

    assert excinfo.value.status_code == 415
    assert "notes.txt" in excinfo.value.message


def test_read_upload_checks_type_before_reading() -> None:
    class Exploding(io.BytesIO):
        def read(self, *args, **kwargs):  # type: ignore[override]
            raise AssertionError("payload should not be read")

    with pytest.raises(UnsupportedContentTypeError):
        read_upload("notes.txt", "text/plain", Exploding())


def test_read_upload_uses_extension_when_type_missing() -> None:
    incoming = read_upload("folder/Week 1.docx", None, io.BytesIO(b"PK\x03\x04"))

    assert incoming.name == "Week 1.docx"
    assert incoming.mime_type == DOCX_MIME_TYPE
    assert incoming.size_bytes == 4


def test_read_upload_requires_a_name() -> None:
    with pytest.raises(InvalidInputError):
        read_upload("", PDF_MIME_TYPE, io.BytesIO(b"%PDF"))


def test_incoming_file_from_path(tmp_path: Path) -> None:
    document = tmp_path / "rules.pdf"
    document.write_bytes(b"%PDF-1.4")

    incoming = IncomingFile.from_path(document)

    assert incoming == IncomingFile(name="rules.pdf", mime_type=PDF_MIME_TYPE, payload=b"%PDF-1.4")


def test_incoming_file_from_path_rejects_unsupported(tmp_path: Path) -> None:
    text = tmp_path / "notes.txt"
    text.write_text("hello", encoding="utf-8")

    with pytest.raises(UnsupportedContentTypeError):
        IncomingFile.from_path(text)
