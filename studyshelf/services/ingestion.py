"""Reading uploaded documents into memory before they are stored."""

from __future__ import annotations

import logging
import mimetypes
import time
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Dict, FrozenSet, Optional

from ..errors import InvalidInputError, UnsupportedContentTypeError
from .events import emit_file_event


LOGGER = logging.getLogger(__name__)

PDF_MIME_TYPE = "application/pdf"
DOC_MIME_TYPE = "application/msword"
DOCX_MIME_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

ALLOWED_MIME_TYPES: FrozenSet[str] = frozenset({PDF_MIME_TYPE, DOC_MIME_TYPE, DOCX_MIME_TYPE})

# The platform mimetypes table does not always know about Word documents.
_EXTENSION_MIME_TYPES: Dict[str, str] = {
    ".pdf": PDF_MIME_TYPE,
    ".doc": DOC_MIME_TYPE,
    ".docx": DOCX_MIME_TYPE,
}


def guess_mime_type(name: str) -> Optional[str]:
    suffix = Path(name).suffix.lower()
    if suffix in _EXTENSION_MIME_TYPES:
        return _EXTENSION_MIME_TYPES[suffix]
    guessed, _ = mimetypes.guess_type(name)
    return guessed


def ensure_supported(name: str, mime_type: Optional[str]) -> str:
    """Return the normalised mime type or raise :class:`UnsupportedContentTypeError`."""

    normalised = (mime_type or "").split(";", 1)[0].strip().lower()
    if normalised not in ALLOWED_MIME_TYPES:
        LOGGER.warning("Rejected upload '%s' with type %s", name, mime_type or "<none>")
        raise UnsupportedContentTypeError(name, mime_type)
    return normalised


@dataclass(frozen=True)
class IncomingFile:
    """A validated upload held entirely in memory."""

    name: str
    mime_type: str
    payload: bytes

    @property
    def size_bytes(self) -> int:
        return len(self.payload)

    @classmethod
    def from_path(cls, path: Path, mime_type: Optional[str] = None) -> "IncomingFile":
        """Read *path* after checking its type against the allow-list."""

        path = Path(path)
        resolved_type = ensure_supported(path.name, mime_type or guess_mime_type(path.name))
        if not path.is_file():
            raise InvalidInputError(f"File not found: {path}")
        start = time.perf_counter()
        payload = path.read_bytes()
        emit_file_event(
            "read_path",
            payload={"path": path, "size_bytes": len(payload), "mime_type": resolved_type},
            duration_ms=(time.perf_counter() - start) * 1000.0,
        )
        return cls(name=path.name, mime_type=resolved_type, payload=payload)


def read_upload(name: Optional[str], mime_type: Optional[str], source: BinaryIO) -> IncomingFile:
    """Read an upload stream into an :class:`IncomingFile`.

    The type is checked before any bytes are consumed.
    """

    clean_name = Path(name or "").name.strip()
    if not clean_name:
        raise InvalidInputError("Uploaded file has no name")
    resolved_type = ensure_supported(clean_name, mime_type or guess_mime_type(clean_name))
    start = time.perf_counter()
    payload = source.read()
    emit_file_event(
        "read_upload",
        payload={"name": clean_name, "size_bytes": len(payload), "mime_type": resolved_type},
        duration_ms=(time.perf_counter() - start) * 1000.0,
    )
    return IncomingFile(name=clean_name, mime_type=resolved_type, payload=payload)


__all__ = [
    "ALLOWED_MIME_TYPES",
    "DOCX_MIME_TYPE",
    "DOC_MIME_TYPE",
    "IncomingFile",
    "PDF_MIME_TYPE",
    "ensure_supported",
    "guess_mime_type",
    "read_upload",
]
