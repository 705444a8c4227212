"""Exception hierarchy shared by the store, the controller and the web layer."""

from __future__ import annotations

from typing import Any, Dict, Optional


class StudyShelfError(RuntimeError):
    """Base class for errors that are reported to the user."""

    status_code = 500

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.__class__.__name__,
            "detail": self.message,
            "details": self.details,
        }


class NotFoundError(StudyShelfError):
    """Raised when an identifier is absent from its collection.

    Callers treat this as "already gone" rather than as a fatal condition.
    """

    status_code = 404

    def __init__(self, kind: str, identifier: Any) -> None:
        super().__init__(
            f"{kind.capitalize()} {identifier} not found",
            details={"kind": kind, "id": identifier},
        )
        self.kind = kind
        self.identifier = identifier


class UnsupportedContentTypeError(StudyShelfError):
    """Raised when an uploaded file is outside the mime-type allow-list."""

    status_code = 415

    def __init__(self, name: str, mime_type: Optional[str]) -> None:
        super().__init__(
            f"'{name}' is not supported ({mime_type or 'unknown type'})",
            details={"name": name, "mime_type": mime_type},
        )
        self.name = name
        self.mime_type = mime_type


class InvalidInputError(StudyShelfError, ValueError):
    """Raised for empty required fields, malformed links and similar input."""

    status_code = 400


class StorageUnavailableError(StudyShelfError):
    """Raised when the SQLite database cannot be opened or a request fails."""

    status_code = 503


__all__ = [
    "InvalidInputError",
    "NotFoundError",
    "StorageUnavailableError",
    "StudyShelfError",
    "UnsupportedContentTypeError",
]
