"""Token-addressed temporary files that expose stored payloads to viewers."""

from __future__ import annotations

import contextlib
import logging
import re
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from .events import emit_file_event
from .storage import FileRecord


LOGGER = logging.getLogger(__name__)

PREVIEW_SCOPE = "preview"
DOWNLOAD_SCOPE = "download"
TOKEN_PATTERN = re.compile(r"^[a-f0-9]{16,64}$")


def is_valid_token(token: str) -> bool:
    return bool(TOKEN_PATTERN.fullmatch(token or ""))


def _safe_name(name: str) -> str:
    path = Path(name or "file")
    stem = re.sub(r"[^A-Za-z0-9._-]+", "-", path.stem).strip("-.") or "file"
    suffix = re.sub(r"[^A-Za-z0-9.]+", "", path.suffix.lower())
    return f"{stem}{suffix}"


@dataclass(frozen=True)
class ContentHandle:
    """A temporary file holding one payload, owned by exactly one scope."""

    token: str
    file_id: int
    name: str
    mime_type: str
    path: Path
    scope: str
    purpose: str
    created_at: str

    @property
    def url(self) -> str:
        return f"/api/previews/{self.token}"


class ContentHandleRegistry:
    """Creates, tracks and releases :class:`ContentHandle` objects.

    A scope holds at most one handle. Acquiring for a different file releases
    the previous one first; acquiring again for the same file returns the
    existing handle.
    """

    def __init__(self, root: Path) -> None:
        self._root = Path(root)
        self._lock = threading.RLock()
        self._by_scope: Dict[str, ContentHandle] = {}

    @property
    def root(self) -> Path:
        return self._root

    def acquire(
        self,
        scope: str,
        file: FileRecord,
        payload: bytes,
        *,
        purpose: str = PREVIEW_SCOPE,
    ) -> ContentHandle:
        with self._lock:
            current = self._by_scope.get(scope)
            if current is not None and current.file_id == file.id and current.path.exists():
                LOGGER.debug("Reusing handle %s for file %s in scope %s", current.token, file.id, scope)
                return current
            if current is not None:
                self._release(current, reason="replaced")

            start = time.perf_counter()
            token = uuid.uuid4().hex
            self._root.mkdir(parents=True, exist_ok=True)
            target = self._root / f"{token}-{_safe_name(file.name)}"
            target.write_bytes(payload)
            handle = ContentHandle(
                token=token,
                file_id=int(file.id),
                name=file.name,
                mime_type=file.mime_type,
                path=target,
                scope=scope,
                purpose=purpose,
                created_at=datetime.now(timezone.utc).isoformat(timespec="seconds"),
            )
            self._by_scope[scope] = handle
            emit_file_event(
                "handle_created",
                payload={
                    "token": token,
                    "file_id": handle.file_id,
                    "scope": scope,
                    "purpose": purpose,
                    "size_bytes": len(payload),
                },
                duration_ms=(time.perf_counter() - start) * 1000.0,
            )
            return handle

    def handle_for(self, scope: str) -> Optional[ContentHandle]:
        with self._lock:
            return self._by_scope.get(scope)

    def resolve(self, token: str) -> Optional[ContentHandle]:
        if not is_valid_token(token):
            return None
        with self._lock:
            for handle in self._by_scope.values():
                if handle.token == token:
                    return handle
        return None

    def active_handles(self) -> List[ContentHandle]:
        with self._lock:
            return list(self._by_scope.values())

    def release(self, scope: str) -> bool:
        with self._lock:
            handle = self._by_scope.get(scope)
            if handle is None:
                return False
            self._release(handle, reason="scope")
            return True

    def release_token(self, token: str) -> bool:
        handle = self.resolve(token)
        if handle is None:
            return False
        with self._lock:
            self._release(handle, reason="token")
        return True

    def release_file(self, file_id: int) -> int:
        """Release every handle exposing *file_id*."""

        with self._lock:
            matches = [handle for handle in self._by_scope.values() if handle.file_id == file_id]
            for handle in matches:
                self._release(handle, reason="file_deleted")
            return len(matches)

    def release_all(self) -> int:
        with self._lock:
            handles = list(self._by_scope.values())
            for handle in handles:
                self._release(handle, reason="shutdown")
            return len(handles)

    def purge(self) -> int:
        """Delete files in the handle directory that no active handle owns."""

        removed = 0
        with self._lock:
            owned = {handle.path.name for handle in self._by_scope.values()}
            if not self._root.exists():
                return 0
            for candidate in self._root.iterdir():
                if not candidate.is_file() or candidate.name in owned:
                    continue
                try:
                    candidate.unlink()
                except OSError as error:  # pragma: no cover - best effort cleanup
                    LOGGER.warning("Could not remove stale handle file %s: %s", candidate, error)
                    continue
                removed += 1
        if removed:
            emit_file_event("handles_purged", payload={"count": removed, "root": self._root})
        return removed

    def _release(self, handle: ContentHandle, *, reason: str) -> None:
        if self._by_scope.get(handle.scope) is handle:
            del self._by_scope[handle.scope]
        with contextlib.suppress(FileNotFoundError):
            handle.path.unlink()
        emit_file_event(
            "handle_released",
            payload={
                "token": handle.token,
                "file_id": handle.file_id,
                "scope": handle.scope,
                "reason": reason,
            },
        )


__all__ = [
    "ContentHandle",
    "ContentHandleRegistry",
    "DOWNLOAD_SCOPE",
    "PREVIEW_SCOPE",
    "TOKEN_PATTERN",
    "is_valid_token",
]
