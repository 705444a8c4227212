"""Recursive deletion of an entity together with all of its descendants."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List

from .storage import EntityKind, StudyRepository


LOGGER = logging.getLogger(__name__)


@dataclass
class CascadeReport:
    """Identifiers removed by one cascade run, grouped by kind."""

    root_kind: EntityKind
    root_id: int
    found: bool = False
    deleted: Dict[EntityKind, List[int]] = field(default_factory=dict)

    def record(self, kind: EntityKind, identifier: int) -> None:
        self.deleted.setdefault(kind, []).append(identifier)

    def deleted_ids(self, kind: EntityKind) -> List[int]:
        return list(self.deleted.get(kind, []))

    @property
    def total(self) -> int:
        return sum(len(ids) for ids in self.deleted.values())


class CascadeDeleter:
    """Delete records bottom-up: every child first, the record itself last.

    Each store call is its own transaction. When a call fails the error is
    raised as-is and whatever was already removed stays removed; running the
    same delete again finishes the job.
    """

    def __init__(self, repository: StudyRepository) -> None:
        self._repository = repository

    def delete(self, kind: EntityKind, identifier: int) -> CascadeReport:
        kind = EntityKind(kind)
        report = CascadeReport(root_kind=kind, root_id=identifier)
        LOGGER.debug("Cascade delete requested for %s id=%s", kind.value, identifier)
        report.found = self._delete(kind, identifier, report)
        LOGGER.info(
            "Cascade delete of %s id=%s removed %s record(s)%s",
            kind.value,
            identifier,
            report.total,
            "" if report.found else " (root already gone)",
        )
        return report

    def _delete(self, kind: EntityKind, identifier: int, report: CascadeReport) -> bool:
        child_kind = kind.child
        if child_kind is not None:
            for child in self._repository.store(child_kind).list_by_parent(identifier):
                self._delete(child_kind, int(child.id), report)
        removed = self._repository.store(kind).delete(identifier)
        if removed:
            report.record(kind, identifier)
        return removed


__all__ = ["CascadeDeleter", "CascadeReport"]
