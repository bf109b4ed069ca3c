"""Lookup of subjects and their scheduling feature flag."""

from __future__ import annotations

from typing import Dict, Iterable, Optional, Protocol

from .contracts import Subject


class SubjectDirectory(Protocol):
    """Read access to the subjects owned by the surrounding product."""

    async def get_subject(self, subject_id: str) -> Subject | None:
        """Return the subject or ``None`` if it no longer exists."""

    async def is_scheduling_enabled(self, subject_id: str) -> bool:
        """Return the subject's scheduling feature flag."""


class InMemorySubjectDirectory(SubjectDirectory):
    """Subjects held in memory, e.g. loaded from the ``subjects`` config section."""

    def __init__(self, subjects: Optional[Iterable[Subject]] = None) -> None:
        self._subjects: Dict[str, Subject] = {s.id: s for s in subjects or []}

    def upsert(self, subject: Subject) -> None:
        self._subjects[subject.id] = subject

    def remove(self, subject_id: str) -> None:
        self._subjects.pop(subject_id, None)

    def set_scheduling_enabled(self, subject_id: str, enabled: bool) -> None:
        subject = self._subjects[subject_id]
        self._subjects[subject_id] = subject.model_copy(
            update={"scheduling_enabled": enabled}
        )

    async def get_subject(self, subject_id: str) -> Subject | None:
        return self._subjects.get(subject_id)

    async def is_scheduling_enabled(self, subject_id: str) -> bool:
        subject = self._subjects.get(subject_id)
        return bool(subject and subject.scheduling_enabled)
