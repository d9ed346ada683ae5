"""Persistence contract used by the result processor, plus an in-memory implementation."""

from __future__ import annotations

import asyncio
from typing import Dict, List, Optional, Protocol, Tuple

from assessment_ingest.models.oscal import Result, Subject


class PersistenceService(Protocol):
    """
    Storage collaborator. Each call raises on failure.

    Implementations synchronize internally; callers never lock around them
    and no transaction spans the two calls.
    """

    async def save_subject(self, subject: Subject) -> None: ...

    async def save_result(self, assessment_id: str, result: Result) -> None: ...


class MemoryStore:
    """Keeps subjects and results in process memory. Used for tests and embedding."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._subjects: Dict[str, Subject] = {}
        self._results: List[Tuple[str, Result]] = []

    async def save_subject(self, subject: Subject) -> None:
        async with self._lock:
            existing = self._subjects.get(subject.id)
            if existing is not None:
                if existing == subject:
                    return
                raise ValueError(f"Subject {subject.id} already stored")
            self._subjects[subject.id] = subject

    async def save_result(self, assessment_id: str, result: Result) -> None:
        async with self._lock:
            self._results.append((assessment_id, result))

    @property
    def subjects(self) -> List[Subject]:
        return list(self._subjects.values())

    def get_subject(self, subject_id: str) -> Optional[Subject]:
        return self._subjects.get(subject_id)

    def get_results(self, assessment_id: Optional[str] = None) -> List[Result]:
        """Results in insertion order, optionally filtered by assessment id."""
        return [
            result for aid, result in self._results
            if assessment_id is None or aid == assessment_id
        ]
