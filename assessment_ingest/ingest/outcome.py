"""Per-event ingestion outcomes and the sinks that receive them."""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from assessment_ingest.errors import IngestError

logger = logging.getLogger(__name__)


class OutcomeStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class IngestionOutcome:
    """
    What happened to one event.

    Fields:
        status: SUCCEEDED or FAILED
        assessment_id: Assessment the event belonged to
        subject_id: Stored Subject identity (None if never built)
        result_id: Stored Result identity (None if never built)
        error: Structured error for failed events
        attempts: Persistence attempts spent on the event, both calls together
        duration: Seconds spent processing the event
        counts: Number of records built, by kind
        event: The event itself: the decoded ExecutionResult, or the raw
            payload when it could not be decoded. Not part of to_dict().
    """
    status: OutcomeStatus
    assessment_id: str
    subject_id: Optional[str] = None
    result_id: Optional[str] = None
    error: Optional[IngestError] = None
    attempts: int = 0
    duration: float = 0.0
    counts: Dict[str, int] = field(default_factory=dict)
    event: Any = field(default=None, repr=False, compare=False)

    @property
    def ok(self) -> bool:
        return self.status is OutcomeStatus.SUCCEEDED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "assessment_id": self.assessment_id,
            "subject_id": self.subject_id,
            "result_id": self.result_id,
            "error": self.error.to_dict() if self.error else None,
            "attempts": self.attempts,
            "duration": self.duration,
            "counts": dict(self.counts),
        }


OutcomeSink = Callable[[IngestionOutcome], None]


def log_outcome(outcome: IngestionOutcome) -> None:
    """Default sink: one log line per event."""
    if outcome.ok:
        logger.info(
            "[ResultProcessor] Ingested assessment %s: result=%s subject=%s %s",
            outcome.assessment_id, outcome.result_id, outcome.subject_id, outcome.counts,
        )
    else:
        logger.error(
            "[ResultProcessor] Failed to ingest assessment %s after %d attempt(s): %s",
            outcome.assessment_id, outcome.attempts,
            outcome.error.to_dict() if outcome.error else "unknown error",
        )


class OutcomeLog:
    """Bounded in-memory record of recent outcomes."""

    def __init__(self, max_size: int = 1000):
        self._outcomes: Deque[IngestionOutcome] = deque(maxlen=max_size)
        self._lock = threading.Lock()

    def __call__(self, outcome: IngestionOutcome) -> None:
        with self._lock:
            self._outcomes.append(outcome)

    def __len__(self) -> int:
        with self._lock:
            return len(self._outcomes)

    def all(self) -> List[IngestionOutcome]:
        with self._lock:
            return list(self._outcomes)

    def failures(self) -> List[IngestionOutcome]:
        return [o for o in self.all() if not o.ok]

    def for_assessment(self, assessment_id: str) -> List[IngestionOutcome]:
        return [o for o in self.all() if o.assessment_id == assessment_id]
