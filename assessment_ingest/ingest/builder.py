"""
Turns one ExecutionResult into the related set of records to persist.

The build is pure: identities come from the injected id factory, times from
the injected clock, and nothing is written. A batch whose references cannot
be satisfied is rejected here, before any persistence happens.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List

from assessment_ingest.errors import MalformedBatchError
from assessment_ingest.ingest.identity import IdFactory, new_id
from assessment_ingest.ingest.policy import RiskLinkPolicy
from assessment_ingest.models.execution import ExecutionResult, ObservationInput
from assessment_ingest.models.oscal import (
    Evidence,
    Finding,
    LogEntry,
    Observation,
    Result,
    Risk,
    Subject,
)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _described(item) -> dict:
    """Deep copies of the fields every OSCAL record shares."""
    return {
        "title": item.title,
        "description": item.description,
        "props": [p.model_copy(deep=True) for p in item.props],
        "links": [link.model_copy(deep=True) for link in item.links],
        "remarks": item.remarks,
    }


@dataclass
class IngestionBatch:
    assessment_id: str
    subject: Subject
    result: Result

    def identifiers(self) -> List[str]:
        return [self.subject.id] + self.result.identifiers()


class BatchBuilder:
    def __init__(
        self,
        id_factory: IdFactory = new_id,
        clock: Clock = utc_now,
        risk_policy: RiskLinkPolicy = RiskLinkPolicy.FIRST_OBSERVATION,
    ):
        self._new_id = id_factory
        self._clock = clock
        self.risk_policy = risk_policy

    def build(self, event: ExecutionResult) -> IngestionBatch:
        """
        Build the Subject and Result for one event.

        Raises:
            MalformedBatchError: if the event has risks but no observations
        """
        if event.risks and not event.observations:
            raise MalformedBatchError(
                "Risks present but batch has no observations to relate them to",
                details={
                    "assessment_id": event.assessment_id,
                    "risks": len(event.risks),
                    "observations": 0,
                },
            )

        now = self._clock()
        subject = self.build_subject(event)
        observations = [self.build_observation(o, subject) for o in event.observations]

        related = self.risk_policy.related_observations(observations) if event.risks else []
        risks = [
            Risk(
                id=self._new_id(),
                statement=r.statement,
                related_observations=list(related),
                **_described(r),
            )
            for r in event.risks
        ]

        findings = [
            Finding(
                id=self._new_id(),
                status=f.status,
                tasks=list(f.tasks),
                target_id=subject.id,
                **_described(f),
            )
            for f in event.findings
        ]

        # TODO: use the runtime's own start/end once the event carries them
        logs = [
            LogEntry(id=self._new_id(), start=now, end=now, **_described(entry))
            for entry in event.logs
        ]

        result = Result(
            id=self._new_id(),
            title=event.title,
            stream_id=event.stream_id,
            labels=dict(event.labels),
            start=now,
            end=now,
            observations=observations,
            risks=risks,
            findings=findings,
            logs=logs,
        )
        return IngestionBatch(assessment_id=event.assessment_id, subject=subject, result=result)

    def build_subject(self, event: ExecutionResult) -> Subject:
        descriptor = event.subject
        return Subject(
            id=self._new_id(),
            subject_id=descriptor.id,
            type=descriptor.type,
            **_described(descriptor),
        )

    def build_observation(self, source: ObservationInput, subject: Subject) -> Observation:
        evidence = [
            Evidence(id=self._new_id(), **_described(e))
            for e in source.relevant_evidence
        ]
        return Observation(
            id=self._new_id(),
            collected=source.collected,
            expires=source.expires,
            relevant_evidence=evidence,
            subjects=[subject.id],
            **_described(source),
        )
