"""Inbound event contract: one runtime's report for one assessment."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import Field, ValidationError, field_validator

from assessment_ingest.errors import EventDecodeError
from assessment_ingest.models.oscal import Described, OscalModel


class SubjectDescriptor(Described):
    id: str = ""
    type: str = ""


class EvidenceInput(Described):
    pass


class ObservationInput(Described):
    collected: Optional[datetime] = None
    expires: Optional[datetime] = None
    relevant_evidence: List[EvidenceInput] = Field(default_factory=list, alias="relevantEvidence")


class RiskInput(Described):
    statement: str = ""


class FindingInput(Described):
    status: Optional[str] = None
    # Task references the finding relates to, copied as given
    tasks: List[str] = Field(default_factory=list)


class LogInput(Described):
    pass


class ExecutionResult(OscalModel):
    assessment_id: str = Field(alias="assessmentId")
    title: str = ""
    stream_id: str = Field(default="", alias="streamId")
    labels: Dict[str, str] = Field(default_factory=dict)
    subject: SubjectDescriptor = Field(default_factory=SubjectDescriptor)
    observations: List[ObservationInput] = Field(default_factory=list)
    risks: List[RiskInput] = Field(default_factory=list)
    findings: List[FindingInput] = Field(default_factory=list)
    logs: List[LogInput] = Field(default_factory=list)

    @field_validator("assessment_id")
    @classmethod
    def validate_assessment_id(cls, v: str) -> str:
        v2 = v.strip()
        if not v2:
            raise ValueError("assessmentId must not be empty")
        return v2


RawMessage = Union[ExecutionResult, Dict[str, Any], str, bytes]


def parse_execution_result(message: RawMessage) -> ExecutionResult:
    """
    Decode a bus payload into an ExecutionResult.

    Accepts an already-built model, a mapping, or raw JSON text/bytes.

    Raises:
        EventDecodeError: if the payload is not valid JSON or fails validation
    """
    if isinstance(message, ExecutionResult):
        return message

    try:
        if isinstance(message, (str, bytes, bytearray)):
            data = json.loads(message)
        else:
            data = message
        return ExecutionResult.model_validate(data)
    except (ValueError, TypeError, ValidationError) as e:
        # json.JSONDecodeError and ValidationError are both ValueError subclasses
        raise EventDecodeError(
            "Could not decode execution result",
            details={"error": str(e), "payload_type": type(message).__name__},
        ) from e
