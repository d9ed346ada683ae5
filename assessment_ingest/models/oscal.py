"""
Canonical OSCAL-derived record shapes produced by the ingestion pipeline.

These are pure data contracts. Python attributes are snake_case; JSON uses the
camelCase aliases (dump with ``by_alias=True``). Every entity identifier is
assigned at ingestion time, never taken from the runtime.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class OscalModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class Property(OscalModel):
    name: str = ""
    value: str = ""
    class_: str = Field(default="", alias="class")
    group: str = ""
    ns: str = ""
    remarks: str = ""


class Link(OscalModel):
    href: str = ""
    media_type: str = Field(default="", alias="mediaType")
    rel: str = ""
    resource_fragment: str = Field(default="", alias="resourceFragment")
    text: str = ""


class Described(OscalModel):
    """Fields shared by every OSCAL record."""
    title: str = ""
    description: str = ""
    props: List[Property] = Field(default_factory=list)
    links: List[Link] = Field(default_factory=list)
    remarks: str = ""


class Subject(Described):
    id: str
    # Identifier the runtime used for this subject; correlation only.
    subject_id: str = Field(default="", alias="subjectId")
    type: str = ""


class Evidence(Described):
    id: str


class Observation(Described):
    id: str
    collected: Optional[datetime] = None
    expires: Optional[datetime] = None
    relevant_evidence: List[Evidence] = Field(default_factory=list, alias="relevantEvidence")
    subjects: List[str] = Field(default_factory=list)


class Risk(Described):
    id: str
    statement: str = ""
    related_observations: List[str] = Field(default_factory=list, alias="relatedObservations")


class Finding(Described):
    id: str
    status: Optional[str] = None
    tasks: List[str] = Field(default_factory=list)
    target_id: str = Field(alias="targetId")


class LogEntry(Described):
    id: str
    start: datetime
    end: datetime


class Result(OscalModel):
    """Aggregate root for one ingested event."""
    id: str
    title: str = ""
    stream_id: str = Field(default="", alias="streamId")
    labels: Dict[str, str] = Field(default_factory=dict)
    start: datetime
    end: datetime
    observations: List[Observation] = Field(default_factory=list)
    risks: List[Risk] = Field(default_factory=list)
    findings: List[Finding] = Field(default_factory=list)
    logs: List[LogEntry] = Field(default_factory=list)

    def identifiers(self) -> List[str]:
        """Every identifier owned by this result, including nested evidence."""
        ids = [self.id]
        for observation in self.observations:
            ids.append(observation.id)
            ids.extend(e.id for e in observation.relevant_evidence)
        ids.extend(r.id for r in self.risks)
        ids.extend(f.id for f in self.findings)
        ids.extend(entry.id for entry in self.logs)
        return ids
