from assessment_ingest.models.execution import (
    EvidenceInput,
    ExecutionResult,
    FindingInput,
    LogInput,
    ObservationInput,
    RiskInput,
    SubjectDescriptor,
    parse_execution_result,
)
from assessment_ingest.models.oscal import (
    Evidence,
    Finding,
    Link,
    LogEntry,
    Observation,
    Property,
    Result,
    Risk,
    Subject,
)

__all__ = [
    "EvidenceInput",
    "ExecutionResult",
    "FindingInput",
    "LogInput",
    "ObservationInput",
    "RiskInput",
    "SubjectDescriptor",
    "parse_execution_result",
    "Evidence",
    "Finding",
    "Link",
    "LogEntry",
    "Observation",
    "Property",
    "Result",
    "Risk",
    "Subject",
]
