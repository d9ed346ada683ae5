from assessment_ingest.ingest.builder import BatchBuilder, IngestionBatch, utc_now
from assessment_ingest.ingest.identity import new_id
from assessment_ingest.ingest.outcome import IngestionOutcome, OutcomeLog, OutcomeStatus, log_outcome
from assessment_ingest.ingest.policy import RiskLinkPolicy
from assessment_ingest.ingest.processor import ResultProcessor
from assessment_ingest.ingest.retry import RetryPolicy

__all__ = [
    "BatchBuilder",
    "IngestionBatch",
    "utc_now",
    "new_id",
    "IngestionOutcome",
    "OutcomeLog",
    "OutcomeStatus",
    "log_outcome",
    "RiskLinkPolicy",
    "ResultProcessor",
    "RetryPolicy",
]
