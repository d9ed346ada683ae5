"""Structured error taxonomy for the ingestion service."""
#
# ERROR CODE FORMAT:
# - EVENT_XXX: Event source / decoding errors
# - BATCH_XXX: Batch construction errors
# - STORE_XXX: Persistence errors
# - CONFIG_XXX: Configuration errors
#
# USAGE:
#   from assessment_ingest.errors import PersistenceError
#
#   raise PersistenceError(
#       "save_result failed",
#       details={"assessment_id": "A1", "stage": "result"}
#   )
#
from __future__ import annotations

import json
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    # Event Errors
    EVENT_SUBSCRIPTION_FAILED = "EVENT_001"
    EVENT_DECODE_FAILED = "EVENT_002"

    # Batch Errors
    BATCH_MALFORMED = "BATCH_001"

    # Persistence Errors
    STORE_WRITE_FAILED = "STORE_001"
    STORE_TIMEOUT = "STORE_002"

    # Config Errors
    CONFIG_INVALID = "CONFIG_001"

    # System Errors
    SYSTEM_INTERNAL_ERROR = "SYSTEM_001"


class IngestError(Exception):
    """
    Base exception with structured error information.

    Attributes:
        code: ErrorCode enum value (e.g., "STORE_001")
        message: Human-readable error message
        details: Optional dictionary with additional context
    """

    default_code = ErrorCode.SYSTEM_INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        code: Optional[ErrorCode] = None,
    ):
        self.code = code or self.default_code
        self.message = message
        self.details = details or {}
        super().__init__(f"[{self.code.value}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "type": type(self).__name__,
            "message": self.message,
            "details": self.details,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


class SubscriptionError(IngestError):
    """Raised when the event source cannot establish a subscription. Fatal at startup."""

    default_code = ErrorCode.EVENT_SUBSCRIPTION_FAILED


class EventDecodeError(IngestError):
    """Raised when a raw payload cannot be decoded into an ExecutionResult."""

    default_code = ErrorCode.EVENT_DECODE_FAILED


class MalformedBatchError(IngestError):
    """Raised when the references inside one batch cannot be satisfied."""

    default_code = ErrorCode.BATCH_MALFORMED


class PersistenceError(IngestError):
    """Raised when saving a Subject or Result fails for a given event."""

    default_code = ErrorCode.STORE_WRITE_FAILED


class ConfigError(IngestError):
    """Raised when an environment value cannot be parsed."""

    default_code = ErrorCode.CONFIG_INVALID


def handle_error(error: BaseException, context: Optional[str] = None) -> IngestError:
    """
    Convert a generic exception to an IngestError.

    Args:
        error: The original exception
        context: Optional context string (e.g., "while saving subject")

    Returns:
        The error itself if already structured, otherwise a wrapped IngestError
    """
    if isinstance(error, IngestError):
        return error

    message = str(error) or type(error).__name__
    if context:
        message = f"{context}: {message}"

    return IngestError(
        message,
        details={
            "original_type": type(error).__name__,
            "original_message": str(error),
        },
    )


__all__ = [
    "ErrorCode",
    "IngestError",
    "SubscriptionError",
    "EventDecodeError",
    "MalformedBatchError",
    "PersistenceError",
    "ConfigError",
    "handle_error",
]
