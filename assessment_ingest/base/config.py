# ============================================================================
# assessment_ingest/base/config.py
# Application Configuration Management
# ============================================================================
#
# PURPOSE:
# Defines the settings for the ingestion service: where records are stored,
# how the result processor behaves, and how logging is set up.
#
# KEY CONCEPTS:
# 1. Frozen dataclasses per concern (storage, processor, log)
# 2. Environment variables with the INGEST_ prefix override defaults
# 3. One process-wide config via get_config() / set_config()
#
# ============================================================================

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from assessment_ingest.errors import ConfigError

logger = logging.getLogger(__name__)


# ============================================================================
# File Storage Configuration
# ============================================================================

@dataclass(frozen=True)
class StorageConfig:
    # Base directory for the SQLite database and log files
    base_dir: Path = field(default_factory=lambda: Path.home() / ".assessment-ingest")

    # Name of the SQLite database file (subjects and results)
    db_name: str = "ingest.db"

    @property
    def db_path(self) -> Path:
        return self.base_dir / self.db_name


# ============================================================================
# Result Processor Configuration
# ============================================================================

@dataclass(frozen=True)
class ProcessorConfig:
    # Topic the processor subscribes to on the event source
    topic: str = "job.result"

    # How risks are linked to observations: "first" or "all"
    risk_link_policy: str = "first"

    # Upper bound for a single persistence call (seconds)
    persistence_timeout_seconds: float = 30.0

    # Persistence attempts per call, including the first one
    retry_attempts: int = 3

    # Exponential backoff base and cap between attempts (seconds)
    retry_backoff_seconds: float = 0.5
    retry_max_backoff_seconds: float = 5.0

    # stop() lets the in-flight event finish when True, abandons it when False
    drain_on_stop: bool = True

    # How many outcomes the in-memory outcome log keeps
    outcome_history: int = 1000

    # Per-subscription buffer of the in-process event bus
    queue_size: int = 1000


# ============================================================================
# Logging Configuration
# ============================================================================

@dataclass(frozen=True)
class LogConfig:
    level: str = "INFO"
    format: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    file_enabled: bool = False
    file_name: str = "ingest.log"
    max_file_size_mb: int = 10
    backup_count: int = 5


# ============================================================================
# Master Configuration Container
# ============================================================================

def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


def _env_number(name: str, default: str, cast):
    raw = os.getenv(name, default)
    try:
        return cast(raw)
    except ValueError as e:
        raise ConfigError(
            f"Invalid value for {name}: {raw!r}",
            details={"variable": name, "value": raw},
        ) from e


def _check(name: str, value, valid: bool, rule: str):
    if not valid:
        raise ConfigError(
            f"Invalid value for {name}: {value!r} ({rule})",
            details={"variable": name, "value": str(value), "rule": rule},
        )
    return value


@dataclass
class IngestConfig:
    storage: StorageConfig = field(default_factory=StorageConfig)
    processor: ProcessorConfig = field(default_factory=ProcessorConfig)
    log: LogConfig = field(default_factory=LogConfig)

    # Debug mode: forces DEBUG log level
    debug: bool = False

    @classmethod
    def from_env(cls) -> "IngestConfig":
        """Build a config from INGEST_* environment variables."""
        base_dir = Path(os.getenv("INGEST_DATA_DIR", str(Path.home() / ".assessment-ingest")))
        storage = StorageConfig(
            base_dir=base_dir,
            db_name=os.getenv("INGEST_DB_NAME", "ingest.db"),
        )

        policy = os.getenv("INGEST_RISK_POLICY", "first").strip().lower()
        if policy not in ("first", "all"):
            raise ConfigError(
                f"Unknown risk link policy: {policy!r}",
                details={"variable": "INGEST_RISK_POLICY", "value": policy},
            )

        timeout = _env_number("INGEST_PERSIST_TIMEOUT", "30", float)
        attempts = _env_number("INGEST_RETRY_ATTEMPTS", "3", int)
        backoff = _env_number("INGEST_RETRY_BACKOFF", "0.5", float)
        max_backoff = _env_number("INGEST_RETRY_MAX_BACKOFF", "5", float)
        history = _env_number("INGEST_OUTCOME_HISTORY", "1000", int)
        queue_size = _env_number("INGEST_QUEUE_SIZE", "1000", int)

        processor = ProcessorConfig(
            topic=os.getenv("INGEST_TOPIC", "job.result"),
            risk_link_policy=policy,
            persistence_timeout_seconds=_check("INGEST_PERSIST_TIMEOUT", timeout, timeout > 0, "must be > 0"),
            retry_attempts=_check("INGEST_RETRY_ATTEMPTS", attempts, attempts >= 1, "must be >= 1"),
            retry_backoff_seconds=_check("INGEST_RETRY_BACKOFF", backoff, backoff >= 0, "must be >= 0"),
            retry_max_backoff_seconds=_check(
                "INGEST_RETRY_MAX_BACKOFF", max_backoff, max_backoff >= 0, "must be >= 0"
            ),
            drain_on_stop=_env_bool("INGEST_DRAIN_ON_STOP", "true"),
            outcome_history=_check("INGEST_OUTCOME_HISTORY", history, history >= 1, "must be >= 1"),
            # 0 means an unbounded bus queue
            queue_size=_check("INGEST_QUEUE_SIZE", queue_size, queue_size >= 0, "must be >= 0"),
        )

        log = LogConfig(
            level=os.getenv("INGEST_LOG_LEVEL", "INFO"),
            file_enabled=_env_bool("INGEST_LOG_FILE", "false"),
        )

        return cls(
            storage=storage,
            processor=processor,
            log=log,
            debug=_env_bool("INGEST_DEBUG", "false"),
        )


# ============================================================================
# Global Configuration Singleton
# ============================================================================

_config: Optional[IngestConfig] = None


def get_config() -> IngestConfig:
    """
    Get the global configuration instance.

    Loaded from the environment on first use, then reused.
    """
    global _config
    if _config is None:
        _config = IngestConfig.from_env()
    return _config


def set_config(config: Optional[IngestConfig]) -> None:
    """Replace the global configuration (mainly used for testing). None resets it."""
    global _config
    _config = config


def setup_logging(config: Optional[IngestConfig] = None) -> None:
    """
    Configure Python's logging system based on our settings.

    Sets up console logging and, when enabled, a rotating log file in the
    data directory. Call this once at application startup.
    """
    cfg = config or get_config()

    handlers: List[logging.Handler] = [logging.StreamHandler()]

    if cfg.log.file_enabled:
        from logging.handlers import RotatingFileHandler
        cfg.storage.base_dir.mkdir(parents=True, exist_ok=True)
        log_path = cfg.storage.base_dir / cfg.log.file_name
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=cfg.log.max_file_size_mb * 1024 * 1024,
            backupCount=cfg.log.backup_count,
        )
        handlers.append(file_handler)

    level = "DEBUG" if cfg.debug else cfg.log.level.upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format=cfg.log.format,
        handlers=handlers,
        force=True,
    )
