"""
Wires a ResultProcessor from configuration.

Embedding API for applications that own the event source:

    bus = create_event_bus()
    service = IngestService(bus)
    await service.start()
    ...
    await service.stop()
"""

from __future__ import annotations

import logging
from typing import Optional

from assessment_ingest.base.config import IngestConfig, get_config
from assessment_ingest.data.db import Database
from assessment_ingest.data.store import PersistenceService
from assessment_ingest.events.bus import EventBus, EventSource
from assessment_ingest.ingest.outcome import OutcomeLog, log_outcome
from assessment_ingest.ingest.policy import RiskLinkPolicy
from assessment_ingest.ingest.processor import ResultProcessor
from assessment_ingest.ingest.retry import RetryPolicy

logger = logging.getLogger(__name__)


def create_event_bus(config: Optional[IngestConfig] = None) -> EventBus:
    """In-process event bus sized from the processor config."""
    cfg = config or get_config()
    return EventBus(queue_size=cfg.processor.queue_size)


class IngestService:
    def __init__(
        self,
        source: EventSource,
        config: Optional[IngestConfig] = None,
        persistence: Optional[PersistenceService] = None,
    ):
        self.config = config or get_config()
        pcfg = self.config.processor

        self._owns_database = persistence is None
        if persistence is None:
            persistence = Database(str(self.config.storage.db_path))
        self.persistence = persistence
        self.outcomes = OutcomeLog(max_size=pcfg.outcome_history)

        self.processor = ResultProcessor(
            source,
            self.persistence,
            topic=pcfg.topic,
            risk_policy=RiskLinkPolicy(pcfg.risk_link_policy),
            retry=RetryPolicy(
                attempts=pcfg.retry_attempts,
                backoff=pcfg.retry_backoff_seconds,
                max_backoff=pcfg.retry_max_backoff_seconds,
            ),
            persistence_timeout=pcfg.persistence_timeout_seconds,
            sinks=[log_outcome, self.outcomes],
        )

    @property
    def running(self) -> bool:
        return self.processor.running

    async def start(self) -> None:
        """Open storage, then subscribe. SubscriptionError propagates."""
        if isinstance(self.persistence, Database):
            await self.persistence.init()
        try:
            await self.processor.start()
        except Exception:
            if self._owns_database and isinstance(self.persistence, Database):
                await self.persistence.close()
            raise
        logger.info("[IngestService] Started.")

    async def stop(self, drain: Optional[bool] = None) -> None:
        if drain is None:
            drain = self.config.processor.drain_on_stop
        await self.processor.stop(drain=drain)
        if self._owns_database and isinstance(self.persistence, Database):
            await self.persistence.close()
        logger.info("[IngestService] Stopped.")
