"""Module processor: the background consumer that ingests execution results."""
#
# PURPOSE:
# Subscribes once to the result topic and, for every event, builds the
# Subject / Observations / Risks / Findings / LogEntries / Result batch and
# persists it (Subject first, then Result).
#
# LOGIC:
# - One event at a time, fully processed before the next one is read.
# - Every event ends in an IngestionOutcome handed to the configured sinks.
#   Per-event failures (bad batch, storage errors) never end the loop.
# - stop(drain=True) finishes the in-flight event but ends its retries;
#   stop(drain=False) cancels it.
# - Only SubscriptionError escapes, and only from start()/run().
#

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Iterable, Optional

from assessment_ingest.data.store import PersistenceService
from assessment_ingest.errors import (
    ErrorCode,
    IngestError,
    PersistenceError,
    SubscriptionError,
    handle_error,
)
from assessment_ingest.events.bus import EventSource, EventStream, Topic, TopicType, topic_key
from assessment_ingest.ingest.builder import BatchBuilder, Clock, IngestionBatch, utc_now
from assessment_ingest.ingest.identity import IdFactory, new_id
from assessment_ingest.ingest.outcome import (
    IngestionOutcome,
    OutcomeSink,
    OutcomeStatus,
    log_outcome,
)
from assessment_ingest.ingest.policy import RiskLinkPolicy
from assessment_ingest.ingest.retry import RetryPolicy
from assessment_ingest.models.execution import parse_execution_result
from assessment_ingest.utils.async_helpers import create_safe_task, wait_first

logger = logging.getLogger(__name__)

_END_OF_STREAM = object()


async def _next_event(stream: EventStream) -> Any:
    try:
        return await stream.__anext__()
    except StopAsyncIteration:
        return _END_OF_STREAM


class ResultProcessor:
    """
    Drains execution results from an event source into a persistence service.

    Collaborators are injected; nothing is looked up globally.
    """

    def __init__(
        self,
        source: EventSource,
        persistence: PersistenceService,
        *,
        topic: Topic = TopicType.RESULT,
        risk_policy: RiskLinkPolicy = RiskLinkPolicy.FIRST_OBSERVATION,
        retry: Optional[RetryPolicy] = None,
        persistence_timeout: Optional[float] = 30.0,
        id_factory: IdFactory = new_id,
        clock: Clock = utc_now,
        sinks: Optional[Iterable[OutcomeSink]] = None,
    ):
        self._source = source
        self._persistence = persistence
        self._topic = topic_key(topic)
        self._retry = retry or RetryPolicy()
        self._persistence_timeout = persistence_timeout
        self._builder = BatchBuilder(id_factory=id_factory, clock=clock, risk_policy=risk_policy)
        self._sinks = list(sinks) if sinks is not None else [log_outcome]

        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._stream: Optional[EventStream] = None

        self.processed = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def risk_policy(self) -> RiskLinkPolicy:
        return self._builder.risk_policy

    def add_sink(self, sink: OutcomeSink) -> None:
        self._sinks.append(sink)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """
        Subscribe and spawn the background consumption task.

        Raises:
            SubscriptionError: if the event source refuses the subscription
            RuntimeError: if the processor was already started
        """
        if self._task is not None:
            raise RuntimeError("ResultProcessor already started")
        await self._subscribe()
        self._task = create_safe_task(self._consume(), name="result_processor")

    async def run(self) -> None:
        """Subscribe and consume in the current task until stopped or the stream ends."""
        await self._subscribe()
        await self._consume()

    async def stop(self, drain: bool = True) -> None:
        """
        Stop consuming.

        drain=True lets the in-flight event finish (both persistence calls),
        then exits without reading another event. drain=False cancels the
        task at once and abandons the in-flight event.
        """
        self._stop.set()
        task = self._task
        if task is not None and not task.done():
            if not drain:
                task.cancel()
            # asyncio.wait does not re-raise the task's cancellation
            await asyncio.wait({task})
        self._close_stream()
        logger.info(
            f"[ResultProcessor] Stopped (drain={drain}, processed={self.processed}, failed={self.failed})"
        )

    async def _subscribe(self) -> None:
        try:
            self._stream = await self._source.subscribe(self._topic)
        except SubscriptionError:
            raise
        except Exception as e:
            raise SubscriptionError(
                f"Could not subscribe to {self._topic}: {e}",
                details={"topic": self._topic},
            ) from e
        logger.info(f"[ResultProcessor] Subscribed to {self._topic}")

    def _close_stream(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        close = getattr(stream, "close", None)
        if callable(close):
            close()

    async def _consume(self) -> None:
        stream = self._stream
        try:
            while not self._stop.is_set():
                receiver = asyncio.ensure_future(_next_event(stream))
                if not await wait_first(receiver, self._stop):
                    break
                event = receiver.result()
                if event is _END_OF_STREAM:
                    logger.info(f"[ResultProcessor] Stream for {self._topic} ended")
                    break
                await self.process(event)
        finally:
            self._close_stream()

    # ------------------------------------------------------------------
    # Per-event pipeline
    # ------------------------------------------------------------------

    async def process(self, event: Any) -> IngestionOutcome:
        """
        Build and persist the batch for one event.

        Never raises for per-event failures; the returned outcome (also sent
        to every sink) carries the error and the event instead.
        """
        started = time.monotonic()
        if isinstance(event, dict):
            assessment_id = event.get("assessmentId") or event.get("assessment_id") or "unknown"
        else:
            assessment_id = getattr(event, "assessment_id", None) or "unknown"
        batch: Optional[IngestionBatch] = None
        attempts = 0

        try:
            event = parse_execution_result(event)
            assessment_id = event.assessment_id
            logger.debug(f"[ResultProcessor] Received result for assessment {assessment_id}")

            batch = self._builder.build(event)
            attempts += await self._persist(
                "subject", assessment_id, lambda: self._persistence.save_subject(batch.subject)
            )
            attempts += await self._persist(
                "result", assessment_id,
                lambda: self._persistence.save_result(batch.assessment_id, batch.result),
            )
            outcome = IngestionOutcome(
                status=OutcomeStatus.SUCCEEDED,
                assessment_id=assessment_id,
                subject_id=batch.subject.id,
                result_id=batch.result.id,
                attempts=attempts,
                event=event,
            )
        except IngestError as e:
            outcome = self._failure(event, assessment_id, batch, e, attempts)
        except Exception as e:
            logger.exception(f"[ResultProcessor] Unexpected error for assessment {assessment_id}")
            outcome = self._failure(
                event, assessment_id, batch, handle_error(e, "while ingesting result"), attempts
            )

        outcome.duration = time.monotonic() - started
        if batch is not None:
            outcome.counts = {
                "observations": len(batch.result.observations),
                "evidence": sum(len(o.relevant_evidence) for o in batch.result.observations),
                "risks": len(batch.result.risks),
                "findings": len(batch.result.findings),
                "logs": len(batch.result.logs),
            }

        self.processed += 1
        if not outcome.ok:
            self.failed += 1
        self._emit(outcome)
        return outcome

    def _failure(
        self,
        event: Any,
        assessment_id: str,
        batch: Optional[IngestionBatch],
        error: IngestError,
        prior_attempts: int,
    ) -> IngestionOutcome:
        # prior_attempts: attempts of stages that already succeeded
        return IngestionOutcome(
            status=OutcomeStatus.FAILED,
            assessment_id=assessment_id,
            subject_id=batch.subject.id if batch else None,
            result_id=batch.result.id if batch else None,
            error=error,
            attempts=prior_attempts + error.details.get("attempts", 0),
            event=event,
        )

    async def _persist(
        self, stage: str, assessment_id: str, call: Callable[[], Awaitable[None]]
    ) -> int:
        """
        Run one persistence call under the timeout and retry policy.

        A stop request ends the retries: the backoff wait races the stop
        signal and no further attempt starts once it is set.

        Returns:
            The number of attempts it took

        Raises:
            PersistenceError: once every allowed attempt has failed
        """
        attempt = 0
        while True:
            attempt += 1
            code = ErrorCode.STORE_WRITE_FAILED
            try:
                await asyncio.wait_for(call(), timeout=self._persistence_timeout)
                return attempt
            except asyncio.TimeoutError as e:
                cause: BaseException = e
                reason = f"timed out after {self._persistence_timeout}s"
                code = ErrorCode.STORE_TIMEOUT
            except Exception as e:
                cause = e
                reason = str(e) or type(e).__name__

            stopped = False
            if self._retry.should_retry(attempt):
                if not self._stop.is_set():
                    delay = self._retry.delay(attempt)
                    logger.warning(
                        f"[ResultProcessor] save_{stage} attempt {attempt}/{self._retry.attempts} "
                        f"failed for assessment {assessment_id} ({reason}); retrying in {delay:.2f}s"
                    )
                    backoff = asyncio.ensure_future(asyncio.sleep(delay))
                    if await wait_first(backoff, self._stop):
                        continue
                stopped = True

            if stopped:
                reason = f"{reason}; not retried, processor stopping"
            raise PersistenceError(
                f"save_{stage} failed for assessment {assessment_id}: {reason}",
                details={
                    "assessment_id": assessment_id,
                    "stage": stage,
                    "attempts": attempt,
                    "original_type": type(cause).__name__,
                    "stopped": stopped,
                },
                code=code,
            ) from cause

    def _emit(self, outcome: IngestionOutcome) -> None:
        for sink in self._sinks:
            try:
                sink(outcome)
            except Exception as e:
                name = getattr(sink, "__name__", type(sink).__name__)
                logger.error(f"[ResultProcessor] Outcome sink {name} failed: {e}")
