"""
Integration tests for the result processor.

Drives a real EventBus into in-memory stores and verifies:
1. The end-to-end batch for one event.
2. Per-event failures never stop the loop.
3. Retry, timeout and shutdown (drain vs. abandon) behavior.
"""
import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from assessment_ingest.data.store import MemoryStore
from assessment_ingest.errors import ErrorCode, SubscriptionError
from assessment_ingest.events.bus import EventBus, TopicType
from assessment_ingest.ingest.outcome import OutcomeLog, OutcomeStatus
from assessment_ingest.ingest.policy import RiskLinkPolicy
from assessment_ingest.ingest.processor import ResultProcessor
from assessment_ingest.ingest.retry import RetryPolicy


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def make_processor(bus, store, **kwargs):
    outcomes = OutcomeLog()
    kwargs.setdefault("retry", RetryPolicy.no_retry())
    processor = ResultProcessor(bus, store, sinks=[outcomes], **kwargs)
    return processor, outcomes


@pytest.mark.asyncio
async def test_end_to_end_batch(store, make_event):
    bus = EventBus()
    processor, outcomes = make_processor(bus, store)
    await processor.start()
    try:
        await bus.publish(TopicType.RESULT, make_event())
        await wait_until(lambda: len(outcomes) == 1)
    finally:
        await processor.stop()

    outcome = outcomes.all()[0]
    assert outcome.status is OutcomeStatus.SUCCEEDED
    assert outcome.counts == {"observations": 1, "evidence": 0, "risks": 1, "findings": 1, "logs": 1}

    [subject] = store.subjects
    assert subject.title == "Server"
    assert subject.id != "s1"
    assert outcome.subject_id == subject.id

    [result] = store.get_results("A1")
    assert result.id == outcome.result_id
    obs, risk, finding, entry = result.observations[0], result.risks[0], result.findings[0], result.logs[0]
    assert (obs.title, risk.title, finding.title, entry.title) == ("obs1", "risk1", "find1", "log1")
    assert obs.subjects == [subject.id]
    assert risk.related_observations == [obs.id]
    assert finding.target_id == subject.id
    ids = [subject.id, result.id, obs.id, risk.id, finding.id, entry.id]
    assert len(set(ids)) == len(ids)


@pytest.mark.asyncio
async def test_raw_json_payloads_are_ingested(store, make_event):
    bus = EventBus()
    processor, outcomes = make_processor(bus, store)
    await processor.start()
    try:
        await bus.publish(TopicType.RESULT, json.dumps(make_event(assessmentId="A-text")))
        await bus.publish(TopicType.RESULT, json.dumps(make_event(assessmentId="A-bytes")).encode())
        await wait_until(lambda: len(outcomes) == 2)
    finally:
        await processor.stop()

    assert [o.assessment_id for o in outcomes.all()] == ["A-text", "A-bytes"]
    assert all(o.ok for o in outcomes.all())


@pytest.mark.asyncio
async def test_malformed_batch_does_not_stop_the_loop(store, make_event):
    bus = EventBus()
    processor, outcomes = make_processor(bus, store)
    await processor.start()
    try:
        await bus.publish(TopicType.RESULT, make_event(assessmentId="bad", observations=[]))
        await bus.publish(TopicType.RESULT, make_event(assessmentId="good"))
        await wait_until(lambda: len(outcomes) == 2)
    finally:
        await processor.stop()

    bad, good = outcomes.all()
    assert bad.error.code is ErrorCode.BATCH_MALFORMED
    assert bad.event.assessment_id == "bad"
    assert bad.event.risks[0].title == "risk1"
    assert good.event.assessment_id == "good"
    assert good.ok
    # Nothing is written for a rejected batch
    assert len(store.subjects) == 1
    assert store.get_results("bad") == []
    assert processor.processed == 2
    assert processor.failed == 1


@pytest.mark.asyncio
async def test_persistence_failure_is_reported_and_loop_continues(flaky_store, make_event):
    store = flaky_store(fail_for=["A-fail"])
    bus = EventBus()
    processor, outcomes = make_processor(bus, store)
    await processor.start()
    try:
        await bus.publish(TopicType.RESULT, make_event(assessmentId="A-fail"))
        await bus.publish(TopicType.RESULT, make_event(assessmentId="A-ok"))
        await wait_until(lambda: len(outcomes) == 2)
    finally:
        await processor.stop()

    failed, ok = outcomes.all()
    assert failed.status is OutcomeStatus.FAILED
    assert failed.error.code is ErrorCode.STORE_WRITE_FAILED
    assert failed.error.details["stage"] == "result"
    assert failed.error.details["assessment_id"] == "A-fail"
    # The subject written before the failure stays behind
    assert store.get_subject(failed.subject_id) is not None
    assert ok.ok
    assert store.get_results("A-ok") != []


@pytest.mark.asyncio
async def test_transient_failures_are_retried(flaky_store, make_event):
    store = flaky_store(fail_subject=1, fail_result=2)
    bus = EventBus()
    processor, outcomes = make_processor(
        bus, store, retry=RetryPolicy(attempts=3, backoff=0.0, max_backoff=0.0)
    )

    outcome = await processor.process(make_event())

    assert outcome.ok
    # Both calls count: 2 for the subject, 3 for the result
    assert outcome.attempts == 5
    assert store.subject_calls == 2
    assert store.result_calls == 3
    assert len(store.get_results("A1")) == 1
    assert outcomes.all() == [outcome]


@pytest.mark.asyncio
async def test_retries_are_bounded(flaky_store, make_event):
    store = flaky_store(fail_subject=-1)
    processor, _ = make_processor(
        EventBus(), store, retry=RetryPolicy(attempts=2, backoff=0.0, max_backoff=0.0)
    )

    outcome = await processor.process(make_event())

    assert not outcome.ok
    assert outcome.attempts == 2
    assert outcome.error.details["stage"] == "subject"
    assert outcome.error.details["original_type"] == "ConnectionError"
    assert store.result_calls == 0


@pytest.mark.asyncio
async def test_slow_persistence_times_out(flaky_store, make_event):
    store = flaky_store(delay=1.0)
    processor, _ = make_processor(EventBus(), store, persistence_timeout=0.05)

    outcome = await processor.process(make_event())

    assert outcome.error.code is ErrorCode.STORE_TIMEOUT
    assert store.subjects == []


@pytest.mark.asyncio
async def test_undecodable_event_yields_failed_outcome(store):
    processor, outcomes = make_processor(EventBus(), store)

    outcome = await processor.process({"assessmentId": "A9", "observations": "nope"})

    assert outcome.error.code is ErrorCode.EVENT_DECODE_FAILED
    assert outcome.event == {"assessmentId": "A9", "observations": "nope"}
    assert outcome.assessment_id == "A9"
    assert outcome.subject_id is None
    assert outcomes.failures() == [outcome]


@pytest.mark.asyncio
async def test_replayed_event_gets_fresh_identities(store, make_event):
    bus = EventBus()
    processor, outcomes = make_processor(bus, store)
    await processor.start()
    try:
        await bus.publish(TopicType.RESULT, make_event())
        await bus.publish(TopicType.RESULT, make_event())
        await wait_until(lambda: len(outcomes) == 2)
    finally:
        await processor.stop()

    first, second = store.get_results("A1")
    assert set(first.identifiers()).isdisjoint(second.identifiers())
    assert len(store.subjects) == 2


@pytest.mark.asyncio
async def test_all_observations_policy(store, make_event):
    processor, _ = make_processor(
        EventBus(), store, risk_policy=RiskLinkPolicy.ALL_OBSERVATIONS
    )
    await processor.process(make_event(observations=[{"title": "a"}, {"title": "b"}]))

    [result] = store.get_results("A1")
    assert result.risks[0].related_observations == [o.id for o in result.observations]


@pytest.mark.asyncio
async def test_failing_sink_does_not_break_processing(store, make_event):
    def broken(outcome):
        raise RuntimeError("sink down")

    seen = []
    processor = ResultProcessor(EventBus(), store, sinks=[broken, seen.append])

    outcome = await processor.process(make_event())

    assert outcome.ok
    assert seen == [outcome]


@pytest.mark.asyncio
async def test_subscription_error_on_closed_bus(store):
    bus = EventBus()
    bus.close()
    processor, _ = make_processor(bus, store)

    with pytest.raises(SubscriptionError):
        await processor.start()
    assert not processor.running


@pytest.mark.asyncio
async def test_source_failures_are_wrapped_as_subscription_errors(store):
    class BrokenSource:
        async def subscribe(self, topic):
            raise ConnectionError("broker unreachable")

    processor, _ = make_processor(BrokenSource(), store)

    with pytest.raises(SubscriptionError) as exc:
        await processor.run()
    assert exc.value.details == {"topic": "job.result"}


@pytest.mark.asyncio
async def test_start_twice_is_rejected(store):
    processor, _ = make_processor(EventBus(), store)
    await processor.start()
    try:
        with pytest.raises(RuntimeError):
            await processor.start()
    finally:
        await processor.stop()


@pytest.mark.asyncio
async def test_stop_with_drain_finishes_in_flight_event(flaky_store, make_event):
    store = flaky_store(delay=0.1)
    bus = EventBus()
    processor, outcomes = make_processor(bus, store)
    await processor.start()

    await bus.publish(TopicType.RESULT, make_event(assessmentId="first"))
    await bus.publish(TopicType.RESULT, make_event(assessmentId="second"))
    await wait_until(lambda: store.subject_calls == 1)

    await processor.stop(drain=True)

    assert not processor.running
    assert [o.assessment_id for o in outcomes.all()] == ["first"]
    assert len(store.get_results("first")) == 1
    # The queued event is never read
    assert store.get_results("second") == []


@pytest.mark.asyncio
async def test_stop_without_drain_abandons_in_flight_event(flaky_store, make_event):
    store = flaky_store(delay=1.0)
    bus = EventBus()
    processor, outcomes = make_processor(bus, store)
    await processor.start()

    await bus.publish(TopicType.RESULT, make_event())
    await wait_until(lambda: store.subject_calls == 1)

    await asyncio.wait_for(processor.stop(drain=False), timeout=0.5)

    assert not processor.running
    assert len(outcomes) == 0
    assert processor.processed == 0
    assert store.get_results() == []


@pytest.mark.asyncio
async def test_idle_stop_returns_promptly(store):
    bus = EventBus()
    processor, _ = make_processor(bus, store)
    await processor.start()

    await asyncio.wait_for(processor.stop(), timeout=0.5)

    assert not processor.running
    assert bus.subscriber_count(TopicType.RESULT) == 0


@pytest.mark.asyncio
async def test_run_returns_when_stream_ends(store, make_event):
    bus = EventBus()
    processor, outcomes = make_processor(bus, store)
    runner = asyncio.create_task(processor.run())
    await wait_until(lambda: bus.subscriber_count(TopicType.RESULT) == 1)

    await bus.publish(TopicType.RESULT, make_event())
    await wait_until(lambda: len(outcomes) == 1)
    bus.close()

    await asyncio.wait_for(runner, timeout=1.0)
    assert processor.processed == 1


@pytest.mark.asyncio
async def test_subject_is_saved_before_result(make_event):
    persistence = AsyncMock()
    calls = []
    persistence.save_subject.side_effect = lambda subject: calls.append("subject")
    persistence.save_result.side_effect = lambda aid, result: calls.append("result")
    processor, _ = make_processor(EventBus(), persistence)

    outcome = await processor.process(make_event())

    assert outcome.ok
    assert calls == ["subject", "result"]
    saved_subject = persistence.save_subject.await_args.args[0]
    assessment_id, saved_result = persistence.save_result.await_args.args
    assert assessment_id == "A1"
    assert saved_subject.id == outcome.subject_id
    assert saved_result.id == outcome.result_id


@pytest.mark.asyncio
async def test_result_failure_counts_subject_attempts_too(flaky_store, make_event):
    store = flaky_store(fail_subject=1, fail_result=-1)
    processor, _ = make_processor(
        EventBus(), store, retry=RetryPolicy(attempts=2, backoff=0.0, max_backoff=0.0)
    )

    outcome = await processor.process(make_event())

    assert outcome.error.details["stage"] == "result"
    assert outcome.attempts == 4


@pytest.mark.asyncio
async def test_stop_ends_retries_of_in_flight_event(flaky_store, make_event):
    store = flaky_store(fail_subject=-1)
    bus = EventBus()
    processor, outcomes = make_processor(
        bus, store, retry=RetryPolicy(attempts=4, backoff=0.5, max_backoff=5.0)
    )
    await processor.start()

    await bus.publish(TopicType.RESULT, make_event())
    await wait_until(lambda: store.subject_calls == 1)

    # The first attempt has failed; the processor is waiting out its backoff
    await asyncio.wait_for(processor.stop(drain=True), timeout=0.3)

    assert store.subject_calls == 1
    [outcome] = outcomes.all()
    assert outcome.error.code is ErrorCode.STORE_WRITE_FAILED
    assert outcome.error.details["stopped"] is True
    assert outcome.attempts == 1
    assert outcome.event.assessment_id == "A1"


@pytest.mark.asyncio
async def test_stop_under_backpressure_releases_publishers(make_event):
    bus = EventBus(queue_size=1)
    processor, _ = make_processor(bus, MemoryStore())
    await processor.start()

    publishers = [
        asyncio.create_task(bus.publish(TopicType.RESULT, make_event(assessmentId=f"A{i}")))
        for i in range(5)
    ]
    await asyncio.sleep(0)
    await processor.stop(drain=True)

    _, pending = await asyncio.wait(publishers, timeout=1.0)
    assert pending == set()
