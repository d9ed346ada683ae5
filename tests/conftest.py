"""Pytest configuration for the ingestion service."""
import asyncio
import copy
import os

import pytest

from assessment_ingest.base.config import set_config
from assessment_ingest.data.store import MemoryStore


def pytest_configure():
    # Keep test runs from writing into the real home directory.
    os.environ.setdefault("INGEST_LOG_FILE", "false")


@pytest.fixture(autouse=True)
def reset_config():
    set_config(None)
    yield
    set_config(None)


SERVER_EVENT = {
    "assessmentId": "A1",
    "subject": {"id": "s1", "title": "Server"},
    "observations": [{"title": "obs1"}],
    "risks": [{"title": "risk1"}],
    "findings": [{"title": "find1"}],
    "logs": [{"title": "log1"}],
}


@pytest.fixture
def make_event():
    """Factory for raw event payloads; keyword arguments replace top-level keys."""
    def _make(**overrides):
        payload = copy.deepcopy(SERVER_EVENT)
        payload.update(overrides)
        return payload
    return _make


@pytest.fixture
def store():
    return MemoryStore()


class FlakyStore(MemoryStore):
    """MemoryStore that fails selected calls.

    fail_subject / fail_result: how many calls of that kind fail before
    succeeding (-1 fails forever). delay: seconds every call sleeps first.
    """

    def __init__(self, fail_subject=0, fail_result=0, delay=0.0, fail_for=None):
        super().__init__()
        self.fail_subject = fail_subject
        self.fail_result = fail_result
        self.delay = delay
        self.fail_for = set(fail_for or [])
        self.subject_calls = 0
        self.result_calls = 0

    async def save_subject(self, subject):
        self.subject_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_subject:
            self.fail_subject -= 1
            raise ConnectionError("subject store unavailable")
        await super().save_subject(subject)

    async def save_result(self, assessment_id, result):
        self.result_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if assessment_id in self.fail_for:
            raise ConnectionError(f"cannot store results for {assessment_id}")
        if self.fail_result:
            self.fail_result -= 1
            raise ConnectionError("result store unavailable")
        await super().save_result(assessment_id, result)


@pytest.fixture
def flaky_store():
    return FlakyStore
