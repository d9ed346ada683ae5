"""
assessment_ingest/events/bus.py

Purpose:
    Topic-keyed, in-process event source.
    Each subscription owns a bounded asyncio queue and is consumed as an
    async iterator; publishing decodes raw payloads once per message.

Guarantees:
    - Ordered delivery within a single subscription.
    - A payload that fails to decode is logged and dropped, never delivered.
    - close() ends every open stream; subscribe() after close() fails.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Union, runtime_checkable

from assessment_ingest.errors import EventDecodeError, SubscriptionError
from assessment_ingest.models.execution import parse_execution_result
from assessment_ingest.utils.async_helpers import wait_first

logger = logging.getLogger(__name__)


class TopicType(str, Enum):
    RESULT = "job.result"
    PLAN = "runtime.configuration"


Topic = Union[TopicType, str]
Decoder = Callable[[Any], Any]


def topic_key(topic: Topic) -> str:
    return topic.value if isinstance(topic, TopicType) else str(topic)


@runtime_checkable
class EventStream(Protocol):
    """Async stream of decoded messages with an explicit close()."""

    def __aiter__(self) -> "EventStream": ...

    async def __anext__(self) -> Any: ...

    def close(self) -> None: ...


class EventSource(Protocol):
    """Anything the result processor can subscribe to."""

    async def subscribe(self, topic: Topic) -> EventStream: ...


class Subscription:
    """One consumer's view of a topic."""

    def __init__(self, bus: "EventBus", topic: str, maxsize: int):
        self.topic = topic
        self._bus = bus
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Any:
        if self.closed:
            raise StopAsyncIteration
        getter = asyncio.ensure_future(self._queue.get())
        if not await wait_first(getter, self._closed):
            raise StopAsyncIteration
        return getter.result()

    async def _deliver(self, message: Any) -> bool:
        """Queue ``message``, waiting for space unless the stream closes first."""
        if self.closed:
            return False
        putter = asyncio.ensure_future(self._queue.put(message))
        delivered = await wait_first(putter, self._closed)
        if self.closed:
            # A put that raced close() must not leave a message behind
            self._discard_buffer()
            return False
        return delivered

    def close(self) -> None:
        """Stop the stream. Buffered messages are discarded and blocked publishers return."""
        if self.closed:
            return
        self._closed.set()
        self._bus._unsubscribe(self)
        self._discard_buffer()

    def _discard_buffer(self) -> None:
        while not self._queue.empty():
            self._queue.get_nowait()


class EventBus:
    """
    In-process implementation of the EventSource contract.

    Payloads published on a topic with a registered decoder are decoded before
    delivery; other topics deliver the message object unchanged.
    """

    def __init__(
        self,
        queue_size: int = 1000,
        decoders: Optional[Mapping[Topic, Decoder]] = None,
    ):
        self._queue_size = queue_size
        self._subscribers: Dict[str, List[Subscription]] = defaultdict(list)
        self._closed = False

        if decoders is None:
            decoders = {TopicType.RESULT: parse_execution_result}
        self._decoders: Dict[str, Decoder] = {topic_key(t): d for t, d in decoders.items()}

    @property
    def closed(self) -> bool:
        return self._closed

    def subscriber_count(self, topic: Topic) -> int:
        return len(self._subscribers.get(topic_key(topic), []))

    async def subscribe(self, topic: Topic) -> Subscription:
        """
        Register a new stream for ``topic``.

        Raises:
            SubscriptionError: if the bus has been closed
        """
        key = topic_key(topic)
        if self._closed:
            raise SubscriptionError(
                f"Cannot subscribe to {key}: event bus is closed",
                details={"topic": key},
            )

        sub = Subscription(self, key, self._queue_size)
        self._subscribers[key].append(sub)
        logger.debug(f"[EventBus] Subscribed to {key}")
        return sub

    async def publish(self, topic: Topic, message: Any) -> int:
        """
        Decode and deliver ``message`` to every subscriber of ``topic``.

        Awaits queue space, so a slow consumer slows the publisher down.

        Returns:
            Number of subscriptions the message was delivered to
        """
        key = topic_key(topic)
        if self._closed:
            logger.debug(f"[EventBus] Dropping message for {key}: bus closed")
            return 0

        decoder = self._decoders.get(key)
        if decoder is not None:
            try:
                message = decoder(message)
            except EventDecodeError as e:
                logger.error(f"[EventBus] Error decoding message for {key}: {e}")
                return 0

        delivered = 0
        for sub in list(self._subscribers.get(key, [])):
            if await sub._deliver(message):
                delivered += 1
        return delivered

    def close(self) -> None:
        """Close every open subscription and refuse new ones."""
        if self._closed:
            return
        self._closed = True
        for subs in list(self._subscribers.values()):
            for sub in list(subs):
                sub.close()
        self._subscribers.clear()
        logger.info("[EventBus] Closed.")

    def _unsubscribe(self, sub: Subscription) -> None:
        subs = self._subscribers.get(sub.topic)
        if subs and sub in subs:
            subs.remove(sub)
