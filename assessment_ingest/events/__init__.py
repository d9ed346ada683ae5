from assessment_ingest.events.bus import (
    EventBus,
    EventSource,
    EventStream,
    Subscription,
    TopicType,
    topic_key,
)

__all__ = [
    "EventBus",
    "EventSource",
    "EventStream",
    "Subscription",
    "TopicType",
    "topic_key",
]
