from filters.codec import EventCodec, MessageShapeError, load_event_schemas
from filters.driver import SubscriptionDriver
from filters.orchestrator import ListenerOrchestrator, create_orchestrator
from filters.registry import FilterRegistry

__all__ = [
    "EventCodec",
    "FilterRegistry",
    "ListenerOrchestrator",
    "MessageShapeError",
    "SubscriptionDriver",
    "create_orchestrator",
    "load_event_schemas",
]
