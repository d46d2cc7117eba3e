"""Synchronous event bus for store and ingestion events.

The resource store emits ResourceAdmitted for new rows only and the
ingestion manager emits EntryIssue for errored units. Lineage indexers,
pipeline stages and reporting hooks subscribe without the emitters knowing
about them.

Admissions run on ingest worker threads, so subscription changes and
dispatch may happen concurrently. Dispatch iterates a snapshot taken under
the lock; a handler added mid-emit sees the next event, not the current one.
"""

from collections.abc import Callable
from threading import Lock
from typing import Any, Protocol, TypeVar

T = TypeVar("T")


class EventBusProtocol(Protocol):
    """Protocol for event bus implementations.

    EventBus and NullEventBus satisfy it without inheritance.
    """

    def subscribe(self, event_type: type[T], handler: Callable[[T], None]) -> None:
        """Subscribe a handler to an event type."""
        ...

    def unsubscribe(self, event_type: type[T], handler: Callable[[T], None]) -> bool:
        """Remove a handler; False when it was not subscribed."""
        ...

    def emit(self, event: T) -> None:
        """Emit an event to all subscribers."""
        ...


class EventBus:
    """Thread-safe synchronous event bus.

    Handlers run on the emitting thread in subscription order, keyed by the
    exact event type. Handler exceptions propagate to the emitter; a failing
    indexer aborts the ingest that triggered it instead of leaving lineage
    silently incomplete.

    Example:
        bus = EventBus()
        bus.subscribe(ResourceAdmitted, indexer.on_admitted)
        recorder = StoreRecorder(db, events=bus)
    """

    def __init__(self) -> None:
        self._subscribers: dict[type, tuple[Callable[[Any], None], ...]] = {}
        self._lock = Lock()

    def subscribe(self, event_type: type[T], handler: Callable[[T], None]) -> None:
        with self._lock:
            self._subscribers[event_type] = (*self._subscribers.get(event_type, ()), handler)

    def unsubscribe(self, event_type: type[T], handler: Callable[[T], None]) -> bool:
        """Remove the first registration of handler for event_type."""
        with self._lock:
            handlers = list(self._subscribers.get(event_type, ()))
            if handler not in handlers:
                return False
            handlers.remove(handler)
            if handlers:
                self._subscribers[event_type] = tuple(handlers)
            else:
                del self._subscribers[event_type]
            return True

    def subscriber_count(self, event_type: type) -> int:
        with self._lock:
            return len(self._subscribers.get(event_type, ()))

    def emit(self, event: T) -> None:
        with self._lock:
            handlers = self._subscribers.get(type(event), ())
        for handler in handlers:
            handler(event)


class NullEventBus:
    """No-op bus for recorders that nothing observes.

    Not a subclass of EventBus: subscribing here never delivers, and that
    should be visible at the construction site rather than inherited.
    """

    def subscribe(self, event_type: type[T], handler: Callable[[T], None]) -> None:
        pass

    def unsubscribe(self, event_type: type[T], handler: Callable[[T], None]) -> bool:
        return False

    def emit(self, event: T) -> None:
        pass
