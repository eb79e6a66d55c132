"""
Event Bus Module - PV Digital Twin Platform

In-process, synchronous bus between the engines and the collaborators fed by
their results (alert dispatcher, reporting readers). Keeps a bounded history
of published records.
"""
import logging
import threading
from collections import defaultdict, deque
from typing import Any, Callable, Dict, List, Optional, Type

logger = logging.getLogger(__name__)


class EventBus:
    """
    Dispatch is by event class: a subscriber to a base class also receives
    every subclass event. Handler exceptions are counted and logged, never
    raised back into the engine that published.
    """

    def __init__(self, history_size: int = 10000):
        self._subscribers: Dict[Type, List[Callable]] = defaultdict(list)
        self._history: deque = deque(maxlen=history_size)
        self._lock = threading.RLock()
        self._published = 0
        self._handler_errors = 0

    def subscribe(self, event_type: Type, callback: Callable):
        with self._lock:
            self._subscribers[event_type].append(callback)
        logger.debug(f"{getattr(callback, '__qualname__', callback)} subscribed to {event_type.__name__}")

    def unsubscribe(self, event_type: Type, callback: Callable):
        with self._lock:
            handlers = self._subscribers.get(event_type, [])
            if callback in handlers:
                handlers.remove(callback)

    def publish(self, event: Any):
        with self._lock:
            self._history.append(event)
            self._published += 1
            handlers = [h for cls in type(event).__mro__ for h in self._subscribers.get(cls, [])]

        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                with self._lock:
                    self._handler_errors += 1
                logger.error(f"Handler {getattr(handler, '__qualname__', handler)} failed: {e}",
                             exc_info=True, extra={"props": {"event_type": type(event).__name__}})

    def get_history(self, count: Optional[int] = None, event_type: Optional[Type] = None) -> List[Any]:
        """Most recent published events, optionally filtered by class."""
        with self._lock:
            events = list(self._history)
        if event_type is not None:
            events = [e for e in events if isinstance(e, event_type)]
        return events if count is None else events[-count:]

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "total_events": self._published,
                "handler_errors": self._handler_errors,
                "history_size": len(self._history),
                "subscribers_count": sum(len(s) for s in self._subscribers.values()),
            }
