"""
Event Bus - fire-and-forget notifications from the agent loop.

publish() never blocks the loop: events go onto a bounded queue and a daemon
thread hands them to subscribers. A full queue drops the event; a failing
subscriber is logged and the remaining subscribers still run.
"""

import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

# Event names emitted by the agent loop
PHASE_CHANGED = "phase_changed"
MODE_CHANGED = "mode_changed"
ACTION_PROPOSED = "action_proposed"
ACTION_APPROVED = "action_approved"
ACTION_REJECTED = "action_rejected"
ACTION_EXECUTED = "action_executed"
CIRCUIT_BREAKER_TRIPPED = "circuit_breaker_tripped"
COMMITMENT_ADDED = "commitment_added"
CYCLE_COMPLETED = "cycle_completed"
CYCLE_FAILED = "cycle_failed"

WILDCARD = "*"


@dataclass
class Event:
    type: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


Handler = Callable[[Event], None]


class EventBus:
    """
    Bounded, thread-backed event dispatcher.

    Args:
        max_queue: Events held before new ones are dropped
        autostart: Start the dispatcher thread immediately
    """

    def __init__(self, max_queue: int = 1000, autostart: bool = True):
        self._queue: "queue.Queue[Optional[Event]]" = queue.Queue(maxsize=max_queue)
        self._handlers: Dict[str, List[Handler]] = {}
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stats = {"published": 0, "dispatched": 0, "dropped": 0, "handler_errors": 0}
        if autostart:
            self.start()

    def subscribe(self, event_type: str, handler: Handler) -> None:
        """Register a handler for one event type, or '*' for all events."""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)

    def unsubscribe(self, event_type: str, handler: Handler) -> bool:
        with self._lock:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)
                return True
        return False

    def publish(self, event_type: str, **data: Any) -> bool:
        """
        Enqueue an event without blocking.

        Returns:
            False if the queue was full and the event was dropped
        """
        event = Event(type=event_type, data=data)
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            with self._lock:
                self._stats["dropped"] += 1
            logger.debug(f"Event queue full, dropping {event_type}")
            return False
        with self._lock:
            self._stats["published"] += 1
        return True

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run, name="EventBus", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        """Drain queued events and stop the dispatcher thread."""
        if not self._thread:
            return
        self._queue.put(None)
        self._thread.join(timeout=timeout)
        self._thread = None

    def drain(self, timeout: float = 2.0) -> None:
        """Block until every queued event has been dispatched."""
        if not self._thread:
            while not self._queue.empty():
                event = self._queue.get_nowait()
                if event is not None:
                    self._dispatch(event)
                self._queue.task_done()
            return
        done = threading.Event()

        def _wait():
            self._queue.join()
            done.set()

        threading.Thread(target=_wait, daemon=True).start()
        done.wait(timeout)

    def _run(self) -> None:
        while True:
            event = self._queue.get()
            try:
                if event is None:
                    return
                self._dispatch(event)
            finally:
                self._queue.task_done()

    def _dispatch(self, event: Event) -> None:
        with self._lock:
            handlers = list(self._handlers.get(event.type, [])) + list(self._handlers.get(WILDCARD, []))
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                with self._lock:
                    self._stats["handler_errors"] += 1
                logger.error(f"Event handler {getattr(handler, '__name__', handler)} failed on {event.type}: {e}")
        with self._lock:
            self._stats["dispatched"] += 1

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            stats = dict(self._stats)
        stats["queued"] = self._queue.qsize()
        return stats


__all__ = [
    "Event",
    "EventBus",
    "PHASE_CHANGED",
    "MODE_CHANGED",
    "ACTION_PROPOSED",
    "ACTION_APPROVED",
    "ACTION_REJECTED",
    "ACTION_EXECUTED",
    "CIRCUIT_BREAKER_TRIPPED",
    "COMMITMENT_ADDED",
    "CYCLE_COMPLETED",
    "CYCLE_FAILED",
]
