"""
In-process event bus for run progress.

StepExecutor and the engine publish; the WebSocket transport subscribes.
"""

import logging
import threading
from dataclasses import dataclass, field
from queue import Queue
from typing import Any, Callable, Dict, List, Optional


logger = logging.getLogger("synapscript.events")

STEP_UPDATE = 'step-update'
LOG = 'log'
AUTOMATION_COMPLETE = 'automation-complete'
AUTOMATION_FAILED = 'automation-failed'

EVENT_TYPES = (STEP_UPDATE, LOG, AUTOMATION_COMPLETE, AUTOMATION_FAILED)


@dataclass
class Event:
    """A single progress notification."""
    type: str
    data: Dict[str, Any] = field(default_factory=dict)
    automation_id: Optional[str] = None
    run_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Wire shape sent to WebSocket clients."""
        payload = {'type': self.type}
        payload.update(self.data)
        payload['automation_id'] = self.automation_id
        payload['run_id'] = self.run_id
        return payload


Subscriber = Callable[[Event], None]


class EventBus:
    """
    Thread-safe fan-out of Events to subscribers.

    A subscriber that raises is logged and skipped; it never interrupts the
    publisher or the other subscribers.
    """

    def __init__(self):
        self._subscribers: List[Subscriber] = []
        # id(queue) -> the put_nowait callback subscribed for it
        self._queue_callbacks: Dict[int, Subscriber] = {}
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Subscriber:
        with self._lock:
            self._subscribers.append(callback)
        return callback

    def unsubscribe(self, callback: Subscriber) -> None:
        with self._lock:
            try:
                self._subscribers.remove(callback)
            except ValueError:
                pass

    def subscribe_queue(self, maxsize: int = 0) -> 'Queue[Event]':
        """Subscribe a Queue that receives every published event.

        Detach it again with :meth:`unsubscribe_queue`.
        """
        queue: 'Queue[Event]' = Queue(maxsize=maxsize)
        callback = queue.put_nowait
        with self._lock:
            self._queue_callbacks[id(queue)] = callback
            self._subscribers.append(callback)
        return queue

    def unsubscribe_queue(self, queue: Queue) -> None:
        with self._lock:
            callback = self._queue_callbacks.pop(id(queue), None)
        if callback is not None:
            self.unsubscribe(callback)

    def publish(self, event: Event) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Event subscriber failed on '{event.type}': {e}")

    def emit(self, event_type: str, automation_id: str = None, run_id: str = None, **data) -> Event:
        """Build and publish an Event in one call."""
        event = Event(type=event_type, data=data, automation_id=automation_id, run_id=run_id)
        self.publish(event)
        return event
