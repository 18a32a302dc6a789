"""
Progress publisher.
Fans run snapshots out to per-subscriber bounded queues. Publishing never
blocks: a full queue loses its oldest snapshot.
"""

import queue
import threading
from typing import Any, Dict, List, Optional

from ..util.logging import StructuredLogger, get_logger

# Marker put on a subscriber's queue after the terminal snapshot
END_OF_STREAM = None


class Subscription:
    """One subscriber's view of a run's progress."""

    def __init__(self, run_id: int, maxsize: int, publisher: "ProgressPublisher"):
        self.run_id = run_id
        self.dropped = 0
        self.closed = False
        self._queue: "queue.Queue[Optional[Dict[str, Any]]]" = queue.Queue(maxsize=maxsize)
        self._publisher = publisher

    def offer(self, item: Optional[Dict[str, Any]]) -> None:
        while True:
            try:
                self._queue.put_nowait(item)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except queue.Empty:
                    pass

    def get(self, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """
        Next snapshot. Returns END_OF_STREAM once the run ended.

        Raises:
            queue.Empty: nothing arrived within timeout
        """
        return self._queue.get(timeout=timeout)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._publisher.unsubscribe(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class ProgressPublisher:
    def __init__(self, queue_size: int = 100, logger: StructuredLogger = None):
        self.queue_size = queue_size
        self.logger = logger or get_logger("autocorrector.publisher")
        self._subscribers: Dict[int, List[Subscription]] = {}
        self._lock = threading.Lock()

    def subscribe(self, run_id: int) -> Subscription:
        """Register for snapshots published from now on."""
        subscription = Subscription(run_id, self.queue_size, self)
        with self._lock:
            self._subscribers.setdefault(run_id, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.run_id, [])
            if subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                self._subscribers.pop(subscription.run_id, None)

    def publish(self, run_id: int, snapshot: Dict[str, Any]) -> None:
        for subscription in self._targets(run_id):
            subscription.offer(snapshot)

    def publish_terminal(self, run_id: int, snapshot: Dict[str, Any]) -> None:
        """Publish the final snapshot followed by the end-of-stream marker."""
        targets = self._targets(run_id)
        for subscription in targets:
            subscription.offer(snapshot)
            subscription.offer(END_OF_STREAM)

        dropped = sum(s.dropped for s in targets)
        if dropped:
            self.logger.log_operation("progress.publish", "dropped", {"run_id": run_id, "snapshots": dropped})

    def subscriber_count(self, run_id: int) -> int:
        with self._lock:
            return len(self._subscribers.get(run_id, []))

    def _targets(self, run_id: int) -> List[Subscription]:
        with self._lock:
            return list(self._subscribers.get(run_id, []))
