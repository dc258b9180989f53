"""
Fans deployment events out to realtime subscribers and remote HTTP listeners.

Local subscribers get each event immediately; there is no backlog for
subscribers that connect later. Each remote listener has one
background worker fed by a bounded queue; it POSTs events in publish order,
retrying with exponential backoff and giving up (logged) once the attempts
are used up. A full queue drops the event. Neither path can fail or block the
publisher.
"""

import logging
import queue
import threading
from typing import Callable, Dict, Iterable, List, Optional, Set

import httpx

from deploy_system import events
from deploy_system.config import RetryPolicy

logger = logging.getLogger(__name__)

IDLE = "idle"
RUNNING = "running"


class Subscription:
    """A realtime subscriber's queue of pending events"""
    MAX_PENDING = 1000

    def __init__(self, broadcaster: "EventBroadcaster"):
        self._broadcaster = broadcaster
        self._queue: "queue.Queue[events.DeploymentEvent]" = queue.Queue(self.MAX_PENDING)

    def put(self, event: events.DeploymentEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            logger.warning(f"Dropping {event.kind} event for slow subscriber")

    def get(self, timeout: Optional[float] = None) -> Optional[events.DeploymentEvent]:
        """Next event, or None if nothing arrived within timeout"""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        self._broadcaster.unsubscribe(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class EventBroadcaster:
    MAX_PENDING_DELIVERIES = 1000

    def __init__(self, listeners: Iterable[str] = (), retry: Optional[RetryPolicy] = None,
                 client: Optional[httpx.Client] = None,
                 sleep: Optional[Callable[[float], None]] = None):
        self.listeners = tuple(listeners)
        self.retry = retry or RetryPolicy()
        self._client = client or httpx.Client(timeout=self.retry.timeout)
        self._stopped = threading.Event()
        self._sleep = sleep or self._stopped.wait
        self._subscribers: Set[Subscription] = set()
        self._in_progress: Set[str] = set()
        self._lock = threading.Lock()

        # one worker and one bounded queue per listener
        self._pending: Dict[str, "queue.Queue"] = {}
        self._workers: List[threading.Thread] = []
        for uri in dict.fromkeys(self.listeners):
            pending = queue.Queue(self.MAX_PENDING_DELIVERIES)
            thread = threading.Thread(target=self._delivery_worker, args=(uri, pending),
                                      name=f"deliver-{uri}", daemon=True)
            self._pending[uri] = pending
            self._workers.append(thread)
            thread.start()

    # Status

    @property
    def status(self) -> str:
        with self._lock:
            return RUNNING if self._in_progress else IDLE

    def _update_status(self, event: events.DeploymentEvent) -> None:
        data = event.data if isinstance(event.data, dict) else {}
        with self._lock:
            if data.get("inprogress"):
                self._in_progress.add(event.repo)
            else:
                self._in_progress.discard(event.repo)

    # Local fan-out

    def subscribe(self) -> Subscription:
        subscription = Subscription(self)
        with self._lock:
            self._subscribers.add(subscription)
        logger.info("Received a realtime connection")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscribers.discard(subscription)

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    # Publishing

    def publish(self, event: events.DeploymentEvent) -> None:
        """Deliver event to every subscriber and queue it for every listener"""
        logger.info(f"[{event.repo}] {event.kind}: {event.data}")
        if event.kind == events.STATUS:
            self._update_status(event)

        with self._lock:
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            subscription.put(event)

        if self._stopped.is_set():
            return
        for uri, pending in self._pending.items():
            try:
                pending.put_nowait(event)
            except queue.Full:
                logger.warning(f"Delivery queue for {uri} is full, dropping {event.kind} event")

    def _delivery_worker(self, uri: str, pending: "queue.Queue") -> None:
        """Deliver a listener's events one at a time, in publish order"""
        while not self._stopped.is_set():
            event = pending.get()
            if event is None:
                break
            try:
                self.deliver(uri, event)
            except Exception:
                logger.exception(f"Delivery worker for {uri} failed on {event.kind} event")

    def deliver(self, uri: str, event: events.DeploymentEvent) -> bool:
        """POST event to one listener, retrying with backoff. Returns True once delivered."""
        body = event.to_message()
        for attempt in range(1, self.retry.attempts + 1):
            try:
                response = self._client.post(uri, json=body)
                response.raise_for_status()
                logger.debug(f"Delivered {event.kind} to {uri}")
                return True
            except httpx.HTTPError as e:
                logger.warning(f"Delivery to {uri} failed (attempt {attempt}/{self.retry.attempts}): {e}")

            if attempt == self.retry.attempts or self._stopped.is_set():
                break
            self._sleep(self.retry.delay(attempt))

        logger.error(f"Giving up on {event.kind} event for {uri}")
        return False

    def close(self, timeout: float = 2) -> None:
        """Stop retrying and wait briefly for in-flight deliveries"""
        self._stopped.set()
        for pending in self._pending.values():
            try:
                pending.put_nowait(None)
            except queue.Full:
                pass
        for thread in self._workers:
            thread.join(timeout=timeout)
        self._client.close()
