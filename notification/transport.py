#!/usr/bin/env python3
"""
Queue transport contract and the in-memory implementation.

The orchestrator only talks to QueueTransport:
- publish / publish_later put a message on a destination
- consume hands messages to a handler, which must settle each one with
  ack (done) or reject (requeue or dead-letter)

Delivery is at-least-once: a message stays in flight until it is settled.
Messages older than the TTL when they reach a consumer are dead-lettered by the
transport itself. Priority is advisory: high, then normal, then low.

Usage:
    transport = InMemoryTransport(prefetch_count=10)
    transport.publish('notifications', notification.to_dict(),
                      priority=NotificationPriority.HIGH,
                      headers={RETRY_COUNT_HEADER: 0})
    transport.drain('notifications', orchestrator.handle_delivery)
"""

import heapq
import itertools
import logging
import threading
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Callable, Deque, Tuple

from notification.exceptions import EnqueueError
from notification.models import NotificationPriority
from notification.scheduler import DelayScheduler

logger = logging.getLogger(__name__)

RETRY_COUNT_HEADER = 'x-retry-count'
PUBLISHED_AT_HEADER = 'x-published-at'
CORRELATION_HEADER = 'x-correlation-id'
DEATH_REASON_HEADER = 'x-death-reason'
ORIGINAL_DESTINATION_HEADER = 'x-original-destination'

DEFAULT_MESSAGE_TTL_SECONDS = 24 * 60 * 60
DEFAULT_MAX_LENGTH = 10000
DEFAULT_PREFETCH_COUNT = 10

# Consumers take from these in order.
PRIORITY_ORDER = (
    NotificationPriority.HIGH,
    NotificationPriority.NORMAL,
    NotificationPriority.LOW,
)

MessageHandler = Callable[["QueueMessage"], None]


@dataclass
class QueueMessage:
    """A message as seen by a consumer."""
    destination: str
    body: Dict[str, Any]
    headers: Dict[str, Any] = field(default_factory=dict)
    priority: NotificationPriority = NotificationPriority.NORMAL
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    acked: bool = False
    rejected: bool = False

    @property
    def retry_count(self) -> int:
        try:
            return int(self.headers.get(RETRY_COUNT_HEADER, 0) or 0)
        except (TypeError, ValueError):
            return 0

    @property
    def settled(self) -> bool:
        return self.acked or self.rejected


class QueueTransport(ABC):
    """Durable, at-least-once message transport with dead-lettering."""

    def __init__(
        self,
        dead_letter_destination: str = 'notifications.dead_letter',
        message_ttl_seconds: Optional[float] = DEFAULT_MESSAGE_TTL_SECONDS,
        max_length: Optional[int] = DEFAULT_MAX_LENGTH,
        prefetch_count: int = DEFAULT_PREFETCH_COUNT,
        scheduler: Optional[DelayScheduler] = None,
        clock: Callable[[], float] = time.time
    ):
        if prefetch_count < 1:
            raise ValueError("prefetch_count must be >= 1")
        self.dead_letter_destination = dead_letter_destination
        self.message_ttl_seconds = message_ttl_seconds
        self.max_length = max_length
        self.prefetch_count = prefetch_count
        self._scheduler = scheduler
        self._clock = clock

    @abstractmethod
    def publish(
        self,
        destination: str,
        body: Dict[str, Any],
        priority: NotificationPriority = NotificationPriority.NORMAL,
        headers: Optional[Dict[str, Any]] = None
    ) -> str:
        """Publish a message. Returns the message id; raises EnqueueError."""

    def publish_later(
        self,
        delay_seconds: float,
        destination: str,
        body: Dict[str, Any],
        priority: NotificationPriority = NotificationPriority.NORMAL,
        headers: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Publish a message after delay_seconds.

        The base implementation keeps the timer in this process; subclasses
        backed by a broker should persist it instead.
        """
        if delay_seconds <= 0:
            return self.publish(destination, body, priority, headers)
        if self._scheduler is None:
            self._scheduler = DelayScheduler()
        try:
            task = self._scheduler.call_later(
                delay_seconds, self._publish_deferred, destination, body, priority, dict(headers or {})
            )
        except RuntimeError as e:
            raise EnqueueError(f"Cannot schedule publish to {destination}: {e}") from e
        return task.id

    def _publish_deferred(self, destination, body, priority, headers) -> None:
        try:
            self.publish(destination, body, priority, headers)
        except EnqueueError as e:
            logger.error(f"Deferred publish to {destination} failed, message left for reconciliation: {e}")

    @abstractmethod
    def consume(self, destination: str, handler: MessageHandler) -> None:
        """Deliver messages from destination to handler until stopped."""

    @abstractmethod
    def ack(self, message: QueueMessage) -> None:
        """Mark a message as processed and remove it from the queue."""

    @abstractmethod
    def reject(self, message: QueueMessage, requeue: bool = False) -> None:
        """Return a message to its queue, or route it to the dead-letter destination."""

    def close(self, drain: bool = False) -> None:
        if self._scheduler is not None:
            self._scheduler.shutdown(drain=drain)

    def _stamp(self, headers: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        stamped = dict(headers or {})
        stamped.setdefault(RETRY_COUNT_HEADER, 0)
        stamped[PUBLISHED_AT_HEADER] = self._clock()
        return stamped

    def is_expired(self, message: QueueMessage) -> bool:
        if not self.message_ttl_seconds:
            return False
        published_at = message.headers.get(PUBLISHED_AT_HEADER)
        if published_at is None:
            return False
        return self._clock() - float(published_at) > self.message_ttl_seconds


class InMemoryTransport(QueueTransport):
    """
    Thread-safe transport kept in process memory.

    Deferred messages run on the DelayScheduler when one is given. Without one
    they are held in a heap until release_due() moves them onto their
    destination, so tests can drive time with an injected clock.
    """

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._lock = threading.RLock()
        self._queues: Dict[str, Dict[NotificationPriority, Deque[QueueMessage]]] = {}
        self._in_flight: Dict[str, QueueMessage] = {}
        self._delayed: List[Tuple[float, int, str, Dict[str, Any], NotificationPriority, Dict[str, Any]]] = []
        self._seq = itertools.count()
        self._dead_letters: List[QueueMessage] = []
        self.published: List[QueueMessage] = []
        self.closed = False

    def _queue(self, destination: str) -> Dict[NotificationPriority, Deque[QueueMessage]]:
        queue = self._queues.get(destination)
        if queue is None:
            queue = {p: deque() for p in PRIORITY_ORDER}
            self._queues[destination] = queue
        return queue

    def depth(self, destination: str) -> int:
        """Number of ready (not in-flight) messages on destination."""
        with self._lock:
            return sum(len(q) for q in self._queue(destination).values())

    def in_flight(self, destination: Optional[str] = None) -> int:
        with self._lock:
            return sum(1 for m in self._in_flight.values() if destination in (None, m.destination))

    @property
    def delayed_count(self) -> int:
        with self._lock:
            return len(self._delayed)

    @property
    def dead_letters(self) -> List[QueueMessage]:
        with self._lock:
            return list(self._dead_letters)

    def publish(self, destination, body, priority=NotificationPriority.NORMAL, headers=None) -> str:
        with self._lock:
            if self.closed:
                raise EnqueueError("Transport is closed")
            if self.max_length is not None and self.depth(destination) >= self.max_length:
                raise EnqueueError(f"Queue {destination} is full ({self.max_length} messages)")
            message = QueueMessage(
                destination=destination,
                body=dict(body),
                headers=self._stamp(headers),
                priority=NotificationPriority(priority),
            )
            self._queue(destination)[message.priority].append(message)
            self.published.append(message)
        logger.debug(f"Published {message.id} to {destination} ({message.priority.value})")
        return message.id

    def publish_later(self, delay_seconds, destination, body, priority=NotificationPriority.NORMAL, headers=None) -> str:
        """Timers run on the scheduler when one was given, otherwise wait for release_due()."""
        if delay_seconds <= 0:
            return self.publish(destination, body, priority, headers)
        if self.closed:
            raise EnqueueError("Transport is closed")
        if self._scheduler is not None:
            return super().publish_later(delay_seconds, destination, body, priority, headers)
        with self._lock:
            due = self._clock() + delay_seconds
            seq = next(self._seq)
            heapq.heappush(self._delayed, (due, seq, destination, dict(body), NotificationPriority(priority), dict(headers or {})))
        logger.debug(f"Scheduled publish to {destination} in {delay_seconds:.3f}s")
        return f"delayed-{seq}"

    def release_due(self) -> int:
        """Publish every deferred message whose time has come. Returns how many."""
        released = 0
        with self._lock:
            now = self._clock()
            while self._delayed and self._delayed[0][0] <= now:
                _, _, destination, body, priority, headers = heapq.heappop(self._delayed)
                try:
                    self.publish(destination, body, priority, headers)
                    released += 1
                except EnqueueError as e:
                    logger.error(f"Deferred publish to {destination} failed: {e}")
        return released

    def fetch(self, destination: str) -> Optional[QueueMessage]:
        """Take the next message for a consumer, honouring prefetch and TTL."""
        with self._lock:
            if self.in_flight(destination) >= self.prefetch_count:
                return None
            queue = self._queue(destination)
            for priority in PRIORITY_ORDER:
                while queue[priority]:
                    message = queue[priority].popleft()
                    if self.is_expired(message):
                        self._dead_letter(message, 'expired')
                        continue
                    self._in_flight[message.id] = message
                    return message
        return None

    def ack(self, message: QueueMessage) -> None:
        with self._lock:
            if self._in_flight.pop(message.id, None) is None:
                logger.warning(f"Ack for unknown or settled message {message.id}")
                return
            message.acked = True

    def reject(self, message: QueueMessage, requeue: bool = False) -> None:
        with self._lock:
            if self._in_flight.pop(message.id, None) is None:
                logger.warning(f"Reject for unknown or settled message {message.id}")
                return
            message.rejected = True
            if requeue:
                retry = QueueMessage(
                    destination=message.destination,
                    body=message.body,
                    headers=dict(message.headers),
                    priority=message.priority,
                )
                self._queue(message.destination)[message.priority].appendleft(retry)
            else:
                self._dead_letter(message, 'rejected')

    def _dead_letter(self, message: QueueMessage, reason: str) -> None:
        headers = dict(message.headers)
        headers[DEATH_REASON_HEADER] = reason
        headers[ORIGINAL_DESTINATION_HEADER] = message.destination
        self._dead_letters.append(QueueMessage(
            destination=self.dead_letter_destination,
            body=message.body,
            headers=headers,
            priority=message.priority,
            id=message.id,
        ))
        logger.info(f"Message {message.id} dead-lettered from {message.destination} ({reason})")

    def drain(self, destination: str, handler: MessageHandler, max_messages: Optional[int] = None) -> int:
        """Hand every ready message to handler. Returns the number processed."""
        processed = 0
        while max_messages is None or processed < max_messages:
            message = self.fetch(destination)
            if message is None:
                break
            try:
                handler(message)
            except Exception as e:
                logger.error(f"Handler raised on message {message.id}: {e}", exc_info=True)
                if not message.settled:
                    self.reject(message, requeue=False)
            processed += 1
        return processed

    def consume(self, destination, handler, stop_event: Optional[threading.Event] = None,
                poll_interval: float = 0.1) -> None:
        """Blocking consumer loop; returns when stop_event is set or the transport closes."""
        stop_event = stop_event or threading.Event()
        logger.info(f"Consuming from {destination} (prefetch={self.prefetch_count})")
        while not stop_event.is_set() and not self.closed:
            self.release_due()
            if not self.drain(destination, handler):
                stop_event.wait(poll_interval)

    def close(self, drain: bool = False) -> None:
        # scheduled timers publish before the transport stops accepting messages
        super().close(drain=drain)
        with self._lock:
            if drain:
                for entry in sorted(self._delayed):
                    _, _, destination, body, priority, headers = entry
                    self.publish(destination, body, priority, headers)
            elif self._delayed:
                logger.warning(f"Dropping {len(self._delayed)} deferred message(s) on close")
            self._delayed.clear()
            self.closed = True
