#!/usr/bin/env python3
"""
Redis Queue (RQ) transport.

Each destination maps to one RQ queue per priority:
    notifications.high, notifications.normal, notifications.low
and workers listen in that order. Every message is an RQ job running
process_delivery_task(), which rebuilds the QueueMessage and hands it to the
registered handler (the orchestrator's handle_delivery by default).

Deferred publishes use Queue.enqueue_in, so the timer lives in Redis and
survives a restart as long as a worker runs with the scheduler enabled.
Dead letters are JSON entries on a capped Redis list.

Jobs run in the worker process itself (SimpleWorker), one at a time, so the
channels' circuit breaker and outbound limiter keep their state across jobs.
prefetch_count has no effect here.

Usage:
    transport = RqTransport(redis_url='redis://localhost:6379/0')
    transport.publish('notifications', notification.to_dict(),
                      priority=NotificationPriority.HIGH)
"""

import json
import logging
from datetime import timedelta
from typing import Optional, Dict, Any, List

from redis import Redis
from redis.exceptions import RedisError, ConnectionError as RedisConnectionError
from rq import Queue, SimpleWorker, get_current_job
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)

from notification.exceptions import EnqueueError
from notification.models import NotificationPriority
from notification.transport import (
    QueueTransport,
    QueueMessage,
    MessageHandler,
    PRIORITY_ORDER,
    PUBLISHED_AT_HEADER,
    DEATH_REASON_HEADER,
    ORIGINAL_DESTINATION_HEADER,
)

logger = logging.getLogger(__name__)

DEAD_LETTER_KEY_PREFIX = 'notification:dead_letter:'


@retry(
    stop=stop_after_attempt(5),
    wait=wait_exponential(multiplier=0.5, max=8),
    retry=retry_if_exception_type(RedisConnectionError),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True
)
def connect_redis(redis_url: str) -> Redis:
    """Connect and ping, retrying while Redis comes up."""
    conn = Redis.from_url(redis_url)
    conn.ping()
    logger.info("Connected to Redis")
    return conn


def queue_names(destination: str) -> List[str]:
    """RQ queue names for a destination, highest priority first."""
    return [f"{destination}.{priority.value}" for priority in PRIORITY_ORDER]


class RqTransport(QueueTransport):
    """QueueTransport on Redis + RQ."""

    def __init__(
        self,
        redis_conn: Optional[Redis] = None,
        redis_url: str = 'redis://localhost:6379/0',
        job_timeout_seconds: int = 60,
        **kwargs
    ):
        super().__init__(**kwargs)
        self.redis_conn = redis_conn if redis_conn is not None else connect_redis(redis_url)
        self.job_timeout_seconds = job_timeout_seconds
        self._queues: Dict[str, Queue] = {}
        self._handlers: Dict[str, MessageHandler] = {}

    def queue_for(self, destination: str, priority: NotificationPriority) -> Queue:
        name = f"{destination}.{NotificationPriority(priority).value}"
        queue = self._queues.get(name)
        if queue is None:
            queue = Queue(name, connection=self.redis_conn)
            self._queues[name] = queue
        return queue

    def depth(self, destination: str) -> int:
        return sum(self.queue_for(destination, p).count for p in PRIORITY_ORDER)

    def _check_capacity(self, destination: str) -> None:
        if self.max_length is not None and self.depth(destination) >= self.max_length:
            raise EnqueueError(f"Queue {destination} is full ({self.max_length} messages)")

    def publish(self, destination, body, priority=NotificationPriority.NORMAL, headers=None) -> str:
        priority = NotificationPriority(priority)
        headers = self._stamp(headers)
        try:
            self._check_capacity(destination)
            job = self.queue_for(destination, priority).enqueue(
                process_delivery_task,
                destination, dict(body), headers, priority.value,
                job_timeout=self.job_timeout_seconds,
            )
        except RedisError as e:
            logger.error(f"Failed to enqueue to {destination}: {e}")
            raise EnqueueError(f"Failed to enqueue to {destination}: {e}") from e
        logger.debug(f"Enqueued job {job.id} on {destination}.{priority.value}")
        return job.id

    def publish_later(self, delay_seconds, destination, body, priority=NotificationPriority.NORMAL, headers=None) -> str:
        if delay_seconds <= 0:
            return self.publish(destination, body, priority, headers)
        priority = NotificationPriority(priority)
        headers = self._stamp(headers)
        # TTL counts from when the message becomes ready
        headers[PUBLISHED_AT_HEADER] = headers[PUBLISHED_AT_HEADER] + delay_seconds
        try:
            self._check_capacity(destination)
            job = self.queue_for(destination, priority).enqueue_in(
                timedelta(seconds=delay_seconds),
                process_delivery_task,
                destination, dict(body), headers, priority.value,
                job_timeout=self.job_timeout_seconds,
            )
        except RedisError as e:
            logger.error(f"Failed to schedule publish to {destination}: {e}")
            raise EnqueueError(f"Failed to schedule publish to {destination}: {e}") from e
        logger.debug(f"Scheduled job {job.id} on {destination}.{priority.value} in {delay_seconds:.1f}s")
        return job.id

    def register_handler(self, destination: str, handler: MessageHandler) -> None:
        self._handlers[destination] = handler

    def consume(self, destination, handler, burst: bool = False) -> None:
        """Run a non-forking RQ worker over the destination's priority queues."""
        self.register_handler(destination, handler)
        worker = SimpleWorker(
            [self.queue_for(destination, p) for p in PRIORITY_ORDER],
            connection=self.redis_conn,
        )
        logger.info(f"Consuming from {', '.join(queue_names(destination))} (burst={burst})")
        worker.work(burst=burst, with_scheduler=True)

    def dispatch(
        self,
        destination: str,
        body: Dict[str, Any],
        headers: Dict[str, Any],
        priority: str,
        message_id: Optional[str] = None,
        default_handler: Optional[MessageHandler] = None
    ) -> QueueMessage:
        """Hand one delivered job to its handler; expired messages are dead-lettered."""
        message = QueueMessage(
            destination=destination,
            body=body,
            headers=dict(headers or {}),
            priority=NotificationPriority(priority),
        )
        if message_id:
            message.id = message_id

        if self.is_expired(message):
            self._dead_letter(message, 'expired')
            message.rejected = True
            return message

        handler = self._handlers.get(destination, default_handler)
        if handler is None:
            raise RuntimeError(f"No handler registered for {destination}")
        try:
            handler(message)
        except Exception as e:
            logger.error(f"Handler raised on message {message.id}: {e}", exc_info=True)
            if not message.settled:
                self.reject(message, requeue=False)
        return message

    def ack(self, message: QueueMessage) -> None:
        # The RQ job finishes when the task returns.
        message.acked = True

    def reject(self, message: QueueMessage, requeue: bool = False) -> None:
        message.rejected = True
        if requeue:
            try:
                self.queue_for(message.destination, message.priority).enqueue(
                    process_delivery_task,
                    message.destination, message.body, dict(message.headers), message.priority.value,
                    job_timeout=self.job_timeout_seconds,
                )
                return
            except RedisError as e:
                logger.error(f"Requeue of {message.id} failed, dead-lettering instead: {e}")
        self._dead_letter(message, 'rejected')

    def _dead_letter_key(self) -> str:
        return f"{DEAD_LETTER_KEY_PREFIX}{self.dead_letter_destination}"

    def _dead_letter(self, message: QueueMessage, reason: str) -> None:
        headers = dict(message.headers)
        headers[DEATH_REASON_HEADER] = reason
        headers[ORIGINAL_DESTINATION_HEADER] = message.destination
        entry = json.dumps({
            'id': message.id,
            'body': message.body,
            'headers': headers,
            'priority': message.priority.value,
        }, default=str)
        key = self._dead_letter_key()
        pipe = self.redis_conn.pipeline()
        pipe.lpush(key, entry)
        if self.max_length:
            pipe.ltrim(key, 0, self.max_length - 1)
        pipe.execute()
        logger.info(f"Message {message.id} dead-lettered from {message.destination} ({reason})")

    def dead_letters(self, limit: int = 100) -> List[QueueMessage]:
        """Most recent dead letters first."""
        messages = []
        for raw in self.redis_conn.lrange(self._dead_letter_key(), 0, limit - 1):
            entry = json.loads(raw)
            messages.append(QueueMessage(
                destination=self.dead_letter_destination,
                body=entry['body'],
                headers=entry['headers'],
                priority=NotificationPriority(entry['priority']),
                id=entry['id'],
            ))
        return messages


def process_delivery_task(destination: str, body: Dict[str, Any], headers: Dict[str, Any], priority: str) -> str:
    """
    RQ job entry point (runs in the worker process).

    The application context is built once per worker from config.
    """
    from core.app_context import get_app_context

    ctx = get_app_context()
    job = get_current_job()
    message = ctx.transport.dispatch(
        destination,
        body,
        headers,
        priority,
        message_id=job.id if job else None,
        default_handler=ctx.orchestrator.handle_delivery,
    )
    if message.rejected:
        return 'rejected'
    return 'acked' if message.acked else 'unsettled'
