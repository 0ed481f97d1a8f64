"""
Pytest configuration and fixtures.

This file provides pytest-specific configuration and fixtures.
For standard test utilities, see tests/__init__.py
"""

from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

import pytest

from notification.channels import ChannelRegistry, DeliveryChannel, DeliveryPayload, DeliveryReceipt
from notification.exceptions import ChannelDeliveryError
from notification.rate_limiter import SlidingWindowRateLimiter
from notification.retry_policy import RetryPolicyResolver
from notification.service import NotificationOrchestrator
from notification.store import InMemoryNotificationStore
from notification.transport import InMemoryTransport


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "redis: marks tests as requiring a Redis server (deselect with '-m \"not redis\"')"
    )


@pytest.fixture
def redis_conn():
    """Connection to TEST_REDIS_URL; skips the test when no server answers."""
    from tests import TEST_REDIS_URL, check_redis_available
    if not check_redis_available():
        pytest.skip(f"Redis not available at {TEST_REDIS_URL}")
    from redis import Redis
    conn = Redis.from_url(TEST_REDIS_URL)
    yield conn
    conn.close()


class ManualClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def as_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.now, tz=timezone.utc)


class RecordingChannel(DeliveryChannel):
    """Channel that records every send and fails a configurable number of times."""

    def __init__(self, name: str = 'email', failures: int = 0, always_fail: bool = False,
                 error_factory=None):
        self._name = name
        self.failures_remaining = failures
        self.always_fail = always_fail
        self.error_factory = error_factory or (lambda: ChannelDeliveryError("provider down", channel=self._name))
        self.calls: List[Tuple[str, DeliveryPayload, Optional[str]]] = []

    @property
    def name(self) -> str:
        return self._name

    def send(self, destination, payload, correlation_id) -> DeliveryReceipt:
        self.calls.append((destination, payload, correlation_id))
        if self.always_fail or self.failures_remaining > 0:
            self.failures_remaining -= 1
            raise self.error_factory()
        return DeliveryReceipt(channel=self._name, destination=destination)


class Pipeline:
    """In-memory wiring of the orchestrator for tests."""

    def __init__(self, channel: Optional[RecordingChannel] = None, rate_limit_points: int = 100):
        self.clock = ManualClock()
        self.store = InMemoryNotificationStore(clock=self.clock.as_datetime)
        self.transport = InMemoryTransport(clock=self.clock)
        self.rate_limiter = SlidingWindowRateLimiter(rate_limit_points, 60)
        self.channel = channel or RecordingChannel()
        self.channels = ChannelRegistry([self.channel])
        self.orchestrator = NotificationOrchestrator(
            store=self.store,
            transport=self.transport,
            rate_limiter=self.rate_limiter,
            retry_policies=RetryPolicyResolver(),
            channels=self.channels,
            clock=self.clock.as_datetime,
        )

    def deliver(self, max_messages: Optional[int] = None) -> int:
        return self.transport.drain('notifications', self.orchestrator.handle_delivery, max_messages)

    def advance(self, seconds: float) -> int:
        """Move time forward and release deferred messages that came due."""
        self.clock.advance(seconds)
        return self.transport.release_due()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def pipeline():
    return Pipeline()


@pytest.fixture
def task_request():
    return {'user_id': 'u1', 'type': 'TaskAssigned', 'title': 'T', 'message': 'M'}


@pytest.fixture
def in_one_hour(pipeline):
    return pipeline.clock.as_datetime() + timedelta(hours=1)
