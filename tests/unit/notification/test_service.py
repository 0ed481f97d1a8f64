#!/usr/bin/env python3
"""
Tests for the notification orchestrator.

Tests cover:
1. send_notification: validation, rate limiting, persistence, publishing
2. handle_delivery: success, retries with backoff, dead-lettering, idempotence
3. Scheduled delivery
4. mark_as_read / get_user_notifications

Usage:
    python -m pytest tests/unit/notification/test_service.py -v
"""

import logging
from datetime import timedelta
from unittest.mock import Mock

import pytest

from notification.exceptions import (
    CircuitOpenError,
    EnqueueError,
    InvalidRequest,
    NotificationNotFound,
    PersistenceError,
    RateLimitExceeded,
)
from notification.models import (
    NotificationFilter,
    NotificationPriority,
    NotificationStatus,
    NotificationType,
    Pagination,
)
from notification.retry_policy import DEFAULT_RETRY_POLICY
from notification.transport import RETRY_COUNT_HEADER, CORRELATION_HEADER, DEATH_REASON_HEADER
from tests.conftest import Pipeline, RecordingChannel


def _send(pipeline, type_name='TASK_UPDATED', user_id='u1', **options):
    return pipeline.orchestrator.send_notification(
        {'user_id': user_id, 'type': type_name, 'title': 'T', 'message': 'M'},
        options or None,
    )


class TestSendNotification:

    def test_creates_pending_notification_and_publishes_once(self, pipeline, task_request):
        response = pipeline.orchestrator.send_notification(task_request, {'channels': ['email']})

        assert response.success
        notification = response.data
        assert notification.status == NotificationStatus.PENDING
        assert notification.type == NotificationType.TASK_ASSIGNED
        assert pipeline.store.find_by_id(notification.id).status == NotificationStatus.PENDING

        assert len(pipeline.transport.published) == 1
        message = pipeline.transport.published[0]
        assert message.headers[RETRY_COUNT_HEADER] == 0
        assert message.body['id'] == notification.id

    def test_queue_priority_comes_from_retry_policy(self, pipeline, task_request):
        pipeline.orchestrator.send_notification(task_request)

        # TASK_ASSIGNED policy is high priority
        assert pipeline.transport.published[0].priority == NotificationPriority.HIGH

    def test_correlation_id_is_returned_and_propagated(self, pipeline, task_request):
        response = pipeline.orchestrator.send_notification(task_request)

        correlation_id = response.metadata['correlationId']
        assert correlation_id
        assert response.data.correlation_id == correlation_id
        assert pipeline.transport.published[0].headers[CORRELATION_HEADER] == correlation_id

    def test_missing_user_id_is_invalid(self, pipeline):
        response = pipeline.orchestrator.send_notification({'type': 'TASK_ASSIGNED'})

        assert not response.success
        assert isinstance(response.error, InvalidRequest)
        assert response.error_code == 'INVALID_REQUEST'
        assert len(pipeline.store) == 0
        assert pipeline.transport.published == []

    def test_unknown_type_is_invalid(self, pipeline):
        response = pipeline.orchestrator.send_notification({'user_id': 'u1', 'type': 'NOT_A_TYPE'})

        assert response.error_code == 'INVALID_REQUEST'

    def test_unregistered_channel_is_invalid(self, pipeline, task_request):
        response = pipeline.orchestrator.send_notification(task_request, {'channels': ['sms']})

        assert response.error_code == 'INVALID_REQUEST'
        assert len(pipeline.store) == 0

    def test_rate_limited_user_gets_error_and_nothing_is_created(self):
        pipeline = Pipeline(rate_limit_points=1)
        assert _send(pipeline, user_id='u2').success

        response = _send(pipeline, user_id='u2')

        assert not response.success
        assert isinstance(response.error, RateLimitExceeded)
        assert response.error_code == 'RATE_LIMIT_EXCEEDED'
        assert response.metadata['retryAfterSeconds'] > 0
        assert len(pipeline.store) == 1
        assert len(pipeline.transport.published) == 1

    def test_rate_limit_is_per_user(self):
        pipeline = Pipeline(rate_limit_points=1)

        assert _send(pipeline, user_id='a').success
        assert _send(pipeline, user_id='b').success

    def test_store_failure_returns_persistence_error(self, pipeline, task_request):
        pipeline.orchestrator.store = Mock()
        pipeline.orchestrator.store.create.side_effect = PersistenceError("db down")

        response = pipeline.orchestrator.send_notification(task_request)

        assert response.error_code == 'PERSISTENCE_ERROR'
        assert pipeline.transport.published == []

    def test_full_queue_returns_enqueue_error_and_leaves_notification_pending(self, pipeline, task_request):
        pipeline.transport.max_length = 1
        first = pipeline.orchestrator.send_notification(task_request)
        assert first.success

        response = pipeline.orchestrator.send_notification(task_request)

        assert not response.success
        assert isinstance(response.error, EnqueueError)
        pending = pipeline.store.find_by_user('u1').items
        assert len(pending) == 2
        assert all(n.status == NotificationStatus.PENDING for n in pending)

    def test_scheduled_notification_is_not_published_immediately(self, pipeline, task_request, in_one_hour):
        response = pipeline.orchestrator.send_notification(task_request, {'scheduled_for': in_one_hour})

        assert response.success
        assert pipeline.transport.published == []
        assert pipeline.transport.delayed_count == 1
        assert response.data.metadata['scheduledFor'] == in_one_hour.isoformat()

    def test_scheduled_notification_is_published_at_scheduled_time_unchanged(self, pipeline, task_request, in_one_hour):
        response = pipeline.orchestrator.send_notification(task_request, {'scheduled_for': in_one_hour})

        assert pipeline.advance(3599) == 0
        assert pipeline.advance(1) == 1

        message = pipeline.transport.published[0]
        assert message.body == response.data.to_dict()
        assert message.headers[RETRY_COUNT_HEADER] == 0

    def test_past_scheduled_time_publishes_now(self, pipeline, task_request):
        past = pipeline.clock.as_datetime() - timedelta(minutes=5)

        pipeline.orchestrator.send_notification(task_request, {'scheduled_for': past})

        assert len(pipeline.transport.published) == 1


class TestHandleDelivery:

    def test_successful_first_attempt_is_delivered_and_acked(self, pipeline, task_request):
        response = pipeline.orchestrator.send_notification(task_request)

        pipeline.deliver()

        stored = pipeline.store.find_by_id(response.data.id)
        assert stored.status == NotificationStatus.DELIVERED
        assert stored.delivery_attempts == 1
        assert [a.status for a in stored.attempt_history] == [
            NotificationStatus.DELIVERING, NotificationStatus.DELIVERED
        ]
        assert pipeline.transport.published[0].acked
        assert len(pipeline.transport.published) == 1
        assert pipeline.transport.delayed_count == 0
        assert pipeline.transport.dead_letters == []

    def test_channel_receives_user_and_correlation_id(self, pipeline, task_request):
        response = pipeline.orchestrator.send_notification(task_request)

        pipeline.deliver()

        destination, payload, correlation_id = pipeline.channel.calls[0]
        assert destination == 'u1'
        assert payload.notification_id == response.data.id
        assert correlation_id == response.metadata['correlationId']

    def test_failures_back_off_exponentially_then_dead_letter(self, caplog):
        pipeline = Pipeline(channel=RecordingChannel(always_fail=True))
        response = _send(pipeline)  # default policy: 3 attempts, 5000ms
        notification_id = response.data.id

        pipeline.deliver()
        stored = pipeline.store.find_by_id(notification_id)
        assert stored.status == NotificationStatus.PENDING
        assert stored.delivery_attempts == 1
        assert pipeline.advance(4) == 0
        assert pipeline.advance(1) == 1
        assert pipeline.transport.published[-1].headers[RETRY_COUNT_HEADER] == 1

        pipeline.deliver()
        assert pipeline.advance(9) == 0
        assert pipeline.advance(1) == 1
        assert pipeline.transport.published[-1].headers[RETRY_COUNT_HEADER] == 2

        with caplog.at_level(logging.WARNING, logger='notification.service'):
            pipeline.deliver()

        stored = pipeline.store.find_by_id(notification_id)
        assert stored.status == NotificationStatus.FAILED
        assert stored.delivery_attempts == 3
        assert 'MAX_ATTEMPTS_EXCEEDED' in caplog.text
        assert len(pipeline.channel.calls) == 3
        assert pipeline.transport.delayed_count == 0

        dead = pipeline.transport.dead_letters
        assert len(dead) == 1
        assert dead[0].body['id'] == notification_id
        assert dead[0].headers[DEATH_REASON_HEADER] == 'rejected'

    @pytest.mark.parametrize("failures", [0, 1, 2, 3, 4, 6])
    def test_attempts_are_min_of_failures_plus_one_and_max(self, failures):
        pipeline = Pipeline(channel=RecordingChannel(failures=failures))
        response = _send(pipeline)

        for _ in range(10):
            pipeline.deliver()
            pipeline.advance(3600)

        stored = pipeline.store.find_by_id(response.data.id)
        max_attempts = DEFAULT_RETRY_POLICY.max_attempts
        assert stored.delivery_attempts == min(failures + 1, max_attempts)
        if failures < max_attempts:
            assert stored.status == NotificationStatus.DELIVERED
        else:
            assert stored.status == NotificationStatus.FAILED

    def test_task_assigned_allows_five_attempts(self):
        pipeline = Pipeline(channel=RecordingChannel(always_fail=True))
        response = _send(pipeline, type_name='TASK_ASSIGNED')

        for _ in range(10):
            pipeline.deliver()
            pipeline.advance(3600)

        assert pipeline.store.find_by_id(response.data.id).delivery_attempts == 5

    def test_redelivery_of_delivered_notification_is_acked_without_sending(self, pipeline, task_request):
        pipeline.orchestrator.send_notification(task_request)
        pipeline.deliver()
        duplicate = pipeline.transport.published[0]

        pipeline.transport.publish('notifications', duplicate.body, headers=duplicate.headers)
        pipeline.deliver()

        assert len(pipeline.channel.calls) == 1
        assert pipeline.transport.published[-1].acked

    def test_redelivery_of_failed_notification_is_acked_without_sending(self):
        pipeline = Pipeline(channel=RecordingChannel(always_fail=True))
        response = _send(pipeline)
        for _ in range(5):
            pipeline.deliver()
            pipeline.advance(3600)
        calls = len(pipeline.channel.calls)

        pipeline.transport.publish('notifications', response.data.to_dict())
        pipeline.deliver()

        assert len(pipeline.channel.calls) == calls
        assert pipeline.store.find_by_id(response.data.id).status == NotificationStatus.FAILED

    def test_redelivery_with_exhausted_attempts_fails_without_sending(self, pipeline):
        response = _send(pipeline)
        notification_id = response.data.id
        # Simulate a consumer that crashed during each attempt
        for _ in range(DEFAULT_RETRY_POLICY.max_attempts):
            pipeline.store.update_status(notification_id, NotificationStatus.DELIVERING)

        pipeline.deliver()

        assert pipeline.channel.calls == []
        assert pipeline.store.find_by_id(notification_id).status == NotificationStatus.FAILED
        assert len(pipeline.transport.dead_letters) == 1

    def test_unknown_notification_is_dead_lettered(self, pipeline, task_request):
        response = pipeline.orchestrator.send_notification(task_request)
        pipeline.store._items.clear()

        pipeline.deliver()

        assert pipeline.channel.calls == []
        assert pipeline.transport.dead_letters[0].body['id'] == response.data.id

    def test_notification_removed_before_delivering_is_dead_lettered(self, pipeline, task_request):
        response = pipeline.orchestrator.send_notification(task_request)
        pipeline.store.update_status = Mock(side_effect=NotificationNotFound(response.data.id))
        message = pipeline.transport.fetch('notifications')

        pipeline.orchestrator.handle_delivery(message)

        assert message.rejected
        assert pipeline.channel.calls == []
        assert pipeline.transport.dead_letters[0].headers[DEATH_REASON_HEADER] == 'rejected'
        assert pipeline.transport.depth('notifications') == 0

    def test_undecodable_body_is_dead_lettered(self, pipeline):
        pipeline.transport.publish('notifications', {'garbage': True})

        pipeline.deliver()

        assert len(pipeline.transport.dead_letters) == 1
        assert pipeline.channel.calls == []

    def test_circuit_open_is_retried_like_other_channel_failures(self):
        channel = RecordingChannel(failures=1, error_factory=lambda: CircuitOpenError("open", channel='email'))
        pipeline = Pipeline(channel=channel)
        response = _send(pipeline)

        pipeline.deliver()
        pipeline.advance(5)
        pipeline.deliver()

        assert pipeline.store.find_by_id(response.data.id).status == NotificationStatus.DELIVERED

    def test_unexpected_exception_is_treated_as_delivery_failure(self):
        pipeline = Pipeline(channel=RecordingChannel(failures=1, error_factory=lambda: RuntimeError("boom")))
        response = _send(pipeline)

        pipeline.deliver()

        stored = pipeline.store.find_by_id(response.data.id)
        assert stored.status == NotificationStatus.PENDING
        assert stored.error_message == 'boom'
        assert pipeline.transport.delayed_count == 1

    def test_retry_publish_failure_requeues_original_message(self):
        pipeline = Pipeline(channel=RecordingChannel(failures=1))
        _send(pipeline)
        pipeline.transport.publish_later = Mock(side_effect=EnqueueError("broker down"))

        pipeline.deliver(max_messages=1)

        assert pipeline.transport.depth('notifications') == 1
        assert pipeline.transport.dead_letters == []

    def test_first_channel_failure_fails_the_attempt(self):
        email = RecordingChannel('email', always_fail=True)
        push = RecordingChannel('push')
        pipeline = Pipeline(channel=email)
        pipeline.channels.register(push)

        pipeline.orchestrator.send_notification(
            {'user_id': 'u1', 'type': 'TASK_UPDATED'}, {'channels': ['email', 'push']}
        )
        pipeline.deliver()

        assert len(email.calls) == 1
        assert push.calls == []

    def test_expired_message_never_reaches_handler(self, pipeline, task_request):
        pipeline.orchestrator.send_notification(task_request)

        pipeline.clock.advance(pipeline.transport.message_ttl_seconds + 1)
        pipeline.deliver()

        assert pipeline.channel.calls == []
        assert pipeline.transport.dead_letters[0].headers[DEATH_REASON_HEADER] == 'expired'


class TestReadSide:

    def test_mark_as_read_sets_read_at_without_changing_status(self, pipeline, task_request):
        response = pipeline.orchestrator.send_notification(task_request)

        result = pipeline.orchestrator.mark_as_read(response.data.id, 'u1')

        assert result.success
        assert result.data.is_read
        assert result.data.status == NotificationStatus.PENDING

    def test_mark_as_read_rejects_other_users(self, pipeline, task_request):
        response = pipeline.orchestrator.send_notification(task_request)

        result = pipeline.orchestrator.mark_as_read(response.data.id, 'someone-else')

        assert not result.success
        assert result.error_code == 'NOTIFICATION_NOT_FOUND'
        assert not pipeline.store.find_by_id(response.data.id).is_read

    def test_mark_as_read_unknown_id(self, pipeline):
        result = pipeline.orchestrator.mark_as_read('missing', 'u1')

        assert result.error_code == 'NOTIFICATION_NOT_FOUND'

    def test_get_user_notifications_filters_and_paginates(self, pipeline):
        for i in range(5):
            _send(pipeline, type_name='TASK_ASSIGNED' if i % 2 else 'MENTION')
            pipeline.clock.advance(1)
        _send(pipeline, user_id='other')

        response = pipeline.orchestrator.get_user_notifications(
            'u1',
            NotificationFilter(types=[NotificationType.MENTION]),
            Pagination(page=1, limit=2),
        )

        page = response.data
        assert response.success
        assert page.total == 3
        assert page.total_pages == 2
        assert len(page.items) == 2
        assert all(n.type == NotificationType.MENTION for n in page.items)
        assert page.items[0].created_at > page.items[1].created_at

    def test_get_user_notifications_unread_filter(self, pipeline):
        first = _send(pipeline).data
        _send(pipeline)
        pipeline.orchestrator.mark_as_read(first.id, 'u1')

        response = pipeline.orchestrator.get_user_notifications('u1', NotificationFilter(is_read=False))

        assert response.data.total == 1
        assert response.data.items[0].id != first.id
