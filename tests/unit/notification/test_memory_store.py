#!/usr/bin/env python3
"""Tests for the in-memory notification store."""

import pytest

from notification.exceptions import InvalidTransition, NotificationNotFound, PersistenceError
from notification.models import Notification, NotificationStatus, NotificationType
from notification.store import InMemoryNotificationStore


@pytest.fixture
def store():
    return InMemoryNotificationStore()


@pytest.fixture
def notification():
    return Notification(user_id='u1', type=NotificationType.TASK_ASSIGNED, title='T', message='M')


class TestInMemoryNotificationStore:

    def test_create_and_find(self, store, notification):
        store.create(notification)

        found = store.find_by_id(notification.id)
        assert found == notification
        assert found is not notification

    def test_duplicate_id_is_rejected(self, store, notification):
        store.create(notification)

        with pytest.raises(PersistenceError):
            store.create(notification)

    def test_find_missing_returns_none(self, store):
        assert store.find_by_id('missing') is None

    def test_delivering_increments_attempts_and_records_history(self, store, notification):
        store.create(notification)

        updated = store.update_status(notification.id, NotificationStatus.DELIVERING, channel='email')

        assert updated.delivery_attempts == 1
        assert updated.attempt_history[-1].attempt == 1
        assert updated.attempt_history[-1].channel == 'email'
        assert updated.updated_at >= notification.updated_at

    def test_retry_records_error(self, store, notification):
        store.create(notification)
        store.update_status(notification.id, NotificationStatus.DELIVERING)

        updated = store.update_status(notification.id, NotificationStatus.PENDING,
                                      channel='email', error_message='timeout')

        assert updated.status == NotificationStatus.PENDING
        assert updated.error_message == 'timeout'
        assert updated.attempt_history[-1].error_message == 'timeout'

    def test_delivered_clears_error(self, store, notification):
        store.create(notification)
        store.update_status(notification.id, NotificationStatus.DELIVERING)
        store.update_status(notification.id, NotificationStatus.PENDING, error_message='timeout')
        store.update_status(notification.id, NotificationStatus.DELIVERING)

        updated = store.update_status(notification.id, NotificationStatus.DELIVERED)

        assert updated.error_message is None
        assert updated.delivery_attempts == 2

    def test_invalid_transition_leaves_state_unchanged(self, store, notification):
        store.create(notification)

        with pytest.raises(InvalidTransition):
            store.update_status(notification.id, NotificationStatus.DELIVERED)

        assert store.find_by_id(notification.id).status == NotificationStatus.PENDING

    def test_update_missing(self, store):
        with pytest.raises(NotificationNotFound):
            store.update_status('missing', NotificationStatus.DELIVERING)

    def test_mark_as_read_is_idempotent(self, store, notification):
        store.create(notification)
        first = store.mark_as_read(notification.id, notification.created_at)

        again = store.mark_as_read(notification.id, first.read_at.replace(year=2099))

        assert again.read_at == first.read_at
