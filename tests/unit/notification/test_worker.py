#!/usr/bin/env python3
"""Tests for the worker entrypoint."""

import unittest
from unittest.mock import MagicMock, patch

from redis.exceptions import ConnectionError as RedisConnectionError

from core.app_context import get_app_context, set_app_context
from core.config_loader import AppConfig
from notification import worker


class TestStartWorker(unittest.TestCase):

    def tearDown(self):
        set_app_context(None)

    @patch('notification.worker.load_config')
    def test_requires_rq_backend(self, mock_load):
        mock_load.return_value = AppConfig(queue={"backend": "memory"})

        self.assertEqual(worker.start_worker('config.yaml'), 1)

    @patch('notification.worker.AppContext')
    @patch('notification.worker.load_config')
    def test_consumes_destination(self, mock_load, mock_context_class):
        mock_load.return_value = AppConfig()
        ctx = mock_context_class.build.return_value
        seen = {}
        ctx.transport.consume.side_effect = lambda *a, **kw: seen.update(ctx=get_app_context())

        code = worker.start_worker('config.yaml', burst=True, destination='alerts')

        self.assertEqual(code, 0)
        ctx.transport.consume.assert_called_once_with('alerts', ctx.orchestrator.handle_delivery, burst=True)
        self.assertIs(seen['ctx'], ctx)

    @patch('notification.worker.AppContext')
    @patch('notification.worker.load_config')
    def test_redis_error_exit_code(self, mock_load, mock_context_class):
        mock_load.return_value = AppConfig()
        mock_context_class.build.side_effect = RedisConnectionError("refused")

        self.assertEqual(worker.start_worker('config.yaml'), 1)

    @patch('notification.worker.AppContext')
    @patch('notification.worker.load_config')
    def test_keyboard_interrupt_stops_cleanly(self, mock_load, mock_context_class):
        mock_load.return_value = AppConfig()
        mock_context_class.build.return_value.transport.consume.side_effect = KeyboardInterrupt

        self.assertEqual(worker.start_worker('config.yaml'), 0)


class TestMain(unittest.TestCase):

    @patch('notification.worker.start_worker', return_value=0)
    @patch('notification.worker.logging.basicConfig')
    def test_parses_arguments(self, mock_basic_config, mock_start):
        code = worker.main(['--burst', '--config', 'other.yaml', '--destination', 'alerts'])

        self.assertEqual(code, 0)
        mock_start.assert_called_once_with(config_path='other.yaml', burst=True, destination='alerts')

    @patch('notification.worker.start_worker', return_value=0)
    @patch('notification.worker.logging.basicConfig')
    def test_defaults(self, mock_basic_config, mock_start):
        worker.main([])

        mock_start.assert_called_once_with(config_path='config.yaml', burst=False, destination=None)


if __name__ == '__main__':
    unittest.main()
