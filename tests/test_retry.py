#!/usr/bin/env python3
"""
Unit tests for retry utilities.
"""

import os
import sys
import unittest
from unittest.mock import Mock, patch, call

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sso_sync.errors import NotFoundError, TransportError
from sso_sync.retry import (
    MaxRetriesExceeded, create_retry_callback, is_retryable_error, retry_call,
    retry_settings
)


@patch('sso_sync.retry.time.sleep')
class TestRetryCall(unittest.TestCase):
    """Test cases for retry_call."""

    def test_success_first_attempt(self, mock_sleep):
        func = Mock(return_value='ok')

        self.assertEqual(retry_call(func, ('a',), {'b': 1}), 'ok')
        func.assert_called_once_with('a', b=1)
        mock_sleep.assert_not_called()

    def test_success_after_failures(self, mock_sleep):
        func = Mock(side_effect=[ConnectionError("reset"), ConnectionError("reset"), 'ok'])

        result = retry_call(func, max_attempts=3, delay=1.0, backoff=2.0)

        self.assertEqual(result, 'ok')
        self.assertEqual(mock_sleep.call_args_list, [call(1.0), call(2.0)])

    def test_max_retries_exceeded(self, mock_sleep):
        error = TimeoutError("timed out")
        func = Mock(side_effect=error)

        with self.assertRaises(MaxRetriesExceeded) as cm:
            retry_call(func, max_attempts=2, delay=0.1)

        self.assertEqual(cm.exception.attempts, 2)
        self.assertIs(cm.exception.last_exception, error)
        self.assertEqual(func.call_count, 2)

    def test_uncaught_exception_type_propagates(self, mock_sleep):
        func = Mock(side_effect=ValueError("bad"))

        with self.assertRaises(ValueError):
            retry_call(func, exceptions=(ConnectionError,))
        self.assertEqual(func.call_count, 1)

    def test_should_retry_rejects(self, mock_sleep):
        func = Mock(side_effect=TransportError("HTTP 400", 400))

        with self.assertRaises(TransportError):
            retry_call(func, max_attempts=5, exceptions=(TransportError,), should_retry=is_retryable_error)
        self.assertEqual(func.call_count, 1)

    def test_on_retry_callback(self, mock_sleep):
        callback = Mock()
        error = ConnectionError("reset")
        func = Mock(side_effect=[error, 'ok'])

        retry_call(func, max_attempts=2, on_retry=callback)

        callback.assert_called_once_with(1, error)

    def test_failing_callback_does_not_break_retry(self, mock_sleep):
        func = Mock(side_effect=[ConnectionError("reset"), 'ok'])

        result = retry_call(func, max_attempts=2, on_retry=Mock(side_effect=RuntimeError("oops")))

        self.assertEqual(result, 'ok')


class TestIsRetryableError(unittest.TestCase):
    """Test cases for transient error detection."""

    def test_network_errors(self):
        self.assertTrue(is_retryable_error(ConnectionError("reset")))
        self.assertTrue(is_retryable_error(TimeoutError("slow")))

    def test_status_codes(self):
        self.assertTrue(is_retryable_error(TransportError("throttled", 429)))
        self.assertTrue(is_retryable_error(TransportError("unavailable", 503)))
        self.assertTrue(is_retryable_error(TransportError("odd", 599)))
        self.assertFalse(is_retryable_error(TransportError("forbidden", 403)))

    def test_status_code_wins_over_message(self):
        self.assertFalse(is_retryable_error(TransportError("connection reset", 400)))

    def test_message_patterns(self):
        self.assertTrue(is_retryable_error(TransportError("Connection error to host: refused")))
        self.assertTrue(is_retryable_error(Exception("Temporary failure in name resolution")))
        self.assertFalse(is_retryable_error(NotFoundError("user a@x.com")))


class TestHelpers(unittest.TestCase):

    def test_retry_settings(self):
        self.assertEqual(retry_settings({}), {'max_attempts': 4, 'delay': 5, 'backoff': 2.0})
        self.assertEqual(retry_settings({'max_retries': 0, 'retry_wait_seconds': 1, 'retry_backoff': 1.0}),
                         {'max_attempts': 1, 'delay': 1, 'backoff': 1.0})

    def test_retry_callback_logs(self):
        callback = create_retry_callback("SCIM GET /Users")
        with self.assertLogs('sso_sync.retry', level='WARNING') as logs:
            callback(2, ConnectionError("reset"))
        self.assertIn('SCIM GET /Users failed on attempt 2', logs.output[0])


if __name__ == '__main__':
    unittest.main()
