"""
Unit tests for the outbound sliding-window rate limiter
"""
import unittest
from unittest.mock import patch

from core.rate_limit import RateLimiter, get_client_identifier


class TestRateLimiter(unittest.TestCase):
    def test_allows_up_to_limit(self):
        limiter = RateLimiter(max_requests=3, window_seconds=60)
        with patch('core.rate_limit.time.time', return_value=1000.0):
            for _ in range(3):
                self.assertTrue(limiter.can_make_request())
                limiter.record_request()
            self.assertFalse(limiter.can_make_request())
            self.assertEqual(limiter.remaining(), 0)

    def test_window_slides(self):
        limiter = RateLimiter(max_requests=2, window_seconds=60)
        with patch('core.rate_limit.time.time', return_value=1000.0):
            limiter.record_request()
        with patch('core.rate_limit.time.time', return_value=1030.0):
            limiter.record_request()
            self.assertFalse(limiter.can_make_request())
        with patch('core.rate_limit.time.time', return_value=1061.0):
            # First request fell out of the window
            self.assertTrue(limiter.can_make_request())
            self.assertEqual(limiter.remaining(), 1)

    def test_wait_for_slot_claims_free_slot(self):
        limiter = RateLimiter(max_requests=1, window_seconds=60)
        self.assertTrue(limiter.wait_for_slot(timeout=0.5))
        self.assertEqual(limiter.remaining(), 0)

    def test_wait_for_slot_times_out(self):
        limiter = RateLimiter(max_requests=1, window_seconds=60)
        limiter.record_request()
        self.assertFalse(limiter.wait_for_slot(poll_interval=0.01, timeout=0.05))

    def test_reset(self):
        limiter = RateLimiter(max_requests=1, window_seconds=60)
        limiter.record_request()
        limiter.reset()
        self.assertTrue(limiter.can_make_request())


class TestClientIdentifier(unittest.TestCase):
    def test_prefers_session_cookie(self):
        request = type('Req', (), {'cookies': {'session_id': 'abc'}})()
        self.assertEqual(get_client_identifier(request), 'session:abc')

    def test_falls_back_to_ip(self):
        request = type('Req', (), {'cookies': {}})()
        with patch('core.rate_limit.get_remote_address', return_value='10.0.0.1'):
            self.assertEqual(get_client_identifier(request), 'ip:10.0.0.1')


if __name__ == '__main__':
    unittest.main()
