"""
Unit tests for the TTL cache and the report cache
"""
import unittest
from unittest.mock import patch

from core.cache import TTLCache
from engine import report_cache


class TestTTLCache(unittest.TestCase):
    def setUp(self):
        self.cache = TTLCache(default_ttl=60, name="test")

    def test_set_and_get(self):
        self.cache.set('a', {'price': 1})
        self.assertEqual(self.cache.get('a'), {'price': 1})
        self.assertTrue(self.cache.has('a'))

    def test_missing_key_returns_none(self):
        self.assertIsNone(self.cache.get('missing'))
        self.assertFalse(self.cache.has('missing'))

    def test_entry_expires(self):
        with patch('core.cache.time.time', return_value=1000.0):
            self.cache.set('a', 1)
        with patch('core.cache.time.time', return_value=1059.0):
            self.assertEqual(self.cache.get('a'), 1)
        with patch('core.cache.time.time', return_value=1061.0):
            self.assertIsNone(self.cache.get('a'))
        # Expired entries are dropped on read
        self.assertEqual(len(self.cache), 0)

    def test_custom_ttl_overrides_default(self):
        with patch('core.cache.time.time', return_value=1000.0):
            self.cache.set('short', 1, ttl=5)
            self.cache.set('long', 2)
        with patch('core.cache.time.time', return_value=1010.0):
            self.assertIsNone(self.cache.get('short'))
            self.assertEqual(self.cache.get('long'), 2)

    def test_max_size_evicts_oldest(self):
        cache = TTLCache(default_ttl=60, max_size=2)
        cache.set('a', 1)
        cache.set('b', 2)
        cache.set('c', 3)
        self.assertIsNone(cache.get('a'))
        self.assertEqual(cache.get('b'), 2)
        self.assertEqual(cache.get('c'), 3)

    def test_overwrite_does_not_evict(self):
        cache = TTLCache(default_ttl=60, max_size=2)
        cache.set('a', 1)
        cache.set('b', 2)
        cache.set('a', 10)
        self.assertEqual(cache.get('a'), 10)
        self.assertEqual(cache.get('b'), 2)

    def test_delete_and_clear(self):
        self.cache.set('a', 1)
        self.cache.set('b', 2)
        self.assertTrue(self.cache.delete('a'))
        self.assertFalse(self.cache.delete('a'))
        self.cache.clear()
        self.assertEqual(len(self.cache), 0)

    def test_clear_by_prefix(self):
        self.cache.set('historical:AAPL:1d', 1)
        self.cache.set('historical:AAPL:1wk', 2)
        self.cache.set('historical:MSFT:1d', 3)
        removed = self.cache.clear_by_prefix('historical:AAPL:')
        self.assertEqual(removed, 2)
        self.assertEqual(self.cache.keys(), ['historical:MSFT:1d'])

    def test_cleanup_expired_and_stats(self):
        with patch('core.cache.time.time', return_value=1000.0):
            self.cache.set('old', 1, ttl=10)
            self.cache.set('new', 2, ttl=100)
        with patch('core.cache.time.time', return_value=1050.0):
            stats = self.cache.stats()
            self.assertEqual(stats['total_entries'], 2)
            self.assertEqual(stats['valid_entries'], 1)
            self.assertEqual(stats['expired_entries'], 1)
            self.assertEqual(self.cache.cleanup_expired(), 1)
        self.assertEqual(self.cache.keys(), ['new'])


class TestReportCache(unittest.TestCase):
    def tearDown(self):
        report_cache.clear_all_cache()

    def test_round_trip_and_clear(self):
        report_cache.set_cached('fmp:all:AAPL:annual', {'success': True})
        self.assertEqual(report_cache.get_cached('fmp:all:AAPL:annual'), {'success': True})
        report_cache.clear_cache('fmp:all:AAPL:annual')
        self.assertIsNone(report_cache.get_cached('fmp:all:AAPL:annual'))

    def test_stats_report_ttl(self):
        stats = report_cache.get_cache_stats()
        self.assertEqual(stats['name'], 'report')
        self.assertEqual(stats['ttl_seconds'], 300)


if __name__ == '__main__':
    unittest.main()
