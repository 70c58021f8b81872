"""
Unit tests for the Yahoo Finance market data service (yfinance mocked)
"""
import unittest
from datetime import datetime
from unittest.mock import patch, MagicMock

from engine.market_data import MarketDataService


AAPL_INFO = {
    'symbol': 'AAPL',
    'shortName': 'Apple Inc.',
    'longName': 'Apple Inc.',
    'regularMarketPrice': 190.0,
    'regularMarketPreviousClose': 180.0,
    'regularMarketVolume': 1000,
    'marketCap': 3e12,
    'trailingPE': 30.0,
    'trailingEps': 6.3,
    'fiftyTwoWeekHigh': 200.0,
    'fiftyTwoWeekLow': 150.0,
    'dividendYield': float('nan'),
    'sector': 'Technology',
    'companyOfficers': [{'name': 'Tim Cook'}],
    'currency': 'USD',
}


class FakeFrame:
    """Enough of a DataFrame for get_historical."""

    def __init__(self, rows):
        self.rows = rows
        self.empty = not rows

    def iterrows(self):
        return iter(self.rows)


class TestMarketDataService(unittest.TestCase):
    def setUp(self):
        self.service = MarketDataService()
        self.yf_patch = patch('engine.market_data.yf')
        self.yf = self.yf_patch.start()
        self.ticker = MagicMock()
        self.ticker.info = dict(AAPL_INFO)
        self.yf.Ticker.return_value = self.ticker

    def tearDown(self):
        self.yf_patch.stop()

    def test_quote(self):
        result = self.service.get_quote('aapl')
        self.assertTrue(result['success'])
        self.assertFalse(result['cached'])
        quote = result['data']
        self.assertEqual(quote['symbol'], 'AAPL')
        self.assertEqual(quote['price'], 190.0)
        self.assertEqual(quote['change'], 10.0)
        self.assertAlmostEqual(quote['changePercent'], 10 / 180 * 100)
        self.assertEqual(quote['eps'], 6.3)
        self.assertIsNone(quote['dividendYield'])
        self.assertEqual(quote['exchange'], 'UNKNOWN')

    def test_quote_is_cached(self):
        self.service.get_quote('AAPL')
        again = self.service.get_quote('AAPL')
        self.assertTrue(again['cached'])
        self.assertEqual(self.yf.Ticker.call_count, 1)

        self.service.clear_symbol_cache('aapl')
        self.assertFalse(self.service.get_quote('AAPL')['cached'])

    def test_quote_without_price(self):
        self.ticker.info = {'symbol': 'NOPE'}
        result = self.service.get_quote('NOPE')
        self.assertFalse(result['success'])
        self.assertIn('No data found', result['error'])
        self.assertIsNone(self.service.get_price('NOPE'))

    def test_quote_upstream_failure(self):
        self.yf.Ticker.side_effect = RuntimeError('boom')
        result = self.service.get_quote('AAPL')
        self.assertFalse(result['success'])
        self.assertEqual(result['error'], 'boom')

    def test_multiple_quotes_skip_failures(self):
        def ticker(symbol):
            mock = MagicMock()
            mock.info = dict(AAPL_INFO, symbol=symbol) if symbol != 'BAD' else {}
            return mock

        self.yf.Ticker.side_effect = ticker
        result = self.service.get_multiple_quotes(['AAPL', 'BAD', 'MSFT'])
        self.assertEqual([q['symbol'] for q in result['data']], ['AAPL', 'MSFT'])
        self.assertFalse(self.service.get_multiple_quotes([])['success'])

    def test_historical(self):
        self.ticker.history.return_value = FakeFrame([
            (datetime(2026, 1, 2), {'Open': 1.0, 'High': 2.0, 'Low': 0.5, 'Close': 1.5, 'Volume': 100.0}),
            (datetime(2026, 1, 3), {'Open': 1.5, 'High': 2.5, 'Low': 1.0, 'Close': 2.0, 'Volume': 200.0,
                                    'Adj Close': 1.9}),
        ])
        result = self.service.get_historical('AAPL', interval='1h', range='5d')
        self.assertTrue(result['success'])
        points = result['data']['data']
        self.assertEqual(points[0]['date'], '2026-01-02')
        self.assertEqual(points[0]['adjClose'], 1.5)
        self.assertEqual(points[1]['adjClose'], 1.9)
        self.assertEqual(points[1]['volume'], 200)
        self.assertEqual(result['data']['interval'], '1h')
        # Intraday intervals fall back to daily bars
        self.assertEqual(self.ticker.history.call_args.kwargs['interval'], '1d')

    def test_historical_empty(self):
        self.ticker.history.return_value = FakeFrame([])
        result = self.service.get_historical('AAPL')
        self.assertFalse(result['success'])
        self.assertIn('No historical data', result['error'])

    def test_profile(self):
        result = self.service.get_profile('AAPL')
        self.assertEqual(result['data']['ceo'], 'Tim Cook')
        self.assertEqual(result['data']['sector'], 'Technology')
        self.assertEqual(result['data']['industry'], 'Unknown')

    def test_key_statistics(self):
        result = self.service.get_key_statistics('AAPL')
        self.assertEqual(result['data']['trailingPE'], 30.0)
        self.assertIsNone(result['data']['forwardPE'])
        self.assertTrue(self.service.get_key_statistics('AAPL')['cached'])

    def test_search(self):
        self.yf.Search.return_value.quotes = [
            {'symbol': 'AAPL', 'shortname': 'Apple', 'quoteType': 'EQUITY', 'exchange': 'NMS'},
            {'symbol': 'AAPL.OPT', 'quoteType': 'OPTION'},
            {'symbol': 'APLE', 'quoteType': 'ETF'},
        ]
        result = self.service.search('apple', limit=5)
        self.assertEqual([r['symbol'] for r in result['data']], ['AAPL', 'APLE'])
        self.assertEqual(result['data'][1]['score'], 90)
        self.assertEqual(result['data'][1]['shortName'], 'APLE')

    def test_search_limit_is_clamped(self):
        self.yf.Search.return_value.quotes = [
            {'symbol': f'S{i}', 'quoteType': 'EQUITY'} for i in range(60)
        ]
        result = self.service.search('s', limit=0)
        self.assertEqual(self.yf.Search.call_args.kwargs['max_results'], 1)
        self.assertEqual(len(result['data']), 1)

        result = self.service.search('s', limit=500)
        self.assertEqual(self.yf.Search.call_args.kwargs['max_results'], 50)
        self.assertEqual(len(result['data']), 50)

        self.service.search('s', limit=None)
        self.assertEqual(self.yf.Search.call_args.kwargs['max_results'], 25)

    def test_search_requires_query(self):
        self.assertFalse(self.service.search('  ')['success'])

    def test_market_indices_tolerate_failures(self):
        def ticker(symbol):
            if symbol == '^VIX':
                raise RuntimeError('down')
            mock = MagicMock()
            mock.info = {'regularMarketPrice': 100.0, 'regularMarketChange': 1.0,
                         'regularMarketChangePercent': 1.0}
            return mock

        self.yf.Ticker.side_effect = ticker
        result = self.service.get_market_indices()
        self.assertEqual(len(result['data']), 5)
        vix = [i for i in result['data'] if i['symbol'] == '^VIX'][0]
        self.assertEqual(vix['price'], 0)
        self.assertEqual(result['data'][0]['price'], 100.0)

    def test_symbol_news(self):
        self.ticker.news = [
            {'content': {'title': 'Apple ships', 'summary': 'New phones', 'pubDate': '2026-10-16T12:00:00Z',
                         'provider': {'displayName': 'Wire'}, 'canonicalUrl': {'url': 'https://example.com/a'}}},
            {'title': 'Older format', 'publisher': 'Desk', 'link': 'https://example.com/b',
             'providerPublishTime': 1760000000},
            {'content': {'summary': 'no title'}},
        ]
        result = self.service.get_news('aapl')
        articles = result['data']
        self.assertEqual(len(articles), 2)
        self.assertEqual(articles[0]['publisher'], 'Wire')
        self.assertEqual(articles[0]['url'], 'https://example.com/a')
        self.assertEqual(articles[1]['url'], 'https://example.com/b')
        self.assertTrue(articles[1]['publishedAt'])
        self.assertTrue(self.service.get_news('AAPL')['cached'])

    def test_market_news(self):
        self.yf.Search.return_value.news = [{'title': f'Story {i}', 'link': f'https://example.com/{i}'}
                                           for i in range(5)]
        result = self.service.get_news(limit=3)
        self.assertEqual(len(result['data']), 3)
        self.assertEqual(self.yf.Search.call_args.kwargs['news_count'], 3)

    def test_news_error(self):
        self.yf.Ticker.side_effect = RuntimeError('offline')
        result = self.service.get_news('AAPL')
        self.assertFalse(result['success'])
        self.assertEqual(result['error'], 'offline')

    def test_cache_stats(self):
        self.service.get_quote('AAPL')
        stats = self.service.cache_stats()
        self.assertEqual(len(stats), 5)
        self.service.clear_all_caches()
        self.assertFalse(self.service.get_quote('AAPL')['cached'])


if __name__ == '__main__':
    unittest.main()
