"""
Unit tests for API clients (Polygon, FMP, FRED and OpenRouter)
"""
import unittest
from unittest.mock import Mock, patch

import requests

from clients.polygon_client import PolygonClient
from clients.fmp_client import FMPClient
from clients.fred_client import FredClient, parse_value
from clients.openrouter_client import (
    OpenRouterClient, OpenRouterError, FALLBACK_MODEL,
    estimate_tokens, estimate_message_tokens, estimate_cost, model_display_name,
)
from engine import report_cache


def json_response(payload, status_code=200):
    response = Mock()
    response.status_code = status_code
    response.ok = status_code < 400
    response.reason = 'OK' if status_code < 400 else 'Error'
    response.json.return_value = payload
    return response


class TestPolygonClient(unittest.TestCase):
    def setUp(self):
        self.client = PolygonClient(api_key='test_key', min_interval=0)

    def test_not_configured(self):
        client = PolygonClient(api_key='')
        self.assertFalse(client.is_configured())
        result = client.get_quote('AAPL')
        self.assertFalse(result['success'])
        self.assertIn('POLYGON_API_KEY', result['error'])

    @patch('clients.polygon_client.requests.get')
    def test_quote(self, mock_get):
        mock_get.side_effect = [
            json_response({'results': [{'o': 100.0, 'h': 112.0, 'l': 99.0, 'c': 110.0, 'v': 5000, 't': 1}]}),
            json_response({'results': {'name': 'Apple Inc.'}}),
        ]
        result = self.client.get_quote('aapl')
        self.assertTrue(result['success'])
        self.assertEqual(result['data']['symbol'], 'AAPL')
        self.assertEqual(result['data']['name'], 'Apple Inc.')
        self.assertEqual(result['data']['change'], 10.0)
        self.assertAlmostEqual(result['data']['changePercent'], 10.0)
        self.assertEqual(mock_get.call_args_list[0].kwargs['params']['apiKey'], 'test_key')

    @patch('clients.polygon_client.requests.get')
    def test_quote_survives_missing_details(self, mock_get):
        mock_get.side_effect = [
            json_response({'results': [{'o': 10.0, 'h': 10.0, 'l': 10.0, 'c': 10.0, 'v': 1}]}),
            json_response({}, status_code=404),
        ]
        result = self.client.get_quote('XYZ')
        self.assertTrue(result['success'])
        self.assertEqual(result['data']['name'], 'XYZ')

    @patch('clients.polygon_client.time')
    @patch('clients.polygon_client.requests.get')
    def test_calls_are_spaced_by_min_interval(self, mock_get, mock_time):
        mock_get.side_effect = [
            json_response({'results': [{'o': 10.0, 'h': 10.0, 'l': 10.0, 'c': 10.0, 'v': 1}]}),
            json_response({'results': {'name': 'Xyz Corp'}}),
        ]
        # first call: check + stamp, second call: check 3s later + stamp after sleeping
        mock_time.time.side_effect = [1000.0, 1000.0, 1003.0, 1012.0]
        client = PolygonClient(api_key='test_key')
        self.assertEqual(client.min_interval, 12.0)

        result = client.get_quote('XYZ')
        self.assertTrue(result['success'])
        mock_time.sleep.assert_called_once_with(9.0)
        self.assertEqual(client._last_call, 1012.0)

    @patch('clients.polygon_client.requests.get')
    def test_quote_http_error(self, mock_get):
        mock_get.return_value = json_response({}, status_code=403)
        result = self.client.get_quote('AAPL')
        self.assertFalse(result['success'])
        self.assertIn('403', result['error'])

    @patch('clients.polygon_client.requests.get')
    def test_historical(self, mock_get):
        mock_get.return_value = json_response({'results': [
            {'t': 1767571200000, 'o': 1, 'h': 2, 'l': 0.5, 'c': 1.5, 'v': 10},
        ]})
        result = self.client.get_historical('AAPL', '2026-01-01', '2026-01-31')
        self.assertTrue(result['success'])
        self.assertEqual(result['data'][0]['date'], '2026-01-05')

        self.assertFalse(self.client.get_historical('AAPL', '2026-01-01', '2026-01-31', 'hour')['success'])

    @patch('clients.polygon_client.requests.get')
    def test_search(self, mock_get):
        mock_get.return_value = json_response({'results': [
            {'ticker': 'AAPL', 'name': 'Apple Inc.', 'market': 'stocks', 'type': 'CS'},
        ]})
        result = self.client.search('apple')
        self.assertEqual(result['data'][0]['ticker'], 'AAPL')


class TestFMPClient(unittest.TestCase):
    def setUp(self):
        report_cache.clear_all_cache()
        self.client = FMPClient(api_key='test_key')

    def test_not_configured(self):
        result = FMPClient(api_key='').get_income_statement('AAPL')
        self.assertFalse(result['success'])
        self.assertIn('FMP_API_KEY', result['error'])

    def test_invalid_period(self):
        result = self.client.get_balance_sheet('AAPL', period='monthly')
        self.assertFalse(result['success'])

    @patch('clients.fmp_client.requests.get')
    def test_error_message_in_200(self, mock_get):
        mock_get.return_value = json_response({'Error Message': 'Invalid API KEY.'})
        result = self.client.get_income_statement('AAPL')
        self.assertFalse(result['success'])
        self.assertEqual(result['error'], 'Invalid API KEY.')

    @patch('clients.fmp_client.requests.get')
    def test_statement_limits(self, mock_get):
        mock_get.return_value = json_response([{'revenue': 1}])
        self.client.get_income_statement('aapl', period='quarter')
        url = mock_get.call_args.args[0]
        params = mock_get.call_args.kwargs['params']
        self.assertTrue(url.endswith('/income-statement/AAPL'))
        self.assertEqual(params['limit'], 4)
        self.assertEqual(params['apikey'], 'test_key')

    @patch('clients.fmp_client.requests.get')
    def test_all_financials_partial(self, mock_get):
        def fake_get(url, params=None, timeout=None):
            if '/ratios/' in url:
                return json_response({}, status_code=500)
            if '/profile/' in url:
                return json_response([{'symbol': 'AAPL', 'mktCap': 1000}])
            return json_response([{'revenue': 100}])

        mock_get.side_effect = fake_get
        result = self.client.get_all_financials('AAPL')
        self.assertTrue(result['success'])
        self.assertIn('ratios', result['partial_errors'])
        self.assertEqual(result['data']['profile']['symbol'], 'AAPL')

        calls = mock_get.call_count
        self.assertIs(self.client.get_all_financials('AAPL'), result)
        self.assertEqual(mock_get.call_count, calls)

    @patch('clients.fmp_client.requests.get')
    def test_all_financials_total_failure(self, mock_get):
        mock_get.return_value = json_response({}, status_code=500)
        result = self.client.get_all_financials('FAIL')
        self.assertFalse(result['success'])
        self.assertIsNone(report_cache.get_cached('fmp:all:FAIL:annual'))

    def test_to_stock_data(self):
        financials = {
            'income_statement': [
                {'revenue': 200.0, 'netIncome': 20.0, 'eps': 2.0, 'incomeTaxExpense': 5.0,
                 'incomeBeforeTax': 25.0},
                {'revenue': 150.0, 'netIncome': 10.0},
            ],
            'balance_sheet': [{'totalAssets': 400.0, 'totalStockholdersEquity': 200.0,
                               'shortTermDebt': 10.0, 'longTermDebt': 40.0}],
            'cash_flow': [{'capitalExpenditure': -30.0, 'dividendsPaid': -8.0, 'freeCashFlow': 50.0},
                          {'freeCashFlow': 40.0}, {'freeCashFlow': None}],
            'key_metrics': [{'bookValuePerShare': 12.0}],
            'ratios': [{'dividendYield': 0.02, 'netProfitMargin': 0.1}],
            'profile': {'symbol': 'ACME', 'price': 40.0, 'mktCap': 4000.0},
        }
        data = FMPClient.to_stock_data(financials)
        self.assertEqual(data.symbol, 'ACME')
        self.assertEqual(data.current_price, 40.0)
        self.assertEqual(data.revenue_previous_year, 150.0)
        self.assertEqual(data.total_debt, 50.0)
        self.assertEqual(data.capital_expenditures, 30.0)
        self.assertEqual(data.dividends_paid, 8.0)
        self.assertAlmostEqual(data.dividend_yield, 2.0)
        self.assertAlmostEqual(data.net_margin, 10.0)
        self.assertEqual(data.income_before_tax, 25.0)
        # Newest row comes first in the feed
        self.assertEqual(data.free_cash_flow_history, [40.0, 50.0])

        quoted = FMPClient.to_stock_data(financials, {'price': 41.0, 'marketCap': 4100.0})
        self.assertEqual(quoted.current_price, 41.0)
        self.assertEqual(quoted.market_cap, 4100.0)


class TestFredClient(unittest.TestCase):
    def setUp(self):
        self.client = FredClient(api_key='test_key')

    def test_parse_value(self):
        self.assertIsNone(parse_value('.'))
        self.assertIsNone(parse_value('abc'))
        self.assertEqual(parse_value('4.5'), 4.5)

    @patch('clients.fred_client.requests.get')
    def test_latest_indicator(self, mock_get):
        mock_get.return_value = json_response({'observations': [
            {'date': '2026-02-01', 'value': '4.1'},
            {'date': '2026-01-01', 'value': '4.0'},
            {'date': '2025-12-01', 'value': '.'},
        ]})
        indicator = self.client.get_series('UNRATE')
        self.assertEqual(indicator['name'], 'Unemployment Rate')
        self.assertEqual(indicator['value'], 4.1)
        self.assertEqual(indicator['previousValue'], 4.0)
        self.assertAlmostEqual(indicator['change'], 0.1)
        self.assertAlmostEqual(indicator['changePct'], 2.5)
        self.assertEqual(indicator['date'], '2026-02-01')

        self.client.get_series('UNRATE')
        self.assertEqual(mock_get.call_count, 1)

    @patch('clients.fred_client.requests.get')
    def test_cpi_is_year_over_year(self, mock_get):
        # Newest first, as FRED returns with sort_order=desc
        observations = [{'date': f'2026-01-{31 - i:02d}', 'value': '100'} for i in range(13)]
        observations[0]['value'] = '103'
        mock_get.return_value = json_response({'observations': observations})

        indicator = self.client.get_series('CPIAUCSL')
        self.assertEqual(indicator['value'], 3.0)
        self.assertEqual(indicator['previousValue'], 100.0)
        self.assertEqual(indicator['unit'], '%')
        self.assertEqual(mock_get.call_args.kwargs['params']['limit'], 15)

    def test_not_configured(self):
        client = FredClient(api_key='')
        with self.assertRaises(RuntimeError):
            client.get_series('UNRATE')
        indicators = client.get_all_indicators()
        self.assertIsNone(indicators['unemployment'])
        self.assertIn('lastUpdated', indicators)
        self.assertEqual(client.get_risk_free_rate(), 0.04)

    @patch('clients.fred_client.requests.get')
    def test_risk_free_rate(self, mock_get):
        mock_get.return_value = json_response({'observations': [{'date': '2026-10-15', 'value': '4.25'}]})
        self.assertAlmostEqual(self.client.get_risk_free_rate(), 0.0425)
        self.assertEqual(mock_get.call_args.kwargs['params']['series_id'], 'DGS10')

    @patch('clients.fred_client.requests.get')
    def test_risk_free_rate_falls_back_on_error(self, mock_get):
        mock_get.return_value = json_response({}, status_code=500)
        self.assertEqual(self.client.get_risk_free_rate(default=0.045), 0.045)


class TestOpenRouterClient(unittest.TestCase):
    def setUp(self):
        self.client = OpenRouterClient(api_key='test_key')
        self.client._db = Mock()
        self.client.session = Mock()

    def completion(self, model='anthropic/claude-sonnet-4.5'):
        return json_response({
            'id': 'gen-1',
            'model': model,
            'choices': [{'message': {'content': 'Hello'}, 'finish_reason': 'stop'}],
            'usage': {'prompt_tokens': 1000, 'completion_tokens': 500},
        })

    def test_helpers(self):
        self.assertEqual(estimate_tokens('abcdefgh'), 2)
        self.assertEqual(estimate_tokens(''), 0)
        self.assertEqual(estimate_message_tokens([{'role': 'user', 'content': 'abcd'}]), 8)
        self.assertAlmostEqual(estimate_cost('openai/gpt-4o', 1_000_000, 1_000_000), 20.0)
        self.assertEqual(estimate_cost('unknown/model', 10, 10), 0.0)
        self.assertEqual(model_display_name('openai/gpt-4o'), 'GPT-4o')
        self.assertEqual(model_display_name('acme/custom-1'), 'custom-1')

    def test_not_configured(self):
        client = OpenRouterClient(api_key='')
        with self.assertRaises(OpenRouterError) as ctx:
            client.chat_completion([{'role': 'user', 'content': 'hi'}])
        self.assertEqual(ctx.exception.status_code, 401)

    def test_chat_completion_logs_cost(self):
        self.client.session.post.return_value = self.completion()
        result = self.client.chat_completion([{'role': 'user', 'content': 'hi'}], user_id=7)

        self.assertEqual(result['content'], 'Hello')
        self.assertEqual(result['usage']['total_tokens'], 1500)
        self.assertAlmostEqual(result['estimated_cost'], 0.008 + 0.012)
        body = self.client.session.post.call_args.kwargs['json']
        self.assertFalse(body['stream'])
        self.client._db.log_api_cost.assert_called_once()
        self.assertEqual(self.client._db.log_api_cost.call_args.args[-1], 7)

    def test_fallback_on_retryable_error(self):
        self.client.session.post.side_effect = [
            json_response({'error': {'message': 'Rate limited', 'code': 429}}, status_code=429),
            self.completion(FALLBACK_MODEL),
        ]
        result = self.client.chat_with_fallback([{'role': 'user', 'content': 'hi'}])
        self.assertEqual(result['model'], FALLBACK_MODEL)
        second_body = self.client.session.post.call_args_list[1].kwargs['json']
        self.assertEqual(second_body['model'], FALLBACK_MODEL)

    def test_no_fallback_on_client_error(self):
        self.client.session.post.return_value = json_response(
            {'error': {'message': 'Bad request'}}, status_code=400)
        with self.assertRaises(OpenRouterError) as ctx:
            self.client.chat_with_fallback([{'role': 'user', 'content': 'hi'}])
        self.assertEqual(ctx.exception.status_code, 400)
        self.assertFalse(ctx.exception.retryable)
        self.assertEqual(self.client.session.post.call_count, 1)

    def test_network_errors_are_retryable(self):
        self.client.session.post.side_effect = requests.ConnectionError('reset')
        with self.assertRaises(OpenRouterError) as ctx:
            self.client.chat_completion([{'role': 'user', 'content': 'hi'}])
        self.assertTrue(ctx.exception.retryable)
        self.assertIsNone(ctx.exception.status_code)

    def test_connection_check(self):
        self.client.session.post.return_value = json_response(
            {'error': {'message': 'Invalid key'}}, status_code=401)
        result = self.client.test_connection()
        self.assertFalse(result['success'])
        self.assertEqual(result['status_code'], 401)


if __name__ == '__main__':
    unittest.main()
