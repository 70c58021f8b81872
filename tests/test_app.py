"""
API tests through FastAPI's TestClient against a temporary database
"""
import asyncio
import os
import tempfile
import threading
import time
import unittest
from datetime import date, timedelta
from pathlib import Path
from unittest.mock import patch, Mock

import httpx
from fastapi.testclient import TestClient

import app as app_module
from core.auth import admin_auth, auth_manager
from core.config import CREDIT_REQUIRED_ENDPOINTS
from core.credits import credit_service
from core.database import Database
from core.metering import metering
from core.promo import promo_service
from core.rate_limit import limiter
from clients.fmp_client import fmp_client
from clients.fred_client import fred_client
from clients.openrouter_client import openrouter_client
from engine.admin_service import admin_service
from engine.alert_manager import alert_manager
from engine.contact_messages import contact_messages
from engine.portfolio_service import portfolio_service
from engine.watchlists import watchlist_service


class FakeMarket:
    def __init__(self, prices):
        self.prices = prices
        self.statistics = {}
        self.histories = {}

    def get_quote(self, symbol):
        symbol = symbol.upper()
        if symbol not in self.prices:
            return {'success': False, 'error': f'No data found for symbol: {symbol}'}
        return {'success': True, 'cached': False,
                'data': {'symbol': symbol, 'shortName': symbol, 'price': self.prices[symbol],
                         'change': 1.0, 'changePercent': 1.0}}

    def search(self, query, limit=25):
        return {'success': True, 'data': [{'symbol': 'AAPL', 'shortName': 'Apple', 'score': 100}]}

    def get_profile(self, symbol):
        return {'success': False, 'error': 'No profile'}

    def get_key_statistics(self, symbol):
        return {'success': True, 'data': self.statistics.get(symbol.upper(), {})}

    def get_historical(self, symbol, interval='1d', range='1mo', start=None, end=None):
        closes = self.histories.get(symbol.upper())
        if closes is None:
            return {'success': False, 'error': f'No historical data found for symbol: {symbol}'}
        first = date(2025, 10, 1)
        points = [{'date': (first + timedelta(days=i)).isoformat(), 'close': c, 'volume': 1000}
                  for i, c in enumerate(closes)]
        return {'success': True, 'data': {'symbol': symbol.upper(), 'data': points}}

    def get_news(self, symbol=None, limit=10):
        articles = [{'title': f'Headline {i}', 'publisher': 'Wire', 'url': f'https://example.com/{i}'}
                    for i in range(20)]
        return {'success': True, 'data': articles[:limit]}


def closes_from_returns(returns, start=100.0):
    closes = [start]
    for r in returns:
        closes.append(closes[-1] * (1 + r))
    return closes


class ApiTestCase(unittest.TestCase):
    def setUp(self):
        self.temp_db = tempfile.NamedTemporaryFile(delete=False, suffix='.db')
        self.temp_db.close()
        self.db = Database(Path(self.temp_db.name))
        self.market = FakeMarket({'AAPL': 150.0})

        self.patches = [
            patch('core.auth.db', self.db),
            patch('app.db', self.db),
            patch('app.market_data', self.market),
            patch('app.audit_log', Mock()),
            patch.object(limiter, 'enabled', False),
            patch.object(admin_auth, 'username', 'root'),
            patch.object(admin_auth, 'password', 's3cret'),
            patch.object(admin_auth, 'secret', 'test-secret'),
        ]
        for service in (credit_service, promo_service, metering, portfolio_service, alert_manager,
                        watchlist_service, contact_messages, admin_service):
            self.patches.append(patch.object(service, '_db', self.db))
        for service in (portfolio_service, alert_manager, watchlist_service):
            self.patches.append(patch.object(service, '_market', self.market))
        for p in self.patches:
            p.start()

        self.client = TestClient(app_module.app)

    def tearDown(self):
        for p in reversed(self.patches):
            p.stop()
        try:
            os.unlink(self.temp_db.name)
        except OSError:
            pass

    def sign_up(self, email='user@example.com'):
        """Create a user with credits and return bearer headers for it."""
        user = auth_manager.create_user(email, 'password123')
        credit_service.initialize_user_credits(user['id'])
        session_id = auth_manager.create_session(user['id'])
        return user, {'Authorization': f'Bearer {session_id}'}

    def admin_login(self):
        response = self.client.post('/api/admin/auth', json={'username': 'root', 'password': 's3cret'})
        self.assertEqual(response.status_code, 200)


class TestHealthAndAuth(ApiTestCase):
    def test_health(self):
        response = self.client.get('/api/health')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['status'], 'ok')
        self.assertEqual(response.headers['X-Frame-Options'], 'DENY')

    def test_register_login_and_me(self):
        response = self.client.post('/api/auth/register',
                                    json={'email': 'New@Example.com', 'password': 'password123'})
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()['user']['email'], 'new@example.com')

        me = self.client.get('/api/auth/me')
        self.assertEqual(me.status_code, 200)
        self.assertEqual(me.json()['credits']['balance'], 70)

        self.client.post('/api/auth/logout')
        self.assertEqual(self.client.get('/api/auth/me').status_code, 401)

        login = self.client.post('/api/auth/login',
                                 json={'email': 'new@example.com', 'password': 'password123'})
        self.assertEqual(login.status_code, 200)
        self.assertEqual(self.client.get('/api/auth/me').status_code, 200)

    def test_register_rejects_short_password(self):
        response = self.client.post('/api/auth/register', json={'email': 'a@example.com', 'password': 'short'})
        self.assertEqual(response.status_code, 400)

    def test_signup_can_be_disabled(self):
        self.db.set_setting('signup_enabled', False)
        response = self.client.post('/api/auth/register',
                                    json={'email': 'a@example.com', 'password': 'password123'})
        self.assertEqual(response.status_code, 403)

    def test_bad_login(self):
        self.sign_up()
        response = self.client.post('/api/auth/login',
                                    json={'email': 'user@example.com', 'password': 'wrong-password'})
        self.assertEqual(response.status_code, 401)

    def test_invalid_json(self):
        response = self.client.post('/api/auth/login', content=b'not json',
                                    headers={'Content-Type': 'application/json'})
        self.assertEqual(response.status_code, 400)


class TestMeteredRoutes(ApiTestCase):
    def test_quote_charges_credits(self):
        _, headers = self.sign_up()
        response = self.client.get('/api/stocks/quote/AAPL', headers=headers)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['data']['price'], 150.0)
        self.assertEqual(response.headers['X-Credit-Balance'], '67')
        self.assertIn('X-RateLimit-Remaining', response.headers)

    def test_failed_request_is_not_charged(self):
        user, headers = self.sign_up()
        polygon = Mock()
        polygon.is_configured.return_value = False
        with patch('app.polygon_client', polygon):
            response = self.client.get('/api/stocks/quote/NOPE', headers=headers)
        self.assertEqual(response.status_code, 404)
        self.assertEqual(credit_service.get_balance(user['id']), 70)

    def test_paid_route_requires_login(self):
        response = self.client.get('/api/stocks/quote/AAPL')
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()['error'], 'Authentication required for this action')

    def test_insufficient_credits(self):
        user, headers = self.sign_up()
        credit_service.adjust_credits(user['id'], -69)
        response = self.client.get('/api/stocks/search', params={'q': 'apple'}, headers=headers)
        self.assertEqual(response.status_code, 402)
        self.assertEqual(response.json()['creditBalance'], 1)

    def test_polygon_fallback(self):
        _, headers = self.sign_up()
        polygon = Mock()
        polygon.is_configured.return_value = True
        polygon.get_quote.return_value = {'success': True, 'data': {'symbol': 'ZZZZ', 'price': 5.0}}
        with patch('app.polygon_client', polygon):
            response = self.client.get('/api/stocks/quote/ZZZZ', headers=headers)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['source'], 'polygon')

    def test_slow_fallback_does_not_block_other_requests(self):
        _, headers = self.sign_up()
        entered = threading.Event()
        release = threading.Event()

        def slow_quote(symbol):
            entered.set()
            release.wait(5)
            return {'success': True, 'data': {'symbol': symbol, 'price': 5.0}}

        polygon = Mock()
        polygon.is_configured.return_value = True
        polygon.get_quote.side_effect = slow_quote

        async def scenario():
            transport = httpx.ASGITransport(app=app_module.app)
            async with httpx.AsyncClient(transport=transport, base_url='http://testserver') as client:
                quote = asyncio.create_task(client.get('/api/stocks/quote/ZZZZ', headers=headers))
                for _ in range(200):
                    if entered.is_set():
                        break
                    await asyncio.sleep(0.01)
                started = time.monotonic()
                health = await client.get('/api/health')
                elapsed = time.monotonic() - started
                quote_pending = not quote.done()
                release.set()
                return health, elapsed, quote_pending, await quote

        with patch('app.polygon_client', polygon):
            health, elapsed, quote_pending, quote = asyncio.run(scenario())

        self.assertTrue(entered.is_set())
        self.assertEqual(health.status_code, 200)
        self.assertTrue(quote_pending)
        self.assertLess(elapsed, 1.0)
        self.assertEqual(quote.json()['source'], 'polygon')

    def test_credits_balance(self):
        _, headers = self.sign_up()
        response = self.client.get('/api/credits', headers=headers)
        data = response.json()['data']
        self.assertEqual(data['balance'], 70)
        self.assertEqual(data['tier'], 'free')
        self.assertEqual(data['limits']['requests_per_minute'], 10)

    def test_credits_analytics(self):
        _, headers = self.sign_up()
        self.client.get('/api/stocks/quote/AAPL', headers=headers)
        response = self.client.get('/api/credits/analytics', headers=headers)
        self.assertEqual(response.status_code, 200)
        data = response.json()['data']
        self.assertEqual(data['total_credits_used'], 3)
        self.assertEqual(data['top_action'], 'real_time_quote')
        # Reading analytics is free
        self.assertEqual(data['current_balance'], 67)

    def test_low_credit_flag(self):
        user, headers = self.sign_up()
        self.assertFalse(self.client.get('/api/credits', headers=headers).json()['data']['lowCredits'])
        credit_service.adjust_credits(user['id'], -55)
        self.assertTrue(self.client.get('/api/credits', headers=headers).json()['data']['lowCredits'])

    def test_maintenance_mode(self):
        _, headers = self.sign_up()
        self.db.set_setting('maintenance_mode', True)
        blocked = self.client.get('/api/stocks/quote/AAPL', headers=headers)
        self.assertEqual(blocked.status_code, 503)
        self.assertEqual(blocked.headers['Retry-After'], '300')
        self.assertEqual(self.client.get('/api/health').status_code, 200)
        self.admin_login()
        self.assertEqual(self.client.get('/api/admin/settings').status_code, 200)

        self.db.set_setting('maintenance_mode', False)
        self.assertEqual(self.client.get('/api/stocks/quote/AAPL', headers=headers).status_code, 200)

    def test_promo_redeem(self):
        user, headers = self.sign_up()
        promo_service.create({'code': 'BONUS', 'type': 'credits', 'credits': 50})

        validated = self.client.post('/api/credits/promo', json={'code': 'bonus', 'action': 'validate'},
                                     headers=headers)
        self.assertTrue(validated.json()['valid'])

        redeemed = self.client.post('/api/credits/promo', json={'code': 'bonus', 'action': 'redeem'},
                                    headers=headers)
        self.assertEqual(redeemed.json()['new_balance'], 120)

        again = self.client.post('/api/credits/promo', json={'code': 'bonus', 'action': 'redeem'},
                                 headers=headers)
        self.assertFalse(again.json()['success'])


class TestAnalysisRoutes(ApiTestCase):
    def setUp(self):
        super().setUp()
        for client in (fmp_client, fred_client, openrouter_client):
            p = patch.object(client, 'api_key', '')
            p.start()
            self.patches.append(p)

        market_returns = [0.01, -0.005, 0.02, -0.01] * 15
        self.market.statistics['AAPL'] = {
            'beta': 1.1, 'sharesOutstanding': 1000.0, 'freeCashflow': 10000.0, 'marketCap': 150000.0,
            'totalCash': 5000.0, 'profitMargin': 0.25, 'targetMeanPrice': 180.0,
        }
        self.market.histories['AAPL'] = closes_from_returns([1.2 * r for r in market_returns])
        self.market.histories['^GSPC'] = closes_from_returns(market_returns, start=5000.0)

    def test_technical(self):
        user, headers = self.sign_up()
        response = self.client.get('/api/stock/technical/aapl', headers=headers)
        self.assertEqual(response.status_code, 200)
        data = response.json()['data']
        self.assertEqual(data['symbol'], 'AAPL')
        self.assertIsNotNone(data['indicators']['sma20'])
        # Only 61 closes
        self.assertIsNone(data['indicators']['sma200'])
        self.assertIn('rsi_14', data['metrics'])
        self.assertEqual(credit_service.get_balance(user['id']), 60)

    def test_dcf(self):
        user, headers = self.sign_up()
        response = self.client.get('/api/stock/dcf/AAPL', headers=headers)
        self.assertEqual(response.status_code, 200)
        data = response.json()['data']
        # No FRED key, so the default 4% risk-free rate applies
        self.assertAlmostEqual(data['costOfCapital']['wacc'], 0.04 + 1.1 * 0.055)
        self.assertAlmostEqual(data['intrinsicValue'], (10250.0 / 0.0755 + 5000.0) / 1000, places=4)
        self.assertAlmostEqual(data['upside'], 0.2)
        self.assertEqual(response.headers['X-Credit-Balance'], '35')

    def test_dcf_without_cash_flow_is_not_charged(self):
        user, headers = self.sign_up()
        self.market.prices['MSFT'] = 400.0
        response = self.client.get('/api/stock/dcf/MSFT', headers=headers)
        self.assertEqual(response.status_code, 422)
        self.assertIn('Free cash flow', response.json()['detail'])

        bad = self.client.get('/api/stock/dcf/AAPL', params={'terminal_growth': 0.2}, headers=headers)
        self.assertEqual(bad.status_code, 400)
        self.assertEqual(credit_service.get_balance(user['id']), 70)

    def test_compare(self):
        user, headers = self.sign_up()
        self.market.prices['MSFT'] = 400.0
        single = self.client.get('/api/stock/compare', params={'symbols': 'AAPL'}, headers=headers)
        self.assertEqual(single.status_code, 400)

        response = self.client.get('/api/stock/compare', params={'symbols': 'aapl,MSFT,AAPL'}, headers=headers)
        self.assertEqual(response.status_code, 200)
        data = response.json()['data']
        self.assertEqual([s['symbol'] for s in data['stocks']], ['AAPL', 'MSFT'])
        self.assertEqual(data['leader'], 'AAPL')
        self.assertIsNone(data['stocks'][1]['total'])
        self.assertEqual(credit_service.get_balance(user['id']), 30)

    def test_analysis_without_ai(self):
        user, headers = self.sign_up()
        response = self.client.get('/api/stock/analysis/AAPL', headers=headers)
        self.assertEqual(response.status_code, 200)
        data = response.json()['data']
        self.assertIsNotNone(data['scores']['total'])
        self.assertEqual(data['risk']['beta'], 1.1)
        self.assertIsNotNone(data['risk']['correlation'])
        self.assertIsNotNone(data['dcf'])
        self.assertIsNone(data['summary'])
        self.assertEqual(credit_service.get_balance(user['id']), 45)

    def test_analysis_with_ai_summary(self):
        user, headers = self.sign_up()
        ai = Mock()
        ai.is_configured.return_value = True
        ai.chat_with_fallback.return_value = {'content': 'Solid margins, fair price.'}
        with patch('app.openrouter_client', ai):
            response = self.client.get('/api/stock/analysis/AAPL', headers=headers)
        self.assertEqual(response.json()['data']['summary'], 'Solid margins, fair price.')
        self.assertEqual(ai.chat_with_fallback.call_args.kwargs['user_id'], user['id'])

    def test_portfolio_analysis(self):
        user, headers = self.sign_up()
        pid = self.client.post('/api/portfolio', json={'name': 'Main'}, headers=headers).json()['portfolio']['id']
        self.client.post(f'/api/portfolio/{pid}/holdings',
                         json={'symbol': 'AAPL', 'quantity': 10, 'avgBuyPrice': 100}, headers=headers)

        _, other_headers = self.sign_up('other@example.com')
        denied = self.client.get(f'/api/portfolio/analysis/{pid}', headers=other_headers)
        self.assertEqual(denied.status_code, 404)

        response = self.client.get(f'/api/portfolio/analysis/{pid}', headers=headers)
        self.assertEqual(response.status_code, 200)
        data = response.json()['data']
        self.assertEqual(data['totalValue'], 1500)
        self.assertEqual(data['historyDays'], 61)
        self.assertAlmostEqual(data['riskAnalysis']['beta'], 1.2, places=6)
        self.assertEqual(credit_service.get_balance(user['id']), 20)

    def test_market_news(self):
        self.assertEqual(self.client.get('/api/market/news').status_code, 401)
        user, headers = self.sign_up()
        response = self.client.get('/api/market/news', params={'limit': 3}, headers=headers)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.json()['data']), 3)
        self.assertEqual(credit_service.get_balance(user['id']), 65)

    def test_every_metered_prefix_has_a_route(self):
        paths = [route.path for route in app_module.app.routes]
        for prefix in CREDIT_REQUIRED_ENDPOINTS:
            self.assertTrue(any(p.startswith(prefix) for p in paths), prefix)


class TestUserResources(ApiTestCase):
    def test_watchlist_flow(self):
        _, headers = self.sign_up()
        created = self.client.post('/api/watchlists', json={'name': 'Tech'}, headers=headers)
        self.assertEqual(created.status_code, 201)
        wid = created.json()['watchlist']['id']

        item = self.client.post(f'/api/watchlists/{wid}/items', json={'symbol': 'aapl'}, headers=headers)
        self.assertEqual(item.status_code, 201)
        duplicate = self.client.post(f'/api/watchlists/{wid}/items', json={'symbol': 'AAPL'}, headers=headers)
        self.assertEqual(duplicate.status_code, 400)

        quotes = self.client.get(f'/api/watchlists/{wid}/quotes', headers=headers)
        self.assertEqual(quotes.json()['quotes'][0]['price'], 150.0)

        removed = self.client.delete(f'/api/watchlists/{wid}/items', params={'symbol': 'AAPL'}, headers=headers)
        self.assertEqual(removed.status_code, 200)

    def test_watchlists_are_private(self):
        _, headers = self.sign_up()
        _, other_headers = self.sign_up('other@example.com')
        wid = self.client.post('/api/watchlists', json={'name': 'Tech'}, headers=headers).json()['watchlist']['id']
        self.assertEqual(self.client.get(f'/api/watchlists/{wid}', headers=other_headers).status_code, 404)

    def test_portfolio_flow(self):
        _, headers = self.sign_up()
        pid = self.client.post('/api/portfolio', json={'name': 'Main'}, headers=headers).json()['portfolio']['id']

        added = self.client.post(f'/api/portfolio/{pid}/holdings',
                                 json={'symbol': 'AAPL', 'quantity': 10, 'avgBuyPrice': 100}, headers=headers)
        self.assertEqual(added.status_code, 201)

        detail = self.client.get(f'/api/portfolio/{pid}', headers=headers).json()
        self.assertEqual(detail['summary']['totalValue'], 1500)
        self.assertEqual(detail['holdings'][0]['gainLoss'], 500)

        invalid = self.client.post(f'/api/portfolio/{pid}/holdings',
                                   json={'symbol': 'AAPL', 'quantity': -1, 'avgBuyPrice': 100}, headers=headers)
        self.assertEqual(invalid.status_code, 400)

    def test_stock_alerts(self):
        _, headers = self.sign_up()
        created = self.client.post('/api/stock-alerts',
                                   json={'symbol': 'AAPL', 'condition': 'above', 'targetPrice': 100},
                                   headers=headers)
        self.assertEqual(created.status_code, 201)
        invalid = self.client.post('/api/stock-alerts',
                                   json={'symbol': 'AAPL', 'condition': 'sideways', 'targetPrice': 100},
                                   headers=headers)
        self.assertEqual(invalid.status_code, 400)
        self.assertEqual(len(self.client.get('/api/stock-alerts', headers=headers).json()['alerts']), 1)

    def test_contact(self):
        ok = self.client.post('/api/contact', json={'name': 'Ada', 'email': 'ada@example.com', 'message': 'Hi'})
        self.assertEqual(ok.status_code, 201)
        bad = self.client.post('/api/contact', json={'name': 'Ada', 'email': 'nope', 'message': 'Hi'})
        self.assertEqual(bad.status_code, 400)


class TestCron(ApiTestCase):
    def test_cron_requires_secret(self):
        with patch('core.auth.CRON_SECRET', ''):
            self.assertEqual(self.client.post('/api/cron/check-alerts').status_code, 401)
        with patch('core.auth.CRON_SECRET', 'cron-token'):
            self.assertEqual(self.client.get('/api/cron/check-alerts',
                                             headers={'Authorization': 'Bearer wrong'}).status_code, 401)

    def test_check_alerts_notifies(self):
        user, headers = self.sign_up()
        alert_manager.create_stock_alert(user['id'], 'AAPL', 'above', 100)
        with patch('core.auth.CRON_SECRET', 'cron-token'):
            response = self.client.post('/api/cron/check-alerts', headers={'Authorization': 'Bearer cron-token'})
        self.assertEqual(response.json()['data']['stockAlerts'], {'checked': 1, 'triggered': 1})

        notifications = self.client.get('/api/notifications', headers=headers).json()['notifications']
        self.assertEqual(len(notifications), 1)
        marked = self.client.post('/api/notifications/read', json={}, headers=headers)
        self.assertEqual(marked.json()['updated'], 1)


class TestAdmin(ApiTestCase):
    def test_admin_routes_require_auth(self):
        self.assertEqual(self.client.get('/api/admin/stats').status_code, 401)
        self.assertEqual(self.client.get('/api/admin/auth').status_code, 401)
        bad = self.client.post('/api/admin/auth', json={'username': 'root', 'password': 'nope'})
        self.assertEqual(bad.status_code, 401)

    def test_admin_session_cookie(self):
        self.sign_up()
        self.admin_login()
        self.assertEqual(self.client.get('/api/admin/auth').json()['username'], 'root')

        stats = self.client.get('/api/admin/stats')
        self.assertEqual(stats.json()['overview']['totalUsers'], 1)

        self.client.delete('/api/admin/auth')
        self.assertEqual(self.client.get('/api/admin/stats').status_code, 401)

    def test_basic_auth(self):
        self.sign_up()
        response = self.client.get('/api/admin/users', auth=('root', 's3cret'))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['users'][0]['credit_balance'], 70)

    def test_change_subscription_tier(self):
        user, headers = self.sign_up()
        self.admin_login()
        response = self.client.patch('/api/admin/users', json={'userId': user['id'], 'subscriptionTier': 'premium'})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['user']['subscriptionTier'], 'premium')
        credits = self.client.get('/api/credits', headers=headers).json()['data']
        self.assertEqual(credits['limits']['requests_per_minute'], 30)

        bad_tier = self.client.patch('/api/admin/users', json={'userId': user['id'], 'subscriptionTier': 'gold'})
        self.assertEqual(bad_tier.status_code, 400)
        missing = self.client.patch('/api/admin/users', json={'userId': 9999, 'subscriptionTier': 'free'})
        self.assertEqual(missing.status_code, 404)

    def test_settings(self):
        self.admin_login()
        settings = self.client.get('/api/admin/settings').json()['settings']
        self.assertTrue(settings['signup_enabled'])

        updated = self.client.put('/api/admin/settings', json={'signup_enabled': False, 'alert_dedupe_hours': 12})
        self.assertEqual(updated.status_code, 200)
        self.assertFalse(updated.json()['settings']['signup_enabled'])
        self.assertEqual(self.db.get_setting('alert_dedupe_hours'), 12)

        unknown = self.client.put('/api/admin/settings', json={'theme': 'dark'})
        self.assertEqual(unknown.status_code, 400)

    def test_credit_config_is_public(self):
        response = self.client.get('/api/admin/credits', params={'action': 'config'})
        self.assertEqual(response.status_code, 200)
        self.assertIn('creditCosts', response.json())
        self.assertEqual(self.client.get('/api/admin/credits').status_code, 401)

    def test_adjust_credits(self):
        user, _ = self.sign_up()
        self.admin_login()
        response = self.client.post('/api/admin/credits',
                                    json={'action': 'adjust_credits', 'userId': user['id'], 'amount': 30})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(credit_service.get_balance(user['id']), 100)

        missing = self.client.post('/api/admin/credits', json={'action': 'adjust_credits', 'amount': 30})
        self.assertEqual(missing.status_code, 400)

    def test_promo_code_admin(self):
        self.admin_login()
        created = self.client.post('/api/admin/promo-codes',
                                   json={'action': 'create', 'code': 'spring', 'type': 'credits', 'credits': 10})
        self.assertEqual(created.json()['code']['code'], 'SPRING')
        codes = self.client.get('/api/admin/promo-codes').json()['codes']
        self.assertEqual(len(codes), 1)

        bad = self.client.post('/api/admin/promo-codes', json={'action': 'create', 'code': 'X', 'type': 'bogus'})
        self.assertEqual(bad.status_code, 400)

    def test_messages(self):
        message = contact_messages.submit('Ada', 'ada@example.com', 'Hi')
        self.admin_login()
        listing = self.client.get('/api/admin/messages').json()
        self.assertEqual(listing['stats']['new'], 1)

        replied = self.client.patch('/api/admin/messages', json={'id': message['id'], 'adminReply': 'Hello'})
        self.assertEqual(replied.json()['message']['status'], 'replied')
        self.assertEqual(self.client.delete('/api/admin/messages', params={'id': 9999}).status_code, 404)

    def test_api_keys_are_masked(self):
        self.admin_login()
        with patch.object(fmp_client, 'api_key', ''):
            response = self.client.put('/api/admin/api-keys', json={'service': 'fmp', 'apiKey': 'abcd1234efgh'})
            self.assertEqual(response.json()['masked'], 'abcd****efgh')
            self.assertEqual(fmp_client.api_key, 'abcd1234efgh')

            keys = self.client.get('/api/admin/api-keys').json()['keys']
            self.assertEqual(keys['fmp']['source'], 'database')

        invalid = self.client.put('/api/admin/api-keys', json={'service': 'nope', 'apiKey': 'x'})
        self.assertEqual(invalid.status_code, 400)

    def test_rate_limit_configs(self):
        self.admin_login()
        defaults = self.client.get('/api/admin/rate-limits').json()
        self.assertTrue(defaults['isUsingDefaults'])
        self.client.post('/api/admin/rate-limits', json={'action': 'initialize_defaults'})
        self.assertFalse(self.client.get('/api/admin/rate-limits').json()['isUsingDefaults'])


if __name__ == '__main__':
    unittest.main()
