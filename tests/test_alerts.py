"""
Unit tests for stock alerts, portfolio alerts and notifications
"""
import os
import tempfile
import unittest
from datetime import datetime, timedelta
from pathlib import Path

from core.config import MAX_ACTIVE_STOCK_ALERTS
from core.database import Database
from engine.alert_manager import AlertManager, check_stock_condition, check_portfolio_condition
from engine.portfolio_service import PortfolioService


class FakeMarket:
    def __init__(self, prices):
        self.prices = prices

    def get_quote(self, symbol):
        if symbol not in self.prices:
            return {'success': False, 'error': 'No data'}
        return {'success': True, 'data': {'symbol': symbol, 'price': self.prices[symbol], 'changePercent': 2.0}}


class TestConditions(unittest.TestCase):
    def test_stock_conditions(self):
        self.assertTrue(check_stock_condition('above', 100, 100))
        self.assertFalse(check_stock_condition('above', 100, 99.99))
        self.assertTrue(check_stock_condition('below', 100, 90))
        self.assertTrue(check_stock_condition('crosses_above', 100, 105, 95))
        self.assertFalse(check_stock_condition('crosses_above', 100, 105, 101))
        self.assertTrue(check_stock_condition('crosses_above', 100, 105))
        self.assertTrue(check_stock_condition('crosses_below', 100, 95, 105))
        self.assertFalse(check_stock_condition('crosses_below', 100, 95, 97))
        self.assertFalse(check_stock_condition('sideways', 100, 100))

    def test_portfolio_conditions(self):
        self.assertTrue(check_portfolio_condition('price_above', 100, None, 120))
        self.assertFalse(check_portfolio_condition('price_below', None, None, 50))
        self.assertTrue(check_portfolio_condition('percent_change', None, 5, 100, -6))
        self.assertFalse(check_portfolio_condition('percent_change', None, 5, 100, 4.9))


class AlertTestCase(unittest.TestCase):
    def setUp(self):
        self.temp_db = tempfile.NamedTemporaryFile(delete=False, suffix='.db')
        self.temp_db.close()
        self.db = Database(Path(self.temp_db.name))
        self.market = FakeMarket({'AAPL': 150.0})
        self.alerts = AlertManager(self.db, self.market)
        self.user_id = self.db.create_user('alerts@example.com', 'hash')

    def tearDown(self):
        try:
            os.unlink(self.temp_db.name)
        except OSError:
            pass


class TestStockAlerts(AlertTestCase):
    def test_create_validation(self):
        with self.assertRaises(ValueError):
            self.alerts.create_stock_alert(self.user_id, 'AAPL', 'sideways', 100)
        with self.assertRaises(ValueError):
            self.alerts.create_stock_alert(self.user_id, 'AAPL', 'above', 0)
        with self.assertRaises(ValueError):
            self.alerts.create_stock_alert(self.user_id, 'AAPL', 'above', 'abc')
        with self.assertRaises(ValueError):
            self.alerts.create_stock_alert(self.user_id, '', 'above', 100)

    def test_create_and_list(self):
        created = self.alerts.create_stock_alert(self.user_id, 'aapl', 'above', '200')
        self.assertEqual(created['alert']['symbol'], 'AAPL')
        self.assertEqual(created['alert']['target_price'], 200.0)
        self.assertIn('above $200.00', created['message'])

        self.assertEqual(len(self.alerts.list_stock_alerts(self.user_id, active=True)), 1)
        self.assertEqual(len(self.alerts.list_stock_alerts(self.user_id, symbol='msft')), 0)

    def test_active_alert_limit(self):
        for i in range(MAX_ACTIVE_STOCK_ALERTS):
            self.alerts.create_stock_alert(self.user_id, 'AAPL', 'above', 100 + i)
        with self.assertRaises(ValueError):
            self.alerts.create_stock_alert(self.user_id, 'AAPL', 'above', 500)

    def test_check_triggers_and_deactivates(self):
        hit = self.alerts.create_stock_alert(self.user_id, 'AAPL', 'above', 100)['alert']
        miss = self.alerts.create_stock_alert(self.user_id, 'AAPL', 'below', 100)['alert']

        results = self.alerts.check_all_alerts()
        self.assertEqual(results['stockAlerts'], {'checked': 2, 'triggered': 1})

        hit = self.alerts.get_stock_alert(self.user_id, hit['id'])
        self.assertEqual(hit['is_active'], 0)
        self.assertIsNotNone(hit['triggered_at'])
        self.assertEqual(self.alerts.get_stock_alert(self.user_id, miss['id'])['last_price'], 150.0)

        notifications = self.alerts.get_notifications(self.user_id)
        self.assertEqual(len(notifications), 1)
        self.assertEqual(notifications[0]['title'], 'AAPL Alert')
        self.assertEqual(notifications[0]['metadata']['price'], 150.0)

    def test_cross_uses_last_checked_price(self):
        alert = self.alerts.create_stock_alert(self.user_id, 'AAPL', 'crosses_above', 200)['alert']
        self.alerts.check_all_alerts()
        self.assertEqual(self.alerts.get_stock_alert(self.user_id, alert['id'])['is_active'], 1)

        self.market.prices['AAPL'] = 210.0
        results = self.alerts.check_all_alerts()
        self.assertEqual(results['stockAlerts']['triggered'], 1)

    def test_missing_quote_is_reported(self):
        self.alerts.create_stock_alert(self.user_id, 'NOPE', 'above', 1)
        results = self.alerts.check_all_alerts()
        self.assertEqual(results['stockAlerts']['checked'], 0)
        self.assertEqual(results['errors'], ['Failed to fetch price for NOPE'])

    def test_update_rearms_triggered_alert(self):
        alert = self.alerts.create_stock_alert(self.user_id, 'AAPL', 'above', 100)['alert']
        self.alerts.check_all_alerts()

        updated = self.alerts.update_stock_alert(self.user_id, alert['id'], {'is_active': True, 'target_price': 300})
        self.assertEqual(updated['is_active'], 1)
        self.assertEqual(updated['target_price'], 300)
        self.assertIsNone(updated['triggered_at'])
        self.assertIsNone(updated['last_price'])

        other = self.db.create_user('x@example.com', 'hash')
        self.assertIsNone(self.alerts.update_stock_alert(other, alert['id'], {'is_active': False}))
        self.assertFalse(self.alerts.delete_stock_alert(other, alert['id']))
        self.assertTrue(self.alerts.delete_stock_alert(self.user_id, alert['id']))


class TestPortfolioAlerts(AlertTestCase):
    def setUp(self):
        super().setUp()
        self.portfolios = PortfolioService(self.db, self.market)
        self.portfolio_id = self.portfolios.create_portfolio(self.user_id, 'Main')['id']
        self.holding_id = self.portfolios.add_holding(self.portfolio_id, 'AAPL', 1, 100)['holding']['id']

    def test_validation(self):
        with self.assertRaises(ValueError):
            self.alerts.create_portfolio_alert(self.user_id, self.portfolio_id, 'volume_spike', symbol='AAPL')
        with self.assertRaises(ValueError):
            self.alerts.create_portfolio_alert(self.user_id, self.portfolio_id, 'price_above', symbol='AAPL')
        with self.assertRaises(ValueError):
            self.alerts.create_portfolio_alert(self.user_id, self.portfolio_id, 'percent_change', symbol='AAPL')
        with self.assertRaises(LookupError):
            self.alerts.create_portfolio_alert(self.user_id, self.portfolio_id, 'price_above',
                                               holding_id=9999, condition_value=10)

    def test_symbol_taken_from_holding(self):
        alert = self.alerts.create_portfolio_alert(self.user_id, self.portfolio_id, 'price_below',
                                                   holding_id=self.holding_id, condition_value=90)
        self.assertEqual(alert['symbol'], 'AAPL')

    def test_portfolio_alerts_recur_with_deduplicated_notifications(self):
        alert = self.alerts.create_portfolio_alert(self.user_id, self.portfolio_id, 'price_above',
                                                   symbol='AAPL', condition_value=120)
        now = datetime(2026, 5, 1, 9, 0)
        self.alerts.check_all_alerts(now)
        results = self.alerts.check_all_alerts(now + timedelta(hours=1))

        self.assertEqual(results['portfolioAlerts'], {'checked': 1, 'triggered': 1})
        stored = self.alerts.get_portfolio_alert(self.portfolio_id, alert['id'])
        self.assertEqual(stored['is_active'], 1)
        self.assertEqual(stored['trigger_count'], 2)
        self.assertEqual(len(self.alerts.get_notifications(self.user_id)), 1)

        self.alerts.check_all_alerts(now + timedelta(hours=25))
        self.assertEqual(len(self.alerts.get_notifications(self.user_id)), 2)

    def test_update_and_delete(self):
        alert = self.alerts.create_portfolio_alert(self.user_id, self.portfolio_id, 'percent_change',
                                                   symbol='AAPL', condition_percent=5)
        updated = self.alerts.update_portfolio_alert(self.portfolio_id, alert['id'],
                                                     {'is_active': False, 'message': 'Big move'})
        self.assertEqual(updated['is_active'], 0)
        self.assertEqual(updated['message'], 'Big move')
        self.assertEqual(updated['condition_percent'], 5)

        self.assertEqual(self.alerts.check_all_alerts()['portfolioAlerts']['checked'], 0)
        self.assertTrue(self.alerts.delete_portfolio_alert(self.portfolio_id, alert['id']))
        self.assertEqual(self.alerts.list_portfolio_alerts(self.portfolio_id), [])


class TestNotifications(AlertTestCase):
    def test_dedupe_window(self):
        alert = {'type': 'stock_alert', 'user_id': self.user_id, 'alert_id': 1, 'symbol': 'AAPL',
                 'title': 'AAPL Alert', 'message': 'hit'}
        now = datetime(2026, 5, 1, 9, 0)
        self.assertTrue(self.alerts.store_notification(alert, now))
        self.assertFalse(self.alerts.store_notification(alert, now + timedelta(hours=23)))
        self.assertTrue(self.alerts.store_notification(alert, now + timedelta(hours=25)))
        self.assertTrue(self.alerts.store_notification(dict(alert, alert_id=2), now))

    def test_dedupe_window_is_a_setting(self):
        self.db.set_setting('alert_dedupe_hours', 1)
        alert = {'type': 'stock_alert', 'user_id': self.user_id, 'alert_id': 1, 'symbol': 'AAPL'}
        now = datetime(2026, 5, 1, 9, 0)
        self.alerts.store_notification(alert, now)
        self.assertTrue(self.alerts.store_notification(alert, now + timedelta(hours=2)))

    def test_read_state(self):
        now = datetime.now()
        for i in range(3):
            self.alerts.store_notification({'type': 'stock_alert', 'user_id': self.user_id,
                                            'alert_id': i, 'symbol': 'AAPL'}, now)
        first = self.alerts.get_notifications(self.user_id)[0]

        self.assertEqual(self.alerts.mark_notification_read(self.user_id, first['id']), 1)
        self.assertEqual(len(self.alerts.get_notifications(self.user_id, unread_only=True)), 2)
        self.assertEqual(self.alerts.mark_notification_read(self.user_id), 3)
        self.assertEqual(self.alerts.get_notifications(self.user_id, unread_only=True), [])

    def test_cleanup(self):
        old = datetime.now() - timedelta(days=40)
        self.alerts.store_notification({'type': 'x', 'user_id': self.user_id, 'alert_id': 1}, old)
        self.alerts.store_notification({'type': 'x', 'user_id': self.user_id, 'alert_id': 2})
        self.assertEqual(self.alerts.cleanup_old_notifications(30), 1)


if __name__ == '__main__':
    unittest.main()
