"""
Unit tests for promo code validation and redemption
"""
import os
import tempfile
import unittest
from datetime import datetime, timedelta
from pathlib import Path

from core.credits import CreditService
from core.database import Database
from core.promo import PromoService


class TestPromoService(unittest.TestCase):
    def setUp(self):
        self.temp_db = tempfile.NamedTemporaryFile(delete=False, suffix='.db')
        self.temp_db.close()
        self.db = Database(Path(self.temp_db.name))
        self.credits = CreditService(self.db)
        self.promo = PromoService(self.db, self.credits)
        self.user_id = self.db.create_user('promo@example.com', 'hash')
        self.other_id = self.db.create_user('other@example.com', 'hash')

    def tearDown(self):
        try:
            os.unlink(self.temp_db.name)
        except OSError:
            pass

    def test_create_normalizes_code(self):
        created = self.promo.create({'code': ' welcome ', 'type': 'credits', 'credits': 25})
        self.assertEqual(created['code'], 'WELCOME')
        self.assertEqual(created['max_uses_per_user'], 1)
        self.assertEqual(created['created_by'], 'admin')

    def test_create_validation(self):
        with self.assertRaises(ValueError):
            self.promo.create({'code': '', 'type': 'credits'})
        with self.assertRaises(ValueError):
            self.promo.create({'code': 'X', 'type': 'freebie'})
        self.promo.create({'code': 'DUP', 'type': 'credits', 'credits': 5})
        with self.assertRaises(ValueError):
            self.promo.create({'code': 'dup', 'type': 'credits', 'credits': 5})

    def test_unknown_code(self):
        result = self.promo.validate('NOPE', self.user_id)
        self.assertFalse(result['valid'])
        self.assertEqual(result['error'], 'Invalid promo code')

    def test_validate_is_case_insensitive(self):
        self.promo.create({'code': 'SPRING', 'type': 'credits', 'credits': 10})
        result = self.promo.validate('spring', self.user_id)
        self.assertTrue(result['valid'])
        self.assertEqual(result['benefits']['credits'], 10)
        self.assertIsNone(result['benefits']['discount_percent'])

    def test_inactive_expired_and_future_codes(self):
        now = datetime(2026, 6, 1, 12, 0)
        inactive = self.promo.create({'code': 'OFF', 'type': 'credits', 'credits': 5})
        self.promo.update(inactive['id'], {'is_active': False})
        self.promo.create({'code': 'OLD', 'type': 'credits', 'credits': 5,
                           'expires_at': (now - timedelta(days=1)).isoformat()})
        self.promo.create({'code': 'SOON', 'type': 'credits', 'credits': 5,
                           'starts_at': (now + timedelta(days=1)).isoformat()})

        self.assertEqual(self.promo.validate('OFF', self.user_id, now=now)['error'],
                         'This promo code is inactive')
        self.assertEqual(self.promo.validate('OLD', self.user_id, now=now)['error'],
                         'This promo code has expired')
        self.assertEqual(self.promo.validate('SOON', self.user_id, now=now)['error'],
                         'This promo code is not active yet')

    def test_redeem_awards_credits_once(self):
        self.promo.create({'code': 'BONUS50', 'type': 'credits', 'credits': 50})

        result = self.promo.redeem('BONUS50', self.user_id)
        self.assertTrue(result['success'])
        self.assertEqual(result['credits_awarded'], 50)
        # 70 starting credits plus the code
        self.assertEqual(result['new_balance'], 120)
        self.assertEqual(self.credits.get_credit_history(self.user_id, limit=1)[0]['type'], 'promo')

        again = self.promo.redeem('BONUS50', self.user_id)
        self.assertFalse(again['success'])
        self.assertEqual(again['message'], 'You have already used this promo code')

    def test_global_usage_limit(self):
        self.promo.create({'code': 'ONE', 'type': 'credits', 'credits': 5, 'max_uses': 1})
        self.assertTrue(self.promo.redeem('ONE', self.user_id)['success'])
        result = self.promo.redeem('ONE', self.other_id)
        self.assertFalse(result['success'])
        self.assertEqual(result['message'], 'This promo code has reached its usage limit')

    def test_discount_codes_cannot_be_redeemed(self):
        self.promo.create({'code': 'TENOFF', 'type': 'discount', 'discount_percent': 10})
        result = self.promo.redeem('TENOFF', self.user_id)
        self.assertFalse(result['success'])
        self.assertEqual(result['message'], 'This code can only be used at checkout')

    def test_apply_to_purchase(self):
        self.promo.create({'code': 'TENOFF', 'type': 'discount', 'discount_percent': 10})
        self.promo.create({'code': 'FIVE', 'type': 'discount', 'discount_amount': 5})

        percent = self.promo.apply_to_purchase('TENOFF', self.user_id, 20.0)
        self.assertTrue(percent['success'])
        self.assertAlmostEqual(percent['discounted_amount'], 18.0)

        flat = self.promo.apply_to_purchase('FIVE', self.user_id, 3.0)
        self.assertEqual(flat['discount_applied'], 3.0)
        self.assertEqual(flat['discounted_amount'], 0.0)

        missing = self.promo.apply_to_purchase('NOPE', self.user_id, 10.0)
        self.assertFalse(missing['success'])
        self.assertEqual(missing['discounted_amount'], 10.0)

    def test_minimum_purchase_and_packages(self):
        self.promo.create({'code': 'BIG', 'type': 'discount', 'discount_percent': 20,
                           'min_purchase_amount': 25, 'applicable_packages': [3, 4]})

        too_small = self.promo.validate('BIG', self.user_id, purchase_amount=10)
        self.assertFalse(too_small['valid'])
        self.assertIn('Minimum purchase', too_small['error'])

        wrong_package = self.promo.validate('BIG', self.user_id, package_id=1, purchase_amount=30)
        self.assertEqual(wrong_package['error'], 'This promo code does not apply to this package')

        self.assertTrue(self.promo.validate('BIG', self.user_id, package_id='3', purchase_amount=30)['valid'])

    def test_stats_and_overview(self):
        code = self.promo.create({'code': 'STATS', 'type': 'credits', 'credits': 10, 'max_uses_per_user': 2})
        self.promo.redeem('STATS', self.user_id)
        self.promo.redeem('STATS', self.user_id)
        self.promo.redeem('STATS', self.other_id)

        stats = self.promo.get_stats(code['id'])
        self.assertEqual(stats['total_uses'], 3)
        self.assertEqual(stats['unique_users'], 2)
        self.assertEqual(stats['total_credits_awarded'], 30)
        self.assertEqual(self.promo.get(code['id'])['used_count'], 3)

        overview = self.promo.get_overview()
        self.assertEqual(overview['total_codes'], 1)
        self.assertEqual(overview['total_redemptions'], 3)

    def test_update_and_delete(self):
        code = self.promo.create({'code': 'TMP', 'type': 'credits', 'credits': 1})
        self.assertFalse(self.promo.update(code['id'], {'code': 'OTHER'}))
        self.assertTrue(self.promo.update(code['id'], {'max_uses': 10}))
        self.assertEqual(self.promo.get(code['id'])['max_uses'], 10)

        self.assertEqual(len(self.promo.list_active()), 1)
        self.assertTrue(self.promo.delete(code['id']))
        self.assertEqual(self.promo.list_all(), [])


if __name__ == '__main__':
    unittest.main()
