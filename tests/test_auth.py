"""
Unit tests for user sessions, admin tokens and the cron guard
"""
import os
import tempfile
import unittest
from datetime import datetime, timedelta
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import patch

from fastapi import HTTPException
from fastapi.security import HTTPBasicCredentials

from core.auth import AuthManager, AdminAuth, AuthError, require_cron, ADMIN_COOKIE, SESSION_COOKIE
from core.database import Database


def make_request(cookies=None, headers=None):
    return SimpleNamespace(cookies=cookies or {}, headers=headers or {}, state=SimpleNamespace())


class TestAuthManager(unittest.TestCase):
    def setUp(self):
        self.temp_db = tempfile.NamedTemporaryFile(delete=False, suffix='.db')
        self.temp_db.close()
        self.db = Database(Path(self.temp_db.name))
        self.db_patch = patch('core.auth.db', self.db)
        self.db_patch.start()
        self.auth = AuthManager()

    def tearDown(self):
        self.db_patch.stop()
        try:
            os.unlink(self.temp_db.name)
        except OSError:
            pass

    def test_hash_and_verify(self):
        hashed = self.auth.hash_password('correct horse')
        self.assertNotEqual(hashed, 'correct horse')
        self.assertTrue(self.auth.verify_password('correct horse', hashed))
        self.assertFalse(self.auth.verify_password('wrong', hashed))
        self.assertFalse(self.auth.verify_password('x', 'not-a-hash'))

    def test_create_user_validation(self):
        with self.assertRaises(AuthError):
            self.auth.create_user('no-at-sign', 'longenough')
        with self.assertRaises(AuthError):
            self.auth.create_user('a@example.com', 'short')

        user = self.auth.create_user('A@Example.com', 'longenough', 'Alice')
        self.assertEqual(user['email'], 'a@example.com')
        with self.assertRaises(AuthError):
            self.auth.create_user('a@example.com', 'longenough')

    def test_authenticate(self):
        self.auth.create_user('a@example.com', 'longenough')
        self.assertIsNotNone(self.auth.authenticate('a@example.com', 'longenough'))
        self.assertIsNone(self.auth.authenticate('a@example.com', 'wrongpass'))
        self.assertIsNone(self.auth.authenticate('b@example.com', 'longenough'))

    def test_inactive_user_cannot_log_in(self):
        user = self.auth.create_user('a@example.com', 'longenough')
        self.db.execute("UPDATE users SET is_active = 0 WHERE id = ?", (user['id'],))
        self.assertIsNone(self.auth.authenticate('a@example.com', 'longenough'))

    def test_session_lifecycle(self):
        user = self.auth.create_user('a@example.com', 'longenough')
        session_id = self.auth.create_session(user['id'], '127.0.0.1', 'tests')

        self.assertEqual(self.auth.validate_session(session_id), user['id'])

        current = self.auth.get_current_user(make_request(cookies={SESSION_COOKIE: session_id}))
        self.assertEqual(current['id'], user['id'])

        bearer = self.auth.get_current_user(make_request(headers={'authorization': f'Bearer {session_id}'}))
        self.assertEqual(bearer['id'], user['id'])

        self.auth.destroy_session(session_id)
        self.assertIsNone(self.auth.validate_session(session_id))
        self.assertIsNone(self.auth.get_current_user(make_request()))

    def test_expired_session_is_removed(self):
        user = self.auth.create_user('a@example.com', 'longenough')
        past = datetime.now() - timedelta(days=2)
        self.db.create_user_session('old', user['id'], past.isoformat(), past.isoformat(),
                                    (past + timedelta(hours=1)).isoformat())

        self.assertIsNone(self.auth.validate_session('old'))
        self.assertIsNone(self.db.get_user_session('old'))


class TestAdminAuth(unittest.TestCase):
    def setUp(self):
        self.admin = AdminAuth(username='root', password='s3cret', secret='test-secret', token_hours=1)

    def test_credentials(self):
        self.assertTrue(self.admin.validate_credentials('root', 's3cret'))
        self.assertFalse(self.admin.validate_credentials('root', 'nope'))
        self.assertFalse(self.admin.validate_credentials(None, None))

    def test_token_round_trip(self):
        token = self.admin.create_token('root')
        self.assertEqual(self.admin.verify_token(token), 'root')
        self.assertIsNone(self.admin.verify_token('garbage'))
        self.assertIsNone(self.admin.verify_token(None))

    def test_token_from_other_secret_is_rejected(self):
        other = AdminAuth(username='root', password='s3cret', secret='other-secret')
        self.assertIsNone(self.admin.verify_token(other.create_token('root')))

    def test_get_admin(self):
        token = self.admin.create_token('root')
        self.assertEqual(self.admin.get_admin(make_request(cookies={ADMIN_COOKIE: token})), 'root')

        basic = HTTPBasicCredentials(username='root', password='s3cret')
        self.assertEqual(self.admin.get_admin(make_request(), basic), 'root')

        wrong = HTTPBasicCredentials(username='root', password='bad')
        self.assertIsNone(self.admin.get_admin(make_request(), wrong))


class TestRequireCron(unittest.TestCase):
    def test_disabled_without_secret(self):
        with patch('core.auth.CRON_SECRET', ''):
            with self.assertRaises(HTTPException) as ctx:
                require_cron(make_request(headers={'authorization': 'Bearer '}))
        self.assertEqual(ctx.exception.status_code, 401)

    def test_bearer_token(self):
        with patch('core.auth.CRON_SECRET', 'cron-token'):
            self.assertTrue(require_cron(make_request(headers={'authorization': 'Bearer cron-token'})))
            with self.assertRaises(HTTPException):
                require_cron(make_request(headers={'authorization': 'Bearer wrong'}))
            with self.assertRaises(HTTPException):
                require_cron(make_request())


if __name__ == '__main__':
    unittest.main()
