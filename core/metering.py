"""
Request metering for /api/*
A DB-backed minute/hour/day limiter per user (or client IP) and the credit gate
that decides whether a request may run and what it will cost.
"""
import logging
import math
import time
from datetime import datetime
from typing import Dict, List, Optional, Any
from core.config import (
    RATE_LIMITS, RATE_LIMIT_WINDOWS, RATE_LIMIT_EXEMPT_ENDPOINTS, RATE_LIMIT_RETENTION_DAYS,
    CREDIT_REQUIRED_ENDPOINTS, DEFAULT_RATE_LIMIT_CONFIGS,
)
from core.credits import credit_service as default_credit_service

logger = logging.getLogger(__name__)

WINDOW_LIMIT_KEYS = (
    ('minute', 'requests_per_minute'),
    ('hour', 'requests_per_hour'),
    ('day', 'requests_per_day'),
)


def get_client_ip(headers, client_host: Optional[str] = None) -> str:
    """Proxy headers first, then the socket peer address."""
    forwarded = headers.get('x-forwarded-for')
    if forwarded:
        return forwarded.split(',')[0].strip()
    return headers.get('x-real-ip') or client_host or 'unknown'


def credit_action_for(path: str) -> Optional[str]:
    """First CREDIT_REQUIRED_ENDPOINTS prefix matching the path."""
    for prefix, action in CREDIT_REQUIRED_ENDPOINTS.items():
        if path.startswith(prefix):
            return action
    return None


def is_exempt(path: str) -> bool:
    return any(path.startswith(prefix) for prefix in RATE_LIMIT_EXEMPT_ENDPOINTS)


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts).isoformat()


class MeteringService:
    def __init__(self, database=None, credits=None):
        self._db = database
        self._credits = credits

    @property
    def db(self):
        if self._db is None:
            from core.database import db
            self._db = db
        return self._db

    @property
    def credits(self):
        if self._credits is None:
            self._credits = default_credit_service
        return self._credits

    # --- Windows ---

    def _identity_clause(self, user_id: Optional[int], ip_address: Optional[str]):
        if user_id is not None:
            return "user_id = ?", (user_id,)
        return "user_id IS NULL AND ip_address = ?", (ip_address or 'unknown',)

    def _check_window(self, user_id: Optional[int], ip_address: Optional[str], window: str,
                      limit: int, now: float) -> Dict[str, Any]:
        length = RATE_LIMIT_WINDOWS[window]
        clause, params = self._identity_clause(user_id, ip_address)
        window_params = params + (now - length, now)

        count = int(self.db.scalar(f"""
            SELECT COALESCE(SUM(request_count), 0) FROM rate_limit_tracking
            WHERE {clause} AND window_start >= ? AND window_start <= ?
        """, window_params, 0))

        remaining = limit - count
        reset_at = _iso(now + length)
        if remaining > 0:
            return {'allowed': True, 'remaining': remaining, 'limit': limit,
                    'reset_at': reset_at, 'window': window}

        oldest = self.db.scalar(f"""
            SELECT MIN(window_start) FROM rate_limit_tracking
            WHERE {clause} AND window_start >= ? AND window_start <= ?
        """, window_params, None)
        retry_after = math.ceil(oldest + length - now) if oldest is not None else 60
        return {'allowed': False, 'remaining': 0, 'limit': limit, 'reset_at': reset_at,
                'window': window, 'retry_after': max(retry_after, 1)}

    def _record_request(self, user_id: Optional[int], ip_address: Optional[str], endpoint: str, now: float):
        self.db.execute("""
            INSERT INTO rate_limit_tracking
            (user_id, ip_address, endpoint, request_count, window_start, window_end)
            VALUES (?, ?, ?, 1, ?, ?)
        """, (user_id, ip_address, endpoint, now, now + RATE_LIMIT_WINDOWS['minute']))

    def check_rate_limit(self, endpoint: str, user_id: int = None, ip_address: str = None,
                         tier: str = 'free', now: float = None) -> Dict[str, Any]:
        """Check the minute, hour and day windows in turn; record the request when all pass."""
        now = time.time() if now is None else now
        if is_exempt(endpoint):
            return {'allowed': True, 'remaining': -1, 'limit': -1, 'reset_at': _iso(now)}

        limits = RATE_LIMITS.get(tier or 'free', RATE_LIMITS['free'])
        results = []
        for window, key in WINDOW_LIMIT_KEYS:
            result = self._check_window(user_id, ip_address, window, limits[key], now)
            if not result['allowed']:
                logger.info(f"Rate limit hit ({window}) for {user_id or ip_address} on {endpoint}")
                return result
            results.append(result)

        self._record_request(user_id, ip_address, endpoint, now)
        return {
            'allowed': True,
            'remaining': min(r['remaining'] for r in results) - 1,
            'limit': limits['requests_per_minute'],
            'reset_at': results[0]['reset_at'],
        }

    def get_rate_limit_info(self, user_id: int = None, ip_address: str = None,
                            tier: str = 'free', now: float = None) -> Dict[str, Dict]:
        now = time.time() if now is None else now
        limits = RATE_LIMITS.get(tier or 'free', RATE_LIMITS['free'])
        return {
            window: self._check_window(user_id, ip_address, window, limits[key], now)
            for window, key in WINDOW_LIMIT_KEYS
        }

    def reset_rate_limit(self, user_id: int = None, ip_address: str = None) -> int:
        if user_id is not None:
            return self.db.execute("DELETE FROM rate_limit_tracking WHERE user_id = ?", (user_id,)).rowcount
        if ip_address:
            return self.db.execute("DELETE FROM rate_limit_tracking WHERE ip_address = ?",
                                   (ip_address,)).rowcount
        return 0

    def cleanup_records(self, days: int = RATE_LIMIT_RETENTION_DAYS, now: float = None) -> int:
        now = time.time() if now is None else now
        cutoff = now - days * RATE_LIMIT_WINDOWS['day']
        deleted = self.db.execute("DELETE FROM rate_limit_tracking WHERE window_end <= ?", (cutoff,)).rowcount
        logger.info(f"Removed {deleted} rate limit records older than {days} days")
        return deleted

    # --- Credit gate ---

    def credit_gate(self, path: str, headers, user: Optional[Dict] = None,
                    client_host: Optional[str] = None) -> Dict[str, Any]:
        """
        Decide whether an /api request may proceed.
        Returns {success, status_code, error, headers, user_id, action, credit_balance};
        the caller deducts `action` after the handler succeeds.
        """
        ip_address = get_client_ip(headers, client_host)
        user_id = user['id'] if user else None
        tier = (user or {}).get('subscription_tier') or 'free'

        if user_id is not None:
            self.credits.check_and_reset_monthly_credits(user_id)

        rate = self.check_rate_limit(path, user_id=user_id, ip_address=ip_address, tier=tier)
        if not rate['allowed']:
            return {
                'success': False,
                'status_code': 429,
                'error': 'Rate limit exceeded. Please slow down.',
                'headers': {
                    'X-RateLimit-Limit': str(rate['limit']),
                    'X-RateLimit-Remaining': '0',
                    'X-RateLimit-Reset': rate['reset_at'],
                    'Retry-After': str(rate.get('retry_after', 60)),
                },
            }

        rate_headers = {
            'X-RateLimit-Limit': str(rate['limit']),
            'X-RateLimit-Remaining': str(rate['remaining']),
            'X-RateLimit-Reset': rate['reset_at'],
        }

        action = credit_action_for(path)
        if not action:
            return {'success': True, 'user_id': user_id, 'action': None, 'headers': rate_headers}

        if user_id is None:
            return {'success': False, 'status_code': 401,
                    'error': 'Authentication required for this action', 'headers': {}}

        check = self.credits.check_credits(user_id, action)
        if not check['success']:
            return {
                'success': False,
                'status_code': 402,
                'error': check.get('message') or 'Insufficient credits',
                'credit_balance': check['current_balance'],
                'headers': {
                    'X-Credit-Balance': f"{check['current_balance']:g}",
                    'X-Credit-Required': f"{check['required_credits']:g}",
                },
            }

        return {
            'success': True,
            'user_id': user_id,
            'action': action,
            'credit_balance': check['current_balance'],
            'headers': dict(rate_headers, **{'X-Credit-Balance': f"{check['current_balance']:g}"}),
        }

    # --- Per-endpoint limit configuration ---

    def list_configs(self) -> Dict[str, Any]:
        """Stored configs, or the built-in defaults when none are stored."""
        configs = self.db.query("SELECT * FROM rate_limit_config ORDER BY endpoint, tier")
        if configs:
            return {'configs': configs, 'is_using_defaults': False}
        defaults = [
            dict(config, id=f"default-{i}", is_active=True, is_default=True)
            for i, config in enumerate(DEFAULT_RATE_LIMIT_CONFIGS)
        ]
        return {'configs': defaults, 'is_using_defaults': True}

    def initialize_defaults(self) -> int:
        inserted = 0
        for config in DEFAULT_RATE_LIMIT_CONFIGS:
            exists = self.db.query_one("""
                SELECT id FROM rate_limit_config WHERE endpoint = ? AND tier IS ?
            """, (config['endpoint'], config['tier']))
            if not exists:
                self.upsert_config(config)
                inserted += 1
        return inserted

    def upsert_config(self, data: Dict[str, Any], config_id: int = None) -> Dict:
        if not data.get('endpoint'):
            raise ValueError("Endpoint is required")
        now = datetime.now().isoformat()
        values = (
            data['endpoint'],
            data.get('tier') or None,
            int(data.get('requests_per_minute') or 60),
            int(data.get('requests_per_hour') or 1000),
            int(data.get('requests_per_day') or 10000),
            int(data.get('burst_limit') or 10),
            data.get('description'),
            0 if data.get('is_active') is False else 1,
        )
        if config_id is not None:
            self.db.execute("""
                UPDATE rate_limit_config
                SET endpoint = ?, tier = ?, requests_per_minute = ?, requests_per_hour = ?,
                    requests_per_day = ?, burst_limit = ?, description = ?, is_active = ?, updated_at = ?
                WHERE id = ?
            """, values + (now, config_id))
        else:
            config_id = self.db.insert("""
                INSERT INTO rate_limit_config
                (endpoint, tier, requests_per_minute, requests_per_hour, requests_per_day,
                 burst_limit, description, is_active, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, values + (now, now))
        return self.db.query_one("SELECT * FROM rate_limit_config WHERE id = ?", (config_id,))

    def toggle_config(self, config_id: int, is_active: bool) -> bool:
        return self.db.execute("UPDATE rate_limit_config SET is_active = ?, updated_at = ? WHERE id = ?",
                               (1 if is_active else 0, datetime.now().isoformat(), config_id)).rowcount > 0

    def delete_config(self, config_id: int) -> bool:
        return self.db.execute("DELETE FROM rate_limit_config WHERE id = ?", (config_id,)).rowcount > 0


metering = MeteringService()
