"""
Admin Service
Dashboard statistics, system health checks, user listings and the retention cleanup job.
"""
import math
import os
import platform
import shutil
import time
from datetime import datetime, timedelta
from typing import Dict, List, Any
import logging

import requests

from core.config import DB_PATH, CREDIT_TRANSACTION_RETENTION_DAYS, RATE_LIMIT_RETENTION_DAYS

logger = logging.getLogger(__name__)

REQUIRED_ENV_VARS = [
    'ADMIN_USERNAME',
    'ADMIN_PASSWORD',
    'ADMIN_JWT_SECRET',
    'CRON_SECRET',
    'POLYGON_API_KEY',
    'FMP_API_KEY',
    'FRED_API_KEY',
    'OPENROUTER_API_KEY',
]

EXTERNAL_ENDPOINTS = [
    {'name': 'Yahoo Finance', 'url': 'https://query1.finance.yahoo.com/v1/test'},
    {'name': 'OpenRouter', 'url': 'https://openrouter.ai/api/v1/models'},
]


class AdminService:
    def __init__(self, database=None, metering=None):
        self._db = database
        self._metering = metering
        self.start_time = time.time()

    @property
    def db(self):
        if self._db is None:
            from core.database import db
            self._db = db
        return self._db

    @property
    def metering(self):
        if self._metering is None:
            from core.metering import metering
            self._metering = metering
        return self._metering

    # --- Stats ---

    def _count(self, sql: str, params: tuple = ()) -> int:
        return int(self.db.scalar(sql, params, 0))

    def get_stats(self, now: datetime = None) -> Dict[str, Any]:
        now = now or datetime.now()
        start_of_today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        # Weeks start on Sunday
        start_of_week = start_of_today - timedelta(days=(now.weekday() + 1) % 7)
        start_of_month = start_of_today.replace(day=1)
        start_of_prev_month = (start_of_month - timedelta(days=1)).replace(day=1)

        def users_since(start: datetime, end: datetime = None) -> int:
            if end is None:
                return self._count("SELECT COUNT(*) FROM users WHERE created_at >= ?", (start.isoformat(),))
            return self._count("SELECT COUNT(*) FROM users WHERE created_at >= ? AND created_at < ?",
                               (start.isoformat(), end.isoformat()))

        this_month = users_since(start_of_month)
        previous_month = users_since(start_of_prev_month, start_of_month)
        growth_rate = round(this_month / previous_month * 100, 1) if previous_month > 0 else 100

        tiers = {
            row['tier']: row['count']
            for row in self.db.query(
                "SELECT subscription_tier as tier, COUNT(*) as count FROM users GROUP BY subscription_tier"
            )
        }

        return {
            'overview': {
                'totalUsers': self._count("SELECT COUNT(*) FROM users"),
                'totalWatchlists': self._count("SELECT COUNT(*) FROM watchlists"),
                'totalWatchlistItems': self._count("SELECT COUNT(*) FROM watchlist_items"),
                'totalAlerts': self._count("SELECT COUNT(*) FROM stock_alerts"),
                'activeAlerts': self._count("SELECT COUNT(*) FROM stock_alerts WHERE is_active = 1"),
                'totalPortfolios': self._count("SELECT COUNT(*) FROM portfolios"),
            },
            'growth': {
                'usersThisMonth': this_month,
                'usersThisWeek': users_since(start_of_week),
                'usersToday': users_since(start_of_today),
                'growthRate': growth_rate,
            },
            'subscriptions': tiers,
            'aiUsage': {
                'spendThisMonth': round(self.db.get_api_spending('openrouter', now.strftime('%Y-%m')), 4),
                'requestsToday': self.db.get_api_request_count('openrouter', now.strftime('%Y-%m-%d')),
            },
            'recentUsers': self.db.query("""
                SELECT id, email, display_name, subscription_tier, created_at
                FROM users ORDER BY created_at DESC LIMIT 10
            """),
        }

    # --- Users ---

    def list_users(self, page: int = 1, limit: int = 20, search: str = '', sort_order: str = 'desc') -> Dict:
        page = max(1, int(page or 1))
        limit = max(1, int(limit or 20))
        direction = 'ASC' if sort_order == 'asc' else 'DESC'
        where, params = '', ()
        if search:
            where, params = "WHERE u.email LIKE ?", (f"%{search}%",)

        users = self.db.query(f"""
            SELECT u.id, u.email, u.display_name, u.subscription_tier, u.is_active, u.last_login, u.created_at,
                   COALESCE(c.balance, 0) as credit_balance,
                   COALESCE(c.lifetime_credits, 0) as lifetime_credits,
                   (SELECT COUNT(*) FROM watchlists w WHERE w.user_id = u.id) as watchlist_count,
                   (SELECT COUNT(*) FROM stock_alerts a WHERE a.user_id = u.id) as alert_count,
                   (SELECT COUNT(*) FROM portfolios p WHERE p.user_id = u.id) as portfolio_count
            FROM users u
            LEFT JOIN user_credits c ON c.user_id = u.id
            {where}
            ORDER BY u.created_at {direction}, u.id {direction}
            LIMIT ? OFFSET ?
        """, params + (limit, (page - 1) * limit))
        total = self._count(f"SELECT COUNT(*) FROM users u {where}", params)

        return {
            'users': users,
            'pagination': {'page': page, 'limit': limit, 'total': total, 'totalPages': math.ceil(total / limit)},
        }

    # --- Health ---

    def _check_database(self) -> Dict[str, Any]:
        start = time.perf_counter()
        try:
            conn = self.db._get_conn()
            try:
                conn.execute("SELECT 1").fetchone()
            finally:
                conn.close()
            status, message = 'healthy', 'Connected'
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            status, message = 'unhealthy', str(e)
        return {
            'name': 'Database',
            'status': status,
            'responseTime': round((time.perf_counter() - start) * 1000),
            'message': message,
            'lastChecked': datetime.now().isoformat(),
        }

    def _check_endpoint(self, name: str, url: str) -> Dict[str, Any]:
        start = time.perf_counter()
        try:
            response = requests.head(url, timeout=5)
            ok = response.ok or response.status_code in (401, 404)
            status, message = ('healthy', 'Endpoint reachable') if ok else ('degraded', f"HTTP {response.status_code}")
        except requests.RequestException as e:
            logger.warning(f"{name} health check failed: {e}")
            status, message = 'degraded', 'Could not reach endpoint'
        return {
            'name': name,
            'status': status,
            'responseTime': round((time.perf_counter() - start) * 1000),
            'message': message,
            'lastChecked': datetime.now().isoformat(),
        }

    def get_system_info(self) -> Dict[str, Any]:
        total, used, free = shutil.disk_usage(str(DB_PATH.parent))
        return {
            'pythonVersion': platform.python_version(),
            'platform': platform.platform(),
            'uptime': round(time.time() - self.start_time),
            'databaseSizeMb': round(DB_PATH.stat().st_size / (1024 * 1024), 2) if DB_PATH.exists() else 0,
            'diskFreeGb': round(free / (1024 ** 3), 2),
            'diskUsedPercent': round(used / total * 100, 1) if total else 0,
        }

    def get_health(self) -> Dict[str, Any]:
        checks = [self._check_database()]
        checks += [self._check_endpoint(e['name'], e['url']) for e in EXTERNAL_ENDPOINTS]

        summary = {s: sum(1 for c in checks if c['status'] == s) for s in ('healthy', 'degraded', 'unhealthy')}
        if summary['unhealthy']:
            overall = 'unhealthy'
        elif summary['degraded']:
            overall = 'degraded'
        else:
            overall = 'healthy'

        return {
            'status': overall,
            'timestamp': datetime.now().isoformat(),
            'checks': checks,
            'summary': dict(summary, total=len(checks)),
            'system': self.get_system_info(),
            'environment': [{'name': var, 'configured': bool(os.getenv(var))} for var in REQUIRED_ENV_VARS],
        }

    # --- Cleanup ---

    def cleanup(self, now: datetime = None) -> Dict[str, int]:
        """Retention job: old ledger and rate-limit rows, dead sessions and expired cache entries."""
        now = now or datetime.now()
        from engine.market_data import market_data
        from engine.report_cache import cleanup_expired_entries

        cutoff = (now - timedelta(days=CREDIT_TRANSACTION_RETENTION_DAYS)).isoformat()
        transactions = self.db.execute("DELETE FROM credit_transactions WHERE created_at < ?", (cutoff,)).rowcount

        results = {
            'creditTransactions': transactions,
            'rateLimitRecords': self.metering.cleanup_records(RATE_LIMIT_RETENTION_DAYS, now=now.timestamp()),
            'expiredSessions': self.db.cleanup_expired_sessions(),
            'loginFailures': self.db.cleanup_old_login_failures(),
            'cacheEntries': market_data.cleanup_expired() + cleanup_expired_entries(),
        }
        logger.info(f"Cleanup complete: {results}")
        return results


# Singleton
admin_service = AdminService()
