"""
Credit Service
Per-user credit balances, the transaction ledger, monthly free-credit resets and
purchasable credit packages.
"""
import json
import logging
import math
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Any
from core.config import CREDIT_COSTS, CREDIT_CONFIG, DEFAULT_CREDIT_PACKAGES

logger = logging.getLogger(__name__)

TRANSACTION_TYPES = ('purchase', 'usage', 'refund', 'bonus', 'monthly_reset', 'admin_adjust', 'promo')


class InsufficientCreditsError(Exception):
    """Raised when an action costs more than the user's balance."""

    def __init__(self, required: float, available: float):
        self.required = required
        self.available = available
        super().__init__(f"Insufficient credits. Required: {required:g}, Available: {available:g}")


def monthly_free_credits(tier: Optional[str]) -> float:
    table = CREDIT_CONFIG['monthly_free_credits']
    return table.get(tier or 'free', table['free'])


def recommend_package(monthly_usage: float) -> Optional[str]:
    """Smallest default package that covers a month of usage."""
    if monthly_usage <= 0:
        return None
    for package in DEFAULT_CREDIT_PACKAGES:
        if package['credits'] + package['bonus_credits'] >= monthly_usage:
            return package['name']
    return DEFAULT_CREDIT_PACKAGES[-1]['name']


class CreditService:
    """Credit ledger backed by user_credits / credit_transactions."""

    def __init__(self, database=None):
        self._db = database

    @property
    def db(self):
        if self._db is None:
            from core.database import db
            self._db = db
        return self._db

    # --- Balances ---

    def get_balance(self, user_id: int) -> float:
        row = self.db.query_one("SELECT balance FROM user_credits WHERE user_id = ?", (user_id,))
        return float(row['balance']) if row else 0.0

    def get_user_credits(self, user_id: int) -> Dict:
        """Credit record for the user, created on first access."""
        row = self.db.query_one("SELECT * FROM user_credits WHERE user_id = ?", (user_id,))
        if row:
            return row
        return self.initialize_user_credits(user_id)

    def initialize_user_credits(self, user_id: int) -> Dict:
        user = self.db.get_user(user_id)
        if not user:
            raise ValueError("User not found")

        initial = CREDIT_CONFIG['initial_free_credits'] + monthly_free_credits(user.get('subscription_tier'))
        now = datetime.now().isoformat()

        with self.db._get_transaction() as conn:
            created = conn.execute("""
                INSERT OR IGNORE INTO user_credits
                (user_id, balance, lifetime_credits, free_credits_used, last_free_credits_reset,
                 created_at, updated_at)
                VALUES (?, ?, ?, 0, ?, ?, ?)
            """, (user_id, initial, initial, now, now, now)).rowcount == 1
            if created:
                conn.execute("""
                    INSERT INTO credit_transactions
                    (user_id, amount, type, description, balance_before, balance_after, created_at)
                    VALUES (?, ?, 'bonus', 'Welcome bonus + Monthly free credits', 0, ?, ?)
                """, (user_id, initial, initial, now))

        if created:
            logger.info(f"Initialized {initial:g} credits for user {user_id}")
        return self.db.query_one("SELECT * FROM user_credits WHERE user_id = ?", (user_id,))

    # --- Checks and movements ---

    def check_credits(self, user_id: int, action: str) -> Dict[str, Any]:
        required = CREDIT_COSTS[action]
        balance = float(self.get_user_credits(user_id)['balance'])
        result = {
            'success': balance >= required,
            'current_balance': balance,
            'required_credits': required,
            'remaining_balance': balance - required,
        }
        if not result['success']:
            result['message'] = f"Insufficient credits. Required: {required}, Available: {balance:g}"
        return result

    def deduct_credits(self, user_id: int, action: str, metadata: Dict = None) -> Dict[str, Any]:
        """Charge the cost of an action. The balance never goes negative."""
        required = CREDIT_COSTS[action]
        self.get_user_credits(user_id)
        now = datetime.now().isoformat()

        with self.db._get_transaction() as conn:
            before_row = conn.execute("SELECT balance FROM user_credits WHERE user_id = ?",
                                      (user_id,)).fetchone()
            before = float(before_row['balance']) if before_row else 0.0

            cursor = conn.execute("""
                UPDATE user_credits
                SET balance = balance - ?, updated_at = ?
                WHERE user_id = ? AND balance >= ?
            """, (required, now, user_id, required))

            if cursor.rowcount == 0:
                return {
                    'success': False,
                    'new_balance': before,
                    'message': f"Insufficient credits. Required: {required}, Available: {before:g}",
                }

            after = before - required
            tx = conn.execute("""
                INSERT INTO credit_transactions
                (user_id, amount, type, action, description, balance_before, balance_after,
                 metadata, created_at)
                VALUES (?, ?, 'usage', ?, ?, ?, ?, ?, ?)
            """, (user_id, -required, action, f"Credit used for {action}", before, after,
                  json.dumps(metadata) if metadata else None, now))

        return {'success': True, 'new_balance': after, 'transaction_id': tx.lastrowid}

    def charge(self, user_id: int, action: str, metadata: Dict = None) -> float:
        """deduct_credits that raises InsufficientCreditsError instead of returning a failure."""
        result = self.deduct_credits(user_id, action, metadata)
        if not result['success']:
            raise InsufficientCreditsError(CREDIT_COSTS[action], result['new_balance'])
        return result['new_balance']

    def add_credits(self, user_id: int, amount: float, type: str, description: str,
                    metadata: Dict = None) -> Dict[str, Any]:
        """Credit the account. Balance is capped at max_credit_balance; lifetime is not."""
        if type not in TRANSACTION_TYPES:
            raise ValueError(f"Invalid transaction type: {type}")

        self.get_user_credits(user_id)
        cap = CREDIT_CONFIG['max_credit_balance']
        now = datetime.now().isoformat()

        with self.db._get_transaction() as conn:
            before = float(conn.execute("SELECT balance FROM user_credits WHERE user_id = ?",
                                        (user_id,)).fetchone()['balance'])
            conn.execute("""
                UPDATE user_credits
                SET balance = MIN(balance + ?, ?),
                    lifetime_credits = lifetime_credits + ?,
                    updated_at = ?
                WHERE user_id = ?
            """, (amount, cap, amount, now, user_id))
            after = float(conn.execute("SELECT balance FROM user_credits WHERE user_id = ?",
                                       (user_id,)).fetchone()['balance'])
            tx = conn.execute("""
                INSERT INTO credit_transactions
                (user_id, amount, type, description, balance_before, balance_after, metadata, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (user_id, amount, type, description, before, after,
                  json.dumps(metadata) if metadata else None, now))

        return {'success': True, 'new_balance': after, 'transaction_id': tx.lastrowid}

    def refund_credits(self, user_id: int, amount: float, reason: str) -> Dict[str, Any]:
        return self.add_credits(user_id, amount, 'refund', f"Refund: {reason}")

    def adjust_credits(self, user_id: int, amount: float, description: str = None) -> Dict[str, Any]:
        """Admin adjustment. Negative amounts are allowed but floor the balance at zero."""
        if not self.db.get_user(user_id):
            raise ValueError("User not found")
        self.get_user_credits(user_id)
        description = description or f"Admin adjustment: {'+' if amount > 0 else ''}{amount:g} credits"
        now = datetime.now().isoformat()

        with self.db._get_transaction() as conn:
            row = conn.execute("SELECT balance, lifetime_credits FROM user_credits WHERE user_id = ?",
                               (user_id,)).fetchone()
            before = float(row['balance'])
            after = min(max(before + amount, 0), CREDIT_CONFIG['max_credit_balance'])
            conn.execute("""
                UPDATE user_credits
                SET balance = ?, lifetime_credits = lifetime_credits + ?, updated_at = ?
                WHERE user_id = ?
            """, (after, max(amount, 0), now, user_id))
            conn.execute("""
                INSERT INTO credit_transactions
                (user_id, amount, type, description, balance_before, balance_after, created_at)
                VALUES (?, ?, 'admin_adjust', ?, ?, ?, ?)
            """, (user_id, amount, description, before, after, now))

        return {'success': True, 'new_balance': after, 'message': f"Credits adjusted by {amount:g}"}

    # --- Monthly reset ---

    def check_and_reset_monthly_credits(self, user_id: int, now: datetime = None) -> bool:
        """Grant the monthly allowance once per calendar month. True when a reset happened."""
        now = now or datetime.now()
        credits = self.get_user_credits(user_id)
        last_reset = datetime.fromisoformat(credits['last_free_credits_reset'])
        if (last_reset.year, last_reset.month) == (now.year, now.month):
            return False

        month_start = datetime(now.year, now.month, 1).isoformat()
        cursor = self.db.execute("""
            UPDATE user_credits
            SET free_credits_used = 0, last_free_credits_reset = ?, updated_at = ?
            WHERE user_id = ? AND last_free_credits_reset < ?
        """, (now.isoformat(), now.isoformat(), user_id, month_start))

        if cursor.rowcount == 0:
            return False

        user = self.db.get_user(user_id)
        self.add_credits(user_id, monthly_free_credits(user.get('subscription_tier') if user else None),
                         'monthly_reset', 'Monthly free credits reset')
        logger.info(f"Monthly credits reset for user {user_id}")
        return True

    # --- History and stats ---

    def get_credit_history(self, user_id: int, limit: int = 50, offset: int = 0,
                           type: str = None) -> List[Dict]:
        sql = "SELECT * FROM credit_transactions WHERE user_id = ?"
        params = [user_id]
        if type:
            sql += " AND type = ?"
            params.append(type)
        sql += " ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        rows = self.db.query(sql, tuple(params))
        for row in rows:
            if row.get('metadata'):
                try:
                    row['metadata'] = json.loads(row['metadata'])
                except json.JSONDecodeError:
                    pass
        return rows

    def _usage_since(self, since: datetime, user_id: int = None) -> float:
        sql = "SELECT COALESCE(SUM(ABS(amount)), 0) as total FROM credit_transactions WHERE type = 'usage' AND created_at >= ?"
        params = [since.isoformat()]
        if user_id is not None:
            sql += " AND user_id = ?"
            params.append(user_id)
        return float(self.db.scalar(sql, tuple(params), 0))

    def get_credit_stats(self, user_id: int) -> Dict[str, Any]:
        credits = self.get_user_credits(user_id)
        now = datetime.now()
        today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        month_start = today_start.replace(day=1)
        return {
            'current_balance': float(credits['balance']),
            'lifetime_credits': float(credits['lifetime_credits']),
            'today_usage': self._usage_since(today_start, user_id),
            'month_usage': self._usage_since(month_start, user_id),
            'last_reset': credits['last_free_credits_reset'],
        }

    def get_usage_analytics(self, user_id: int, now: datetime = None) -> Dict[str, Any]:
        """
        Usage breakdown for one user: totals, rolling windows, a 30-day daily
        series, spend per action and a package recommendation from the
        30-day average.
        """
        credits = self.get_user_credits(user_id)
        now = now or datetime.now()
        today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        last_30 = now - timedelta(days=30)
        balance = float(credits['balance'])

        totals = self.db.query_one("""
            SELECT COALESCE(SUM(ABS(amount)), 0) as credits, COUNT(*) as transactions
            FROM credit_transactions WHERE user_id = ? AND type = 'usage'
        """, (user_id,))
        total_used = float(totals['credits'])
        last_30_usage = self._usage_since(last_30, user_id)

        daily = self.db.query("""
            SELECT substr(created_at, 1, 10) as date, SUM(ABS(amount)) as credits, COUNT(*) as transactions
            FROM credit_transactions
            WHERE user_id = ? AND type = 'usage' AND created_at >= ?
            GROUP BY substr(created_at, 1, 10)
            ORDER BY date
        """, (user_id, last_30.isoformat()))

        by_action = self.db.query("""
            SELECT COALESCE(action, 'unknown') as action, COUNT(*) as count, SUM(ABS(amount)) as total_credits
            FROM credit_transactions
            WHERE user_id = ? AND type = 'usage'
            GROUP BY action
            ORDER BY total_credits DESC
        """, (user_id,))
        for row in by_action:
            row['percentage'] = round(row['total_credits'] / total_used * 100) if total_used > 0 else 0

        average_per_day = round(last_30_usage / 30)
        estimated_monthly = average_per_day * 30

        return {
            'total_credits_used': total_used,
            'total_transactions': int(totals['transactions']),
            'current_balance': balance,
            'lifetime_credits': float(credits['lifetime_credits']),
            'last_7_days_usage': self._usage_since(now - timedelta(days=7), user_id),
            'last_30_days_usage': last_30_usage,
            'this_month_usage': self._usage_since(today_start.replace(day=1), user_id),
            'low_credits': balance <= CREDIT_CONFIG['low_credit_threshold'],
            'daily_usage': daily,
            'usage_by_action': by_action,
            'top_action': by_action[0]['action'] if by_action else None,
            'average_per_day': average_per_day,
            'estimated_monthly_usage': estimated_monthly,
            'days_until_empty': math.floor(balance / average_per_day) if average_per_day > 0 else None,
            'recommended_package': recommend_package(estimated_monthly),
        }

    # --- Packages ---

    def list_packages(self, active_only: bool = True) -> List[Dict]:
        sql = "SELECT * FROM credit_packages"
        if active_only:
            sql += " WHERE is_active = 1"
        return self.db.query(sql + " ORDER BY sort_order, id")

    def get_package(self, package_id: int) -> Optional[Dict]:
        return self.db.query_one("SELECT * FROM credit_packages WHERE id = ?", (package_id,))

    def create_package(self, name: str, credits: int, price: float, description: str = None,
                       bonus_credits: int = 0, is_popular: bool = False, sort_order: int = 0) -> Dict:
        if not name or credits is None or price is None:
            raise ValueError("name, credits and price are required")
        now = datetime.now().isoformat()
        package_id = self.db.insert("""
            INSERT INTO credit_packages
            (name, description, credits, bonus_credits, price, is_popular, sort_order, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (name, description, int(credits), int(bonus_credits or 0), float(price),
              1 if is_popular else 0, sort_order, now, now))
        return self.get_package(package_id)

    def update_package(self, package_id: int, updates: Dict[str, Any]) -> bool:
        allowed = ('name', 'description', 'credits', 'bonus_credits', 'price',
                   'is_popular', 'is_active', 'sort_order')
        fields = {k: v for k, v in updates.items() if k in allowed and v is not None}
        if not fields:
            return False
        assignments = ", ".join(f"{k} = ?" for k in fields)
        params = list(fields.values()) + [datetime.now().isoformat(), package_id]
        cursor = self.db.execute(
            f"UPDATE credit_packages SET {assignments}, updated_at = ? WHERE id = ?", tuple(params))
        return cursor.rowcount > 0

    def delete_package(self, package_id: int) -> bool:
        return self.db.execute("DELETE FROM credit_packages WHERE id = ?", (package_id,)).rowcount > 0

    def seed_default_packages(self) -> int:
        """Insert DEFAULT_CREDIT_PACKAGES when the table is empty."""
        if self.db.scalar("SELECT COUNT(*) FROM credit_packages"):
            return 0
        for order, package in enumerate(DEFAULT_CREDIT_PACKAGES):
            self.create_package(sort_order=order, **package)
        return len(DEFAULT_CREDIT_PACKAGES)

    # --- Admin views ---

    def get_overview(self) -> Dict[str, Any]:
        today_start = datetime.now().replace(hour=0, minute=0, second=0, microsecond=0)
        return {
            'overview': {
                'total_credits_in_system': float(self.db.scalar(
                    "SELECT COALESCE(SUM(balance), 0) FROM user_credits")),
                'lifetime_credits_issued': float(self.db.scalar(
                    "SELECT COALESCE(SUM(lifetime_credits), 0) FROM user_credits")),
                'users_with_credits': int(self.db.scalar(
                    "SELECT COUNT(*) FROM user_credits WHERE balance > 0")),
                'users_with_low_credits': int(self.db.scalar(
                    "SELECT COUNT(*) FROM user_credits WHERE balance <= ?",
                    (CREDIT_CONFIG['low_credit_threshold'],))),
                'today_usage': self._usage_since(today_start),
            },
            'recent_transactions': self.db.query("""
                SELECT id, user_id, amount, type, action, description, created_at
                FROM credit_transactions ORDER BY created_at DESC, id DESC LIMIT 10
            """),
            'packages': self.list_packages(active_only=False),
        }

    def list_user_credits(self, page: int = 1, limit: int = 20) -> Dict[str, Any]:
        page = max(1, page)
        limit = max(1, min(limit, 100))
        users = self.db.query("""
            SELECT u.id as user_id, u.email, u.subscription_tier,
                   COALESCE(c.balance, 0) as balance,
                   COALESCE(c.lifetime_credits, 0) as lifetime_credits,
                   COALESCE(c.free_credits_used, 0) as free_credits_used,
                   c.last_free_credits_reset as last_reset,
                   c.updated_at, u.created_at as user_created_at
            FROM users u
            LEFT JOIN user_credits c ON c.user_id = u.id
            ORDER BY u.created_at DESC, u.id DESC
            LIMIT ? OFFSET ?
        """, (limit, (page - 1) * limit))
        total = int(self.db.scalar("SELECT COUNT(*) FROM users"))
        return {
            'users': users,
            'pagination': {
                'page': page,
                'limit': limit,
                'total': total,
                'total_pages': (total + limit - 1) // limit,
            },
        }

    def bulk_add_credits(self, user_ids: List[int], amount: float, description: str = None) -> int:
        """Adjust several users at once. Returns how many were adjusted."""
        adjusted = 0
        for user_id in user_ids:
            try:
                self.adjust_credits(user_id, amount, description or f"Bulk adjustment: {amount:g} credits")
                adjusted += 1
            except Exception as e:
                logger.error(f"Failed to adjust credits for user {user_id}: {e}")
        return adjusted


# Singleton
credit_service = CreditService()
