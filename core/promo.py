"""
Promo Codes
Validation, redemption (credit codes) and purchase discounts (discount codes),
plus the admin CRUD behind /api/admin/promo-codes.
"""
import json
import logging
from datetime import datetime
from typing import Dict, List, Optional, Any
from core.credits import credit_service as default_credit_service

logger = logging.getLogger(__name__)

PROMO_TYPES = ('credits', 'discount', 'trial')
UPDATABLE_FIELDS = ('is_active', 'max_uses', 'max_uses_per_user', 'expires_at', 'starts_at', 'description')


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace('Z', '+00:00')).replace(tzinfo=None)
    except ValueError:
        return None


class PromoService:
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

    def _row(self, row: Optional[Dict]) -> Optional[Dict]:
        if row and row.get('applicable_packages'):
            try:
                row['applicable_packages'] = json.loads(row['applicable_packages'])
            except json.JSONDecodeError:
                row['applicable_packages'] = []
        return row

    def get_by_code(self, code: str) -> Optional[Dict]:
        return self._row(self.db.query_one("SELECT * FROM promo_codes WHERE code = ?",
                                           ((code or '').strip().upper(),)))

    def get(self, code_id: int) -> Optional[Dict]:
        return self._row(self.db.query_one("SELECT * FROM promo_codes WHERE id = ?", (code_id,)))

    # --- Validation ---

    def validate(self, code: str, user_id: int, package_id: Any = None,
                 purchase_amount: float = None, now: datetime = None) -> Dict[str, Any]:
        """Check a code against its limits. Returns {valid, error} or {valid, code, benefits}."""
        now = now or datetime.now()
        promo = self.get_by_code(code)

        if not promo:
            return {'valid': False, 'error': 'Invalid promo code'}
        if not promo['is_active']:
            return {'valid': False, 'error': 'This promo code is inactive'}

        expires_at = _parse_dt(promo.get('expires_at'))
        if expires_at and expires_at < now:
            return {'valid': False, 'error': 'This promo code has expired'}

        starts_at = _parse_dt(promo.get('starts_at'))
        if starts_at and starts_at > now:
            return {'valid': False, 'error': 'This promo code is not active yet'}

        if promo.get('max_uses') and promo['used_count'] >= promo['max_uses']:
            return {'valid': False, 'error': 'This promo code has reached its usage limit'}

        user_uses = self.db.scalar("""
            SELECT COUNT(*) FROM promo_code_usage WHERE promo_code_id = ? AND user_id = ?
        """, (promo['id'], user_id))
        if user_uses >= (promo.get('max_uses_per_user') or 1):
            return {'valid': False, 'error': 'You have already used this promo code'}

        if promo.get('min_purchase_amount') and purchase_amount:
            if purchase_amount < promo['min_purchase_amount']:
                return {'valid': False,
                        'error': f"Minimum purchase for this code is ${promo['min_purchase_amount']:g}"}

        packages = promo.get('applicable_packages') or []
        if packages and package_id is not None:
            if str(package_id) not in {str(p) for p in packages}:
                return {'valid': False, 'error': 'This promo code does not apply to this package'}

        return {
            'valid': True,
            'code': promo,
            'benefits': {
                'credits': promo.get('credits') or None,
                'discount_percent': promo.get('discount_percent') or None,
                'discount_amount': promo.get('discount_amount') or None,
                'trial_days': promo.get('trial_days') or None,
            },
        }

    # --- Redemption ---

    def redeem(self, code: str, user_id: int, metadata: Dict = None) -> Dict[str, Any]:
        """Award the credits of a credit-type code."""
        validation = self.validate(code, user_id)
        if not validation['valid']:
            return {'success': False, 'message': validation['error']}

        promo = validation['code']
        if promo['type'] != 'credits' or not promo.get('credits'):
            return {'success': False, 'message': 'This code can only be used at checkout'}

        amount = float(promo['credits'])
        result = self.credits.add_credits(user_id, amount, 'promo', f"Promo code: {promo['code']}",
                                          {'promo_code': promo['code']})
        self._record_usage(promo['id'], user_id, credits_awarded=amount, metadata=metadata)

        logger.info(f"Promo {promo['code']} redeemed by user {user_id} (+{amount:g})")
        return {
            'success': True,
            'message': f"{amount:g} credits added to your account!",
            'credits_awarded': amount,
            'new_balance': result['new_balance'],
        }

    def apply_to_purchase(self, code: str, user_id: int, amount: float,
                          package_id: Any = None) -> Dict[str, Any]:
        validation = self.validate(code, user_id, package_id=package_id, purchase_amount=amount)
        if not validation['valid']:
            return {
                'success': False,
                'original_amount': amount,
                'discounted_amount': amount,
                'discount_applied': 0,
                'error': validation['error'],
            }

        promo = validation['code']
        discount = 0.0
        if promo.get('discount_percent'):
            discount = amount * (promo['discount_percent'] / 100)
        elif promo.get('discount_amount'):
            discount = min(promo['discount_amount'], amount)

        return {
            'success': True,
            'original_amount': amount,
            'discounted_amount': max(0.0, amount - discount),
            'discount_applied': discount,
            'promo_code_id': promo['id'],
        }

    def _record_usage(self, promo_code_id: int, user_id: int, credits_awarded: float = None,
                      discount_applied: float = None, purchase_id: str = None, metadata: Dict = None):
        now = datetime.now().isoformat()
        with self.db._get_transaction() as conn:
            conn.execute("""
                INSERT INTO promo_code_usage
                (promo_code_id, user_id, credits_awarded, discount_applied, purchase_id, metadata, used_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (promo_code_id, user_id, credits_awarded, discount_applied, purchase_id,
                  json.dumps(metadata) if metadata else None, now))
            conn.execute("UPDATE promo_codes SET used_count = used_count + 1, updated_at = ? WHERE id = ?",
                         (now, promo_code_id))

    # --- Admin ---

    def create(self, data: Dict[str, Any], created_by: str = 'admin') -> Dict:
        code = (data.get('code') or '').strip().upper()
        promo_type = data.get('type')
        if not code or not promo_type:
            raise ValueError("Code and type are required")
        if promo_type not in PROMO_TYPES:
            raise ValueError(f"Invalid promo type: {promo_type}")
        if self.get_by_code(code):
            raise ValueError("This promo code already exists")

        now = datetime.now().isoformat()
        packages = data.get('applicable_packages')
        code_id = self.db.insert("""
            INSERT INTO promo_codes
            (code, type, credits, discount_percent, discount_amount, trial_days, max_uses,
             max_uses_per_user, min_purchase_amount, applicable_packages, starts_at, expires_at,
             description, created_by, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (code, promo_type, data.get('credits'), data.get('discount_percent'),
              data.get('discount_amount'), data.get('trial_days'), data.get('max_uses'),
              data.get('max_uses_per_user') or 1, data.get('min_purchase_amount'),
              json.dumps(packages) if packages else None, data.get('starts_at'),
              data.get('expires_at'), data.get('description'), created_by, now, now))
        logger.info(f"Promo code created: {code}")
        return self.get(code_id)

    def update(self, code_id: int, updates: Dict[str, Any]) -> bool:
        fields = {k: v for k, v in updates.items() if k in UPDATABLE_FIELDS}
        if 'is_active' in fields:
            fields['is_active'] = 1 if fields['is_active'] else 0
        if not fields:
            return False
        assignments = ", ".join(f"{k} = ?" for k in fields)
        params = list(fields.values()) + [datetime.now().isoformat(), code_id]
        return self.db.execute(f"UPDATE promo_codes SET {assignments}, updated_at = ? WHERE id = ?",
                               tuple(params)).rowcount > 0

    def delete(self, code_id: int) -> bool:
        return self.db.execute("DELETE FROM promo_codes WHERE id = ?", (code_id,)).rowcount > 0

    def list_all(self) -> List[Dict]:
        return [self._row(r) for r in self.db.query("SELECT * FROM promo_codes ORDER BY created_at DESC, id DESC")]

    def list_active(self) -> List[Dict]:
        now = datetime.now().isoformat()
        rows = self.db.query("""
            SELECT * FROM promo_codes
            WHERE is_active = 1 AND (expires_at IS NULL OR expires_at > ?)
            ORDER BY created_at DESC, id DESC
        """, (now,))
        return [self._row(r) for r in rows]

    def get_stats(self, code_id: int) -> Dict[str, Any]:
        row = self.db.query_one("""
            SELECT COUNT(*) as total_uses,
                   COALESCE(SUM(credits_awarded), 0) as total_credits_awarded,
                   COALESCE(SUM(discount_applied), 0) as total_discount_applied,
                   COUNT(DISTINCT user_id) as unique_users
            FROM promo_code_usage WHERE promo_code_id = ?
        """, (code_id,)) or {}
        return {
            'total_uses': int(row.get('total_uses') or 0),
            'total_credits_awarded': float(row.get('total_credits_awarded') or 0),
            'total_discount_applied': float(row.get('total_discount_applied') or 0),
            'unique_users': int(row.get('unique_users') or 0),
        }

    def get_overview(self) -> Dict[str, Any]:
        return {
            'total_codes': int(self.db.scalar("SELECT COUNT(*) FROM promo_codes")),
            'active_codes': int(self.db.scalar("SELECT COUNT(*) FROM promo_codes WHERE is_active = 1")),
            'total_redemptions': int(self.db.scalar("SELECT COUNT(*) FROM promo_code_usage")),
            'total_credits_awarded': float(self.db.scalar(
                "SELECT COALESCE(SUM(credits_awarded), 0) FROM promo_code_usage")),
        }


promo_service = PromoService()
