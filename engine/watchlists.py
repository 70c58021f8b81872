"""
Watchlists
Named symbol lists per user. The first list a user creates becomes the default.
"""
from typing import Dict, List, Optional, Any
import logging
import sqlite3

from core.database import now_iso

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 100
MAX_SYMBOL_LENGTH = 10


class WatchlistService:
    def __init__(self, database=None, market=None):
        self._db = database
        self._market = market

    @property
    def db(self):
        if self._db is None:
            from core.database import db
            self._db = db
        return self._db

    @property
    def market(self):
        if self._market is None:
            from engine.market_data import market_data
            self._market = market_data
        return self._market

    @staticmethod
    def _clean_name(name: Any) -> str:
        if not name or not isinstance(name, str) or not name.strip():
            raise ValueError("Watchlist name is required")
        name = name.strip()
        if len(name) > MAX_NAME_LENGTH:
            raise ValueError(f"Watchlist name must be {MAX_NAME_LENGTH} characters or less")
        return name

    def list_watchlists(self, user_id: int) -> List[Dict]:
        return self.db.query("""
            SELECT w.*, (SELECT COUNT(*) FROM watchlist_items i WHERE i.watchlist_id = w.id) as item_count
            FROM watchlists w
            WHERE w.user_id = ?
            ORDER BY w.is_default DESC, w.created_at ASC
        """, (user_id,))

    def get_watchlist(self, user_id: int, watchlist_id: int) -> Optional[Dict]:
        """Watchlist with its items, or None when it does not belong to the user."""
        watchlist = self.db.query_one(
            "SELECT * FROM watchlists WHERE id = ? AND user_id = ?", (watchlist_id, user_id)
        )
        if watchlist:
            watchlist['items'] = self.db.query(
                "SELECT * FROM watchlist_items WHERE watchlist_id = ? ORDER BY added_at ASC, id ASC", (watchlist_id,)
            )
        return watchlist

    def create_watchlist(self, user_id: int, name: str, is_default: bool = False) -> Dict:
        name = self._clean_name(name)
        has_any = self.db.scalar("SELECT COUNT(*) FROM watchlists WHERE user_id = ?", (user_id,))
        make_default = is_default or not has_any
        now = now_iso()

        with self.db._get_transaction() as conn:
            cursor = conn.cursor()
            if make_default:
                cursor.execute("UPDATE watchlists SET is_default = 0 WHERE user_id = ?", (user_id,))
            cursor.execute("""
                INSERT INTO watchlists (user_id, name, is_default, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
            """, (user_id, name, 1 if make_default else 0, now, now))
            watchlist_id = cursor.lastrowid

        return self.get_watchlist(user_id, watchlist_id)

    def update_watchlist(self, user_id: int, watchlist_id: int, name: str = None,
                         is_default: bool = None) -> Optional[Dict]:
        if not self.get_watchlist(user_id, watchlist_id):
            return None
        if name is not None:
            try:
                name = self._clean_name(name)
            except ValueError:
                raise ValueError("Invalid watchlist name")

        now = now_iso()
        with self.db._get_transaction() as conn:
            cursor = conn.cursor()
            if name is not None:
                cursor.execute("UPDATE watchlists SET name = ?, updated_at = ? WHERE id = ?",
                               (name, now, watchlist_id))
            if is_default:
                cursor.execute("UPDATE watchlists SET is_default = 0 WHERE user_id = ?", (user_id,))
            if is_default is not None:
                cursor.execute("UPDATE watchlists SET is_default = ?, updated_at = ? WHERE id = ?",
                               (1 if is_default else 0, now, watchlist_id))

        return self.get_watchlist(user_id, watchlist_id)

    def delete_watchlist(self, user_id: int, watchlist_id: int) -> bool:
        result = self.db.execute("DELETE FROM watchlists WHERE id = ? AND user_id = ?", (watchlist_id, user_id))
        return result.rowcount > 0

    def add_item(self, user_id: int, watchlist_id: int, symbol: str, notes: str = None) -> Optional[Dict]:
        if not self.get_watchlist(user_id, watchlist_id):
            return None
        if not symbol or not isinstance(symbol, str) or not symbol.strip():
            raise ValueError("Symbol is required")
        symbol = symbol.strip().upper()
        if len(symbol) > MAX_SYMBOL_LENGTH:
            raise ValueError(f"Symbol must be {MAX_SYMBOL_LENGTH} characters or less")

        try:
            item_id = self.db.insert("""
                INSERT INTO watchlist_items (watchlist_id, symbol, notes, added_at)
                VALUES (?, ?, ?, ?)
            """, (watchlist_id, symbol, notes or None, now_iso()))
        except sqlite3.IntegrityError:
            raise ValueError("Symbol already in watchlist")

        self.db.execute("UPDATE watchlists SET updated_at = ? WHERE id = ?", (now_iso(), watchlist_id))
        return self.db.query_one("SELECT * FROM watchlist_items WHERE id = ?", (item_id,))

    def remove_item(self, user_id: int, watchlist_id: int, item_id: int = None, symbol: str = None) -> bool:
        if not self.get_watchlist(user_id, watchlist_id):
            return False
        if item_id is None and not symbol:
            raise ValueError("Item ID is required")
        if item_id is not None:
            result = self.db.execute(
                "DELETE FROM watchlist_items WHERE id = ? AND watchlist_id = ?", (item_id, watchlist_id)
            )
        else:
            result = self.db.execute(
                "DELETE FROM watchlist_items WHERE symbol = ? AND watchlist_id = ?", (symbol.upper(), watchlist_id)
            )
        return result.rowcount > 0

    def get_quotes(self, user_id: int, watchlist_id: int) -> Optional[List[Dict]]:
        """Live quotes for every symbol on the list. Symbols without a quote are skipped."""
        watchlist = self.get_watchlist(user_id, watchlist_id)
        if watchlist is None:
            return None

        quotes = []
        for item in watchlist['items']:
            result = self.market.get_quote(item['symbol'])
            if not result.get('success'):
                logger.warning(f"No quote for watchlist symbol {item['symbol']}: {result.get('error')}")
                continue
            q = result['data']
            quotes.append({
                'symbol': q['symbol'],
                'name': q.get('longName') or q.get('shortName') or item['symbol'],
                'price': q.get('price') or 0,
                'previousClose': q.get('previousClose') or 0,
                'change': q.get('change') or 0,
                'changePercent': q.get('changePercent') or 0,
                'volume': q.get('volume') or 0,
                'high': q.get('dayHigh') or 0,
                'low': q.get('dayLow') or 0,
                'open': q.get('open') or 0,
                'marketCap': q.get('marketCap') or 0,
                'pe': q.get('peRatio') or 0,
                'notes': item.get('notes'),
            })
        return quotes


# Singleton
watchlist_service = WatchlistService()
