"""
Price Alert Management
Stock alerts (one-shot price targets) and portfolio alerts (recurring holding triggers),
checked in bulk by the cron job. Triggered alerts are written to the notifications table,
deduplicated so the same alert does not notify twice within the dedupe window.
"""
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Any
from core.config import MAX_ACTIVE_STOCK_ALERTS
from core.database import now_iso
import hashlib
import json
import logging

logger = logging.getLogger(__name__)

STOCK_CONDITIONS = ('above', 'below', 'crosses_above', 'crosses_below')
PORTFOLIO_ALERT_TYPES = ('price_above', 'price_below', 'percent_change')


def check_stock_condition(condition: str, target_price: float, current_price: float,
                          previous_price: Optional[float] = None) -> bool:
    """Cross conditions need a previous price; without one they act like above/below."""
    if condition == 'above':
        return current_price >= target_price
    if condition == 'below':
        return current_price <= target_price
    if condition == 'crosses_above':
        if previous_price is None:
            return current_price >= target_price
        return previous_price < target_price <= current_price
    if condition == 'crosses_below':
        if previous_price is None:
            return current_price <= target_price
        return previous_price > target_price >= current_price
    return False


def check_portfolio_condition(alert_type: str, condition_value: Optional[float],
                              condition_percent: Optional[float], current_price: float,
                              change_percent: float = 0) -> bool:
    if alert_type == 'price_above':
        return condition_value is not None and current_price >= condition_value
    if alert_type == 'price_below':
        return condition_value is not None and current_price <= condition_value
    if alert_type == 'percent_change':
        return condition_percent is not None and abs(change_percent) >= abs(condition_percent)
    return False


def format_stock_condition(condition: str, target_price: float) -> str:
    return {
        'above': f"Price reached above ${target_price:.2f}",
        'below': f"Price dropped below ${target_price:.2f}",
        'crosses_above': f"Price crossed above ${target_price:.2f}",
        'crosses_below': f"Price crossed below ${target_price:.2f}",
    }.get(condition, f"Target: ${target_price:.2f}")


def format_portfolio_condition(alert_type: str, condition_value: Optional[float],
                               condition_percent: Optional[float]) -> str:
    if alert_type == 'price_above':
        return f"Price reached above ${condition_value or 0:.2f}"
    if alert_type == 'price_below':
        return f"Price dropped below ${condition_value or 0:.2f}"
    if alert_type == 'percent_change':
        return f"Percent change alert: {condition_percent}%"
    return "Portfolio alert triggered"


class AlertManager:
    """Manage price alerts and their deduplicated notifications."""

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

    @property
    def dedup_window_hours(self) -> float:
        return float(self.db.get_setting('alert_dedupe_hours') or 24)

    # --- Stock alerts ---

    def list_stock_alerts(self, user_id: int, active: Optional[bool] = None,
                          symbol: Optional[str] = None) -> List[Dict]:
        query = "SELECT * FROM stock_alerts WHERE user_id = ?"
        params = [user_id]
        if active is not None:
            query += " AND is_active = ?"
            params.append(1 if active else 0)
        if symbol:
            query += " AND symbol = ?"
            params.append(symbol.upper())
        query += " ORDER BY created_at DESC"
        return self.db.query(query, tuple(params))

    def get_stock_alert(self, user_id: int, alert_id: int) -> Optional[Dict]:
        return self.db.query_one("SELECT * FROM stock_alerts WHERE id = ? AND user_id = ?", (alert_id, user_id))

    def _validate_stock_alert(self, condition: Any, target_price: Any) -> float:
        if condition not in STOCK_CONDITIONS:
            raise ValueError("Valid condition is required (above, below, crosses_above, crosses_below)")
        try:
            target = float(target_price)
        except (TypeError, ValueError):
            raise ValueError("Valid target price is required")
        if target <= 0:
            raise ValueError("Valid target price is required")
        return target

    def create_stock_alert(self, user_id: int, symbol: str, condition: str, target_price: Any) -> Dict:
        if not symbol or not isinstance(symbol, str):
            raise ValueError("Symbol is required")
        target = self._validate_stock_alert(condition, target_price)

        active_count = self.db.scalar(
            "SELECT COUNT(*) FROM stock_alerts WHERE user_id = ? AND is_active = 1", (user_id,)
        )
        if active_count >= MAX_ACTIVE_STOCK_ALERTS:
            raise ValueError(
                f"Maximum {MAX_ACTIVE_STOCK_ALERTS} active alerts allowed. Please delete some alerts first."
            )

        symbol = symbol.strip().upper()
        now = now_iso()
        alert_id = self.db.insert("""
            INSERT INTO stock_alerts (user_id, symbol, condition, target_price, is_active, created_at, updated_at)
            VALUES (?, ?, ?, ?, 1, ?, ?)
        """, (user_id, symbol, condition, target, now, now))

        return {
            'alert': self.get_stock_alert(user_id, alert_id),
            'message': f"Alert created for {symbol} when price goes {condition} ${target:.2f}",
        }

    def update_stock_alert(self, user_id: int, alert_id: int, updates: Dict[str, Any]) -> Optional[Dict]:
        alert = self.get_stock_alert(user_id, alert_id)
        if not alert:
            return None

        condition = updates.get('condition', alert['condition'])
        target = self._validate_stock_alert(condition, updates.get('target_price', alert['target_price']))
        is_active = updates.get('is_active')
        is_active = alert['is_active'] if is_active is None else (1 if is_active else 0)

        # Re-arming a triggered alert clears its history
        rearm = is_active and not alert['is_active']
        self.db.execute("""
            UPDATE stock_alerts
            SET condition = ?, target_price = ?, is_active = ?,
                triggered_at = CASE WHEN ? THEN NULL ELSE triggered_at END,
                last_price = CASE WHEN ? THEN NULL ELSE last_price END,
                updated_at = ?
            WHERE id = ?
        """, (condition, target, is_active, rearm, rearm, now_iso(), alert_id))
        return self.get_stock_alert(user_id, alert_id)

    def delete_stock_alert(self, user_id: int, alert_id: int) -> bool:
        result = self.db.execute("DELETE FROM stock_alerts WHERE id = ? AND user_id = ?", (alert_id, user_id))
        return result.rowcount > 0

    # --- Portfolio alerts ---

    def list_portfolio_alerts(self, portfolio_id: int) -> List[Dict]:
        return self.db.query(
            "SELECT * FROM portfolio_alerts WHERE portfolio_id = ? ORDER BY created_at DESC", (portfolio_id,)
        )

    def get_portfolio_alert(self, portfolio_id: int, alert_id: int) -> Optional[Dict]:
        return self.db.query_one(
            "SELECT * FROM portfolio_alerts WHERE id = ? AND portfolio_id = ?", (alert_id, portfolio_id)
        )

    def create_portfolio_alert(self, user_id: int, portfolio_id: int, alert_type: str,
                               symbol: str = None, holding_id: int = None,
                               condition_value: float = None, condition_percent: float = None,
                               message: str = None) -> Dict:
        if not alert_type:
            raise ValueError("Alert type is required")
        if alert_type not in PORTFOLIO_ALERT_TYPES:
            raise ValueError(f"Unsupported alert type: {alert_type}")
        if alert_type in ('price_above', 'price_below') and not condition_value:
            raise ValueError("Condition value is required for this alert type")
        if alert_type == 'percent_change' and not condition_percent:
            raise ValueError("Condition percent is required for this alert type")

        if holding_id is not None:
            holding = self.db.query_one(
                "SELECT symbol FROM portfolio_holdings WHERE id = ? AND portfolio_id = ?", (holding_id, portfolio_id)
            )
            if not holding:
                raise LookupError("Holding not found in this portfolio")
            symbol = symbol or holding['symbol']
        if not symbol:
            raise ValueError("Symbol is required")

        now = now_iso()
        alert_id = self.db.insert("""
            INSERT INTO portfolio_alerts (user_id, portfolio_id, holding_id, symbol, alert_type,
                                          condition_value, condition_percent, message, is_active,
                                          created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?)
        """, (user_id, portfolio_id, holding_id, symbol.strip().upper(), alert_type,
              float(condition_value) if condition_value is not None else None,
              float(condition_percent) if condition_percent is not None else None,
              message, now, now))
        return self.get_portfolio_alert(portfolio_id, alert_id)

    def update_portfolio_alert(self, portfolio_id: int, alert_id: int, updates: Dict[str, Any]) -> Optional[Dict]:
        alert = self.get_portfolio_alert(portfolio_id, alert_id)
        if not alert:
            return None
        is_active = updates.get('is_active')
        self.db.execute("""
            UPDATE portfolio_alerts
            SET condition_value = ?, condition_percent = ?, message = ?, is_active = ?, updated_at = ?
            WHERE id = ?
        """, (
            updates.get('condition_value', alert['condition_value']),
            updates.get('condition_percent', alert['condition_percent']),
            updates.get('message', alert['message']),
            alert['is_active'] if is_active is None else (1 if is_active else 0),
            now_iso(),
            alert_id,
        ))
        return self.get_portfolio_alert(portfolio_id, alert_id)

    def delete_portfolio_alert(self, portfolio_id: int, alert_id: int) -> bool:
        result = self.db.execute(
            "DELETE FROM portfolio_alerts WHERE id = ? AND portfolio_id = ?", (alert_id, portfolio_id)
        )
        return result.rowcount > 0

    # --- Notifications ---

    def generate_alert_hash(self, alert: Dict) -> str:
        """Hash of the alert identity, used for deduplication."""
        key = f"{alert.get('type', '')}:{alert.get('user_id', '')}:{alert.get('alert_id', '')}:{alert.get('symbol', '')}"
        return hashlib.sha256(key.encode()).hexdigest()[:16]

    def should_notify(self, alert_hash: str, now: datetime = None) -> bool:
        now = now or datetime.now()
        cutoff = (now - timedelta(hours=self.dedup_window_hours)).isoformat()
        recent = self.db.query_one(
            "SELECT id FROM notifications WHERE alert_hash = ? AND created_at > ? LIMIT 1", (alert_hash, cutoff)
        )
        return recent is None

    def store_notification(self, alert: Dict, now: datetime = None) -> bool:
        """Persist a notification unless one with the same hash is inside the dedupe window."""
        alert_hash = self.generate_alert_hash(alert)
        if not self.should_notify(alert_hash, now):
            logger.debug(f"Suppressed duplicate notification {alert_hash}")
            return False

        self.db.execute("""
            INSERT INTO notifications (user_id, type, title, message, alert_hash, metadata, is_read, created_at)
            VALUES (?, ?, ?, ?, ?, ?, 0, ?)
        """, (
            alert.get('user_id'),
            alert.get('type', 'alert'),
            alert.get('title'),
            alert.get('message', ''),
            alert_hash,
            json.dumps(alert.get('metadata') or {}),
            (now or datetime.now()).isoformat(),
        ))
        return True

    def get_notifications(self, user_id: int, unread_only: bool = False, limit: int = 50) -> List[Dict]:
        query = "SELECT * FROM notifications WHERE user_id = ?"
        if unread_only:
            query += " AND is_read = 0"
        query += " ORDER BY created_at DESC LIMIT ?"
        rows = self.db.query(query, (user_id, limit))
        for row in rows:
            row['metadata'] = json.loads(row['metadata']) if row.get('metadata') else {}
        return rows

    def mark_notification_read(self, user_id: int, notification_id: int = None) -> int:
        """Mark one notification, or all of the user's, as read."""
        if notification_id is not None:
            result = self.db.execute(
                "UPDATE notifications SET is_read = 1 WHERE id = ? AND user_id = ?", (notification_id, user_id)
            )
        else:
            result = self.db.execute("UPDATE notifications SET is_read = 1 WHERE user_id = ?", (user_id,))
        return result.rowcount

    def cleanup_old_notifications(self, days_to_keep: int = 30) -> int:
        cutoff = (datetime.now() - timedelta(days=days_to_keep)).isoformat()
        result = self.db.execute("DELETE FROM notifications WHERE created_at < ?", (cutoff,))
        count = result.rowcount
        logger.info(f"Cleaned up {count} old notifications")
        return count

    # --- Cron ---

    def _fetch_quote(self, symbol: str) -> Optional[Dict]:
        result = self.market.get_quote(symbol)
        if result.get('success') and result['data'].get('price'):
            return result['data']
        return None

    @staticmethod
    def _group_by_symbol(alerts: List[Dict]) -> Dict[str, List[Dict]]:
        grouped = {}
        for alert in alerts:
            if alert.get('symbol'):
                grouped.setdefault(alert['symbol'], []).append(alert)
        return grouped

    def check_all_alerts(self, now: datetime = None) -> Dict[str, Any]:
        """Evaluate every active alert against one fresh price per symbol."""
        now = now or datetime.now()
        results = {
            'stockAlerts': {'checked': 0, 'triggered': 0},
            'portfolioAlerts': {'checked': 0, 'triggered': 0},
            'errors': [],
        }
        quotes = {}

        def quote_for(symbol):
            if symbol not in quotes:
                quotes[symbol] = self._fetch_quote(symbol)
            return quotes[symbol]

        stock_alerts = self.db.query("SELECT * FROM stock_alerts WHERE is_active = 1")
        for symbol, alerts in self._group_by_symbol(stock_alerts).items():
            quote = quote_for(symbol)
            if quote is None:
                results['errors'].append(f"Failed to fetch price for {symbol}")
                continue
            price = quote['price']

            for alert in alerts:
                results['stockAlerts']['checked'] += 1
                target = float(alert['target_price'])
                if check_stock_condition(alert['condition'], target, price, alert.get('last_price')):
                    results['stockAlerts']['triggered'] += 1
                    self.db.execute("""
                        UPDATE stock_alerts SET is_active = 0, triggered_at = ?, last_price = ?, updated_at = ?
                        WHERE id = ?
                    """, (now.isoformat(), price, now.isoformat(), alert['id']))
                    condition_text = format_stock_condition(alert['condition'], target)
                    self.store_notification({
                        'type': 'stock_alert',
                        'user_id': alert['user_id'],
                        'alert_id': alert['id'],
                        'symbol': symbol,
                        'title': f"{symbol} Alert",
                        'message': f"{condition_text} - Current price: ${price:.2f}",
                        'metadata': {'symbol': symbol, 'price': price, 'alertId': alert['id']},
                    }, now)
                else:
                    self.db.execute("UPDATE stock_alerts SET last_price = ? WHERE id = ?", (price, alert['id']))

        portfolio_alerts = self.db.query("SELECT * FROM portfolio_alerts WHERE is_active = 1")
        for symbol, alerts in self._group_by_symbol(portfolio_alerts).items():
            quote = quote_for(symbol)
            if quote is None:
                results['errors'].append(f"Failed to fetch price for portfolio alert symbol {symbol}")
                continue

            for alert in alerts:
                results['portfolioAlerts']['checked'] += 1
                if not check_portfolio_condition(alert['alert_type'], alert['condition_value'],
                                                 alert['condition_percent'], quote['price'],
                                                 quote.get('changePercent') or 0):
                    continue

                results['portfolioAlerts']['triggered'] += 1
                # Portfolio alerts stay active; they recur
                self.db.execute("""
                    UPDATE portfolio_alerts
                    SET last_triggered_at = ?, trigger_count = trigger_count + 1, updated_at = ?
                    WHERE id = ?
                """, (now.isoformat(), now.isoformat(), alert['id']))
                condition_text = format_portfolio_condition(
                    alert['alert_type'], alert['condition_value'], alert['condition_percent']
                )
                self.store_notification({
                    'type': 'portfolio_alert',
                    'user_id': alert['user_id'],
                    'alert_id': alert['id'],
                    'symbol': symbol,
                    'title': f"{symbol} Portfolio Alert",
                    'message': alert['message'] or f"{condition_text} - Current price: ${quote['price']:.2f}",
                    'metadata': {'symbol': symbol, 'price': quote['price'], 'portfolioId': alert['portfolio_id']},
                }, now)

        logger.info(
            f"Alert check: {results['stockAlerts']['triggered']}/{results['stockAlerts']['checked']} stock, "
            f"{results['portfolioAlerts']['triggered']}/{results['portfolioAlerts']['checked']} portfolio"
        )
        return results


# Singleton
alert_manager = AlertManager()
