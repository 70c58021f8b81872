"""
Portfolio Service
User portfolios, holdings and their transaction ledger, priced through market data.
Snapshots record daily portfolio value for performance and risk statistics.
"""
from datetime import datetime
from typing import Dict, List, Optional, Any
import logging

from core.config import BENCHMARK_SYMBOL
from core.database import now_iso
from engine.portfolio_analytics import build_analytics
from engine.metrics.risk import DEFAULT_RISK_FREE_RATE, calculate_risk_metrics

logger = logging.getLogger(__name__)

UPDATABLE_PORTFOLIO_FIELDS = ('name', 'description', 'currency')


class PortfolioService:
    """Ownership-checked portfolio CRUD. Lookups that fail ownership return None."""

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

    # --- Portfolios ---

    def list_portfolios(self, user_id: int) -> List[Dict]:
        return self.db.query("""
            SELECT p.*, (SELECT COUNT(*) FROM portfolio_holdings h WHERE h.portfolio_id = p.id) as holdings_count
            FROM portfolios p
            WHERE p.user_id = ?
            ORDER BY p.is_default DESC, p.created_at ASC
        """, (user_id,))

    def get_portfolio(self, user_id: int, portfolio_id: int) -> Optional[Dict]:
        return self.db.query_one(
            "SELECT * FROM portfolios WHERE id = ? AND user_id = ?", (portfolio_id, user_id)
        )

    def create_portfolio(self, user_id: int, name: str, description: str = None,
                         currency: str = 'USD') -> Dict:
        name = (name or '').strip()
        if not name:
            raise ValueError("Portfolio name is required")

        has_any = self.db.scalar("SELECT COUNT(*) FROM portfolios WHERE user_id = ?", (user_id,))
        now = now_iso()
        portfolio_id = self.db.insert("""
            INSERT INTO portfolios (user_id, name, description, currency, is_default, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (user_id, name, description, currency or 'USD', 0 if has_any else 1, now, now))
        logger.info(f"Created portfolio {portfolio_id} for user {user_id}")
        return self.get_portfolio(user_id, portfolio_id)

    def update_portfolio(self, user_id: int, portfolio_id: int, updates: Dict[str, Any]) -> Optional[Dict]:
        if not self.get_portfolio(user_id, portfolio_id):
            return None

        fields = {k: v for k, v in updates.items() if k in UPDATABLE_PORTFOLIO_FIELDS and v is not None}
        if 'name' in fields:
            fields['name'] = fields['name'].strip()
            if not fields['name']:
                raise ValueError("Portfolio name is required")

        if updates.get('is_default'):
            self.db.execute("UPDATE portfolios SET is_default = 0 WHERE user_id = ?", (user_id,))
            fields['is_default'] = 1

        if fields:
            assignments = ', '.join(f"{k} = ?" for k in fields)
            self.db.execute(
                f"UPDATE portfolios SET {assignments}, updated_at = ? WHERE id = ?",
                tuple(fields.values()) + (now_iso(), portfolio_id),
            )
        return self.get_portfolio(user_id, portfolio_id)

    def delete_portfolio(self, user_id: int, portfolio_id: int) -> bool:
        result = self.db.execute("DELETE FROM portfolios WHERE id = ? AND user_id = ?", (portfolio_id, user_id))
        return result.rowcount > 0

    # --- Holdings ---

    def _holdings(self, portfolio_id: int) -> List[Dict]:
        return self.db.query(
            "SELECT * FROM portfolio_holdings WHERE portfolio_id = ? ORDER BY created_at DESC",
            (portfolio_id,),
        )

    def get_holding(self, portfolio_id: int, holding_id: int) -> Optional[Dict]:
        return self.db.query_one(
            "SELECT * FROM portfolio_holdings WHERE id = ? AND portfolio_id = ?", (holding_id, portfolio_id)
        )

    def _price_holding(self, holding: Dict) -> Dict:
        quantity = float(holding['quantity'])
        avg_price = float(holding['avg_buy_price'])
        total_cost = avg_price * quantity

        quote = self.market.get_quote(holding['symbol'])
        if quote.get('success') and quote['data'].get('price'):
            q = quote['data']
            current_price = q['price']
            current_value = current_price * quantity
            gain_loss = current_value - total_cost
            return dict(
                holding,
                currentPrice=current_price,
                currentValue=current_value,
                totalCost=total_cost,
                gainLoss=gain_loss,
                gainLossPct=(gain_loss / total_cost * 100) if total_cost > 0 else 0,
                dayChange=(q.get('change') or 0) * quantity,
                dayChangePct=q.get('changePercent') or 0,
                companyName=q.get('shortName') or holding['symbol'],
            )

        logger.warning(f"No quote for {holding['symbol']}, pricing at average cost")
        return dict(
            holding,
            currentPrice=avg_price,
            currentValue=total_cost,
            totalCost=total_cost,
            gainLoss=0,
            gainLossPct=0,
            dayChange=0,
            dayChangePct=0,
            companyName=holding['symbol'],
        )

    def list_holdings_with_quotes(self, portfolio_id: int) -> List[Dict]:
        return [self._price_holding(h) for h in self._holdings(portfolio_id)]

    def add_holding(self, portfolio_id: int, symbol: str, quantity: float, avg_buy_price: float,
                    notes: str = None, executed_at: str = None) -> Dict:
        """Buy into a position. An existing holding is averaged with the new lot."""
        symbol = (symbol or '').strip().upper()
        if not symbol or quantity is None or avg_buy_price is None:
            raise ValueError("Symbol, quantity, and average buy price are required")
        quantity = float(quantity)
        price = float(avg_buy_price)
        if quantity <= 0 or price <= 0:
            raise ValueError("Quantity and price must be positive numbers")

        now = now_iso()
        existing = self.db.query_one(
            "SELECT * FROM portfolio_holdings WHERE portfolio_id = ? AND symbol = ?", (portfolio_id, symbol)
        )

        with self.db._get_transaction() as conn:
            cursor = conn.cursor()
            if existing:
                old_qty = float(existing['quantity'])
                old_price = float(existing['avg_buy_price'])
                new_qty = old_qty + quantity
                new_avg = round((old_qty * old_price + quantity * price) / new_qty, 2)
                cursor.execute("""
                    UPDATE portfolio_holdings
                    SET quantity = ?, avg_buy_price = ?, notes = COALESCE(?, notes), updated_at = ?
                    WHERE id = ?
                """, (new_qty, new_avg, notes, now, existing['id']))
                holding_id = existing['id']
            else:
                cursor.execute("""
                    INSERT INTO portfolio_holdings (portfolio_id, symbol, quantity, avg_buy_price, notes,
                                                    created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                """, (portfolio_id, symbol, quantity, round(price, 2), notes, now, now))
                holding_id = cursor.lastrowid

            cursor.execute("""
                INSERT INTO portfolio_transactions (portfolio_id, holding_id, symbol, type, quantity, price,
                                                    total_amount, notes, executed_at, created_at)
                VALUES (?, ?, ?, 'buy', ?, ?, ?, ?, ?, ?)
            """, (portfolio_id, holding_id, symbol, quantity, round(price, 2), round(quantity * price, 2),
                  notes, executed_at or now, now))
            transaction_id = cursor.lastrowid

        return {
            'holding': self.get_holding(portfolio_id, holding_id),
            'transaction': self.db.query_one("SELECT * FROM portfolio_transactions WHERE id = ?", (transaction_id,)),
        }

    def update_holding(self, portfolio_id: int, holding_id: int, quantity: float = None,
                       avg_buy_price: float = None, notes: str = None) -> Optional[Dict]:
        holding = self.get_holding(portfolio_id, holding_id)
        if not holding:
            return None

        if quantity is not None and float(quantity) <= 0:
            raise ValueError("Invalid quantity")
        if avg_buy_price is not None and float(avg_buy_price) <= 0:
            raise ValueError("Invalid average buy price")

        self.db.execute("""
            UPDATE portfolio_holdings
            SET quantity = ?, avg_buy_price = ?, notes = ?, updated_at = ?
            WHERE id = ?
        """, (
            float(quantity) if quantity is not None else holding['quantity'],
            float(avg_buy_price) if avg_buy_price is not None else holding['avg_buy_price'],
            notes if notes is not None else holding['notes'],
            now_iso(),
            holding_id,
        ))
        return self.get_holding(portfolio_id, holding_id)

    def delete_holding(self, portfolio_id: int, holding_id: int, sell_price: float = None,
                       quantity: float = None) -> Optional[Dict]:
        """
        Sell out of a position. Without a quantity the whole holding is sold and removed;
        the sale is priced at sell_price, or the average cost when none is given.
        """
        holding = self.get_holding(portfolio_id, holding_id)
        if not holding:
            return None

        held = float(holding['quantity'])
        sell_qty = min(float(quantity), held) if quantity else held
        price = float(sell_price) if sell_price else float(holding['avg_buy_price'])
        now = now_iso()

        with self.db._get_transaction() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                INSERT INTO portfolio_transactions (portfolio_id, holding_id, symbol, type, quantity, price,
                                                    total_amount, executed_at, created_at)
                VALUES (?, ?, ?, 'sell', ?, ?, ?, ?, ?)
            """, (portfolio_id, holding_id, holding['symbol'], sell_qty, price, round(sell_qty * price, 2), now, now))

            if sell_qty >= held:
                cursor.execute("DELETE FROM portfolio_holdings WHERE id = ?", (holding_id,))
                remaining = 0.0
            else:
                remaining = held - sell_qty
                cursor.execute("UPDATE portfolio_holdings SET quantity = ?, updated_at = ? WHERE id = ?",
                               (remaining, now, holding_id))

        return {'symbol': holding['symbol'], 'sold': sell_qty, 'price': price, 'remaining': remaining}

    # --- Transactions ---

    def list_transactions(self, portfolio_id: int, limit: int = 100) -> List[Dict]:
        return self.db.query("""
            SELECT * FROM portfolio_transactions
            WHERE portfolio_id = ?
            ORDER BY executed_at DESC, id DESC
            LIMIT ?
        """, (portfolio_id, limit))

    # --- Snapshots & analytics ---

    def summarize(self, holdings: List[Dict]) -> Dict:
        total_value = sum(h['currentValue'] for h in holdings)
        total_cost = sum(h['totalCost'] for h in holdings)
        gain_loss = total_value - total_cost
        return {
            'totalValue': round(total_value, 2),
            'totalCost': round(total_cost, 2),
            'totalGainLoss': round(gain_loss, 2),
            'totalGainLossPercent': round(gain_loss / total_cost * 100, 2) if total_cost > 0 else 0,
            'dayChange': round(sum(h['dayChange'] for h in holdings), 2),
            'holdingsCount': len(holdings),
        }

    def record_snapshot(self, portfolio_id: int, snapshot_date: str = None) -> Dict:
        """Store today's valuation. Re-running on the same date replaces that day's row."""
        summary = self.summarize(self.list_holdings_with_quotes(portfolio_id))
        snapshot_date = snapshot_date or datetime.now().strftime('%Y-%m-%d')

        with self.db._get_transaction() as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM portfolio_snapshots WHERE portfolio_id = ? AND snapshot_date = ?",
                           (portfolio_id, snapshot_date))
            cursor.execute("""
                INSERT INTO portfolio_snapshots (portfolio_id, snapshot_date, total_value, total_cost,
                                                 total_gain_loss, total_gain_loss_percent, day_change, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (portfolio_id, snapshot_date, summary['totalValue'], summary['totalCost'],
                  summary['totalGainLoss'], summary['totalGainLossPercent'], summary['dayChange'], now_iso()))

        return dict(summary, date=snapshot_date)

    def get_snapshots(self, portfolio_id: int, limit: int = 365) -> List[Dict]:
        return self.db.query("""
            SELECT * FROM portfolio_snapshots
            WHERE portfolio_id = ?
            ORDER BY snapshot_date DESC
            LIMIT ?
        """, (portfolio_id, limit))

    def _analytics_inputs(self, portfolio_id: int) -> List[Dict]:
        rows = []
        for h in self.list_holdings_with_quotes(portfolio_id):
            profile = self.market.get_profile(h['symbol'])
            data = profile['data'] if profile.get('success') else {}
            rows.append({
                'symbol': h['symbol'],
                'quantity': float(h['quantity']),
                'avgBuyPrice': float(h['avg_buy_price']),
                'currentPrice': h['currentPrice'],
                'currentValue': h['currentValue'],
                'sector': data.get('sector') or 'Unknown',
                'industry': data.get('industry') or 'Unknown',
                'beta': data.get('beta') or 1,
            })
        return rows

    def get_analytics(self, portfolio_id: int) -> Dict:
        return build_analytics(self._analytics_inputs(portfolio_id), self.get_snapshots(portfolio_id))

    def _closes(self, symbol: str, range: str = '1y') -> Dict[str, float]:
        result = self.market.get_historical(symbol, interval='1d', range=range)
        if not result.get('success'):
            logger.warning(f"No price history for {symbol}: {result.get('error')}")
            return {}
        return {p['date']: p['close'] for p in result['data']['data'] if p.get('close')}

    def value_history(self, portfolio_id: int) -> Dict[str, float]:
        """Daily value of the current holdings over the dates all of them traded."""
        series = []
        for h in self._holdings(portfolio_id):
            closes = self._closes(h['symbol'])
            if closes:
                series.append((float(h['quantity']), closes))
        if not series:
            return {}
        dates = set.intersection(*(set(closes) for _, closes in series))
        return {d: sum(quantity * closes[d] for quantity, closes in series) for d in sorted(dates)}

    def get_risk_analysis(self, portfolio_id: int, risk_free_rate: float = DEFAULT_RISK_FREE_RATE) -> Dict:
        """Analytics plus return-based risk of the current holdings against the S&P 500."""
        analytics = self.get_analytics(portfolio_id)
        values = self.value_history(portfolio_id)
        dates = list(values)

        market = self._closes(BENCHMARK_SYMBOL)
        market_prices = [market[d] for d in dates] if dates and all(d in market for d in dates) else None
        # Without a benchmark fall back to the profile-weighted beta
        beta = None if market_prices else analytics['riskMetrics']['beta']

        risk = calculate_risk_metrics([values[d] for d in dates], market_prices, risk_free_rate, beta=beta)
        return dict(analytics, riskAnalysis=risk, historyDays=len(dates))

    def snapshot_all(self) -> Dict[str, int]:
        """Daily job: snapshot every portfolio that holds anything."""
        recorded = failed = 0
        portfolios = self.db.query("""
            SELECT DISTINCT p.id FROM portfolios p
            JOIN portfolio_holdings h ON h.portfolio_id = p.id
        """)
        for row in portfolios:
            try:
                self.record_snapshot(row['id'])
                recorded += 1
            except Exception as e:
                logger.error(f"Snapshot failed for portfolio {row['id']}: {e}")
                failed += 1
        return {'recorded': recorded, 'failed': failed}


# Singleton
portfolio_service = PortfolioService()
