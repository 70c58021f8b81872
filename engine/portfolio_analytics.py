"""
Portfolio Analytics
Totals, sector allocation, concentration and risk statistics for a set of priced holdings.

Holdings passed in are dicts with symbol, quantity, avgBuyPrice, currentPrice,
currentValue, sector and beta. Snapshots are portfolio_snapshots rows.
"""
import numpy as np
from typing import Dict, List, Optional
import logging

logger = logging.getLogger(__name__)

TRADING_DAYS = 252
RISK_FREE_RATE = 0.04
TOP_HOLDINGS = 10


def calculate_totals(holdings: List[Dict]) -> Dict:
    total_value = sum(h['currentValue'] for h in holdings)
    total_cost = sum(h['avgBuyPrice'] * h['quantity'] for h in holdings)
    gain_loss = total_value - total_cost
    return {
        'totalValue': total_value,
        'totalCost': total_cost,
        'totalGainLoss': gain_loss,
        'totalGainLossPercent': (gain_loss / total_cost * 100) if total_cost > 0 else 0,
        'holdingsCount': len(holdings),
    }


def sector_allocation(holdings: List[Dict], total_value: float) -> List[Dict]:
    sectors = {}
    for h in holdings:
        entry = sectors.setdefault(h.get('sector') or 'Unknown', {'value': 0.0, 'holdings': []})
        entry['value'] += h['currentValue']
        entry['holdings'].append(h['symbol'])

    allocation = [
        {
            'sector': sector,
            'value': data['value'],
            'percentage': (data['value'] / total_value * 100) if total_value > 0 else 0,
            'holdings': data['holdings'],
        }
        for sector, data in sectors.items()
    ]
    return sorted(allocation, key=lambda a: a['value'], reverse=True)


def top_holdings(holdings: List[Dict], total_value: float, limit: int = TOP_HOLDINGS) -> List[Dict]:
    rows = []
    for h in holdings:
        cost = h['avgBuyPrice'] * h['quantity']
        rows.append({
            'symbol': h['symbol'],
            'value': h['currentValue'],
            'percentage': (h['currentValue'] / total_value * 100) if total_value > 0 else 0,
            'gainLoss': h['currentValue'] - cost,
            'gainLossPercent': ((h['currentPrice'] - h['avgBuyPrice']) / h['avgBuyPrice'] * 100)
            if h['avgBuyPrice'] > 0 else 0,
        })
    rows.sort(key=lambda r: r['value'], reverse=True)
    return rows[:limit]


def portfolio_beta(holdings: List[Dict], total_value: float) -> float:
    """Value-weighted beta; holdings without a beta count as 1."""
    if total_value <= 0:
        return 0.0
    return sum((h.get('beta') or 1) * h['currentValue'] / total_value for h in holdings)


def diversification_score(holdings: List[Dict], total_value: float) -> float:
    """
    0-100. Up to 30 points for 10+ holdings, 30 for 5+ sectors and 40 for low
    concentration in the largest position.
    """
    if not holdings:
        return 0.0
    sectors = {h.get('sector') or 'Unknown' for h in holdings}
    max_weight = max(h['currentValue'] / total_value for h in holdings) * 100 if total_value > 0 else 0

    holdings_factor = min(len(holdings) / 10, 1) * 30
    sectors_factor = min(len(sectors) / 5, 1) * 30
    concentration_factor = (100 - max_weight) * 0.4
    return min(100.0, holdings_factor + sectors_factor + concentration_factor)


def risk_metrics_from_values(values: List[float], risk_free_rate: float = RISK_FREE_RATE) -> Dict:
    """Annualised volatility (%), Sharpe ratio and max drawdown (%) of a value series."""
    empty = {'volatility': 0.0, 'sharpeRatio': 0.0, 'maxDrawdown': 0.0}
    series = np.array([v for v in values if v is not None], dtype=float)
    if len(series) < 2:
        return empty

    prev = series[:-1]
    valid = prev > 0
    if not valid.any():
        return empty
    returns = (series[1:][valid] - prev[valid]) / prev[valid]

    std = float(np.std(returns, ddof=1)) if len(returns) > 1 else 0.0
    annual_std = std * np.sqrt(TRADING_DAYS)
    annual_return = float(np.mean(returns)) * TRADING_DAYS
    sharpe = (annual_return - risk_free_rate) / annual_std if annual_std > 0 else 0.0

    peaks = np.maximum.accumulate(series)
    with np.errstate(divide='ignore', invalid='ignore'):
        drawdowns = np.where(peaks > 0, (peaks - series) / peaks, 0.0)

    return {
        'volatility': round(float(annual_std) * 100, 2),
        'sharpeRatio': round(float(sharpe), 2),
        'maxDrawdown': round(float(drawdowns.max()) * 100, 2),
    }


def performance_history(snapshots: List[Dict]) -> List[Dict]:
    """Snapshots in ascending date order, as chart points."""
    ordered = sorted(snapshots, key=lambda s: s['snapshot_date'])
    return [
        {
            'date': s['snapshot_date'],
            'totalValue': s['total_value'],
            'totalGainLoss': s['total_gain_loss'],
            'totalGainLossPercent': s['total_gain_loss_percent'],
            'dayChange': s.get('day_change') or 0,
        }
        for s in ordered
    ]


def build_analytics(holdings: List[Dict], snapshots: Optional[List[Dict]] = None) -> Dict:
    totals = calculate_totals(holdings)
    total_value = totals['totalValue']
    history = performance_history(snapshots or [])
    risk = risk_metrics_from_values([p['totalValue'] for p in history])

    return dict(
        totals,
        sectorAllocation=sector_allocation(holdings, total_value),
        topHoldings=top_holdings(holdings, total_value),
        riskMetrics={
            'beta': portfolio_beta(holdings, total_value),
            'volatility': risk['volatility'],
            'sharpeRatio': risk['sharpeRatio'],
            'maxDrawdown': risk['maxDrawdown'],
            'diversificationScore': diversification_score(holdings, total_value),
        },
        performanceHistory=history,
    )
