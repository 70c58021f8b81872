"""
Risk Metrics
Return-based risk statistics for one security from its daily closing prices.

Returns are simple daily returns annualized over 252 trading days. Market-relative
figures (beta, alpha, correlation) need a benchmark series of the same length;
a reported beta is used as-is when one is supplied.
"""
import logging
import math
from typing import Any, Dict, List, Optional

import numpy as np

logger = logging.getLogger(__name__)

TRADING_DAYS = 252
MIN_PRICE_POINTS = 30
MIN_VAR_RETURNS = 20
DEFAULT_RISK_FREE_RATE = 0.04

RISK_LEVELS = [
    (20, 'Very Low'),
    (40, 'Low'),
    (60, 'Moderate'),
    (80, 'High'),
]


def daily_returns(prices: List[float]) -> np.ndarray:
    series = np.array([p for p in prices if p is not None], dtype=float)
    if len(series) < 2:
        return np.array([], dtype=float)
    previous = series[:-1]
    with np.errstate(divide='ignore', invalid='ignore'):
        returns = np.where(previous != 0, np.diff(series) / previous, 0.0)
    return returns


def max_drawdown(prices: List[float]) -> Optional[float]:
    """Largest peak-to-trough decline as a negative fraction, 0 when prices never fall."""
    series = np.array([p for p in prices if p is not None], dtype=float)
    if len(series) < 2:
        return None
    peaks = np.maximum.accumulate(series)
    with np.errstate(divide='ignore', invalid='ignore'):
        drawdowns = np.where(peaks > 0, (series - peaks) / peaks, 0.0)
    return float(drawdowns.min())


def value_at_risk(returns: np.ndarray) -> Dict[str, Optional[float]]:
    """Historical VaR at 95% and 99% plus the 95% expected shortfall."""
    if len(returns) < MIN_VAR_RETURNS:
        return {'var95': None, 'var99': None, 'cvar95': None}
    ordered = np.sort(returns)
    n = len(ordered)
    index95 = int(math.floor(n * 0.05))
    index99 = int(math.floor(n * 0.01))
    return {
        'var95': float(ordered[index95]),
        'var99': float(ordered[index99]),
        'cvar95': float(np.mean(ordered[:index95 + 1])),
    }


def risk_score(metrics: Dict[str, Any]) -> Optional[float]:
    """
    0-100, higher is riskier. Mean of the available components, each clamped
    to 0-100: |beta|, volatility, drawdown depth, Sharpe shortfall and VaR.
    """
    components = []
    if metrics.get('beta') is not None:
        components.append(abs(metrics['beta']) / 2 * 100)
    if metrics.get('volatility') is not None:
        components.append(metrics['volatility'] / 0.5 * 100)
    if metrics.get('maxDrawdown') is not None:
        components.append(abs(metrics['maxDrawdown']) / 0.5 * 100)
    if metrics.get('sharpeRatio') is not None:
        components.append((3 - metrics['sharpeRatio']) / 4 * 100)
    if metrics.get('var95') is not None:
        components.append(abs(metrics['var95']) / 0.10 * 100)

    if not components:
        return None
    clamped = [min(max(c, 0.0), 100.0) for c in components]
    return round(sum(clamped) / len(clamped), 1)


def risk_level(score: Optional[float]) -> Optional[str]:
    if score is None:
        return None
    for limit, label in RISK_LEVELS:
        if score < limit:
            return label
    return 'Very High'


def calculate_risk_metrics(prices: List[float], market_prices: Optional[List[float]] = None,
                           risk_free_rate: float = DEFAULT_RISK_FREE_RATE,
                           beta: Optional[float] = None) -> Optional[Dict[str, Any]]:
    """
    Full risk profile for a price series (oldest first). Returns None when fewer
    than 30 prices are available.
    """
    clean = [p for p in (prices or []) if p is not None]
    if len(clean) < MIN_PRICE_POINTS:
        return None

    returns = daily_returns(clean)
    market_returns = daily_returns(market_prices) if market_prices else np.array([], dtype=float)
    aligned = len(market_returns) == len(returns) and len(returns) > 1

    avg = float(np.mean(returns))
    sd = float(np.std(returns, ddof=1))
    daily_rf = risk_free_rate / TRADING_DAYS

    if beta is None and aligned:
        market_var = float(np.var(market_returns, ddof=1))
        if market_var > 0:
            beta = float(np.cov(returns, market_returns, ddof=1)[0, 1]) / market_var

    annualized_return = (1 + avg) ** TRADING_DAYS - 1
    volatility = sd * math.sqrt(TRADING_DAYS)
    sharpe = (avg - daily_rf) / sd * math.sqrt(TRADING_DAYS) if sd > 0 else None

    shortfall = np.minimum(returns - daily_rf, 0.0)
    downside = float(np.sqrt(np.mean(shortfall ** 2)))
    sortino = (avg - daily_rf) / downside * math.sqrt(TRADING_DAYS) if downside > 0 else None

    alpha = None
    correlation = None
    r_squared = None
    if aligned:
        market_annual = (1 + float(np.mean(market_returns))) ** TRADING_DAYS - 1
        if beta is not None:
            alpha = annualized_return - (risk_free_rate + beta * (market_annual - risk_free_rate))
        market_sd = float(np.std(market_returns, ddof=1))
        if sd > 0 and market_sd > 0:
            correlation = float(np.cov(returns, market_returns, ddof=1)[0, 1]) / (sd * market_sd)
            r_squared = correlation ** 2

    moves = returns[returns != 0]
    win_rate = float(np.mean(moves > 0)) if len(moves) else None

    metrics = {
        'beta': beta,
        'alpha': alpha,
        'volatility': volatility,
        'annualizedReturn': annualized_return,
        'sharpeRatio': sharpe,
        'sortinoRatio': sortino,
        'downsideDeviation': downside * math.sqrt(TRADING_DAYS),
        'maxDrawdown': max_drawdown(clean),
        'winRate': win_rate,
        'correlation': correlation,
        'rSquared': r_squared,
        'dataPoints': len(clean),
    }
    metrics.update(value_at_risk(returns))
    metrics['riskScore'] = risk_score(metrics)
    metrics['riskLevel'] = risk_level(metrics['riskScore'])
    return metrics
