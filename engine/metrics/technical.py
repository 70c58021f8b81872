"""
Technical Metrics
Indicators computed from price history (oldest first) and the latest quote.
"""
from typing import List, Optional
import numpy as np
from engine.metrics.types import (
    MetricCalculator, StockData, GOOD, NEUTRAL, BAD, benchmark,
    fmt_percent, fmt_signed_percent, fmt_currency,
)

RSI_PERIOD = 14


def calculate_sma(prices: List[float], period: int) -> Optional[float]:
    """Simple moving average of the last `period` prices."""
    if not prices or len(prices) < period:
        return None
    return float(np.mean(prices[-period:]))


def calculate_ema(prices: List[float], period: int) -> Optional[float]:
    """Exponential moving average seeded with the SMA of the first `period` prices."""
    if not prices or len(prices) < period:
        return None
    k = 2 / (period + 1)
    ema = float(np.mean(prices[:period]))
    for price in prices[period:]:
        ema = price * k + ema * (1 - k)
    return ema


def calculate_rsi(prices: List[float], period: int = RSI_PERIOD) -> Optional[float]:
    """Wilder-smoothed RSI. Needs period + 1 prices."""
    if not prices or len(prices) < period + 1:
        return None

    changes = np.diff(np.asarray(prices[:period + 1], dtype=float))
    avg_gain = float(changes[changes > 0].sum()) / period
    avg_loss = float(-changes[changes < 0].sum()) / period

    for i in range(period + 1, len(prices)):
        change = prices[i] - prices[i - 1]
        if change > 0:
            avg_gain = (avg_gain * (period - 1) + change) / period
            avg_loss = (avg_loss * (period - 1)) / period
        else:
            avg_gain = (avg_gain * (period - 1)) / period
            avg_loss = (avg_loss * (period - 1) + abs(change)) / period

    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100 - (100 / (1 + rs))


def _range_position(d: StockData) -> Optional[float]:
    if not d.current_price or not d.high_52_week or not d.low_52_week:
        return None
    if d.high_52_week == d.low_52_week:
        return 50.0
    return ((d.current_price - d.low_52_week) / (d.high_52_week - d.low_52_week)) * 100


def _interpret_range_position(value: float, data: Optional[StockData] = None) -> str:
    # Near the low reads as value, near the high as extended
    if value < 20:
        return GOOD
    if value > 90:
        return BAD
    return NEUTRAL


def _distance_from_high(d: StockData) -> Optional[float]:
    if not d.current_price or not d.high_52_week:
        return None
    return ((d.current_price - d.high_52_week) / d.high_52_week) * 100


def _interpret_distance_from_high(value: float, data: Optional[StockData] = None) -> str:
    if value < -30:
        return GOOD
    return NEUTRAL


def _sma_metric(period: int, band: float):
    def calculate(d: StockData) -> Optional[float]:
        return calculate_sma(d.price_history or [], period)

    def interpret(value: float, data: Optional[StockData] = None) -> str:
        if data is None or not data.current_price:
            return NEUTRAL
        if data.current_price > value * (1 + band):
            return GOOD
        if data.current_price < value * (1 - band):
            return BAD
        return NEUTRAL

    return calculate, interpret


def _rsi(d: StockData) -> Optional[float]:
    return calculate_rsi(d.price_history or [])


def _interpret_rsi(value: float, data: Optional[StockData] = None) -> str:
    if value < 30:
        return GOOD
    if value > 70:
        return BAD
    return NEUTRAL


def _macd(d: StockData) -> Optional[float]:
    prices = d.price_history
    if not prices or len(prices) < 26:
        return None
    ema12 = calculate_ema(prices, 12)
    ema26 = calculate_ema(prices, 26)
    if ema12 is None or ema26 is None:
        return None
    return ema12 - ema26


def _interpret_sign(value: float, data: Optional[StockData] = None) -> str:
    if value > 0:
        return GOOD
    if value < 0:
        return BAD
    return NEUTRAL


def _daily_change(d: StockData) -> Optional[float]:
    if not d.current_price or not d.previous_close:
        return None
    return ((d.current_price - d.previous_close) / d.previous_close) * 100


def _interpret_daily_change(value: float, data: Optional[StockData] = None) -> str:
    if value > 3:
        return GOOD
    if value < -3:
        return BAD
    return NEUTRAL


_sma20_calc, _sma20_interp = _sma_metric(20, 0.02)
_sma50_calc, _sma50_interp = _sma_metric(50, 0.02)
_sma200_calc, _sma200_interp = _sma_metric(200, 0.05)

technical_metrics = [
    MetricCalculator(
        id='52_week_position', name='52-Week Range Position', short_name='52W Pos',
        category='technical', calculate=_range_position, format=lambda v: f"{v:.1f}%",
        format_type='percentage',
        description='Current price position within 52-week range (0% = low, 100% = high).',
        interpretation=_interpret_range_position, benchmark=benchmark(30, 90, False),
        dependencies=['current_price', 'high_52_week', 'low_52_week'],
    ),
    MetricCalculator(
        id='distance_52w_high', name='Distance from 52-Week High', short_name='From High',
        category='technical', calculate=_distance_from_high, format=fmt_percent,
        format_type='percentage', description='Percentage below 52-week high.',
        interpretation=_interpret_distance_from_high,
        dependencies=['current_price', 'high_52_week'],
    ),
    MetricCalculator(
        id='sma_20', name='20-Day SMA', short_name='SMA20',
        category='technical', calculate=_sma20_calc, format=fmt_currency, format_type='currency',
        description='20-day simple moving average of closing prices.',
        interpretation=_sma20_interp, dependencies=['price_history'],
    ),
    MetricCalculator(
        id='sma_50', name='50-Day SMA', short_name='SMA50',
        category='technical', calculate=_sma50_calc, format=fmt_currency, format_type='currency',
        description='50-day simple moving average. Key trend indicator.',
        interpretation=_sma50_interp, dependencies=['price_history'],
    ),
    MetricCalculator(
        id='sma_200', name='200-Day SMA', short_name='SMA200',
        category='technical', calculate=_sma200_calc, format=fmt_currency, format_type='currency',
        description='200-day simple moving average. Major trend indicator.',
        interpretation=_sma200_interp, dependencies=['price_history'],
    ),
    MetricCalculator(
        id='rsi_14', name='RSI (14-day)', short_name='RSI',
        category='technical', calculate=_rsi, format=lambda v: f"{v:.1f}", format_type='number',
        description='Momentum indicator (0-100). Above 70 = overbought, below 30 = oversold.',
        interpretation=_interpret_rsi, benchmark=benchmark(30, 70, False),
        dependencies=['price_history'],
    ),
    MetricCalculator(
        id='macd', name='MACD', short_name='MACD',
        category='technical', calculate=_macd,
        format=lambda v: f"{'+' if v >= 0 else ''}{v:.2f}", format_type='number',
        description='Moving Average Convergence Divergence. Positive = bullish momentum.',
        interpretation=_interpret_sign, dependencies=['price_history'],
    ),
    MetricCalculator(
        id='daily_change', name='Daily Change', short_name='Day Chg',
        category='technical', calculate=_daily_change, format=fmt_signed_percent,
        format_type='percentage', description='Price change from previous close.',
        interpretation=_interpret_daily_change,
        dependencies=['current_price', 'previous_close'],
    ),
]
