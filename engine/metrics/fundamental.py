"""Fundamental metrics: price multiples, enterprise value and dividends."""
from typing import Optional
from engine.metrics.types import (
    MetricCalculator, StockData, GOOD, NEUTRAL, BAD, benchmark,
    fmt_multiple, fmt_ratio, fmt_percent, fmt_large_currency,
    always_neutral, lower_is_better,
)


def _pe(d: StockData) -> Optional[float]:
    if d.pe_ratio is not None:
        return d.pe_ratio
    if not d.current_price or not d.eps:
        return None
    return d.current_price / d.eps


def _pb(d: StockData) -> Optional[float]:
    if d.price_to_book is not None:
        return d.price_to_book
    if not d.current_price or not d.book_value_per_share:
        return None
    return d.current_price / d.book_value_per_share


def _ps(d: StockData) -> Optional[float]:
    if d.price_to_sales is not None:
        return d.price_to_sales
    if not d.market_cap or not d.revenue:
        return None
    return d.market_cap / d.revenue


def _peg(d: StockData) -> Optional[float]:
    if d.peg_ratio is not None:
        return d.peg_ratio
    pe = d.pe_ratio or (d.current_price / d.eps if d.current_price and d.eps else None)
    growth = d.earnings_growth_yoy
    if not pe or not growth:
        return None
    return pe / growth


def _price_to_cash_flow(d: StockData) -> Optional[float]:
    if not d.market_cap or not d.operating_cash_flow:
        return None
    return d.market_cap / d.operating_cash_flow


def _price_to_fcf(d: StockData) -> Optional[float]:
    if not d.market_cap or not d.free_cash_flow:
        return None
    return d.market_cap / d.free_cash_flow


def _enterprise_value(d: StockData) -> Optional[float]:
    if d.enterprise_value is not None:
        return d.enterprise_value
    if not d.market_cap:
        return None
    debt = d.total_debt or 0
    cash = d.cash_and_equivalents or d.cash or 0
    return d.market_cap + debt - cash


def _dividend_yield(d: StockData) -> Optional[float]:
    if d.dividend_yield is not None:
        return d.dividend_yield
    if not d.dividend_per_share or not d.current_price:
        return None
    return (d.dividend_per_share / d.current_price) * 100


def _interpret_dividend_yield(value: float, data: Optional[StockData] = None) -> str:
    if value == 0:
        return NEUTRAL
    if 2 <= value <= 6:
        return GOOD
    # Unsustainably high
    if value > 8:
        return BAD
    return NEUTRAL


def _payout_ratio(d: StockData) -> Optional[float]:
    if d.payout_ratio is not None:
        return d.payout_ratio
    if not d.dividend_per_share or not d.eps:
        return None
    return (d.dividend_per_share / d.eps) * 100


def _interpret_payout(value: float, data: Optional[StockData] = None) -> str:
    if value < 0 or value > 100:
        return BAD
    if 30 <= value <= 60:
        return GOOD
    if value > 80:
        return BAD
    return NEUTRAL


fundamental_metrics = [
    MetricCalculator(
        id='pe_ratio', name='Price to Earnings Ratio', short_name='P/E',
        category='fundamental', calculate=_pe, format=fmt_multiple, format_type='multiple',
        description='Price paid for each dollar of earnings. Lower may indicate undervaluation.',
        interpretation=lower_is_better(15, 30), benchmark=benchmark(15, 30, False),
        dependencies=['current_price', 'eps'],
    ),
    MetricCalculator(
        id='pb_ratio', name='Price to Book Ratio', short_name='P/B',
        category='fundamental', calculate=_pb, format=fmt_multiple, format_type='multiple',
        description='Price relative to book value. Below 1 may indicate undervaluation.',
        interpretation=lower_is_better(1, 3), benchmark=benchmark(1, 3, False),
        dependencies=['current_price', 'book_value_per_share'],
    ),
    MetricCalculator(
        id='ps_ratio', name='Price to Sales Ratio', short_name='P/S',
        category='fundamental', calculate=_ps, format=fmt_multiple, format_type='multiple',
        description='Market value relative to revenue. Useful for unprofitable companies.',
        interpretation=lower_is_better(2, 8), benchmark=benchmark(2, 8, False),
        dependencies=['market_cap', 'revenue'],
    ),
    MetricCalculator(
        id='peg_ratio', name='PEG Ratio', short_name='PEG',
        category='fundamental', calculate=_peg, format=fmt_ratio, format_type='ratio',
        description='P/E ratio divided by earnings growth rate. Below 1 suggests undervaluation relative to growth.',
        interpretation=lower_is_better(1, 2), benchmark=benchmark(1, 2, False),
        dependencies=['pe_ratio', 'earnings_growth_yoy'],
    ),
    MetricCalculator(
        id='price_to_cash_flow', name='Price to Cash Flow', short_name='P/CF',
        category='fundamental', calculate=_price_to_cash_flow, format=fmt_multiple,
        format_type='multiple',
        description='Market cap relative to operating cash flow. Lower suggests better value.',
        interpretation=lower_is_better(10, 20), benchmark=benchmark(10, 20, False),
        dependencies=['market_cap', 'operating_cash_flow'],
    ),
    MetricCalculator(
        id='price_to_fcf', name='Price to Free Cash Flow', short_name='P/FCF',
        category='fundamental', calculate=_price_to_fcf, format=fmt_multiple,
        format_type='multiple',
        description='Market cap relative to free cash flow. Lower is better.',
        interpretation=lower_is_better(15, 25), benchmark=benchmark(15, 25, False),
        dependencies=['market_cap', 'free_cash_flow'],
    ),
    MetricCalculator(
        id='enterprise_value', name='Enterprise Value', short_name='EV',
        category='fundamental', calculate=_enterprise_value, format=fmt_large_currency,
        format_type='currency',
        description='Total company value including debt, minus cash.',
        interpretation=always_neutral,
        dependencies=['market_cap', 'total_debt', 'cash'],
    ),
    MetricCalculator(
        id='dividend_yield', name='Dividend Yield', short_name='Div Yield',
        category='fundamental', calculate=_dividend_yield, format=fmt_percent,
        format_type='percentage',
        description='Annual dividend as percentage of stock price.',
        interpretation=_interpret_dividend_yield, benchmark=benchmark(3, 8, True),
        dependencies=['dividend_per_share', 'current_price'],
    ),
    MetricCalculator(
        id='payout_ratio', name='Dividend Payout Ratio', short_name='Payout',
        category='fundamental', calculate=_payout_ratio, format=lambda v: f"{v:.1f}%",
        format_type='percentage',
        description='Percentage of earnings paid as dividends.',
        interpretation=_interpret_payout, benchmark=benchmark(50, 80, False),
        dependencies=['dividend_per_share', 'eps'],
    ),
]
