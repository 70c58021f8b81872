"""Valuation metrics for judging whether a stock is over or undervalued."""
import math
from typing import Optional
from engine.metrics.types import (
    MetricCalculator, StockData, GOOD, NEUTRAL, BAD, benchmark,
    fmt_multiple, fmt_ratio, fmt_percent, fmt_currency,
    lower_is_better, higher_is_better,
)


def _ev_to_ebitda(d: StockData) -> Optional[float]:
    if d.ev_to_ebitda is not None:
        return d.ev_to_ebitda
    if not d.enterprise_value or not d.ebitda:
        return None
    return d.enterprise_value / d.ebitda


def _ev_to_revenue(d: StockData) -> Optional[float]:
    if d.ev_to_revenue is not None:
        return d.ev_to_revenue
    if not d.enterprise_value or not d.revenue:
        return None
    return d.enterprise_value / d.revenue


def _peg(d: StockData) -> Optional[float]:
    if d.peg_ratio is not None:
        return d.peg_ratio
    pe = d.pe_ratio
    if pe is None and d.current_price and d.eps:
        pe = d.current_price / d.eps
    growth = d.earnings_growth_yoy if d.earnings_growth_yoy is not None else d.eps_5y_cagr
    if not pe or not growth:
        return None
    return pe / growth


def _graham_number(d: StockData) -> Optional[float]:
    if not d.eps or not d.book_value_per_share:
        return None
    if d.eps <= 0 or d.book_value_per_share <= 0:
        return None
    return math.sqrt(22.5 * d.eps * d.book_value_per_share)


def _interpret_graham(value: float, data: Optional[StockData] = None) -> str:
    if data is None or not data.current_price:
        return NEUTRAL
    margin = (value - data.current_price) / data.current_price
    if margin > 0.2:
        return GOOD
    if margin < -0.2:
        return BAD
    return NEUTRAL


def _price_to_fcf(d: StockData) -> Optional[float]:
    if not d.market_cap or not d.free_cash_flow:
        return None
    return d.market_cap / d.free_cash_flow


def _earnings_yield(d: StockData) -> Optional[float]:
    if not d.eps or not d.current_price:
        return None
    return (d.eps / d.current_price) * 100


def _fcf_yield(d: StockData) -> Optional[float]:
    if not d.free_cash_flow or not d.market_cap:
        return None
    return (d.free_cash_flow / d.market_cap) * 100


valuation_metrics = [
    MetricCalculator(
        id='ev_to_ebitda', name='EV/EBITDA', short_name='EV/EBITDA',
        category='valuation', calculate=_ev_to_ebitda, format=fmt_multiple, format_type='multiple',
        description='Enterprise value relative to EBITDA. Popular for comparing companies '
                    'with different capital structures.',
        interpretation=lower_is_better(10, 20), benchmark=benchmark(10, 20, False),
        dependencies=['enterprise_value', 'ebitda'],
    ),
    MetricCalculator(
        id='ev_to_revenue', name='EV/Revenue', short_name='EV/Rev',
        category='valuation', calculate=_ev_to_revenue, format=fmt_multiple, format_type='multiple',
        description='Enterprise value relative to revenue. Useful for high-growth companies.',
        interpretation=lower_is_better(3, 10), benchmark=benchmark(3, 10, False),
        dependencies=['enterprise_value', 'revenue'],
    ),
    MetricCalculator(
        id='peg_ratio', name='PEG Ratio', short_name='PEG',
        category='valuation', calculate=_peg, format=fmt_ratio, format_type='ratio',
        description='P/E ratio adjusted for growth. Below 1 suggests undervaluation.',
        interpretation=lower_is_better(1, 2), benchmark=benchmark(1, 2, False),
        dependencies=['pe_ratio', 'earnings_growth_yoy'],
    ),
    MetricCalculator(
        id='graham_number', name='Graham Number', short_name='Graham #',
        category='valuation', calculate=_graham_number, format=fmt_currency, format_type='currency',
        description='Maximum price a defensive investor should pay (Benjamin Graham formula).',
        interpretation=_interpret_graham,
        dependencies=['eps', 'book_value_per_share'],
    ),
    MetricCalculator(
        id='price_to_fcf', name='Price to Free Cash Flow', short_name='P/FCF',
        category='valuation', calculate=_price_to_fcf, format=fmt_multiple, format_type='multiple',
        description='Market cap relative to free cash flow. Measures cash generation.',
        interpretation=lower_is_better(15, 30), benchmark=benchmark(15, 30, False),
        dependencies=['market_cap', 'free_cash_flow'],
    ),
    MetricCalculator(
        id='earnings_yield', name='Earnings Yield', short_name='E. Yield',
        category='valuation', calculate=_earnings_yield, format=fmt_percent,
        format_type='percentage',
        description='Inverse of P/E ratio. Compare to bond yields for valuation.',
        interpretation=higher_is_better(7, 3), benchmark=benchmark(7, 3, True),
        dependencies=['eps', 'current_price'],
    ),
    MetricCalculator(
        id='fcf_yield', name='Free Cash Flow Yield', short_name='FCF Yield',
        category='valuation', calculate=_fcf_yield, format=fmt_percent, format_type='percentage',
        description='Free cash flow as percentage of market cap.',
        interpretation=higher_is_better(8, 3), benchmark=benchmark(8, 3, True),
        dependencies=['free_cash_flow', 'market_cap'],
    ),
]
