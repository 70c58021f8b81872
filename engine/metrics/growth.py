"""Growth metrics. All values are percentages."""
from typing import Optional
from engine.metrics.types import (
    MetricCalculator, StockData, benchmark, fmt_signed_percent, higher_is_better,
)


def _revenue_growth_yoy(d: StockData) -> Optional[float]:
    if d.revenue_growth_yoy is not None:
        return d.revenue_growth_yoy
    if not d.revenue or not d.revenue_previous_year:
        return None
    return ((d.revenue - d.revenue_previous_year) / d.revenue_previous_year) * 100


def _earnings_growth_yoy(d: StockData) -> Optional[float]:
    if d.earnings_growth_yoy is not None:
        return d.earnings_growth_yoy
    if not d.net_income or d.net_income_previous_year is None:
        return None
    if d.net_income_previous_year == 0:
        return 100.0 if d.net_income > 0 else -100.0
    return ((d.net_income - d.net_income_previous_year) / abs(d.net_income_previous_year)) * 100


def _revenue_growth_qoq(d: StockData) -> Optional[float]:
    if d.revenue_growth_qoq is not None:
        return d.revenue_growth_qoq
    if not d.revenue or not d.revenue_previous_quarter:
        return None
    return ((d.revenue - d.revenue_previous_quarter) / d.revenue_previous_quarter) * 100


def _revenue_cagr(d: StockData) -> Optional[float]:
    # Needs five years of history; only a supplied value is used
    return d.revenue_5y_cagr


def _eps_cagr(d: StockData) -> Optional[float]:
    return d.eps_5y_cagr


def _equity_growth(d: StockData) -> Optional[float]:
    if not d.total_equity or not d.total_equity_previous_year:
        return None
    return ((d.total_equity - d.total_equity_previous_year) / d.total_equity_previous_year) * 100


growth_metrics = [
    MetricCalculator(
        id='revenue_growth_yoy', name='Revenue Growth (YoY)', short_name='Rev YoY',
        category='growth', calculate=_revenue_growth_yoy, format=fmt_signed_percent,
        format_type='percentage', description='Year-over-year revenue growth rate.',
        interpretation=higher_is_better(20, 0, negative_is_bad=False),
        benchmark=benchmark(20, 0, True),
        dependencies=['revenue', 'revenue_previous_year'],
    ),
    MetricCalculator(
        id='earnings_growth_yoy', name='Earnings Growth (YoY)', short_name='EPS YoY',
        category='growth', calculate=_earnings_growth_yoy, format=fmt_signed_percent,
        format_type='percentage', description='Year-over-year net income growth rate.',
        interpretation=higher_is_better(15, -10, negative_is_bad=False),
        benchmark=benchmark(15, -10, True),
        dependencies=['net_income', 'net_income_previous_year'],
    ),
    MetricCalculator(
        id='revenue_growth_qoq', name='Revenue Growth (QoQ)', short_name='Rev QoQ',
        category='growth', calculate=_revenue_growth_qoq, format=fmt_signed_percent,
        format_type='percentage', description='Quarter-over-quarter revenue growth rate.',
        interpretation=higher_is_better(10, -5, negative_is_bad=False),
        benchmark=benchmark(10, -5, True),
        dependencies=['revenue', 'revenue_previous_quarter'],
    ),
    MetricCalculator(
        id='revenue_cagr_5y', name='5-Year Revenue CAGR', short_name='Rev CAGR',
        category='growth', calculate=_revenue_cagr, format=fmt_signed_percent,
        format_type='percentage',
        description='Compound annual growth rate of revenue over 5 years.',
        interpretation=higher_is_better(15, 5, negative_is_bad=False),
        benchmark=benchmark(15, 5, True),
        dependencies=['revenue_5y_cagr'],
    ),
    MetricCalculator(
        id='eps_cagr_5y', name='5-Year EPS CAGR', short_name='EPS CAGR',
        category='growth', calculate=_eps_cagr, format=fmt_signed_percent,
        format_type='percentage',
        description='Compound annual growth rate of EPS over 5 years.',
        interpretation=higher_is_better(12, 0, negative_is_bad=False),
        benchmark=benchmark(12, 0, True),
        dependencies=['eps_5y_cagr'],
    ),
    MetricCalculator(
        id='equity_growth', name='Equity Growth (YoY)', short_name='Equity YoY',
        category='growth', calculate=_equity_growth, format=fmt_signed_percent,
        format_type='percentage', description='Year-over-year shareholder equity growth.',
        interpretation=higher_is_better(10, -5, negative_is_bad=False),
        benchmark=benchmark(10, -5, True),
        dependencies=['total_equity', 'total_equity_previous_year'],
    ),
]
