"""Leverage metrics: debt load and the ability to service it."""
from typing import Optional
from engine.metrics.types import (
    MetricCalculator, StockData, GOOD, NEUTRAL, BAD, benchmark,
    fmt_multiple, fmt_ratio, lower_is_better,
)


def _debt_to_equity(d: StockData) -> Optional[float]:
    if d.total_debt is None or not d.total_equity:
        return None
    return d.total_debt / d.total_equity


def _debt_to_assets(d: StockData) -> Optional[float]:
    if d.total_debt is None or not d.total_assets:
        return None
    return d.total_debt / d.total_assets


def _debt_to_capital(d: StockData) -> Optional[float]:
    if d.total_debt is None:
        return None
    capital = d.total_debt + (d.total_equity or 0)
    if capital == 0:
        return None
    return d.total_debt / capital


def _interest_coverage(d: StockData) -> Optional[float]:
    # Feeds disagree on the sign of interest expense
    if not d.interest_expense or d.operating_income is None:
        return None
    return d.operating_income / abs(d.interest_expense)


def _net_debt_to_ebitda(d: StockData) -> Optional[float]:
    if not d.ebitda or d.ebitda <= 0:
        return None
    return ((d.total_debt or 0) - (d.cash or 0)) / d.ebitda


def _interpret_debt_to_equity(value: float, data: Optional[StockData] = None) -> str:
    # Negative equity makes the ratio negative
    if value < 0:
        return BAD
    if value < 1.0:
        return GOOD
    if value <= 2.0:
        return NEUTRAL
    return BAD


def _interpret_coverage(value: float, data: Optional[StockData] = None) -> str:
    if value >= 5.0:
        return GOOD
    if value >= 1.5:
        return NEUTRAL
    return BAD


def _interpret_net_debt_to_ebitda(value: float, data: Optional[StockData] = None) -> str:
    # Net cash is fine
    if value < 3.0:
        return GOOD
    if value <= 4.0:
        return NEUTRAL
    return BAD


leverage_metrics = [
    MetricCalculator(
        id='debt_to_equity', name='Debt to Equity', short_name='D/E',
        category='leverage', calculate=_debt_to_equity, format=fmt_ratio, format_type='ratio',
        description='Total debt divided by shareholder equity.',
        interpretation=_interpret_debt_to_equity, benchmark=benchmark(1.0, 2.0, False),
        dependencies=['total_debt', 'total_equity'],
    ),
    MetricCalculator(
        id='debt_to_assets', name='Debt to Assets', short_name='D/A',
        category='leverage', calculate=_debt_to_assets, format=fmt_ratio, format_type='ratio',
        description='Share of assets financed with debt.',
        interpretation=lower_is_better(0.3, 0.6), benchmark=benchmark(0.3, 0.6, False),
        dependencies=['total_debt', 'total_assets'],
    ),
    MetricCalculator(
        id='debt_to_capital', name='Debt to Capital', short_name='D/C',
        category='leverage', calculate=_debt_to_capital, format=fmt_ratio, format_type='ratio',
        description='Total debt divided by debt plus equity.',
        interpretation=lower_is_better(0.4, 0.6), benchmark=benchmark(0.4, 0.6, False),
        dependencies=['total_debt', 'total_equity'],
    ),
    MetricCalculator(
        id='interest_coverage', name='Interest Coverage', short_name='Int Cov',
        category='leverage', calculate=_interest_coverage, format=fmt_multiple, format_type='ratio',
        description='Operating income divided by interest expense.',
        interpretation=_interpret_coverage, benchmark=benchmark(5.0, 1.5, True),
        dependencies=['operating_income', 'interest_expense'],
    ),
    MetricCalculator(
        id='net_debt_to_ebitda', name='Net Debt to EBITDA', short_name='ND/EBITDA',
        category='leverage', calculate=_net_debt_to_ebitda, format=fmt_multiple, format_type='ratio',
        description='Years of EBITDA needed to repay debt net of cash.',
        interpretation=_interpret_net_debt_to_ebitda, benchmark=benchmark(3.0, 4.0, False),
        dependencies=['total_debt', 'cash', 'ebitda'],
    ),
]
