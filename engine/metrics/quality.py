"""Quality metrics: returns on capital, margins and the Piotroski F-Score."""
from typing import Optional
from engine.metrics.types import (
    MetricCalculator, StockData, GOOD, NEUTRAL, BAD, benchmark,
    fmt_percent, higher_is_better,
)

DEFAULT_TAX_RATE = 0.25


def _roe(d: StockData) -> Optional[float]:
    if not d.net_income or not d.total_equity:
        return None
    return (d.net_income / d.total_equity) * 100


def _roa(d: StockData) -> Optional[float]:
    if not d.net_income or not d.total_assets:
        return None
    return (d.net_income / d.total_assets) * 100


def _roic(d: StockData) -> Optional[float]:
    if not d.operating_income or not d.total_equity or not d.total_debt:
        return None
    invested_capital = d.total_equity + d.total_debt
    if invested_capital == 0:
        return None
    # Operating income stands in for NOPAT before tax
    if d.tax_expense and d.net_income:
        tax_rate = d.tax_expense / (d.net_income + d.tax_expense)
    else:
        tax_rate = DEFAULT_TAX_RATE
    nopat = d.operating_income * (1 - tax_rate)
    return (nopat / invested_capital) * 100


def _gross_margin(d: StockData) -> Optional[float]:
    if d.gross_margin is not None:
        return d.gross_margin
    if not d.gross_profit or not d.revenue:
        return None
    return (d.gross_profit / d.revenue) * 100


def _operating_margin(d: StockData) -> Optional[float]:
    if d.operating_margin is not None:
        return d.operating_margin
    if not d.operating_income or not d.revenue:
        return None
    return (d.operating_income / d.revenue) * 100


def _net_margin(d: StockData) -> Optional[float]:
    if d.net_margin is not None:
        return d.net_margin
    if not d.net_income or not d.revenue:
        return None
    return (d.net_income / d.revenue) * 100


def _piotroski(d: StockData) -> Optional[float]:
    """Simplified 9-point score using only the current period."""
    score = 0

    # Profitability
    if d.net_income and d.net_income > 0:
        score += 1
    if d.operating_cash_flow and d.operating_cash_flow > 0:
        score += 1
    if d.net_income and d.total_assets and (d.net_income / d.total_assets) > 0:
        score += 1
    if d.operating_cash_flow and d.net_income and d.operating_cash_flow > d.net_income:
        score += 1

    # Leverage and liquidity
    if d.total_debt and d.total_assets and (d.total_debt / d.total_assets) < 0.5:
        score += 1
    if (d.current_assets and d.current_liabilities and d.current_liabilities > 0
            and (d.current_assets / d.current_liabilities) > 1):
        score += 1
    # Share dilution is not tracked; the point is always awarded
    score += 1

    # Operating efficiency
    if d.gross_margin and d.gross_margin > 0:
        score += 1
    if d.revenue and d.total_assets and d.total_assets > 0 and (d.revenue / d.total_assets) > 0.5:
        score += 1

    return score


def _interpret_piotroski(value: float, data: Optional[StockData] = None) -> str:
    if value >= 7:
        return GOOD
    if value <= 3:
        return BAD
    return NEUTRAL


quality_metrics = [
    MetricCalculator(
        id='roe', name='Return on Equity', short_name='ROE',
        category='quality', calculate=_roe, format=fmt_percent, format_type='percentage',
        description='Net income as percentage of shareholder equity. Measures profitability.',
        interpretation=higher_is_better(15, 10), benchmark=benchmark(15, 10, True),
        dependencies=['net_income', 'total_equity'],
    ),
    MetricCalculator(
        id='roa', name='Return on Assets', short_name='ROA',
        category='quality', calculate=_roa, format=fmt_percent, format_type='percentage',
        description='Net income as percentage of total assets. Measures asset efficiency.',
        interpretation=higher_is_better(10, 5), benchmark=benchmark(10, 5, True),
        dependencies=['net_income', 'total_assets'],
    ),
    MetricCalculator(
        id='roic', name='Return on Invested Capital', short_name='ROIC',
        category='quality', calculate=_roic, format=fmt_percent, format_type='percentage',
        description='Return generated on capital invested in the business.',
        interpretation=higher_is_better(15, 8), benchmark=benchmark(15, 8, True),
        dependencies=['operating_income', 'total_equity', 'total_debt'],
    ),
    MetricCalculator(
        id='gross_margin', name='Gross Margin', short_name='Gross Mgn',
        category='quality', calculate=_gross_margin, format=fmt_percent, format_type='percentage',
        description='Gross profit as percentage of revenue. Indicates pricing power.',
        interpretation=higher_is_better(40, 20), benchmark=benchmark(40, 20, True),
        dependencies=['gross_profit', 'revenue'],
    ),
    MetricCalculator(
        id='operating_margin', name='Operating Margin', short_name='Op Mgn',
        category='quality', calculate=_operating_margin, format=fmt_percent,
        format_type='percentage',
        description='Operating income as percentage of revenue. Core business profitability.',
        interpretation=higher_is_better(20, 10), benchmark=benchmark(20, 10, True),
        dependencies=['operating_income', 'revenue'],
    ),
    MetricCalculator(
        id='net_margin', name='Net Profit Margin', short_name='Net Mgn',
        category='quality', calculate=_net_margin, format=fmt_percent, format_type='percentage',
        description='Net income as percentage of revenue. Bottom-line profitability.',
        interpretation=higher_is_better(15, 5), benchmark=benchmark(15, 5, True),
        dependencies=['net_income', 'revenue'],
    ),
    MetricCalculator(
        id='piotroski_score', name='Piotroski F-Score', short_name='F-Score',
        category='quality', calculate=_piotroski, format=lambda v: f"{int(v)}/9",
        format_type='integer',
        description='Fundamental strength score (0-9). Higher is better.',
        interpretation=_interpret_piotroski, benchmark=benchmark(7, 3, True),
        dependencies=['net_income', 'operating_cash_flow', 'total_assets'],
    ),
]
