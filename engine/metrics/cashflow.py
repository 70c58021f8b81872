"""Cash flow metrics: cash generation relative to sales, earnings and shares."""
from typing import Optional
from engine.metrics.types import (
    MetricCalculator, StockData, GOOD, NEUTRAL, BAD, benchmark,
    fmt_currency, fmt_percent, fmt_ratio, always_neutral, higher_is_better,
)


def _free_cash_flow(d: StockData) -> Optional[float]:
    if d.free_cash_flow is not None:
        return d.free_cash_flow
    if d.operating_cash_flow is None or d.capital_expenditures is None:
        return None
    return d.operating_cash_flow - abs(d.capital_expenditures)


def _fcf_margin(d: StockData) -> Optional[float]:
    fcf = _free_cash_flow(d)
    if fcf is None or not d.revenue:
        return None
    return (fcf / d.revenue) * 100


def _ocf_margin(d: StockData) -> Optional[float]:
    if d.operating_cash_flow is None or not d.revenue:
        return None
    return (d.operating_cash_flow / d.revenue) * 100


def _fcf_per_share(d: StockData) -> Optional[float]:
    fcf = _free_cash_flow(d)
    if fcf is None or not d.shares_outstanding:
        return None
    return fcf / d.shares_outstanding


def _earnings_quality(d: StockData) -> Optional[float]:
    if d.operating_cash_flow is None or not d.net_income or d.net_income < 0:
        return None
    return d.operating_cash_flow / d.net_income


def _capex_to_ocf(d: StockData) -> Optional[float]:
    if d.capital_expenditures is None or not d.operating_cash_flow or d.operating_cash_flow < 0:
        return None
    return (abs(d.capital_expenditures) / d.operating_cash_flow) * 100


def _interpret_earnings_quality(value: float, data: Optional[StockData] = None) -> str:
    if value >= 1.2:
        return GOOD
    if value >= 0.8:
        return NEUTRAL
    return BAD


def _interpret_reinvestment(value: float, data: Optional[StockData] = None) -> str:
    if 20 <= value <= 50:
        return GOOD
    if 10 <= value <= 70:
        return NEUTRAL
    return BAD


cashflow_metrics = [
    MetricCalculator(
        id='fcf_margin', name='Free Cash Flow Margin', short_name='FCF Mgn',
        category='cashflow', calculate=_fcf_margin, format=fmt_percent, format_type='percentage',
        description='Free cash flow as percentage of revenue.',
        interpretation=higher_is_better(10, 0), benchmark=benchmark(10, 0, True),
        dependencies=['free_cash_flow', 'revenue'],
    ),
    MetricCalculator(
        id='operating_cash_flow_margin', name='Operating Cash Flow Margin', short_name='OCF Mgn',
        category='cashflow', calculate=_ocf_margin, format=fmt_percent, format_type='percentage',
        description='Operating cash flow as percentage of revenue.',
        interpretation=higher_is_better(15, 5), benchmark=benchmark(15, 5, True),
        dependencies=['operating_cash_flow', 'revenue'],
    ),
    MetricCalculator(
        id='fcf_per_share', name='Free Cash Flow per Share', short_name='FCF/Share',
        category='cashflow', calculate=_fcf_per_share, format=fmt_currency, format_type='currency',
        description='Free cash flow divided by shares outstanding.',
        interpretation=always_neutral,
        dependencies=['free_cash_flow', 'shares_outstanding'],
    ),
    MetricCalculator(
        id='earnings_quality', name='Cash Earnings Quality', short_name='OCF/NI',
        category='cashflow', calculate=_earnings_quality, format=fmt_ratio, format_type='ratio',
        description='Operating cash flow divided by net income. Above 1 means earnings are backed by cash.',
        interpretation=_interpret_earnings_quality, benchmark=benchmark(1.2, 0.8, True),
        dependencies=['operating_cash_flow', 'net_income'],
    ),
    MetricCalculator(
        id='capex_to_ocf', name='Cash Reinvestment Ratio', short_name='CapEx/OCF',
        category='cashflow', calculate=_capex_to_ocf, format=fmt_percent, format_type='percentage',
        description='Capital expenditures as percentage of operating cash flow.',
        interpretation=_interpret_reinvestment,
        dependencies=['capital_expenditures', 'operating_cash_flow'],
    ),
]
