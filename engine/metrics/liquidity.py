"""Liquidity metrics: how easily current obligations are covered."""
from typing import Optional
from engine.metrics.types import (
    MetricCalculator, StockData, benchmark, fmt_ratio, higher_is_better,
)


def _current_ratio(d: StockData) -> Optional[float]:
    if d.current_assets is None or not d.current_liabilities:
        return None
    return d.current_assets / d.current_liabilities


def _quick_ratio(d: StockData) -> Optional[float]:
    if d.current_assets is None or not d.current_liabilities:
        return None
    return (d.current_assets - (d.inventory or 0)) / d.current_liabilities


def _cash_ratio(d: StockData) -> Optional[float]:
    cash = d.cash_and_equivalents if d.cash_and_equivalents is not None else d.cash
    if cash is None or not d.current_liabilities:
        return None
    return cash / d.current_liabilities


def _operating_cash_flow_ratio(d: StockData) -> Optional[float]:
    if d.operating_cash_flow is None or not d.current_liabilities:
        return None
    return d.operating_cash_flow / d.current_liabilities


liquidity_metrics = [
    MetricCalculator(
        id='current_ratio', name='Current Ratio', short_name='Current',
        category='liquidity', calculate=_current_ratio, format=fmt_ratio, format_type='ratio',
        description='Current assets divided by current liabilities.',
        interpretation=higher_is_better(2.0, 1.0), benchmark=benchmark(2.0, 1.0, True),
        dependencies=['current_assets', 'current_liabilities'],
    ),
    MetricCalculator(
        id='quick_ratio', name='Quick Ratio', short_name='Quick',
        category='liquidity', calculate=_quick_ratio, format=fmt_ratio, format_type='ratio',
        description='Current assets excluding inventory divided by current liabilities.',
        interpretation=higher_is_better(1.5, 1.0), benchmark=benchmark(1.5, 1.0, True),
        dependencies=['current_assets', 'inventory', 'current_liabilities'],
    ),
    MetricCalculator(
        id='cash_ratio', name='Cash Ratio', short_name='Cash',
        category='liquidity', calculate=_cash_ratio, format=fmt_ratio, format_type='ratio',
        description='Cash and short-term investments divided by current liabilities.',
        interpretation=higher_is_better(0.5, 0.2), benchmark=benchmark(0.5, 0.2, True),
        dependencies=['cash_and_equivalents', 'current_liabilities'],
    ),
    MetricCalculator(
        id='operating_cash_flow_ratio', name='Operating Cash Flow Ratio', short_name='OCF Ratio',
        category='liquidity', calculate=_operating_cash_flow_ratio, format=fmt_ratio,
        format_type='ratio',
        description='Operating cash flow divided by current liabilities.',
        interpretation=higher_is_better(1.0, 0.5), benchmark=benchmark(1.0, 0.5, True),
        dependencies=['operating_cash_flow', 'current_liabilities'],
    ),
]
