"""Efficiency metrics: turnover ratios and working-capital day counts."""
from typing import Optional
from engine.metrics.types import (
    MetricCalculator, StockData, GOOD, NEUTRAL, BAD, benchmark,
    fmt_multiple, fmt_days, always_neutral, higher_is_better,
)

DAYS_PER_YEAR = 365


def _fewer_days(good: float, bad: float):
    def interpret(value: float, data: Optional[StockData] = None) -> str:
        if value < good:
            return GOOD
        if value > bad:
            return BAD
        return NEUTRAL
    return interpret


def _asset_turnover(d: StockData) -> Optional[float]:
    if not d.revenue or not d.total_assets:
        return None
    return d.revenue / d.total_assets


def _inventory_turnover(d: StockData) -> Optional[float]:
    if not d.cost_of_goods_sold or not d.inventory:
        return None
    return d.cost_of_goods_sold / d.inventory


def _days_inventory(d: StockData) -> Optional[float]:
    if not d.cost_of_goods_sold or not d.inventory:
        return None
    return (d.inventory / d.cost_of_goods_sold) * DAYS_PER_YEAR


def _receivables_turnover(d: StockData) -> Optional[float]:
    if not d.revenue or not d.accounts_receivable:
        return None
    return d.revenue / d.accounts_receivable


def _days_sales_outstanding(d: StockData) -> Optional[float]:
    if not d.revenue or not d.accounts_receivable:
        return None
    return (d.accounts_receivable / d.revenue) * DAYS_PER_YEAR


def _payables_turnover(d: StockData) -> Optional[float]:
    if not d.cost_of_goods_sold or not d.accounts_payable:
        return None
    return d.cost_of_goods_sold / d.accounts_payable


def _cash_conversion_cycle(d: StockData) -> Optional[float]:
    """DIO + DSO - DPO"""
    if not all([d.cost_of_goods_sold, d.revenue, d.inventory,
                d.accounts_receivable, d.accounts_payable]):
        return None
    dio = (d.inventory / d.cost_of_goods_sold) * DAYS_PER_YEAR
    dso = (d.accounts_receivable / d.revenue) * DAYS_PER_YEAR
    dpo = (d.accounts_payable / d.cost_of_goods_sold) * DAYS_PER_YEAR
    return dio + dso - dpo


efficiency_metrics = [
    MetricCalculator(
        id='asset_turnover', name='Asset Turnover', short_name='Asset Turn',
        category='efficiency', calculate=_asset_turnover, format=fmt_multiple, format_type='ratio',
        description='Revenue generated per dollar of assets. Measures asset efficiency.',
        interpretation=higher_is_better(1, 0.5, negative_is_bad=False),
        benchmark=benchmark(1, 0.5, True),
        dependencies=['revenue', 'total_assets'],
    ),
    MetricCalculator(
        id='inventory_turnover', name='Inventory Turnover', short_name='Inv Turn',
        category='efficiency', calculate=_inventory_turnover, format=fmt_multiple,
        format_type='ratio',
        description='How many times inventory is sold and replaced. Higher is better.',
        interpretation=higher_is_better(8, 4, negative_is_bad=False),
        benchmark=benchmark(8, 4, True),
        dependencies=['cost_of_goods_sold', 'inventory'],
    ),
    MetricCalculator(
        id='days_inventory', name='Days Inventory Outstanding', short_name='DIO',
        category='efficiency', calculate=_days_inventory, format=fmt_days, format_type='number',
        description='Average days to sell inventory. Lower is better.',
        interpretation=_fewer_days(30, 90), benchmark=benchmark(30, 90, False),
        dependencies=['cost_of_goods_sold', 'inventory'],
    ),
    MetricCalculator(
        id='receivables_turnover', name='Receivables Turnover', short_name='AR Turn',
        category='efficiency', calculate=_receivables_turnover, format=fmt_multiple,
        format_type='ratio',
        description='How efficiently a company collects receivables.',
        interpretation=higher_is_better(10, 5, negative_is_bad=False),
        benchmark=benchmark(10, 5, True),
        dependencies=['revenue', 'accounts_receivable'],
    ),
    MetricCalculator(
        id='days_sales_outstanding', name='Days Sales Outstanding', short_name='DSO',
        category='efficiency', calculate=_days_sales_outstanding, format=fmt_days,
        format_type='number',
        description='Average days to collect receivables. Lower is better.',
        interpretation=_fewer_days(30, 60), benchmark=benchmark(30, 60, False),
        dependencies=['revenue', 'accounts_receivable'],
    ),
    MetricCalculator(
        id='payables_turnover', name='Payables Turnover', short_name='AP Turn',
        category='efficiency', calculate=_payables_turnover, format=fmt_multiple,
        format_type='ratio',
        description='How quickly a company pays its suppliers.',
        interpretation=always_neutral,
        dependencies=['cost_of_goods_sold', 'accounts_payable'],
    ),
    MetricCalculator(
        id='cash_conversion_cycle', name='Cash Conversion Cycle', short_name='CCC',
        category='efficiency', calculate=_cash_conversion_cycle, format=fmt_days,
        format_type='number',
        description='Time to convert investments into cash. Lower (or negative) is better.',
        interpretation=_fewer_days(30, 90), benchmark=benchmark(30, 90, False),
        dependencies=['cost_of_goods_sold', 'revenue', 'inventory',
                      'accounts_receivable', 'accounts_payable'],
    ),
]
