"""
DuPont Analysis Metrics

3-step:  ROE = Net Profit Margin x Asset Turnover x Equity Multiplier
5-step:  ROE = Tax Burden x Interest Burden x Operating Margin x Asset Turnover x Equity Multiplier

The 5-step ROE is exposed as `dupont_roe_extended` but not registered with the registry.
"""
from typing import Dict, Optional
from engine.metrics.types import (
    MetricCalculator, StockData, GOOD, NEUTRAL, BAD, benchmark,
    fmt_percent, fmt_multiple, higher_is_better,
)


def _npm(d: StockData) -> Optional[float]:
    if d.net_margin is not None:
        return d.net_margin
    if not d.net_income or not d.revenue:
        return None
    return (d.net_income / d.revenue) * 100


def _asset_turnover(d: StockData) -> Optional[float]:
    if not d.revenue or not d.total_assets:
        return None
    return d.revenue / d.total_assets


def _equity_multiplier(d: StockData) -> Optional[float]:
    if not d.total_assets or not d.total_equity:
        return None
    return d.total_assets / d.total_equity


def _interpret_equity_multiplier(value: float, data: Optional[StockData] = None) -> str:
    if 1 <= value <= 2:
        return GOOD
    if value > 4:
        return BAD
    return NEUTRAL


def _roe_3step(d: StockData) -> Optional[float]:
    npm = _npm(d)
    at = _asset_turnover(d)
    em = _equity_multiplier(d)
    if npm is None or at is None or em is None:
        return None
    return (npm / 100) * at * em * 100


def _operating_margin(d: StockData) -> Optional[float]:
    if d.operating_margin is not None:
        return d.operating_margin
    if not d.operating_income or not d.revenue:
        return None
    return (d.operating_income / d.revenue) * 100


def _interest_burden(d: StockData) -> Optional[float]:
    """EBT / EBIT, with EBT = net income + tax and EBIT approximated by operating income."""
    if not d.net_income or not d.operating_income:
        return None
    ebt = d.net_income + (d.tax_expense or 0)
    return ebt / d.operating_income


def _tax_burden(d: StockData) -> Optional[float]:
    """Net income / EBT"""
    if not d.net_income:
        return None
    ebt = d.net_income + (d.tax_expense or 0)
    if ebt == 0:
        return None
    return d.net_income / ebt


def _ratio_at_least(good: float, bad: float):
    def interpret(value: float, data: Optional[StockData] = None) -> str:
        if value >= good:
            return GOOD
        if value < bad:
            return BAD
        return NEUTRAL
    return interpret


def _roe_5step(d: StockData) -> Optional[float]:
    tb = _tax_burden(d)
    ib = _interest_burden(d)
    opm = _operating_margin(d)
    at = _asset_turnover(d)
    em = _equity_multiplier(d)
    if None in (tb, ib, opm, at, em):
        return None
    return tb * ib * (opm / 100) * at * em * 100


def _fmt_3dp(value: float) -> str:
    return f"{value:.3f}"


dupont_npm = MetricCalculator(
    id='dupont_npm', name='Net Profit Margin', short_name='NPM',
    category='efficiency', calculate=_npm, format=fmt_percent, format_type='percentage',
    description='Measures how much profit a company generates from its revenue after all expenses.',
    interpretation=higher_is_better(20, 5, negative_is_bad=False), benchmark=benchmark(20, 5, True),
    dependencies=['net_income', 'revenue'],
)

dupont_at = MetricCalculator(
    id='dupont_at', name='Asset Turnover', short_name='AT',
    category='efficiency', calculate=_asset_turnover, format=fmt_multiple, format_type='ratio',
    description='Measures how efficiently a company uses its assets to generate revenue.',
    interpretation=higher_is_better(1.5, 0.5, negative_is_bad=False),
    benchmark=benchmark(1.5, 0.5, True),
    dependencies=['revenue', 'total_assets'],
)

dupont_em = MetricCalculator(
    id='dupont_em', name='Equity Multiplier', short_name='EM',
    category='leverage', calculate=_equity_multiplier, format=fmt_multiple, format_type='ratio',
    description='Measures financial leverage. Higher values indicate more debt financing.',
    interpretation=_interpret_equity_multiplier, benchmark=benchmark(2, 4, False),
    dependencies=['total_assets', 'total_equity'],
)

dupont_roe_3step = MetricCalculator(
    id='dupont_roe_3step', name='ROE (3-Step DuPont)', short_name='ROE',
    category='efficiency', calculate=_roe_3step, format=fmt_percent, format_type='percentage',
    description='Return on Equity calculated via 3-step DuPont: NPM x Asset Turnover x Equity Multiplier.',
    interpretation=higher_is_better(15, 8, negative_is_bad=False), benchmark=benchmark(15, 8, True),
    dependencies=['net_income', 'revenue', 'total_assets', 'total_equity'],
)

dupont_opm = MetricCalculator(
    id='dupont_opm', name='Operating Margin', short_name='OPM',
    category='efficiency', calculate=_operating_margin, format=fmt_percent,
    format_type='percentage',
    description='Measures operating efficiency - profit from core operations relative to revenue.',
    interpretation=higher_is_better(20, 10, negative_is_bad=False),
    benchmark=benchmark(20, 10, True),
    dependencies=['operating_income', 'revenue'],
)

dupont_interest_burden = MetricCalculator(
    id='dupont_interest_burden', name='Interest Burden', short_name='IB',
    category='efficiency', calculate=_interest_burden, format=_fmt_3dp, format_type='ratio',
    description='Measures the impact of interest expense on profits. Closer to 1 means less interest burden.',
    interpretation=_ratio_at_least(0.9, 0.7), benchmark=benchmark(0.9, 0.7, True),
    dependencies=['net_income', 'operating_income', 'tax_expense'],
)

dupont_tax_burden = MetricCalculator(
    id='dupont_tax_burden', name='Tax Burden', short_name='TB',
    category='efficiency', calculate=_tax_burden, format=_fmt_3dp, format_type='ratio',
    description='Measures the proportion of pre-tax income retained after taxes. '
                'Higher means lower effective tax rate.',
    interpretation=_ratio_at_least(0.75, 0.65), benchmark=benchmark(0.75, 0.65, True),
    dependencies=['net_income', 'tax_expense'],
)

dupont_roe_extended = MetricCalculator(
    id='dupont_roe_5step', name='ROE (5-Step DuPont)', short_name='ROE-5',
    category='efficiency', calculate=_roe_5step, format=fmt_percent, format_type='percentage',
    description='Extended ROE breakdown: Tax Burden x Interest Burden x Operating Margin x '
                'Asset Turnover x Equity Multiplier.',
    interpretation=higher_is_better(15, 8, negative_is_bad=False), benchmark=benchmark(15, 8, True),
    dependencies=['net_income', 'operating_income', 'revenue', 'total_assets',
                  'total_equity', 'tax_expense'],
)

dupont_metrics = [
    dupont_npm,
    dupont_at,
    dupont_em,
    dupont_roe_3step,
    dupont_opm,
    dupont_interest_burden,
    dupont_tax_burden,
]


def calculate_dupont_analysis(data: StockData) -> Dict:
    """Both DuPont breakdowns with their components and validity flags."""
    npm = _npm(data)
    at = _asset_turnover(data)
    em = _equity_multiplier(data)
    opm = _operating_margin(data)
    ib = _interest_burden(data)
    tb = _tax_burden(data)

    return {
        'net_profit_margin': npm,
        'asset_turnover': at,
        'equity_multiplier': em,
        'roe_3step': _roe_3step(data),
        'operating_margin': opm,
        'interest_burden': ib,
        'tax_burden': tb,
        'roe_5step': _roe_5step(data),
        'is_3step_valid': npm is not None and at is not None and em is not None,
        'is_5step_valid': None not in (opm, ib, tb, at, em),
    }


def format_dupont_analysis(analysis: Dict) -> Dict[str, str]:
    formatters = {
        'net_profit_margin': dupont_npm.format,
        'asset_turnover': dupont_at.format,
        'equity_multiplier': dupont_em.format,
        'roe_3step': dupont_roe_3step.format,
        'operating_margin': dupont_opm.format,
        'interest_burden': dupont_interest_burden.format,
        'tax_burden': dupont_tax_burden.format,
        'roe_5step': dupont_roe_extended.format,
    }
    return {
        key: (fmt(analysis[key]) if analysis.get(key) is not None else 'N/A')
        for key, fmt in formatters.items()
    }
