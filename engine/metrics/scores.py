"""
Composite Scores
Profitability, growth, valuation, risk and financial health scores (0-100) and a
weighted total, built from registry metrics and an optional risk profile.

Each score is a weighted average of metrics normalized onto 0-100 over a fixed
range. Missing metrics drop out and the remaining weights are renormalized; a
score with no inputs at all is None.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

from engine.metrics.registry import metrics_registry
from engine.metrics.types import StockData

logger = logging.getLogger(__name__)

# (metric, low, high, weight, higher_is_better)
ScoreInput = Tuple[str, float, float, float, bool]

PROFITABILITY_INPUTS: List[ScoreInput] = [
    ('gross_margin', 0.0, 0.8, 0.2, True),
    ('operating_margin', -0.2, 0.4, 0.2, True),
    ('net_margin', -0.2, 0.3, 0.2, True),
    ('roe', -0.1, 0.4, 0.2, True),
    ('roic', -0.1, 0.3, 0.2, True),
]

GROWTH_INPUTS: List[ScoreInput] = [
    ('revenue_growth_yoy', -0.3, 0.5, 0.3, True),
    ('earnings_growth_yoy', -0.5, 1.0, 0.3, True),
    ('fcf_growth', -0.5, 0.5, 0.2, True),
    ('revenue_cagr_5y', -0.1, 0.3, 0.2, True),
]

VALUATION_INPUTS: List[ScoreInput] = [
    ('pe_ratio', 5.0, 50.0, 0.3, False),
    ('pb_ratio', 0.5, 10.0, 0.25, False),
    ('peg_ratio', 0.5, 3.0, 0.25, False),
    ('ev_to_ebitda', 3.0, 25.0, 0.2, False),
]

RISK_INPUTS: List[ScoreInput] = [
    ('beta', 0.5, 2.0, 0.35, False),
    ('volatility', 0.1, 0.6, 0.35, False),
    ('sharpeRatio', -0.5, 2.0, 0.3, True),
]

HEALTH_INPUTS: List[ScoreInput] = [
    ('current_ratio', 0.5, 3.0, 0.25, True),
    ('quick_ratio', 0.3, 2.5, 0.25, True),
    ('debt_to_equity', 0.0, 3.0, 0.25, False),
    ('interest_coverage', 0.0, 20.0, 0.25, True),
]

TOTAL_WEIGHTS = {
    'profitability': 0.25,
    'growth': 0.2,
    'valuation': 0.2,
    'risk': 0.15,
    'health': 0.2,
}

# Registry values in percent
PERCENT_METRICS = {
    'gross_margin', 'operating_margin', 'net_margin', 'roe', 'roic',
    'revenue_growth_yoy', 'earnings_growth_yoy', 'revenue_cagr_5y',
}

# Multiples that say nothing about value when non-positive
POSITIVE_ONLY = {'pe_ratio', 'pb_ratio', 'peg_ratio', 'ev_to_ebitda'}

SCORE_LABELS = [
    (80, 'Excellent', 'green'),
    (60, 'Good', 'lightgreen'),
    (40, 'Fair', 'yellow'),
    (20, 'Poor', 'orange'),
]


def normalize(value: float, low: float, high: float, higher_is_better: bool = True) -> float:
    if high == low:
        return 50.0
    scaled = (value - low) / (high - low) * 100
    if not higher_is_better:
        scaled = 100 - scaled
    return min(max(scaled, 0.0), 100.0)


def weighted_score(values: Dict[str, Optional[float]], inputs: List[ScoreInput]) -> Optional[float]:
    total = 0.0
    weight_sum = 0.0
    for key, low, high, weight, higher_is_better in inputs:
        value = values.get(key)
        if value is None:
            continue
        total += normalize(value, low, high, higher_is_better) * weight
        weight_sum += weight
    if weight_sum == 0:
        return None
    return round(total / weight_sum, 1)


def fcf_growth(data: StockData) -> Optional[float]:
    """Latest year-over-year change in free cash flow, as a fraction."""
    history = data.free_cash_flow_history or []
    if len(history) < 2 or not history[-2]:
        return None
    return (history[-1] - history[-2]) / abs(history[-2])


def _registry_values(data: StockData) -> Dict[str, Optional[float]]:
    values = {}
    for inputs in (PROFITABILITY_INPUTS, GROWTH_INPUTS, VALUATION_INPUTS, HEALTH_INPUTS):
        for key, *_ in inputs:
            metric = metrics_registry.get(key)
            if metric is None:
                continue
            try:
                value = metric.calculate(data)
            except (ArithmeticError, TypeError) as e:
                logger.warning(f"Score input {key} failed for {data.symbol}: {e}")
                continue
            if value is None:
                continue
            if key in PERCENT_METRICS:
                value = value / 100
            if key in POSITIVE_ONLY and value <= 0:
                continue
            values[key] = value
    values['fcf_growth'] = fcf_growth(data)
    return values


def interpret_score(score: Optional[float]) -> Dict[str, str]:
    if score is None:
        return {'label': 'N/A', 'color': 'gray'}
    for limit, label, color in SCORE_LABELS:
        if score >= limit:
            return {'label': label, 'color': color}
    return {'label': 'Very Poor', 'color': 'red'}


def calculate_scores(data: StockData, risk: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Sub-scores plus a weighted total over whichever sub-scores could be computed."""
    values = _registry_values(data)
    risk = dict(risk or {})
    if risk.get('beta') is None:
        risk['beta'] = data.beta

    scores = {
        'profitability': weighted_score(values, PROFITABILITY_INPUTS),
        'growth': weighted_score(values, GROWTH_INPUTS),
        'valuation': weighted_score(values, VALUATION_INPUTS),
        'risk': weighted_score(risk, RISK_INPUTS),
        'health': weighted_score(values, HEALTH_INPUTS),
    }

    present = {name: score for name, score in scores.items() if score is not None}
    total = None
    if present:
        weight_sum = sum(TOTAL_WEIGHTS[name] for name in present)
        total = round(sum(score * TOTAL_WEIGHTS[name] for name, score in present.items()) / weight_sum, 1)

    return {
        'symbol': data.symbol,
        'scores': scores,
        'total': total,
        'rating': interpret_score(total),
    }
