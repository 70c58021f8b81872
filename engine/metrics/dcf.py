"""
Discounted Cash Flow
Intrinsic value per share from projected free cash flow discounted at WACC.

Cost of equity comes from CAPM (risk-free rate plus beta times the market risk
premium). Growth starts at the historical FCF growth rate and fades linearly to
the terminal rate over the projection period; the terminal value uses the
Gordon growth model and needs WACC above the terminal rate.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np

from engine.metrics.types import StockData

logger = logging.getLogger(__name__)

MARKET_RISK_PREMIUM = 0.055
TERMINAL_GROWTH_RATE = 0.025
PROJECTION_YEARS = 5
DEFAULT_TAX_RATE = 0.21

SENSITIVITY_WACC_SPREAD = 0.02
SENSITIVITY_GROWTH_RANGE = (0.015, 0.035)
SENSITIVITY_STEPS = 5


class DCFError(Exception):
    """Raised when the inputs cannot support a valuation."""


@dataclass
class DCFInputs:
    current_price: float
    shares_outstanding: Optional[float]
    free_cash_flow: Optional[float]
    risk_free_rate: float
    fcf_history: List[float] = field(default_factory=list)
    market_cap: Optional[float] = None
    total_debt: float = 0.0
    cash: float = 0.0
    interest_expense: Optional[float] = None
    income_tax: Optional[float] = None
    pretax_income: Optional[float] = None
    beta: Optional[float] = None
    target_price: Optional[float] = None

    @classmethod
    def from_stock_data(cls, data: StockData, risk_free_rate: float) -> 'DCFInputs':
        history = list(data.free_cash_flow_history or [])
        fcf = data.free_cash_flow if data.free_cash_flow is not None else (history[-1] if history else None)
        return cls(
            current_price=data.current_price,
            shares_outstanding=data.shares_outstanding,
            free_cash_flow=fcf,
            risk_free_rate=risk_free_rate,
            fcf_history=history,
            market_cap=data.market_cap,
            total_debt=data.total_debt or 0.0,
            cash=(data.cash_and_equivalents if data.cash_and_equivalents is not None else data.cash) or 0.0,
            interest_expense=abs(data.interest_expense) if data.interest_expense is not None else None,
            income_tax=data.tax_expense,
            pretax_income=data.income_before_tax,
            beta=data.beta,
            target_price=data.target_price,
        )


def effective_tax_rate(income_tax: Optional[float], pretax_income: Optional[float]) -> float:
    if income_tax is None or not pretax_income:
        return DEFAULT_TAX_RATE
    rate = income_tax / pretax_income
    if rate < 0 or rate > 1:
        return DEFAULT_TAX_RATE
    return rate


def calculate_wacc(inputs: DCFInputs, market_risk_premium: float = MARKET_RISK_PREMIUM) -> Dict[str, Any]:
    """Cost of capital breakdown. 'wacc' is None when beta is unknown."""
    equity_value = inputs.market_cap or (inputs.current_price * (inputs.shares_outstanding or 0))
    debt = inputs.total_debt or 0.0
    total = equity_value + debt

    cost_of_equity = inputs.risk_free_rate + inputs.beta * market_risk_premium if inputs.beta is not None else None
    cost_of_debt = (inputs.interest_expense / debt) if debt and inputs.interest_expense is not None else 0.0
    tax_rate = effective_tax_rate(inputs.income_tax, inputs.pretax_income)

    wacc = None
    if cost_of_equity is not None and total > 0:
        wacc = (equity_value / total) * cost_of_equity + (debt / total) * cost_of_debt * (1 - tax_rate)

    return {
        'costOfEquity': cost_of_equity,
        'costOfDebt': cost_of_debt,
        'taxRate': tax_rate,
        'equityWeight': equity_value / total if total > 0 else None,
        'debtWeight': debt / total if total > 0 else None,
        'wacc': wacc,
    }


def fcf_growth_rate(history: List[float]) -> Optional[float]:
    """CAGR over three or more years of FCF, else the latest year-over-year change."""
    if len(history) < 2:
        return None
    first, last = history[0], history[-1]
    if len(history) >= 3 and first > 0 and last > 0:
        return (last / first) ** (1 / (len(history) - 1)) - 1
    previous = history[-2]
    if not previous:
        return None
    return (last - previous) / abs(previous)


def project_fcfs(fcf: float, growth: float, wacc: float, terminal_growth: float = TERMINAL_GROWTH_RATE,
                 years: int = PROJECTION_YEARS) -> List[Dict[str, float]]:
    step = (growth - terminal_growth) / years
    projections = []
    current = fcf
    for year in range(1, years + 1):
        year_growth = growth - step * (year - 1)
        current = current * (1 + year_growth)
        factor = 1 / (1 + wacc) ** year
        projections.append({
            'year': year,
            'growthRate': year_growth,
            'fcf': current,
            'discountFactor': factor,
            'presentValue': current * factor,
        })
    return projections


def terminal_value(final_fcf: float, wacc: float, terminal_growth: float = TERMINAL_GROWTH_RATE) -> Optional[float]:
    if wacc <= terminal_growth:
        return None
    return final_fcf * (1 + terminal_growth) / (wacc - terminal_growth)


def intrinsic_value(inputs: DCFInputs, wacc: float, growth: float,
                    terminal_growth: float = TERMINAL_GROWTH_RATE,
                    years: int = PROJECTION_YEARS) -> Optional[Dict[str, Any]]:
    """Per-share value for one WACC and terminal growth pair; None when WACC <= terminal growth."""
    if wacc <= terminal_growth:
        return None
    projections = project_fcfs(inputs.free_cash_flow, growth, wacc, terminal_growth, years)
    tv = terminal_value(projections[-1]['fcf'], wacc, terminal_growth)
    pv_tv = tv / (1 + wacc) ** years
    pv_fcf = sum(p['presentValue'] for p in projections)
    enterprise = pv_fcf + pv_tv
    equity = enterprise - (inputs.total_debt - inputs.cash)
    return {
        'projections': projections,
        'terminalValue': tv,
        'pvTerminalValue': pv_tv,
        'pvProjectedFcf': pv_fcf,
        'enterpriseValue': enterprise,
        'equityValue': equity,
        'intrinsicValue': equity / inputs.shares_outstanding,
    }


def sensitivity_table(inputs: DCFInputs, wacc: float, growth: float,
                      years: int = PROJECTION_YEARS) -> Dict[str, Any]:
    """Intrinsic value grid over WACC (rows) and terminal growth (columns)."""
    wacc_values = np.linspace(wacc - SENSITIVITY_WACC_SPREAD, wacc + SENSITIVITY_WACC_SPREAD, SENSITIVITY_STEPS)
    growth_values = np.linspace(*SENSITIVITY_GROWTH_RANGE, SENSITIVITY_STEPS)
    matrix = []
    for w in wacc_values:
        row = []
        for g in growth_values:
            result = intrinsic_value(inputs, float(w), growth, float(g), years)
            row.append(round(result['intrinsicValue'], 2) if result else None)
        matrix.append(row)
    return {
        'waccValues': [round(float(w), 4) for w in wacc_values],
        'terminalGrowthValues': [round(float(g), 4) for g in growth_values],
        'intrinsicValues': matrix,
    }


def interpret_valuation(margin_of_safety: float) -> Dict[str, str]:
    if margin_of_safety > 0.30:
        confidence = 'high' if margin_of_safety > 0.5 else 'medium'
        return {'verdict': 'undervalued', 'confidence': confidence}
    if margin_of_safety > 0.10:
        return {'verdict': 'undervalued', 'confidence': 'medium'}
    if margin_of_safety > -0.10:
        return {'verdict': 'fairly valued', 'confidence': 'medium'}
    if margin_of_safety > -0.30:
        return {'verdict': 'overvalued', 'confidence': 'medium'}
    return {'verdict': 'overvalued', 'confidence': 'high'}


def calculate_dcf(inputs: DCFInputs, terminal_growth: float = TERMINAL_GROWTH_RATE,
                  years: int = PROJECTION_YEARS, market_risk_premium: float = MARKET_RISK_PREMIUM,
                  growth: Optional[float] = None) -> Dict[str, Any]:
    """Full valuation. Raises DCFError when cash flow, share count or beta are missing."""
    if inputs.free_cash_flow is None:
        raise DCFError('Free cash flow is not available')
    if not inputs.shares_outstanding:
        raise DCFError('Shares outstanding is not available')

    capital = calculate_wacc(inputs, market_risk_premium)
    wacc = capital['wacc']
    if wacc is None:
        raise DCFError('Beta is required to estimate the cost of equity')
    if wacc <= terminal_growth:
        raise DCFError(f'WACC {wacc:.2%} must exceed terminal growth {terminal_growth:.2%}')

    if growth is None:
        growth = fcf_growth_rate(inputs.fcf_history)
    if growth is None:
        growth = terminal_growth

    valuation = intrinsic_value(inputs, wacc, growth, terminal_growth, years)
    value = valuation['intrinsicValue']
    price = inputs.current_price
    target = inputs.target_price or value

    result = {
        'inputs': {
            'currentPrice': price,
            'freeCashFlow': inputs.free_cash_flow,
            'sharesOutstanding': inputs.shares_outstanding,
            'riskFreeRate': inputs.risk_free_rate,
            'beta': inputs.beta,
            'fcfGrowthRate': growth,
            'terminalGrowthRate': terminal_growth,
            'projectionYears': years,
        },
        'costOfCapital': capital,
        **valuation,
        'upside': (target - price) / price if price else None,
        'marginOfSafety': (value - price) / value if value > 0 else None,
        'sensitivity': sensitivity_table(inputs, wacc, growth, years),
    }
    # Debt above the value of the cash flows leaves nothing for shareholders
    if result['marginOfSafety'] is None:
        result['interpretation'] = {'verdict': 'overvalued', 'confidence': 'high'}
    else:
        result['interpretation'] = interpret_valuation(result['marginOfSafety'])
    logger.debug(f"DCF value {value:.2f} vs price {price:.2f}")
    return result
