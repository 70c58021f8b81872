"""
Metric data types
StockData is the flat numeric input every calculator reads from.
MetricCalculator bundles a formula with its formatter and good/neutral/bad rules.
"""
import re
from dataclasses import dataclass, field, fields
from typing import Callable, Dict, List, Optional, Any

CATEGORIES = [
    'fundamental', 'technical', 'valuation', 'quality',
    'growth', 'efficiency', 'liquidity', 'leverage', 'cashflow',
]

GOOD = 'good'
NEUTRAL = 'neutral'
BAD = 'bad'


@dataclass
class StockData:
    """Financial snapshot of one security. All fields optional except price."""
    current_price: float = 0.0
    symbol: Optional[str] = None

    # Price data
    previous_close: Optional[float] = None
    high_52_week: Optional[float] = None
    low_52_week: Optional[float] = None
    price_history: Optional[List[float]] = None
    volume_history: Optional[List[float]] = None

    # Income statement
    revenue: Optional[float] = None
    revenue_previous_year: Optional[float] = None
    revenue_previous_quarter: Optional[float] = None
    gross_profit: Optional[float] = None
    operating_income: Optional[float] = None
    net_income: Optional[float] = None
    net_income_previous_year: Optional[float] = None
    ebitda: Optional[float] = None
    eps: Optional[float] = None
    eps_diluted: Optional[float] = None
    eps_previous_year: Optional[float] = None

    # Balance sheet
    total_assets: Optional[float] = None
    total_assets_previous_year: Optional[float] = None
    total_liabilities: Optional[float] = None
    total_equity: Optional[float] = None
    total_equity_previous_year: Optional[float] = None
    current_assets: Optional[float] = None
    current_liabilities: Optional[float] = None
    cash: Optional[float] = None
    cash_and_equivalents: Optional[float] = None
    inventory: Optional[float] = None
    inventory_previous_year: Optional[float] = None
    accounts_receivable: Optional[float] = None
    accounts_payable: Optional[float] = None
    long_term_debt: Optional[float] = None
    short_term_debt: Optional[float] = None
    total_debt: Optional[float] = None
    book_value_per_share: Optional[float] = None

    # Cash flow
    operating_cash_flow: Optional[float] = None
    capital_expenditures: Optional[float] = None
    free_cash_flow: Optional[float] = None
    dividends_paid: Optional[float] = None

    # Shares & market
    shares_outstanding: Optional[float] = None
    market_cap: Optional[float] = None
    enterprise_value: Optional[float] = None

    # Pre-calculated ratios
    pe_ratio: Optional[float] = None
    forward_pe: Optional[float] = None
    peg_ratio: Optional[float] = None
    price_to_book: Optional[float] = None
    price_to_sales: Optional[float] = None
    ev_to_ebitda: Optional[float] = None
    ev_to_revenue: Optional[float] = None

    # Dividends
    dividend_yield: Optional[float] = None
    dividend_per_share: Optional[float] = None
    payout_ratio: Optional[float] = None

    # Growth rates (percent)
    revenue_growth_yoy: Optional[float] = None
    earnings_growth_yoy: Optional[float] = None
    revenue_growth_qoq: Optional[float] = None
    revenue_5y_cagr: Optional[float] = None
    eps_5y_cagr: Optional[float] = None

    # Margins (percent)
    gross_margin: Optional[float] = None
    operating_margin: Optional[float] = None
    net_margin: Optional[float] = None

    # Extra inputs
    cost_of_goods_sold: Optional[float] = None
    interest_expense: Optional[float] = None
    tax_expense: Optional[float] = None
    income_before_tax: Optional[float] = None
    target_price: Optional[float] = None
    beta: Optional[float] = None

    # Annual free cash flow, oldest first
    free_cash_flow_history: Optional[List[float]] = None

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> 'StockData':
        """Build from a JSON body. Accepts snake_case or camelCase keys; unknown keys are ignored."""
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in (payload or {}).items():
            name = _snake(key)
            if name in known and value is not None:
                kwargs[name] = value
        return cls(**kwargs)

    @classmethod
    def from_quote(cls, quote: Dict[str, Any], statistics: Optional[Dict[str, Any]] = None,
                   history: Optional[List[Dict[str, Any]]] = None) -> 'StockData':
        """Build from market-data payloads: a quote, key statistics and OHLCV points."""
        stats = statistics or {}

        def pct(value):
            return value * 100 if value is not None else None

        data = cls(
            current_price=quote.get('price') or 0.0,
            symbol=quote.get('symbol'),
            previous_close=quote.get('previousClose'),
            high_52_week=quote.get('fiftyTwoWeekHigh') or None,
            low_52_week=quote.get('fiftyTwoWeekLow') or None,
            market_cap=quote.get('marketCap') or stats.get('marketCap') or None,
            pe_ratio=quote.get('peRatio') or stats.get('trailingPE'),
            eps=quote.get('eps'),
            dividend_per_share=quote.get('dividend'),
            dividend_yield=quote.get('dividendYield'),
            enterprise_value=stats.get('enterpriseValue') or None,
            forward_pe=stats.get('forwardPE'),
            peg_ratio=stats.get('pegRatio'),
            price_to_book=stats.get('priceToBook'),
            price_to_sales=stats.get('priceToSales'),
            net_margin=pct(stats.get('profitMargin')),
            operating_margin=pct(stats.get('operatingMargin')),
            gross_profit=stats.get('grossProfit'),
            ebitda=stats.get('ebitda'),
            book_value_per_share=stats.get('bookValue'),
            shares_outstanding=stats.get('sharesOutstanding'),
            revenue_growth_yoy=pct(stats.get('quarterlyRevenueGrowth')),
            beta=stats.get('beta'),
            target_price=stats.get('targetMeanPrice'),
            cash=stats.get('totalCash'),
            total_debt=stats.get('totalDebt'),
            free_cash_flow=stats.get('freeCashflow'),
            operating_cash_flow=stats.get('operatingCashflow'),
        )
        if history:
            data.price_history = [p['close'] for p in history if p.get('close') is not None]
            data.volume_history = [p['volume'] for p in history if p.get('volume') is not None]
        return data


_CAMEL_OVERRIDES = {
    'high52Week': 'high_52_week',
    'low52Week': 'low_52_week',
    'revenue5YearCAGR': 'revenue_5y_cagr',
    'eps5YearCAGR': 'eps_5y_cagr',
    'revenueGrowthYoY': 'revenue_growth_yoy',
    'earningsGrowthYoY': 'earnings_growth_yoy',
    'revenueGrowthQoQ': 'revenue_growth_qoq',
}


def _snake(key: str) -> str:
    if key in _CAMEL_OVERRIDES:
        return _CAMEL_OVERRIDES[key]
    return re.sub(r'(?<!^)(?=[A-Z])', '_', key).lower()


@dataclass
class MetricCalculator:
    """One registered metric: formula, display format and interpretation rule."""
    id: str
    name: str
    category: str
    calculate: Callable[[StockData], Optional[float]]
    format: Callable[[float], str]
    interpretation: Callable[..., str]
    description: str = ''
    short_name: Optional[str] = None
    format_type: str = 'number'
    benchmark: Optional[Dict[str, Any]] = None
    dependencies: List[str] = field(default_factory=list)

    def info(self) -> Dict[str, Any]:
        """Serializable description (no callables)."""
        return {
            'id': self.id,
            'name': self.name,
            'short_name': self.short_name,
            'category': self.category,
            'format_type': self.format_type,
            'description': self.description,
            'benchmark': self.benchmark,
            'dependencies': list(self.dependencies),
        }


def benchmark(good: float, bad: float, higher_is_better: bool) -> Dict[str, Any]:
    return {'good': good, 'bad': bad, 'higher_is_better': higher_is_better}


# Shared formatters

def fmt_multiple(value: float) -> str:
    return f"{value:.2f}x"


def fmt_ratio(value: float) -> str:
    return f"{value:.2f}"


def fmt_percent(value: float) -> str:
    return f"{value:.2f}%"


def fmt_signed_percent(value: float) -> str:
    sign = '+' if value >= 0 else ''
    return f"{sign}{value:.2f}%"


def fmt_currency(value: float) -> str:
    return f"${value:.2f}"


def fmt_days(value: float) -> str:
    return f"{value:.0f} days"


def fmt_large_currency(value: float) -> str:
    if value >= 1e12:
        return f"${value / 1e12:.2f}T"
    if value >= 1e9:
        return f"${value / 1e9:.2f}B"
    if value >= 1e6:
        return f"${value / 1e6:.2f}M"
    return f"${value:,.0f}"


def always_neutral(value: float, data: Optional[StockData] = None) -> str:
    return NEUTRAL


def lower_is_better(good: float, bad: float) -> Callable[..., str]:
    """Negative is bad, below `good` is good, above `bad` is bad."""
    def interpret(value: float, data: Optional[StockData] = None) -> str:
        if value < 0:
            return BAD
        if value < good:
            return GOOD
        if value > bad:
            return BAD
        return NEUTRAL
    return interpret


def higher_is_better(good: float, bad: float, negative_is_bad: bool = True) -> Callable[..., str]:
    """Above `good` is good, below `bad` is bad."""
    def interpret(value: float, data: Optional[StockData] = None) -> str:
        if negative_is_bad and value < 0:
            return BAD
        if value > good:
            return GOOD
        if value < bad:
            return BAD
        return NEUTRAL
    return interpret
