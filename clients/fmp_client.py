"""
Financial Modeling Prep Client
Income statements, balance sheets, cash flows, key metrics, ratios and profiles.
Also maps FMP payloads onto StockData for the metrics registry.
"""
import requests
import logging
from typing import Dict, List, Optional, Any
from core.config import FMP_API_KEY
from engine import report_cache
from engine.metrics.types import StockData


class FMPError(Exception):
    pass


def _pct(value):
    return value * 100 if value is not None else None


class FMPClient:
    """FMP v3 REST client. Public methods return {success, data, error}."""

    def __init__(self, api_key: str = None):
        self.api_key = FMP_API_KEY if api_key is None else api_key
        self.base_url = "https://financialmodelingprep.com/api/v3"
        self.logger = logging.getLogger(__name__)

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _fetch(self, endpoint: str, params: Dict = None) -> Any:
        if not self.is_configured():
            raise FMPError("FMP_API_KEY environment variable is not set")

        query = dict(params or {})
        query['apikey'] = self.api_key
        response = requests.get(f"{self.base_url}{endpoint}", params=query, timeout=20)
        if response.status_code != 200:
            raise FMPError(f"FMP API error: {response.status_code} {response.reason}")

        data = response.json()
        # FMP reports errors as a 200 with an "Error Message" object
        if isinstance(data, dict) and 'Error Message' in data:
            raise FMPError(data['Error Message'])
        return data

    def _call(self, endpoint: str, params: Dict = None) -> Dict[str, Any]:
        try:
            return {'success': True, 'data': self._fetch(endpoint, params), 'error': None}
        except Exception as e:
            self.logger.error(f"FMP request {endpoint} failed: {e}")
            return {'success': False, 'data': None, 'error': str(e)}

    def _statement(self, kind: str, symbol: str, period: str, limit: Optional[int]) -> Dict[str, Any]:
        if period not in ('annual', 'quarter'):
            return {'success': False, 'data': None, 'error': f"Invalid period: {period}"}
        default_limit = 4 if period == 'quarter' else 5
        return self._call(f"/{kind}/{symbol.upper()}", {'period': period, 'limit': limit or default_limit})

    def get_income_statement(self, symbol: str, period: str = 'annual', limit: int = None):
        return self._statement('income-statement', symbol, period, limit)

    def get_balance_sheet(self, symbol: str, period: str = 'annual', limit: int = None):
        return self._statement('balance-sheet-statement', symbol, period, limit)

    def get_cash_flow(self, symbol: str, period: str = 'annual', limit: int = None):
        return self._statement('cash-flow-statement', symbol, period, limit)

    def get_key_metrics(self, symbol: str, period: str = 'annual', limit: int = None):
        return self._statement('key-metrics', symbol, period, limit)

    def get_ratios(self, symbol: str, period: str = 'annual', limit: int = None):
        return self._statement('ratios', symbol, period, limit)

    def get_key_metrics_ttm(self, symbol: str) -> Dict[str, Any]:
        result = self._call(f"/key-metrics-ttm/{symbol.upper()}")
        if result['success']:
            result['data'] = result['data'][0] if result['data'] else None
        return result

    def get_profile(self, symbol: str) -> Dict[str, Any]:
        result = self._call(f"/profile/{symbol.upper()}")
        if result['success']:
            result['data'] = result['data'][0] if result['data'] else None
        return result

    def get_all_financials(self, symbol: str, period: str = 'annual') -> Dict[str, Any]:
        """Every statement for a symbol. Succeeds when at least one part succeeded."""
        symbol = symbol.upper()
        cache_key = f"fmp:all:{symbol}:{period}"
        cached = report_cache.get_cached(cache_key)
        if cached is not None:
            return cached

        parts = {
            'income_statement': self.get_income_statement(symbol, period),
            'balance_sheet': self.get_balance_sheet(symbol, period),
            'cash_flow': self.get_cash_flow(symbol, period),
            'key_metrics': self.get_key_metrics(symbol, period),
            'key_metrics_ttm': self.get_key_metrics_ttm(symbol),
            'profile': self.get_profile(symbol),
            'ratios': self.get_ratios(symbol, period),
        }
        errors = {name: part['error'] for name, part in parts.items() if not part['success']}
        data = {name: part['data'] for name, part in parts.items()}

        if len(errors) == len(parts):
            return {'success': False, 'data': None, 'error': next(iter(errors.values()))}

        result = {'success': True, 'data': data, 'error': None, 'partial_errors': errors or None}
        report_cache.set_cached(cache_key, result)
        return result

    @staticmethod
    def to_stock_data(financials: Dict[str, Any], quote: Dict[str, Any] = None) -> StockData:
        """Map get_all_financials()['data'] (plus an optional quote) onto StockData."""
        quote = quote or {}

        def latest(key, index=0):
            rows = financials.get(key) or []
            return rows[index] if len(rows) > index else {}

        income, income_prev = latest('income_statement'), latest('income_statement', 1)
        balance, balance_prev = latest('balance_sheet'), latest('balance_sheet', 1)
        cashflow = latest('cash_flow')
        metrics = latest('key_metrics')
        ratios = latest('ratios')
        profile = financials.get('profile') or {}

        short_debt = balance.get('shortTermDebt') or 0
        long_debt = balance.get('longTermDebt') or 0
        dividends = cashflow.get('commonDividendsPaid') or cashflow.get('dividendsPaid')
        capex = cashflow.get('capitalExpenditure')

        return StockData(
            symbol=profile.get('symbol') or quote.get('symbol'),
            current_price=quote.get('price') or profile.get('price') or 0.0,
            previous_close=quote.get('previousClose'),
            market_cap=quote.get('marketCap') or profile.get('mktCap'),
            pe_ratio=quote.get('peRatio') or ratios.get('priceEarningsRatio'),
            revenue=income.get('revenue'),
            revenue_previous_year=income_prev.get('revenue'),
            gross_profit=income.get('grossProfit'),
            cost_of_goods_sold=income.get('costOfRevenue'),
            operating_income=income.get('operatingIncome'),
            net_income=income.get('netIncome'),
            net_income_previous_year=income_prev.get('netIncome'),
            ebitda=income.get('ebitda'),
            eps=income.get('eps'),
            eps_diluted=income.get('epsdiluted') or income.get('epsDiluted'),
            eps_previous_year=income_prev.get('eps'),
            interest_expense=income.get('interestExpense'),
            tax_expense=income.get('incomeTaxExpense'),
            income_before_tax=income.get('incomeBeforeTax'),
            total_assets=balance.get('totalAssets'),
            total_assets_previous_year=balance_prev.get('totalAssets'),
            total_liabilities=balance.get('totalLiabilities'),
            total_equity=balance.get('totalStockholdersEquity'),
            total_equity_previous_year=balance_prev.get('totalStockholdersEquity'),
            current_assets=balance.get('totalCurrentAssets'),
            current_liabilities=balance.get('totalCurrentLiabilities'),
            cash=balance.get('cashAndCashEquivalents'),
            cash_and_equivalents=balance.get('cashAndShortTermInvestments'),
            inventory=balance.get('inventory'),
            inventory_previous_year=balance_prev.get('inventory'),
            accounts_receivable=balance.get('netReceivables'),
            accounts_payable=balance.get('accountPayables'),
            short_term_debt=balance.get('shortTermDebt'),
            long_term_debt=balance.get('longTermDebt'),
            total_debt=balance.get('totalDebt') or (short_debt + long_debt) or None,
            operating_cash_flow=cashflow.get('operatingCashFlow'),
            capital_expenditures=abs(capex) if capex is not None else None,
            free_cash_flow=cashflow.get('freeCashFlow'),
            free_cash_flow_history=[row['freeCashFlow'] for row in reversed(financials.get('cash_flow') or [])
                                    if row.get('freeCashFlow') is not None] or None,
            beta=profile.get('beta'),
            dividends_paid=abs(dividends) if dividends is not None else None,
            shares_outstanding=income.get('weightedAverageShsOut'),
            enterprise_value=metrics.get('enterpriseValue'),
            book_value_per_share=metrics.get('bookValuePerShare'),
            price_to_book=ratios.get('priceToBookRatio'),
            price_to_sales=ratios.get('priceToSalesRatio'),
            peg_ratio=ratios.get('priceEarningsToGrowthRatio'),
            ev_to_ebitda=metrics.get('enterpriseValueOverEBITDA'),
            dividend_yield=_pct(ratios.get('dividendYield')),
            payout_ratio=_pct(ratios.get('payoutRatio')),
            gross_margin=_pct(ratios.get('grossProfitMargin')),
            operating_margin=_pct(ratios.get('operatingProfitMargin')),
            net_margin=_pct(ratios.get('netProfitMargin')),
            dividend_per_share=profile.get('lastDiv'),
        )


fmp_client = FMPClient()
