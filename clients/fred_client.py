"""
FRED Client
Key US macro indicators from the St. Louis Fed, cached for a day.
"""
import requests
import logging
from datetime import datetime
from typing import Dict, List, Optional, Any
from core.cache import TTLCache
from core.config import FRED_API_KEY

CACHE_TTL_SECONDS = 24 * 60 * 60
MISSING_VALUES = ('.', '', 'ND')

# key -> (series id, name, unit, frequency)
FRED_SERIES = {
    'gdp': ('A191RL1Q225SBEA', 'GDP Growth Rate', '%', 'Quarterly'),
    'unemployment': ('UNRATE', 'Unemployment Rate', '%', 'Monthly'),
    'inflation': ('CPIAUCSL', 'Inflation Rate (CPI)', '%', 'Monthly'),
    'federalFundsRate': ('FEDFUNDS', 'Federal Funds Rate', '%', 'Monthly'),
    'treasuryYield10Y': ('DGS10', '10-Year Treasury Yield', '%', 'Daily'),
    'consumerConfidence': ('UMCSENT', 'Consumer Sentiment', 'Index', 'Monthly'),
}
CPI_SERIES = 'CPIAUCSL'
TREASURY_10Y_SERIES = 'DGS10'
DEFAULT_RISK_FREE_RATE = 0.04


def parse_value(value: str) -> Optional[float]:
    if value is None or value in MISSING_VALUES:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class FredClient:
    def __init__(self, api_key: str = None):
        self.api_key = FRED_API_KEY if api_key is None else api_key
        self.base_url = "https://api.stlouisfed.org/fred/series/observations"
        self.cache = TTLCache(default_ttl=CACHE_TTL_SECONDS, name="fred")
        self.logger = logging.getLogger(__name__)

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _metadata(self, series_id: str):
        for sid, name, unit, frequency in FRED_SERIES.values():
            if sid == series_id:
                return name, unit, frequency
        return series_id, '', 'Unknown'

    def get_series(self, series_id: str) -> Dict[str, Any]:
        """Latest reading of one series. Raises on HTTP or configuration errors."""
        cached = self.cache.get(series_id)
        if cached is not None:
            return cached

        if not self.is_configured():
            raise RuntimeError("FRED_API_KEY environment variable is not set")

        is_cpi = series_id == CPI_SERIES
        params = {
            'series_id': series_id,
            'api_key': self.api_key,
            'file_type': 'json',
            'sort_order': 'desc',
            # CPI needs 13 months for the year-over-year rate
            'limit': 15 if is_cpi else 5,
        }
        response = requests.get(self.base_url, params=params, timeout=15)
        if response.status_code != 200:
            raise RuntimeError(f"FRED API error: {response.status_code} {response.reason}")

        observations = list(reversed(response.json().get('observations') or []))
        observations = [o for o in observations if parse_value(o.get('value')) is not None]
        name, unit, frequency = self._metadata(series_id)

        if is_cpi:
            indicator = self._yoy_indicator(series_id, name, frequency, observations)
        else:
            indicator = self._latest_indicator(series_id, name, unit, frequency, observations)

        self.cache.set(series_id, indicator)
        return indicator

    def _latest_indicator(self, series_id, name, unit, frequency, observations: List[Dict]) -> Dict:
        latest = observations[-1] if observations else None
        previous = observations[-2] if len(observations) > 1 else None
        value = parse_value(latest['value']) if latest else None
        previous_value = parse_value(previous['value']) if previous else None

        change = change_pct = None
        if value is not None and previous_value is not None:
            change = round(value - previous_value, 2)
            if previous_value != 0:
                change_pct = round(change / previous_value * 100, 2)

        return {
            'seriesId': series_id,
            'name': name,
            'value': value,
            'previousValue': previous_value,
            'change': change,
            'changePct': change_pct,
            'date': latest['date'] if latest else '',
            'unit': unit,
            'frequency': frequency,
        }

    def _yoy_indicator(self, series_id, name, frequency, observations: List[Dict]) -> Dict:
        value = previous_value = None
        if len(observations) >= 13:
            current = parse_value(observations[-1]['value'])
            year_ago = parse_value(observations[-13]['value'])
            previous_value = year_ago
            if year_ago:
                value = round((current - year_ago) / year_ago * 100, 2)

        return {
            'seriesId': series_id,
            'name': name,
            'value': value,
            'previousValue': previous_value,
            'change': None,
            'changePct': None,
            'date': observations[-1]['date'] if observations else '',
            'unit': '%',
            'frequency': frequency,
        }

    def get_all_indicators(self) -> Dict[str, Any]:
        """Every tracked indicator; a failed series is reported as None."""
        result = {}
        for key, (series_id, _, _, _) in FRED_SERIES.items():
            try:
                result[key] = self.get_series(series_id)
            except Exception as e:
                self.logger.error(f"Failed to fetch FRED series {series_id}: {e}")
                result[key] = None
        result['lastUpdated'] = datetime.now().isoformat()
        return result

    def get_risk_free_rate(self, default: float = DEFAULT_RISK_FREE_RATE) -> float:
        """10-year Treasury yield as a fraction, or the default when FRED is unavailable."""
        if not self.is_configured():
            return default
        try:
            value = self.get_series(TREASURY_10Y_SERIES)['value']
        except Exception as e:
            self.logger.warning(f"Falling back to default risk-free rate: {e}")
            return default
        return value / 100 if value is not None else default

    def clear_cache(self):
        self.cache.clear()

    def cache_stats(self) -> Dict[str, Any]:
        return dict(self.cache.stats(), entries=self.cache.keys())


fred_client = FredClient()
