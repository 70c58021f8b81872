"""
Polygon.io Client
Backup market data source. The free tier allows 5 calls/minute and serves
15-minute delayed quotes, so calls are spaced at least 12 seconds apart.
"""
import requests
import threading
import time
import logging
from typing import Dict, Optional, Any
from core.config import POLYGON_API_KEY

MIN_CALL_INTERVAL = 12.0  # seconds


class PolygonClient:
    """Polygon.io REST client returning {success, data, error} envelopes"""

    def __init__(self, api_key: str = None, min_interval: float = MIN_CALL_INTERVAL):
        self.api_key = POLYGON_API_KEY if api_key is None else api_key
        self.base_url = "https://api.polygon.io"
        self.min_interval = min_interval
        self.logger = logging.getLogger(__name__)
        self._last_call = 0.0
        self._lock = threading.Lock()

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _not_configured(self) -> Dict[str, Any]:
        return {'success': False, 'data': None, 'error': 'POLYGON_API_KEY not configured'}

    def _get(self, path: str, params: Dict = None) -> Dict:
        """Rate-limited GET. Raises on non-200."""
        with self._lock:
            wait = self.min_interval - (time.time() - self._last_call)
            if wait > 0:
                time.sleep(wait)
            self._last_call = time.time()

        query = dict(params or {})
        query['apiKey'] = self.api_key
        response = requests.get(f"{self.base_url}{path}", params=query, timeout=15)
        if response.status_code != 200:
            raise RuntimeError(f"Polygon API error: {response.status_code}")
        return response.json()

    def get_quote(self, symbol: str) -> Dict[str, Any]:
        """Previous-day aggregate plus the ticker name"""
        if not self.is_configured():
            return self._not_configured()

        symbol = symbol.upper()
        try:
            data = self._get(f"/v2/aggs/ticker/{symbol}/prev")
            results = data.get('results') or []
            if not results:
                return {'success': False, 'data': None, 'error': 'No data available'}
            bar = results[0]

            name = symbol
            try:
                details = self._get(f"/v3/reference/tickers/{symbol}")
                name = (details.get('results') or {}).get('name') or symbol
            except Exception as e:
                self.logger.warning(f"Polygon ticker details unavailable for {symbol}: {e}")

            change = bar['c'] - bar['o']
            return {
                'success': True,
                'error': None,
                'data': {
                    'symbol': symbol,
                    'name': name,
                    'price': bar['c'],
                    'change': change,
                    'changePercent': (change / bar['o']) * 100 if bar['o'] else 0,
                    'open': bar['o'],
                    'high': bar['h'],
                    'low': bar['l'],
                    'close': bar['c'],
                    'volume': bar['v'],
                    'previousClose': bar['c'],
                    'timestamp': bar.get('t'),
                },
            }
        except Exception as e:
            self.logger.error(f"Polygon quote error for {symbol}: {e}")
            return {'success': False, 'data': None, 'error': str(e)}

    def get_historical(self, symbol: str, from_date: str, to_date: str,
                       timespan: str = 'day') -> Dict[str, Any]:
        """Daily/weekly/monthly candles between two YYYY-MM-DD dates"""
        if not self.is_configured():
            return self._not_configured()
        if timespan not in ('day', 'week', 'month'):
            return {'success': False, 'data': None, 'error': f"Invalid timespan: {timespan}"}

        symbol = symbol.upper()
        try:
            data = self._get(f"/v2/aggs/ticker/{symbol}/range/1/{timespan}/{from_date}/{to_date}",
                             {'sort': 'asc'})
            results = data.get('results')
            if not results:
                return {'success': False, 'data': None, 'error': 'No historical data available'}

            points = [{
                'date': time.strftime('%Y-%m-%d', time.gmtime(bar['t'] / 1000)),
                'open': bar['o'],
                'high': bar['h'],
                'low': bar['l'],
                'close': bar['c'],
                'volume': bar['v'],
            } for bar in results]
            return {'success': True, 'data': points, 'error': None}
        except Exception as e:
            self.logger.error(f"Polygon historical error for {symbol}: {e}")
            return {'success': False, 'data': None, 'error': str(e)}

    def search(self, query: str, limit: int = 10) -> Dict[str, Any]:
        if not self.is_configured():
            return self._not_configured()
        try:
            data = self._get("/v3/reference/tickers", {'search': query, 'active': 'true', 'limit': limit})
            matches = [{
                'ticker': r.get('ticker'),
                'name': r.get('name'),
                'market': r.get('market'),
                'type': r.get('type'),
            } for r in data.get('results') or []]
            return {'success': True, 'data': matches, 'error': None}
        except Exception as e:
            self.logger.error(f"Polygon search error for {query}: {e}")
            return {'success': False, 'data': None, 'error': str(e)}


polygon_client = PolygonClient()
