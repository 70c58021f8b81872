"""
Market Data Service
Yahoo Finance quotes, history, profiles, search and key statistics via yfinance,
behind per-kind TTL caches and a 100-requests-per-minute window.
Every public method returns {success, data | error, cached, timestamp}.
"""
import logging
import time
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Any

import yfinance as yf

from core.cache import TTLCache
from core.config import CACHE_TTL, MARKET_INDICES, YAHOO_MAX_REQUESTS, YAHOO_WINDOW_SECONDS
from core.rate_limit import RateLimiter

logger = logging.getLogger(__name__)

INTRADAY_INTERVALS = ('5m', '15m', '30m', '1h')
RANGE_DAYS = {
    '1d': 1, '5d': 5, '1mo': 30, '3mo': 91, '6mo': 182,
    '1y': 365, '2y': 730, '5y': 1826,
}


def _envelope(data: Any = None, error: str = None, cached: bool = False) -> Dict[str, Any]:
    if error is not None:
        return {'success': False, 'error': error, 'timestamp': time.time()}
    return {'success': True, 'data': data, 'cached': cached, 'timestamp': time.time()}


def _num(value, default=0):
    """yfinance reports missing numbers as None or NaN."""
    if value is None:
        return default
    try:
        value = float(value)
    except (TypeError, ValueError):
        return default
    return default if value != value else value


def _article(item: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten a yfinance news item. Newer releases nest the fields under 'content'."""
    content = item.get('content')
    if isinstance(content, dict):
        provider = content.get('provider') or {}
        link = content.get('canonicalUrl') or content.get('clickThroughUrl') or {}
        return {
            'title': content.get('title') or '',
            'summary': content.get('summary') or '',
            'publisher': provider.get('displayName') or '',
            'url': link.get('url') or '',
            'publishedAt': content.get('pubDate') or '',
        }
    published = item.get('providerPublishTime')
    return {
        'title': item.get('title') or '',
        'summary': item.get('summary') or '',
        'publisher': item.get('publisher') or '',
        'url': item.get('link') or '',
        'publishedAt': datetime.fromtimestamp(published).isoformat() if published else '',
    }


class MarketDataService:
    def __init__(self, max_requests: int = YAHOO_MAX_REQUESTS, window_seconds: int = YAHOO_WINDOW_SECONDS):
        self.quote_cache = TTLCache(CACHE_TTL['quote'], name='quote')
        self.historical_cache = TTLCache(CACHE_TTL['historical'], name='historical')
        self.profile_cache = TTLCache(CACHE_TTL['profile'], name='profile')
        self.search_cache = TTLCache(CACHE_TTL['search'], name='search')
        self.news_cache = TTLCache(CACHE_TTL['news'], name='news')
        self.rate_limiter = RateLimiter(max_requests, window_seconds)

    def _info(self, symbol: str) -> Dict[str, Any]:
        self.rate_limiter.wait_for_slot()
        return yf.Ticker(symbol).info or {}

    # --- Quotes ---

    def get_quote(self, symbol: str) -> Dict[str, Any]:
        symbol = (symbol or '').strip().upper()
        cache_key = f"quote:{symbol}"
        cached = self.quote_cache.get(cache_key)
        if cached is not None:
            return _envelope(cached, cached=True)

        try:
            info = self._info(symbol)
            price = info.get('regularMarketPrice') or info.get('currentPrice')
            if not info or price is None:
                return _envelope(error=f"No data found for symbol: {symbol}")

            short_name = info.get('shortName') or symbol
            previous_close = _num(info.get('regularMarketPreviousClose') or info.get('previousClose'))
            change = info.get('regularMarketChange')
            if change is None and previous_close:
                change = price - previous_close
            change_pct = info.get('regularMarketChangePercent')
            if change_pct is None and previous_close:
                change_pct = (price - previous_close) / previous_close * 100

            quote = {
                'symbol': info.get('symbol') or symbol,
                'shortName': short_name,
                'longName': info.get('longName') or short_name,
                'price': _num(price),
                'previousClose': previous_close,
                'open': _num(info.get('regularMarketOpen') or info.get('open')),
                'dayHigh': _num(info.get('regularMarketDayHigh') or info.get('dayHigh')),
                'dayLow': _num(info.get('regularMarketDayLow') or info.get('dayLow')),
                'change': _num(change),
                'changePercent': _num(change_pct),
                'volume': _num(info.get('regularMarketVolume') or info.get('volume')),
                'avgVolume': _num(info.get('averageDailyVolume3Month') or info.get('averageVolume')),
                'marketCap': _num(info.get('marketCap')),
                'peRatio': _num(info.get('trailingPE'), None),
                'eps': _num(info.get('epsTrailingTwelveMonths') or info.get('trailingEps'), None),
                'dividend': _num(info.get('dividendRate'), None),
                'dividendYield': _num(info.get('dividendYield'), None),
                'fiftyTwoWeekHigh': _num(info.get('fiftyTwoWeekHigh')),
                'fiftyTwoWeekLow': _num(info.get('fiftyTwoWeekLow')),
                'exchange': info.get('exchange') or 'UNKNOWN',
                'currency': info.get('currency') or 'USD',
                'marketState': info.get('marketState') or 'CLOSED',
                'timestamp': time.time(),
            }
            self.quote_cache.set(cache_key, quote)
            return _envelope(quote)

        except Exception as e:
            logger.error(f"Error fetching quote for {symbol}: {e}")
            return _envelope(error=str(e) or 'Failed to fetch stock quote')

    def get_price(self, symbol: str) -> Optional[float]:
        result = self.get_quote(symbol)
        if result['success'] and result['data']['price']:
            return result['data']['price']
        return None

    def get_multiple_quotes(self, symbols: List[str]) -> Dict[str, Any]:
        if not symbols:
            return _envelope(error='At least one symbol is required')
        quotes = []
        for symbol in symbols:
            result = self.get_quote(symbol)
            if result['success']:
                quotes.append(result['data'])
        return _envelope(quotes)

    # --- History ---

    def get_historical(self, symbol: str, interval: str = '1d', range: str = '1mo',
                       start: str = None, end: str = None) -> Dict[str, Any]:
        symbol = (symbol or '').strip().upper()
        cache_key = f"historical:{symbol}:{interval}:{range}:{start or ''}:{end or ''}"
        cached = self.historical_cache.get(cache_key)
        if cached is not None:
            return _envelope(cached, cached=True)

        try:
            yf_interval = '1d' if interval in INTRADAY_INTERVALS else interval
            end_dt = datetime.fromisoformat(end) if end else datetime.now()
            if start:
                start_dt = datetime.fromisoformat(start)
            elif range == 'max':
                start_dt = datetime(1970, 1, 1)
            else:
                start_dt = end_dt - timedelta(days=RANGE_DAYS.get(range, 30))

            self.rate_limiter.wait_for_slot()
            frame = yf.Ticker(symbol).history(start=start_dt, end=end_dt, interval=yf_interval,
                                              auto_adjust=False)
            if frame is None or frame.empty:
                return _envelope(error=f"No historical data found for symbol: {symbol}")

            points = []
            for index, row in frame.iterrows():
                close = _num(row.get('Close'))
                points.append({
                    'date': index.strftime('%Y-%m-%d'),
                    'open': _num(row.get('Open')),
                    'high': _num(row.get('High')),
                    'low': _num(row.get('Low')),
                    'close': close,
                    'volume': int(_num(row.get('Volume'))),
                    'adjClose': _num(row.get('Adj Close'), close),
                })

            data = {'symbol': symbol, 'data': points, 'interval': interval, 'range': range}
            self.historical_cache.set(cache_key, data)
            return _envelope(data)

        except Exception as e:
            logger.error(f"Error fetching historical data for {symbol}: {e}")
            return _envelope(error=str(e) or 'Failed to fetch historical data')

    # --- Profile & statistics ---

    def get_profile(self, symbol: str) -> Dict[str, Any]:
        symbol = (symbol or '').strip().upper()
        cache_key = f"profile:{symbol}"
        cached = self.profile_cache.get(cache_key)
        if cached is not None:
            return _envelope(cached, cached=True)

        try:
            info = self._info(symbol)
            if not info:
                return _envelope(error=f"No profile data found for symbol: {symbol}")

            officers = info.get('companyOfficers') or []
            short_name = info.get('shortName') or symbol
            profile = {
                'symbol': symbol,
                'shortName': short_name,
                'longName': info.get('longName') or short_name,
                'sector': info.get('sector') or 'Unknown',
                'industry': info.get('industry') or 'Unknown',
                'website': info.get('website') or '',
                'description': info.get('longBusinessSummary') or '',
                'fullTimeEmployees': info.get('fullTimeEmployees') or 0,
                'country': info.get('country') or 'Unknown',
                'city': info.get('city') or '',
                'state': info.get('state') or '',
                'address': info.get('address1') or '',
                'zip': info.get('zip') or '',
                'phone': info.get('phone') or '',
                'ceo': officers[0].get('name') if officers else None,
                'beta': _num(info.get('beta'), None),
            }
            self.profile_cache.set(cache_key, profile)
            return _envelope(profile)

        except Exception as e:
            logger.error(f"Error fetching profile for {symbol}: {e}")
            return _envelope(error=str(e) or 'Failed to fetch stock profile')

    def get_key_statistics(self, symbol: str) -> Dict[str, Any]:
        symbol = (symbol or '').strip().upper()
        cache_key = f"stats:{symbol}"
        cached = self.profile_cache.get(cache_key)
        if cached is not None:
            return _envelope(cached, cached=True)

        try:
            info = self._info(symbol)
            if not info:
                return _envelope(error=f"No statistics found for symbol: {symbol}")

            def opt(key):
                return _num(info.get(key), None)

            stats = {
                'marketCap': _num(info.get('marketCap')),
                'enterpriseValue': _num(info.get('enterpriseValue')),
                'trailingPE': opt('trailingPE'),
                'forwardPE': opt('forwardPE'),
                'pegRatio': opt('pegRatio') if info.get('pegRatio') is not None else opt('trailingPegRatio'),
                'priceToBook': opt('priceToBook'),
                'priceToSales': opt('priceToSalesTrailing12Months'),
                'profitMargin': opt('profitMargins'),
                'operatingMargin': opt('operatingMargins'),
                'returnOnAssets': opt('returnOnAssets'),
                'returnOnEquity': opt('returnOnEquity'),
                'revenuePerShare': opt('revenuePerShare'),
                'quarterlyRevenueGrowth': opt('revenueGrowth'),
                'grossProfit': opt('grossProfits'),
                'ebitda': opt('ebitda'),
                'debtToEquity': opt('debtToEquity'),
                'currentRatio': opt('currentRatio'),
                'bookValue': opt('bookValue'),
                'beta': opt('beta'),
                'fiftyDayAverage': opt('fiftyDayAverage'),
                'twoHundredDayAverage': opt('twoHundredDayAverage'),
                'sharesOutstanding': opt('sharesOutstanding'),
                'sharesFloat': opt('floatShares'),
                'percentHeldByInsiders': opt('heldPercentInsiders'),
                'percentHeldByInstitutions': opt('heldPercentInstitutions'),
                'shortRatio': opt('shortRatio'),
                'shortPercentOfFloat': opt('shortPercentOfFloat'),
                'targetMeanPrice': opt('targetMeanPrice'),
                'totalCash': opt('totalCash'),
                'totalDebt': opt('totalDebt'),
                'freeCashflow': opt('freeCashflow'),
                'operatingCashflow': opt('operatingCashflow'),
            }
            self.profile_cache.set(cache_key, stats, ttl=CACHE_TTL['historical'])
            return _envelope(stats)

        except Exception as e:
            logger.error(f"Error fetching key statistics for {symbol}: {e}")
            return _envelope(error=str(e) or 'Failed to fetch key statistics')

    # --- Search & indices ---

    def search(self, query: str, limit: int = 25) -> Dict[str, Any]:
        query = (query or '').strip()
        if not query:
            return _envelope(error='Search query is required')

        limit = 25 if limit is None else int(limit)
        limit = min(max(limit, 1), 50)
        cache_key = f"search:{query.lower()}:{limit}"
        cached = self.search_cache.get(cache_key)
        if cached is not None:
            return _envelope(cached, cached=True)

        try:
            self.rate_limiter.wait_for_slot()
            quotes = yf.Search(query, max_results=limit, news_count=0).quotes or []
            matches = [q for q in quotes if q.get('symbol') and q.get('quoteType') in ('EQUITY', 'ETF')]
            results = []
            for index, item in enumerate(matches[:limit]):
                short_name = item.get('shortname') or item['symbol']
                results.append({
                    'symbol': item['symbol'],
                    'shortName': short_name,
                    'longName': item.get('longname') or short_name,
                    'exchange': item.get('exchange') or 'UNKNOWN',
                    'type': item.get('quoteType') or 'EQUITY',
                    'score': 100 - index * 10,
                })
            self.search_cache.set(cache_key, results)
            return _envelope(results)

        except Exception as e:
            logger.error(f"Error searching for {query}: {e}")
            return _envelope(error=str(e) or 'Failed to search stocks')

    def get_market_indices(self) -> Dict[str, Any]:
        cache_key = 'indices:major'
        cached = self.quote_cache.get(cache_key)
        if cached is not None:
            return _envelope(cached, cached=True)

        indices = []
        for index in MARKET_INDICES:
            entry = {'symbol': index['symbol'], 'name': index['name'], 'price': 0, 'change': 0,
                     'changePercent': 0, 'timestamp': time.time()}
            try:
                info = self._info(index['symbol'])
                entry['price'] = _num(info.get('regularMarketPrice'))
                entry['change'] = _num(info.get('regularMarketChange'))
                entry['changePercent'] = _num(info.get('regularMarketChangePercent'))
            except Exception as e:
                logger.warning(f"Index {index['symbol']} unavailable: {e}")
            indices.append(entry)

        self.quote_cache.set(cache_key, indices, ttl=CACHE_TTL['index'])
        return _envelope(indices)

    # --- Cache control ---

    # --- News ---

    def get_news(self, symbol: Optional[str] = None, limit: int = 10) -> Dict[str, Any]:
        """Headlines for one symbol, or general market news when no symbol is given."""
        symbol = (symbol or '').strip().upper()
        limit = min(max(int(limit), 1), 50)
        cache_key = f"news:{symbol or 'market'}:{limit}"
        cached = self.news_cache.get(cache_key)
        if cached is not None:
            return _envelope(cached, cached=True)

        try:
            self.rate_limiter.wait_for_slot()
            if symbol:
                items = yf.Ticker(symbol).news or []
            else:
                items = yf.Search('stock market', max_results=0, news_count=limit).news or []
            articles = [a for a in (_article(item) for item in items) if a['title']][:limit]
            self.news_cache.set(cache_key, articles)
            return _envelope(articles)

        except Exception as e:
            logger.error(f"Error fetching news for {symbol or 'market'}: {e}")
            return _envelope(error=str(e) or 'Failed to fetch news')

    def _caches(self):
        return (self.quote_cache, self.historical_cache, self.profile_cache, self.search_cache, self.news_cache)

    def clear_all_caches(self):
        for cache in self._caches():
            cache.clear()

    def clear_symbol_cache(self, symbol: str):
        symbol = symbol.upper()
        self.quote_cache.delete(f"quote:{symbol}")
        self.historical_cache.clear_by_prefix(f"historical:{symbol}:")
        self.profile_cache.delete(f"profile:{symbol}")
        self.profile_cache.delete(f"stats:{symbol}")

    def cleanup_expired(self) -> int:
        return sum(cache.cleanup_expired() for cache in self._caches())

    def cache_stats(self) -> List[Dict[str, Any]]:
        return [cache.stats() for cache in self._caches()]


# Singleton
market_data = MarketDataService()
