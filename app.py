"""
FastAPI JSON API for MarketDesk
Market data, portfolios, alerts, watchlists, credits and the admin panel.
"""
# Initialize logging first
from logging_config import setup_logging
setup_logging()

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, Request, HTTPException, Depends
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBasicCredentials
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from core.config import (
    WEB_HOST, WEB_PORT, CREDIT_COSTS, RATE_LIMITS, CREDIT_CONFIG, DEFAULT_CREDIT_PACKAGES,
    DEFAULT_SETTINGS, SUBSCRIPTION_TIERS, BENCHMARK_SYMBOL,
)
from core.database import db
from core.auth import (
    auth_manager, admin_auth, basic_security, AuthError,
    require_user, require_admin, require_cron, SESSION_COOKIE, ADMIN_COOKIE,
)
from core.rate_limit import limiter
from core.audit_log import audit_log
from core.credits import credit_service, InsufficientCreditsError
from core.promo import promo_service
from core.metering import metering, get_client_ip
from engine.market_data import market_data
from engine.metrics.registry import metrics_registry, calculate_overall_score, is_valid_category
from engine.metrics.types import StockData
from engine.metrics.dupont import calculate_dupont_analysis, format_dupont_analysis
from engine.metrics.technical import calculate_sma, calculate_ema, calculate_rsi
from engine.metrics.dcf import DCFError, DCFInputs, calculate_dcf, TERMINAL_GROWTH_RATE, PROJECTION_YEARS
from engine.metrics.risk import calculate_risk_metrics, MIN_PRICE_POINTS
from engine.metrics.scores import calculate_scores
from engine.portfolio_service import portfolio_service
from engine.alert_manager import alert_manager
from engine.watchlists import watchlist_service
from engine.contact_messages import contact_messages
from engine.admin_service import admin_service
from clients.polygon_client import polygon_client
from clients.fmp_client import fmp_client, FMPClient
from clients.fred_client import fred_client
from clients.openrouter_client import (
    openrouter_client, OpenRouterError, DEFAULT_MODEL, OPENROUTER_MODELS,
    estimate_message_tokens, model_display_name,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="MarketDesk API", version="1.0.0")

# Configure rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

MAX_CHAT_MESSAGES = 50
MAX_CHAT_MESSAGE_LENGTH = 10000
MAX_CHAT_CONTEXT_TOKENS = 100000

# Still served while maintenance_mode is on
MAINTENANCE_EXEMPT_PREFIXES = ("/api/admin", "/api/health", "/api/cron")

CHAT_SYSTEM_PROMPT = (
    "You are MarketDesk's financial research assistant. Answer questions about stocks, "
    "markets and portfolios clearly and concisely. Base figures on the data you are given, "
    "say when data is missing, and never present analysis as personal investment advice."
)


# ==================== MIDDLEWARE ====================

@app.middleware("http")
async def credit_gate(request: Request, call_next):
    """Per-request metering for /api routes: rate limit, credit check, deduction on success."""
    path = request.url.path
    if not path.startswith("/api/"):
        return await call_next(request)

    if not path.startswith(MAINTENANCE_EXEMPT_PREFIXES) and db.get_setting("maintenance_mode"):
        return JSONResponse({"error": "MarketDesk is down for maintenance. Please try again later."},
                            status_code=503, headers={"Retry-After": "300"})

    user = auth_manager.get_current_user(request)
    gate = metering.credit_gate(path, request.headers, user,
                                client_host=request.client.host if request.client else None)
    if not gate['success']:
        body = {"error": gate['error']}
        if gate.get('credit_balance') is not None:
            body["creditBalance"] = gate['credit_balance']
        return JSONResponse(body, status_code=gate['status_code'], headers=gate.get('headers') or {})

    response = await call_next(request)

    action = gate.get('action')
    if action and 200 <= response.status_code < 300:
        try:
            balance = credit_service.charge(gate['user_id'], action, {'path': path})
            response.headers["X-Credit-Balance"] = f"{balance:g}"
        except InsufficientCreditsError as e:
            logger.warning(f"Credit deduction failed for user {gate['user_id']} on {path}: {e}")

    for key, value in (gate.get('headers') or {}).items():
        response.headers.setdefault(key, value)
    return response


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    """Add security headers to all responses"""
    from core.config import ENABLE_HTTPS
    response = await call_next(request)

    # Prevent clickjacking
    response.headers["X-Frame-Options"] = "DENY"

    # Prevent MIME sniffing
    response.headers["X-Content-Type-Options"] = "nosniff"

    # XSS protection
    response.headers["X-XSS-Protection"] = "1; mode=block"

    # HSTS (only if HTTPS enabled)
    if ENABLE_HTTPS:
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

    # Referrer policy
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

    # JSON only, nothing to load
    response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"

    return response


@app.exception_handler(Exception)
async def unhandled_exception(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse({"error": "Internal server error"}, status_code=500)


# ==================== HELPERS ====================

async def _json_body(request: Request) -> Dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON in request body")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid request body")
    return payload


def _client_ip(request: Request) -> str:
    return get_client_ip(request.headers, request.client.host if request.client else None)


def _field(payload: Dict[str, Any], *names: str, default: Any = None) -> Any:
    """First present key among camelCase / snake_case spellings."""
    for name in names:
        if payload.get(name) is not None:
            return payload[name]
    return default


def _upstream(result: Dict[str, Any], status_code: int = 500) -> Dict[str, Any]:
    """Pass a provider envelope through, or turn its error into an HTTP error."""
    if not result.get('success'):
        raise HTTPException(status_code=status_code, detail=result.get('error') or "Upstream request failed")
    return result


def _owned_portfolio(user: Dict, portfolio_id: int) -> Dict:
    portfolio = portfolio_service.get_portfolio(user['id'], portfolio_id)
    if not portfolio:
        raise HTTPException(status_code=404, detail="Portfolio not found")
    return portfolio


def _public_user(user: Dict) -> Dict[str, Any]:
    return {
        'id': user['id'],
        'email': user['email'],
        'displayName': user.get('display_name'),
        'subscriptionTier': user.get('subscription_tier') or 'free',
        'createdAt': user.get('created_at'),
        'lastLogin': user.get('last_login'),
    }


def _set_cookie(response, key: str, value: str):
    from core.config import ENABLE_HTTPS
    response.set_cookie(
        key=key,
        value=value,
        httponly=True,
        secure=ENABLE_HTTPS,
        samesite="lax",
        max_age=86400  # 24 hours
    )


# ==================== HEALTH ====================

@app.get("/api/health")
async def api_health():
    return {"status": "ok", "timestamp": datetime.now().isoformat()}


# ==================== USER AUTH ====================

@app.post("/api/auth/register")
@limiter.limit("5/minute")
async def register(request: Request):
    payload = await _json_body(request)
    if not db.get_setting("signup_enabled"):
        raise HTTPException(status_code=403, detail="Sign-ups are currently disabled")

    try:
        user = auth_manager.create_user(
            payload.get('email'), payload.get('password'), _field(payload, 'displayName', 'display_name'))
    except AuthError as e:
        raise HTTPException(status_code=400, detail=str(e))

    client_ip = get_remote_address(request)
    credit_service.initialize_user_credits(user['id'])
    session_id = auth_manager.create_session(
        user['id'], ip_address=client_ip, user_agent=request.headers.get('user-agent', ''))
    audit_log.log("user_registered", username=user['email'], ip=client_ip)

    response = JSONResponse({"success": True, "user": _public_user(user)}, status_code=201)
    _set_cookie(response, SESSION_COOKIE, session_id)
    return response


@app.post("/api/auth/login")
@limiter.limit("5/minute")
async def login(request: Request):
    """Email/password login with failure lockout"""
    payload = await _json_body(request)
    email = (payload.get('email') or '').strip().lower()
    password = payload.get('password') or ''
    client_ip = get_remote_address(request)

    # Best-effort housekeeping for stale failure records
    try:
        db.cleanup_old_login_failures(days=30)
    except Exception as e:
        logger.debug(f"Login failure cleanup skipped: {e}")

    # Backoff/lockout gate before password verification
    lockout = db.get_login_lockout_info(email, client_ip)
    if lockout.get('locked'):
        remaining_minutes = max(1, int((lockout.get('remaining_seconds', 0) + 59) / 60))
        audit_log.log("login_locked", username=email, ip=client_ip,
                      details={"remaining_minutes": remaining_minutes})
        raise HTTPException(status_code=429,
                            detail=f"Too many failed attempts. Try again in {remaining_minutes} minutes")

    user = auth_manager.authenticate(email, password)
    if user:
        db.clear_login_failures(email)
        session_id = auth_manager.create_session(
            user['id'],
            ip_address=client_ip,
            user_agent=request.headers.get('user-agent', '')
        )
        db.update_last_login(user['id'])
        audit_log.log("login_success", username=email, ip=client_ip)

        response = JSONResponse({"success": True, "user": _public_user(user)})
        _set_cookie(response, SESSION_COOKIE, session_id)
        return response

    db.record_login_failure(email, client_ip)
    audit_log.log("login_failed", username=email, ip=client_ip)
    raise HTTPException(status_code=401, detail="Invalid email or password")


@app.post("/api/auth/logout")
async def logout(request: Request):
    auth_manager.destroy_session(auth_manager.get_session_id(request))
    response = JSONResponse({"success": True})
    response.delete_cookie(SESSION_COOKIE)
    return response


@app.get("/api/auth/me")
async def me(user: Dict = Depends(require_user)):
    return {"user": _public_user(user), "credits": credit_service.get_user_credits(user['id'])}


# ==================== STOCKS ====================

@app.get("/api/stocks/quote")
def stock_quotes(symbols: str = ""):
    """Batch quotes: ?symbols=AAPL,MSFT"""
    symbol_list = [s.strip().upper() for s in symbols.split(",") if s.strip()]
    if not symbol_list:
        raise HTTPException(status_code=400, detail="symbols parameter is required")
    if len(symbol_list) > 50:
        raise HTTPException(status_code=400, detail="Maximum 50 symbols per request")
    return _upstream(market_data.get_multiple_quotes(symbol_list))


@app.get("/api/stocks/quote/{symbol}")
def stock_quote(symbol: str):
    """Yahoo quote, falling back to Polygon's previous-day bar when Yahoo fails."""
    result = market_data.get_quote(symbol)
    if not result['success'] and polygon_client.is_configured():
        fallback = polygon_client.get_quote(symbol)
        if fallback['success']:
            logger.info(f"Quote for {symbol} served from Polygon: {result.get('error')}")
            return {"success": True, "data": fallback['data'], "source": "polygon"}
    return _upstream(result, status_code=404)


@app.get("/api/stocks/search")
def stock_search(q: str = "", limit: int = 25):
    if not q.strip():
        raise HTTPException(status_code=400, detail="Search query is required")
    return _upstream(market_data.search(q, limit))


@app.get("/api/stocks/historical/{symbol}")
def stock_historical(symbol: str, interval: str = "1d", range: str = "1mo",
                     start: Optional[str] = None, end: Optional[str] = None):
    return _upstream(market_data.get_historical(symbol, interval=interval, range=range, start=start, end=end),
                     status_code=404)


@app.get("/api/stocks/profile/{symbol}")
def stock_profile(symbol: str):
    return _upstream(market_data.get_profile(symbol), status_code=404)


@app.get("/api/stocks/statistics/{symbol}")
def stock_statistics(symbol: str):
    return _upstream(market_data.get_key_statistics(symbol), status_code=404)


@app.get("/api/stocks/financials/{symbol}")
def stock_financials(symbol: str, period: str = "annual"):
    if period not in ("annual", "quarter"):
        raise HTTPException(status_code=400, detail="period must be 'annual' or 'quarter'")
    if not fmp_client.is_configured():
        raise HTTPException(status_code=503, detail="Financial statements provider is not configured")
    return _upstream(fmp_client.get_all_financials(symbol, period), status_code=502)


# ==================== METRICS ====================

def _price_points(symbol: str, range: str = '1y') -> Optional[List[Dict[str, Any]]]:
    history = market_data.get_historical(symbol, interval='1d', range=range)
    if not history.get('success'):
        return None
    return history['data']['data']


def _stock_data_for(symbol: str) -> StockData:
    quote = _upstream(market_data.get_quote(symbol), status_code=404)['data']
    statistics = market_data.get_key_statistics(symbol)
    history_points = _price_points(symbol)
    if fmp_client.is_configured():
        financials = fmp_client.get_all_financials(symbol)
        if financials['success']:
            data = FMPClient.to_stock_data(financials['data'], quote)
            stats = statistics['data'] if statistics.get('success') else {}
            if data.beta is None:
                data.beta = stats.get('beta')
            data.target_price = stats.get('targetMeanPrice')
            if history_points:
                data.price_history = [p['close'] for p in history_points if p.get('close') is not None]
                data.volume_history = [p['volume'] for p in history_points if p.get('volume') is not None]
            return data

    return StockData.from_quote(quote, statistics['data'] if statistics.get('success') else None,
                                history_points)


@app.get("/api/stock/{symbol}/metrics")
def stock_metrics(symbol: str, category: Optional[str] = None, ids: Optional[str] = None):
    """All metrics, one category, or a comma-separated id list, with an overall score."""
    symbol = symbol.strip().upper()
    if category and not is_valid_category(category):
        raise HTTPException(status_code=400, detail=f"Invalid category: {category}")

    data = _stock_data_for(symbol)
    if ids:
        metric_ids = [i.strip() for i in ids.split(",") if i.strip()]
        result = metrics_registry.calculate_metrics(metric_ids, data)
    elif category:
        result = metrics_registry.calculate_by_category(category, data)
    else:
        result = metrics_registry.calculate_all(data)

    dupont = calculate_dupont_analysis(data)
    return {
        "success": True,
        "data": dict(result, overallScore=calculate_overall_score(result),
                     dupont=dict(dupont, formatted=format_dupont_analysis(dupont))),
    }


@app.get("/api/metrics")
async def metrics_catalogue(category: Optional[str] = None, q: Optional[str] = None):
    if q:
        metrics = metrics_registry.search(q)
    elif category:
        if not is_valid_category(category):
            raise HTTPException(status_code=400, detail=f"Invalid category: {category}")
        metrics = metrics_registry.get_by_category(category)
    else:
        metrics = metrics_registry.get_all()
    return {
        "metrics": [m.info() for m in metrics],
        "summary": metrics_registry.get_summary(),
        "categories": metrics_registry.get_categories(),
        "total": metrics_registry.count(),
    }


# ==================== ANALYSIS ====================

COMPARISON_METRICS = ('pe_ratio', 'ev_to_ebitda', 'net_margin', 'roe', 'revenue_growth_yoy', 'debt_to_equity',
                      'fcf_yield', 'dividend_yield')

ANALYSIS_SYSTEM_PROMPT = (
    "You are an equity research assistant. Summarize the scores, risk profile and valuation you "
    "are given in three short paragraphs: strengths, risks and valuation. Use only the figures "
    "provided and do not give personal investment advice."
)


def _risk_profile(symbol: str, data: StockData, risk_free_rate: float) -> Optional[Dict[str, Any]]:
    """Risk statistics on the last year of closes, against the benchmark where dates line up."""
    closes = {p['date']: p['close'] for p in (_price_points(symbol) or []) if p.get('close')}
    benchmark = {p['date']: p['close'] for p in (_price_points(BENCHMARK_SYMBOL) or []) if p.get('close')}
    dates = [d for d in sorted(closes) if d in benchmark]
    if len(dates) >= MIN_PRICE_POINTS:
        return calculate_risk_metrics([closes[d] for d in dates], [benchmark[d] for d in dates],
                                      risk_free_rate, beta=data.beta)
    return calculate_risk_metrics([closes[d] for d in sorted(closes)], None, risk_free_rate, beta=data.beta)


@app.get("/api/stock/technical/{symbol}")
def stock_technical(symbol: str):
    symbol = symbol.strip().upper()
    data = _stock_data_for(symbol)
    prices = data.price_history or []
    result = metrics_registry.calculate_by_category('technical', data)
    indicators = {
        'sma20': calculate_sma(prices, 20),
        'sma50': calculate_sma(prices, 50),
        'sma200': calculate_sma(prices, 200),
        'ema12': calculate_ema(prices, 12),
        'ema26': calculate_ema(prices, 26),
        'rsi14': calculate_rsi(prices),
    }
    return {
        "success": True,
        "data": dict(result, symbol=symbol, price=data.current_price, indicators=indicators,
                     overallScore=calculate_overall_score(result)),
    }


@app.get("/api/stock/dcf/{symbol}")
def stock_dcf(symbol: str, terminal_growth: float = TERMINAL_GROWTH_RATE, years: int = PROJECTION_YEARS):
    if not 0 <= terminal_growth <= 0.05:
        raise HTTPException(status_code=400, detail="terminal_growth must be between 0 and 0.05")
    if not 3 <= years <= 10:
        raise HTTPException(status_code=400, detail="years must be between 3 and 10")

    symbol = symbol.strip().upper()
    data = _stock_data_for(symbol)
    inputs = DCFInputs.from_stock_data(data, fred_client.get_risk_free_rate())
    try:
        result = calculate_dcf(inputs, terminal_growth=terminal_growth, years=years)
    except DCFError as e:
        raise HTTPException(status_code=422, detail=f"Cannot value {symbol}: {e}")
    return {"success": True, "data": dict(result, symbol=symbol)}


@app.get("/api/stock/compare")
def stock_compare(symbols: str = ""):
    """Side-by-side scores for 2-5 symbols: ?symbols=AAPL,MSFT"""
    symbol_list = list(dict.fromkeys(s.strip().upper() for s in symbols.split(",") if s.strip()))
    if not 2 <= len(symbol_list) <= 5:
        raise HTTPException(status_code=400, detail="Provide between 2 and 5 distinct symbols")

    risk_free_rate = fred_client.get_risk_free_rate()
    rows = []
    for symbol in symbol_list:
        data = _stock_data_for(symbol)
        risk = _risk_profile(symbol, data, risk_free_rate)
        rows.append(dict(
            calculate_scores(data, risk),
            price=data.current_price,
            metrics={m: metrics_registry.calculate_metric(m, data)['value'] for m in COMPARISON_METRICS},
            riskLevel=risk['riskLevel'] if risk else None,
        ))

    ranked = [r for r in rows if r['total'] is not None]
    leader = max(ranked, key=lambda r: r['total'])['symbol'] if ranked else None
    return {"success": True, "data": {"stocks": rows, "leader": leader}}


@app.get("/api/stock/analysis/{symbol}")
def stock_analysis(symbol: str, ai: bool = True, user: Dict = Depends(require_user)):
    """Scores, risk and DCF in one report, with an AI summary when OpenRouter is configured."""
    symbol = symbol.strip().upper()
    data = _stock_data_for(symbol)
    risk_free_rate = fred_client.get_risk_free_rate()
    risk = _risk_profile(symbol, data, risk_free_rate)
    scores = calculate_scores(data, risk)

    dcf = None
    dcf_error = None
    try:
        dcf = calculate_dcf(DCFInputs.from_stock_data(data, risk_free_rate))
    except DCFError as e:
        dcf_error = str(e)

    report = {
        "symbol": symbol,
        "price": data.current_price,
        "scores": scores,
        "risk": risk,
        "dcf": dcf,
        "dcfError": dcf_error,
        "summary": None,
    }

    if ai and openrouter_client.is_configured():
        facts = {
            "symbol": symbol,
            "price": data.current_price,
            "scores": scores['scores'],
            "total": scores['total'],
            "riskLevel": risk['riskLevel'] if risk else None,
            "intrinsicValue": dcf['intrinsicValue'] if dcf else None,
            "marginOfSafety": dcf['marginOfSafety'] if dcf else None,
        }
        messages = [
            {'role': 'system', 'content': ANALYSIS_SYSTEM_PROMPT},
            {'role': 'user', 'content': json.dumps(facts, default=str)},
        ]
        try:
            result = openrouter_client.chat_with_fallback(messages, max_tokens=800, user_id=user['id'])
            report["summary"] = result['content']
        except OpenRouterError as e:
            logger.warning(f"AI summary for {symbol} failed: {e}")

    return {"success": True, "data": report}


@app.get("/api/portfolio/analysis/{portfolio_id}")
def portfolio_risk_analysis(portfolio_id: int, user: Dict = Depends(require_user)):
    _owned_portfolio(user, portfolio_id)
    risk_free_rate = fred_client.get_risk_free_rate()
    return {"success": True, "data": portfolio_service.get_risk_analysis(portfolio_id, risk_free_rate)}


# ==================== MARKET & ECONOMY ====================

@app.get("/api/market/indices")
def market_indices():
    return _upstream(market_data.get_market_indices())


@app.get("/api/market/news")
def market_news(symbol: Optional[str] = None, limit: int = 10):
    return _upstream(market_data.get_news(symbol, limit))


@app.get("/api/economic/indicators")
def economic_indicators():
    if not fred_client.is_configured():
        raise HTTPException(status_code=503, detail="FRED_API_KEY is not configured")
    return {"success": True, "data": fred_client.get_all_indicators()}


# ==================== AI CHAT ====================

def _validate_chat_messages(messages: Any) -> List[Dict[str, str]]:
    if not isinstance(messages, list) or not messages:
        raise HTTPException(status_code=400, detail="Messages array is required and must not be empty")
    if len(messages) > MAX_CHAT_MESSAGES:
        raise HTTPException(status_code=400, detail=f"Too many messages (max {MAX_CHAT_MESSAGES})")
    for msg in messages:
        if not isinstance(msg, dict) or msg.get('role') not in ('user', 'assistant'):
            raise HTTPException(status_code=400, detail="Each message must have a valid role (user or assistant)")
        content = msg.get('content')
        if not isinstance(content, str) or not content.strip():
            raise HTTPException(status_code=400, detail="Each message must have non-empty content")
        if len(content) > MAX_CHAT_MESSAGE_LENGTH:
            raise HTTPException(status_code=400,
                                detail=f"Message content too long (max {MAX_CHAT_MESSAGE_LENGTH} characters)")
    return [{'role': m['role'], 'content': m['content']} for m in messages]


def _chat_context(payload: Dict[str, Any]) -> Optional[str]:
    context = payload.get('context') or {}
    stock = context.get('stock') or payload.get('stockData')
    lines = []
    if stock:
        lines.append("Stock: " + ", ".join(f"{k}={v}" for k, v in stock.items() if v is not None))
    for key in ('market', 'portfolio', 'economicIndicators'):
        if context.get(key):
            lines.append(f"{key}: {context[key]}")
    return "\n".join(lines) or None


@app.post("/api/chat")
async def chat(request: Request, user: Dict = Depends(require_user)):
    payload = await _json_body(request)
    messages = _validate_chat_messages(payload.get('messages'))

    model = payload.get('model') or db.get_setting("default_ai_model") or DEFAULT_MODEL
    if model not in OPENROUTER_MODELS:
        raise HTTPException(status_code=400, detail=f"Unsupported model: {model}")

    ai_messages = [{'role': 'system', 'content': CHAT_SYSTEM_PROMPT}]
    context = _chat_context(payload)
    if context:
        ai_messages.append({'role': 'system', 'content': f"Here is the current data context:\n\n{context}"})
    ai_messages.extend(messages)

    if estimate_message_tokens(ai_messages) > MAX_CHAT_CONTEXT_TOKENS:
        raise HTTPException(status_code=400, detail="Context too large. Please start a new conversation.")

    try:
        result = await run_in_threadpool(
            openrouter_client.chat_with_fallback, ai_messages, model=model, max_tokens=4096, user_id=user['id'])
    except OpenRouterError as e:
        logger.error(f"Chat failed for user {user['id']}: {e}")
        status_code = e.status_code if e.status_code in (400, 401, 402, 429) else 502
        return JSONResponse({"error": str(e), "retryable": e.retryable}, status_code=status_code)

    return {
        "success": True,
        "data": dict(result, modelName=model_display_name(result['model'])),
    }


# ==================== CREDITS ====================

@app.get("/api/credits")
async def credits_balance(user: Dict = Depends(require_user)):
    credits = credit_service.get_user_credits(user['id'])
    stats = credit_service.get_credit_stats(user['id'])
    tier = user.get('subscription_tier') or 'free'
    return {
        "success": True,
        "data": {
            "balance": float(credits['balance']),
            "lowCredits": float(credits['balance']) <= CREDIT_CONFIG['low_credit_threshold'],
            "lifetimeCredits": float(credits['lifetime_credits']),
            "freeCreditsUsed": float(credits['free_credits_used']),
            "lastReset": credits['last_free_credits_reset'],
            "stats": {"todayUsage": stats['today_usage'], "monthUsage": stats['month_usage']},
            "tier": tier,
            "limits": RATE_LIMITS.get(tier, RATE_LIMITS['free']),
            "creditCosts": CREDIT_COSTS,
        },
    }


@app.get("/api/credits/analytics")
async def credits_analytics(user: Dict = Depends(require_user)):
    return {"success": True, "data": credit_service.get_usage_analytics(user['id'])}


@app.get("/api/credits/history")
async def credits_history(limit: int = 50, offset: int = 0, type: Optional[str] = None,
                          user: Dict = Depends(require_user)):
    limit = max(1, min(limit, 100))
    history = credit_service.get_credit_history(user['id'], limit=limit, offset=max(0, offset), type=type)
    return {
        "success": True,
        "data": {
            "transactions": history,
            "pagination": {"limit": limit, "offset": offset, "hasMore": len(history) == limit},
        },
    }


@app.post("/api/credits/promo")
async def credits_promo(request: Request, user: Dict = Depends(require_user)):
    payload = await _json_body(request)
    code = (payload.get('code') or '').strip()
    if not code:
        raise HTTPException(status_code=400, detail="Promo code is required")

    action = payload.get('action')
    if action == 'validate':
        return promo_service.validate(code, user['id'], _field(payload, 'packageId', 'package_id'),
                                      _field(payload, 'purchaseAmount', 'purchase_amount'))
    if action == 'redeem':
        return promo_service.redeem(code, user['id'], {
            'ip_address': _client_ip(request),
            'user_agent': request.headers.get('user-agent'),
        })
    raise HTTPException(status_code=400, detail="Invalid action")


@app.get("/api/credits/packages")
async def credit_packages():
    return {"packages": credit_service.list_packages(active_only=True)}


# ==================== PORTFOLIOS ====================

@app.get("/api/portfolio")
async def list_portfolios(user: Dict = Depends(require_user)):
    return {"portfolios": portfolio_service.list_portfolios(user['id'])}


@app.post("/api/portfolio", status_code=201)
async def create_portfolio(request: Request, user: Dict = Depends(require_user)):
    payload = await _json_body(request)
    try:
        portfolio = portfolio_service.create_portfolio(
            user['id'], payload.get('name'), payload.get('description'), payload.get('currency') or 'USD')
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"portfolio": portfolio}


@app.get("/api/portfolio/{portfolio_id}")
def get_portfolio(portfolio_id: int, user: Dict = Depends(require_user)):
    portfolio = _owned_portfolio(user, portfolio_id)
    holdings = portfolio_service.list_holdings_with_quotes(portfolio_id)
    return {"portfolio": portfolio, "holdings": holdings, "summary": portfolio_service.summarize(holdings)}


@app.put("/api/portfolio/{portfolio_id}")
async def update_portfolio(portfolio_id: int, request: Request, user: Dict = Depends(require_user)):
    payload = await _json_body(request)
    updates = {
        'name': payload.get('name'),
        'description': payload.get('description'),
        'currency': payload.get('currency'),
        'is_default': _field(payload, 'isDefault', 'is_default'),
    }
    try:
        portfolio = portfolio_service.update_portfolio(user['id'], portfolio_id, updates)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not portfolio:
        raise HTTPException(status_code=404, detail="Portfolio not found")
    return {"portfolio": portfolio}


@app.delete("/api/portfolio/{portfolio_id}")
async def delete_portfolio(portfolio_id: int, user: Dict = Depends(require_user)):
    if not portfolio_service.delete_portfolio(user['id'], portfolio_id):
        raise HTTPException(status_code=404, detail="Portfolio not found")
    return {"success": True}


@app.get("/api/portfolio/{portfolio_id}/holdings")
def list_holdings(portfolio_id: int, user: Dict = Depends(require_user)):
    _owned_portfolio(user, portfolio_id)
    holdings = portfolio_service.list_holdings_with_quotes(portfolio_id)
    return {"holdings": holdings, "summary": portfolio_service.summarize(holdings)}


@app.post("/api/portfolio/{portfolio_id}/holdings", status_code=201)
async def add_holding(portfolio_id: int, request: Request, user: Dict = Depends(require_user)):
    _owned_portfolio(user, portfolio_id)
    payload = await _json_body(request)
    try:
        result = portfolio_service.add_holding(
            portfolio_id,
            payload.get('symbol'),
            payload.get('quantity'),
            _field(payload, 'avgBuyPrice', 'avg_buy_price'),
            notes=payload.get('notes'),
            executed_at=_field(payload, 'executedAt', 'executed_at'),
        )
    except (TypeError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    return result


@app.put("/api/portfolio/{portfolio_id}/holdings/{holding_id}")
async def update_holding(portfolio_id: int, holding_id: int, request: Request,
                         user: Dict = Depends(require_user)):
    _owned_portfolio(user, portfolio_id)
    payload = await _json_body(request)
    try:
        holding = portfolio_service.update_holding(
            portfolio_id, holding_id,
            quantity=payload.get('quantity'),
            avg_buy_price=_field(payload, 'avgBuyPrice', 'avg_buy_price'),
            notes=payload.get('notes'),
        )
    except (TypeError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not holding:
        raise HTTPException(status_code=404, detail="Holding not found")
    return {"holding": holding}


@app.delete("/api/portfolio/{portfolio_id}/holdings/{holding_id}")
async def delete_holding(portfolio_id: int, holding_id: int, sell_price: Optional[float] = None,
                         quantity: Optional[float] = None, user: Dict = Depends(require_user)):
    _owned_portfolio(user, portfolio_id)
    result = portfolio_service.delete_holding(portfolio_id, holding_id, sell_price=sell_price, quantity=quantity)
    if not result:
        raise HTTPException(status_code=404, detail="Holding not found")
    return dict(result, success=True)


@app.get("/api/portfolio/{portfolio_id}/transactions")
async def list_transactions(portfolio_id: int, limit: int = 100, user: Dict = Depends(require_user)):
    _owned_portfolio(user, portfolio_id)
    return {"transactions": portfolio_service.list_transactions(portfolio_id, limit=max(1, min(limit, 500)))}


@app.get("/api/portfolio/{portfolio_id}/analytics")
def portfolio_analytics(portfolio_id: int, user: Dict = Depends(require_user)):
    _owned_portfolio(user, portfolio_id)
    return {"success": True, "data": portfolio_service.get_analytics(portfolio_id)}


@app.post("/api/portfolio/{portfolio_id}/snapshot")
def portfolio_snapshot(portfolio_id: int, user: Dict = Depends(require_user)):
    _owned_portfolio(user, portfolio_id)
    return {"snapshot": portfolio_service.record_snapshot(portfolio_id)}


@app.get("/api/portfolio/{portfolio_id}/alerts")
async def list_portfolio_alerts(portfolio_id: int, user: Dict = Depends(require_user)):
    _owned_portfolio(user, portfolio_id)
    return {"alerts": alert_manager.list_portfolio_alerts(portfolio_id)}


@app.post("/api/portfolio/{portfolio_id}/alerts", status_code=201)
async def create_portfolio_alert(portfolio_id: int, request: Request, user: Dict = Depends(require_user)):
    _owned_portfolio(user, portfolio_id)
    payload = await _json_body(request)
    try:
        alert = alert_manager.create_portfolio_alert(
            user['id'], portfolio_id,
            _field(payload, 'alertType', 'alert_type'),
            symbol=payload.get('symbol'),
            holding_id=_field(payload, 'holdingId', 'holding_id'),
            condition_value=_field(payload, 'conditionValue', 'condition_value'),
            condition_percent=_field(payload, 'conditionPercent', 'condition_percent'),
            message=payload.get('message'),
        )
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"alert": alert}


@app.put("/api/portfolio/{portfolio_id}/alerts/{alert_id}")
async def update_portfolio_alert(portfolio_id: int, alert_id: int, request: Request,
                                 user: Dict = Depends(require_user)):
    _owned_portfolio(user, portfolio_id)
    payload = await _json_body(request)
    updates = {
        'condition_value': _field(payload, 'conditionValue', 'condition_value'),
        'condition_percent': _field(payload, 'conditionPercent', 'condition_percent'),
        'message': payload.get('message'),
        'is_active': _field(payload, 'isActive', 'is_active'),
    }
    alert = alert_manager.update_portfolio_alert(
        portfolio_id, alert_id, {k: v for k, v in updates.items() if v is not None})
    if not alert:
        raise HTTPException(status_code=404, detail="Alert not found")
    return {"alert": alert}


@app.delete("/api/portfolio/{portfolio_id}/alerts/{alert_id}")
async def delete_portfolio_alert(portfolio_id: int, alert_id: int, user: Dict = Depends(require_user)):
    _owned_portfolio(user, portfolio_id)
    if not alert_manager.delete_portfolio_alert(portfolio_id, alert_id):
        raise HTTPException(status_code=404, detail="Alert not found")
    return {"success": True}


# ==================== STOCK ALERTS ====================

@app.get("/api/stock-alerts")
async def list_stock_alerts(active: Optional[bool] = None, symbol: Optional[str] = None,
                            user: Dict = Depends(require_user)):
    return {"alerts": alert_manager.list_stock_alerts(user['id'], active=active, symbol=symbol)}


@app.post("/api/stock-alerts", status_code=201)
async def create_stock_alert(request: Request, user: Dict = Depends(require_user)):
    payload = await _json_body(request)
    try:
        return alert_manager.create_stock_alert(
            user['id'], payload.get('symbol'), payload.get('condition'),
            _field(payload, 'targetPrice', 'target_price'))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/api/stock-alerts/{alert_id}")
async def get_stock_alert(alert_id: int, user: Dict = Depends(require_user)):
    alert = alert_manager.get_stock_alert(user['id'], alert_id)
    if not alert:
        raise HTTPException(status_code=404, detail="Alert not found")
    return {"alert": alert}


@app.put("/api/stock-alerts/{alert_id}")
async def update_stock_alert(alert_id: int, request: Request, user: Dict = Depends(require_user)):
    payload = await _json_body(request)
    updates = {
        'condition': payload.get('condition'),
        'target_price': _field(payload, 'targetPrice', 'target_price'),
        'is_active': _field(payload, 'isActive', 'is_active'),
    }
    try:
        alert = alert_manager.update_stock_alert(
            user['id'], alert_id, {k: v for k, v in updates.items() if v is not None})
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not alert:
        raise HTTPException(status_code=404, detail="Alert not found")
    return {"alert": alert}


@app.delete("/api/stock-alerts/{alert_id}")
async def delete_stock_alert(alert_id: int, user: Dict = Depends(require_user)):
    if not alert_manager.delete_stock_alert(user['id'], alert_id):
        raise HTTPException(status_code=404, detail="Alert not found")
    return {"success": True}


# ==================== NOTIFICATIONS ====================

@app.get("/api/notifications")
async def list_notifications(unread: bool = False, limit: int = 50, user: Dict = Depends(require_user)):
    return {"notifications": alert_manager.get_notifications(
        user['id'], unread_only=unread, limit=max(1, min(limit, 200)))}


@app.post("/api/notifications/read")
async def mark_notifications_read(request: Request, user: Dict = Depends(require_user)):
    """Mark one notification ({"id": n}) or all of them ({}) as read."""
    payload = await _json_body(request)
    updated = alert_manager.mark_notification_read(user['id'], payload.get('id'))
    return {"success": True, "updated": updated}


# ==================== WATCHLISTS ====================

@app.get("/api/watchlists")
async def list_watchlists(user: Dict = Depends(require_user)):
    return {"watchlists": watchlist_service.list_watchlists(user['id'])}


@app.post("/api/watchlists", status_code=201)
async def create_watchlist(request: Request, user: Dict = Depends(require_user)):
    payload = await _json_body(request)
    try:
        watchlist = watchlist_service.create_watchlist(
            user['id'], payload.get('name'), bool(_field(payload, 'isDefault', 'is_default', default=False)))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"watchlist": watchlist}


@app.get("/api/watchlists/{watchlist_id}")
async def get_watchlist(watchlist_id: int, user: Dict = Depends(require_user)):
    watchlist = watchlist_service.get_watchlist(user['id'], watchlist_id)
    if not watchlist:
        raise HTTPException(status_code=404, detail="Watchlist not found")
    return {"watchlist": watchlist}


@app.put("/api/watchlists/{watchlist_id}")
async def update_watchlist(watchlist_id: int, request: Request, user: Dict = Depends(require_user)):
    payload = await _json_body(request)
    try:
        watchlist = watchlist_service.update_watchlist(
            user['id'], watchlist_id, name=payload.get('name'),
            is_default=_field(payload, 'isDefault', 'is_default'))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not watchlist:
        raise HTTPException(status_code=404, detail="Watchlist not found")
    return {"watchlist": watchlist}


@app.delete("/api/watchlists/{watchlist_id}")
async def delete_watchlist(watchlist_id: int, user: Dict = Depends(require_user)):
    if not watchlist_service.delete_watchlist(user['id'], watchlist_id):
        raise HTTPException(status_code=404, detail="Watchlist not found")
    return {"success": True}


@app.post("/api/watchlists/{watchlist_id}/items", status_code=201)
async def add_watchlist_item(watchlist_id: int, request: Request, user: Dict = Depends(require_user)):
    payload = await _json_body(request)
    try:
        item = watchlist_service.add_item(user['id'], watchlist_id, payload.get('symbol'), payload.get('notes'))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not item:
        raise HTTPException(status_code=404, detail="Watchlist not found")
    return {"item": item}


@app.delete("/api/watchlists/{watchlist_id}/items")
async def remove_watchlist_item(watchlist_id: int, item_id: Optional[int] = None, symbol: Optional[str] = None,
                                user: Dict = Depends(require_user)):
    try:
        removed = watchlist_service.remove_item(user['id'], watchlist_id, item_id=item_id, symbol=symbol)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not removed:
        raise HTTPException(status_code=404, detail="Item not found")
    return {"success": True}


@app.get("/api/watchlists/{watchlist_id}/quotes")
def watchlist_quotes(watchlist_id: int, user: Dict = Depends(require_user)):
    quotes = watchlist_service.get_quotes(user['id'], watchlist_id)
    if quotes is None:
        raise HTTPException(status_code=404, detail="Watchlist not found")
    return {"quotes": quotes}


# ==================== CONTACT ====================

@app.post("/api/contact", status_code=201)
@limiter.limit("5/minute")
async def contact(request: Request):
    payload = await _json_body(request)
    try:
        message = contact_messages.submit(
            payload.get('name'), payload.get('email'), payload.get('message'),
            subject=payload.get('subject'),
            ip_address=_client_ip(request),
            user_agent=request.headers.get('user-agent'),
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": True, "id": message['id']}


# ==================== CRON ====================

@app.api_route("/api/cron/check-alerts", methods=["GET", "POST"])
def cron_check_alerts(authorized: bool = Depends(require_cron)):
    result = alert_manager.check_all_alerts()
    logger.info(f"Alert check: {result['stockAlerts']} stock, {result['portfolioAlerts']} portfolio")
    return {"success": True, "data": result}


@app.api_route("/api/cron/snapshots", methods=["GET", "POST"])
def cron_snapshots(authorized: bool = Depends(require_cron)):
    return {"success": True, "data": portfolio_service.snapshot_all()}


@app.api_route("/api/cron/cleanup", methods=["GET", "POST"])
def cron_cleanup(authorized: bool = Depends(require_cron)):
    result = admin_service.cleanup()
    result['notifications'] = alert_manager.cleanup_old_notifications()
    return {"success": True, "data": result}


# ==================== ADMIN AUTH ====================

@app.post("/api/admin/auth")
@limiter.limit("5/minute")
async def admin_login(request: Request):
    payload = await _json_body(request)
    username = payload.get('username') or ''
    client_ip = get_remote_address(request)

    if not admin_auth.validate_credentials(username, payload.get('password') or ''):
        audit_log.log("admin_login_failed", username=username, ip=client_ip)
        raise HTTPException(status_code=401, detail="Invalid credentials")

    audit_log.log("admin_login_success", username=username, ip=client_ip)
    response = JSONResponse({"success": True, "username": username})
    _set_cookie(response, ADMIN_COOKIE, admin_auth.create_token(username))
    return response


@app.get("/api/admin/auth")
async def admin_session(request: Request):
    username = admin_auth.verify_token(request.cookies.get(ADMIN_COOKIE))
    if not username:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return {"authenticated": True, "username": username}


@app.delete("/api/admin/auth")
async def admin_logout(request: Request):
    username = admin_auth.verify_token(request.cookies.get(ADMIN_COOKIE))
    if username:
        audit_log.log("admin_logout", username=username, ip=get_remote_address(request))
    response = JSONResponse({"success": True})
    response.delete_cookie(ADMIN_COOKIE)
    return response


# ==================== ADMIN ====================

@app.get("/api/admin/stats")
async def admin_stats(admin: str = Depends(require_admin)):
    return admin_service.get_stats()


@app.get("/api/admin/health")
def admin_health(admin: str = Depends(require_admin)):
    health = admin_service.get_health()
    return JSONResponse(health, status_code=503 if health['status'] == 'unhealthy' else 200)


@app.get("/api/admin/users")
async def admin_users(page: int = 1, limit: int = 20, search: str = "", sortOrder: str = "desc",
                      admin: str = Depends(require_admin)):
    return admin_service.list_users(page=page, limit=limit, search=search, sort_order=sortOrder)


@app.patch("/api/admin/users")
async def admin_update_user(request: Request, admin: str = Depends(require_admin)):
    """Change a user's subscription tier"""
    payload = await _json_body(request)
    user_id = _field(payload, 'userId', 'user_id')
    tier = _field(payload, 'subscriptionTier', 'subscription_tier')
    if not user_id or tier not in SUBSCRIPTION_TIERS:
        raise HTTPException(status_code=400,
                            detail=f"userId and subscriptionTier ({', '.join(SUBSCRIPTION_TIERS)}) required")
    if not db.get_user(int(user_id)):
        raise HTTPException(status_code=404, detail="User not found")

    db.set_subscription_tier(int(user_id), tier)
    audit_log.log("admin_tier_changed", username=admin, details={"user_id": user_id, "tier": tier})
    return {"success": True, "user": _public_user(db.get_user(int(user_id)))}


@app.get("/api/admin/settings")
async def admin_settings(admin: str = Depends(require_admin)):
    return {"settings": db.get_all_settings()}


@app.put("/api/admin/settings")
async def admin_update_settings(request: Request, admin: str = Depends(require_admin)):
    payload = await _json_body(request)
    if not payload:
        raise HTTPException(status_code=400, detail="No settings given")
    unknown = sorted(set(payload) - set(DEFAULT_SETTINGS))
    if unknown:
        raise HTTPException(status_code=400, detail=f"Unknown settings: {', '.join(unknown)}")

    for key, value in payload.items():
        db.set_setting(key, value)
    audit_log.log("admin_settings_updated", username=admin, details={"keys": sorted(payload)})
    return {"success": True, "settings": db.get_all_settings()}


@app.get("/api/admin/activity")
async def admin_activity(limit: int = 100, admin: str = Depends(require_admin)):
    return {"events": audit_log.recent(limit=max(1, min(limit, 1000)))}


@app.get("/api/admin/cache")
async def admin_cache(admin: str = Depends(require_admin)):
    from engine import report_cache
    return {
        "marketData": market_data.cache_stats(),
        "fred": fred_client.cache_stats(),
        "report": report_cache.get_cache_stats(),
    }


@app.delete("/api/admin/cache")
async def admin_clear_cache(symbol: Optional[str] = None, admin: str = Depends(require_admin)):
    from engine import report_cache
    if symbol:
        market_data.clear_symbol_cache(symbol)
        metrics_registry.clear_symbol_cache(symbol.upper())
        return {"success": True, "cleared": symbol.upper()}
    market_data.clear_all_caches()
    metrics_registry.clear_cache()
    report_cache.clear_all_cache()
    fred_client.clear_cache()
    return {"success": True, "cleared": "all"}


# --- Provider API keys ---

PROVIDER_CLIENTS = {
    'polygon': polygon_client,
    'fmp': fmp_client,
    'fred': fred_client,
    'openrouter': openrouter_client,
}


def _mask_key(key: str) -> str:
    """First 4 + last 4 chars visible"""
    if len(key) <= 8:
        return key[:2] + '*' * (len(key) - 2)
    return key[:4] + '*' * (len(key) - 8) + key[-4:]


@app.get("/api/admin/api-keys")
async def admin_api_keys(admin: str = Depends(require_admin)):
    keys = {}
    for service, client in PROVIDER_CLIENTS.items():
        stored = db.get_api_key(service)
        key = client.api_key
        keys[service] = {
            "configured": bool(key),
            "source": ("database" if stored and key == stored else "environment") if key else None,
            "masked": _mask_key(key) if key else None,
        }
    return {"keys": keys}


@app.put("/api/admin/api-keys")
async def admin_set_api_key(request: Request, admin: str = Depends(require_admin)):
    """Store a provider key (Fernet-encrypted) and apply it to the running client."""
    payload = await _json_body(request)
    service = payload.get('service')
    api_key = (_field(payload, 'apiKey', 'api_key') or '').strip()
    if service not in PROVIDER_CLIENTS:
        raise HTTPException(status_code=400, detail="Invalid service")
    if not api_key:
        raise HTTPException(status_code=400, detail="apiKey required")

    db.set_api_key(service, api_key)
    PROVIDER_CLIENTS[service].api_key = api_key
    audit_log.log("admin_api_key_set", username=admin, details={"service": service})
    return {"success": True, "service": service, "masked": _mask_key(api_key)}


@app.delete("/api/admin/api-keys")
async def admin_delete_api_key(service: str = "", admin: str = Depends(require_admin)):
    if service not in PROVIDER_CLIENTS:
        raise HTTPException(status_code=400, detail="Invalid service")
    stored = db.get_api_key(service)
    db.delete_api_key(service)
    client = PROVIDER_CLIENTS[service]
    if stored and client.api_key == stored:
        client.api_key = ''
    audit_log.log("admin_api_key_deleted", username=admin, details={"service": service})
    return {"success": True}


# --- Credits ---

@app.get("/api/admin/credits")
async def admin_credits(request: Request, action: str = "overview", userId: Optional[int] = None,
                        page: int = 1, limit: int = 20,
                        credentials: Optional[HTTPBasicCredentials] = Depends(basic_security)):
    # Read-only pricing config is public
    if action == 'config':
        return {
            "creditCosts": CREDIT_COSTS,
            "rateLimits": RATE_LIMITS,
            "creditConfig": CREDIT_CONFIG,
            "defaultPackages": DEFAULT_CREDIT_PACKAGES,
        }

    if not admin_auth.get_admin(request, credentials):
        raise HTTPException(status_code=401, detail="Unauthorized", headers={"WWW-Authenticate": "Basic"})

    if action == 'overview':
        return credit_service.get_overview()
    if action == 'users':
        return credit_service.list_user_credits(page=page, limit=limit)
    if action == 'transactions' and userId:
        limit = max(1, min(limit, 100))
        return {"transactions": credit_service.get_credit_history(userId, limit=limit,
                                                                  offset=(max(1, page) - 1) * limit)}
    raise HTTPException(status_code=400, detail="Invalid action")


@app.post("/api/admin/credits")
async def admin_credits_action(request: Request, admin: str = Depends(require_admin)):
    payload = await _json_body(request)
    action = payload.get('action')

    if action == 'adjust_credits':
        user_id = _field(payload, 'userId', 'user_id')
        amount = payload.get('amount')
        if not user_id or amount is None:
            raise HTTPException(status_code=400, detail="userId and amount required")
        try:
            result = credit_service.adjust_credits(int(user_id), float(amount), payload.get('description'))
        except ValueError as e:
            raise HTTPException(status_code=404, detail=str(e))
        audit_log.log("admin_credit_adjust", username=admin, details={"user_id": user_id, "amount": amount})
        return result

    if action == 'create_package':
        try:
            package = credit_service.create_package(
                payload.get('name'), payload.get('credits'), payload.get('price'),
                description=payload.get('description'),
                bonus_credits=_field(payload, 'bonusCredits', 'bonus_credits', default=0),
                is_popular=bool(_field(payload, 'isPopular', 'is_popular', default=False)),
                sort_order=_field(payload, 'sortOrder', 'sort_order', default=0),
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"success": True, "package": package}

    if action == 'update_package':
        package_id = _field(payload, 'packageId', 'package_id', 'id')
        if not package_id:
            raise HTTPException(status_code=400, detail="packageId required")
        updates = {
            'name': payload.get('name'),
            'description': payload.get('description'),
            'credits': payload.get('credits'),
            'bonus_credits': _field(payload, 'bonusCredits', 'bonus_credits'),
            'price': payload.get('price'),
            'is_popular': _field(payload, 'isPopular', 'is_popular'),
            'is_active': _field(payload, 'isActive', 'is_active'),
            'sort_order': _field(payload, 'sortOrder', 'sort_order'),
        }
        if not credit_service.update_package(int(package_id), updates):
            raise HTTPException(status_code=404, detail="Package not found")
        return {"success": True}

    if action == 'bulk_credits':
        user_ids = _field(payload, 'userIds', 'user_ids') or []
        amount = payload.get('amount')
        if not user_ids or amount is None:
            raise HTTPException(status_code=400, detail="userIds array and amount required")
        adjusted = credit_service.bulk_add_credits([int(u) for u in user_ids], float(amount),
                                                   payload.get('description'))
        audit_log.log("admin_bulk_credits", username=admin,
                      details={"users": len(user_ids), "adjusted": adjusted, "amount": amount})
        return {"success": True, "adjusted": adjusted, "total": len(user_ids)}

    raise HTTPException(status_code=400, detail="Invalid action")


@app.delete("/api/admin/credits")
async def admin_delete_package(packageId: Optional[int] = None, admin: str = Depends(require_admin)):
    if not packageId:
        raise HTTPException(status_code=400, detail="packageId required")
    if not credit_service.delete_package(packageId):
        raise HTTPException(status_code=404, detail="Package not found")
    return {"success": True}


# --- Promo codes ---

@app.get("/api/admin/promo-codes")
async def admin_promo_codes(action: str = "list", codeId: Optional[int] = None,
                            admin: str = Depends(require_admin)):
    if action == 'list':
        return {"codes": promo_service.list_all()}
    if action == 'stats':
        if not codeId:
            raise HTTPException(status_code=400, detail="codeId required")
        code = promo_service.get(codeId)
        if not code:
            raise HTTPException(status_code=404, detail="Promo code not found")
        return {"code": code, "stats": promo_service.get_stats(codeId)}
    if action == 'overview':
        return promo_service.get_overview()
    raise HTTPException(status_code=400, detail="Invalid action")


@app.post("/api/admin/promo-codes")
async def admin_promo_codes_action(request: Request, admin: str = Depends(require_admin)):
    payload = await _json_body(request)
    action = payload.get('action')

    if action == 'create':
        data = {
            'code': payload.get('code'),
            'type': payload.get('type'),
            'credits': payload.get('credits'),
            'discount_percent': _field(payload, 'discountPercent', 'discount_percent'),
            'discount_amount': _field(payload, 'discountAmount', 'discount_amount'),
            'trial_days': _field(payload, 'trialDays', 'trial_days'),
            'max_uses': _field(payload, 'maxUses', 'max_uses'),
            'max_uses_per_user': _field(payload, 'maxUsesPerUser', 'max_uses_per_user'),
            'min_purchase_amount': _field(payload, 'minPurchaseAmount', 'min_purchase_amount'),
            'applicable_packages': _field(payload, 'applicablePackages', 'applicable_packages'),
            'starts_at': _field(payload, 'startsAt', 'starts_at'),
            'expires_at': _field(payload, 'expiresAt', 'expires_at'),
            'description': payload.get('description'),
        }
        try:
            code = promo_service.create(data, created_by=admin)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        audit_log.log("admin_promo_created", username=admin, details={"code": code['code']})
        return {"success": True, "code": code}

    code_id = _field(payload, 'id', 'codeId')
    if action in ('update', 'delete') and not code_id:
        raise HTTPException(status_code=400, detail="Promo code ID required")

    if action == 'update':
        updates = {
            'is_active': _field(payload, 'isActive', 'is_active'),
            'max_uses': _field(payload, 'maxUses', 'max_uses'),
            'max_uses_per_user': _field(payload, 'maxUsesPerUser', 'max_uses_per_user'),
            'expires_at': _field(payload, 'expiresAt', 'expires_at'),
            'starts_at': _field(payload, 'startsAt', 'starts_at'),
            'description': payload.get('description'),
        }
        if not promo_service.update(int(code_id), {k: v for k, v in updates.items() if v is not None}):
            raise HTTPException(status_code=404, detail="Promo code not found")
        return {"success": True}

    if action == 'delete':
        if not promo_service.delete(int(code_id)):
            raise HTTPException(status_code=404, detail="Promo code not found")
        return {"success": True}

    raise HTTPException(status_code=400, detail="Invalid action")


# --- Rate limits ---

@app.get("/api/admin/rate-limits")
async def admin_rate_limits(admin: str = Depends(require_admin)):
    result = metering.list_configs()
    return {"configs": result['configs'], "isUsingDefaults": result['is_using_defaults']}


@app.post("/api/admin/rate-limits")
async def admin_rate_limits_action(request: Request, admin: str = Depends(require_admin)):
    payload = await _json_body(request)
    action = payload.get('action')

    if action == 'initialize_defaults':
        inserted = metering.initialize_defaults()
        return {"success": True, "inserted": inserted}

    if action in ('create', 'update'):
        config_id = payload.get('id')
        if action == 'update' and not config_id:
            raise HTTPException(status_code=400, detail="Config ID required")
        data = {
            'endpoint': payload.get('endpoint'),
            'tier': payload.get('tier'),
            'requests_per_minute': _field(payload, 'requestsPerMinute', 'requests_per_minute'),
            'requests_per_hour': _field(payload, 'requestsPerHour', 'requests_per_hour'),
            'requests_per_day': _field(payload, 'requestsPerDay', 'requests_per_day'),
            'burst_limit': _field(payload, 'burstLimit', 'burst_limit'),
            'description': payload.get('description'),
            'is_active': _field(payload, 'isActive', 'is_active'),
        }
        try:
            config = metering.upsert_config(data, int(config_id) if config_id else None)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        if not config:
            raise HTTPException(status_code=404, detail="Config not found")
        return {"success": True, "config": config}

    if action == 'toggle':
        config_id = payload.get('id')
        if not config_id:
            raise HTTPException(status_code=400, detail="Config ID required")
        if not metering.toggle_config(int(config_id), bool(_field(payload, 'isActive', 'is_active'))):
            raise HTTPException(status_code=404, detail="Config not found")
        return {"success": True}

    if action == 'reset_user':
        removed = metering.reset_rate_limit(user_id=_field(payload, 'userId', 'user_id'),
                                            ip_address=_field(payload, 'ipAddress', 'ip_address'))
        return {"success": True, "removed": removed}

    raise HTTPException(status_code=400, detail="Invalid action")


@app.delete("/api/admin/rate-limits")
async def admin_delete_rate_limit(id: Optional[int] = None, admin: str = Depends(require_admin)):
    if not id:
        raise HTTPException(status_code=400, detail="Config ID required")
    if not metering.delete_config(id):
        raise HTTPException(status_code=404, detail="Config not found")
    return {"success": True}


# --- Contact messages ---

@app.get("/api/admin/messages")
async def admin_messages(page: int = 1, limit: int = 20, search: str = "", status: str = "",
                         sortOrder: str = "desc", admin: str = Depends(require_admin)):
    return contact_messages.list_messages(page=page, limit=limit, search=search, status=status,
                                          sort_order=sortOrder)


@app.patch("/api/admin/messages")
async def admin_update_message(request: Request, admin: str = Depends(require_admin)):
    payload = await _json_body(request)
    try:
        message = contact_messages.update_message(
            payload.get('id'), status=payload.get('status'),
            admin_reply=_field(payload, 'adminReply', 'admin_reply'))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not message:
        raise HTTPException(status_code=404, detail="Message not found")
    return {"success": True, "message": message}


@app.delete("/api/admin/messages")
async def admin_delete_message(id: Optional[int] = None, admin: str = Depends(require_admin)):
    if not id:
        raise HTTPException(status_code=400, detail="Message ID required")
    if not contact_messages.delete_message(id):
        raise HTTPException(status_code=404, detail="Message not found")
    return {"success": True}


# Startup: fill in provider keys that are not set in the environment
def _load_stored_api_keys():
    for service, client in PROVIDER_CLIENTS.items():
        if client.api_key:
            continue
        stored = db.get_api_key(service)
        if stored:
            client.api_key = stored
            logger.info(f"Using stored {service} API key")

_load_stored_api_keys()


# Entry point
def run_server():
    """Run the web server"""
    from core.config import ENABLE_HTTPS, CERT_FILE, KEY_FILE

    if ENABLE_HTTPS:
        if not CERT_FILE.exists() or not KEY_FILE.exists():
            print("❌ HTTPS enabled but certificates not found!")
            print(f"   Expected: {CERT_FILE} and {KEY_FILE}")
            return

        print(f"🔒 HTTPS server starting on https://{WEB_HOST}:{WEB_PORT}")
        uvicorn.run(
            app,
            host=WEB_HOST,
            port=WEB_PORT,
            ssl_certfile=str(CERT_FILE),
            ssl_keyfile=str(KEY_FILE),
            log_level="warning"
        )
    else:
        print(f"⚠️  HTTP server starting on http://{WEB_HOST}:{WEB_PORT}")
        print("⚠️  Enable HTTPS in .env for secure connections!")
        uvicorn.run(app, host=WEB_HOST, port=WEB_PORT, log_level="warning")

if __name__ == "__main__":
    run_server()
