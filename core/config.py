import os
from pathlib import Path
from dotenv import load_dotenv

# Base paths
BASE_DIR = Path(__file__).parent.parent  # Project root (parent of core/)
DATA_DIR = Path(__file__).parent / "data"  # Keep data in core/data
LOG_DIR = Path(__file__).parent / "logs"   # Keep logs in core/logs

# Ensure directories exist
DATA_DIR.mkdir(exist_ok=True)
LOG_DIR.mkdir(exist_ok=True)

# Load .env if exists
load_dotenv(BASE_DIR / ".env")

# Database
DB_PATH = Path(os.getenv("MARKETDESK_DB_PATH", str(DATA_DIR / "marketdesk.db")))

# Data provider keys
POLYGON_API_KEY = os.getenv("POLYGON_API_KEY", "")
FMP_API_KEY = os.getenv("FMP_API_KEY", "")
FRED_API_KEY = os.getenv("FRED_API_KEY", "")
OPENROUTER_API_KEY = os.getenv("OPENROUTER_API_KEY", "")

# Sent to OpenRouter as HTTP-Referer / X-Title
SITE_URL = os.getenv("SITE_URL", "http://localhost:8443")
SITE_NAME = os.getenv("SITE_NAME", "MarketDesk")

# Admin panel credentials (HTTP Basic or JWT cookie)
ADMIN_USERNAME = os.getenv("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "admin123")
ADMIN_JWT_SECRET = os.getenv("ADMIN_JWT_SECRET", "change-this-admin-secret-in-production")
ADMIN_TOKEN_HOURS = 24

# Bearer token expected by /api/cron/* (empty = cron endpoints disabled)
CRON_SECRET = os.getenv("CRON_SECRET", "")

# Upstream cache lifetimes in seconds
CACHE_TTL = {
    'quote': 5 * 60,
    'historical': 60 * 60,
    'profile': 24 * 60 * 60,
    'search': 15 * 60,
    'index': 60,
    'news': 15 * 60,
}

# Yahoo allows bursts, but stay well under its soft limit
YAHOO_MAX_REQUESTS = 100
YAHOO_WINDOW_SECONDS = 60

MARKET_INDICES = [
    {'symbol': '^GSPC', 'name': 'S&P 500'},
    {'symbol': '^DJI', 'name': 'Dow Jones'},
    {'symbol': '^IXIC', 'name': 'NASDAQ'},
    {'symbol': '^RUT', 'name': 'Russell 2000'},
    {'symbol': '^VIX', 'name': 'VIX'},
]

# Market proxy for beta, alpha and correlation
BENCHMARK_SYMBOL = '^GSPC'

# === Credits ===

# Credit cost per action
CREDIT_COSTS = {
    # Search and basic view
    'stock_search': 2,
    'real_time_quote': 3,

    # Analysis
    'technical_analysis': 10,
    'financial_report': 20,
    'ai_analysis': 25,
    'dcf_valuation': 35,
    'stock_comparison': 40,
    'portfolio_analysis': 50,

    # Other
    'news_fetch': 5,
    'watchlist_alert': 2,
    'chat_message': 10,
}

# Request ceilings per subscription tier
RATE_LIMITS = {
    'free': {
        'requests_per_minute': 10,
        'requests_per_hour': 50,
        'requests_per_day': 200,
        'monthly_credits': 50,
    },
    'premium': {
        'requests_per_minute': 30,
        'requests_per_hour': 200,
        'requests_per_day': 1000,
        'monthly_credits': 500,
    },
    'professional': {
        'requests_per_minute': 60,
        'requests_per_hour': 500,
        'requests_per_day': 3000,
        'monthly_credits': 2000,
    },
    'enterprise': {
        'requests_per_minute': 120,
        'requests_per_hour': 1000,
        'requests_per_day': 10000,
        'monthly_credits': -1,  # Unlimited
    },
}

SUBSCRIPTION_TIERS = list(RATE_LIMITS.keys())

RATE_LIMIT_WINDOWS = {
    'minute': 60,
    'hour': 60 * 60,
    'day': 24 * 60 * 60,
}

CREDIT_CONFIG = {
    'initial_free_credits': 20,
    'monthly_free_credits': {
        'free': 50,
        'premium': 200,
        'professional': 800,
        'enterprise': 2000,
    },
    'low_credit_threshold': 20,
    'max_credit_balance': 100000,
}

DEFAULT_CREDIT_PACKAGES = [
    {'name': 'Starter', 'description': '100 credits to get started',
     'credits': 100, 'bonus_credits': 0, 'price': 4.99, 'is_popular': False},
    {'name': 'Basic', 'description': '250 credits + 25 bonus',
     'credits': 250, 'bonus_credits': 25, 'price': 9.99, 'is_popular': False},
    {'name': 'Pro', 'description': '600 credits + 100 bonus',
     'credits': 600, 'bonus_credits': 100, 'price': 19.99, 'is_popular': True},
    {'name': 'Business', 'description': '1,500 credits + 300 bonus',
     'credits': 1500, 'bonus_credits': 300, 'price': 39.99, 'is_popular': False},
    {'name': 'Enterprise', 'description': '4,000 credits + 1,000 bonus',
     'credits': 4000, 'bonus_credits': 1000, 'price': 99.99, 'is_popular': False},
]

# Path prefix -> credit action. First match wins.
CREDIT_REQUIRED_ENDPOINTS = {
    '/api/stocks/search': 'stock_search',
    '/api/stocks/quote': 'real_time_quote',
    '/api/stocks/financials': 'financial_report',
    '/api/stock/technical': 'technical_analysis',
    '/api/stock/dcf': 'dcf_valuation',
    '/api/stock/compare': 'stock_comparison',
    '/api/chat': 'chat_message',
    '/api/market/news': 'news_fetch',
    '/api/stock/analysis': 'ai_analysis',
    '/api/portfolio/analysis': 'portfolio_analysis',
}

RATE_LIMIT_EXEMPT_ENDPOINTS = [
    '/api/webhooks',
    '/api/admin',
    '/api/health',
    '/api/auth',
    '/api/cron',
]

# Per-endpoint limits shown in the admin panel (tier None = all tiers)
DEFAULT_RATE_LIMIT_CONFIGS = [
    {'endpoint': '/api/chat', 'tier': None, 'requests_per_minute': 20, 'requests_per_hour': 200,
     'requests_per_day': 1000, 'burst_limit': 5, 'description': 'AI Chat API'},
    {'endpoint': '/api/stocks/quote', 'tier': None, 'requests_per_minute': 60, 'requests_per_hour': 1000,
     'requests_per_day': 10000, 'burst_limit': 10, 'description': 'Stock Quotes'},
    {'endpoint': '/api/stocks/search', 'tier': None, 'requests_per_minute': 30, 'requests_per_hour': 500,
     'requests_per_day': 5000, 'burst_limit': 5, 'description': 'Stock Search'},
    {'endpoint': '/api/market/*', 'tier': None, 'requests_per_minute': 60, 'requests_per_hour': 1000,
     'requests_per_day': 10000, 'burst_limit': 10, 'description': 'Market Data'},
    {'endpoint': '/api/stocks/historical/*', 'tier': None, 'requests_per_minute': 30,
     'requests_per_hour': 300, 'requests_per_day': 3000, 'burst_limit': 5,
     'description': 'Historical Data'},
    {'endpoint': '/api/chat', 'tier': 'free', 'requests_per_minute': 10, 'requests_per_hour': 50,
     'requests_per_day': 200, 'burst_limit': 3, 'description': 'AI Chat - Free'},
    {'endpoint': '/api/stocks/quote', 'tier': 'free', 'requests_per_minute': 30, 'requests_per_hour': 300,
     'requests_per_day': 3000, 'burst_limit': 5, 'description': 'Quotes - Free'},
    {'endpoint': '/api/chat', 'tier': 'premium', 'requests_per_minute': 30, 'requests_per_hour': 300,
     'requests_per_day': 2000, 'burst_limit': 10, 'description': 'AI Chat - Premium'},
    {'endpoint': '/api/stocks/quote', 'tier': 'premium', 'requests_per_minute': 100,
     'requests_per_hour': 2000, 'requests_per_day': 20000, 'burst_limit': 20,
     'description': 'Quotes - Premium'},
    {'endpoint': '/api/chat', 'tier': 'professional', 'requests_per_minute': 60, 'requests_per_hour': 600,
     'requests_per_day': 5000, 'burst_limit': 20, 'description': 'AI Chat - Pro'},
    {'endpoint': '/api/stocks/quote', 'tier': 'professional', 'requests_per_minute': 200,
     'requests_per_hour': 5000, 'requests_per_day': 50000, 'burst_limit': 50,
     'description': 'Quotes - Pro'},
]

# Retention windows used by the cleanup job
CREDIT_TRANSACTION_RETENTION_DAYS = 180
RATE_LIMIT_RETENTION_DAYS = 7

MAX_ACTIVE_STOCK_ALERTS = 20

# Default Settings (can be overridden in DB)
DEFAULT_SETTINGS = {
    "development_mode": False,
    "maintenance_mode": False,
    "signup_enabled": True,
    "default_ai_model": "anthropic/claude-sonnet-4.5",
    "alert_dedupe_hours": 24,
    "auth_max_failed_attempts": 5,
    "auth_attempt_window_minutes": 15,
    "auth_lockout_minutes": 15,
}

# Web Server
WEB_HOST = os.getenv("WEB_HOST", "0.0.0.0")
WEB_PORT = int(os.getenv("WEB_PORT", "8443"))

# HTTPS Configuration
ENABLE_HTTPS = os.getenv("ENABLE_HTTPS", "false").lower() == "true"
CERT_FILE = BASE_DIR / "certs" / "cert.pem"
KEY_FILE = BASE_DIR / "certs" / "key.pem"
