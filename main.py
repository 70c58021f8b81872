#!/usr/bin/env python3
"""
MarketDesk - Main Entry Point
Prints a provider status check and serves the JSON API.
"""
import signal
import sys

from core.config import (
    WEB_HOST, WEB_PORT, DB_PATH, POLYGON_API_KEY, FMP_API_KEY, FRED_API_KEY,
    OPENROUTER_API_KEY, CRON_SECRET, ADMIN_PASSWORD,
)
from core.database import db


def print_banner():
    print("""
╔══════════════════════════════════════════════════════════════╗
║                                                              ║
║   📈 MarketDesk                                              ║
║   ─────────────────────────────────────────────────────────  ║
║   Market data, portfolios and research API                   ║
║                                                              ║
╚══════════════════════════════════════════════════════════════╝
    """)


def signal_handler(sig, frame):
    """Handle shutdown signals"""
    print("\n\n⏹️ Shutting down...")
    print("👋 Goodbye!")
    sys.exit(0)


def _status(configured: bool) -> str:
    return '✅ Configured' if configured else '❌ Not configured'


def main():
    print_banner()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    print("📊 Status Check:")
    print("   ├─ Yahoo Finance: ✅ No key required")
    print(f"   ├─ Polygon.io: {_status(bool(POLYGON_API_KEY))}")
    print(f"   ├─ FMP: {_status(bool(FMP_API_KEY))}")
    print(f"   ├─ FRED: {_status(bool(FRED_API_KEY))}")
    print(f"   ├─ OpenRouter: {_status(bool(OPENROUTER_API_KEY))}")
    print(f"   ├─ Cron endpoints: {'✅ Enabled' if CRON_SECRET else '❌ Disabled (CRON_SECRET not set)'}")
    print(f"   └─ Database: {DB_PATH}")
    print()

    if ADMIN_PASSWORD == "admin123":
        print("⚠️  Admin panel is using the default password. Set ADMIN_PASSWORD in .env!")
        print()

    from core.credits import credit_service
    seeded = credit_service.seed_default_packages()
    if seeded:
        print(f"💳 Seeded {seeded} default credit packages")
        print()

    print("🌐 Starting API server...")
    print(f"   └─ http://{WEB_HOST}:{WEB_PORT}/api/health")
    print()
    print("=" * 60)
    print("   Press Ctrl+C to stop")
    print("=" * 60)
    print()

    import uvicorn
    from app import app
    from core.config import ENABLE_HTTPS, CERT_FILE, KEY_FILE

    # Check if dev mode is enabled for verbose logging
    dev_mode = db.get_setting('development_mode') or False
    uvicorn_log_level = "debug" if dev_mode else "warning"

    if ENABLE_HTTPS:
        if not CERT_FILE.exists() or not KEY_FILE.exists():
            print("❌ HTTPS enabled but certificates not found!")
            print(f"   Expected: {CERT_FILE} and {KEY_FILE}")
            sys.exit(1)

        uvicorn.run(
            app,
            host=WEB_HOST,
            port=WEB_PORT,
            ssl_certfile=str(CERT_FILE),
            ssl_keyfile=str(KEY_FILE),
            log_level=uvicorn_log_level
        )
    else:
        uvicorn.run(
            app,
            host=WEB_HOST,
            port=WEB_PORT,
            log_level=uvicorn_log_level
        )


if __name__ == "__main__":
    main()
