"""
SQLite Database Manager for MarketDesk
Handles settings, users and sessions, provider keys, and the schema for portfolios,
alerts, watchlists, credits, promo codes, rate limiting and contact messages.
"""
import sqlite3
import json
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional, List, Dict, Any
from core.config import DB_PATH, DEFAULT_SETTINGS
from core.encryption import encryption
import logging
import time
from contextlib import contextmanager


def now_iso() -> str:
    """Timestamp format used for every TEXT date column."""
    return datetime.now().isoformat()


class Database:
    def __init__(self, db_path: Path = DB_PATH):
        self.db_path = db_path
        self.logger = logging.getLogger(__name__)
        self.max_retries = 3
        self.retry_delay = 0.5  # seconds

        # Ensure database directory exists
        try:
            db_path.parent.mkdir(parents=True, exist_ok=True)
        except Exception as e:
            self.logger.error(f"Failed to create database directory: {e}")
            raise

        self._init_db()

    def _get_conn(self, timeout: float = 10.0) -> sqlite3.Connection:
        """Get database connection with retry logic and proper configuration"""
        for attempt in range(self.max_retries):
            try:
                conn = sqlite3.connect(
                    self.db_path,
                    timeout=timeout,
                    check_same_thread=False
                )
                conn.row_factory = sqlite3.Row

                # Enable foreign keys
                conn.execute("PRAGMA foreign_keys = ON")

                # Set journal mode to WAL for better concurrency
                conn.execute("PRAGMA journal_mode = WAL")

                # Set synchronous mode for better performance with WAL
                conn.execute("PRAGMA synchronous = NORMAL")

                return conn

            except sqlite3.OperationalError as e:
                if "database is locked" in str(e):
                    if attempt < self.max_retries - 1:
                        wait_time = self.retry_delay * (2 ** attempt)
                        self.logger.warning(f"Database locked, retrying in {wait_time}s (attempt {attempt + 1}/{self.max_retries})")
                        time.sleep(wait_time)
                        continue
                    else:
                        self.logger.error("Database locked after all retry attempts")
                        raise
                else:
                    self.logger.error(f"Database connection error: {e}")
                    raise

            except Exception as e:
                self.logger.error(f"Unexpected error connecting to database: {e}", exc_info=True)
                raise

        raise sqlite3.OperationalError("Failed to connect to database after all retries")

    @contextmanager
    def _get_transaction(self):
        """Context manager for database transactions with automatic rollback on error"""
        conn = None
        try:
            conn = self._get_conn()
            yield conn
            conn.commit()
        except Exception as e:
            if conn:
                conn.rollback()
                self.logger.error(f"Transaction rolled back due to error: {e}")
            raise
        finally:
            if conn:
                conn.close()

    def _init_db(self):
        """Initialize database tables"""
        conn = self._get_conn()
        cursor = conn.cursor()

        # Settings table (key-value store)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value TEXT,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        # Provider API keys (Fernet-encrypted)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS api_keys (
                service TEXT PRIMARY KEY,
                api_key TEXT,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        # === Users & sessions ===
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                email TEXT UNIQUE NOT NULL,
                password_hash TEXT NOT NULL,
                display_name TEXT,
                subscription_tier TEXT NOT NULL DEFAULT 'free',
                is_active INTEGER NOT NULL DEFAULT 1,
                last_login TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS user_sessions (
                session_id TEXT PRIMARY KEY,
                user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                created_at TEXT NOT NULL,
                last_activity TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                ip_address TEXT,
                user_agent TEXT
            )
        """)
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_sessions_user ON user_sessions(user_id)")

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS login_failures (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                email TEXT,
                ip_address TEXT,
                attempted_at TEXT NOT NULL
            )
        """)

        # === Watchlists ===
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS watchlists (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                name TEXT NOT NULL,
                is_default INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_watchlists_user ON watchlists(user_id)")

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS watchlist_items (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                watchlist_id INTEGER NOT NULL REFERENCES watchlists(id) ON DELETE CASCADE,
                symbol TEXT NOT NULL,
                notes TEXT,
                added_at TEXT NOT NULL,
                UNIQUE(watchlist_id, symbol)
            )
        """)

        # === Stock alerts ===
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS stock_alerts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                symbol TEXT NOT NULL,
                condition TEXT NOT NULL,
                target_price REAL NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1,
                last_price REAL,
                triggered_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_stock_alerts_active ON stock_alerts(is_active, symbol)")

        # === Portfolios ===
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS portfolios (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                name TEXT NOT NULL,
                description TEXT,
                currency TEXT NOT NULL DEFAULT 'USD',
                is_default INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS portfolio_holdings (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                portfolio_id INTEGER NOT NULL REFERENCES portfolios(id) ON DELETE CASCADE,
                symbol TEXT NOT NULL,
                quantity REAL NOT NULL,
                avg_buy_price REAL NOT NULL,
                notes TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE(portfolio_id, symbol)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS portfolio_transactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                portfolio_id INTEGER NOT NULL REFERENCES portfolios(id) ON DELETE CASCADE,
                holding_id INTEGER REFERENCES portfolio_holdings(id) ON DELETE SET NULL,
                symbol TEXT NOT NULL,
                type TEXT NOT NULL,
                quantity REAL NOT NULL,
                price REAL NOT NULL,
                total_amount REAL NOT NULL,
                fees REAL DEFAULT 0,
                notes TEXT,
                executed_at TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS portfolio_snapshots (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                portfolio_id INTEGER NOT NULL REFERENCES portfolios(id) ON DELETE CASCADE,
                snapshot_date TEXT NOT NULL,
                total_value REAL NOT NULL,
                total_cost REAL NOT NULL,
                total_gain_loss REAL NOT NULL,
                total_gain_loss_percent REAL NOT NULL,
                day_change REAL DEFAULT 0,
                created_at TEXT NOT NULL
            )
        """)
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_snapshots_portfolio ON portfolio_snapshots(portfolio_id, snapshot_date)")

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS portfolio_alerts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                portfolio_id INTEGER REFERENCES portfolios(id) ON DELETE CASCADE,
                holding_id INTEGER REFERENCES portfolio_holdings(id) ON DELETE CASCADE,
                symbol TEXT,
                alert_type TEXT NOT NULL,
                condition_value REAL,
                condition_percent REAL,
                message TEXT,
                is_active INTEGER NOT NULL DEFAULT 1,
                last_triggered_at TEXT,
                trigger_count INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        # Delivered alert notifications, deduplicated by alert_hash
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS notifications (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER REFERENCES users(id) ON DELETE CASCADE,
                type TEXT NOT NULL,
                title TEXT,
                message TEXT,
                alert_hash TEXT,
                metadata TEXT,
                is_read INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            )
        """)
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_notifications_hash ON notifications(alert_hash, created_at)")

        # === Credits ===
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS user_credits (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER UNIQUE NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                balance REAL NOT NULL DEFAULT 0,
                lifetime_credits REAL NOT NULL DEFAULT 0,
                free_credits_used REAL NOT NULL DEFAULT 0,
                last_free_credits_reset TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS credit_transactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                amount REAL NOT NULL,
                type TEXT NOT NULL,
                action TEXT,
                description TEXT,
                balance_before REAL,
                balance_after REAL,
                metadata TEXT,
                created_at TEXT NOT NULL
            )
        """)
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_credit_tx_user ON credit_transactions(user_id, created_at)")

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS credit_packages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                description TEXT,
                credits INTEGER NOT NULL,
                bonus_credits INTEGER NOT NULL DEFAULT 0,
                price REAL NOT NULL,
                is_popular INTEGER NOT NULL DEFAULT 0,
                is_active INTEGER NOT NULL DEFAULT 1,
                sort_order INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        # === Rate limiting ===
        # window_start/window_end are epoch seconds
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS rate_limit_tracking (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER,
                ip_address TEXT,
                endpoint TEXT NOT NULL,
                request_count INTEGER NOT NULL DEFAULT 1,
                window_start REAL NOT NULL,
                window_end REAL NOT NULL
            )
        """)
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_rl_user ON rate_limit_tracking(user_id, window_start)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_rl_ip ON rate_limit_tracking(ip_address, window_start)")

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS rate_limit_config (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                endpoint TEXT NOT NULL,
                tier TEXT,
                requests_per_minute INTEGER NOT NULL,
                requests_per_hour INTEGER NOT NULL,
                requests_per_day INTEGER NOT NULL,
                burst_limit INTEGER,
                description TEXT,
                is_active INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        # === Promo codes ===
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS promo_codes (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                code TEXT UNIQUE NOT NULL,
                type TEXT NOT NULL,
                credits REAL,
                discount_percent REAL,
                discount_amount REAL,
                trial_days INTEGER,
                max_uses INTEGER,
                used_count INTEGER NOT NULL DEFAULT 0,
                max_uses_per_user INTEGER NOT NULL DEFAULT 1,
                min_purchase_amount REAL,
                applicable_packages TEXT,
                starts_at TEXT,
                expires_at TEXT,
                is_active INTEGER NOT NULL DEFAULT 1,
                description TEXT,
                created_by TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS promo_code_usage (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                promo_code_id INTEGER NOT NULL REFERENCES promo_codes(id) ON DELETE CASCADE,
                user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                credits_awarded REAL,
                discount_applied REAL,
                purchase_id TEXT,
                metadata TEXT,
                used_at TEXT NOT NULL
            )
        """)

        # === Contact messages ===
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS contact_messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                email TEXT NOT NULL,
                subject TEXT,
                message TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'new',
                ip_address TEXT,
                user_agent TEXT,
                admin_reply TEXT,
                replied_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        # === API cost tracking (LLM usage) ===
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS api_cost_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                api TEXT NOT NULL,
                model TEXT,
                user_id INTEGER,
                input_tokens INTEGER DEFAULT 0,
                output_tokens INTEGER DEFAULT 0,
                estimated_cost REAL DEFAULT 0,
                month TEXT NOT NULL,
                date TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)

        # Migrate stock_alerts: last_price was added after the first release
        cursor.execute("PRAGMA table_info(stock_alerts)")
        alert_cols = {row['name'] for row in cursor.fetchall()}
        if 'last_price' not in alert_cols:
            cursor.execute("ALTER TABLE stock_alerts ADD COLUMN last_price REAL")

        conn.commit()
        conn.close()

    # === Helper Methods ===

    def query(self, sql: str, params: tuple = ()) -> List[Dict]:
        """Execute SELECT query and return list of dicts"""
        try:
            conn = self._get_conn()
            try:
                cursor = conn.cursor()
                cursor.execute(sql, params)
                rows = cursor.fetchall()
                return [dict(row) for row in rows]
            finally:
                conn.close()
        except Exception as e:
            self.logger.error(f"Query error: {e}", exc_info=True)
            return []

    def query_one(self, sql: str, params: tuple = ()) -> Optional[Dict]:
        """Execute SELECT query and return single dict or None"""
        try:
            conn = self._get_conn()
            try:
                cursor = conn.cursor()
                cursor.execute(sql, params)
                row = cursor.fetchone()
                return dict(row) if row else None
            finally:
                conn.close()
        except Exception as e:
            self.logger.error(f"Query one error: {e}", exc_info=True)
            return None

    def scalar(self, sql: str, params: tuple = (), default: Any = 0) -> Any:
        """First column of the first row, or default."""
        row = self.query_one(sql, params)
        if not row:
            return default
        value = next(iter(row.values()))
        return default if value is None else value

    def execute(self, sql: str, params: tuple = ()):
        """Execute INSERT/UPDATE/DELETE query"""
        try:
            with self._get_transaction() as conn:
                cursor = conn.cursor()
                cursor.execute(sql, params)
                return cursor
        except Exception as e:
            self.logger.error(f"Execute error: {e}", exc_info=True)
            raise

    def insert(self, sql: str, params: tuple = ()) -> int:
        """Execute an INSERT and return the new row id"""
        return self.execute(sql, params).lastrowid

    # === Settings ===

    def get_setting(self, key: str) -> Any:
        """Get setting with error handling and default fallback"""
        if not key or not isinstance(key, str):
            self.logger.error("Invalid setting key")
            return None

        try:
            conn = self._get_conn()
            try:
                cursor = conn.cursor()
                cursor.execute("SELECT value FROM settings WHERE key = ?", (key,))
                row = cursor.fetchone()

                if row:
                    try:
                        return json.loads(row['value'])
                    except json.JSONDecodeError as e:
                        self.logger.error(f"Invalid JSON for setting {key}: {e}")
                        return DEFAULT_SETTINGS.get(key)

                return DEFAULT_SETTINGS.get(key)

            finally:
                conn.close()

        except Exception as e:
            self.logger.error(f"Error retrieving setting {key}: {e}", exc_info=True)
            return DEFAULT_SETTINGS.get(key)

    def set_setting(self, key: str, value: Any):
        """Set setting with validation and error handling"""
        if not key or not isinstance(key, str):
            self.logger.error("Invalid setting key")
            raise ValueError("Setting key must be a non-empty string")

        try:
            json_value = json.dumps(value)
        except (TypeError, ValueError) as e:
            self.logger.error(f"Failed to serialize value for {key}: {e}")
            raise ValueError(f"Value for {key} cannot be serialized to JSON")

        with self._get_transaction() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO settings (key, value, updated_at)
                VALUES (?, ?, ?)
            """, (key, json_value, now_iso()))

        self.logger.info(f"Setting updated: {key}")

    def get_all_settings(self) -> Dict[str, Any]:
        settings = dict(DEFAULT_SETTINGS)
        for row in self.query("SELECT key, value FROM settings"):
            try:
                settings[row['key']] = json.loads(row['value'])
            except json.JSONDecodeError:
                continue
        return settings

    # === API Keys ===

    def get_api_key(self, service: str) -> Optional[str]:
        row = self.query_one("SELECT api_key FROM api_keys WHERE service = ?", (service,))
        if row and row['api_key']:
            return encryption.decrypt(row['api_key']) or None
        return None

    def set_api_key(self, service: str, api_key: str):
        self.execute("""
            INSERT OR REPLACE INTO api_keys (service, api_key, updated_at)
            VALUES (?, ?, ?)
        """, (service, encryption.encrypt(api_key), now_iso()))

    def delete_api_key(self, service: str):
        self.execute("DELETE FROM api_keys WHERE service = ?", (service,))

    # === Users ===

    def create_user(self, email: str, password_hash: str, display_name: str = None,
                    subscription_tier: str = 'free') -> int:
        now = now_iso()
        return self.insert("""
            INSERT INTO users (email, password_hash, display_name, subscription_tier,
                               created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (email.strip().lower(), password_hash, display_name, subscription_tier, now, now))

    def get_user(self, user_id: int) -> Optional[Dict]:
        return self.query_one("SELECT * FROM users WHERE id = ?", (user_id,))

    def get_user_by_email(self, email: str) -> Optional[Dict]:
        return self.query_one("SELECT * FROM users WHERE email = ?", ((email or '').strip().lower(),))

    def update_last_login(self, user_id: int):
        self.execute("UPDATE users SET last_login = ? WHERE id = ?", (now_iso(), user_id))

    def set_subscription_tier(self, user_id: int, tier: str):
        self.execute("UPDATE users SET subscription_tier = ?, updated_at = ? WHERE id = ?",
                     (tier, now_iso(), user_id))

    # === Sessions ===

    def create_user_session(self, session_id: str, user_id: int,
                            created_at: str, last_activity: str, expires_at: str,
                            ip_address: str = None, user_agent: str = None):
        """Persist a user session."""
        self.execute("""
            INSERT OR REPLACE INTO user_sessions
            (session_id, user_id, created_at, last_activity, expires_at, ip_address, user_agent)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (session_id, user_id, created_at, last_activity, expires_at, ip_address, user_agent))

    def get_user_session(self, session_id: str) -> Optional[Dict]:
        return self.query_one("SELECT * FROM user_sessions WHERE session_id = ?", (session_id,))

    def touch_user_session(self, session_id: str, last_activity: str, expires_at: str):
        """Refresh session activity + expiry (sliding timeout)."""
        self.execute("""
            UPDATE user_sessions
            SET last_activity = ?, expires_at = ?
            WHERE session_id = ?
        """, (last_activity, expires_at, session_id))

    def delete_user_session(self, session_id: str):
        self.execute("DELETE FROM user_sessions WHERE session_id = ?", (session_id,))

    def cleanup_expired_sessions(self) -> int:
        """Remove expired sessions."""
        return self.execute("DELETE FROM user_sessions WHERE expires_at <= ?", (now_iso(),)).rowcount

    # === Login failures (backoff policy) ===

    def record_login_failure(self, email: str, ip_address: str):
        self.execute("""
            INSERT INTO login_failures (email, ip_address, attempted_at)
            VALUES (?, ?, ?)
        """, ((email or '').strip().lower(), ip_address or '', now_iso()))

    def clear_login_failures(self, email: str) -> int:
        """Clear failures after successful login."""
        return self.execute("DELETE FROM login_failures WHERE email = ?",
                            ((email or '').strip().lower(),)).rowcount

    def cleanup_old_login_failures(self, days: int = 30) -> int:
        cutoff = (datetime.now() - timedelta(days=max(1, days))).isoformat()
        return self.execute("DELETE FROM login_failures WHERE attempted_at < ?", (cutoff,)).rowcount

    def get_login_lockout_info(self, email: str, ip_address: str) -> Dict[str, Any]:
        """Check if email/IP is currently lockout-blocked."""
        max_attempts = int(self.get_setting('auth_max_failed_attempts') or 5)
        window_minutes = int(self.get_setting('auth_attempt_window_minutes') or 15)
        lockout_minutes = int(self.get_setting('auth_lockout_minutes') or 15)

        now = datetime.now()
        window_start = (now - timedelta(minutes=window_minutes)).isoformat()

        row = self.query_one("""
            SELECT COUNT(*) as failures, MAX(attempted_at) as last_attempt
            FROM login_failures
            WHERE attempted_at >= ?
              AND (email = ? OR ip_address = ?)
        """, (window_start, (email or '').strip().lower(), ip_address or ''))

        failures = int(row['failures'] or 0) if row else 0
        last_attempt_raw = row['last_attempt'] if row else None
        unlocked = {
            'locked': False,
            'failures': failures,
            'remaining_seconds': 0,
            'max_attempts': max_attempts,
        }

        if failures < max_attempts or not last_attempt_raw:
            return unlocked

        try:
            last_attempt = datetime.fromisoformat(last_attempt_raw)
        except ValueError:
            return unlocked

        unlock_at = last_attempt + timedelta(minutes=lockout_minutes)
        if now >= unlock_at:
            return unlocked

        return {
            'locked': True,
            'failures': failures,
            'remaining_seconds': int((unlock_at - now).total_seconds()),
            'max_attempts': max_attempts,
        }

    # === API Cost Tracking ===

    def log_api_cost(self, api: str, model: str, input_tokens: int,
                     output_tokens: int, estimated_cost: float, user_id: int = None):
        """Log an API request with estimated cost."""
        now = datetime.now()
        try:
            self.execute("""
                INSERT INTO api_cost_log (api, model, user_id, input_tokens, output_tokens,
                                          estimated_cost, month, date, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (api, model, user_id, input_tokens, output_tokens, estimated_cost,
                  now.strftime('%Y-%m'), now.strftime('%Y-%m-%d'), now.isoformat()))
        except Exception as e:
            self.logger.error(f"Error logging API cost: {e}")

    def get_api_spending(self, api: str, month: str) -> float:
        """Get total USD spending for an API in a given month."""
        return float(self.scalar("""
            SELECT COALESCE(SUM(estimated_cost), 0) as total
            FROM api_cost_log WHERE api = ? AND month = ?
        """, (api, month), 0.0))

    def get_api_request_count(self, api: str, date: str) -> int:
        """Get number of API requests on a given date."""
        return int(self.scalar("""
            SELECT COUNT(*) as cnt FROM api_cost_log
            WHERE api = ? AND date = ?
        """, (api, date), 0))


db = Database()
