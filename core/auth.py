"""
Authentication for MarketDesk
User accounts use bcrypt passwords and server-side sessions (cookie `session_id`).
The admin panel uses fixed credentials from the environment, either over HTTP Basic
or as a signed JWT in the `admin_session` cookie.
"""
import bcrypt
import logging
import secrets
from datetime import datetime, timedelta
from typing import Optional, Dict
from fastapi import Request, HTTPException, Depends, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from jose import JWTError, jwt
from core.config import (
    ADMIN_USERNAME, ADMIN_PASSWORD, ADMIN_JWT_SECRET, ADMIN_TOKEN_HOURS, CRON_SECRET,
)
from core.database import db

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
SESSION_COOKIE = "session_id"
ADMIN_COOKIE = "admin_session"


class AuthError(Exception):
    """Raised when signup or login cannot proceed."""


class AuthManager:
    def __init__(self):
        self.session_timeout = timedelta(hours=24)

    def hash_password(self, password: str) -> str:
        """Hash a password using bcrypt"""
        # Encode password to bytes and truncate to 72 bytes max (bcrypt limit)
        password_bytes = password.encode('utf-8')[:72]
        hashed = bcrypt.hashpw(password_bytes, bcrypt.gensalt())
        return hashed.decode('utf-8')

    def verify_password(self, plain: str, hashed: str) -> bool:
        """Verify a password against its hash"""
        try:
            password_bytes = plain.encode('utf-8')[:72]
            hashed_bytes = hashed.encode('utf-8')
            return bcrypt.checkpw(password_bytes, hashed_bytes)
        except Exception as e:
            logger.error(f"Password verification error: {e}")
            return False

    def create_user(self, email: str, password: str, display_name: str = None) -> Dict:
        """Register a new account. Raises AuthError on bad input or duplicate email."""
        email = (email or '').strip().lower()
        if '@' not in email or len(email) > 254:
            raise AuthError("Invalid email address")
        if not password or len(password) < 8:
            raise AuthError("Password must be at least 8 characters")
        if db.get_user_by_email(email):
            raise AuthError("An account with this email already exists")

        user_id = db.create_user(email, self.hash_password(password), display_name)
        logger.info(f"User created: {user_id}")
        return db.get_user(user_id)

    def authenticate(self, email: str, password: str) -> Optional[Dict]:
        """Return the user row when the credentials match an active account."""
        user = db.get_user_by_email(email)
        if not user or not user['is_active']:
            return None
        if not self.verify_password(password, user['password_hash']):
            return None
        return user

    def create_session(self, user_id: int, ip_address: str = None, user_agent: str = None) -> str:
        """Create a new session and return session ID"""
        session_id = secrets.token_urlsafe(32)
        now = datetime.now()
        db.create_user_session(
            session_id=session_id,
            user_id=user_id,
            created_at=now.isoformat(),
            last_activity=now.isoformat(),
            expires_at=(now + self.session_timeout).isoformat(),
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return session_id

    def validate_session(self, session_id: str) -> Optional[int]:
        """Validate a session and return its user id if valid"""
        if not session_id:
            return None

        session = db.get_user_session(session_id)
        if not session:
            return None

        try:
            expires_at = datetime.fromisoformat(session['expires_at'])
        except ValueError:
            db.delete_user_session(session_id)
            return None

        if datetime.now() > expires_at:
            db.delete_user_session(session_id)
            return None

        # Sliding expiry
        now = datetime.now()
        db.touch_user_session(
            session_id=session_id,
            last_activity=now.isoformat(),
            expires_at=(now + self.session_timeout).isoformat(),
        )
        return session['user_id']

    def destroy_session(self, session_id: str):
        """Destroy a session (logout)"""
        if session_id:
            db.delete_user_session(session_id)

    def get_session_id(self, request: Request) -> Optional[str]:
        session_id = request.cookies.get(SESSION_COOKIE)
        if session_id:
            return session_id
        header = request.headers.get("authorization", "")
        if header.lower().startswith("bearer "):
            return header[7:].strip() or None
        return None

    def get_current_user(self, request: Request) -> Optional[Dict]:
        """Get current authenticated user from request"""
        user_id = self.validate_session(self.get_session_id(request))
        if user_id is None:
            return None
        user = db.get_user(user_id)
        if not user or not user['is_active']:
            return None
        return user


class AdminAuth:
    """Single admin account configured through ADMIN_USERNAME / ADMIN_PASSWORD."""

    def __init__(self, username: str = ADMIN_USERNAME, password: str = ADMIN_PASSWORD,
                 secret: str = ADMIN_JWT_SECRET, token_hours: int = ADMIN_TOKEN_HOURS):
        self.username = username
        self.password = password
        self.secret = secret
        self.token_hours = token_hours

    def validate_credentials(self, username: str, password: str) -> bool:
        correct_username = secrets.compare_digest((username or '').encode(), self.username.encode())
        correct_password = secrets.compare_digest((password or '').encode(), self.password.encode())
        return correct_username and correct_password

    def create_token(self, username: str) -> str:
        expire = datetime.utcnow() + timedelta(hours=self.token_hours)
        to_encode = {
            "sub": username,
            "role": "admin",
            "logged_in_at": datetime.utcnow().isoformat(),
            "exp": expire,
        }
        return jwt.encode(to_encode, self.secret, algorithm=ALGORITHM)

    def verify_token(self, token: str) -> Optional[str]:
        """Return the admin username carried by a valid token, else None."""
        if not token:
            return None
        try:
            payload = jwt.decode(token, self.secret, algorithms=[ALGORITHM])
        except JWTError as e:
            logger.debug(f"Admin token rejected: {e}")
            return None
        if payload.get("role") != "admin" or payload.get("sub") != self.username:
            return None
        return payload["sub"]

    def get_admin(self, request: Request,
                  credentials: Optional[HTTPBasicCredentials] = None) -> Optional[str]:
        username = self.verify_token(request.cookies.get(ADMIN_COOKIE))
        if username:
            return username
        if credentials and self.validate_credentials(credentials.username, credentials.password):
            return credentials.username
        return None


auth_manager = AuthManager()
admin_auth = AdminAuth()
basic_security = HTTPBasic(auto_error=False)


# ==================== FastAPI dependencies ====================

def require_user(request: Request) -> Dict:
    """Dependency: the signed-in user, or 401."""
    user = auth_manager.get_current_user(request)
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    request.state.user = user
    return user


def require_admin(request: Request,
                  credentials: Optional[HTTPBasicCredentials] = Depends(basic_security)) -> str:
    """Dependency: admin username from the admin cookie or HTTP Basic, or 401."""
    username = admin_auth.get_admin(request, credentials)
    if not username:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Admin authentication required",
            headers={"WWW-Authenticate": "Basic"},
        )
    return username


def require_cron(request: Request):
    """Dependency: `Authorization: Bearer <CRON_SECRET>`. Disabled when no secret is configured."""
    header = request.headers.get("authorization", "")
    token = header[7:].strip() if header.lower().startswith("bearer ") else ""
    if not CRON_SECRET or not secrets.compare_digest(token.encode(), CRON_SECRET.encode()):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return True
