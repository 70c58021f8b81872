"""Rate limiting: slowapi for inbound HTTP, a sliding window for outbound provider calls"""
import threading
import time
from typing import List, Optional
from slowapi import Limiter
from slowapi.util import get_remote_address
from fastapi import Request


def get_client_identifier(request: Request) -> str:
    """Use session ID if authenticated, otherwise IP"""
    session_id = request.cookies.get("session_id")
    if session_id:
        return f"session:{session_id}"
    return f"ip:{get_remote_address(request)}"


limiter = Limiter(
    key_func=get_client_identifier,
    default_limits=["100/hour"],  # Default limit for all endpoints
    storage_uri="memory://",
)


class RateLimiter:
    """
    Sliding-window limiter for calls to an upstream API.
    Keeps the timestamps of recorded calls and prunes anything older than the window.
    """

    def __init__(self, max_requests: int = 100, window_seconds: float = 60):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._requests: List[float] = []
        self._lock = threading.Lock()

    def _prune(self, now: float):
        cutoff = now - self.window_seconds
        self._requests = [t for t in self._requests if t > cutoff]

    def can_make_request(self) -> bool:
        with self._lock:
            self._prune(time.time())
            return len(self._requests) < self.max_requests

    def record_request(self):
        with self._lock:
            self._requests.append(time.time())

    def _try_acquire(self) -> bool:
        with self._lock:
            now = time.time()
            self._prune(now)
            if len(self._requests) < self.max_requests:
                self._requests.append(now)
                return True
            return False

    def wait_for_slot(self, poll_interval: float = 0.1, timeout: Optional[float] = None) -> bool:
        """Block until a slot is free and claim it. False if timeout elapses first."""
        deadline = None if timeout is None else time.time() + timeout
        while not self._try_acquire():
            if deadline is not None and time.time() >= deadline:
                return False
            time.sleep(poll_interval)
        return True

    def remaining(self) -> int:
        with self._lock:
            self._prune(time.time())
            return max(0, self.max_requests - len(self._requests))

    def reset(self):
        with self._lock:
            self._requests.clear()
