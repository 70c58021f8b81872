"""Security audit trail for logins and admin actions (JSON lines)"""
import json
import threading
from datetime import datetime
from pathlib import Path
from typing import List, Dict
from core.config import LOG_DIR


class AuditLogger:
    def __init__(self, log_file: Path):
        self.log_file = log_file
        self.log_file.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def log(self, event_type: str, username: str = None,
            ip: str = None, details: dict = None):
        entry = {
            "timestamp": datetime.now().isoformat(),
            "event": event_type,
            "username": username,
            "ip": ip,
            "details": details or {}
        }
        with self._lock:
            with open(self.log_file, "a") as f:
                f.write(json.dumps(entry, default=str) + "\n")

    def recent(self, limit: int = 100) -> List[Dict]:
        """Newest entries first."""
        if not self.log_file.exists():
            return []
        with open(self.log_file) as f:
            lines = f.readlines()[-limit:]
        entries = []
        for line in reversed(lines):
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                continue
        return entries


audit_log = AuditLogger(LOG_DIR / "security.log")
