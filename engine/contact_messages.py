"""
Contact Messages
Public contact-form submissions and the admin inbox over them.
"""
import math
import re
from typing import Dict, Optional, Any
import logging

from core.database import now_iso

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')
MESSAGE_STATUSES = ('new', 'read', 'replied', 'archived')


class ContactMessageService:
    def __init__(self, database=None):
        self._db = database

    @property
    def db(self):
        if self._db is None:
            from core.database import db
            self._db = db
        return self._db

    def submit(self, name: str, email: str, message: str, subject: str = None,
               ip_address: str = None, user_agent: str = None) -> Dict:
        name = (name or '').strip()
        email = (email or '').strip()
        message = (message or '').strip()
        if not name or not email or not message:
            raise ValueError("Name, email, and message are required")
        if not EMAIL_PATTERN.match(email):
            raise ValueError("Invalid email format")

        now = now_iso()
        message_id = self.db.insert("""
            INSERT INTO contact_messages (name, email, subject, message, status, ip_address, user_agent,
                                          created_at, updated_at)
            VALUES (?, ?, ?, ?, 'new', ?, ?, ?, ?)
        """, (name, email.lower(), (subject or '').strip() or None, message, ip_address, user_agent, now, now))
        logger.info(f"Contact message {message_id} received from {email.lower()}")
        return self.get_message(message_id)

    def get_message(self, message_id: int) -> Optional[Dict]:
        return self.db.query_one("SELECT * FROM contact_messages WHERE id = ?", (message_id,))

    def list_messages(self, page: int = 1, limit: int = 20, search: str = '', status: str = '',
                      sort_order: str = 'desc') -> Dict[str, Any]:
        page = max(1, int(page or 1))
        limit = max(1, int(limit or 20))

        where = []
        params = []
        if search:
            pattern = f"%{search}%"
            where.append("(email LIKE ? OR name LIKE ? OR subject LIKE ?)")
            params += [pattern, pattern, pattern]
        if status in MESSAGE_STATUSES:
            where.append("status = ?")
            params.append(status)
        clause = f"WHERE {' AND '.join(where)}" if where else ''
        direction = 'ASC' if sort_order == 'asc' else 'DESC'

        messages = self.db.query(
            f"SELECT * FROM contact_messages {clause} ORDER BY created_at {direction}, id {direction} LIMIT ? OFFSET ?",
            tuple(params) + (limit, (page - 1) * limit),
        )
        total = self.db.scalar(f"SELECT COUNT(*) FROM contact_messages {clause}", tuple(params))

        stats = {s: 0 for s in MESSAGE_STATUSES}
        for row in self.db.query("SELECT status, COUNT(*) as count FROM contact_messages GROUP BY status"):
            stats[row['status']] = row['count']

        return {
            'messages': messages,
            'pagination': {
                'page': page,
                'limit': limit,
                'total': total,
                'totalPages': math.ceil(total / limit),
            },
            'stats': stats,
        }

    def update_message(self, message_id: int, status: str = None, admin_reply: str = None) -> Optional[Dict]:
        if not message_id:
            raise ValueError("Message ID required")
        if not self.get_message(message_id):
            return None

        updates = {'updated_at': now_iso()}
        if status in MESSAGE_STATUSES:
            updates['status'] = status
        if admin_reply:
            updates['admin_reply'] = admin_reply
            updates['replied_at'] = now_iso()
            updates['status'] = 'replied'

        assignments = ', '.join(f"{k} = ?" for k in updates)
        self.db.execute(f"UPDATE contact_messages SET {assignments} WHERE id = ?",
                        tuple(updates.values()) + (message_id,))
        return self.get_message(message_id)

    def delete_message(self, message_id: int) -> bool:
        if not message_id:
            raise ValueError("Message ID required")
        result = self.db.execute("DELETE FROM contact_messages WHERE id = ?", (message_id,))
        return result.rowcount > 0


# Singleton
contact_messages = ContactMessageService()
