"""Fernet encryption for provider API keys stored in the database"""
import logging
import os
from cryptography.fernet import Fernet, InvalidToken
from core.config import DATA_DIR

logger = logging.getLogger(__name__)


class EncryptionManager:
    def __init__(self, key_file=None):
        self.key_file = key_file or DATA_DIR / ".encryption_key"
        self.cipher = Fernet(self._get_or_create_key())

    def _get_or_create_key(self) -> bytes:
        key_str = os.getenv("ENCRYPTION_KEY")
        if key_str:
            return key_str.encode()

        if self.key_file.exists():
            return self.key_file.read_bytes()

        key = Fernet.generate_key()
        self.key_file.parent.mkdir(parents=True, exist_ok=True)
        self.key_file.write_bytes(key)
        os.chmod(self.key_file, 0o600)
        logger.warning(f"Generated new encryption key at {self.key_file}; back it up, "
                       "stored provider keys cannot be decrypted without it")
        return key

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            return ""
        return self.cipher.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        if not ciphertext:
            return ""
        try:
            return self.cipher.decrypt(ciphertext.encode()).decode()
        except InvalidToken:
            logger.error("Decryption failed: key mismatch or corrupted value")
            return ""


encryption = EncryptionManager()
