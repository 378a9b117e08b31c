"""
Service for managing secrets encryption and decryption
Uses Fernet symmetric encryption for secret values of config entries
"""

import base64
import logging
from typing import Dict, Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from app.core.config import settings

logger = logging.getLogger(__name__)

MASKED_VALUE = "********"


class SecretsService:
    """Handle encryption and decryption of secrets"""

    def __init__(
        self,
        encryption_key: Optional[str] = None,
        password: str = "cd-control-secret-key",
        salt: str = "cd-control-salt",
    ):
        self.fernet = self._get_or_create_fernet(encryption_key, password, salt)

    @staticmethod
    def _get_or_create_fernet(encryption_key, password, salt) -> Fernet:
        """Get or create Fernet encryption instance"""
        if encryption_key:
            return Fernet(encryption_key.encode())

        # Key derived from password (for development)
        # In production, always set ENCRYPTION_KEY
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt.encode(),
            iterations=100000,
        )
        key = base64.urlsafe_b64encode(kdf.derive(password.encode()))
        return Fernet(key)

    def encrypt(self, value: str) -> str:
        """Encrypt a secret value"""
        if not value:
            return ""
        return self.fernet.encrypt(value.encode()).decode()

    def decrypt(self, encrypted_value: str) -> str:
        """Decrypt a secret value"""
        if not encrypted_value:
            return ""
        try:
            return self.fernet.decrypt(encrypted_value.encode()).decode()
        except InvalidToken as e:
            # Log error but don't expose details
            logger.error("Failed to decrypt secret value")
            raise ValueError("Failed to decrypt secret") from e

    def encrypt_data(self, data: Dict[str, str]) -> Dict[str, str]:
        return {k: self.encrypt(v) for k, v in data.items()}

    def decrypt_data(self, data: Dict[str, str]) -> Dict[str, str]:
        return {k: self.decrypt(v) for k, v in data.items()}

    @staticmethod
    def mask_data(data: Dict[str, str]) -> Dict[str, str]:
        return {k: MASKED_VALUE for k in data}


# Singleton instance
secrets_service = SecretsService(
    settings.ENCRYPTION_KEY, settings.ENCRYPTION_PASSWORD, settings.ENCRYPTION_SALT
)
