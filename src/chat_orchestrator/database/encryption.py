"""
Encryption manager for field-level encryption of stored conversations.
"""

import base64
import logging
import os

from cryptography.fernet import Fernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)

MASTER_KEY_ENV = "CHAT_ORCHESTRATOR_MASTER_KEY"


class EncryptionManager:
    """Manages field-level encryption for message content and session context."""

    def __init__(self, master_key: str | None = None, enabled: bool = True):
        self.enabled = enabled
        self._master_key: str | None = None
        self._encryption_keys: dict[str, Fernet] = {}
        self._current_key_id: str | None = None
        if enabled:
            self._initialize_encryption(master_key)

    def _initialize_encryption(self, master_key: str | None) -> None:
        """Initialize encryption with the given master key, the environment, or a new key."""
        master_key = master_key or os.environ.get(MASTER_KEY_ENV)

        if not master_key:
            # Data written with an ephemeral key is unreadable after restart
            logger.warning(
                f"No master key configured ({MASTER_KEY_ENV}); using an ephemeral key"
            )
            master_key = base64.urlsafe_b64encode(os.urandom(32)).decode()

        self._master_key = master_key
        self._current_key_id = "primary_v1"
        key = self._derive_key(master_key, self._current_key_id)
        self._encryption_keys[self._current_key_id] = Fernet(key)

    def _derive_key(self, master_key: str, key_id: str) -> bytes:
        """Derive encryption key from master key and key ID."""
        # Use key_id as salt for key derivation
        salt = key_id.encode("utf-8").ljust(16, b"0")[:16]

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=100000,
        )

        return base64.urlsafe_b64encode(kdf.derive(master_key.encode()))

    def encrypt(self, data: str) -> tuple[str, str | None]:
        """
        Encrypt data and return (encrypted_data, key_id).

        When encryption is disabled the data is returned unchanged with a
        ``None`` key id.
        """
        if not self.enabled:
            return data, None

        if not self._current_key_id or self._current_key_id not in self._encryption_keys:
            raise ValueError("No encryption key available")

        fernet = self._encryption_keys[self._current_key_id]
        encrypted_bytes = fernet.encrypt(data.encode("utf-8"))
        return base64.b64encode(encrypted_bytes).decode("utf-8"), self._current_key_id

    def decrypt(self, encrypted_data: str, key_id: str | None) -> str:
        """
        Decrypt data using the specified key ID.

        A ``None`` key id marks plaintext written with encryption disabled.
        """
        if key_id is None:
            return encrypted_data

        if key_id not in self._encryption_keys:
            if not self._master_key:
                raise ValueError(f"Encryption key {key_id} not available")
            self._encryption_keys[key_id] = Fernet(self._derive_key(self._master_key, key_id))

        fernet = self._encryption_keys[key_id]
        encrypted_bytes = base64.b64decode(encrypted_data.encode("utf-8"))
        return fernet.decrypt(encrypted_bytes).decode("utf-8")

    def get_current_key_id(self) -> str | None:
        """Get the current key ID for new encryptions."""
        return self._current_key_id

    def rotate_key(self, new_key_id: str) -> None:
        """
        Create a new encryption key for future encryptions.

        Existing rows keep their key id and remain readable.
        """
        if not self._master_key:
            raise ValueError("Master key not available for key rotation")

        self._encryption_keys[new_key_id] = Fernet(self._derive_key(self._master_key, new_key_id))
        self._current_key_id = new_key_id
