import base64
import binascii
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

ENCRYPTION_PREFIX = "enc:"


def _normalize_key(raw: str) -> bytes:
    """Accept a Fernet key (44 chars), 64 hex chars, or a 32-char passphrase."""
    value = raw.strip()
    if len(value) == 44:
        return value.encode("ascii")
    if len(value) == 64:
        try:
            return base64.urlsafe_b64encode(binascii.unhexlify(value))
        except binascii.Error as exc:
            raise ValueError("ENCRYPTION_KEY is not valid hex.") from exc
    if len(value.encode("utf-8")) == 32:
        return base64.urlsafe_b64encode(value.encode("utf-8"))
    raise ValueError("ENCRYPTION_KEY must be a Fernet key (44 chars), 64 hex chars, or 32 bytes of text.")


class SecretCipher:
    """Encrypts secrets at rest as ``enc:<fernet token>``.

    Without a key, values are stored as plaintext and a single warning is
    logged. Values lacking the prefix are returned unchanged by ``decrypt``.
    """

    def __init__(self, key: Optional[str] = None):
        self._fernet = Fernet(_normalize_key(key)) if key else None
        self._warned = False

    @property
    def enabled(self) -> bool:
        return self._fernet is not None

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode("ascii")

    @staticmethod
    def is_encrypted(value: str) -> bool:
        return (value or "").startswith(ENCRYPTION_PREFIX)

    def encrypt(self, plaintext: str) -> str:
        if self._fernet is None:
            if not self._warned:
                logger.warning("ENCRYPTION_KEY not set; credential secrets are stored unencrypted.")
                self._warned = True
            return plaintext
        token = self._fernet.encrypt(plaintext.encode("utf-8"))
        return ENCRYPTION_PREFIX + token.decode("ascii")

    def decrypt(self, value: str) -> str:
        if not self.is_encrypted(value):
            return value
        if self._fernet is None:
            raise RuntimeError("Cannot decrypt: ENCRYPTION_KEY is required.")
        try:
            return self._fernet.decrypt(value[len(ENCRYPTION_PREFIX):].encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            raise RuntimeError("Cannot decrypt: stored secret does not match ENCRYPTION_KEY.") from exc
