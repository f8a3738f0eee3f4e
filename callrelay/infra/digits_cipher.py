# callrelay/infra/digits_cipher.py
"""
Fernet decryption for captured keypad digits.

The voice pipeline stores DTMF digits as Fernet tokens (``dtmf_entries.encrypted_digits``)
under DTMF_ENCRYPTION_KEY. Without the key the service shows the preview or
masked digits the pipeline stored next to them.

Usage:
    cipher = get_digits_cipher()   # None when no key is configured
    if cipher is not None:
        digits = cipher.decrypt_digits(entry.encrypted_digits)
"""
from __future__ import annotations

from cryptography.fernet import Fernet, InvalidToken

from callrelay.infra.logging_config import get_logger

logger = get_logger(__name__)


class DigitsCipherError(Exception):
    """Raised when the cipher is misconfigured."""


class FernetDigitsCipher:
    """Fernet-based codec for keypad digit strings."""

    def __init__(self, key: str | bytes):
        """
        Args:
            key: URL-safe base64-encoded 32-byte key

        Raises:
            DigitsCipherError: If the key is invalid
        """
        try:
            self._fernet = Fernet(key.encode() if isinstance(key, str) else key)
        except Exception as exc:
            raise DigitsCipherError(f"Invalid Fernet key: {exc}") from exc

    def encrypt_digits(self, digits: str) -> str:
        return self._fernet.encrypt(digits.encode("utf-8")).decode("ascii")

    def decrypt_digits(self, token: str | None) -> str | None:
        """
        Plain digits for a stored token.

        Undecryptable tokens (wrong key, corrupted data) return None so the
        caller can fall back to the masked digits.
        """
        if not token:
            return None
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as exc:
            logger.warning(f"Keypad digits could not be decrypted: {exc.__class__.__name__}")
            return None

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode("ascii")


# ---------------------------------------------------------------------------
# Global singleton
# ---------------------------------------------------------------------------

_cipher: FernetDigitsCipher | None = None


def get_digits_cipher() -> FernetDigitsCipher | None:
    """
    Get the global cipher, lazily built from settings.dtmf_encryption_key.

    Returns None when no key is configured.

    Raises:
        DigitsCipherError: If the configured key is invalid
    """
    global _cipher
    if _cipher is None:
        from callrelay.config import settings

        if not settings.dtmf_encryption_key:
            return None
        _cipher = FernetDigitsCipher(settings.dtmf_encryption_key)
        logger.info("Keypad digits cipher initialized")

    return _cipher


def reset_digits_cipher() -> None:
    """Reset the global cipher (for testing)."""
    global _cipher
    _cipher = None
