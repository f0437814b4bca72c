"""Encryption utilities for stored mailbox tokens."""

from cryptography.fernet import Fernet, InvalidToken

from mailpilot.core.config import settings


_fernet: Fernet | None = None
_fernet_key: str | None = None


def get_fernet() -> Fernet:
    """Get or create Fernet instance for encryption/decryption."""
    global _fernet, _fernet_key
    key = settings.FERNET_KEY
    if not key:
        raise RuntimeError(
            "FERNET_KEY not configured. "
            'Generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"'
        )
    if _fernet is None or _fernet_key != key:
        _fernet = Fernet(key.encode())
        _fernet_key = key
    return _fernet


def encrypt_token(token: str) -> str:
    """Encrypt a token for storage."""
    if not token:
        return ""
    return get_fernet().encrypt(token.encode()).decode()


def decrypt_token(encrypted: str) -> str:
    """Decrypt a stored token."""
    if not encrypted:
        return ""
    try:
        return get_fernet().decrypt(encrypted.encode()).decode()
    except InvalidToken:
        raise ValueError("Invalid or corrupted encrypted token")


def is_encryption_configured() -> bool:
    """Check if encryption is properly configured."""
    return bool(settings.FERNET_KEY)
