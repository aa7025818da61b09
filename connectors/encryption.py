"""
Token encryption — encrypt / decrypt calendar OAuth tokens at rest.

Uses Fernet (AES-128-CBC + HMAC-SHA256) from the ``cryptography`` library.
The key comes from ``config.token_encryption_key`` (env var:
``TOKEN_ENCRYPTION_KEY``).

If no key is configured, encryption is **disabled** and tokens are stored
as plaintext (with a startup warning).  Generate a key with::

    python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
"""

from __future__ import annotations

import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from config.settings import config

logger = logging.getLogger(__name__)

_fernet: Optional[Fernet] = None
_initialised = False


def _init_fernet() -> None:
    """Lazy-initialise the Fernet cipher once."""
    global _fernet, _initialised

    _initialised = True
    key = config.token_encryption_key
    if not key:
        logger.warning(
            "TOKEN_ENCRYPTION_KEY not set — calendar tokens will be stored as plaintext"
        )
        _fernet = None
        return

    try:
        _fernet = Fernet(key.encode() if isinstance(key, str) else key)
        logger.info("Token encryption enabled (Fernet/AES-128-CBC)")
    except (ValueError, TypeError) as exc:
        logger.error("Failed to initialise Fernet with provided key: %s", exc)
        _fernet = None


def reset_encryption() -> None:
    """Forget the cached cipher so the next call re-reads the key."""
    global _fernet, _initialised
    _fernet = None
    _initialised = False


def _cipher() -> Optional[Fernet]:
    if not _initialised:
        _init_fernet()
    return _fernet


def encrypt_token(plaintext: Optional[str]) -> Optional[str]:
    """
    Encrypt a token string for database storage.

    ``None`` and empty strings pass through so cleared columns stay NULL.
    """
    if not plaintext:
        return plaintext
    cipher = _cipher()
    if cipher is None:
        return plaintext
    return cipher.encrypt(plaintext.encode()).decode()


def decrypt_token(ciphertext: Optional[str]) -> Optional[str]:
    """
    Decrypt a token string read from the database.

    Tokens written before encryption was enabled are not valid Fernet
    tokens and are returned as-is.
    """
    if not ciphertext:
        return ciphertext
    cipher = _cipher()
    if cipher is None:
        return ciphertext
    try:
        return cipher.decrypt(ciphertext.encode()).decode()
    except InvalidToken:
        return ciphertext


def is_encryption_enabled() -> bool:
    """Check whether token encryption is active."""
    return _cipher() is not None
