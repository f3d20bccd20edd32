"""
MarketSync Security Utilities

Encryption for marketplace access tokens and JWT handling.
"""

import base64
import hashlib
from datetime import datetime, timedelta

from cryptography.fernet import Fernet
from jose import JWTError, jwt

from core.config import DEFAULT_ENCRYPTION_KEY, get_settings

settings = get_settings()

# Fernet encryption for platform tokens
# Dev key must be deterministic so the API and workers share the same key.
if settings.encryption_key == DEFAULT_ENCRYPTION_KEY:
    _dev_key = base64.urlsafe_b64encode(hashlib.sha256(b"marketsync-dev-key-not-for-production").digest())
    _fernet = Fernet(_dev_key)
else:
    _fernet = Fernet(settings.encryption_key.encode())


def encrypt(plaintext: str) -> str:
    """Encrypt sensitive data (access tokens, refresh tokens)."""
    return _fernet.encrypt(plaintext.encode()).decode()


def decrypt(ciphertext: str) -> str:
    """Decrypt sensitive data."""
    return _fernet.decrypt(ciphertext.encode()).decode()


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    """Create a JWT access token."""
    runtime_settings = get_settings()
    to_encode = data.copy()
    expire = datetime.utcnow() + (expires_delta or timedelta(hours=24))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, runtime_settings.jwt_secret, algorithm=runtime_settings.jwt_algorithm)


def decode_access_token(token: str) -> dict | None:
    """Decode and validate a locally issued access token."""
    runtime_settings = get_settings()
    try:
        return jwt.decode(
            token,
            runtime_settings.jwt_secret,
            algorithms=[runtime_settings.jwt_algorithm],
        )
    except JWTError:
        return None
