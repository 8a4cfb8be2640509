"""JWT decoding for caller identity. Tokens are issued by the external auth service."""

import jwt

from upload_backend.config import settings


def decode_token(token: str) -> dict:
    """Decode and validate a JWT token. Raises jwt.PyJWTError on failure."""
    return jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
