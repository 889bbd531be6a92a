from jose import jwt

from app.core.config import settings


# ─── JWT ──────────────────────────────────────────────────────────────────────
# Tokens are issued by the identity service; this side only verifies them.

def decode_token(token: str) -> dict:
    """Raises JWTError on invalid/expired token."""
    return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
