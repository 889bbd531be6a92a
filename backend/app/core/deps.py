from typing import Annotated
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError

from app.core.config import settings
from app.core.security import decode_token
from app.models.approval import Role
from app.schemas.approval import Principal

oauth2_scheme = OAuth2PasswordBearer(tokenUrl=settings.AUTH_TOKEN_URL)


async def get_current_principal(
    token: Annotated[str, Depends(oauth2_scheme)],
) -> Principal:
    """Validate the bearer JWT and return the acting Principal.

    Users live in the identity service, so the principal is built from the
    token claims alone: ``sub`` (id), ``role`` and optional ``tenant``.
    """
    credentials_exc = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = decode_token(token)
        if payload.get("type") != "access":
            raise credentials_exc
        user_id: str | None = payload.get("sub")
        if not user_id:
            raise credentials_exc
        tenant: str | None = payload.get("tenant")
        return Principal(
            id=UUID(user_id),
            role=Role(payload.get("role")),
            tenant_id=UUID(tenant) if tenant else None,
        )
    except (JWTError, ValueError):
        raise credentials_exc
