import os
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import jwt, JWTError
from pydantic import BaseModel, ValidationError

# tokens are issued by the user service; only verification happens here
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/users/login")
SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS512")

OWNER_ROLES = {"owner", "admin"}


class TokenPayload(BaseModel):
    sub: UUID
    tenant_id: UUID
    user_type: str = "user"


def get_current_token(
    token: str = Depends(oauth2_scheme),
) -> TokenPayload:
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[JWT_ALGORITHM])
        return TokenPayload(**payload)
    except (JWTError, ValidationError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
        )


def ensure_same_tenant(token: TokenPayload, tenant_id: UUID) -> None:
    if token.tenant_id != tenant_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You do not have access to this tenant",
        )


def ensure_owner(token: TokenPayload, tenant_id: UUID) -> None:
    """Owner-level operations: webhook management, rule changes."""
    if token.user_type not in OWNER_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only workspace owners can perform this operation",
        )
    ensure_same_tenant(token, tenant_id)
