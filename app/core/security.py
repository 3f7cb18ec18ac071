"""Password hashing and JWT helpers."""
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from jose import JWTError, jwt
from passlib.context import CryptContext

from app.core.config import settings


pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

OAUTH_STATE_PURPOSE = "crm_oauth_state"


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    if not plain_password:
        return False
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(
    data: Dict[str, Any],
    expires_delta: Optional[timedelta] = None
) -> str:
    """Create a signed JWT; `exp` defaults to ACCESS_TOKEN_EXPIRE_MINUTES."""
    to_encode = data.copy()
    expire = datetime.utcnow() + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_access_token(token: str) -> Optional[Dict[str, Any]]:
    """Decode a JWT, returning None when it is invalid or expired."""
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        return None


def create_oauth_state(tenant_id: str) -> str:
    """Signed, short-lived `state` parameter naming the tenant starting an OAuth install."""
    return create_access_token(
        {"sub": tenant_id, "purpose": OAUTH_STATE_PURPOSE},
        expires_delta=timedelta(minutes=settings.OAUTH_STATE_EXPIRE_MINUTES),
    )


def decode_oauth_state(state: str) -> Optional[str]:
    payload = decode_access_token(state)
    if not payload or payload.get("purpose") != OAUTH_STATE_PURPOSE:
        return None
    return payload.get("sub")
