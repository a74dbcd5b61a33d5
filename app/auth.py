"""
Identity boundary. The identity provider issues bearer JWTs; `sub` is the user id
and is trusted as the tenancy key. No user table: chats store the id directly.
"""
from datetime import datetime, timedelta
from jose import JWTError, jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from app.config import get_settings
from app.schemas.user import TokenPayload

settings = get_settings()
security = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def create_access_token(user_id: str, email: str | None = None, expires_minutes: int | None = None) -> str:
    """Sign a token the way the identity provider does. Used by tooling and tests."""
    lifetime = timedelta(minutes=expires_minutes or settings.access_token_expire_minutes)
    claims = {"sub": user_id, "type": "access", "exp": datetime.utcnow() + lifetime}
    if email:
        claims["email"] = email
    return jwt.encode(claims, settings.secret_key, algorithm=settings.algorithm)


def decode_token(token: str) -> TokenPayload | None:
    """Verified claims, or None for a bad signature, an expired token or missing claims."""
    try:
        claims = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError:
        return None
    if not claims.get("sub") or "exp" not in claims:
        return None
    return TokenPayload(sub=claims["sub"], email=claims.get("email"), exp=claims["exp"])


def get_current_user_id(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> str:
    if credentials is None:
        raise _unauthorized("Unauthorized")
    payload = decode_token(credentials.credentials)
    if payload is None:
        raise _unauthorized("Invalid or expired token")
    return payload.sub
