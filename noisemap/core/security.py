"""
security.py: bearer token utilities.

Accounts live in the external auth service; this API only needs to read
the reporter id out of a token it issued. Tokens are HS256 JWTs signed with
settings.jwt_secret (python-jose).

create_access_token is used by the seed script and the tests to mint tokens
the way the auth service does.
"""

from datetime import datetime, timedelta, timezone
from typing import Annotated, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from noisemap.core.config import settings


def create_access_token(subject: str, expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a signed JWT.

    Args:
        subject:       The reporter id.
        expires_delta: Custom TTL; defaults to settings.jwt_expiry_hours.
    """
    delta = expires_delta or timedelta(hours=settings.jwt_expiry_hours)
    expire = datetime.now(tz=timezone.utc) + delta
    payload = {"sub": subject, "exp": expire}
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> Optional[str]:
    """
    Decode and validate a JWT.

    Returns the *sub* claim on success, or None if the token is expired or
    otherwise invalid.
    """
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
        )
        return payload.get("sub")
    except JWTError:
        return None


# Reusable bearer extractor (does NOT auto-raise on missing token)
_bearer = HTTPBearer(auto_error=False)
CredDep = Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer)]


async def _optional_reporter(credentials: CredDep) -> Optional[str]:
    """
    Reporter id from the Bearer token, or None when no token was sent.

    A token that is present but invalid is a 401, not an anonymous request.
    """
    if not credentials:
        return None
    reporter_id = decode_access_token(credentials.credentials)
    if not reporter_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return reporter_id


OptionalReporter = Annotated[Optional[str], Depends(_optional_reporter)]
