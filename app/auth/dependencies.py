from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from app.auth.schemas import ApiSession
from app.core.config import settings
from app.core.exceptions import SessionExpiredError


oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")

SCHOOL_ID_CLAIMS = ("ecoleId", "ecole_id", "school_id")


def _school_id_from_claims(claims: Dict[str, Any]) -> Optional[int]:
    for name in SCHOOL_ID_CLAIMS:
        raw = claims.get(name)
        if raw is None or raw == "":
            continue
        try:
            return int(raw)
        except (TypeError, ValueError):
            continue
    return settings.default_school_id


def session_from_token(token: str, now: Optional[datetime] = None) -> ApiSession:
    """
    Build an ApiSession from a bearer token issued by the school API.
    The signature is verified upstream on every call; here we only read the claims
    to scope requests to a school and to reject tokens that already expired.
    """
    if not token or token == "null":
        raise SessionExpiredError("Missing session token")
    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError:
        raise SessionExpiredError("Malformed session token")

    expires_at = None
    exp = claims.get("exp")
    if exp is not None:
        try:
            expires_at = datetime.fromtimestamp(int(exp), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError):
            raise SessionExpiredError("Malformed session token")
        if expires_at <= (now or datetime.now(timezone.utc)):
            raise SessionExpiredError()

    school_id = _school_id_from_claims(claims)
    if school_id is None:
        raise SessionExpiredError("Session token does not identify a school")

    user_id = claims.get("sub") or claims.get("user_id")
    return ApiSession(
        token=token,
        school_id=school_id,
        user_id=str(user_id) if user_id is not None else None,
        expires_at=expires_at,
    )


async def get_api_session(token: str = Depends(oauth2_scheme)) -> ApiSession:
    """Resolve the caller's school API session from the Authorization header."""
    try:
        return session_from_token(token)
    except SessionExpiredError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.message,
            headers={"WWW-Authenticate": "Bearer"},
        )
