from datetime import datetime, timedelta, timezone

from jose import JWTError, ExpiredSignatureError, jwt

from fleetbook.config import settings
from fleetbook.core.entities import Actor, RoleName
from fleetbook.utils.exceptions import TokenExpiredException, UnauthorizedException


# ─── JWT ──────────────────────────────────────────────────────────────────────
# Tokens are issued by the identity service; this service only verifies them.
# create_access_token exists for local tooling and tests.

def create_access_token(user_id: int, role: str, expires_minutes: int | None = None) -> str:
    """Payload: sub (user id), role, type, exp."""
    minutes = settings.ACCESS_TOKEN_EXPIRE_MINUTES if expires_minutes is None else expires_minutes
    return jwt.encode(
        {
            "sub":  str(user_id),
            "role": role,
            "type": "access",
            "exp":  datetime.now(timezone.utc) + timedelta(minutes=minutes),
        },
        settings.SECRET_KEY,
        algorithm=settings.ALGORITHM,
    )


def verify_access_token(token: str) -> dict:
    """
    Decode and validate a JWT access token.
    Raises 401 if invalid, 401 (TOKEN_EXPIRED) if expired.
    """
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except ExpiredSignatureError:
        raise TokenExpiredException()
    except JWTError:
        raise UnauthorizedException("Invalid or malformed token")
    if payload.get("type") != "access":
        raise UnauthorizedException("Invalid token type")
    return payload


def actor_from_token(token: str) -> Actor:
    """The acting user is whatever the verified claims say; no account lookup."""
    payload = verify_access_token(token)
    try:
        return Actor(id=int(payload["sub"]), role=RoleName(payload["role"]))
    except (KeyError, TypeError, ValueError):
        raise UnauthorizedException("Invalid token payload")
