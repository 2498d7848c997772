"""JWT helpers.

Access tokens are minted by the identity service that shares ``secret_key``;
this API only verifies them. ``create_access_token`` exists for the seed
script and the test suite. Short-lived OAuth ``state`` tokens for the Google
consent flow are signed with the same key.
"""

from datetime import UTC, datetime, timedelta

from jose import JWTError, jwt

from app.core.config import settings

OAUTH_STATE_EXPIRE_MINUTES = 10


def create_access_token(subject: str, extra: dict | None = None) -> str:
    expire = datetime.now(UTC) + timedelta(minutes=settings.access_token_expire_minutes)
    payload = {"sub": subject, "exp": expire, "type": "access"}
    if extra:
        payload.update(extra)
    return jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    """Decode and validate a JWT. Raises JWTError on failure."""
    return jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])


def create_oauth_state(complex_id: int) -> str:
    expire = datetime.now(UTC) + timedelta(minutes=OAUTH_STATE_EXPIRE_MINUTES)
    payload = {"sub": str(complex_id), "exp": expire, "type": "oauth_state"}
    return jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)


def verify_oauth_state(token: str) -> int:
    """Return the complex id carried by an OAuth state token.

    Raises JWTError on invalid/expired tokens or wrong type.
    """
    payload = decode_token(token)
    if payload.get("type") != "oauth_state":
        raise JWTError("Invalid token type")
    return int(payload["sub"])
