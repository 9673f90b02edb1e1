"""JWT verification for the product's own bearer tokens.

Tokens are issued by the identity layer and carry the athlete ID in the
'sub' claim.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt
from loguru import logger

from athlete_sync.config.settings import settings


def create_access_token(athlete_id: str) -> str:
    """Create a signed access token for an athlete."""
    athlete_id_str = str(athlete_id) if athlete_id is not None else ""
    if not athlete_id_str:
        raise ValueError("athlete_id cannot be None or empty")

    now = datetime.now(timezone.utc)
    payload = {
        "sub": athlete_id_str,
        "exp": now + timedelta(days=settings.auth_token_expire_days),
        "iat": now,
        "iss": "athlete-sync",
    }
    return jwt.encode(payload, settings.auth_secret_key, algorithm=settings.auth_algorithm)


def decode_access_token(token: str) -> str:
    """Decode and verify an access token.

    Returns:
        Athlete ID from the 'sub' claim

    Raises:
        ValueError: If token is invalid or expired
    """
    try:
        payload = jwt.decode(
            token,
            settings.auth_secret_key,
            algorithms=[settings.auth_algorithm],
        )
    except JWTError as e:
        logger.warning(f"JWT decode failed: {e}")
        raise ValueError("Invalid or expired token") from e

    athlete_id = payload.get("sub")
    if not athlete_id:
        raise ValueError("Token missing athlete ID")
    return str(athlete_id)
