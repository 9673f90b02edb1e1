"""FastAPI authentication dependency.

Verifies the bearer token and yields the current athlete ID. Athlete
existence is owned by the athlete CRUD layer and is not checked here.
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from loguru import logger

from athlete_sync.core.auth_jwt import decode_access_token

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login", auto_error=False)


def get_current_athlete_id(request: Request, token: str | None = Depends(oauth2_scheme)) -> str:
    """Return the athlete ID from the Authorization bearer token (or session cookie).

    Raises:
        HTTPException: 401 if token is missing, invalid, or expired
    """
    auth_token = token or request.cookies.get("session")
    if not auth_token:
        logger.warning(f"Auth failed: Missing authentication token. Path: {request.url.path}, Method: {request.method}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        return decode_access_token(auth_token)
    except ValueError as e:
        logger.warning(f"Auth failed: {e}, Path: {request.url.path}, Method: {request.method}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e
