"""Garmin OAuth and connection management endpoints.

- /connect starts the PKCE handshake for the authenticated athlete
- /callback finishes it (athlete identified by the single-use state)
- /status, /refresh, /profile/sync and disconnect operate on the current athlete

Tokens are stored encrypted and never returned to the frontend.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import RedirectResponse
from loguru import logger

from athlete_sync.api.dependencies.auth import get_current_athlete_id
from athlete_sync.api.dependencies.garmin import get_integration_service
from athlete_sync.config.settings import settings
from athlete_sync.integrations.garmin.errors import (
    GarminApiError,
    GarminAuthorizationError,
    GarminIntegrationError,
    GarminOAuthNetworkError,
    GarminOAuthTimeoutError,
    GarminTokenEndpointError,
    IntegrationNotFoundError,
    OAuthStateError,
    RemoteUserIdConflictError,
)
from athlete_sync.integrations.garmin.schemas import IntegrationStatus
from athlete_sync.integrations.garmin.token_service import GarminIntegrationService

router = APIRouter(prefix="/integrations/garmin", tags=["integrations", "garmin"])


def _http_error(e: GarminIntegrationError) -> HTTPException:
    """Map an integration error to the HTTP response shown to the interactive caller."""
    if isinstance(e, GarminAuthorizationError):
        return HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "garmin_authorization_failed", "message": str(e), "reauthorize": True},
        )
    if isinstance(e, OAuthStateError):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "invalid_state", "message": str(e), "reauthorize": True},
        )
    if isinstance(e, RemoteUserIdConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail={"error": "garmin_account_in_use", "message": str(e)})
    if isinstance(e, IntegrationNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail={"error": "not_connected", "message": str(e)})
    if isinstance(e, GarminOAuthTimeoutError):
        return HTTPException(status_code=status.HTTP_504_GATEWAY_TIMEOUT, detail={"error": "garmin_timeout", "message": str(e)})
    if isinstance(e, (GarminOAuthNetworkError, GarminTokenEndpointError, GarminApiError)):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail={"error": "garmin_unavailable", "message": str(e)})
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail={"error": "garmin_error", "message": str(e)})


@router.get("/connect")
def garmin_connect(
    redirect: bool = False,
    athlete_id: str = Depends(get_current_athlete_id),
    service: GarminIntegrationService = Depends(get_integration_service),
):
    """Initiate Garmin OAuth.

    Returns the authorization URL as JSON, or redirects to it with ?redirect=true.
    """
    logger.info(f"[GARMIN_OAUTH] Connect initiated for athlete_id={athlete_id}")
    try:
        request = service.begin_authorization(athlete_id)
    except GarminIntegrationError as e:
        logger.error(f"[GARMIN_OAUTH] Cannot start authorization: {e}")
        raise _http_error(e) from e

    if redirect:
        return RedirectResponse(url=request.url)
    return {"url": request.url, "state": request.state}


@router.get("/callback")
def garmin_callback(
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    service: GarminIntegrationService = Depends(get_integration_service),
):
    """Handle the Garmin OAuth callback and redirect back to the frontend.

    Raises:
        HTTPException: If Garmin reported an error or the exchange fails
    """
    logger.info(f"[GARMIN_OAUTH] Callback received with state: {state[:16] if state else 'None'}...")

    if error:
        logger.error(f"[GARMIN_OAUTH] OAuth error from Garmin: {error}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Garmin OAuth error: {error}",
        )

    if not code or not state:
        logger.error("[GARMIN_OAUTH] Missing code or state in callback")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing authorization code or state",
        )

    try:
        record = service.complete_authorization(code, state)
    except GarminIntegrationError as e:
        logger.error(f"[GARMIN_OAUTH] Callback failed: {e}")
        raise _http_error(e) from e

    logger.info(f"[GARMIN_OAUTH] Garmin connected for athlete_id={record.athlete_id}, remote_user_id={record.remote_user_id}")
    return RedirectResponse(url=f"{settings.frontend_url}/settings?garmin=connected")


@router.get("/status", response_model=IntegrationStatus)
def garmin_status(
    athlete_id: str = Depends(get_current_athlete_id),
    service: GarminIntegrationService = Depends(get_integration_service),
) -> IntegrationStatus:
    return service.get_status(athlete_id)


@router.post("/refresh", response_model=IntegrationStatus)
def garmin_refresh(
    athlete_id: str = Depends(get_current_athlete_id),
    service: GarminIntegrationService = Depends(get_integration_service),
) -> IntegrationStatus:
    """Force a token refresh. A revoked grant answers 401 with reauthorize=true."""
    try:
        service.refresh_tokens(athlete_id)
    except GarminIntegrationError as e:
        raise _http_error(e) from e
    return service.get_status(athlete_id)


@router.post("/profile/sync")
def garmin_profile_sync(
    athlete_id: str = Depends(get_current_athlete_id),
    service: GarminIntegrationService = Depends(get_integration_service),
) -> dict[str, Any]:
    try:
        record = service.sync_profile(athlete_id)
    except GarminIntegrationError as e:
        raise _http_error(e) from e
    return {
        "remote_user_id": record.remote_user_id,
        "user_name": record.user_name,
        "profile_id": record.profile_id,
        "preferences": record.user_preferences,
        "last_sync_at": record.last_sync_at,
    }


@router.delete("")
@router.post("/disconnect")
def garmin_disconnect(
    athlete_id: str = Depends(get_current_athlete_id),
    service: GarminIntegrationService = Depends(get_integration_service),
) -> dict[str, Any]:
    """Revoke (best effort) and clear the athlete's Garmin connection. Idempotent."""
    disconnected = service.disconnect(athlete_id)
    return {"connected": False, "disconnected": disconnected}
