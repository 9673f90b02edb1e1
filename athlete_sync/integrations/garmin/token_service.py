"""Garmin integration lifecycle: connect, refresh, profile sync, status, disconnect.

User-initiated operations only. These are the paths that surface OAuth
errors synchronously; the webhook path never calls Garmin.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from loguru import logger

from athlete_sync.integrations.garmin.client import GarminProfileClient
from athlete_sync.integrations.garmin.errors import (
    GarminApiError,
    GarminIntegrationError,
    IntegrationNotFoundError,
    RemoteUserIdConflictError,
)
from athlete_sync.integrations.garmin.oauth import AuthorizationRequest, GarminOAuthClient, PendingAuthorizationStore
from athlete_sync.integrations.garmin.schemas import (
    CAPABILITY_READ_ACTIVITY,
    CAPABILITY_WRITE_ACTIVITY,
    IntegrationRecord,
    IntegrationStatus,
    TokenSet,
    parse_scope,
)
from athlete_sync.integrations.garmin.token_store import TokenStore

DEFAULT_REFRESH_BUFFER_SECONDS = 300


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone-aware columns
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def build_connect_permissions(tokens: TokenSet, now: datetime | None = None) -> dict[str, Any]:
    """Permissions snapshot recorded when the athlete connects."""
    now = now or datetime.now(timezone.utc)
    capabilities = parse_scope(tokens.scope)
    return {
        "read": CAPABILITY_READ_ACTIVITY in capabilities,
        "write": CAPABILITY_WRITE_ACTIVITY in capabilities,
        "scope": tokens.scope,
        "granted_at": now.isoformat(),
        "last_checked": now.isoformat(),
    }


class GarminIntegrationService:
    """Service for the Garmin connection of one local athlete at a time.

    Responsibilities:
    - Run the PKCE handshake and store the resulting tokens
    - Link the Garmin user ID that webhooks are routed by
    - Refresh tokens on demand, retrying transient failures only
    - Expose connection status and disconnect to the athlete layer
    """

    def __init__(
        self,
        token_store: TokenStore,
        oauth_client: GarminOAuthClient | None = None,
        profile_client: GarminProfileClient | None = None,
        pending: PendingAuthorizationStore | None = None,
    ) -> None:
        self._token_store = token_store
        self._oauth = oauth_client or GarminOAuthClient()
        self._profiles = profile_client or GarminProfileClient()
        self._pending = pending or PendingAuthorizationStore()

    def begin_authorization(self, athlete_id: str) -> AuthorizationRequest:
        """Start a handshake: remember the verifier under a fresh state and return the URL."""
        if not self._oauth.is_configured:
            raise GarminIntegrationError("Garmin OAuth is not configured (GARMIN_CLIENT_ID / GARMIN_CLIENT_SECRET)")
        request = self._oauth.authorize()
        self._pending.put(request.state, athlete_id, request.verifier)
        logger.info(f"[GARMIN_OAUTH] Authorization started for athlete_id={athlete_id}")
        return request

    def complete_authorization(self, code: str, state: str) -> IntegrationRecord:
        """Finish a handshake: exchange the code, store tokens, link the Garmin user.

        Raises:
            OAuthStateError: Unknown, reused or expired state
            GarminOAuthError: Token exchange failed (see oauth module for subclasses)
            RemoteUserIdConflictError: Garmin user already linked to another athlete
        """
        pending = self._pending.pop(state)
        athlete_id = pending.athlete_id

        tokens = self._oauth.exchange_code(code, pending.verifier)
        record = self._token_store.save_tokens(athlete_id, tokens, permissions=build_connect_permissions(tokens))

        try:
            record = self.link_remote_user(athlete_id, tokens.access_token)
        except RemoteUserIdConflictError:
            self._token_store.clear(athlete_id)
            raise
        except GarminApiError as e:
            # Stays connected without a Garmin user ID until /profile/sync succeeds
            logger.warning(f"[GARMIN_OAUTH] Could not fetch Garmin user ID for athlete_id={athlete_id}: {e}")
            return record

        try:
            record = self._token_store.save_profile(athlete_id, self._profiles.fetch_user_profile(tokens.access_token))
        except GarminApiError as e:
            logger.warning(f"[GARMIN_OAUTH] Profile fetch failed for athlete_id={athlete_id}: {e}")
        return record

    def link_remote_user(self, athlete_id: str, access_token: str) -> IntegrationRecord:
        remote_user_id = self._profiles.fetch_user_id(access_token)
        return self._token_store.set_remote_user_id(athlete_id, remote_user_id)

    def sync_profile(self, athlete_id: str) -> IntegrationRecord:
        """Re-fetch the Garmin user ID (if not yet linked) and profile data."""
        access_token = self.get_valid_access_token(athlete_id)
        record = self._require(athlete_id)
        if record.remote_user_id is None:
            self.link_remote_user(athlete_id, access_token)
        profile = self._profiles.fetch_user_profile(access_token)
        return self._token_store.save_profile(athlete_id, profile)

    def get_valid_access_token(self, athlete_id: str, buffer_seconds: int = DEFAULT_REFRESH_BUFFER_SECONDS) -> str:
        """Return the access token, refreshing first if it expires within buffer_seconds."""
        record = self._require(athlete_id)
        if not record.is_connected or not record.access_token:
            raise IntegrationNotFoundError(f"Garmin is not connected for athlete_id={athlete_id}")

        expires_at = _as_utc(record.token_expires_at)
        if expires_at is not None and expires_at > datetime.now(timezone.utc) + timedelta(seconds=buffer_seconds):
            return record.access_token

        logger.info(f"[GARMIN_TOKEN] Token expired or expiring soon for athlete_id={athlete_id}, refreshing")
        refreshed = self.refresh_tokens(athlete_id)
        if not refreshed.access_token:
            raise IntegrationNotFoundError(f"Garmin refresh returned no access token for athlete_id={athlete_id}")
        return refreshed.access_token

    def refresh_tokens(self, athlete_id: str, *, max_retries: int = 3, retry_delay: float = 1.0) -> IntegrationRecord:
        """Refresh and store tokens.

        A rejected refresh token (GarminAuthorizationError) is raised as-is
        and the stored record is left untouched; the athlete must re-authorize.
        """
        record = self._require(athlete_id)
        if not record.refresh_token:
            raise IntegrationNotFoundError(f"No Garmin refresh token for athlete_id={athlete_id}")

        tokens = self._oauth.refresh_with_retry(record.refresh_token, max_retries=max_retries, retry_delay=retry_delay)
        updated = self._token_store.update_tokens(athlete_id, tokens)
        logger.info(f"[GARMIN_TOKEN] Tokens refreshed for athlete_id={athlete_id}, expires_at={updated.token_expires_at}")
        return updated

    def get_status(self, athlete_id: str) -> IntegrationStatus:
        record = self._token_store.get(athlete_id)
        if record is None:
            return IntegrationStatus(athlete_id=athlete_id, connected=False)
        return IntegrationStatus(
            athlete_id=athlete_id,
            connected=record.is_connected,
            capabilities=sorted(record.capabilities),
            scope=record.scope,
            permissions=record.permissions,
            last_sync_at=record.last_sync_at,
            connected_at=record.connected_at,
            disconnected_at=record.disconnected_at,
            remote_user_id=record.remote_user_id,
        )

    def disconnect(self, athlete_id: str) -> bool:
        """Revoke (best effort) and clear the integration.

        Returns:
            False if the athlete had no integration record
        """
        record = self._token_store.get(athlete_id)
        if record is None:
            logger.info(f"[GARMIN_OAUTH] Disconnect requested but no integration for athlete_id={athlete_id}")
            return False
        if record.access_token:
            self._oauth.revoke(record.access_token)
        cleared = self._token_store.clear(athlete_id)
        logger.info(f"[GARMIN_OAUTH] Disconnected Garmin for athlete_id={athlete_id}")
        return cleared

    def _require(self, athlete_id: str) -> IntegrationRecord:
        record = self._token_store.get(athlete_id)
        if record is None:
            raise IntegrationNotFoundError(f"No Garmin integration for athlete_id={athlete_id}")
        return record
