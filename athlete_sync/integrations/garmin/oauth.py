"""Garmin OAuth2 PKCE token exchange.

Token endpoint failures are classified so callers can tell a rejected
grant (re-authorize) from a transient outage (retry later):

- 400/401 -> GarminAuthorizationError
- other non-2xx -> GarminTokenEndpointError
- timeout -> GarminOAuthTimeoutError
- connection failure -> GarminOAuthNetworkError
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import NamedTuple
from urllib.parse import urlencode

import requests
from loguru import logger

from athlete_sync.config.settings import settings
from athlete_sync.core.logger import mask_secret
from athlete_sync.integrations.garmin.errors import (
    GarminAuthorizationError,
    GarminOAuthError,
    GarminOAuthNetworkError,
    GarminOAuthTimeoutError,
    GarminTokenEndpointError,
    OAuthStateError,
)
from athlete_sync.integrations.garmin.pkce import PkcePair, generate_pkce
from athlete_sync.integrations.garmin.schemas import TokenSet

_AUTHORIZATION_STATUS_CODES = {400, 401}


class AuthorizationRequest(NamedTuple):
    """Authorization URL plus the server-side half of the PKCE triple."""

    url: str
    verifier: str
    state: str


class PendingAuthorization(NamedTuple):
    athlete_id: str
    verifier: str
    created_at: float


class PendingAuthorizationStore:
    """In-memory state -> (athlete_id, verifier) map for callbacks in flight.

    Each state is single-use and expires after ``ttl_seconds``.
    Note: in-memory only. Multi-worker deployments need a shared store.
    """

    def __init__(self, ttl_seconds: int | None = None, clock: Callable[[], float] = time.time) -> None:
        self._ttl = ttl_seconds or settings.garmin_oauth_state_ttl_seconds
        self._clock = clock
        self._pending: dict[str, PendingAuthorization] = {}
        self._lock = threading.Lock()

    def put(self, state: str, athlete_id: str, verifier: str) -> None:
        now = self._clock()
        with self._lock:
            self._purge_expired(now)
            self._pending[state] = PendingAuthorization(athlete_id, verifier, now)

    def pop(self, state: str) -> PendingAuthorization:
        """Consume a pending authorization.

        Raises:
            OAuthStateError: If the state is unknown, already used or expired
        """
        now = self._clock()
        with self._lock:
            pending = self._pending.pop(state, None)
            self._purge_expired(now)
        if pending is None:
            raise OAuthStateError("Unknown or already used OAuth state")
        if now - pending.created_at > self._ttl:
            raise OAuthStateError("OAuth state expired")
        return pending

    def __len__(self) -> int:
        return len(self._pending)

    def _purge_expired(self, now: float) -> None:
        expired = [state for state, pending in self._pending.items() if now - pending.created_at > self._ttl]
        for state in expired:
            del self._pending[state]


class GarminOAuthClient:
    """Client for the Garmin authorization and token endpoints."""

    def __init__(
        self,
        *,
        client_id: str | None = None,
        client_secret: str | None = None,
        redirect_uri: str | None = None,
        authorize_url: str | None = None,
        token_url: str | None = None,
        revoke_url: str | None = None,
        timeout: float | None = None,
    ) -> None:
        self.client_id = client_id if client_id is not None else settings.garmin_client_id
        self._client_secret = client_secret if client_secret is not None else settings.garmin_client_secret
        self.redirect_uri = redirect_uri or settings.garmin_redirect_uri
        self._authorize_url = authorize_url or settings.garmin_authorize_url
        self._token_url = token_url or settings.garmin_token_url
        self._revoke_url = revoke_url or settings.garmin_revoke_url
        self._timeout = timeout or settings.garmin_http_timeout_seconds

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self._client_secret)

    def build_authorization_url(self, pkce: PkcePair) -> str:
        """Build the authorization URL. Only the challenge leaves the server, never the verifier."""
        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "redirect_uri": self.redirect_uri,
            "code_challenge": pkce.challenge,
            "code_challenge_method": "S256",
            "state": pkce.state,
        }
        return f"{self._authorize_url}?{urlencode(params)}"

    def authorize(self) -> AuthorizationRequest:
        pkce = generate_pkce()
        return AuthorizationRequest(url=self.build_authorization_url(pkce), verifier=pkce.verifier, state=pkce.state)

    def exchange_code(self, code: str, code_verifier: str) -> TokenSet:
        """Exchange an authorization code for tokens. Never retried.

        Raises:
            GarminAuthorizationError: Code rejected (expired, reused, PKCE mismatch)
            GarminTokenEndpointError: Other non-2xx response
            GarminOAuthTimeoutError / GarminOAuthNetworkError: Transport failure
        """
        logger.info("[GARMIN_OAUTH] Exchanging authorization code for tokens")
        tokens = self._post_token(
            {
                "grant_type": "authorization_code",
                "client_id": self.client_id,
                "client_secret": self._client_secret,
                "code": code,
                "code_verifier": code_verifier,
                "redirect_uri": self.redirect_uri,
            },
            operation="exchange",
        )
        logger.info(f"[GARMIN_OAUTH] Code exchanged (access_token={mask_secret(tokens.access_token)}, scope={tokens.scope})")
        return tokens

    def refresh(self, refresh_token: str) -> TokenSet:
        """Refresh tokens. A revoked refresh token raises GarminAuthorizationError."""
        logger.info(f"[GARMIN_OAUTH] Refreshing tokens (refresh_token={mask_secret(refresh_token)})")
        return self._post_token(
            {
                "grant_type": "refresh_token",
                "client_id": self.client_id,
                "client_secret": self._client_secret,
                "refresh_token": refresh_token,
            },
            operation="refresh",
        )

    def refresh_with_retry(self, refresh_token: str, max_retries: int = 3, retry_delay: float = 1.0) -> TokenSet:
        """Refresh with exponential backoff on transient failures.

        Authorization errors are raised immediately; retrying a revoked
        refresh token cannot succeed.
        """
        last_error: GarminOAuthError | None = None
        for attempt in range(max_retries):
            try:
                return self.refresh(refresh_token)
            except GarminAuthorizationError:
                raise
            except (GarminTokenEndpointError, GarminOAuthTimeoutError, GarminOAuthNetworkError) as e:
                last_error = e
                if attempt < max_retries - 1:
                    delay = retry_delay * (2**attempt)
                    logger.warning(f"[GARMIN_OAUTH] Refresh attempt {attempt + 1}/{max_retries} failed: {e}. Retrying in {delay}s")
                    time.sleep(delay)

        logger.error(f"[GARMIN_OAUTH] Refresh failed after {max_retries} attempts: {last_error}")
        if last_error is None:
            raise GarminTokenEndpointError("Token refresh was not attempted")
        raise last_error

    def revoke(self, access_token: str) -> bool:
        """Best-effort revoke. Failures are logged and reported, never raised."""
        try:
            resp = requests.post(
                self._revoke_url,
                headers={"Authorization": f"Bearer {access_token}"},
                data={"client_id": self.client_id, "token": access_token},
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            logger.warning(f"[GARMIN_OAUTH] Token revoke request failed: {type(e).__name__}: {e}")
            return False

        if not resp.ok:
            logger.warning(f"[GARMIN_OAUTH] Token revoke returned {resp.status_code}: {resp.text[:200]}")
            return False
        logger.info("[GARMIN_OAUTH] Token revoked")
        return True

    def _post_token(self, data: dict[str, str], *, operation: str) -> TokenSet:
        try:
            resp = requests.post(
                self._token_url,
                data=data,
                headers={"Accept": "application/json"},
                timeout=self._timeout,
            )
        except requests.Timeout as e:
            logger.error(f"[GARMIN_OAUTH] Token {operation} timed out after {self._timeout}s")
            raise GarminOAuthTimeoutError(f"Token {operation} timed out") from e
        except requests.RequestException as e:
            logger.error(f"[GARMIN_OAUTH] Token {operation} request failed: {type(e).__name__}: {e}")
            raise GarminOAuthNetworkError(f"Token {operation} request failed: {e}") from e

        if resp.status_code in _AUTHORIZATION_STATUS_CODES:
            logger.warning(f"[GARMIN_OAUTH] Token {operation} rejected: {resp.status_code} - {resp.text[:200]}")
            raise GarminAuthorizationError(f"Garmin rejected token {operation}", status_code=resp.status_code, body=resp.text)
        if not resp.ok:
            logger.error(f"[GARMIN_OAUTH] Token {operation} failed: {resp.status_code} - {resp.text[:200]}")
            raise GarminTokenEndpointError(f"Token {operation} failed", status_code=resp.status_code, body=resp.text)

        try:
            payload = resp.json()
        except ValueError as e:
            raise GarminTokenEndpointError(
                f"Token {operation} returned a non-JSON body", status_code=resp.status_code, body=resp.text
            ) from e
        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise GarminTokenEndpointError(
                f"Token {operation} response has no access_token", status_code=resp.status_code, body=resp.text
            )
        return TokenSet.model_validate(payload)
