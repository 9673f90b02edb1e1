"""Garmin integration error taxonomy.

Authorization errors require the athlete to re-authorize and are never
retried. Timeout, network and token-endpoint (5xx) errors are transient and
may be retried by the interactive caller with backoff.
"""

from __future__ import annotations


class GarminIntegrationError(Exception):
    """Base class for all Garmin integration errors."""


class GarminOAuthError(GarminIntegrationError):
    """Token endpoint call failed.

    Carries the endpoint status and response body for diagnosis.
    """

    def __init__(self, message: str, *, status_code: int | None = None, body: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code is None:
            return base
        return f"{base} (status={self.status_code}, body={(self.body or '')[:200]})"


class GarminAuthorizationError(GarminOAuthError):
    """Garmin rejected the grant: bad/expired code, PKCE mismatch or revoked refresh token."""


class GarminTokenEndpointError(GarminOAuthError):
    """Non-2xx token endpoint response that is not a grant rejection (e.g. 5xx outage)."""


class GarminOAuthTimeoutError(GarminOAuthError):
    """Token endpoint did not answer within the configured timeout."""


class GarminOAuthNetworkError(GarminOAuthError):
    """Token endpoint could not be reached."""


class GarminApiError(GarminIntegrationError):
    """Garmin profile/user-info endpoint call failed."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class IntegrationNotFoundError(GarminIntegrationError):
    """No Garmin integration record (or no stored token) for the athlete."""


class RemoteUserIdConflictError(GarminIntegrationError):
    """The Garmin user ID is already linked to a different athlete."""


class OAuthStateError(GarminIntegrationError):
    """OAuth callback state is unknown, already used or expired."""


class ActivityValidationError(GarminIntegrationError):
    """A normalized activity is missing a mandatory field."""

    def __init__(self, field: str) -> None:
        super().__init__(f"{field} is required")
        self.field = field
