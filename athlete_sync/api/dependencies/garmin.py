"""Providers for the Garmin services used by the HTTP layer.

Routes receive these through Depends so tests can swap in fakes with
app.dependency_overrides.
"""

from __future__ import annotations

from functools import lru_cache

from athlete_sync.integrations.garmin.activity_store import SqlActivityStore
from athlete_sync.integrations.garmin.oauth import PendingAuthorizationStore
from athlete_sync.integrations.garmin.token_service import GarminIntegrationService
from athlete_sync.integrations.garmin.token_store import SqlTokenStore
from athlete_sync.integrations.garmin.webhook_handlers import GarminWebhookProcessor


@lru_cache(maxsize=1)
def _pending_authorizations() -> PendingAuthorizationStore:
    # One process-wide store so /connect and /callback share state
    return PendingAuthorizationStore()


def get_webhook_processor() -> GarminWebhookProcessor:
    return GarminWebhookProcessor(SqlTokenStore(), SqlActivityStore())


def get_integration_service() -> GarminIntegrationService:
    return GarminIntegrationService(SqlTokenStore(), pending=_pending_authorizations())
