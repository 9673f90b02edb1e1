from __future__ import annotations

from typing import Any

from loguru import logger

from athlete_sync.integrations.garmin.schemas import IntegrationRecord
from athlete_sync.integrations.garmin.token_store import TokenStore, normalize_remote_user_id


class IdentityResolver:
    """Maps a Garmin user ID to the local athlete currently linked to it.

    A miss is an expected outcome (e.g. webhooks still in flight after a
    deregistration), so it returns None and logs at DEBUG only.
    """

    def __init__(self, token_store: TokenStore) -> None:
        self._token_store = token_store

    def resolve(self, remote_user_id: Any) -> IntegrationRecord | None:
        normalized = normalize_remote_user_id(remote_user_id)
        if normalized is None:
            logger.debug("[GARMIN_IDENTITY] Empty Garmin user ID, nothing to resolve")
            return None

        record = self._token_store.find_by_remote_user_id(normalized)
        if record is None:
            logger.debug(f"[GARMIN_IDENTITY] No athlete linked to Garmin user {normalized}")
            return None
        return record
