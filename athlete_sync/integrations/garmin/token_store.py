"""Persistence for Garmin OAuth credentials and connection state.

Tokens are Fernet-encrypted at rest and decrypted only when a caller asks
for them. Every mutation is a single-row UPDATE (or INSERT for the first
connect) inside its own session.
"""

from __future__ import annotations

from collections.abc import Callable
from contextlib import AbstractContextManager
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from athlete_sync.core.encryption import decrypt_token, encrypt_token
from athlete_sync.db.models import GarminIntegration
from athlete_sync.db.session import get_session
from athlete_sync.integrations.garmin.errors import IntegrationNotFoundError, RemoteUserIdConflictError
from athlete_sync.integrations.garmin.schemas import GarminProfile, IntegrationRecord, TokenSet

SessionFactory = Callable[[], AbstractContextManager[Session]]


def normalize_remote_user_id(remote_user_id: Any) -> str | None:
    """Trim and case-fold a Garmin user ID for comparison; empty becomes None."""
    if remote_user_id is None:
        return None
    text = str(remote_user_id).strip().lower()
    return text or None


class TokenStore(Protocol):
    """Storage interface for Athlete Integration Records."""

    def get(self, athlete_id: str) -> IntegrationRecord | None: ...

    def find_by_remote_user_id(self, remote_user_id: str) -> IntegrationRecord | None: ...

    def save_tokens(self, athlete_id: str, tokens: TokenSet, *, permissions: dict[str, Any] | None = None) -> IntegrationRecord: ...

    def update_tokens(self, athlete_id: str, tokens: TokenSet) -> IntegrationRecord: ...

    def set_remote_user_id(self, athlete_id: str, remote_user_id: str) -> IntegrationRecord: ...

    def save_profile(self, athlete_id: str, profile: GarminProfile) -> IntegrationRecord: ...

    def update_permissions(self, athlete_id: str, *, scope: str | None, permissions: dict[str, Any]) -> IntegrationRecord | None: ...

    def clear(self, athlete_id: str) -> bool: ...


def _expires_at(now: datetime, expires_in: int | None) -> datetime | None:
    return now + timedelta(seconds=expires_in) if expires_in else None


def _decrypt(value: str | None) -> str | None:
    return decrypt_token(value) if value else None


def _to_record(row: GarminIntegration, *, with_tokens: bool = True) -> IntegrationRecord:
    return IntegrationRecord(
        athlete_id=row.athlete_id,
        remote_user_id=row.remote_user_id,
        access_token=_decrypt(row.access_token) if with_tokens else None,
        refresh_token=_decrypt(row.refresh_token) if with_tokens else None,
        scope=row.scope,
        expires_in_seconds=row.expires_in_seconds,
        token_expires_at=row.token_expires_at,
        is_connected=row.is_connected,
        connected_at=row.connected_at,
        last_sync_at=row.last_sync_at,
        disconnected_at=row.disconnected_at,
        permissions=row.permissions,
        user_name=row.user_name,
        profile_id=row.profile_id,
        user_profile=row.user_profile,
        user_sleep=row.user_sleep,
        user_preferences=row.user_preferences,
    )


class SqlTokenStore:
    """SQLAlchemy-backed TokenStore over the garmin_integrations table."""

    def __init__(self, session_factory: SessionFactory = get_session) -> None:
        self._session_factory = session_factory

    def get(self, athlete_id: str) -> IntegrationRecord | None:
        with self._session_factory() as session:
            row = session.get(GarminIntegration, athlete_id)
            return _to_record(row) if row else None

    def find_by_remote_user_id(self, remote_user_id: str) -> IntegrationRecord | None:
        """Lookup by Garmin user ID, ignoring surrounding whitespace and case.

        Tokens are not decrypted: webhook routing only needs the identity.
        """
        normalized = normalize_remote_user_id(remote_user_id)
        if normalized is None:
            return None
        with self._session_factory() as session:
            row = session.execute(
                select(GarminIntegration).where(func.lower(func.trim(GarminIntegration.remote_user_id)) == normalized)
            ).scalar_one_or_none()
            return _to_record(row, with_tokens=False) if row else None

    def save_tokens(self, athlete_id: str, tokens: TokenSet, *, permissions: dict[str, Any] | None = None) -> IntegrationRecord:
        """Store tokens from a completed authorization and mark the athlete connected.

        remote_user_id is left untouched; it is set once the user-info fetch succeeds.
        """
        now = datetime.now(timezone.utc)
        with self._session_factory() as session:
            row = session.get(GarminIntegration, athlete_id)
            if row is None:
                logger.debug(f"[GARMIN_TOKEN] Creating integration record for athlete_id={athlete_id}")
                row = GarminIntegration(athlete_id=athlete_id)
                session.add(row)

            row.access_token = encrypt_token(tokens.access_token)
            row.refresh_token = encrypt_token(tokens.refresh_token) if tokens.refresh_token else None
            row.scope = tokens.scope
            row.expires_in_seconds = tokens.expires_in
            row.token_expires_at = _expires_at(now, tokens.expires_in)
            row.is_connected = True
            row.connected_at = now
            row.disconnected_at = None
            row.permissions = permissions
            session.flush()
            logger.info(f"[GARMIN_TOKEN] Tokens stored for athlete_id={athlete_id}, scope={tokens.scope}")
            return _to_record(row)

    def update_tokens(self, athlete_id: str, tokens: TokenSet) -> IntegrationRecord:
        """Store refreshed tokens. A refresh response without a new refresh token keeps the old one."""
        now = datetime.now(timezone.utc)
        values: dict[str, Any] = {
            "access_token": encrypt_token(tokens.access_token),
            "expires_in_seconds": tokens.expires_in,
            "token_expires_at": _expires_at(now, tokens.expires_in),
            "updated_at": now,
        }
        if tokens.refresh_token:
            values["refresh_token"] = encrypt_token(tokens.refresh_token)
        if tokens.scope:
            values["scope"] = tokens.scope
        return self._update(athlete_id, values)

    def set_remote_user_id(self, athlete_id: str, remote_user_id: str) -> IntegrationRecord:
        """Link the Garmin user ID to the athlete.

        Raises:
            RemoteUserIdConflictError: If another athlete already holds the ID
        """
        cleaned = str(remote_user_id).strip()
        holder = self.find_by_remote_user_id(cleaned)
        if holder is not None and holder.athlete_id != athlete_id:
            logger.warning(
                f"[GARMIN_TOKEN] Garmin user {cleaned} already linked to athlete_id={holder.athlete_id}, "
                f"refusing link to athlete_id={athlete_id}"
            )
            raise RemoteUserIdConflictError(f"Garmin user {cleaned} is already linked to another athlete")

        try:
            record = self._update(athlete_id, {"remote_user_id": cleaned, "updated_at": datetime.now(timezone.utc)})
        except IntegrityError as e:
            # A concurrent link claimed the ID between the lookup and the UPDATE
            logger.warning(f"[GARMIN_TOKEN] Garmin user {cleaned} linked concurrently, refusing link to athlete_id={athlete_id}")
            raise RemoteUserIdConflictError(f"Garmin user {cleaned} is already linked to another athlete") from e
        logger.info(f"[GARMIN_TOKEN] Linked Garmin user {cleaned} to athlete_id={athlete_id}")
        return record

    def save_profile(self, athlete_id: str, profile: GarminProfile) -> IntegrationRecord:
        now = datetime.now(timezone.utc)
        return self._update(
            athlete_id,
            {
                "user_name": profile.user_name,
                "profile_id": profile.profile_id,
                "user_profile": profile.user_data or None,
                "user_sleep": profile.user_sleep or None,
                "user_preferences": profile.preferences or None,
                "last_sync_at": now,
                "updated_at": now,
            },
        )

    def update_permissions(self, athlete_id: str, *, scope: str | None, permissions: dict[str, Any]) -> IntegrationRecord | None:
        """Store a permission snapshot. A None scope leaves the stored OAuth scope as is."""
        now = datetime.now(timezone.utc)
        values: dict[str, Any] = {"permissions": permissions, "last_sync_at": now, "updated_at": now}
        if scope is not None:
            values["scope"] = scope
        try:
            return self._update(athlete_id, values)
        except IntegrationNotFoundError:
            return None

    def clear(self, athlete_id: str) -> bool:
        """Wipe credentials, identity and profile data in one UPDATE statement.

        Returns:
            True if a row was cleared
        """
        now = datetime.now(timezone.utc)
        with self._session_factory() as session:
            result = session.execute(
                update(GarminIntegration)
                .where(GarminIntegration.athlete_id == athlete_id)
                .values(
                    remote_user_id=None,
                    access_token=None,
                    refresh_token=None,
                    scope=None,
                    expires_in_seconds=None,
                    token_expires_at=None,
                    is_connected=False,
                    connected_at=None,
                    last_sync_at=None,
                    permissions=None,
                    user_name=None,
                    profile_id=None,
                    user_profile=None,
                    user_sleep=None,
                    user_preferences=None,
                    disconnected_at=now,
                    updated_at=now,
                )
            )
            cleared = result.rowcount > 0
        if cleared:
            logger.info(f"[GARMIN_TOKEN] Integration cleared for athlete_id={athlete_id}")
        return cleared

    def _update(self, athlete_id: str, values: dict[str, Any]) -> IntegrationRecord:
        with self._session_factory() as session:
            result = session.execute(
                update(GarminIntegration).where(GarminIntegration.athlete_id == athlete_id).values(**values)
            )
            if result.rowcount == 0:
                raise IntegrationNotFoundError(f"No Garmin integration for athlete_id={athlete_id}")
            row = session.get(GarminIntegration, athlete_id, populate_existing=True)
            return _to_record(row)
