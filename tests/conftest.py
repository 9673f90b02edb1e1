"""Root conftest for all tests.

Provides an in-memory SQLite database for store tests and in-memory fake
stores for pipeline and HTTP tests.
"""

import os
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from cryptography.fernet import Fernet

# Must be set before athlete_sync modules read settings / the cipher
os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("AUTH_SECRET_KEY", "test-secret-key")
os.environ.setdefault("GARMIN_CLIENT_ID", "test-client-id")
os.environ.setdefault("GARMIN_CLIENT_SECRET", "test-client-secret")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from athlete_sync.db.models import Base
from athlete_sync.integrations.garmin.activity_store import SqlActivityStore
from athlete_sync.integrations.garmin.errors import ActivityValidationError, IntegrationNotFoundError, RemoteUserIdConflictError
from athlete_sync.integrations.garmin.schemas import (
    SUMMARY_FIELDS,
    ActivityRecord,
    GarminProfile,
    IntegrationRecord,
    NormalizedSummary,
    TokenSet,
)
from athlete_sync.integrations.garmin.token_store import SqlTokenStore, normalize_remote_user_id


@pytest.fixture
def engine():
    """Isolated in-memory SQLite database per test."""
    test_engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(test_engine)
    try:
        yield test_engine
    finally:
        test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    """get_session() equivalent bound to the test engine."""
    test_session_local = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)

    @contextmanager
    def mock_get_session():
        session = test_session_local()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    return mock_get_session


@pytest.fixture
def token_store(session_factory) -> SqlTokenStore:
    return SqlTokenStore(session_factory)


@pytest.fixture
def activity_store(session_factory) -> SqlActivityStore:
    return SqlActivityStore(session_factory)


class FakeTokenStore:
    """In-memory TokenStore."""

    def __init__(self) -> None:
        self.records: dict[str, IntegrationRecord] = {}
        self.clear_calls: list[str] = []

    def add_connected(self, athlete_id: str, remote_user_id: str | None, scope: str = "READ WRITE") -> IntegrationRecord:
        now = datetime.now(timezone.utc)
        record = IntegrationRecord(
            athlete_id=athlete_id,
            remote_user_id=remote_user_id,
            access_token=f"access-{athlete_id}",
            refresh_token=f"refresh-{athlete_id}",
            scope=scope,
            expires_in_seconds=3600,
            token_expires_at=now + timedelta(hours=1),
            is_connected=True,
            connected_at=now,
        )
        self.records[athlete_id] = record
        return record

    def get(self, athlete_id):
        return self.records.get(athlete_id)

    def find_by_remote_user_id(self, remote_user_id):
        wanted = normalize_remote_user_id(remote_user_id)
        if wanted is None:
            return None
        for record in self.records.values():
            if normalize_remote_user_id(record.remote_user_id) == wanted:
                return record
        return None

    def save_tokens(self, athlete_id, tokens: TokenSet, *, permissions=None):
        now = datetime.now(timezone.utc)
        existing = self.records.get(athlete_id) or IntegrationRecord(athlete_id=athlete_id)
        record = existing.model_copy(
            update={
                "access_token": tokens.access_token,
                "refresh_token": tokens.refresh_token,
                "scope": tokens.scope,
                "expires_in_seconds": tokens.expires_in,
                "token_expires_at": now + timedelta(seconds=tokens.expires_in) if tokens.expires_in else None,
                "is_connected": True,
                "connected_at": now,
                "disconnected_at": None,
                "permissions": permissions,
            }
        )
        self.records[athlete_id] = record
        return record

    def update_tokens(self, athlete_id, tokens: TokenSet):
        values = {
            "access_token": tokens.access_token,
            "expires_in_seconds": tokens.expires_in,
            "token_expires_at": datetime.now(timezone.utc) + timedelta(seconds=tokens.expires_in) if tokens.expires_in else None,
        }
        if tokens.refresh_token:
            values["refresh_token"] = tokens.refresh_token
        if tokens.scope:
            values["scope"] = tokens.scope
        return self._update(athlete_id, values)

    def set_remote_user_id(self, athlete_id, remote_user_id):
        holder = self.find_by_remote_user_id(remote_user_id)
        if holder is not None and holder.athlete_id != athlete_id:
            raise RemoteUserIdConflictError(remote_user_id)
        return self._update(athlete_id, {"remote_user_id": str(remote_user_id).strip()})

    def save_profile(self, athlete_id, profile: GarminProfile):
        return self._update(
            athlete_id,
            {
                "user_name": profile.user_name,
                "profile_id": profile.profile_id,
                "user_profile": profile.user_data or None,
                "user_sleep": profile.user_sleep or None,
                "user_preferences": profile.preferences or None,
                "last_sync_at": datetime.now(timezone.utc),
            },
        )

    def update_permissions(self, athlete_id, *, scope, permissions):
        if athlete_id not in self.records:
            return None
        values = {"permissions": permissions, "last_sync_at": datetime.now(timezone.utc)}
        if scope is not None:
            values["scope"] = scope
        return self._update(athlete_id, values)

    def clear(self, athlete_id):
        self.clear_calls.append(athlete_id)
        if athlete_id not in self.records:
            return False
        self.records[athlete_id] = IntegrationRecord(
            athlete_id=athlete_id,
            is_connected=False,
            disconnected_at=datetime.now(timezone.utc),
        )
        return True

    def _update(self, athlete_id, values):
        if athlete_id not in self.records:
            raise IntegrationNotFoundError(athlete_id)
        self.records[athlete_id] = self.records[athlete_id].model_copy(update=values)
        return self.records[athlete_id]


class FakeActivityStore:
    """In-memory ActivityStore with the same merge semantics as the SQL store."""

    def __init__(self) -> None:
        self.records: dict[str, ActivityRecord] = {}
        self.fail_on: set[str] = set()
        self._counter = 0

    def upsert_summary(self, summary: NormalizedSummary):
        if not summary.athlete_id:
            raise ActivityValidationError("athlete_id")
        if not summary.source_activity_id:
            raise ActivityValidationError("source_activity_id")
        if summary.source_activity_id in self.fail_on:
            raise RuntimeError(f"storage failure for {summary.source_activity_id}")

        now = datetime.now(timezone.utc)
        values = {field: getattr(summary, field) for field in SUMMARY_FIELDS}
        existing = self.records.get(summary.source_activity_id)
        if existing is None:
            self._counter += 1
            record = ActivityRecord(
                id=f"local-{self._counter}",
                athlete_id=summary.athlete_id,
                source_activity_id=summary.source_activity_id,
                synced_at=now,
                last_updated_at=now,
                **values,
            )
        else:
            record = existing.model_copy(update={**values, "last_updated_at": now})
        self.records[summary.source_activity_id] = record
        return record

    def merge_detail(self, source_activity_id, detail_payload):
        existing = self.records.get(source_activity_id)
        if existing is None:
            return None
        now = datetime.now(timezone.utc)
        record = existing.model_copy(
            update={
                "detail_payload": {**(existing.detail_payload or {}), **detail_payload},
                "hydrated_at": existing.hydrated_at or now,
                "last_updated_at": now,
            }
        )
        self.records[source_activity_id] = record
        return record

    def get(self, source_activity_id):
        return self.records.get(source_activity_id)

    def list_for_athlete(self, athlete_id):
        return [record for record in self.records.values() if record.athlete_id == athlete_id]


@pytest.fixture
def fake_token_store() -> FakeTokenStore:
    return FakeTokenStore()


@pytest.fixture
def fake_activity_store() -> FakeActivityStore:
    return FakeActivityStore()
