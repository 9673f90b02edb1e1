"""SqlTokenStore and IdentityResolver against an in-memory SQLite database."""

import pytest
from sqlalchemy import select

from athlete_sync.db.models import GarminIntegration
from athlete_sync.integrations.garmin.errors import IntegrationNotFoundError, RemoteUserIdConflictError
from athlete_sync.integrations.garmin.identity import IdentityResolver
from athlete_sync.integrations.garmin.schemas import GarminProfile, TokenSet

TOKENS = TokenSet(access_token="A", refresh_token="R", expires_in=3600, scope="READ WRITE")


def test_save_tokens_connects_without_remote_user(token_store):
    record = token_store.save_tokens("athlete-1", TOKENS, permissions={"read": True, "write": True})

    assert record.is_connected is True
    assert record.remote_user_id is None
    assert record.access_token == "A"
    assert record.refresh_token == "R"
    assert record.expires_in_seconds == 3600
    assert record.token_expires_at is not None
    assert record.capabilities == frozenset({"read-activity", "write-activity"})
    assert record.permissions == {"read": True, "write": True}


def test_tokens_are_encrypted_at_rest(token_store, session_factory):
    token_store.save_tokens("athlete-1", TOKENS)

    with session_factory() as session:
        row = session.execute(select(GarminIntegration)).scalar_one()
        assert row.access_token != "A"
        assert row.refresh_token != "R"

    assert token_store.get("athlete-1").access_token == "A"


def test_set_remote_user_id_and_lookup_ignores_case_and_whitespace(token_store):
    token_store.save_tokens("athlete-1", TOKENS)
    token_store.set_remote_user_id("athlete-1", " U-123 ")

    assert token_store.get("athlete-1").remote_user_id == "U-123"
    found = token_store.find_by_remote_user_id("u-123")
    assert found.athlete_id == "athlete-1"
    # Routing lookups never decrypt tokens
    assert found.access_token is None


def test_remote_user_id_conflict(token_store):
    token_store.save_tokens("athlete-1", TOKENS)
    token_store.save_tokens("athlete-2", TOKENS)
    token_store.set_remote_user_id("athlete-1", "u-123")

    with pytest.raises(RemoteUserIdConflictError):
        token_store.set_remote_user_id("athlete-2", "U-123")

    # Re-linking the same athlete is fine
    assert token_store.set_remote_user_id("athlete-1", "u-123").remote_user_id == "u-123"


def test_link_losing_a_race_is_reported_as_conflict(token_store, monkeypatch):
    token_store.save_tokens("athlete-1", TOKENS)
    token_store.save_tokens("athlete-2", TOKENS)
    token_store.set_remote_user_id("athlete-1", "u-123")
    # Both callbacks passed the holder lookup before either UPDATE ran
    monkeypatch.setattr(token_store, "find_by_remote_user_id", lambda remote_user_id: None)

    with pytest.raises(RemoteUserIdConflictError):
        token_store.set_remote_user_id("athlete-2", "u-123")

    assert token_store.get("athlete-1").remote_user_id == "u-123"
    assert token_store.get("athlete-2").remote_user_id is None


def test_ids_differing_only_by_case_cannot_both_be_linked(token_store, monkeypatch):
    token_store.save_tokens("athlete-1", TOKENS)
    token_store.save_tokens("athlete-2", TOKENS)
    token_store.set_remote_user_id("athlete-1", "u-123")
    monkeypatch.setattr(token_store, "find_by_remote_user_id", lambda remote_user_id: None)

    with pytest.raises(RemoteUserIdConflictError):
        token_store.set_remote_user_id("athlete-2", " U-123 ")

    monkeypatch.undo()
    assert token_store.find_by_remote_user_id("U-123").athlete_id == "athlete-1"


def test_update_tokens_keeps_refresh_token_when_not_rotated(token_store):
    token_store.save_tokens("athlete-1", TOKENS)

    record = token_store.update_tokens("athlete-1", TokenSet(access_token="A2", expires_in=7200))

    assert record.access_token == "A2"
    assert record.refresh_token == "R"
    assert record.expires_in_seconds == 7200
    assert record.scope == "READ WRITE"


def test_update_unknown_athlete_raises(token_store):
    with pytest.raises(IntegrationNotFoundError):
        token_store.update_tokens("missing", TOKENS)
    assert token_store.update_permissions("missing", scope="READ", permissions={}) is None


def test_save_profile(token_store):
    token_store.save_tokens("athlete-1", TOKENS)

    record = token_store.save_profile(
        "athlete-1",
        GarminProfile(
            user_id="u-123",
            user_name="runner",
            profile_id="42",
            user_data={"gender": "FEMALE"},
            user_sleep={"sleepTime": 79200},
            preferences={"measurementSystem": "metric"},
        ),
    )

    assert record.user_name == "runner"
    assert record.profile_id == "42"
    assert record.user_profile == {"gender": "FEMALE"}
    assert record.user_sleep == {"sleepTime": 79200}
    assert record.user_preferences == {"measurementSystem": "metric"}
    assert record.last_sync_at is not None


def test_permission_snapshot_without_scope_keeps_oauth_scope(token_store):
    token_store.save_tokens("athlete-1", TOKENS.model_copy(update={"scope": "CONNECT_READ PARTNER_WRITE"}))

    record = token_store.update_permissions(
        "athlete-1", scope=None, permissions={"permissions": ["ACTIVITY_EXPORT", "HEALTH_EXPORT"]}
    )

    assert record.scope == "CONNECT_READ PARTNER_WRITE"
    assert record.capabilities == frozenset({"read-activity", "write-activity"})
    assert record.permissions == {"permissions": ["ACTIVITY_EXPORT", "HEALTH_EXPORT"]}


def test_update_permissions(token_store):
    token_store.save_tokens("athlete-1", TOKENS)

    record = token_store.update_permissions("athlete-1", scope="READ", permissions={"scope": "READ"})

    assert record.scope == "READ"
    assert record.capabilities == frozenset({"read-activity"})
    assert record.permissions == {"scope": "READ"}
    assert record.last_sync_at is not None


def test_clear_wipes_everything_including_remote_user_id(token_store):
    token_store.save_tokens("athlete-1", TOKENS, permissions={"read": True})
    token_store.set_remote_user_id("athlete-1", "u-123")

    assert token_store.clear("athlete-1") is True

    record = token_store.get("athlete-1")
    assert record.is_connected is False
    assert record.remote_user_id is None
    assert record.access_token is None
    assert record.refresh_token is None
    assert record.scope is None
    assert record.permissions is None
    assert record.disconnected_at is not None
    assert token_store.find_by_remote_user_id("u-123") is None


def test_clear_unknown_athlete(token_store):
    assert token_store.clear("missing") is False


def test_reconnect_after_clear_resets_disconnected_at(token_store):
    token_store.save_tokens("athlete-1", TOKENS)
    token_store.clear("athlete-1")

    record = token_store.save_tokens("athlete-1", TOKENS)

    assert record.is_connected is True
    assert record.disconnected_at is None


class TestIdentityResolver:
    def test_resolves_linked_athlete(self, token_store):
        token_store.save_tokens("athlete-1", TOKENS)
        token_store.set_remote_user_id("athlete-1", "u-123")

        resolver = IdentityResolver(token_store)

        assert resolver.resolve("  U-123").athlete_id == "athlete-1"

    @pytest.mark.parametrize("remote_user_id", [None, "", "   "])
    def test_empty_identifier_is_not_found(self, token_store, remote_user_id):
        assert IdentityResolver(token_store).resolve(remote_user_id) is None

    def test_unknown_identifier_is_not_found(self, token_store):
        assert IdentityResolver(token_store).resolve("u-unknown") is None
