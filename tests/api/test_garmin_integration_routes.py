"""HTTP tests for /integrations/garmin."""

from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from athlete_sync.api.dependencies.auth import get_current_athlete_id
from athlete_sync.api.dependencies.garmin import get_integration_service
from athlete_sync.core.auth_jwt import create_access_token
from athlete_sync.integrations.garmin.client import GarminProfileClient
from athlete_sync.integrations.garmin.errors import GarminAuthorizationError, GarminOAuthTimeoutError
from athlete_sync.integrations.garmin.oauth import GarminOAuthClient, PendingAuthorizationStore
from athlete_sync.integrations.garmin.schemas import GarminProfile, TokenSet
from athlete_sync.integrations.garmin.token_service import GarminIntegrationService
from athlete_sync.main import app


@pytest.fixture
def oauth_client():
    client = MagicMock(spec=GarminOAuthClient)
    real = GarminOAuthClient(client_id="cid", client_secret="secret")
    client.is_configured = True
    client.authorize.side_effect = real.authorize
    client.exchange_code.return_value = TokenSet(access_token="A", refresh_token="R", expires_in=3600, scope="READ WRITE")
    client.revoke.return_value = True
    return client


@pytest.fixture
def service(fake_token_store, oauth_client):
    profile_client = MagicMock(spec=GarminProfileClient)
    profile_client.fetch_user_id.return_value = "u-123"
    profile_client.fetch_user_profile.return_value = GarminProfile(user_id="u-123", user_name="runner")
    return GarminIntegrationService(
        fake_token_store,
        oauth_client=oauth_client,
        profile_client=profile_client,
        pending=PendingAuthorizationStore(ttl_seconds=600),
    )


@pytest.fixture
def client(service):
    app.dependency_overrides[get_integration_service] = lambda: service
    app.dependency_overrides[get_current_athlete_id] = lambda: "athlete-1"
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def test_connect_then_callback(client, fake_token_store, oauth_client):
    response = client.get("/integrations/garmin/connect")
    assert response.status_code == 200
    url = response.json()["url"]
    state = parse_qs(urlparse(url).query)["state"][0]

    callback = client.get("/integrations/garmin/callback", params={"code": "abc", "state": state}, follow_redirects=False)

    assert callback.status_code in (302, 307)
    assert callback.headers["location"].endswith("/settings?garmin=connected")
    record = fake_token_store.get("athlete-1")
    assert record.is_connected is True
    assert record.remote_user_id == "u-123"
    assert oauth_client.exchange_code.call_args.args[0] == "abc"


def test_connect_redirect_mode(client):
    response = client.get("/integrations/garmin/connect", params={"redirect": "true"}, follow_redirects=False)

    assert response.status_code in (302, 307)
    assert "code_challenge_method=S256" in response.headers["location"]


def test_callback_with_unknown_state(client):
    response = client.get("/integrations/garmin/callback", params={"code": "abc", "state": "forged"})

    assert response.status_code == 400
    assert response.json()["detail"]["error"] == "invalid_state"


def test_callback_with_garmin_error(client):
    response = client.get("/integrations/garmin/callback", params={"error": "access_denied"})

    assert response.status_code == 400


def test_callback_rejected_code_asks_for_reauthorization(client, oauth_client):
    oauth_client.exchange_code.side_effect = GarminAuthorizationError("rejected", status_code=400, body="invalid_grant")
    state = parse_qs(urlparse(client.get("/integrations/garmin/connect").json()["url"]).query)["state"][0]

    response = client.get("/integrations/garmin/callback", params={"code": "old", "state": state})

    assert response.status_code == 401
    assert response.json()["detail"]["reauthorize"] is True


def test_callback_timeout_is_gateway_timeout(client, oauth_client):
    oauth_client.exchange_code.side_effect = GarminOAuthTimeoutError("slow")
    state = parse_qs(urlparse(client.get("/integrations/garmin/connect").json()["url"]).query)["state"][0]

    response = client.get("/integrations/garmin/callback", params={"code": "abc", "state": state})

    assert response.status_code == 504


def test_status_and_disconnect(client, fake_token_store, oauth_client):
    fake_token_store.add_connected("athlete-1", "u-123")

    status = client.get("/integrations/garmin/status").json()
    assert status["connected"] is True
    assert status["capabilities"] == ["read-activity", "write-activity"]
    assert "access_token" not in status

    response = client.delete("/integrations/garmin")
    assert response.status_code == 200
    assert response.json() == {"connected": False, "disconnected": True}
    oauth_client.revoke.assert_called_once_with("access-athlete-1")

    again = client.post("/integrations/garmin/disconnect")
    assert again.status_code == 200
    assert client.get("/integrations/garmin/status").json()["connected"] is False


def test_refresh_revoked_token(client, fake_token_store, oauth_client):
    fake_token_store.add_connected("athlete-1", "u-123")
    oauth_client.refresh_with_retry.side_effect = GarminAuthorizationError("revoked", status_code=401)

    response = client.post("/integrations/garmin/refresh")

    assert response.status_code == 401
    assert response.json()["detail"]["reauthorize"] is True


def test_refresh_not_connected(client):
    assert client.post("/integrations/garmin/refresh").status_code == 404


def test_profile_sync(client, fake_token_store):
    fake_token_store.add_connected("athlete-1", None)

    response = client.post("/integrations/garmin/profile/sync")

    assert response.status_code == 200
    assert response.json()["remote_user_id"] == "u-123"
    assert response.json()["user_name"] == "runner"


class TestAuthDependency:
    @pytest.fixture
    def authed_client(self, service):
        app.dependency_overrides[get_integration_service] = lambda: service
        try:
            yield TestClient(app)
        finally:
            app.dependency_overrides.clear()

    def test_missing_token(self, authed_client):
        assert authed_client.get("/integrations/garmin/status").status_code == 401

    def test_invalid_token(self, authed_client):
        response = authed_client.get("/integrations/garmin/status", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    def test_valid_token_identifies_athlete(self, authed_client, fake_token_store):
        fake_token_store.add_connected("athlete-7", "u-7")
        token = create_access_token("athlete-7")

        response = authed_client.get("/integrations/garmin/status", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 200
        assert response.json()["athlete_id"] == "athlete-7"
        assert response.json()["connected"] is True
