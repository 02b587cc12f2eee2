"""Tests for the HTTP routes and their error mapping."""

from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import pytest
from cryptography.fernet import Fernet
from fastapi.testclient import TestClient

from fitlink_connector import WearableService
from fitlink_connector.oauth import OAuthHandler
from fitlink_connector.providers import get_provider_config
from fitlink_connector.store import InMemoryDeviceStore
from fitlink_connector.sync_client import SyncClient, SyncResponse
from fitlink_connector.tokens import CredentialStore
from fitlink_connector.vendor_types import HealthDataType, OAuthTokens, utcnow
from server.api import app, get_service

REDIRECT = "https://app.example.com/callback"
USER = {"X-User-Id": "user-1"}


class StaticSyncClient(SyncClient):
    def __init__(self):
        self.response = SyncResponse()
        self.closed = False

    async def execute_sync(self, request):
        return self.response

    async def close(self):
        self.closed = True


class LocalOAuthHandler(OAuthHandler):
    """Exchanges any code for a fixed token set."""

    def __init__(self, provider):
        config = get_provider_config(provider)
        super().__init__(
            client_id="client-id",
            client_secret="client-secret",
            auth_url=config.auth_url,
            token_url=config.token_url,
            revoke_url=config.revoke_url,
            scope_separator=config.scope_separator,
            provider=config.id.value,
        )

    async def exchange_code(self, code, redirect_uri, code_verifier=None, **extra_params):
        return OAuthTokens(
            access_token="access-1",
            refresh_token="refresh-1",
            expires_at=utcnow() + timedelta(hours=1),
            scopes=["read"],
        )

    async def revoke_token(self, token, token_type="access_token"):
        return True


@pytest.fixture
def sync_client():
    return StaticSyncClient()


@pytest.fixture
def service(sync_client):
    return WearableService(
        InMemoryDeviceStore(),
        CredentialStore(local_mode=True, encryption_key=Fernet.generate_key()),
        sync_client,
        oauth_factory=LocalOAuthHandler,
    )


@pytest.fixture
def client(service):
    app.dependency_overrides[get_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


def connect(client, provider="strava"):
    response = client.post(
        "/v1/devices/connect",
        json={"provider": provider, "redirect_uri": REDIRECT},
        headers=USER,
    )
    assert response.status_code == 200
    state = parse_qs(urlparse(response.json()["authorization_url"]).query)["state"][0]
    callback = client.get("/v1/oauth/callback", params={"state": state, "code": "abc"})
    assert callback.status_code == 200
    return callback.json()["device"]


def test_health_check(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_providers_lists_public_fields(client):
    response = client.get("/v1/providers")

    assert response.status_code == 200
    providers = {p["id"]: p for p in response.json()}
    assert "strava" in providers
    assert providers["apple_health"]["requires_app"] is True
    assert "token_url" not in providers["strava"]


class TestErrorMapping:
    """ConnectorError subclasses map to stable status codes and error bodies."""

    def test_missing_user_is_401(self, client):
        response = client.get("/v1/devices")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "not_authenticated"

    def test_unknown_device_is_404(self, client):
        response = client.get("/v1/devices/nope/history", headers=USER)
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "device_not_found"

    def test_unknown_provider_is_400(self, client):
        response = client.post("/v1/devices/connect", json={"provider": "nokia"}, headers=USER)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_provider"

    def test_native_app_provider_is_400(self, client):
        response = client.post(
            "/v1/devices/connect", json={"provider": "apple_health"}, headers=USER
        )
        assert response.status_code == 400

    def test_bad_state_is_400(self, client):
        response = client.get("/v1/oauth/callback", params={"state": "forged", "code": "abc"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "expired_or_invalid_state"

    def test_sync_disconnected_device_is_409(self, client):
        device = connect(client)
        assert client.post(f"/v1/devices/{device['id']}/disconnect", headers=USER).status_code == 200

        response = client.post(f"/v1/devices/{device['id']}/sync", headers=USER)
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "device_disconnected"


def test_connect_and_callback_links_device(client):
    device = connect(client)

    assert device["status"] == "connected"
    listed = client.get("/v1/devices", headers=USER).json()
    assert [d["id"] for d in listed] == [device["id"]]


def test_state_cannot_be_replayed(client):
    response = client.post(
        "/v1/devices/connect", json={"provider": "strava", "redirect_uri": REDIRECT}, headers=USER
    )
    state = parse_qs(urlparse(response.json()["authorization_url"]).query)["state"][0]

    assert client.get("/v1/oauth/callback", params={"state": state, "code": "abc"}).status_code == 200
    assert client.get("/v1/oauth/callback", params={"state": state, "code": "abc"}).status_code == 400


def test_sync_stores_health_data(client, sync_client):
    device = connect(client)
    sync_client.response = SyncResponse(data={
        HealthDataType.HEART_RATE: [
            {"timestamp": "2024-01-15T08:00:00Z", "value": 60, "unit": "bpm"},
            {"timestamp": "2024-01-15T20:00:00Z", "value": 80, "unit": "bpm"},
        ]
    })

    response = client.post(
        f"/v1/devices/{device['id']}/sync", json={"data_types": ["heart_rate"]}, headers=USER
    )
    assert response.status_code == 200
    assert response.json()["status"] == "success"
    assert response.json()["records_stored"] == 2

    rows = client.get("/v1/health-data/heart_rate", headers=USER).json()
    assert sorted(r["value_numeric"] for r in rows) == [60, 80]
    assert all("raw_data" not in r for r in rows)

    daily = client.get(
        "/v1/health-data/heart_rate/daily",
        params={"start": "2024-01-15T00:00:00Z", "end": "2024-01-16T00:00:00Z"},
        headers=USER,
    ).json()
    assert daily == [{"date": "2024-01-15", "value": 70.0}]

    history = client.get(f"/v1/devices/{device['id']}/history", headers=USER).json()
    assert len(history) == 1


def test_preferences_round_trip(client):
    device = connect(client)

    response = client.patch(
        f"/v1/devices/{device['id']}/preferences",
        json={"sync_frequency_minutes": 120},
        headers=USER,
    )
    assert response.status_code == 200
    prefs = client.get(f"/v1/devices/{device['id']}/preferences", headers=USER).json()
    assert prefs["sync_frequency_minutes"] == 120


def test_sync_due_reports_counts(client):
    response = client.post("/v1/sync/due")

    assert response.status_code == 200
    assert response.json() == {"synced": 0, "failed": 0, "results": []}


def test_delete_device(client):
    device = connect(client)

    response = client.delete(f"/v1/devices/{device['id']}", headers=USER)
    assert response.status_code == 200
    assert client.get("/v1/devices", headers=USER).json() == []


def test_shutdown_closes_the_service(service, sync_client, monkeypatch):
    monkeypatch.setattr("server.api._service", service)

    with TestClient(app) as client:
        assert client.get("/health").status_code == 200
        assert sync_client.closed is False

    assert sync_client.closed is True
