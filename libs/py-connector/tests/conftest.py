"""Shared fixtures for connector tests."""

import asyncio
from datetime import timedelta

import pytest
from cryptography.fernet import Fernet

from fitlink_connector.oauth import OAuthHandler
from fitlink_connector.orchestrator import SyncOrchestrator
from fitlink_connector.preferences import SyncPreferencesManager
from fitlink_connector.providers import get_provider_config
from fitlink_connector.registry import DeviceRegistry
from fitlink_connector.store import InMemoryDeviceStore
from fitlink_connector.sync_client import SyncClient, SyncResponse
from fitlink_connector.tokens import CredentialStore
from fitlink_connector.vendor_types import OAuthTokens, utcnow


class FakeSyncClient(SyncClient):
    """Returns a canned response, raises a canned error, optionally after a delay."""

    def __init__(self):
        self.response = SyncResponse()
        self.error = None
        self.delay = 0.0
        self.requests = []
        self.closed = False

    async def execute_sync(self, request):
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.response

    async def close(self):
        self.closed = True


class FakeOAuthHandler(OAuthHandler):
    """OAuthHandler that never leaves the process."""

    def __init__(self, provider, tokens=None, refresh_error=None, revoke_error=None, refresh_delay=0.0):
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
        self.tokens = tokens
        self.refresh_error = refresh_error
        self.refresh_delay = refresh_delay
        self.revoke_error = revoke_error
        self.exchanged = []
        self.refreshed = []
        self.revoked = []

    async def exchange_code(self, code, redirect_uri, code_verifier=None, **extra_params):
        self.exchanged.append((code, redirect_uri, code_verifier))
        return self.tokens.model_copy()

    async def refresh_token(self, refresh_token, **extra_params):
        self.refreshed.append(refresh_token)
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        if self.refresh_error is not None:
            raise self.refresh_error
        return self.tokens.model_copy()

    async def revoke_token(self, token, token_type="access_token"):
        self.revoked.append(token)
        if self.revoke_error is not None:
            raise self.revoke_error
        return True


class FakeOAuthFactory:
    """``oauth_factory`` that records every handler it hands out."""

    def __init__(self):
        self.handlers = []
        self.configured = True
        self.refresh_error = None
        self.refresh_delay = 0.0
        self.revoke_error = None
        self.tokens = OAuthTokens(
            access_token="access-new",
            refresh_token="refresh-new",
            expires_in=3600,
            expires_at=utcnow() + timedelta(hours=1),
            scopes=["read"],
            provider_user_id="athlete-1",
        )

    def __call__(self, provider):
        if not self.configured:
            return None
        handler = FakeOAuthHandler(
            provider,
            tokens=self.tokens,
            refresh_error=self.refresh_error,
            refresh_delay=self.refresh_delay,
            revoke_error=self.revoke_error,
        )
        self.handlers.append(handler)
        return handler


@pytest.fixture
def store():
    return InMemoryDeviceStore()


@pytest.fixture
def credentials():
    return CredentialStore(local_mode=True, encryption_key=Fernet.generate_key())


@pytest.fixture
def registry(store):
    return DeviceRegistry(store)


@pytest.fixture
def preferences(store):
    return SyncPreferencesManager(store)


@pytest.fixture
def sync_client():
    return FakeSyncClient()


@pytest.fixture
def oauth_factory():
    return FakeOAuthFactory()


@pytest.fixture
def orchestrator(store, registry, preferences, credentials, sync_client, oauth_factory):
    return SyncOrchestrator(
        store=store,
        registry=registry,
        preferences=preferences,
        credentials=credentials,
        sync_client=sync_client,
        oauth_factory=oauth_factory,
        timeout=1.0,
    )


@pytest.fixture
def make_device(registry, credentials):
    """Connect a device and store credentials for it."""

    def make(
        provider="polar",
        user_id="user-1",
        access_token="access-1",
        refresh_token="refresh-1",
        expires_at=None,
    ):
        tokens = OAuthTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at or utcnow() + timedelta(hours=1),
            scopes=["read"],
        )
        device = registry.connect(user_id, provider, tokens)
        credentials.save_tokens(device.id, tokens, user_id=user_id, provider=provider)
        return device

    return make
