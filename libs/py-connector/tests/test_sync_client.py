"""Tests for the remote sync client."""

import json
from datetime import datetime, timezone
from unittest.mock import patch

import httpx
import pytest
from httpx import Response

from fitlink_connector.exceptions import (
    ProviderAuthError,
    SyncFailedError,
    SyncTimeoutError,
    TokenExpiredError,
)
from fitlink_connector.sync_client import HttpSyncClient, SyncRequest, classify_error
from fitlink_connector.vendor_types import HealthDataType


@pytest.fixture
def client():
    return HttpSyncClient("https://sync.example.com/", api_key="key-123")


@pytest.fixture
def request_():
    return SyncRequest(
        device_id="dev-1",
        user_id="user-1",
        provider="garmin",
        data_types=[HealthDataType.STEPS],
        since=datetime(2024, 1, 8, tzinfo=timezone.utc),
        access_token="access-1",
    )


@pytest.mark.asyncio
async def test_execute_sync_success(client, request_):
    response = Response(200, json={
        "data": {"steps": [{"timestamp": "2024-01-15T00:00:00Z", "value": 9000}]},
        "records_fetched": 1,
    })

    with patch.object(client.http_client, "post", return_value=response) as mock_post:
        result = await client.execute_sync(request_)

    assert result.data[HealthDataType.STEPS][0]["value"] == 9000
    assert result.records_fetched == 1
    assert result.errors == {}

    call_args = mock_post.call_args
    assert call_args[0][0] == "https://sync.example.com/sync"
    body = json.loads(call_args[1]["content"])
    assert body["device_id"] == "dev-1"
    assert body["data_types"] == ["steps"]
    assert body["access_token"] == "access-1"


def test_api_key_is_sent_as_bearer(client):
    assert client.http_client.headers["Authorization"] == "Bearer key-123"


@pytest.mark.asyncio
async def test_partial_errors_are_returned(client, request_):
    response = Response(200, json={"data": {}, "errors": {"steps": "quota exhausted"}})

    with patch.object(client.http_client, "post", return_value=response):
        result = await client.execute_sync(request_)

    assert result.errors == {"steps": "quota exhausted"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status, body, error_type, provider_code",
    [
        (401, {"error": {"code": "token_expired", "message": "Token expired"}}, TokenExpiredError, "token_expired"),
        (403, {"error": {"code": "forbidden", "message": "Scope missing"}}, ProviderAuthError, "forbidden"),
        (400, {"error": "Grant revoked", "code": "invalid_grant"}, ProviderAuthError, "invalid_grant"),
        (429, {"error": "Rate limited", "code": "rate_limited"}, SyncFailedError, "rate_limited"),
    ],
)
async def test_error_bodies_are_classified(client, request_, status, body, error_type, provider_code):
    response = Response(status, json=body)

    with patch.object(client.http_client, "post", return_value=response):
        with pytest.raises(error_type) as exc_info:
            await client.execute_sync(request_)

    assert exc_info.value.provider_code == provider_code
    assert exc_info.value.provider == "garmin"


@pytest.mark.asyncio
async def test_plain_text_error(client, request_):
    response = Response(502, text="Bad gateway")

    with patch.object(client.http_client, "post", return_value=response):
        with pytest.raises(SyncFailedError) as exc_info:
            await client.execute_sync(request_)

    assert exc_info.value.message == "Bad gateway"
    assert exc_info.value.status_code == 502


@pytest.mark.asyncio
async def test_timeout(client, request_):
    with patch.object(client.http_client, "post", side_effect=httpx.ReadTimeout("slow")):
        with pytest.raises(SyncTimeoutError):
            await client.execute_sync(request_)


@pytest.mark.asyncio
async def test_network_error(client, request_):
    with patch.object(client.http_client, "post", side_effect=httpx.ConnectError("refused")):
        with pytest.raises(SyncFailedError) as exc_info:
            await client.execute_sync(request_)

    assert exc_info.value.provider_code == "network_error"


@pytest.mark.asyncio
@pytest.mark.parametrize("response", [Response(200, text="not json"), Response(200, json={"data": "nope"})])
async def test_malformed_success_body(client, request_, response):
    with patch.object(client.http_client, "post", return_value=response):
        with pytest.raises(SyncFailedError) as exc_info:
            await client.execute_sync(request_)

    assert exc_info.value.provider_code == "invalid_response"


def test_classify_error_defaults_to_sync_failed():
    error = classify_error("strava", 500, None, "Internal error")

    assert type(error) is SyncFailedError
    assert error.to_dict()["error"]["code"] == "sync_failed"


@pytest.mark.asyncio
async def test_close(client):
    async with client:
        pass

    assert client.http_client.is_closed
