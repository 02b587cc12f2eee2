"""FastAPI application exposing device linking, sync and health data."""

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Body, Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from fitlink_connector import (
    AlreadySyncingError,
    ConnectorError,
    DeviceDisconnectedError,
    DeviceNotFoundError,
    ExpiredOrInvalidStateError,
    InvalidPreferencesError,
    InvalidProviderError,
    NotAuthenticatedError,
    OAuthError,
    ProviderAuthError,
    SyncFailedError,
    SyncTimeoutError,
    WearableService,
    create_service,
)
from fitlink_connector.vendor_types import HealthDataType

logger = logging.getLogger(__name__)

_service: WearableService | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    if _service is not None:
        await _service.close()


app = FastAPI(
    title="FitLink Wearable Service",
    description="Wearable device linking, sync and normalized health data",
    version="0.1.0",
    lifespan=lifespan,
)

# First match wins, so subclasses come before their bases.
ERROR_STATUS: list[tuple[type[ConnectorError], int]] = [
    (NotAuthenticatedError, 401),
    (DeviceNotFoundError, 404),
    (InvalidProviderError, 400),
    (ExpiredOrInvalidStateError, 400),
    (InvalidPreferencesError, 400),
    (AlreadySyncingError, 409),
    (DeviceDisconnectedError, 409),
    (SyncTimeoutError, 504),
    (ProviderAuthError, 502),
    (SyncFailedError, 502),
    (OAuthError, 502),
]


def get_service() -> WearableService:
    """Shared service instance, built from the environment on first use."""
    global _service
    if _service is None:
        _service = create_service()
    return _service


def status_for(exc: ConnectorError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status
    return 500


@app.exception_handler(ConnectorError)
async def connector_error_handler(request: Request, exc: ConnectorError) -> JSONResponse:
    """Render ConnectorError exceptions in the API error format."""
    status = status_for(exc)
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=status, content=exc.to_dict())


class ConnectBody(BaseModel):
    provider: str
    redirect_uri: str | None = None


class SyncBody(BaseModel):
    data_types: list[HealthDataType] | None = None


class BatchSyncBody(BaseModel):
    device_ids: list[str]
    data_types: list[HealthDataType] | None = None


UserId = Annotated[str | None, Header(alias="X-User-Id")]

v1 = APIRouter(prefix="/v1")


# ============================================================================
# Health Check (unversioned)
# ============================================================================

@app.get("/health")
async def health_check() -> dict[str, Any]:
    """Health check endpoint for monitoring."""
    return {
        "status": "healthy",
        "version": app.version,
        "service": "fitlink",
        "local_mode": os.getenv("LOCAL_MODE", "false").lower() == "true",
    }


# ============================================================================
# Providers and linking
# ============================================================================

@v1.get("/providers")
async def providers(service: WearableService = Depends(get_service)) -> list[dict[str, Any]]:
    return [
        config.model_dump(
            mode="json",
            include={"id", "name", "description", "icon", "color", "data_types",
                     "supports_webhooks", "requires_app", "platform"},
        )
        for config in service.list_providers()
    ]


@v1.post("/devices/connect")
async def connect_device(
    body: ConnectBody,
    user_id: UserId = None,
    service: WearableService = Depends(get_service),
) -> dict[str, str]:
    """Start linking a provider; the client redirects the user to the returned URL."""
    url = await service.connect_device(user_id, body.provider, body.redirect_uri)
    return {"authorization_url": url}


@v1.get("/oauth/callback")
async def oauth_callback(
    state: str | None = None,
    code: str | None = None,
    error: str | None = None,
    user_id: UserId = None,
    service: WearableService = Depends(get_service),
) -> dict[str, Any]:
    """Provider redirect target."""
    device = await service.handle_oauth_callback(code, state, user_id=user_id, error=error)
    return {"status": "connected", "device": device.model_dump(mode="json")}


# ============================================================================
# Devices
# ============================================================================

@v1.get("/devices")
async def list_devices(
    user_id: UserId = None,
    service: WearableService = Depends(get_service),
) -> list[dict[str, Any]]:
    return [d.model_dump(mode="json") for d in service.list_devices(user_id)]


@v1.post("/devices/{device_id}/sync")
async def sync_device(
    device_id: str,
    body: SyncBody | None = None,
    user_id: UserId = None,
    service: WearableService = Depends(get_service),
) -> dict[str, Any]:
    history = await service.trigger_sync(
        user_id, device_id, body.data_types if body else None
    )
    return history.model_dump(mode="json")


@v1.post("/devices/{device_id}/disconnect")
async def disconnect_device(
    device_id: str,
    user_id: UserId = None,
    service: WearableService = Depends(get_service),
) -> dict[str, Any]:
    device = await service.disconnect_device(user_id, device_id)
    return {"status": "disconnected", "device": device.model_dump(mode="json")}


@v1.delete("/devices/{device_id}")
async def delete_device(
    device_id: str,
    user_id: UserId = None,
    service: WearableService = Depends(get_service),
) -> dict[str, str]:
    service.delete_device(user_id, device_id)
    return {"status": "deleted", "device_id": device_id}


@v1.get("/devices/{device_id}/history")
async def sync_history(
    device_id: str,
    limit: int = Query(20, ge=1, le=100),
    user_id: UserId = None,
    service: WearableService = Depends(get_service),
) -> list[dict[str, Any]]:
    return [h.model_dump(mode="json") for h in service.get_sync_history(user_id, device_id, limit)]


@v1.get("/devices/{device_id}/preferences")
async def get_preferences(
    device_id: str,
    user_id: UserId = None,
    service: WearableService = Depends(get_service),
) -> dict[str, Any] | None:
    prefs = service.get_sync_preferences(user_id, device_id)
    return prefs.model_dump(mode="json") if prefs else None


@v1.patch("/devices/{device_id}/preferences")
async def update_preferences(
    device_id: str,
    partial: dict[str, Any] = Body(...),
    user_id: UserId = None,
    service: WearableService = Depends(get_service),
) -> dict[str, Any]:
    prefs = service.update_sync_preferences(user_id, device_id, partial)
    return prefs.model_dump(mode="json")


# ============================================================================
# Sync batches
# ============================================================================

@v1.post("/sync")
async def sync_devices(
    body: BatchSyncBody,
    user_id: UserId = None,
    service: WearableService = Depends(get_service),
) -> list[dict[str, Any]]:
    results = await service.sync_devices(user_id, body.device_ids, body.data_types)
    return [r.to_dict() for r in results]


@v1.post("/sync/due")
async def sync_due(service: WearableService = Depends(get_service)) -> dict[str, Any]:
    """Scheduler entry point; authentication is enforced upstream."""
    results = await service.sync_due_devices()
    return {
        "synced": sum(1 for r in results if r.ok),
        "failed": sum(1 for r in results if not r.ok),
        "results": [r.to_dict() for r in results],
    }


# ============================================================================
# Health data
# ============================================================================

@v1.get("/health-data/{data_type}")
async def health_data(
    data_type: HealthDataType,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = Query(1000, ge=1, le=1000),
    user_id: UserId = None,
    service: WearableService = Depends(get_service),
) -> list[dict[str, Any]]:
    rows = service.get_health_data(user_id, data_type, start=start, end=end, limit=limit)
    return [r.model_dump(mode="json", exclude={"raw_data"}) for r in rows]


@v1.get("/health-data/{data_type}/daily")
async def daily_health_data(
    data_type: HealthDataType,
    start: datetime,
    end: datetime,
    user_id: UserId = None,
    service: WearableService = Depends(get_service),
) -> list[dict[str, Any]]:
    return [
        d.model_dump(mode="json")
        for d in service.get_aggregated_data(user_id, data_type, start, end)
    ]


@v1.get("/workouts")
async def workouts(
    limit: int = Query(10, ge=1, le=100),
    user_id: UserId = None,
    service: WearableService = Depends(get_service),
) -> list[dict[str, Any]]:
    return [
        w.model_dump(mode="json", exclude={"raw_data"})
        for w in service.get_latest_workouts(user_id, limit)
    ]


app.include_router(v1)


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
