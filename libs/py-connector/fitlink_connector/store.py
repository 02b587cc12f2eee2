"""
Persistence for devices, sync history, health data, preferences and auth flows.

Two backends share the ``DeviceStore`` interface:

- ``InMemoryDeviceStore`` for LOCAL_MODE and tests
- ``DynamoDBDeviceStore``, a single-table design:

    ============================  ============================  =====================
    pk                            sk                            entity
    ============================  ============================  =====================
    DEVICE#{device_id}            DEVICE                        ConnectedDevice
    HISTORY#{device_id}           {started_at}#{history_id}     DeviceSyncHistory
    HEALTH#{user_id}#{data_type}  {timestamp}#{device_id}       WearableHealthData
    PREFS#{device_id}             PREFS                         SyncPreferences
    AUTHFLOW#{state_hash}         FLOW                          AuthFlowState
    ============================  ============================  =====================

  Devices carry ``gsi1pk = USER#{user_id}`` / ``gsi1sk = {provider}`` so a
  user's devices are one query away. Payloads are stored as JSON in ``data``.
"""

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import datetime, timezone

import boto3
from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError

from fitlink_normalize.schema import HealthDataType, WearableHealthData

from .exceptions import StoreError
from .vendor_types import (
    AuthFlowState,
    ConnectedDevice,
    DeviceStatus,
    DeviceSyncHistory,
    Provider,
    SyncPreferences,
)

logger = logging.getLogger(__name__)


def ts_key(dt: datetime) -> str:
    """Fixed-width, lexicographically sortable UTC timestamp."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class DeviceStore(ABC):
    """Storage interface used by the registry, orchestrator and service."""

    # Devices

    @abstractmethod
    def get_device(self, device_id: str) -> ConnectedDevice | None: ...

    @abstractmethod
    def find_device(self, user_id: str, provider: Provider) -> ConnectedDevice | None: ...

    @abstractmethod
    def list_devices(self, user_id: str) -> list[ConnectedDevice]: ...

    @abstractmethod
    def list_devices_with_status(
        self, statuses: Iterable[DeviceStatus]
    ) -> list[ConnectedDevice]: ...

    @abstractmethod
    def put_device(self, device: ConnectedDevice) -> None: ...

    @abstractmethod
    def replace_device_if_status(
        self, device: ConnectedDevice, expected: Iterable[DeviceStatus]
    ) -> bool:
        """Write ``device`` only if the stored status is in ``expected``."""

    @abstractmethod
    def delete_device(self, device_id: str) -> None: ...

    # Sync history

    @abstractmethod
    def add_history(self, entry: DeviceSyncHistory) -> None: ...

    @abstractmethod
    def list_history(self, device_id: str, limit: int = 20) -> list[DeviceSyncHistory]:
        """Most recent first."""

    # Health data

    @abstractmethod
    def upsert_health_data(self, rows: Iterable[WearableHealthData]) -> int:
        """Insert or replace rows by dedup key; returns rows written."""

    @abstractmethod
    def query_health_data(
        self,
        user_id: str,
        data_type: HealthDataType,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
    ) -> list[WearableHealthData]:
        """Newest first, ``start <= timestamp <= end``."""

    # Preferences

    @abstractmethod
    def get_preferences(self, device_id: str) -> SyncPreferences | None: ...

    @abstractmethod
    def put_preferences(self, prefs: SyncPreferences) -> None: ...

    @abstractmethod
    def delete_preferences(self, device_id: str) -> None: ...

    # Auth flows

    @abstractmethod
    def put_auth_flow(self, flow: AuthFlowState) -> None: ...

    @abstractmethod
    def pop_auth_flow(self, state_hash: str) -> AuthFlowState | None:
        """Atomically remove and return the flow, if any."""

    @abstractmethod
    def delete_expired_auth_flows(self, now: datetime) -> int: ...


class InMemoryDeviceStore(DeviceStore):
    """Thread-safe in-memory store for local mode and tests."""

    def __init__(self):
        self._lock = threading.Lock()
        self._devices: dict[str, str] = {}
        self._history: dict[str, list[str]] = {}
        self._health: dict[str, str] = {}
        self._prefs: dict[str, str] = {}
        self._flows: dict[str, str] = {}

    # Models are stored serialized so callers never share mutable state.

    def get_device(self, device_id: str) -> ConnectedDevice | None:
        with self._lock:
            data = self._devices.get(device_id)
        return ConnectedDevice.model_validate_json(data) if data else None

    def find_device(self, user_id: str, provider: Provider) -> ConnectedDevice | None:
        for device in self.list_devices(user_id):
            if device.provider == Provider(provider):
                return device
        return None

    def list_devices(self, user_id: str) -> list[ConnectedDevice]:
        with self._lock:
            devices = [ConnectedDevice.model_validate_json(d) for d in self._devices.values()]
        return [d for d in devices if d.user_id == user_id]

    def list_devices_with_status(
        self, statuses: Iterable[DeviceStatus]
    ) -> list[ConnectedDevice]:
        wanted = set(statuses)
        with self._lock:
            devices = [ConnectedDevice.model_validate_json(d) for d in self._devices.values()]
        return [d for d in devices if d.status in wanted]

    def put_device(self, device: ConnectedDevice) -> None:
        with self._lock:
            self._devices[device.id] = device.model_dump_json()

    def replace_device_if_status(
        self, device: ConnectedDevice, expected: Iterable[DeviceStatus]
    ) -> bool:
        wanted = set(expected)
        with self._lock:
            current = self._devices.get(device.id)
            if current is None:
                return False
            if ConnectedDevice.model_validate_json(current).status not in wanted:
                return False
            self._devices[device.id] = device.model_dump_json()
            return True

    def delete_device(self, device_id: str) -> None:
        with self._lock:
            self._devices.pop(device_id, None)

    def add_history(self, entry: DeviceSyncHistory) -> None:
        with self._lock:
            self._history.setdefault(entry.device_id, []).append(entry.model_dump_json())

    def list_history(self, device_id: str, limit: int = 20) -> list[DeviceSyncHistory]:
        with self._lock:
            entries = [
                DeviceSyncHistory.model_validate_json(e)
                for e in self._history.get(device_id, [])
            ]
        entries.sort(key=lambda e: e.started_at, reverse=True)
        return entries[:limit]

    def upsert_health_data(self, rows: Iterable[WearableHealthData]) -> int:
        written = 0
        with self._lock:
            for row in rows:
                self._health[row.dedup_key()] = row.model_dump_json()
                written += 1
        return written

    def query_health_data(
        self,
        user_id: str,
        data_type: HealthDataType,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
    ) -> list[WearableHealthData]:
        data_type = HealthDataType(data_type)
        with self._lock:
            rows = [WearableHealthData.model_validate_json(r) for r in self._health.values()]
        rows = [
            r for r in rows
            if r.user_id == user_id
            and r.data_type == data_type
            and (start is None or r.timestamp >= start)
            and (end is None or r.timestamp <= end)
        ]
        rows.sort(key=lambda r: r.timestamp, reverse=True)
        return rows[:limit] if limit is not None else rows

    def get_preferences(self, device_id: str) -> SyncPreferences | None:
        with self._lock:
            data = self._prefs.get(device_id)
        return SyncPreferences.model_validate_json(data) if data else None

    def put_preferences(self, prefs: SyncPreferences) -> None:
        with self._lock:
            self._prefs[prefs.device_id] = prefs.model_dump_json()

    def delete_preferences(self, device_id: str) -> None:
        with self._lock:
            self._prefs.pop(device_id, None)

    def put_auth_flow(self, flow: AuthFlowState) -> None:
        with self._lock:
            self._flows[flow.state_hash] = flow.model_dump_json()

    def pop_auth_flow(self, state_hash: str) -> AuthFlowState | None:
        with self._lock:
            data = self._flows.pop(state_hash, None)
        return AuthFlowState.model_validate_json(data) if data else None

    def delete_expired_auth_flows(self, now: datetime) -> int:
        with self._lock:
            expired = [
                key for key, data in self._flows.items()
                if AuthFlowState.model_validate_json(data).is_expired(now)
            ]
            for key in expired:
                del self._flows[key]
        return len(expired)


class DynamoDBDeviceStore(DeviceStore):
    """DynamoDB single-table store."""

    GSI_NAME = "gsi1"

    def __init__(
        self,
        table_name: str,
        region_name: str = "us-east-1",
        endpoint_url: str | None = None,
    ):
        """
        Initialize the store.

        Args:
            table_name: DynamoDB table name
            region_name: AWS region name
            endpoint_url: Optional endpoint override (DynamoDB Local)
        """
        self.table_name = table_name
        self.region_name = region_name
        self.dynamodb = boto3.resource(
            "dynamodb", region_name=region_name, endpoint_url=endpoint_url
        )
        self.table = self.dynamodb.Table(table_name)

    def create_table(self) -> None:
        """Create the table and its GSI (local setup and tests)."""
        try:
            self.table = self.dynamodb.create_table(
                TableName=self.table_name,
                KeySchema=[
                    {"AttributeName": "pk", "KeyType": "HASH"},
                    {"AttributeName": "sk", "KeyType": "RANGE"},
                ],
                AttributeDefinitions=[
                    {"AttributeName": "pk", "AttributeType": "S"},
                    {"AttributeName": "sk", "AttributeType": "S"},
                    {"AttributeName": "gsi1pk", "AttributeType": "S"},
                    {"AttributeName": "gsi1sk", "AttributeType": "S"},
                ],
                GlobalSecondaryIndexes=[{
                    "IndexName": self.GSI_NAME,
                    "KeySchema": [
                        {"AttributeName": "gsi1pk", "KeyType": "HASH"},
                        {"AttributeName": "gsi1sk", "KeyType": "RANGE"},
                    ],
                    "Projection": {"ProjectionType": "ALL"},
                }],
                BillingMode="PAY_PER_REQUEST",
            )
            self.table.wait_until_exists()
        except ClientError as e:
            if e.response["Error"]["Code"] != "ResourceInUseException":
                raise StoreError(f"Failed to create table: {e}") from e

    # ------------------------------------------------------------------
    # helpers

    def _call(self, action: str, fn, **kwargs):
        try:
            return fn(**kwargs)
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "Unknown")
            logger.error("DynamoDB %s failed: %s", action, error_code)
            raise StoreError(f"Failed to {action}: {error_code}") from e

    def _query_all(self, limit: int | None = None, **kwargs) -> list[dict]:
        items: list[dict] = []
        while True:
            response = self._call("query", self.table.query, **kwargs)
            items.extend(response.get("Items", []))
            if limit is not None and len(items) >= limit:
                return items[:limit]
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                return items
            kwargs["ExclusiveStartKey"] = last_key

    def _scan_all(self, **kwargs) -> list[dict]:
        items: list[dict] = []
        while True:
            response = self._call("scan", self.table.scan, **kwargs)
            items.extend(response.get("Items", []))
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                return items
            kwargs["ExclusiveStartKey"] = last_key

    @staticmethod
    def _device_item(device: ConnectedDevice) -> dict:
        return {
            "pk": f"DEVICE#{device.id}",
            "sk": "DEVICE",
            "gsi1pk": f"USER#{device.user_id}",
            "gsi1sk": f"{device.provider.value}#{device.id}",
            "status": device.status.value,
            "data": device.model_dump_json(),
        }

    # ------------------------------------------------------------------
    # devices

    def get_device(self, device_id: str) -> ConnectedDevice | None:
        response = self._call(
            "get device", self.table.get_item,
            Key={"pk": f"DEVICE#{device_id}", "sk": "DEVICE"},
        )
        item = response.get("Item")
        return ConnectedDevice.model_validate_json(item["data"]) if item else None

    def find_device(self, user_id: str, provider: Provider) -> ConnectedDevice | None:
        items = self._query_all(
            limit=1,
            IndexName=self.GSI_NAME,
            KeyConditionExpression=(
                Key("gsi1pk").eq(f"USER#{user_id}")
                & Key("gsi1sk").begins_with(f"{Provider(provider).value}#")
            ),
        )
        return ConnectedDevice.model_validate_json(items[0]["data"]) if items else None

    def list_devices(self, user_id: str) -> list[ConnectedDevice]:
        items = self._query_all(
            IndexName=self.GSI_NAME,
            KeyConditionExpression=Key("gsi1pk").eq(f"USER#{user_id}"),
        )
        return [ConnectedDevice.model_validate_json(i["data"]) for i in items]

    def list_devices_with_status(
        self, statuses: Iterable[DeviceStatus]
    ) -> list[ConnectedDevice]:
        condition = Attr("sk").eq("DEVICE")
        status_condition = None
        for status in statuses:
            clause = Attr("status").eq(DeviceStatus(status).value)
            status_condition = clause if status_condition is None else status_condition | clause
        if status_condition is None:
            return []
        items = self._scan_all(FilterExpression=condition & status_condition)
        return [ConnectedDevice.model_validate_json(i["data"]) for i in items]

    def put_device(self, device: ConnectedDevice) -> None:
        self._call("put device", self.table.put_item, Item=self._device_item(device))

    def replace_device_if_status(
        self, device: ConnectedDevice, expected: Iterable[DeviceStatus]
    ) -> bool:
        expected = [DeviceStatus(s).value for s in expected]
        if not expected:
            return False
        placeholders = {f":s{n}": value for n, value in enumerate(expected)}
        condition = " OR ".join(f"#status = {p}" for p in placeholders)
        try:
            self.table.put_item(
                Item=self._device_item(device),
                ConditionExpression=f"attribute_exists(pk) AND ({condition})",
                ExpressionAttributeNames={"#status": "status"},
                ExpressionAttributeValues=placeholders,
            )
            return True
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                return False
            raise StoreError(f"Failed to update device: {e}") from e

    def delete_device(self, device_id: str) -> None:
        self._call(
            "delete device", self.table.delete_item,
            Key={"pk": f"DEVICE#{device_id}", "sk": "DEVICE"},
        )

    # ------------------------------------------------------------------
    # history

    def add_history(self, entry: DeviceSyncHistory) -> None:
        self._call(
            "add sync history", self.table.put_item,
            Item={
                "pk": f"HISTORY#{entry.device_id}",
                "sk": f"{ts_key(entry.started_at)}#{entry.id}",
                "data": entry.model_dump_json(),
            },
        )

    def list_history(self, device_id: str, limit: int = 20) -> list[DeviceSyncHistory]:
        items = self._query_all(
            limit=limit,
            KeyConditionExpression=Key("pk").eq(f"HISTORY#{device_id}"),
            ScanIndexForward=False,
            Limit=limit,
        )
        return [DeviceSyncHistory.model_validate_json(i["data"]) for i in items]

    # ------------------------------------------------------------------
    # health data

    def upsert_health_data(self, rows: Iterable[WearableHealthData]) -> int:
        written = 0
        try:
            with self.table.batch_writer(overwrite_by_pkeys=["pk", "sk"]) as batch:
                for row in rows:
                    batch.put_item(Item={
                        "pk": f"HEALTH#{row.user_id}#{row.data_type.value}",
                        "sk": f"{ts_key(row.timestamp)}#{row.device_id}",
                        "data": row.model_dump_json(),
                    })
                    written += 1
        except ClientError as e:
            raise StoreError(f"Failed to store health data: {e}") from e
        return written

    def query_health_data(
        self,
        user_id: str,
        data_type: HealthDataType,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
    ) -> list[WearableHealthData]:
        low = ts_key(start) if start else "0"
        # "~" sorts after "#" and every digit
        high = f"{ts_key(end)}#~" if end else "~"
        kwargs = {
            "KeyConditionExpression": (
                Key("pk").eq(f"HEALTH#{user_id}#{HealthDataType(data_type).value}")
                & Key("sk").between(low, high)
            ),
            "ScanIndexForward": False,
        }
        if limit is not None:
            kwargs["Limit"] = limit
        items = self._query_all(limit=limit, **kwargs)
        return [WearableHealthData.model_validate_json(i["data"]) for i in items]

    # ------------------------------------------------------------------
    # preferences

    def get_preferences(self, device_id: str) -> SyncPreferences | None:
        response = self._call(
            "get preferences", self.table.get_item,
            Key={"pk": f"PREFS#{device_id}", "sk": "PREFS"},
        )
        item = response.get("Item")
        return SyncPreferences.model_validate_json(item["data"]) if item else None

    def put_preferences(self, prefs: SyncPreferences) -> None:
        self._call(
            "put preferences", self.table.put_item,
            Item={
                "pk": f"PREFS#{prefs.device_id}",
                "sk": "PREFS",
                "data": prefs.model_dump_json(),
            },
        )

    def delete_preferences(self, device_id: str) -> None:
        self._call(
            "delete preferences", self.table.delete_item,
            Key={"pk": f"PREFS#{device_id}", "sk": "PREFS"},
        )

    # ------------------------------------------------------------------
    # auth flows

    def put_auth_flow(self, flow: AuthFlowState) -> None:
        self._call(
            "store auth flow", self.table.put_item,
            Item={
                "pk": f"AUTHFLOW#{flow.state_hash}",
                "sk": "FLOW",
                # Epoch seconds, usable as the table's TTL attribute
                "expires_at": int(flow.expires_at.timestamp()),
                "data": flow.model_dump_json(),
            },
        )

    def pop_auth_flow(self, state_hash: str) -> AuthFlowState | None:
        response = self._call(
            "consume auth flow", self.table.delete_item,
            Key={"pk": f"AUTHFLOW#{state_hash}", "sk": "FLOW"},
            ReturnValues="ALL_OLD",
        )
        item = response.get("Attributes")
        return AuthFlowState.model_validate_json(item["data"]) if item else None

    def delete_expired_auth_flows(self, now: datetime) -> int:
        items = self._scan_all(
            FilterExpression=(
                Attr("pk").begins_with("AUTHFLOW#")
                & Attr("expires_at").lte(int(now.timestamp()))
            ),
            ProjectionExpression="pk, sk",
        )
        for item in items:
            self._call(
                "delete auth flow", self.table.delete_item,
                Key={"pk": item["pk"], "sk": item["sk"]},
            )
        return len(items)
