"""
OAuth credential storage, keyed by connected device.

Tokens are encrypted at rest: with KMS when a key id is configured, with a
Fernet key otherwise. LOCAL_MODE keeps the encrypted items in memory instead
of DynamoDB.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Any

import boto3
from boto3.dynamodb.types import Binary
from botocore.exceptions import ClientError
from cryptography.fernet import Fernet, InvalidToken

from .exceptions import TokenError
from .vendor_types import OAuthTokens

logger = logging.getLogger(__name__)


class CredentialStore:
    """
    Encrypted token storage.

    Uses the connector's DynamoDB table with:
    - pk: "TOKENS#{device_id}"
    - sk: "TOKENS"
    - access_token / refresh_token: binary (encrypted)
    - expires_at: number (unix timestamp)
    - status: string (active, revoked)
    """

    def __init__(
        self,
        table_name: str | None = None,
        kms_key_id: str | None = None,
        region_name: str = "us-east-1",
        encryption_key: str | bytes | None = None,
        local_mode: bool = False,
        endpoint_url: str | None = None,
    ):
        """
        Initialize CredentialStore.

        Args:
            table_name: DynamoDB table name (unused in local mode)
            kms_key_id: Optional KMS key ID for encryption
            region_name: AWS region name
            encryption_key: Fernet key, used when no KMS key is configured
            local_mode: Keep items in memory instead of DynamoDB
            endpoint_url: Optional DynamoDB endpoint override

        Raises:
            TokenError: If no encryption is configured outside local mode
        """
        self.local_mode = local_mode
        self.kms_key_id = kms_key_id
        self.kms = None
        self.fernet = None

        if kms_key_id:
            self.kms = boto3.client("kms", region_name=region_name)
        elif encryption_key:
            try:
                self.fernet = Fernet(encryption_key)
            except (ValueError, TypeError) as e:
                raise TokenError(f"Invalid token encryption key: {e}") from e
        elif local_mode:
            logger.warning(
                "No TOKEN_ENCRYPTION_KEY set; using an ephemeral key, "
                "stored credentials will not survive a restart"
            )
            self.fernet = Fernet(Fernet.generate_key())
        else:
            raise TokenError("Token encryption requires KMS_KEY_ID or TOKEN_ENCRYPTION_KEY")

        if local_mode:
            self._local_items: dict[str, dict[str, Any]] = {}
            self._lock = threading.Lock()
        else:
            self.dynamodb = boto3.resource(
                "dynamodb", region_name=region_name, endpoint_url=endpoint_url
            )
            self.table = self.dynamodb.Table(table_name)

    @staticmethod
    def _key(device_id: str) -> dict[str, str]:
        return {"pk": f"TOKENS#{device_id}", "sk": "TOKENS"}

    def _encrypt(self, plaintext: str) -> bytes:
        if self.kms:
            try:
                response = self.kms.encrypt(
                    KeyId=self.kms_key_id,
                    Plaintext=plaintext.encode("utf-8"),
                )
                return response["CiphertextBlob"]
            except ClientError as e:
                raise TokenError(f"Failed to encrypt token: {e}") from e
        return self.fernet.encrypt(plaintext.encode("utf-8"))

    def _decrypt(self, ciphertext: Any) -> str:
        if isinstance(ciphertext, Binary):
            ciphertext = ciphertext.value
        if self.kms:
            try:
                response = self.kms.decrypt(CiphertextBlob=ciphertext)
                return response["Plaintext"].decode("utf-8")
            except ClientError as e:
                raise TokenError(f"Failed to decrypt token: {e}") from e
        try:
            return self.fernet.decrypt(ciphertext).decode("utf-8")
        except InvalidToken as e:
            raise TokenError("Failed to decrypt token: key mismatch or corrupted data") from e

    def _get_item(self, device_id: str) -> dict[str, Any] | None:
        if self.local_mode:
            with self._lock:
                item = self._local_items.get(device_id)
            return dict(item) if item else None
        try:
            response = self.table.get_item(Key=self._key(device_id))
        except ClientError as e:
            raise TokenError(f"Failed to get tokens: {e}") from e
        return response.get("Item")

    def _put_item(self, device_id: str, item: dict[str, Any]) -> None:
        if self.local_mode:
            with self._lock:
                self._local_items[device_id] = item
            return
        try:
            self.table.put_item(Item={**self._key(device_id), **item})
        except ClientError as e:
            raise TokenError(f"Failed to save tokens: {e}") from e

    def save_tokens(
        self,
        device_id: str,
        tokens: OAuthTokens,
        user_id: str | None = None,
        provider: str | None = None,
    ) -> None:
        """
        Save OAuth tokens for a device, replacing any previous set.

        Raises:
            TokenError: If encryption or the write fails
        """
        now = int(datetime.now(timezone.utc).timestamp())
        existing = self._get_item(device_id)

        item: dict[str, Any] = {
            "device_id": device_id,
            "access_token": self._encrypt(tokens.access_token),
            "token_type": tokens.token_type,
            "status": "active",
            "created_at": existing.get("created_at", now) if existing else now,
            "updated_at": now,
        }
        if tokens.refresh_token:
            item["refresh_token"] = self._encrypt(tokens.refresh_token)
        if tokens.expires_at:
            item["expires_at"] = int(tokens.expires_at.timestamp())
        if tokens.scopes:
            item["scopes"] = list(tokens.scopes)
        if tokens.provider_user_id:
            item["provider_user_id"] = tokens.provider_user_id
        if user_id:
            item["user_id"] = user_id
        if provider:
            item["provider"] = provider

        self._put_item(device_id, item)

    def get_tokens(self, device_id: str) -> OAuthTokens | None:
        """
        Retrieve OAuth tokens for a device.

        Returns:
            OAuthTokens if found and active, None otherwise
        """
        item = self._get_item(device_id)
        if not item or item.get("status") != "active":
            return None

        expires_at = None
        if item.get("expires_at") is not None:
            expires_at = datetime.fromtimestamp(int(item["expires_at"]), tz=timezone.utc)

        return OAuthTokens(
            access_token=self._decrypt(item["access_token"]),
            refresh_token=(
                self._decrypt(item["refresh_token"]) if item.get("refresh_token") else None
            ),
            expires_at=expires_at,
            token_type=item.get("token_type", "Bearer"),
            scopes=list(item.get("scopes") or []),
            provider_user_id=item.get("provider_user_id"),
        )

    def revoke_tokens(self, device_id: str) -> bool:
        """
        Mark tokens revoked without deleting them.

        Returns:
            False if the device has no stored tokens
        """
        item = self._get_item(device_id)
        if not item:
            return False
        item["status"] = "revoked"
        item["updated_at"] = int(datetime.now(timezone.utc).timestamp())
        self._put_item(device_id, item)
        return True

    def delete_tokens(self, device_id: str) -> None:
        """Permanently delete a device's tokens."""
        if self.local_mode:
            with self._lock:
                self._local_items.pop(device_id, None)
            return
        try:
            self.table.delete_item(Key=self._key(device_id))
        except ClientError as e:
            raise TokenError(f"Failed to delete tokens: {e}") from e
