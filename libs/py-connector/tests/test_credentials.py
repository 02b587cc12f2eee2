"""Tests for encrypted credential storage.

DynamoDB and KMS are mocked with moto.
"""

from datetime import datetime, timezone

import boto3
import pytest
from cryptography.fernet import Fernet
from moto import mock_aws

from fitlink_connector.exceptions import TokenError
from fitlink_connector.store import DynamoDBDeviceStore
from fitlink_connector.tokens import CredentialStore
from fitlink_connector.vendor_types import OAuthTokens

TABLE = "fitlink-test"


@pytest.fixture
def tokens():
    return OAuthTokens(
        access_token="test_access_token",
        refresh_token="test_refresh_token",
        expires_at=datetime(2030, 1, 1, tzinfo=timezone.utc),
        scopes=["read:data", "write:data"],
        provider_user_id="athlete-1",
    )


@pytest.fixture
def aws_credentials(monkeypatch):
    """Mocked AWS credentials for moto."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")


@pytest.fixture
def dynamodb_table(aws_credentials):
    """Create mocked DynamoDB table."""
    with mock_aws():
        DynamoDBDeviceStore(TABLE).create_table()
        yield TABLE


class TestLocalMode:
    """In-memory credential storage."""

    def test_round_trip(self, credentials, tokens):
        credentials.save_tokens("dev-1", tokens, user_id="user-1", provider="strava")

        loaded = credentials.get_tokens("dev-1")

        assert loaded.access_token == "test_access_token"
        assert loaded.refresh_token == "test_refresh_token"
        assert loaded.expires_at == tokens.expires_at
        assert loaded.scopes == ["read:data", "write:data"]
        assert loaded.provider_user_id == "athlete-1"

    def test_tokens_are_encrypted_at_rest(self, credentials, tokens):
        credentials.save_tokens("dev-1", tokens)

        item = credentials._local_items["dev-1"]
        assert b"test_access_token" not in item["access_token"]
        assert b"test_refresh_token" not in item["refresh_token"]

    def test_missing_device(self, credentials):
        assert credentials.get_tokens("nope") is None
        assert credentials.revoke_tokens("nope") is False

    def test_revoke_hides_tokens(self, credentials, tokens):
        credentials.save_tokens("dev-1", tokens)

        assert credentials.revoke_tokens("dev-1") is True
        assert credentials.get_tokens("dev-1") is None

    def test_save_reactivates_revoked_device(self, credentials, tokens):
        credentials.save_tokens("dev-1", tokens)
        credentials.revoke_tokens("dev-1")

        credentials.save_tokens("dev-1", tokens.model_copy(update={"access_token": "again"}))

        assert credentials.get_tokens("dev-1").access_token == "again"

    def test_delete(self, credentials, tokens):
        credentials.save_tokens("dev-1", tokens)

        credentials.delete_tokens("dev-1")

        assert credentials.get_tokens("dev-1") is None

    def test_wrong_key_cannot_decrypt(self, credentials, tokens):
        credentials.save_tokens("dev-1", tokens)
        credentials.fernet = Fernet(Fernet.generate_key())

        with pytest.raises(TokenError):
            credentials.get_tokens("dev-1")

    def test_ephemeral_key_in_local_mode(self, tokens):
        store = CredentialStore(local_mode=True)
        store.save_tokens("dev-1", tokens)

        assert store.get_tokens("dev-1").access_token == "test_access_token"


class TestConfiguration:
    """Encryption must be configured outside local mode."""

    def test_requires_encryption_outside_local_mode(self):
        with pytest.raises(TokenError):
            CredentialStore(table_name=TABLE)

    def test_invalid_fernet_key(self):
        with pytest.raises(TokenError):
            CredentialStore(local_mode=True, encryption_key="not-a-key")


class TestDynamoDB:
    """Credential storage against mocked DynamoDB."""

    def test_fernet_round_trip(self, dynamodb_table, tokens):
        store = CredentialStore(table_name=dynamodb_table, encryption_key=Fernet.generate_key())

        store.save_tokens("dev-1", tokens, user_id="user-1", provider="strava")
        loaded = store.get_tokens("dev-1")

        assert loaded.access_token == "test_access_token"
        assert loaded.refresh_token == "test_refresh_token"
        item = store.table.get_item(Key={"pk": "TOKENS#dev-1", "sk": "TOKENS"})["Item"]
        assert item["status"] == "active"
        assert item["user_id"] == "user-1"

    def test_kms_round_trip(self, dynamodb_table, tokens):
        key_id = boto3.client("kms", region_name="us-east-1").create_key()["KeyMetadata"]["KeyId"]
        store = CredentialStore(table_name=dynamodb_table, kms_key_id=key_id)

        store.save_tokens("dev-1", tokens)

        assert store.get_tokens("dev-1").access_token == "test_access_token"

    def test_revoke_and_delete(self, dynamodb_table, tokens):
        store = CredentialStore(table_name=dynamodb_table, encryption_key=Fernet.generate_key())
        store.save_tokens("dev-1", tokens)

        assert store.revoke_tokens("dev-1") is True
        assert store.get_tokens("dev-1") is None

        store.delete_tokens("dev-1")
        assert store.revoke_tokens("dev-1") is False
