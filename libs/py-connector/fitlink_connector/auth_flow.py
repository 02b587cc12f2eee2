"""
OAuth state tokens for the authorization round trip.

A flow binds a random state token to the user, provider, redirect URI and
PKCE verifier that started it. Only the SHA-256 digest of the token is
stored. Consuming a flow deletes it before anything is checked, so a token
is single use whether or not validation succeeds.
"""

import hashlib
import logging
import secrets
from datetime import datetime, timedelta

from .exceptions import ExpiredOrInvalidStateError, InvalidProviderError, NotAuthenticatedError
from .oauth import generate_code_verifier
from .providers import get_provider_config
from .store import DeviceStore
from .vendor_types import AuthFlowState, utcnow

logger = logging.getLogger(__name__)

DEFAULT_FLOW_TTL = timedelta(minutes=10)


def hash_state(state: str) -> str:
    """Digest under which a state token is persisted."""
    return hashlib.sha256(state.encode("utf-8")).hexdigest()


class AuthFlowBroker:
    """Issues and consumes single-use OAuth state tokens."""

    def __init__(self, store: DeviceStore, ttl: timedelta = DEFAULT_FLOW_TTL):
        self.store = store
        self.ttl = ttl

    def create_flow(
        self,
        user_id: str | None,
        provider: str,
        redirect_uri: str,
        now: datetime | None = None,
    ) -> AuthFlowState:
        """
        Mint a state token for a new authorization round trip.

        Args:
            user_id: Caller starting the flow
            provider: Provider being linked
            redirect_uri: Callback URL the provider will redirect to
            now: Clock override

        Returns:
            AuthFlowState with the plaintext ``state`` populated

        Raises:
            NotAuthenticatedError: If there is no caller
            InvalidProviderError: If the provider is unknown or has no OAuth flow
        """
        if not user_id:
            raise NotAuthenticatedError()

        config = get_provider_config(provider)
        if not config.supports_oauth:
            raise InvalidProviderError(
                f"{config.name} requires the native app and cannot be linked over OAuth",
                provider=config.id.value,
            )

        now = now or utcnow()
        state = secrets.token_urlsafe(32)
        flow = AuthFlowState(
            state_hash=hash_state(state),
            user_id=user_id,
            provider=config.id,
            redirect_uri=redirect_uri,
            code_verifier=generate_code_verifier() if config.supports_pkce else None,
            expires_at=now + self.ttl,
            created_at=now,
        )
        self.store.put_auth_flow(flow)
        logger.info("Started %s auth flow for user %s", config.id.value, user_id)

        return flow.model_copy(update={"state": state})

    def consume_flow(
        self,
        state: str | None,
        user_id: str | None = None,
        now: datetime | None = None,
    ) -> AuthFlowState:
        """
        Validate and consume a state token.

        The stored flow is removed first; expiry and ownership are checked on
        the removed copy. Every rejection raises the same error.

        Args:
            state: State token echoed back by the provider
            user_id: Expected owner, when the callback carries a session
            now: Clock override

        Returns:
            The consumed AuthFlowState

        Raises:
            ExpiredOrInvalidStateError: Unknown, expired, consumed or mismatched token
        """
        flow = self.store.pop_auth_flow(hash_state(state or ""))
        now = now or utcnow()

        if (
            flow is None
            or flow.is_expired(now)
            or (user_id is not None and flow.user_id != user_id)
        ):
            logger.warning("Rejected OAuth state token")
            raise ExpiredOrInvalidStateError()

        return flow

    def purge_expired(self, now: datetime | None = None) -> int:
        """Delete expired flows; returns how many were removed."""
        removed = self.store.delete_expired_auth_flows(now or utcnow())
        if removed:
            logger.info("Purged %d expired auth flows", removed)
        return removed
