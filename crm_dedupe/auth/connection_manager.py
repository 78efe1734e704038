"""
HubSpot connection lifecycle management.

Provides OAuth 2.0 connection handling with support for:
- Consent URLs carrying a signed, single-use state token
- Code exchange and atomic replacement of an account's connection
- Automatic token refresh shortly before expiry
- Deactivation when HubSpot rejects a refresh, requiring the user to reconnect

Refreshes are serialized per account so that concurrent callers holding
the same expiring token trigger a single refresh; the waiters re-read the
stored credential after the first caller finishes.
"""

import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from crm_dedupe.api.hubspot_api import (
    HubSpotAPI,
    HubSpotAPIError,
    HubSpotTimeoutError,
)
from crm_dedupe.auth.errors import (
    AuthExchangeError,
    ConnectionLifecycleError,
    InvalidStateError,
    NotConnectedError,
    ReconnectRequiredError,
)
from crm_dedupe.auth.state import StateSigner
from crm_dedupe.storage.db import utcnow
from crm_dedupe.storage.token_store import (
    Connection,
    StateNonceConsumedError,
    TokenStore,
)
from crm_dedupe.utils.locks import KeyedLock

# Refresh when the access token expires within this window
DEFAULT_REFRESH_MARGIN = timedelta(seconds=300)

logger = logging.getLogger(__name__)

__all__ = [
    "AuthExchangeError",
    "AuthorizationRequest",
    "ConnectionLifecycleError",
    "ConnectionManager",
    "ConnectionStatus",
    "InvalidStateError",
    "NotConnectedError",
    "ReconnectRequiredError",
]


@dataclass(frozen=True)
class AuthorizationRequest:
    """Consent URL to send the user to, and the state token embedded in it."""

    url: str
    state: str


@dataclass
class ConnectionStatus:
    """Snapshot of an account's HubSpot connection."""

    connected: bool
    account_name: Optional[str] = None
    portal_id: Optional[int] = None
    hub_domain: Optional[str] = None
    expires_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, object]:
        return {
            "connected": self.connected,
            "account_name": self.account_name,
            "portal_id": self.portal_id,
            "hub_domain": self.hub_domain,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "last_used_at": (
                self.last_used_at.isoformat() if self.last_used_at else None
            ),
        }


class ConnectionManager:
    """
    Lifecycle manager for per-account HubSpot connections.

    Attributes:
        store: Token store holding the connections
        api: HubSpot client used for exchange, refresh and account details
        signer: Issues and verifies OAuth state tokens
        refresh_margin: Window before expiry in which tokens are refreshed

    Usage:
        manager = ConnectionManager(store, api, StateSigner(secret))

        request = manager.begin_authorization("alice")
        # ... user consents, HubSpot redirects back with code + state ...
        manager.complete_authorization(code, state)

        token = manager.get_valid_credential("alice")
    """

    def __init__(
        self,
        store: TokenStore,
        api: HubSpotAPI,
        signer: StateSigner,
        refresh_margin: timedelta = DEFAULT_REFRESH_MARGIN,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the connection manager.

        Args:
            store: Token store for this deployment
            api: HubSpot API client
            signer: OAuth state signer
            refresh_margin: Refresh tokens expiring within this window
            clock: Source of the current UTC time
        """
        self.store = store
        self.api = api
        self.signer = signer
        self.refresh_margin = refresh_margin
        self._clock = clock
        self._refresh_locks = KeyedLock()

    # =========================================================================
    # Authorization
    # =========================================================================

    def begin_authorization(self, account_id: str) -> AuthorizationRequest:
        """
        Start the consent flow for an account.

        Raises:
            ValueError: If the account is not registered
        """
        if not self.store.account_exists(account_id):
            raise ValueError(f"Unknown account: {account_id}")

        state, _nonce = self.signer.issue(account_id)
        url = self.api.authorization_url(state)
        logger.info(f"Starting HubSpot authorization for {account_id}")
        return AuthorizationRequest(url=url, state=state)

    def complete_authorization(self, code: str, state: str) -> Connection:
        """
        Finish the consent flow and store the new connection.

        Any earlier connection of the account is deactivated in the same
        transaction that stores the new one. The state is consumed in that
        transaction too, so a callback whose exchange failed or timed out
        can be retried with the same state until it expires.

        Args:
            code: Authorization code from the redirect
            state: State token from the redirect

        Returns:
            The new active Connection

        Raises:
            InvalidStateError: If the state is forged, expired, reused or
                               names an unknown account
            AuthExchangeError: If HubSpot rejects the code or times out
        """
        account_id, nonce = self.signer.verify(state)

        if not self.store.account_exists(account_id):
            raise InvalidStateError(f"State names an unknown account: {account_id}")
        if self.store.is_state_nonce_consumed(nonce):
            raise InvalidStateError("State token has already been used")
        if not code:
            raise AuthExchangeError("Authorization code is missing")

        try:
            tokens = self.api.exchange_code(code)
        except HubSpotAPIError as e:
            logger.error(f"Code exchange failed for {account_id}: {e.reason}")
            raise AuthExchangeError(
                f"HubSpot rejected the authorization code: {e.reason}"
            ) from e

        account_info = None
        try:
            account_info = self.api.get_account_info(tokens.access_token)
        except HubSpotAPIError as e:
            logger.warning(f"Could not fetch HubSpot account details: {e.reason}")

        expires_at = self._clock() + timedelta(seconds=tokens.expires_in)
        try:
            connection = self.store.create_connection(
                account_id,
                tokens.access_token,
                tokens.refresh_token,
                expires_at,
                token_type=tokens.token_type,
                account_info=account_info,
                state_nonce=nonce,
            )
        except StateNonceConsumedError as e:
            raise InvalidStateError("State token has already been used") from e
        logger.info(f"Connected {account_id} to HubSpot portal {connection.portal_id}")
        return connection

    # =========================================================================
    # Credentials
    # =========================================================================

    def _is_fresh(self, connection: Connection) -> bool:
        return not connection.expires_within(self.refresh_margin, now=self._clock())

    def get_valid_credential(self, account_id: str) -> str:
        """
        Return an access token valid for at least the refresh margin.

        Refreshes the stored credential first when it is about to expire.

        Raises:
            NotConnectedError: If the account has no active connection
            AuthExchangeError: If the refresh timed out; the connection is
                               left as it was and the call can be retried
            ReconnectRequiredError: If HubSpot rejected the refresh; the
                                    connection has been deactivated
        """
        connection = self.store.get_active_connection(account_id)
        if connection is None:
            raise NotConnectedError(account_id)

        if self._is_fresh(connection):
            self.store.touch(connection.id)
            return connection.access_token

        with self._refresh_locks.hold(account_id):
            # Another caller may have refreshed while we waited
            connection = self.store.get_active_connection(account_id)
            if connection is None:
                raise NotConnectedError(account_id)
            if self._is_fresh(connection):
                self.store.touch(connection.id)
                return connection.access_token

            return self._refresh(connection)

    def _refresh(self, connection: Connection) -> str:
        account_id = connection.account_id
        logger.debug(f"Refreshing HubSpot token for {account_id}")

        try:
            tokens = self.api.refresh_access_token(connection.refresh_token)
        except HubSpotTimeoutError as e:
            # Outcome unknown; the stored refresh token may still be valid
            logger.warning(f"Token refresh timed out for {account_id}: {e.reason}")
            raise AuthExchangeError(
                f"HubSpot token refresh timed out, try again: {e.reason}"
            ) from e
        except HubSpotAPIError as e:
            self.store.deactivate(connection.id)
            logger.warning(
                f"Token refresh failed for {account_id}, connection deactivated: "
                f"{e.reason}"
            )
            raise ReconnectRequiredError(account_id, e.reason) from e

        expires_at = self._clock() + timedelta(seconds=tokens.expires_in)
        replaced = self.store.replace_tokens(
            connection.id,
            connection.refresh_token,
            tokens.access_token,
            tokens.refresh_token,
            expires_at,
        )
        if replaced:
            logger.info(f"Refreshed HubSpot token for {account_id}")
            return tokens.access_token

        # The row moved on underneath us (another process refreshed or disconnected)
        current = self.store.get_active_connection(account_id)
        if current is None:
            raise NotConnectedError(account_id)
        logger.debug(f"Using credential refreshed elsewhere for {account_id}")
        return current.access_token

    # =========================================================================
    # Disconnect and status
    # =========================================================================

    def disconnect(self, account_id: str) -> bool:
        """
        Deactivate the account's connection.

        Returns:
            True if a connection was deactivated, False if none was active
        """
        count = self.store.deactivate_account(account_id)
        if count:
            logger.info(f"Disconnected {account_id} from HubSpot")
        return count > 0

    def get_status(self, account_id: str) -> ConnectionStatus:
        """Return the account's connection status. Never raises."""
        try:
            connection = self.store.get_active_connection(account_id)
        except sqlite3.Error as e:
            logger.error(f"Could not read connection status for {account_id}: {e}")
            return ConnectionStatus(connected=False)

        if connection is None:
            return ConnectionStatus(connected=False)

        return ConnectionStatus(
            connected=True,
            account_name=connection.account_name,
            portal_id=connection.portal_id,
            hub_domain=connection.hub_domain,
            expires_at=connection.expires_at,
            last_used_at=connection.last_used_at,
        )

    def connection_history(self, account_id: str) -> list[Connection]:
        """Return every connection stored for the account, newest first."""
        return self.store.list_connections(account_id)
