"""HubSpot connection lifecycle: OAuth consent, token refresh and disconnect."""

from crm_dedupe.auth.connection_manager import (
    AuthorizationRequest,
    ConnectionManager,
    ConnectionStatus,
)
from crm_dedupe.auth.errors import (
    AuthExchangeError,
    ConnectionLifecycleError,
    InvalidStateError,
    NotConnectedError,
    ReconnectRequiredError,
)
from crm_dedupe.auth.state import StateSigner

__all__ = [
    "AuthExchangeError",
    "AuthorizationRequest",
    "ConnectionLifecycleError",
    "ConnectionManager",
    "ConnectionStatus",
    "InvalidStateError",
    "NotConnectedError",
    "ReconnectRequiredError",
    "StateSigner",
]
