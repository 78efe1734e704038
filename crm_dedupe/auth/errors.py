"""
Errors raised by the HubSpot connection lifecycle.

NotConnectedError and ReconnectRequiredError both mean the user has to go
through the consent flow again; they are never retried automatically.
"""


class ConnectionLifecycleError(Exception):
    """Base class for connection lifecycle failures."""

    pass


class AuthExchangeError(ConnectionLifecycleError):
    """Raised when a code exchange or token refresh is rejected or times out."""

    pass


class InvalidStateError(ConnectionLifecycleError):
    """Raised when an authorization state token is forged, expired or reused."""

    pass


class NotConnectedError(ConnectionLifecycleError):
    """Raised when an account has no active HubSpot connection."""

    def __init__(self, account_id: str):
        super().__init__(f"Account {account_id} is not connected to HubSpot")
        self.account_id = account_id


class ReconnectRequiredError(ConnectionLifecycleError):
    """Raised when a connection could not be refreshed and was deactivated."""

    def __init__(self, account_id: str, reason: str = ""):
        message = f"HubSpot connection for {account_id} must be re-authorized"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.account_id = account_id
        self.reason = reason
