"""
HubSpot API wrapper for connection management and contact merging.

Provides a high-level interface to the HubSpot REST API for:
- Building the OAuth consent URL and exchanging/refreshing tokens
- Reading account details and listing contacts with paging
- Updating a contact's properties and merging two contacts
- Exponential backoff retry logic for rate limits and server errors

Every request runs under a bounded timeout. A timeout is reported as
HubSpotTimeoutError: the outcome on HubSpot's side is unknown.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

import requests
from requests.exceptions import RequestException, Timeout

AUTHORIZE_URL = "https://app.hubspot.com/oauth/authorize"
TOKEN_URL = "https://api.hubapi.com/oauth/v1/token"
ACCOUNT_INFO_URL = "https://api.hubapi.com/account-info/v3/details"
CONTACTS_URL = "https://api.hubapi.com/crm/v3/objects/contacts"
MERGE_URL = "https://api.hubapi.com/crm/v3/objects/contacts/merge"

# Contact properties fetched when listing contacts
CONTACT_PROPERTIES = [
    "email",
    "firstname",
    "lastname",
    "phone",
    "company",
    "createdate",
    "lastmodifieddate",
    "hs_object_id",
]

# HubSpot caps list pages at 100 objects
MAX_PAGE_SIZE = 100

# Timeout and retry configuration defaults
DEFAULT_TIMEOUT = 10.0  # seconds
DEFAULT_MAX_RETRIES = 3
DEFAULT_INITIAL_RETRY_DELAY = 1.0  # seconds
DEFAULT_MAX_RETRY_DELAY = 30.0  # seconds

logger = logging.getLogger(__name__)


class HubSpotAPIError(Exception):
    """Raised when a HubSpot API operation fails."""

    def __init__(self, reason: str, status_code: int | None = None):
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code


class HubSpotTimeoutError(HubSpotAPIError):
    """Raised when HubSpot does not answer within the timeout."""

    pass


class RateLimitError(HubSpotAPIError):
    """Raised when rate limit is exceeded and retries are exhausted."""

    pass


@dataclass(frozen=True)
class TokenSet:
    """Credential pair returned by the token endpoint."""

    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> "TokenSet":
        try:
            return cls(
                access_token=data["access_token"],
                refresh_token=data["refresh_token"],
                expires_in=int(data["expires_in"]),
                token_type=data.get("token_type", "bearer"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise HubSpotAPIError(f"Malformed token response: {e}") from e


def _error_reason(response: requests.Response) -> str:
    """Extract HubSpot's error message from a response body."""
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error_description") or body)
    return str(body)


class HubSpotAPI:
    """
    HubSpot REST API wrapper.

    Attributes:
        client_id: OAuth client id of the HubSpot app
        client_secret: OAuth client secret of the HubSpot app
        redirect_uri: Registered OAuth callback URL
        scopes: Scopes requested on the consent page
        timeout: Per-request timeout in seconds

    Usage:
        api = HubSpotAPI(client_id, client_secret, redirect_uri, scopes)

        url = api.authorization_url(state)
        tokens = api.exchange_code(code)
        tokens = api.refresh_access_token(tokens.refresh_token)

        contacts = api.list_contacts(tokens.access_token)
        api.update_contact(token, "101", {"phone": "+15550100"})
        api.merge_contacts(token, primary_id="101", retired_id="102")
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        scopes: list[str] | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        initial_retry_delay: float = DEFAULT_INITIAL_RETRY_DELAY,
        max_retry_delay: float = DEFAULT_MAX_RETRY_DELAY,
        page_size: int = MAX_PAGE_SIZE,
    ):
        """
        Initialize the HubSpot API wrapper.

        Args:
            client_id: OAuth client id
            client_secret: OAuth client secret
            redirect_uri: Registered OAuth callback URL
            scopes: OAuth scopes to request
            timeout: Per-request timeout in seconds (default 10)
            max_retries: Maximum attempts for retryable calls (default 3)
            initial_retry_delay: Initial backoff delay in seconds (default 1.0)
            max_retry_delay: Maximum backoff delay in seconds (default 30.0)
            page_size: Contacts per page when listing (capped at 100)
        """
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.scopes = list(scopes or [])
        self.timeout = timeout
        self.max_retries = max(max_retries, 1)
        self.initial_retry_delay = initial_retry_delay
        self.max_retry_delay = max_retry_delay
        self.page_size = min(page_size, MAX_PAGE_SIZE)

    def _request(
        self,
        send: Callable[[], requests.Response],
        operation_name: str,
        retry_on_server_error: bool = True,
    ) -> requests.Response:
        """
        Execute a request with exponential backoff retry.

        Rate limits (429) are always retried since HubSpot did not act on
        the request. Server errors are retried only for idempotent calls.
        Timeouts are never retried here.

        Args:
            send: Callable performing the HTTP request
            operation_name: Name for logging purposes
            retry_on_server_error: Whether 5xx responses may be retried

        Returns:
            The successful response

        Raises:
            HubSpotTimeoutError: If the request timed out
            RateLimitError: If retries are exhausted due to rate limits
            HubSpotAPIError: For other failures
        """
        delay = self.initial_retry_delay

        for attempt in range(self.max_retries):
            try:
                response = send()
            except Timeout as e:
                logger.warning(f"{operation_name} timed out after {self.timeout}s")
                raise HubSpotTimeoutError(
                    f"{operation_name} timed out after {self.timeout}s"
                ) from e
            except RequestException as e:
                logger.error(f"{operation_name} failed: {e}")
                raise HubSpotAPIError(f"{operation_name} failed: {e}") from e

            status_code = response.status_code
            if status_code < 400:
                return response

            last_attempt = attempt >= self.max_retries - 1

            if status_code == 429:
                if not last_attempt:
                    logger.warning(
                        f"{operation_name} rate limited, retrying in "
                        f"{delay:.1f}s (attempt {attempt + 1}/{self.max_retries})"
                    )
                    time.sleep(delay)
                    delay = min(delay * 2, self.max_retry_delay)
                    continue
                raise RateLimitError(
                    f"Rate limit exceeded for {operation_name} "
                    f"after {self.max_retries} attempts",
                    status_code,
                )

            if status_code >= 500 and retry_on_server_error and not last_attempt:
                logger.warning(
                    f"{operation_name} server error ({status_code}), "
                    f"retrying in {delay:.1f}s"
                )
                time.sleep(delay)
                delay = min(delay * 2, self.max_retry_delay)
                continue

            reason = _error_reason(response)
            logger.error(f"{operation_name} failed with status {status_code}: {reason}")
            raise HubSpotAPIError(reason, status_code)

        # Should not reach here, but just in case
        raise HubSpotAPIError(f"{operation_name} failed after all retries")

    def _request_json(
        self,
        send: Callable[[], requests.Response],
        operation_name: str,
        retry_on_server_error: bool = True,
    ) -> dict[str, Any]:
        """
        Execute a request and decode its JSON object body.

        An empty body decodes to an empty dict.

        Raises:
            HubSpotAPIError: If the request failed or the body is not a JSON object
        """
        response = self._request(send, operation_name, retry_on_server_error)
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as e:
            logger.error(f"{operation_name} returned a non-JSON body")
            raise HubSpotAPIError(
                f"{operation_name} returned an unreadable response", response.status_code
            ) from e
        if not isinstance(data, dict):
            raise HubSpotAPIError(
                f"{operation_name} returned an unexpected response", response.status_code
            )
        return data

    @staticmethod
    def _auth_headers(access_token: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }

    # =========================================================================
    # OAuth
    # =========================================================================

    def authorization_url(self, state: str) -> str:
        """Build the HubSpot consent page URL for an authorization attempt."""
        query = urlencode(
            {
                "client_id": self.client_id,
                "redirect_uri": self.redirect_uri,
                "scope": " ".join(self.scopes),
                "state": state,
            }
        )
        return f"{AUTHORIZE_URL}?{query}"

    def _token_request(self, payload: dict[str, str], operation_name: str) -> TokenSet:
        def send() -> requests.Response:
            return requests.post(
                TOKEN_URL,
                data=payload,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self.timeout,
            )

        return TokenSet.from_response(self._request_json(send, operation_name))

    def exchange_code(self, code: str) -> TokenSet:
        """
        Exchange an authorization code for a credential pair.

        Raises:
            HubSpotAPIError: If HubSpot rejects the code
        """
        logger.debug("Exchanging authorization code for tokens")
        return self._token_request(
            {
                "grant_type": "authorization_code",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "redirect_uri": self.redirect_uri,
                "code": code,
            },
            "exchange_code",
        )

    def refresh_access_token(self, refresh_token: str) -> TokenSet:
        """
        Exchange a refresh token for a new credential pair.

        Raises:
            HubSpotAPIError: If HubSpot rejects the refresh token
        """
        logger.debug("Refreshing access token")
        return self._token_request(
            {
                "grant_type": "refresh_token",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": refresh_token,
            },
            "refresh_access_token",
        )

    def get_account_info(self, access_token: str) -> dict[str, Any]:
        """Return the connected HubSpot account's details."""

        def send() -> requests.Response:
            return requests.get(
                ACCOUNT_INFO_URL,
                headers=self._auth_headers(access_token),
                timeout=self.timeout,
            )

        return self._request_json(send, "get_account_info")

    # =========================================================================
    # Contacts
    # =========================================================================

    def list_contacts(self, access_token: str) -> list[dict[str, Any]]:
        """
        List all contacts, following HubSpot's ``after`` paging cursor.

        Returns:
            Contact objects as returned by HubSpot (``id`` + ``properties``)
        """
        contacts: list[dict[str, Any]] = []
        after: str | None = None

        while True:
            params: dict[str, Any] = {
                "limit": self.page_size,
                "properties": ",".join(CONTACT_PROPERTIES),
            }
            if after:
                params["after"] = after

            def send(p: dict[str, Any] = params) -> requests.Response:
                return requests.get(
                    CONTACTS_URL,
                    headers=self._auth_headers(access_token),
                    params=p,
                    timeout=self.timeout,
                )

            body = self._request_json(send, "list_contacts")
            contacts.extend(body.get("results", []))

            after = body.get("paging", {}).get("next", {}).get("after")
            if not after:
                break

        logger.info(f"Listed {len(contacts)} contacts")
        return contacts

    def update_contact(
        self, access_token: str, contact_id: str, properties: dict[str, Any]
    ) -> dict[str, Any]:
        """
        Apply property values to a contact.

        Setting properties is idempotent, so server errors are retried.
        """
        logger.debug(f"Updating contact {contact_id}: {sorted(properties)}")

        def send() -> requests.Response:
            return requests.patch(
                f"{CONTACTS_URL}/{contact_id}",
                json={"properties": properties},
                headers=self._auth_headers(access_token),
                timeout=self.timeout,
            )

        return self._request_json(send, f"update_contact({contact_id})")

    def merge_contacts(
        self, access_token: str, primary_id: str, retired_id: str
    ) -> dict[str, Any]:
        """
        Merge ``retired_id`` into ``primary_id``.

        The merge is not idempotent: only rate-limit responses are retried.

        Returns:
            The surviving contact as returned by HubSpot
        """
        logger.info(f"Merging HubSpot contacts: {primary_id} <- {retired_id}")

        def send() -> requests.Response:
            return requests.post(
                MERGE_URL,
                json={"primaryObjectId": primary_id, "objectIdToMerge": retired_id},
                headers=self._auth_headers(access_token),
                timeout=self.timeout,
            )

        return self._request_json(
            send, f"merge_contacts({primary_id}<-{retired_id})", retry_on_server_error=False
        )
