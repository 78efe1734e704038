"""HubSpot API client."""

from crm_dedupe.api.hubspot_api import (
    HubSpotAPI,
    HubSpotAPIError,
    HubSpotTimeoutError,
    RateLimitError,
    TokenSet,
)

__all__ = [
    "HubSpotAPI",
    "HubSpotAPIError",
    "HubSpotTimeoutError",
    "RateLimitError",
    "TokenSet",
]
