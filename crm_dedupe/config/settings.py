"""
Typed application settings.

Settings are assembled from three sources, later ones winning:

    1. Built-in defaults
    2. The YAML configuration file (see ``ConfigLoader``)
    3. Environment variables for secrets:
       CRM_DEDUPE_CLIENT_ID, CRM_DEDUPE_CLIENT_SECRET, CRM_DEDUPE_STATE_SECRET

Example config.yaml:

    hubspot_client_id: "1234-abcd"
    hubspot_redirect_uri: "http://localhost:8000/hubspot/oauth/callback"
    refresh_margin: 300
    api_timeout: 10
    merge_group_limit: 50
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from crm_dedupe.config.loader import ConfigError
from crm_dedupe.utils.paths import resolve_config_dir

DEFAULT_REDIRECT_URI = "http://localhost:8000/hubspot/oauth/callback"

DEFAULT_SCOPES = [
    "crm.objects.contacts.read",
    "crm.objects.contacts.write",
    "crm.schemas.contacts.read",
    "crm.schemas.contacts.write",
]

# A credential expiring within this many seconds is refreshed before use
DEFAULT_REFRESH_MARGIN = 300

# Authorization attempts older than this are rejected at the callback
DEFAULT_STATE_MAX_AGE = 600

ENV_CLIENT_ID = "CRM_DEDUPE_CLIENT_ID"
ENV_CLIENT_SECRET = "CRM_DEDUPE_CLIENT_SECRET"
ENV_STATE_SECRET = "CRM_DEDUPE_STATE_SECRET"


@dataclass
class Settings:
    """
    Runtime settings for crm_dedupe.

    Attributes:
        config_dir: Directory holding config.yaml, the database and exports
        hubspot_client_id: OAuth client id of the HubSpot app
        hubspot_client_secret: OAuth client secret of the HubSpot app
        hubspot_redirect_uri: Callback URL registered with the HubSpot app
        hubspot_scopes: Scopes requested on the consent page
        state_secret: Key used to sign authorization state tokens
        state_max_age: Seconds an authorization state token stays valid
        refresh_margin: Seconds before expiry at which credentials refresh
        api_timeout: Timeout in seconds for every HubSpot request
        api_max_retries: Attempts for retryable HubSpot requests
        api_initial_retry_delay: First backoff delay in seconds
        api_max_retry_delay: Backoff ceiling in seconds
        api_page_size: Contacts per page when listing contacts
        db_path: SQLite database path (':memory:' allowed)
        export_dir: Directory for finished-run export files
        default_page_size: Group page size used when none is given
        merge_group_limit: Groups an account may process (None = unlimited)
        log_dir: Directory for log files (None = default)
        log_retention_count: Log files to keep
        verbose: Enable verbose logging
    """

    config_dir: Path = field(default_factory=resolve_config_dir)
    hubspot_client_id: str = ""
    hubspot_client_secret: str = ""
    hubspot_redirect_uri: str = DEFAULT_REDIRECT_URI
    hubspot_scopes: list[str] = field(default_factory=lambda: list(DEFAULT_SCOPES))
    state_secret: str = ""
    state_max_age: int = DEFAULT_STATE_MAX_AGE
    refresh_margin: int = DEFAULT_REFRESH_MARGIN
    api_timeout: float = 10.0
    api_max_retries: int = 3
    api_initial_retry_delay: float = 1.0
    api_max_retry_delay: float = 30.0
    api_page_size: int = 100
    db_path: str = ""
    export_dir: str = ""
    default_page_size: int = 20
    merge_group_limit: int | None = None
    log_dir: str | None = None
    log_retention_count: int = 10
    verbose: bool = False

    def __post_init__(self) -> None:
        self.config_dir = Path(self.config_dir)
        if not self.db_path:
            self.db_path = str(self.config_dir / "dedupe.db")
        if not self.export_dir:
            self.export_dir = str(self.config_dir / "exports")

    @classmethod
    def from_dict(
        cls,
        data: dict[str, Any] | None,
        config_dir: Path | None = None,
        environ: dict[str, str] | None = None,
    ) -> Settings:
        """
        Build settings from a (validated) configuration dictionary.

        Args:
            data: Configuration values, typically from ConfigLoader
            config_dir: Configuration directory (resolved if None)
            environ: Environment mapping for secret overrides
                     (defaults to os.environ)

        Returns:
            Settings instance

        Raises:
            ConfigError: If data is not a dictionary
        """
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError(
                f"Configuration must be a dictionary, got {type(data).__name__}"
            )
        if environ is None:
            environ = dict(os.environ)

        known = {f.name for f in fields(cls)} - {"config_dir"}
        values = {key: value for key, value in data.items() if key in known}

        if environ.get(ENV_CLIENT_ID):
            values["hubspot_client_id"] = environ[ENV_CLIENT_ID]
        if environ.get(ENV_CLIENT_SECRET):
            values["hubspot_client_secret"] = environ[ENV_CLIENT_SECRET]
        if environ.get(ENV_STATE_SECRET):
            values["state_secret"] = environ[ENV_STATE_SECRET]

        return cls(config_dir=resolve_config_dir(config_dir), **values)

    @property
    def signing_secret(self) -> str:
        """Secret for state tokens, falling back to the client secret."""
        return self.state_secret or self.hubspot_client_secret
