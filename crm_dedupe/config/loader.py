"""
Configuration loader module for CRM duplicate resolution.

Provides YAML-based configuration file loading with support for:
- Loading configuration from default or custom paths
- Graceful handling of missing configuration files
- Validation of known keys, value types and ranges
"""

import logging
from pathlib import Path
from typing import Any

import yaml

from crm_dedupe.utils.paths import resolve_config_dir

# Default configuration file name
DEFAULT_CONFIG_FILE = "config.yaml"

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration loading or validation fails."""

    pass


# Known configuration keys and their expected types
VALID_KEYS: dict[str, type[Any] | tuple[type[Any], ...]] = {
    # CLI options
    "verbose": bool,
    # HubSpot OAuth application
    "hubspot_client_id": str,
    "hubspot_client_secret": str,
    "hubspot_redirect_uri": str,
    "hubspot_scopes": list,
    "state_secret": str,
    "state_max_age": int,
    # Credential lifecycle
    "refresh_margin": int,
    # API options
    "api_timeout": (int, float),
    "api_max_retries": int,
    "api_initial_retry_delay": (int, float),
    "api_max_retry_delay": (int, float),
    "api_page_size": int,
    # Storage and export
    "db_path": str,
    "export_dir": str,
    # Merge options
    "default_page_size": int,
    "merge_group_limit": int,
    # Logging options
    "log_dir": str,
    "log_retention_count": int,
}

POSITIVE_INT_KEYS = [
    "state_max_age",
    "api_max_retries",
    "api_page_size",
    "default_page_size",
]

NON_NEGATIVE_INT_KEYS = [
    "refresh_margin",
    "merge_group_limit",
    "log_retention_count",
]

POSITIVE_FLOAT_KEYS = [
    "api_timeout",
    "api_initial_retry_delay",
    "api_max_retry_delay",
]


class ConfigLoader:
    """
    YAML configuration file loader.

    Attributes:
        config_dir: Directory containing the configuration file
        config_file: Name of the configuration file

    Usage:
        loader = ConfigLoader()
        config = loader.load_and_validate()

        # Load from specific file
        config = loader.load_from_file("/path/to/config.yaml")
    """

    def __init__(
        self, config_dir: Path | None = None, config_file: str = DEFAULT_CONFIG_FILE
    ):
        """
        Initialize the configuration loader.

        Args:
            config_dir: Directory containing the configuration file.
                       Defaults to ~/.crm-dedupe/ or $CRM_DEDUPE_CONFIG_DIR
            config_file: Name of the configuration file (default: config.yaml)
        """
        self.config_dir = resolve_config_dir(config_dir)
        self.config_file = config_file

    def _get_config_path(self) -> Path:
        return self.config_dir / self.config_file

    def load(self) -> dict[str, Any]:
        """
        Load configuration from the default configuration file.

        Returns:
            Configuration dictionary, or empty dict if the file doesn't exist

        Raises:
            ConfigError: If the configuration file exists but cannot be parsed
        """
        return self.load_from_file(self._get_config_path())

    def load_from_file(self, path: Path | str) -> dict[str, Any]:
        """
        Load configuration from a specific file.

        Returns an empty dict if the file doesn't exist, allowing
        graceful operation with defaults.

        Args:
            path: Path to the configuration file

        Returns:
            Dictionary containing configuration values

        Raises:
            ConfigError: If the configuration file exists but cannot be parsed
        """
        path = Path(path)

        if not path.exists():
            logger.debug(f"Configuration file not found: {path}")
            return {}

        try:
            with open(path, encoding="utf-8") as f:
                config = yaml.safe_load(f)

            if config is None:
                logger.debug(f"Configuration file is empty: {path}")
                return {}

            if not isinstance(config, dict):
                raise ConfigError(
                    f"Configuration file must contain a YAML dictionary, "
                    f"got {type(config).__name__}"
                )

            logger.debug(f"Loaded configuration from {path}")
            return config

        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse YAML configuration file: {e}") from e
        except OSError as e:
            raise ConfigError(f"Failed to read configuration file: {e}") from e

    def validate(self, config: dict[str, Any]) -> None:
        """
        Validate configuration structure and values.

        Unknown keys are ignored so that newer config files keep working
        with older releases.

        Args:
            config: Configuration dictionary to validate

        Raises:
            ConfigError: If configuration is invalid
        """
        if not isinstance(config, dict):
            raise ConfigError(
                f"Configuration must be a dictionary, got {type(config).__name__}"
            )

        for key, value in config.items():
            if key not in VALID_KEYS:
                continue
            expected_type = VALID_KEYS[key]
            if not isinstance(value, expected_type) or (
                isinstance(value, bool) and expected_type is not bool
            ):
                if isinstance(expected_type, tuple):
                    type_name = " or ".join(t.__name__ for t in expected_type)
                else:
                    type_name = expected_type.__name__
                raise ConfigError(
                    f"Invalid type for '{key}': expected {type_name}, "
                    f"got {type(value).__name__}"
                )

        for key in POSITIVE_INT_KEYS:
            if key in config and config[key] < 1:
                raise ConfigError(f"{key} must be >= 1, got {config[key]}")

        for key in NON_NEGATIVE_INT_KEYS:
            if key in config and config[key] < 0:
                raise ConfigError(f"{key} must be >= 0, got {config[key]}")

        for key in POSITIVE_FLOAT_KEYS:
            if key in config and config[key] <= 0:
                raise ConfigError(f"{key} must be > 0, got {config[key]}")

        if "hubspot_scopes" in config and not all(
            isinstance(scope, str) for scope in config["hubspot_scopes"]
        ):
            raise ConfigError("hubspot_scopes must be a list of strings")

    def load_and_validate(self) -> dict[str, Any]:
        """
        Load configuration and validate it.

        Returns:
            Validated configuration dictionary

        Raises:
            ConfigError: If configuration cannot be loaded or is invalid
        """
        config = self.load()
        if config:
            self.validate(config)
        return config
