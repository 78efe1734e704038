"""
crm_dedupe.config - Configuration management module

Contains configuration loading, validation, and typed settings.
"""

from crm_dedupe.config.loader import ConfigError, ConfigLoader
from crm_dedupe.config.settings import Settings

__all__ = [
    "ConfigError",
    "ConfigLoader",
    "Settings",
]
