"""
crm_dedupe.utils - Utility module

Common utilities including path resolution, logging and keyed locks.
"""

from crm_dedupe.utils.locks import KeyedLock
from crm_dedupe.utils.paths import DEFAULT_CONFIG_DIR, resolve_config_dir

__all__ = ["KeyedLock", "resolve_config_dir", "DEFAULT_CONFIG_DIR"]
