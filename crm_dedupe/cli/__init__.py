"""CLI package for crm_dedupe."""

from crm_dedupe.cli.formatters import (
    show_connection_status,
    show_group,
    show_group_page,
    show_run_status,
)
from crm_dedupe.cli.main import CONFIG_FILE_NAME, cli, get_config_dir
from crm_dedupe.utils import DEFAULT_CONFIG_DIR

__all__ = [
    "CONFIG_FILE_NAME",
    "DEFAULT_CONFIG_DIR",
    "cli",
    "get_config_dir",
    "show_connection_status",
    "show_group",
    "show_group_page",
    "show_run_status",
]
