"""
Command-line interface for crm_dedupe.

Provides CLI commands for connecting a HubSpot account and resolving
duplicate contacts one pairwise merge at a time.

Usage:
    # Show help
    crm-dedupe --help

    # Register and connect an account
    crm-dedupe register alice --email alice@example.com
    crm-dedupe connect --account alice
    crm-dedupe callback --code CODE --state STATE

    # Import duplicate candidates and resolve them
    crm-dedupe ingest --account alice --run-key import-1 clusters.json
    crm-dedupe groups --account alice --run-key import-1
    crm-dedupe merge --account alice --group 1 --keep 101 --retire 102
    crm-dedupe finish --account alice --run-key import-1
"""

import json
import sys
from pathlib import Path
from typing import Any, NoReturn

import click
import yaml

from crm_dedupe import __version__
from crm_dedupe.api.hubspot_api import HubSpotAPIError
from crm_dedupe.auth.errors import ConnectionLifecycleError
from crm_dedupe.cli.formatters import (
    show_connection_status,
    show_contacts,
    show_group,
    show_group_page,
    show_history,
    show_run_status,
)
from crm_dedupe.config.loader import ConfigError, ConfigLoader
from crm_dedupe.config.settings import Settings
from crm_dedupe.export.manager import ExportError
from crm_dedupe.merge.errors import GroupsPendingError, MergeError, MergeFailedError
from crm_dedupe.merge.state_machine import parse_clusters
from crm_dedupe.service import DedupeService
from crm_dedupe.utils import resolve_config_dir
from crm_dedupe.utils.logging import cleanup_old_logs, get_logger, setup_logging

# Default configuration file name inside the configuration directory
CONFIG_FILE_NAME = "config.yaml"

# Errors reported to the user as a plain red message
USER_ERRORS = (
    ConfigError,
    ConnectionLifecycleError,
    MergeError,
    HubSpotAPIError,
    ExportError,
    ValueError,
)


def get_config_dir(config_dir: str | None) -> Path:
    """Get the configuration directory path."""
    return resolve_config_dir(config_dir)


def get_config_file(config_dir: Path, config_file: str | None) -> Path:
    """Get the configuration file path."""
    if config_file:
        return Path(config_file)
    return config_dir / CONFIG_FILE_NAME


def get_service(ctx: click.Context) -> DedupeService:
    """Build the service from the loaded configuration."""
    settings = Settings.from_dict(ctx.obj["config"], config_dir=ctx.obj["config_dir"])
    return DedupeService.from_settings(settings)


def fail(message: str) -> NoReturn:
    click.echo(click.style(f"Error: {message}", fg="red"), err=True)
    sys.exit(1)


def parse_field_values(values: tuple[str, ...]) -> dict[str, Any]:
    """Parse repeated ``--set name=value`` options."""
    result: dict[str, Any] = {}
    for item in values:
        name, sep, value = item.partition("=")
        if not sep or not name.strip():
            raise click.BadParameter(
                f"Expected name=value, got '{item}'", param_hint="--set"
            )
        result[name.strip()] = value
    return result


def run_service_command(ctx: click.Context, action: str, command: Any) -> Any:
    """
    Run ``command(service)`` and map errors to red messages and exit code 1.
    """
    logger = get_logger(__name__)
    try:
        service = get_service(ctx)
    except ConfigError as e:
        fail(f"Configuration error: {e}")

    try:
        return command(service)
    except MergeFailedError as e:
        logger.error(f"{action} failed: {e}")
        fail(f"{e}. The group is unchanged; you can retry the same command.")
    except GroupsPendingError as e:
        fail(f"{e}. Resolve them before finishing the run.")
    except USER_ERRORS as e:
        logger.error(f"{action} failed: {e}")
        fail(str(e))
    except Exception as e:
        logger.exception(f"Unexpected error during {action}: {e}")
        fail(str(e))
    finally:
        service.close()


account_option = click.option(
    "--account", "-a", required=True, help="Local account identifier."
)
run_key_option = click.option(
    "--run-key", "-r", required=True, help="Key of the process run."
)
group_option = click.option(
    "--group", "-g", "group_id", required=True, type=int, help="Duplicate group id."
)


@click.group()
@click.version_option(version=__version__, prog_name="crm-dedupe")
@click.option(
    "--verbose", "-v", is_flag=True, help="Enable verbose output with detailed logging."
)
@click.option(
    "--config-dir",
    "-c",
    type=click.Path(exists=False, file_okay=False, dir_okay=True),
    envvar="CRM_DEDUPE_CONFIG_DIR",
    help="Configuration directory path (default: ~/.crm-dedupe).",
)
@click.option(
    "--config-file",
    "-f",
    type=click.Path(exists=False, file_okay=True, dir_okay=False),
    envvar="CRM_DEDUPE_CONFIG_FILE",
    help="Configuration file path (default: <config-dir>/config.yaml).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    config_dir: str | None,
    config_file: str | None,
) -> None:
    """
    HubSpot duplicate contact merging.

    Connects a HubSpot account and walks through groups of duplicate
    contacts, merging them pair by pair until each group is one record.
    """
    ctx.ensure_object(dict)

    resolved_config_dir = get_config_dir(config_dir)
    resolved_config_file = get_config_file(resolved_config_dir, config_file)

    ctx.obj["config_dir"] = resolved_config_dir
    ctx.obj["config_file"] = resolved_config_file

    config = {}
    try:
        loader = ConfigLoader(config_dir=resolved_config_dir)
        config = loader.load_from_file(resolved_config_file)
        if config:
            loader.validate(config)
    except ConfigError as e:
        # Show error but don't fail - commands report missing settings themselves
        click.echo(
            click.style(f"Warning: Configuration error: {e}", fg="yellow"), err=True
        )
        config = {}

    ctx.obj["config"] = config

    effective_verbose = verbose or config.get("verbose", False)
    ctx.obj["verbose"] = effective_verbose

    log_dir = None
    if config.get("log_dir"):
        log_dir = Path(config["log_dir"])

    setup_logging(verbose=effective_verbose, log_dir=log_dir, enable_file_logging=True)

    log_retention = config.get("log_retention_count", 10)
    if log_retention > 0:
        cleanup_old_logs(log_dir=log_dir, keep_count=log_retention)


# =============================================================================
# Account and Connection Commands
# =============================================================================


@cli.command("register")
@click.argument("account_id")
@click.option("--email", "-e", default=None, help="Contact email of the account.")
@click.pass_context
def register_command(ctx: click.Context, account_id: str, email: str | None) -> None:
    """
    Register a local account.

    Example:

        crm-dedupe register alice --email alice@example.com
    """
    result = run_service_command(
        ctx, "register", lambda s: s.register_account(account_id, email)
    )
    if result["created"]:
        click.echo(click.style(f"Registered account {account_id}.", fg="green"))
    else:
        click.echo(f"Account {account_id} is already registered.")


@cli.command("connect")
@account_option
@click.option(
    "--open-browser/--no-open-browser",
    default=False,
    help="Open the HubSpot consent page in a browser.",
)
@click.pass_context
def connect_command(ctx: click.Context, account: str, open_browser: bool) -> None:
    """
    Start connecting an account to HubSpot.

    Prints the consent URL. After approving, HubSpot redirects to the
    configured callback URL; pass its code and state to 'crm-dedupe callback'.
    """
    result = run_service_command(ctx, "connect", lambda s: s.authorize(account))

    click.echo(f"Open this URL to connect {account} to HubSpot:\n")
    click.echo(result["url"])
    if open_browser:
        click.launch(result["url"])


@cli.command("callback")
@click.option("--code", default="", help="Authorization code from the redirect.")
@click.option("--state", required=True, help="State parameter from the redirect.")
@click.option("--error", default=None, help="Error parameter from the redirect.")
@click.pass_context
def callback_command(
    ctx: click.Context, code: str, state: str, error: str | None
) -> None:
    """Complete the HubSpot connection with the redirect parameters."""
    result = run_service_command(
        ctx, "callback", lambda s: s.callback(code, state, error)
    )

    if result["status"] != "success":
        fail(f"Connection failed: {result['reason']}")

    account = result["account"]
    label = account.get("account_name") or account.get("hub_domain") or "HubSpot"
    click.echo(
        click.style(
            f"Connected {account['account_id']} to {label} "
            f"(portal {account.get('portal_id') or 'unknown'}).",
            fg="green",
        )
    )


@cli.command("status")
@account_option
@click.pass_context
def status_command(ctx: click.Context, account: str) -> None:
    """Show an account's HubSpot connection status."""
    status = run_service_command(ctx, "status", lambda s: s.connection_status(account))
    show_connection_status(account, status)


@cli.command("disconnect")
@account_option
@click.pass_context
def disconnect_command(ctx: click.Context, account: str) -> None:
    """Disconnect an account from HubSpot."""
    result = run_service_command(ctx, "disconnect", lambda s: s.disconnect(account))
    if result["disconnected"]:
        click.echo(click.style(f"Disconnected {account} from HubSpot.", fg="green"))
    else:
        click.echo(f"Account {account} was not connected.")


@cli.command("contacts")
@account_option
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, writable=True),
    default=None,
    help="Write the full contact list to this JSON file.",
)
@click.pass_context
def contacts_command(ctx: click.Context, account: str, output: str | None) -> None:
    """List the account's HubSpot contacts."""
    contacts = run_service_command(
        ctx, "contacts", lambda s: s.fetch_contacts(account)
    )
    show_contacts(contacts)

    if output:
        with open(output, "w", encoding="utf-8") as f:
            json.dump(contacts, f, indent=2, ensure_ascii=False)
        click.echo(f"Wrote {len(contacts)} contacts to {output}")


# =============================================================================
# Run and Group Commands
# =============================================================================


@cli.command("ingest")
@account_option
@run_key_option
@click.option("--name", "-n", default=None, help="Display name of the run.")
@click.argument("clusters_file", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def ingest_command(
    ctx: click.Context,
    account: str,
    run_key: str,
    name: str | None,
    clusters_file: str,
) -> None:
    """
    Import duplicate candidate clusters as a new run.

    CLUSTERS_FILE is a JSON or YAML list of clusters, each a list of
    records with 'record_id' (or 'id') and 'fields' (or 'properties').

    Example:

        crm-dedupe ingest --account alice --run-key import-1 clusters.json
    """
    try:
        with open(clusters_file, encoding="utf-8") as f:
            clusters = parse_clusters(yaml.safe_load(f))
    except (yaml.YAMLError, ValueError) as e:
        fail(f"Could not read clusters from {clusters_file}: {e}")

    run = run_service_command(
        ctx,
        "ingest",
        lambda s: s.ingest_run(account, run_key, name or run_key, clusters),
    )
    click.echo(
        click.style(
            f"Imported {run['total_groups']} duplicate groups into run {run_key}.",
            fg="green",
        )
    )


@cli.command("groups")
@account_option
@run_key_option
@click.option("--page", "-p", default=1, type=int, help="Page number (from 1).")
@click.option("--page-size", "-s", default=None, type=int, help="Groups per page.")
@click.pass_context
def groups_command(
    ctx: click.Context, account: str, run_key: str, page: int, page_size: int | None
) -> None:
    """List the duplicate groups of a run, one page at a time."""
    result = run_service_command(
        ctx,
        "groups",
        lambda s: s.duplicate_groups(account, run_key, page, page_size),
    )
    show_group_page(result)


@cli.command("merge")
@account_option
@group_option
@click.option("--keep", "-k", required=True, help="Record that survives.")
@click.option("--retire", "-x", required=True, help="Record merged into the kept one.")
@click.option(
    "--set",
    "field_values",
    multiple=True,
    help="Property to write on the kept record, as name=value. Repeatable.",
)
@click.pass_context
def merge_command(
    ctx: click.Context,
    account: str,
    group_id: int,
    keep: str,
    retire: str,
    field_values: tuple[str, ...],
) -> None:
    """
    Merge one record of a group into another in HubSpot.

    Example:

        crm-dedupe merge -a alice -g 1 --keep 101 --retire 102 --set phone=+15550100
    """
    values = parse_field_values(field_values)
    group = run_service_command(
        ctx,
        "merge",
        lambda s: s.merge_pair(account, group_id, keep, retire, values),
    )
    click.echo(click.style(f"Merged {retire} into {keep}.", fg="green"))
    show_group(group)


@cli.command("remove")
@account_option
@group_option
@click.option("--record", "-x", required=True, help="Record to drop from the group.")
@click.pass_context
def remove_command(
    ctx: click.Context, account: str, group_id: int, record: str
) -> None:
    """Drop a record from a group without changing HubSpot."""
    group = run_service_command(
        ctx, "remove", lambda s: s.remove_candidate(account, group_id, record)
    )
    click.echo(f"Removed {record} from group {group_id}.")
    show_group(group)


@cli.command("reset")
@account_option
@group_option
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation.")
@click.pass_context
def reset_command(ctx: click.Context, account: str, group_id: int, yes: bool) -> None:
    """
    Restore a group's original members.

    Only local state is reset; merges already made in HubSpot stay merged.
    """
    if not yes:
        click.confirm(
            "Merges already made in HubSpot will NOT be undone. Reset anyway?",
            abort=True,
        )

    group = run_service_command(
        ctx, "reset", lambda s: s.reset_group(account, group_id)
    )
    click.echo(f"Group {group_id} reset.")
    show_group(group)


@cli.command("history")
@account_option
@group_option
@click.pass_context
def history_command(ctx: click.Context, account: str, group_id: int) -> None:
    """Show the merge history of a group."""
    entries = run_service_command(
        ctx, "history", lambda s: s.group_history(account, group_id)
    )
    show_history(group_id, entries)


@cli.command("finish")
@account_option
@run_key_option
@click.pass_context
def finish_command(ctx: click.Context, account: str, run_key: str) -> None:
    """Finish a run once every group is resolved and write its export."""
    result = run_service_command(
        ctx, "finish", lambda s: s.finish_run(account, run_key)
    )
    click.echo(click.style(f"Run {run_key} finished.", fg="green"))
    click.echo(f"Export: {result['export_reference']}")


@cli.command("run-status")
@account_option
@click.option("--run-key", "-r", default=None, help="Run to show (default: all).")
@click.pass_context
def run_status_command(ctx: click.Context, account: str, run_key: str | None) -> None:
    """Show the progress of a run, or of every run of the account."""
    if run_key:
        status = run_service_command(
            ctx, "run-status", lambda s: s.run_status(account, run_key)
        )
        show_run_status(status)
        return

    runs = run_service_command(ctx, "run-status", lambda s: s.list_runs(account))
    if not runs:
        click.echo("No runs yet.")
        return
    for index, status in enumerate(runs):
        if index:
            click.echo()
        show_run_status(status)


# Module entry point (for python -m crm_dedupe.cli)
if __name__ == "__main__":
    cli()
