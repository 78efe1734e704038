"""CLI output formatting functions.

This module contains functions for displaying connection status, duplicate
groups, run progress and contact listings on the command line.
"""

from typing import Any

import click

# Maximum number of items shown before collapsing into "... and N more"
MAX_LISTED = 10

STATE_COLORS = {
    "pending": "yellow",
    "partially_reduced": "cyan",
    "merged": "green",
}


def _member_label(member: dict[str, Any]) -> str:
    fields = member.get("fields", {})
    name = " ".join(p for p in (fields.get("firstname"), fields.get("lastname")) if p)
    email = fields.get("email")
    label = name or email or "(no name)"
    if name and email:
        label = f"{name} <{email}>"
    return f"{member['record_id']}: {label}"


def show_connection_status(account_id: str, status: dict[str, Any]) -> None:
    """Display an account's HubSpot connection status."""
    click.echo(f"=== HubSpot Connection: {account_id} ===\n")

    if not status.get("connected"):
        click.echo(f"Status: {click.style('Not connected', fg='red')}")
        click.echo(f"Run: crm-dedupe connect --account {account_id}")
        return

    click.echo(f"Status: {click.style('Connected', fg='green')}")
    if status.get("account_name"):
        click.echo(f"HubSpot account: {status['account_name']}")
    if status.get("portal_id"):
        click.echo(f"Portal ID: {status['portal_id']}")
    if status.get("hub_domain"):
        click.echo(f"Domain: {status['hub_domain']}")
    click.echo(f"Token expires: {status.get('expires_at') or 'Unknown'}")
    click.echo(f"Last used: {status.get('last_used_at') or 'Never'}")


def show_group(group: dict[str, Any]) -> None:
    """Display one duplicate group with its members."""
    state = group["state"]
    styled_state = click.style(state, fg=STATE_COLORS.get(state, "white"))
    click.echo(
        f"\nGroup {group['id']} [{styled_state}] "
        f"{len(group['members'])}/{len(group['original_members'])} member(s)"
    )

    for member in group["members"]:
        marker = "*" if member["record_id"] == group.get("retained_record_id") else " "
        click.echo(f"  {marker} {_member_label(member)}")

    if group.get("merges_remaining"):
        click.echo(f"  Merges remaining: {group['merges_remaining']}")


def show_group_page(result: dict[str, Any]) -> None:
    """Display one page of duplicate groups."""
    click.echo(
        f"=== Run {result['run_key']}: page {result['page']} of "
        f"{max(result['total_pages'], 1)} ({result['total_groups']} groups) ==="
    )

    if not result["groups"]:
        click.echo("\nNo groups on this page.")
        return

    for group in result["groups"]:
        show_group(group)


def show_run_status(status: dict[str, Any]) -> None:
    """Display the progress of a process run."""
    click.echo(f"=== Run {status['run_key']}: {status['display_name']} ===\n")
    click.echo(f"Phase: {status['phase']}")
    click.echo(f"Groups: {status['merged_groups']}/{status['total_groups']} resolved")
    if status.get("pending_groups"):
        click.echo(
            click.style(f"Pending groups: {status['pending_groups']}", fg="yellow")
        )
    if status.get("export_reference"):
        click.echo(f"Export: {status['export_reference']}")


def show_history(group_id: int, entries: list[dict[str, Any]]) -> None:
    """Display the audit trail of a group."""
    click.echo(f"=== History of group {group_id} ===\n")
    if not entries:
        click.echo("No changes recorded.")
        return

    for entry in entries:
        action = entry["action"]
        if action == "merge":
            detail = f"{entry['retire_record_id']} -> {entry['keep_record_id']}"
            if entry.get("field_values"):
                detail += f" (set {', '.join(sorted(entry['field_values']))})"
        elif action == "remove":
            detail = f"removed {entry['retire_record_id']}"
        else:
            detail = "membership restored"
        click.echo(f"{entry.get('created_at') or ''}  {action:<6}  {detail}")


def show_contacts(contacts: list[dict[str, Any]], limit: int = MAX_LISTED) -> None:
    """Display a summary of HubSpot contacts."""
    click.echo(f"Contacts: {len(contacts)}")
    for contact in contacts[:limit]:
        member = {"record_id": contact.get("id"), "fields": contact.get("properties", {})}
        click.echo(f"  {_member_label(member)}")
    if len(contacts) > limit:
        click.echo(f"  ... and {len(contacts) - limit} more")
