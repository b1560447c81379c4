from pathlib import Path
from typing import Optional

import typer
from rich.table import Table

import config
from panelsync.clients.pasarguard import PasarGuardClient
from panelsync.exceptions import InvalidSnapshot, PanelError, ReconciliationAborted
from panelsync.models.user import Group, PanelType
from panelsync.services.reconcile import ReconciliationEngine
from panelsync.services.snapshot import export_listing, listing_stats, load_batch

from . import utils

app = typer.Typer(no_args_is_help=True)


def connect(url: str, username: str, password: str) -> PasarGuardClient:
    client = PasarGuardClient(url, username, password)
    try:
        client.login()
    except PanelError as exc:
        utils.error(f"Login to {url} failed: {exc}")
    utils.success("Authentication successful", auto_exit=False)
    return client


def parse_selection(selection: str, groups: list[Group]) -> list[int]:
    """Group ids for a comma separated list of 1-based positions in `groups`."""
    selected = []
    for part in selection.split(","):
        part = part.strip()
        if not part:
            continue
        if not part.isdigit():
            utils.warning(f"Invalid number '{part}', skipping")
            continue
        position = int(part)
        if position < 1 or position > len(groups):
            utils.warning(f"Selection '{position}' out of range, skipping")
            continue
        group_id = groups[position - 1].id
        if group_id not in selected:
            selected.append(group_id)
    return selected


def print_groups(groups: list[Group]):
    utils.print_table(
        table=Table("#", "Name", "ID"),
        rows=[(str(position), group.name, str(group.id)) for position, group in enumerate(groups, start=1)],
    )


@app.command(name="export")
def export_users(
    url: str = typer.Option(..., *utils.FLAGS["url"], prompt="Panel URL"),
    username: str = typer.Option(..., *utils.FLAGS["username"], prompt=True),
    password: str = typer.Option(..., *utils.FLAGS["password"], prompt=True, hide_input=True,
                                 envvar=utils.PASSWORD_ENVIRON_NAME),
    output: Path = typer.Option(config.PASARGUARD_EXPORT_FILENAME, *utils.FLAGS["output"]),
):
    """Exports every user of a PasarGuard panel to a snapshot file"""
    client = connect(url, username, password)
    try:
        users = client.fetch_listing()
    except PanelError as exc:
        utils.error(f"Failed to fetch users: {exc}")

    output.write_bytes(export_listing(users, PanelType.pasarguard))
    utils.print_listing_stats(listing_stats(users))
    utils.success(f"Export completed successfully! Saved to: {output}")


@app.command(name="import")
def import_users(
    url: str = typer.Option(..., *utils.FLAGS["url"], prompt="Panel URL"),
    username: str = typer.Option(..., *utils.FLAGS["username"], prompt=True),
    password: str = typer.Option(..., *utils.FLAGS["password"], prompt=True, hide_input=True,
                                 envvar=utils.PASSWORD_ENVIRON_NAME),
    file: Path = typer.Option(..., *utils.FLAGS["file"], prompt="Path to the JSON file", exists=True,
                              dir_okay=False, readable=True),
    group: Optional[list[int]] = typer.Option(None, *utils.FLAGS["group"],
                                              help="Group id to assign to every imported user (repeatable)"),
    yes_to_all: bool = typer.Option(False, *utils.FLAGS["yes_to_all"], help="Skips the group selection prompt"),
):
    """
    Imports users from a snapshot file into a PasarGuard panel

    Accounts whose UUID or password already exists on the panel are updated,
    everything else is created. Quotas are refilled to what was left at export time.
    """
    try:
        batch = load_batch(file.read_bytes())
    except InvalidSnapshot as exc:
        utils.error(f"Error parsing JSON file. Make sure it's a valid export file: {exc}")
    if not batch.records:
        utils.error("No users found in the file to import")
    utils.console.print(f"Found {len(batch.records)} user(s) to import")
    if batch.exported_at:
        utils.console.print(
            f"Snapshot exported from {batch.panel_type or 'an unknown panel'} on {utils.readable_datetime(batch.exported_at)}"
        )

    client = connect(url, username, password)

    group_ids = list(group or [])
    if not group_ids and not yes_to_all:
        try:
            groups = client.fetch_groups()
        except PanelError as exc:
            utils.warning(f"Could not fetch groups: {exc}")
            groups = []
        if groups:
            print_groups(groups)
            selection = typer.prompt(
                "Select group number(s) to assign to imported users (comma-separated), or press Enter to skip",
                default="",
                show_default=False,
            )
            group_ids = parse_selection(selection, groups)

    engine = ReconciliationEngine(client)
    try:
        summary = engine.reconcile(batch, group_ids=group_ids)
    except ReconciliationAborted as exc:
        utils.print_summary(exc.summary)
        utils.error(f"Import aborted: {exc.cause}")

    utils.print_summary(summary)
    if summary.failed:
        utils.error(f"{summary.failed} user(s) could not be imported.", exit_code=2)
    utils.success("Import completed successfully!")


@app.command(name="groups")
def list_groups(
    url: str = typer.Option(..., *utils.FLAGS["url"], prompt="Panel URL"),
    username: str = typer.Option(..., *utils.FLAGS["username"], prompt=True),
    password: str = typer.Option(..., *utils.FLAGS["password"], prompt=True, hide_input=True,
                                 envvar=utils.PASSWORD_ENVIRON_NAME),
):
    """Displays a table of groups"""
    client = connect(url, username, password)
    try:
        groups = client.fetch_groups()
    except PanelError as exc:
        utils.error(f"Failed to fetch groups: {exc}")
    print_groups(groups)
