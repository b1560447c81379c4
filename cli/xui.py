from pathlib import Path

import typer
from rich.table import Table

import config
from panelsync.clients.threexui import ThreeXUIClient
from panelsync.exceptions import InvalidSnapshot, PanelError, ReconciliationAborted
from panelsync.models.inbound import InboundRecord
from panelsync.models.user import PanelType
from panelsync.services.inbounds import InboundReconciler
from panelsync.services.snapshot import (
    export_inbounds,
    export_listing,
    inbounds_to_users,
    listing_stats,
    load_inbound_batch,
)
from panelsync.utils.units import readable_size

from . import utils

app = typer.Typer(no_args_is_help=True)


def connect(url: str, username: str, password: str) -> ThreeXUIClient:
    client = ThreeXUIClient(url, username, password)
    try:
        client.login()
    except PanelError as exc:
        utils.error(f"Login to {url} failed: {exc}")
    utils.success("Authentication successful", auto_exit=False)
    return client


def fetch_listing(client: ThreeXUIClient) -> list[InboundRecord]:
    try:
        return client.fetch_listing()
    except PanelError as exc:
        utils.error(f"Failed to fetch inbounds: {exc}")


def print_inbounds(listing: list[InboundRecord]):
    utils.print_table(
        table=Table("ID", "Remark", "Protocol", "Port", "Enabled", "Clients", "Traffic used"),
        rows=[
            (
                str(inbound.id),
                inbound.remark,
                inbound.protocol,
                str(inbound.port),
                "yes" if inbound.enabled else "no",
                str(len(inbound.clients)),
                readable_size(sum(client.used_bytes for client in inbound.clients)),
            )
            for inbound in listing
        ],
    )


@app.command(name="export")
def export(
    url: str = typer.Option(..., *utils.FLAGS["url"], prompt="Panel URL"),
    username: str = typer.Option(..., *utils.FLAGS["username"], prompt=True),
    password: str = typer.Option(..., *utils.FLAGS["password"], prompt=True, hide_input=True,
                                 envvar=utils.PASSWORD_ENVIRON_NAME),
    output: Path = typer.Option(config.XUI_INBOUNDS_FILENAME, *utils.FLAGS["output"]),
):
    """Exports every inbound of a 3X-UI panel, with its clients, to a snapshot file"""
    client = connect(url, username, password)
    listing = fetch_listing(client)
    output.write_bytes(export_inbounds(listing))
    print_inbounds(listing)
    utils.print_listing_stats(listing_stats(inbounds_to_users(listing)))
    utils.success(f"Export completed successfully! Saved to: {output}")


@app.command(name="export-users")
def export_users(
    url: str = typer.Option(..., *utils.FLAGS["url"], prompt="Panel URL"),
    username: str = typer.Option(..., *utils.FLAGS["username"], prompt=True),
    password: str = typer.Option(..., *utils.FLAGS["password"], prompt=True, hide_input=True,
                                 envvar=utils.PASSWORD_ENVIRON_NAME),
    output: Path = typer.Option(config.XUI_EXPORT_FILENAME, *utils.FLAGS["output"]),
):
    """
    Exports the clients of a 3X-UI panel as a user snapshot

    The file can be imported into a PasarGuard panel with `pasarguard import`.
    """
    client = connect(url, username, password)
    users = client.fetch_users(fetch_listing(client))
    output.write_bytes(export_listing(users, PanelType.threexui))
    utils.print_listing_stats(listing_stats(users))
    utils.success(f"Export completed successfully! Saved to: {output}")


@app.command(name="import")
def import_inbounds(
    url: str = typer.Option(..., *utils.FLAGS["url"], prompt="Panel URL"),
    username: str = typer.Option(..., *utils.FLAGS["username"], prompt=True),
    password: str = typer.Option(..., *utils.FLAGS["password"], prompt=True, hide_input=True,
                                 envvar=utils.PASSWORD_ENVIRON_NAME),
    file: Path = typer.Option(..., *utils.FLAGS["file"], prompt="Path to the JSON file", exists=True,
                              dir_okay=False, readable=True),
):
    """
    Imports inbounds from a snapshot file into a 3X-UI panel

    Inbounds sharing a tag or port with an existing one replace it, everything else is created.
    """
    try:
        batch = load_inbound_batch(file.read_bytes())
    except InvalidSnapshot as exc:
        utils.error(f"Error parsing JSON file. Make sure it's a valid export file: {exc}")
    if not batch.inbounds:
        utils.error("No inbounds found in the file to import")
    utils.console.print(f"Found {len(batch.inbounds)} inbound(s) to import")

    client = connect(url, username, password)
    try:
        summary = InboundReconciler(client).reconcile(batch)
    except ReconciliationAborted as exc:
        utils.print_summary(exc.summary)
        utils.error(f"Import aborted: {exc.cause}")

    utils.print_summary(summary)
    utils.console.print(f"Total users: {summary.total_users}")
    if summary.failed:
        utils.error(f"{summary.failed} inbound(s) could not be imported.", exit_code=2)
    utils.success("Import completed successfully!")
