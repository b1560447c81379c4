from datetime import datetime
from typing import Iterable, Optional

import typer
from rich.console import Console
from rich.table import Table

from config import PASSWORD_ENVIRON_NAME
from panelsync.services.reconcile import ReconcileSummary, RecordState
from panelsync.services.snapshot import ListingStats
from panelsync.utils.units import readable_quota, readable_size

console = Console()

FLAGS: dict[str, tuple] = {
    "url": ("--url",),
    "username": ("--username", "-u"),
    "password": ("--password", "-p"),
    "file": ("--file", "-f"),
    "output": ("--output", "-o"),
    "group": ("--group", "-g"),
    "yes_to_all": ("--yes", "-y"),
    "verbose": ("--verbose", "-v"),
}


def success(text: str, auto_exit: bool = True):
    console.print(text, style="green")
    if auto_exit:
        raise typer.Exit()


def error(text: str, exit_code: int = 1, auto_exit: bool = True):
    console.print(text, style="red")
    if auto_exit:
        raise typer.Exit(code=exit_code)


def warning(text: str):
    console.print(text, style="yellow")


def print_table(table: Table, rows: Iterable[Iterable[str]], args: Optional[dict] = None):
    for row in rows:
        table.add_row(*row, **(args or {}))
    console.print(table)


def readable_datetime(date_time: Optional[datetime]) -> str:
    if not date_time:
        return "-"
    return date_time.strftime("%d %B %Y, %H:%M:%S %Z").rstrip()


def print_listing_stats(stats: ListingStats):
    print_table(
        table=Table("Users", "Active", "Traffic used", "Traffic limit", "Traffic remaining"),
        rows=[
            (
                str(stats.total),
                str(stats.active),
                readable_size(stats.used_bytes),
                readable_size(stats.limit_bytes),
                readable_size(stats.remaining_bytes),
            )
        ],
    )
    if not stats.top_consumers:
        return
    print_table(
        table=Table("#", "User", "Used", "Remaining", title="Top traffic consumers"),
        rows=[
            (
                str(position),
                (user.email or user.username or "No Email/Username")[:25],
                readable_size(user.used_bytes),
                readable_quota(user.quota_bytes, user.remaining_bytes),
            )
            for position, user in enumerate(stats.top_consumers, start=1)
        ],
    )


def print_summary(summary: ReconcileSummary):
    print_table(
        table=Table("Created", "Updated", "Failed", "Total"),
        rows=[(str(summary.created), str(summary.updated), str(summary.failed), str(summary.total))],
    )
    console.print(f"{summary.succeeded} of {summary.total} record(s) imported")
    failures = [outcome for outcome in summary.outcomes if outcome.state == RecordState.failed]
    if failures:
        print_table(
            table=Table("#", "Name", "Error", title="Failed records"),
            rows=[(str(outcome.position), outcome.username or outcome.original_username, outcome.error)
                  for outcome in failures],
        )
