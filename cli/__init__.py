import logging

import typer
from rich.logging import RichHandler

import config

from . import pasarguard, utils, xui

app = typer.Typer(no_args_is_help=True, help="Move users between PasarGuard and 3X-UI panels.")
app.add_typer(pasarguard.app, name="pasarguard", help="Export, import and inspect PasarGuard users")
app.add_typer(xui.app, name="xui", help="Export and import 3X-UI inbounds")


def setup_logging(verbose: bool = False):
    level = logging.DEBUG if verbose else config.LOG_LEVEL
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=utils.console, rich_tracebacks=True, show_path=verbose)],
        force=True,
    )
    # connection pool chatter is noise even in verbose mode
    logging.getLogger("urllib3").setLevel(logging.WARNING)


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, *utils.FLAGS["verbose"], help="Show requests, payloads and raw responses"),
):
    setup_logging(verbose)


def main():
    app()
