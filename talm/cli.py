import logging
from typing import List, Optional

import typer

from talm import __version__
from talm.commands import admin, apply, init, split_csv, state, talosconfig, template
from talm.logging import setup_logging

app = typer.Typer(help="Manage Talos machine configs the GitOps way.")

# Add all command groups
app.add_typer(init.app, name="init")
app.add_typer(template.app, name="template")
app.add_typer(apply.app, name="apply")
app.add_typer(talosconfig.app, name="talosconfig")
admin.register(app)


def _print_version(value: bool):
    if value:
        typer.echo(f"talm {__version__}")
        raise typer.Exit()


# Global options callback
@app.callback()
def main(
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging"),
    root: Optional[str] = typer.Option(None, "--root", help="Project root (default: detected from files or the working directory)"),
    nodes: Optional[List[str]] = typer.Option(None, "--nodes", "-n", help="Target nodes, override modelines"),
    endpoints: Optional[List[str]] = typer.Option(None, "--endpoints", "-e", help="Admin API endpoints, override modelines"),
    talosconfig_path: Optional[str] = typer.Option(None, "--talosconfig", help="Client config path, relative to the project root"),
    version: bool = typer.Option(False, "--version", callback=_print_version, is_eager=True, help="Show the version and exit"),
):
    """talm - Helm-style templating for Talos Linux."""
    state.root = root
    state.nodes = split_csv(nodes)
    state.endpoints = split_csv(endpoints)
    state.talosconfig = talosconfig_path
    state.debug = debug
    setup_logging(debug)
    if debug:
        logging.getLogger("talm").debug("Debug mode enabled")


if __name__ == "__main__":
    app()
