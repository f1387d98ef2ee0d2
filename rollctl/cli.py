import logging
from typing import Optional

import typer

from rollctl.commands import images, status, upgrade, urls
from rollctl.config import RunOptions
from rollctl.logging import setup_logging

app = typer.Typer(
    help="Rolling OS upgrades for Talos Linux clusters.",
    no_args_is_help=True,
)

app.command("status")(status.status)
app.command("urls")(urls.urls)
app.command("images")(images.images)
app.command("upgrade")(upgrade.upgrade)
app.command("upgrade-node")(upgrade.upgrade_node)


# Global options callback
@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None, "--config", "-c", help="Config file (default: configs/talos-profiles.yaml)"
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Perform a dry run without making changes"),
    talos_version: Optional[str] = typer.Option(
        None, "--talos-version", "-V", help="Talos version to upgrade to (default: latest release)"
    ),
    preserve: Optional[bool] = typer.Option(
        None, "--preserve/--no-preserve", help="Preserve ephemeral data during upgrade"
    ),
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging"),
):
    """rollctl - Talos cluster upgrade tool."""
    setup_logging(debug)
    if debug:
        logging.debug("Debug mode enabled")
    ctx.obj = RunOptions.from_env(
        config_path=config,
        dry_run=dry_run,
        talos_version=talos_version,
        preserve=preserve,
        debug=debug,
    )


if __name__ == "__main__":
    app()
