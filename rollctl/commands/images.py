from typing import Optional

import typer

from rollctl.config import load_config
from rollctl.modules.factory import FactoryError
from rollctl.modules.output import ConsoleOutput

from . import common


def images(
    ctx: typer.Context,
    version: Optional[str] = typer.Argument(None, help="Talos version (default: latest release)"),
):
    """Generate installer image URLs for each profile via the factory API."""
    options = common.get_options(ctx)
    out = ConsoleOutput()
    with common.handle_errors(out):
        config = load_config(options.config_path)
        version = common.resolve_version(options, config, out, version)
        factory = common.factory_client_factory(config.settings.factory_base_url)

        out.header(f"Installer Images for Talos v{version}")
        out.print()
        out.print("These are the installer image URLs for 'talosctl upgrade --image <URL>'")
        out.print()

        for name in sorted(config.profiles):
            out.subheader(f"Profile: {name}")
            out.info("Fetching schematic ID from factory...")
            try:
                image = factory.get_installer_image(config.profiles[name], version)
            except FactoryError as e:
                out.error(f"Failed to get image for {name}: {e}")
                out.print()
                continue

            out.print(f"  {image}")
            out.print()

            nodes = config.nodes_by_profile(name)
            if nodes:
                out.print("  Nodes:")
                for node in nodes:
                    out.print(f"    - {node.address} ({node.role.value})")
                out.print()
