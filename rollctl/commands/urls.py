from typing import Optional

import typer

from rollctl.config import load_config
from rollctl.modules.factory import generate_factory_url
from rollctl.modules.output import ConsoleOutput

from . import common


def urls(
    ctx: typer.Context,
    version: Optional[str] = typer.Argument(None, help="Talos version (default: latest release)"),
):
    """Generate factory URLs for each profile (for browser)."""
    options = common.get_options(ctx)
    out = ConsoleOutput()
    with common.handle_errors(out):
        config = load_config(options.config_path)
        version = common.resolve_version(options, config, out, version)

        out.header(f"Factory URLs for Talos v{version}")
        out.print()
        out.print("Open these URLs in a browser to download images or get installer commands.")
        out.print()

        for name in sorted(config.profiles):
            profile = config.profiles[name]
            out.subheader(f"Profile: {name}")
            out.print(f"  Arch: {profile.arch}, Secureboot: {profile.secureboot}")
            if profile.overlay is not None:
                out.print(f"  Overlay: {profile.overlay.name}")
            if profile.kernel_args:
                out.print(f"  Kernel Args: {' '.join(profile.kernel_args)}")
            out.print(f"  Extensions: {', '.join(profile.extensions) or 'none'}")
            out.print()
            out.print("  URL:")
            out.print(generate_factory_url(profile, version, config.settings.factory_base_url))
            out.print()

            nodes = config.nodes_by_profile(name)
            if nodes:
                out.print("  Nodes:")
                for node in nodes:
                    out.print(f"    - {node.address} ({node.role.value})")
                out.print()
