from typing import List, Optional, Tuple

import typer

from rollctl.config import load_config
from rollctl.errors import RolloutAbortedError
from rollctl.modules.output import ConsoleOutput
from rollctl.modules.rollout import RolloutController
from rollctl.modules.targets import TARGET_ALL, TargetResolver
from rollctl.utils import is_version

from . import common


def parse_upgrade_args(args: List[str]) -> Tuple[str, Optional[str]]:
    """Split ``[target] [version]`` given in either order.

    A token starting with a digit with at most two dots is a version
    (``1.10.0``); an IPv4 address has three.
    """
    target, version = TARGET_ALL, None
    if not args:
        return target, version
    if is_version(args[0]):
        version = args[0]
        if len(args) > 1:
            target = args[1]
    else:
        target = args[0]
        if len(args) > 1:
            version = args[1]
    return target, version


def _controller(config, probe, options, out, resolver=None) -> RolloutController:
    return RolloutController(
        config,
        probe,
        common.factory_client_factory(config.settings.factory_base_url),
        common.confirm,
        options=options,
        out=out,
        resolver=resolver,
    )


def upgrade(
    ctx: typer.Context,
    args: Optional[List[str]] = typer.Argument(
        None,
        metavar="[TARGET] [VERSION]",
        help="Target (all, workers, controlplanes, <profile>, <ip>) and version, in either order",
    ),
):
    """Upgrade nodes to the specified version.

    Workers are upgraded before control planes when the target is 'all'.
    """
    args = args or []
    if len(args) > 2:
        raise typer.BadParameter("expected at most two arguments: [target] [version]")

    options = common.get_options(ctx)
    out = ConsoleOutput()
    target, version = parse_upgrade_args(args)
    with common.handle_errors(out), common.operation() as op:
        config = load_config(options.config_path)
        version = common.resolve_version(options, config, out, version)
        probe = common.probe_factory(config.settings)

        try:
            result = _controller(config, probe, options, out).run_target(op, target, version)
        except RolloutAbortedError:
            out.print("Aborted.")
            return

    if not result.success:
        raise typer.Exit(common.EXIT_FAILURE)


def upgrade_node(
    ctx: typer.Context,
    ip: str = typer.Argument(..., help="Node address"),
    version: Optional[str] = typer.Argument(None, help="Talos version (default: latest release)"),
):
    """Upgrade a single node."""
    options = common.get_options(ctx)
    out = ConsoleOutput()
    with common.handle_errors(out), common.operation() as op:
        config = load_config(options.config_path)
        version = common.resolve_version(options, config, out, version)
        probe = common.probe_factory(config.settings)
        resolver = TargetResolver(config, probe)

        node = resolver.resolve_node(op, ip)
        out.header(f"Upgrading node {ip} to v{version}")
        out.print()
        if options.dry_run:
            out.warn("DRY RUN MODE - No changes will be made")
            out.print()

        try:
            result = _controller(config, probe, options, out, resolver).run(op, [node], version, target=ip)
        except RolloutAbortedError:
            out.print("Aborted.")
            return

    if not result.success:
        raise typer.Exit(common.EXIT_FAILURE)
