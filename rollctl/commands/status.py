import typer

from rollctl.config import load_config
from rollctl.modules.output import ConsoleOutput
from rollctl.modules.status import StatusCollector
from rollctl.modules.targets import TargetResolver

from . import common


def status(ctx: typer.Context):
    """Show current cluster status and node versions."""
    options = common.get_options(ctx)
    out = ConsoleOutput()
    with common.handle_errors(out), common.operation() as op:
        config = load_config(options.config_path)
        probe = common.probe_factory(config.settings)

        out.header("Talos Cluster Status")
        out.print()
        nodes = TargetResolver(config, probe).status_nodes(op)
        statuses = StatusCollector(probe, config.settings.status_workers).collect(op, nodes)
        out.status_table(statuses)
