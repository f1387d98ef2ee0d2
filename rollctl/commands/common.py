"""Plumbing shared by the rollctl commands."""
import logging
import signal
from contextlib import contextmanager
from typing import Iterator, Optional

import typer

from rollctl.config import FALLBACK_VERSION, ClusterConfig, RunOptions
from rollctl.errors import OperationCancelledError, RollctlError
from rollctl.modules.context import OperationContext
from rollctl.modules.factory import FactoryClient, FactoryError, fetch_latest_version
from rollctl.modules.output import ConsoleOutput
from rollctl.modules.probe import TalosProbe

logger = logging.getLogger("rollctl.commands")

EXIT_FAILURE = 1
EXIT_CANCELLED = 130

# Collaborator factories, swapped out in tests
probe_factory = TalosProbe.from_settings
factory_client_factory = FactoryClient
version_resolver = fetch_latest_version


def get_options(ctx: typer.Context) -> RunOptions:
    """Return the options stored by the root callback."""
    if isinstance(ctx.obj, RunOptions):
        return ctx.obj
    return RunOptions.from_env()


def confirm(prompt: str) -> bool:
    return typer.confirm(prompt, default=False)


def resolve_version(options: RunOptions, config: ClusterConfig, out: ConsoleOutput,
                    explicit: Optional[str] = None) -> str:
    """Pick the target version: argument, then --talos-version, then the latest release."""
    if explicit:
        return explicit
    if options.talos_version:
        return options.talos_version
    try:
        return version_resolver(config.settings.github_releases_url)
    except FactoryError as e:
        out.warn(f"Failed to fetch latest version: {e}, using fallback {FALLBACK_VERSION}")
        return FALLBACK_VERSION


@contextmanager
def operation() -> Iterator[OperationContext]:
    """Yield an operation context cancelled by Ctrl-C.

    A second Ctrl-C interrupts immediately.
    """
    op = OperationContext()

    def handle_sigint(signum, frame):
        if op.cancelled:
            raise KeyboardInterrupt
        logger.warning("Interrupted, cancelling...")
        op.cancel("interrupted")

    try:
        previous = signal.signal(signal.SIGINT, handle_sigint)
    except ValueError:
        # Not on the main thread
        previous = None
    try:
        yield op
    finally:
        if previous is not None:
            signal.signal(signal.SIGINT, previous)


@contextmanager
def handle_errors(out: ConsoleOutput) -> Iterator[None]:
    """Map rollctl errors to exit codes."""
    try:
        yield
    except OperationCancelledError as e:
        out.error(f"Cancelled: {e.reason}")
        raise typer.Exit(EXIT_CANCELLED)
    except (KeyboardInterrupt, typer.Abort):
        out.error("Cancelled")
        raise typer.Exit(EXIT_CANCELLED)
    except RollctlError as e:
        logger.debug("Command failed", exc_info=True)
        out.error(str(e))
        raise typer.Exit(EXIT_FAILURE)
