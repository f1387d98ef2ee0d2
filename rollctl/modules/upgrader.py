"""State machine driving one node through an upgrade.

    idle -> command_issued -> streaming <-> reconnecting
         -> verifying_health -> done | failed

Only a rejected upgrade command, a failure reported in the event stream and
the overall deadline running out while streaming or reconnecting fail the
node. Health verification after the node is back is best effort.
"""
import logging
import queue
import threading
from enum import Enum
from typing import Callable, List, Optional

from rollctl.config import Settings
from rollctl.errors import (
    OperationCancelledError,
    ProbeError,
    RollctlError,
    UpgradeFailedError,
    UpgradeRejectedError,
    UpgradeTimeoutError,
    WaitTimeoutError,
)

from .clock import Clock
from .context import OperationContext
from .events import STAGE_RUNNING, EventResult, EventSubscription, decode_event
from .models import Node, UpgradeProgress, UpgradeRequest
from .probe import NodeStateProbe, services_for

logger = logging.getLogger("rollctl.upgrader")

ProgressObserver = Callable[[UpgradeProgress], None]

RECONNECT_TAIL_EVENTS = 10


class UpgradeState(str, Enum):
    IDLE = 'idle'
    COMMAND_ISSUED = 'command_issued'
    STREAMING = 'streaming'
    RECONNECTING = 'reconnecting'
    VERIFYING_HEALTH = 'verifying_health'
    DONE = 'done'
    FAILED = 'failed'


class NodeUpgrader:
    """Upgrades exactly one node. Not reusable across nodes."""

    def __init__(self, probe: NodeStateProbe, clock: Clock, settings: Settings,
                 observer: Optional[ProgressObserver] = None, preserve: bool = True):
        self.probe = probe
        self.clock = clock
        self.settings = settings
        self.observer = observer
        self.preserve = preserve
        self.state = UpgradeState.IDLE
        self.history: List[UpgradeState] = [UpgradeState.IDLE]

    def _transition(self, state: UpgradeState) -> None:
        logger.debug("%s -> %s", self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def _emit(self, progress: UpgradeProgress) -> None:
        if self.observer is not None:
            self.observer(progress)

    def run(self, ctx: OperationContext, request: UpgradeRequest) -> None:
        """Upgrade ``request.node`` and wait for it to come back healthy.

        Raises:
            UpgradeRejectedError: The node refused the upgrade command
            UpgradeFailedError: The event stream reported a failure
            UpgradeTimeoutError: The node did not finish within the node timeout
            OperationCancelledError: ``ctx`` was cancelled
        """
        address = request.node.address
        try:
            self._issue(ctx, request)
            deadline = self.clock.now() + self.settings.default_timeout_seconds
            self._stream(ctx, address, deadline)
        except (UpgradeRejectedError, UpgradeFailedError, UpgradeTimeoutError):
            self._transition(UpgradeState.FAILED)
            raise

        self._transition(UpgradeState.VERIFYING_HEALTH)
        self._verify_health(ctx, request.node)
        self._transition(UpgradeState.DONE)

    def _issue(self, ctx: OperationContext, request: UpgradeRequest) -> None:
        address = request.node.address
        self._transition(UpgradeState.COMMAND_ISSUED)
        try:
            self.probe.upgrade(ctx, address, request.image, self.preserve)
        except OperationCancelledError:
            raise
        except RollctlError as e:
            message = e.message if isinstance(e, ProbeError) else str(e)
            raise UpgradeRejectedError(address, f"upgrade command failed: {message}") from e

    def _next(self, ctx: OperationContext, sub: EventSubscription,
              timer: threading.Event) -> Optional[EventResult]:
        """Return the next queued item, or None once ``timer`` has fired.

        Items already queued are returned before an expired timer is honoured.
        """
        while True:
            ctx.raise_if_cancelled()
            expired = timer.is_set()
            try:
                item = sub.get(0 if expired else self.settings.event_poll_seconds)
            except queue.Empty:
                item = None
            ctx.raise_if_cancelled()
            if item is not None:
                return item
            if expired:
                return None

    def _stream(self, ctx: OperationContext, address: str, deadline: float) -> None:
        self._transition(UpgradeState.STREAMING)
        try:
            sub = self.probe.watch_upgrade(ctx, address)
        except ProbeError as e:
            logger.debug("Could not open event stream for %s: %s", address, e)
            sub = EventSubscription.of([EventResult(error=str(e))], address)

        timer = self.clock.after(max(0.0, deadline - self.clock.now()))
        try:
            while True:
                item = self._next(ctx, sub, timer)
                if item is None:
                    raise UpgradeTimeoutError(
                        address, f"timeout waiting for upgrade to complete on {address}"
                    )
                if item.error is not None:
                    # The node dropped the connection, which means it is rebooting
                    logger.debug("Event stream for %s ended: %s", address, item.error)
                    self._emit(UpgradeProgress(stage='rebooting', action='connection lost'))
                    break
                if self._handle(address, item):
                    return
        finally:
            sub.close()

        self._reconnect(ctx, address, deadline)

    def _handle(self, address: str, item: EventResult) -> bool:
        """Forward a decoded event; return True once the node reports running."""
        progress = decode_event(item.payload)
        if progress is None:
            return False
        self._emit(progress)
        if progress.error:
            raise UpgradeFailedError(address, f"upgrade failed: {progress.error}")
        return progress.done

    def _reconnect(self, ctx: OperationContext, address: str, deadline: float) -> None:
        self._transition(UpgradeState.RECONNECTING)
        self._emit(UpgradeProgress(stage='rebooting', action='waiting for node to come back'))

        while self.clock.now() < deadline:
            ctx.raise_if_cancelled()
            self.clock.sleep(self.settings.reconnect_poll_seconds, ctx.done)
            ctx.raise_if_cancelled()

            if not self.probe.is_reachable(ctx, address):
                continue
            if self._watch_for_running(ctx, address, deadline):
                return
            # No running event inside the short window; a reachable, ready node is done anyway
            if self.probe.is_reachable(ctx, address) and self._ready(ctx, address):
                self._emit(UpgradeProgress(stage=STAGE_RUNNING, done=True))
                return

        ctx.raise_if_cancelled()
        raise UpgradeTimeoutError(
            address, f"timeout waiting for node {address} to come back after reboot"
        )

    def _watch_for_running(self, ctx: OperationContext, address: str, deadline: float) -> bool:
        window = min(self.settings.reconnect_window_seconds, max(0.0, deadline - self.clock.now()))
        try:
            sub = self.probe.watch_upgrade(ctx, address, tail=RECONNECT_TAIL_EVENTS)
        except ProbeError as e:
            logger.debug("Could not reopen event stream for %s: %s", address, e)
            return False

        timer = self.clock.after(window)
        try:
            while True:
                item = self._next(ctx, sub, timer)
                if item is None or item.error is not None:
                    return False
                if self._handle(address, item):
                    return True
        finally:
            sub.close()

    def _ready(self, ctx: OperationContext, address: str) -> bool:
        ready = self.probe.is_node_ready(ctx, address)
        return ready is None or ready

    def _verify_health(self, ctx: OperationContext, node: Node) -> None:
        services = services_for(node.role)
        logger.info("Waiting for Talos services on %s: %s", node.address, ", ".join(services))
        try:
            self.probe.wait_for_services(ctx, node.address, services,
                                         self.settings.service_timeout_seconds)
            logger.info("Talos services healthy on %s", node.address)
        except (WaitTimeoutError, ProbeError) as e:
            logger.warning("Services health check timed out on %s: %s", node.address, e)

        if not node.is_controlplane:
            return

        logger.info("Waiting for control plane pods on %s: apiserver, controller-manager, scheduler",
                    node.address)
        try:
            self.probe.wait_for_static_pods(ctx, node.address,
                                            self.settings.static_pod_timeout_seconds)
            logger.info("Control plane pods healthy on %s", node.address)
        except (WaitTimeoutError, ProbeError) as e:
            logger.warning("Static pods health check timed out on %s: %s", node.address, e)
