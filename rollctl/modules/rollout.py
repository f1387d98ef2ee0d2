"""Sequential rollout of upgrades across a resolved set of nodes."""
import logging
from typing import Callable, Dict, List, Optional, Protocol

from rollctl.config import ClusterConfig, Profile, RunOptions
from rollctl.errors import (
    DiscoveryError,
    EmptyTargetError,
    ImageResolutionError,
    NodeUpgradeError,
    ProbeError,
    RollctlError,
    RolloutAbortedError,
)

from .clock import Clock, RealClock
from .context import OperationContext
from .diff import decide
from .models import Node, NodeFacts, NodeOutcome, NodeStatus, RolloutResult, UpgradeRequest
from .output import ConsoleOutput, ProgressPrinter
from .probe import NodeStateProbe
from .status import StatusCollector
from .targets import TargetResolver
from .upgrader import NodeUpgrader, ProgressObserver

logger = logging.getLogger("rollctl.rollout")

Confirm = Callable[[str], bool]

PROCEED_PROMPT = "Proceed with upgrade?"
CONTINUE_PROMPT = "Control plane upgrade failed. Continue?"


class ImageResolver(Protocol):
    def get_installer_image(self, profile: Profile, version: str) -> str:
        ...


class RolloutController:
    """Upgrades nodes one at a time: diff, then upgrade, then health checks.

    Every collaborator is injected; nothing here reads global state.
    """

    def __init__(
        self,
        config: ClusterConfig,
        probe: NodeStateProbe,
        images: ImageResolver,
        confirm: Confirm,
        options: Optional[RunOptions] = None,
        clock: Optional[Clock] = None,
        out: Optional[ConsoleOutput] = None,
        observer: Optional[ProgressObserver] = None,
        resolver: Optional[TargetResolver] = None,
    ):
        self.config = config
        self.settings = config.settings
        self.probe = probe
        self.images = images
        self.confirm = confirm
        self.options = (options or RunOptions()).resolved(config.settings)
        self.clock = clock or RealClock()
        self.out = out or ConsoleOutput()
        self.observer = observer
        self.resolver = resolver or TargetResolver(config, probe)

    @property
    def dry_run(self) -> bool:
        return self.options.dry_run

    def run_target(self, ctx: OperationContext, target: str, version: str) -> RolloutResult:
        """Resolve ``target`` and roll it out."""
        self.out.header(f"Talos Cluster Upgrade to v{version}")
        self.out.print()
        if self.dry_run:
            self.out.warn("DRY RUN MODE - No changes will be made")
            self.out.print()
        nodes = self.resolver.resolve(ctx, target)
        return self.run(ctx, nodes, version, target=target)

    def run(self, ctx: OperationContext, nodes: List[Node], version: str,
            target: str = '') -> RolloutResult:
        """Roll ``version`` out to ``nodes`` in the given order.

        Raises:
            EmptyTargetError: ``nodes`` is empty
            RolloutAbortedError: The operator declined to proceed
            ImageResolutionError: An installer image could not be resolved
            OperationCancelledError: ``ctx`` was cancelled
        """
        if not nodes:
            raise EmptyTargetError(target)

        self.out.print("Nodes to upgrade (in order):")
        for node in nodes:
            self.out.print(f"  - {node.address} ({node.role.value}, profile: {node.profile})")
        self.out.print()

        if not self.dry_run and not self.confirm(PROCEED_PROMPT):
            raise RolloutAbortedError("upgrade aborted by user")

        images = self.resolve_images(nodes, version)

        result = RolloutResult(version=version, dry_run=self.dry_run)
        for node in nodes:
            ctx.raise_if_cancelled()
            self.out.print()
            self.out.separator()
            try:
                outcome = self.upgrade_node(ctx, self.build_request(node, images[node.profile], version))
            except NodeUpgradeError as e:
                result.record(node.address, NodeOutcome.FAILED, e.reason)
                self.out.error(f"Failed to upgrade {node.address}: {e.reason}")
                if node.is_controlplane and not self.dry_run and not self.confirm(CONTINUE_PROMPT):
                    logger.warning("Halting rollout after control plane failure on %s", node.address)
                    result.halted = True
                    break
                continue
            result.record(node.address, outcome)

        self.out.print()
        self.out.separator()
        self.out.summary(result)
        self.out.print()
        result.status = self.snapshot(ctx)
        return result

    def resolve_images(self, nodes: List[Node], version: str) -> Dict[str, str]:
        """Resolve one installer image per distinct profile, before any node is touched."""
        images = {}
        for name in sorted({node.profile for node in nodes}):
            profile = self.config.profiles.get(name)
            if profile is None:
                raise ImageResolutionError(name, KeyError(f"unknown profile {name}"))
            self.out.info(f"Getting installer image for profile {name}...")
            try:
                images[name] = self.images.get_installer_image(profile, version)
            except RollctlError as e:
                self.out.error(f"Failed to get image for profile {name}: {e}")
                raise ImageResolutionError(name, e) from e
            self.out.success(f"  {images[name]}")
        self.out.print()
        return images

    def build_request(self, node: Node, image: str, version: str) -> UpgradeRequest:
        profile = self.config.profile_for(node)
        return UpgradeRequest(
            node=node,
            image=image,
            version=version,
            expected_extensions=list(profile.extensions),
            expected_kernel_args=list(profile.kernel_args),
        )

    def gather_facts(self, ctx: OperationContext, address: str) -> NodeFacts:
        """Probe every dimension fresh; a failed probe leaves that dimension unknown."""
        facts = NodeFacts(address=address)
        try:
            facts.version = self.probe.get_version(ctx, address)
        except ProbeError as e:
            logger.debug("Version unknown for %s: %s", address, e)
        try:
            facts.extensions = self.probe.get_extensions(ctx, address)
        except ProbeError as e:
            logger.debug("Extensions unknown for %s: %s", address, e)
        try:
            facts.kernel_cmdline = self.probe.get_kernel_cmdline(ctx, address)
        except ProbeError as e:
            logger.debug("Kernel cmdline unknown for %s: %s", address, e)
        return facts

    def upgrade_node(self, ctx: OperationContext, request: UpgradeRequest) -> NodeOutcome:
        """Upgrade one node unless it already matches ``request``."""
        node = request.node
        facts = self.gather_facts(ctx, node.address)
        decision = decide(facts, request)
        if decision.skip:
            self.out.success(
                f"Node {node.address} already at v{request.version} with matching config, skipping"
            )
            return NodeOutcome.SKIPPED

        current = facts.version or 'unknown'
        self.out.info(f"Upgrading node {node.address} ({node.role.value})")
        self.out.info(f"  Current version: {current}")
        if decision.detail:
            self.out.info(f"  Differences: {decision.detail}")
        self.out.info(f"  Target image: {request.image}")

        if self.dry_run:
            self.out.warn(
                f"DRY RUN: Would run: talosctl upgrade -n {node.address} "
                f"--image {request.image} --preserve={str(self.options.preserve).lower()}"
            )
            return NodeOutcome.PLANNED

        self.out.info("Watching upgrade progress...")
        observer = self.observer or ProgressPrinter(self.out)
        upgrader = NodeUpgrader(self.probe, self.clock, self.settings,
                                observer=observer, preserve=self.options.preserve)
        upgrader.run(ctx, request)

        try:
            new_version = self.probe.get_version(ctx, node.address)
        except ProbeError:
            new_version = 'unknown'
        self.out.success(f"Node {node.address} upgraded: {current} -> {new_version}")
        return NodeOutcome.SUCCEEDED

    def snapshot(self, ctx: OperationContext) -> List[NodeStatus]:
        """Take and print a full-cluster status snapshot."""
        self.out.header("Talos Cluster Status")
        self.out.print()
        try:
            nodes = self.resolver.status_nodes(ctx)
        except DiscoveryError as e:
            self.out.warn(f"Could not collect cluster status: {e}")
            return []
        statuses = StatusCollector(self.probe, self.settings.status_workers).collect(ctx, nodes)
        self.out.status_table(statuses)
        return statuses
