"""Resolution of a target token into an ordered list of nodes.

Targets:
  all            - every node, workers first, then control planes
  workers        - worker nodes only
  controlplanes  - control plane nodes only
  <ip>           - a single node by address
  <profile>      - every node with that profile

When detection rules are configured, nodes are discovered from cluster
membership and their profiles detected from hardware identity; otherwise the
static inventory from the config file is used.
"""
import logging
from typing import List, Optional

from rollctl.config import UNKNOWN_PROFILE, ClusterConfig
from rollctl.errors import (
    DiscoveryError,
    EmptyTargetError,
    ProbeError,
    ProfileUndetectedError,
    UnknownTargetError,
)
from rollctl.utils import address_key

from .context import OperationContext
from .models import Node, NodeRole, StatusNode
from .probe import NodeStateProbe

logger = logging.getLogger("rollctl.targets")

TARGET_ALL = 'all'
TARGET_WORKERS = 'workers'
TARGET_CONTROLPLANES = 'controlplanes'


def sort_nodes(nodes: List[Node]) -> List[Node]:
    return sorted(nodes, key=lambda n: address_key(n.address))


def filter_nodes(nodes: List[Node], target: str) -> List[Node]:
    """Select and order ``nodes`` for ``target``, preserving input order within a role.

    Raises:
        EmptyTargetError: A role filter matched nothing
        UnknownTargetError: The token is neither a known address nor a profile
    """
    if target == TARGET_ALL:
        workers = [n for n in nodes if n.role == NodeRole.WORKER]
        controlplanes = [n for n in nodes if n.role == NodeRole.CONTROLPLANE]
        result = workers + controlplanes
    elif target == TARGET_WORKERS:
        result = [n for n in nodes if n.role == NodeRole.WORKER]
    elif target == TARGET_CONTROLPLANES:
        result = [n for n in nodes if n.role == NodeRole.CONTROLPLANE]
    else:
        for node in nodes:
            if node.address == target:
                return [node]
        result = [n for n in nodes if n.profile == target]
        if not result:
            raise UnknownTargetError(target)

    if not result:
        raise EmptyTargetError(target)
    return result


class TargetResolver:
    """Builds node lists from the config file or from cluster discovery."""

    def __init__(self, config: ClusterConfig, probe: Optional[NodeStateProbe] = None):
        self.config = config
        self.probe = probe

    @property
    def discovery_enabled(self) -> bool:
        return self.config.has_detection() and self.probe is not None

    def resolve(self, ctx: OperationContext, target: str) -> List[Node]:
        """Resolve ``target`` for an upgrade. Undetected profiles are fatal."""
        if self.discovery_enabled:
            nodes = self.discover(ctx)
        else:
            nodes = self.config.inventory()
        return filter_nodes(nodes, target)

    def discover(self, ctx: OperationContext) -> List[Node]:
        """Discover members and detect each one's profile.

        Raises:
            DiscoveryError: Membership or hardware query failed
            ProfileUndetectedError: No detection rule matched a member
        """
        nodes = []
        for member in self._members(ctx):
            try:
                hw = self.probe.get_hardware_info(ctx, member.ip)
            except ProbeError as e:
                raise DiscoveryError(f"failed to get hardware info for {member.ip}: {e}") from e
            profile_name, _ = self.config.detect_profile(hw)
            if profile_name is None:
                raise ProfileUndetectedError(member.ip, hw)
            logger.debug("Detected profile %s for %s", profile_name, member.ip)
            nodes.append(Node(address=member.ip, role=member.role, profile=profile_name))
        return sort_nodes(nodes)

    def status_nodes(self, ctx: OperationContext) -> List[StatusNode]:
        """Nodes to show in a status snapshot.

        Unlike :meth:`resolve`, nodes whose profile cannot be detected are
        listed with the profile ``unknown`` instead of failing.
        """
        if not self.discovery_enabled:
            return [self._status_node(n.address, n.profile, n.role) for n in self.config.inventory()]

        result = []
        for member in self._members(ctx):
            profile_name = UNKNOWN_PROFILE
            try:
                hw = self.probe.get_hardware_info(ctx, member.ip)
                detected, _ = self.config.detect_profile(hw)
                profile_name = detected or UNKNOWN_PROFILE
            except ProbeError as e:
                logger.debug("Hardware info unavailable for %s: %s", member.ip, e)
            result.append(self._status_node(member.ip, profile_name, member.role))
        return sorted(result, key=lambda n: address_key(n.address))

    def resolve_node(self, ctx: OperationContext, address: str) -> Node:
        """Resolve a single node by address for ``upgrade-node``."""
        for node in self.config.inventory():
            if node.address == address:
                return node

        if not self.discovery_enabled:
            raise UnknownTargetError(address)

        try:
            hw = self.probe.get_hardware_info(ctx, address)
        except ProbeError as e:
            raise DiscoveryError(f"failed to get hardware info for {address}: {e}") from e
        profile_name, _ = self.config.detect_profile(hw)
        if profile_name is None:
            raise ProfileUndetectedError(address, hw)

        role = NodeRole.WORKER
        for member in self._members(ctx):
            if member.ip == address:
                role = member.role
                break
        return Node(address=address, role=role, profile=profile_name)

    def _members(self, ctx: OperationContext):
        try:
            return self.probe.get_cluster_members(ctx)
        except ProbeError as e:
            raise DiscoveryError(f"failed to discover cluster members: {e}") from e

    def _status_node(self, address: str, profile_name: str, role: NodeRole) -> StatusNode:
        profile = self.config.profiles.get(profile_name)
        return StatusNode(
            address=address,
            profile=profile_name,
            role=role.value,
            secureboot=profile.secureboot if profile else False,
        )
