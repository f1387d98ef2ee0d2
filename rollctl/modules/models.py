"""
Data models for rolling node upgrades.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional


class NodeRole(str, Enum):
    """Node roles in the cluster."""
    CONTROLPLANE = 'controlplane'
    WORKER = 'worker'

    @classmethod
    def parse(cls, value: str) -> 'NodeRole':
        """Map a machine type reported by a node to a role.

        The bootstrap node reports itself as ``init``; it is a control plane.
        """
        value = (value or '').strip().lower()
        if value in ('controlplane', 'control-plane', 'init'):
            return cls.CONTROLPLANE
        return cls.WORKER


@dataclass(frozen=True)
class Node:
    """A node resolved for a rollout. Identity is the address."""
    address: str
    role: NodeRole
    profile: str

    @property
    def is_controlplane(self) -> bool:
        return self.role == NodeRole.CONTROLPLANE


@dataclass(frozen=True)
class UpgradeRequest:
    """Everything needed to upgrade one node, assembled right before it is touched."""
    node: Node
    image: str
    version: str
    expected_extensions: List[str] = field(default_factory=list)
    expected_kernel_args: List[str] = field(default_factory=list)


@dataclass
class ExtensionInfo:
    """An extension installed on a node."""
    name: str
    version: str = ''
    image: str = ''


@dataclass
class NodeFacts:
    """Live facts for one node. ``None`` means the probe for that dimension failed."""
    address: str
    version: Optional[str] = None
    extensions: Optional[List[ExtensionInfo]] = None
    kernel_cmdline: Optional[str] = None


@dataclass
class UpgradeProgress:
    """One observed step of an upgrade."""
    stage: str = ''
    phase: str = ''
    task: str = ''
    action: str = ''
    error: str = ''
    done: bool = False


@dataclass
class ClusterMember:
    """A node discovered through cluster membership."""
    ip: str
    hostname: str = ''
    role: NodeRole = NodeRole.WORKER
    machine_type: str = ''


@dataclass
class HardwareInfo:
    """Hardware identity used for profile detection."""
    system_manufacturer: str = ''
    system_product_name: str = ''
    processor_manufacturer: str = ''
    processor_product_name: str = ''


@dataclass
class ServiceInfo:
    """State of a node service."""
    id: str
    running: bool = False
    healthy: Optional[bool] = None


@dataclass
class StatusNode:
    """A node to include in a status snapshot."""
    address: str
    profile: str
    role: str
    secureboot: bool = False


@dataclass
class NodeStatus:
    """Point-in-time status of a node."""
    address: str
    profile: str
    role: str
    version: str = 'N/A'
    secureboot: bool = False
    reachable: bool = False


class NodeOutcome(str, Enum):
    """Per-node result of a rollout."""
    SKIPPED = 'skipped'
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'
    PLANNED = 'planned'


@dataclass
class RolloutResult:
    """Summary of one rollout."""
    version: str
    dry_run: bool = False
    skipped: List[str] = field(default_factory=list)
    succeeded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    planned: List[str] = field(default_factory=list)
    halted: bool = False
    status: List[NodeStatus] = field(default_factory=list)

    def record(self, address: str, outcome: NodeOutcome, reason: str = '') -> None:
        """Add a node to the bucket for its outcome."""
        if outcome == NodeOutcome.SKIPPED:
            self.skipped.append(address)
        elif outcome == NodeOutcome.SUCCEEDED:
            self.succeeded.append(address)
        elif outcome == NodeOutcome.PLANNED:
            self.planned.append(address)
        else:
            self.failed[address] = reason

    @property
    def success(self) -> bool:
        return not self.failed and not self.halted
