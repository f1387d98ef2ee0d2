"""Exception hierarchy for rollctl."""
from typing import Optional


class RollctlError(Exception):
    """Base class for every error raised by rollctl."""
    pass


class ConfigError(RollctlError):
    """Configuration file missing, unreadable or invalid."""
    pass


class ProbeError(RollctlError):
    """A node query failed."""

    def __init__(self, address: str, message: str):
        super().__init__(f"{address}: {message}")
        self.address = address
        self.message = message


class OperationCancelledError(RollctlError):
    """The shared operation context was cancelled."""

    def __init__(self, reason: str = "operation cancelled"):
        super().__init__(reason)
        self.reason = reason


class WaitTimeoutError(RollctlError):
    """A bounded wait ran out of time."""
    pass


# Target resolution

class TargetError(RollctlError):
    """Base class for target resolution failures."""
    pass


class UnknownTargetError(TargetError):
    def __init__(self, target: str):
        super().__init__(f"unknown target: {target}")
        self.target = target


class EmptyTargetError(TargetError):
    def __init__(self, target: str):
        super().__init__(f"no nodes found for target: {target}")
        self.target = target


class DiscoveryError(TargetError):
    """Cluster membership or hardware identity could not be queried."""
    pass


class ProfileUndetectedError(TargetError):
    def __init__(self, address: str, hardware: Optional[object] = None):
        detail = f" (hw: {hardware})" if hardware is not None else ""
        super().__init__(f"no profile detected for node {address}{detail}")
        self.address = address
        self.hardware = hardware


# Rollout level

class ImageResolutionError(RollctlError):
    def __init__(self, profile: str, cause: Exception):
        super().__init__(f"failed to get image for profile {profile}: {cause}")
        self.profile = profile
        self.cause = cause


class RolloutAbortedError(RollctlError):
    """The operator declined the pre-rollout confirmation."""
    pass


# Per node

class NodeUpgradeError(RollctlError):
    """A single node failed to upgrade; the rollout may continue."""

    def __init__(self, address: str, reason: str):
        super().__init__(f"{address}: {reason}")
        self.address = address
        self.reason = reason


class UpgradeRejectedError(NodeUpgradeError):
    """The node refused the upgrade command."""
    pass


class UpgradeFailedError(NodeUpgradeError):
    """The node reported a failure in its upgrade event stream."""
    pass


class UpgradeTimeoutError(NodeUpgradeError, WaitTimeoutError):
    """The overall per-node deadline elapsed while streaming or reconnecting."""
    pass
