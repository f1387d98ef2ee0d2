import io
from typing import Any, Callable, Dict, Iterator, List, Optional

import pytest
from rich.console import Console

from rollctl.config import ClusterConfig, Profile, RunOptions
from rollctl.errors import ProbeError
from rollctl.modules.clock import FakeClock
from rollctl.modules.context import OperationContext
from rollctl.modules.events import EventSubscription, MachineStatusEvent
from rollctl.modules.factory import FactoryError
from rollctl.modules.models import ClusterMember, ExtensionInfo, HardwareInfo
from rollctl.modules.output import ConsoleOutput
from rollctl.modules.probe import NodeStateProbe
from rollctl.modules.rollout import RolloutController
from rollctl.modules.talosctl import MachineClient

CLUSTER = {
    "settings": {"event_poll_seconds": 0.01},
    "profiles": {
        "amd-worker": {
            "arch": "amd64",
            "platform": "metal",
            "kernel_args": ["amd_iommu=off"],
            "extensions": ["siderolabs/iscsi-tools", "siderolabs/amd-ucode"],
        },
        "intel-cp": {
            "arch": "amd64",
            "platform": "metal",
            "secureboot": True,
            "extensions": ["siderolabs/intel-ucode"],
        },
    },
    "nodes": [
        {"ip": "10.0.0.12", "profile": "intel-cp", "role": "controlplane"},
        {"ip": "10.0.0.21", "profile": "amd-worker", "role": "worker"},
        {"ip": "10.0.0.11", "profile": "intel-cp", "role": "controlplane"},
        {"ip": "10.0.0.9", "profile": "amd-worker", "role": "worker"},
    ],
}

WORKERS = ["10.0.0.9", "10.0.0.21"]
CONTROLPLANES = ["10.0.0.11", "10.0.0.12"]


def running_stream() -> List[Any]:
    return [MachineStatusEvent(stage="RUNNING")]


class FakeProbe(NodeStateProbe):
    """In-memory probe. Every address answers unless configured otherwise."""

    def __init__(self, version: str = "1.9.5", upgraded_version: Optional[str] = None):
        self.default_version = version
        self.upgraded_version = upgraded_version
        self.versions: Dict[str, str] = {}
        self.extensions: Dict[str, List[ExtensionInfo]] = {}
        self.cmdlines: Dict[str, str] = {}
        self.failing: Dict[str, set] = {}
        self.upgrade_errors: Dict[str, str] = {}
        self.on_upgrade: Optional[Callable[[str], None]] = None
        self.streams: Dict[str, List[List[Any]]] = {}
        self.unreachable: set = set()
        self.ready: Optional[bool] = None
        self.members: List[ClusterMember] = []
        self.members_error: Optional[str] = None
        self.hardware: Dict[str, HardwareInfo] = {}
        self.health_error: Optional[Exception] = None
        self.calls: List[tuple] = []

    def _check(self, ctx, method: str, address: str) -> None:
        ctx.raise_if_cancelled()
        if method in self.failing.get(address, ()):
            raise ProbeError(address, f"{method} failed")

    def is_reachable(self, ctx, address):
        ctx.raise_if_cancelled()
        self.calls.append(("reachable", address))
        return address not in self.unreachable

    def get_version(self, ctx, address):
        self._check(ctx, "version", address)
        self.calls.append(("version", address))
        return self.versions.get(address, self.default_version)

    def get_extensions(self, ctx, address):
        self._check(ctx, "extensions", address)
        return list(self.extensions.get(address, []))

    def get_kernel_cmdline(self, ctx, address):
        self._check(ctx, "cmdline", address)
        return self.cmdlines.get(address, "")

    def upgrade(self, ctx, address, image, preserve):
        ctx.raise_if_cancelled()
        self.calls.append(("upgrade", address, image, preserve))
        if self.on_upgrade is not None:
            self.on_upgrade(address)
        if address in self.upgrade_errors:
            raise ProbeError(address, self.upgrade_errors[address])
        if self.upgraded_version:
            self.versions[address] = self.upgraded_version

    def watch_upgrade(self, ctx, address, tail=-1):
        ctx.raise_if_cancelled()
        self.calls.append(("watch", address, tail))
        pending = self.streams.get(address)
        items = pending.pop(0) if pending else running_stream()
        return EventSubscription.of(items, address)

    def wait_for_services(self, ctx, address, names, timeout):
        ctx.raise_if_cancelled()
        self.calls.append(("services", address, tuple(names), timeout))
        if self.health_error is not None:
            raise self.health_error

    def wait_for_static_pods(self, ctx, address, timeout):
        ctx.raise_if_cancelled()
        self.calls.append(("static_pods", address, timeout))
        if self.health_error is not None:
            raise self.health_error

    def get_cluster_members(self, ctx):
        ctx.raise_if_cancelled()
        if self.members_error:
            raise ProbeError("-", self.members_error)
        return list(self.members)

    def get_hardware_info(self, ctx, address):
        ctx.raise_if_cancelled()
        if address not in self.hardware:
            raise ProbeError(address, "hardware info unavailable")
        return self.hardware[address]

    def is_node_ready(self, ctx, address):
        ctx.raise_if_cancelled()
        return self.ready

    def upgraded(self) -> List[str]:
        return [c[1] for c in self.calls if c[0] == "upgrade"]

    def called(self, method: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == method]


def converge(probe: FakeProbe, config: ClusterConfig) -> FakeProbe:
    """Make every node's extensions and kernel args match its profile."""
    for node in config.inventory():
        profile = config.profiles[node.profile]
        probe.extensions[node.address] = [
            ExtensionInfo(name=ext.rsplit("/", 1)[-1]) for ext in profile.extensions
        ] + [ExtensionInfo(name="schematic")]
        probe.cmdlines[node.address] = " ".join(["talos.platform=metal"] + profile.kernel_args)
    return probe


class FakeMachineClient(MachineClient):
    """Canned talosctl answers keyed by resource type."""

    def __init__(self):
        self.versions: Dict[str, str] = {}
        self.resources: Dict[str, List[Dict[str, Any]]] = {}
        self.files: Dict[str, str] = {}
        self.events: List[Any] = []
        self.events_error = "connection reset"
        self.upgrades: List[tuple] = []
        self.calls: List[tuple] = []

    def version(self, node, timeout=None):
        self.calls.append(("version", node))
        if node not in self.versions:
            raise ProbeError(node, "connection refused")
        return self.versions[node]

    def upgrade(self, node, image, preserve):
        self.calls.append(("upgrade", node))
        self.upgrades.append((node, image, preserve))

    def get_resources(self, node, resource):
        self.calls.append(("get", node, resource))
        if resource not in self.resources:
            raise ProbeError(node or "-", f"{resource} unavailable")
        return self.resources[resource]

    def read(self, node, path):
        self.calls.append(("read", node, path))
        return self.files[path]

    def watch_events(self, node, tail=-1) -> Iterator[Any]:
        self.calls.append(("events", node, tail))
        for payload in self.events:
            yield payload
        raise ProbeError(node, self.events_error)


class FakeImages:
    def __init__(self, fail_when: Optional[Callable[[Profile], bool]] = None):
        self.fail_when = fail_when
        self.calls: List[tuple] = []

    def get_installer_image(self, profile, version):
        self.calls.append((profile, version))
        if self.fail_when is not None and self.fail_when(profile):
            raise FactoryError("factory API returned status 500")
        base = "installer-secureboot" if profile.secureboot else "installer"
        return f"factory.talos.dev/{base}/{profile.arch}-schematic:v{version}"


class Confirmer:
    """Answers prompts from a list, then keeps saying yes."""

    def __init__(self, *answers: bool):
        self.answers = list(answers)
        self.prompts: List[str] = []

    def __call__(self, prompt: str) -> bool:
        self.prompts.append(prompt)
        return self.answers.pop(0) if self.answers else True


@pytest.fixture
def config():
    return ClusterConfig(**CLUSTER)


@pytest.fixture
def settings(config):
    return config.settings


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ctx():
    return OperationContext()


@pytest.fixture
def probe(config):
    return converge(FakeProbe(upgraded_version="1.10.0"), config)


@pytest.fixture
def console_buffer():
    return io.StringIO()


@pytest.fixture
def output(console_buffer):
    console = Console(file=console_buffer, width=200, color_system=None, highlight=False, soft_wrap=True)
    return ConsoleOutput(console)


@pytest.fixture
def make_controller(config, clock, output):
    def _make(probe, confirm=None, images=None, dry_run=False, observer=None):
        return RolloutController(
            config,
            probe,
            images or FakeImages(),
            confirm or Confirmer(),
            options=RunOptions(dry_run=dry_run, preserve=True),
            clock=clock,
            out=output,
            observer=observer,
        )
    return _make
