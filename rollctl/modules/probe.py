"""Per-node queries consumed by the upgrade engine."""
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from rollctl.config import Settings
from rollctl.errors import ProbeError, WaitTimeoutError
from rollctl.utils import strip_v

from .clock import Clock, RealClock
from .context import OperationContext
from .events import EventSubscription
from .kube import KubeNodes
from .models import ClusterMember, ExtensionInfo, HardwareInfo, NodeRole, ServiceInfo
from .talosctl import MachineClient, TalosctlClient

logger = logging.getLogger("rollctl.probe")

WORKER_SERVICES = ['kubelet', 'apid', 'trustd']
CONTROLPLANE_SERVICES = ['etcd'] + WORKER_SERVICES
STATIC_PODS = ['kube-apiserver', 'kube-controller-manager', 'kube-scheduler']


def services_for(role: NodeRole) -> List[str]:
    """Services that must be healthy after an upgrade."""
    if role == NodeRole.CONTROLPLANE:
        return list(CONTROLPLANE_SERVICES)
    return list(WORKER_SERVICES)


class NodeStateProbe(ABC):
    """Node queries scoped to one address and a cancellable context.

    Query methods raise :class:`ProbeError` when the node cannot answer.
    Wait methods raise :class:`WaitTimeoutError` when their timeout elapses
    and :class:`OperationCancelledError` as soon as ``ctx`` is cancelled.
    """

    @abstractmethod
    def is_reachable(self, ctx: OperationContext, address: str) -> bool:
        pass

    @abstractmethod
    def get_version(self, ctx: OperationContext, address: str) -> str:
        pass

    @abstractmethod
    def get_extensions(self, ctx: OperationContext, address: str) -> List[ExtensionInfo]:
        pass

    @abstractmethod
    def get_kernel_cmdline(self, ctx: OperationContext, address: str) -> str:
        pass

    @abstractmethod
    def upgrade(self, ctx: OperationContext, address: str, image: str, preserve: bool) -> None:
        pass

    @abstractmethod
    def watch_upgrade(self, ctx: OperationContext, address: str, tail: int = -1) -> EventSubscription:
        """Open a tailing event subscription.

        ``tail=-1`` replays the buffered history first, so events emitted
        before the subscription opened are not missed.
        """

    @abstractmethod
    def wait_for_services(self, ctx: OperationContext, address: str,
                          names: List[str], timeout: float) -> None:
        pass

    @abstractmethod
    def wait_for_static_pods(self, ctx: OperationContext, address: str, timeout: float) -> None:
        pass

    @abstractmethod
    def get_cluster_members(self, ctx: OperationContext) -> List[ClusterMember]:
        pass

    @abstractmethod
    def get_hardware_info(self, ctx: OperationContext, address: str) -> HardwareInfo:
        pass

    @abstractmethod
    def is_node_ready(self, ctx: OperationContext, address: str) -> Optional[bool]:
        """Kubernetes readiness, or None when no Kubernetes API is configured."""


def poll_until(ctx: OperationContext, clock: Clock, check: Callable[[], bool],
               timeout: float, interval: float, what: str) -> int:
    """Call ``check`` every ``interval`` seconds until it returns True.

    Probe errors count as a failed attempt. Returns the number of attempts.

    Raises:
        OperationCancelledError: ``ctx`` was cancelled, checked around every attempt
        WaitTimeoutError: ``timeout`` elapsed first
    """
    ctx.raise_if_cancelled()
    deadline = clock.now() + timeout
    attempts = 0
    while clock.now() < deadline:
        ctx.raise_if_cancelled()
        attempts += 1
        try:
            ok = check()
        except ProbeError as e:
            logger.debug("%s not ready yet: %s", what, e)
            ok = False
        ctx.raise_if_cancelled()
        if ok:
            return attempts
        clock.sleep(interval, ctx.done)
        ctx.raise_if_cancelled()
    raise WaitTimeoutError(f"timeout waiting for {what} after {attempts} attempts")


def _spec(doc: Dict[str, Any]) -> Dict[str, Any]:
    return doc.get('spec') or {}


def _id(doc: Dict[str, Any]) -> str:
    return (doc.get('metadata') or {}).get('id', '')


def pod_ready(pod_status: Dict[str, Any]) -> bool:
    if pod_status.get('phase') != 'Running':
        return False
    for cond in pod_status.get('conditions') or []:
        if isinstance(cond, dict) and cond.get('type') == 'Ready' and cond.get('status') == 'True':
            return True
    return False


class TalosProbe(NodeStateProbe):
    """Probe backed by a :class:`MachineClient` and an optional Kubernetes API."""

    def __init__(self, client: MachineClient, kube: Optional[KubeNodes] = None,
                 clock: Optional[Clock] = None, settings: Optional[Settings] = None):
        self.client = client
        self.kube = kube
        self.clock = clock or RealClock()
        self.settings = settings or Settings()

    @classmethod
    def from_settings(cls, settings: Settings) -> 'TalosProbe':
        return cls(
            TalosctlClient(settings.talosctl_path),
            kube=KubeNodes.from_kubeconfig(settings.kubeconfig),
            settings=settings,
        )

    def is_reachable(self, ctx: OperationContext, address: str) -> bool:
        ctx.raise_if_cancelled()
        try:
            self.client.version(address, timeout=self.settings.reachability_timeout_seconds)
        except ProbeError:
            return False
        return True

    def get_version(self, ctx: OperationContext, address: str) -> str:
        ctx.raise_if_cancelled()
        return strip_v(self.client.version(address))

    def get_extensions(self, ctx: OperationContext, address: str) -> List[ExtensionInfo]:
        ctx.raise_if_cancelled()
        extensions = []
        for doc in self.client.get_resources(address, 'extensions'):
            spec = _spec(doc)
            meta = spec.get('metadata') or {}
            extensions.append(ExtensionInfo(
                name=meta.get('name', ''),
                version=meta.get('version', ''),
                image=spec.get('image', ''),
            ))
        return extensions

    def get_kernel_cmdline(self, ctx: OperationContext, address: str) -> str:
        ctx.raise_if_cancelled()
        return self.client.read(address, '/proc/cmdline').strip()

    def upgrade(self, ctx: OperationContext, address: str, image: str, preserve: bool) -> None:
        ctx.raise_if_cancelled()
        logger.info("Upgrading %s to %s (preserve=%s)", address, image, preserve)
        self.client.upgrade(address, image, preserve)

    def watch_upgrade(self, ctx: OperationContext, address: str, tail: int = -1) -> EventSubscription:
        ctx.raise_if_cancelled()

        def produce(sub: EventSubscription) -> None:
            events = self.client.watch_events(address, tail)
            try:
                for payload in events:
                    if sub.closed or ctx.cancelled:
                        return
                    sub.publish(payload)
            finally:
                events.close()

        return EventSubscription(address).start(produce)

    def get_services(self, ctx: OperationContext, address: str) -> List[ServiceInfo]:
        ctx.raise_if_cancelled()
        services = []
        for doc in self.client.get_resources(address, 'services'):
            spec = _spec(doc)
            healthy = None if spec.get('unknown') else bool(spec.get('healthy'))
            services.append(ServiceInfo(id=_id(doc), running=bool(spec.get('running')), healthy=healthy))
        return services

    def wait_for_services(self, ctx: OperationContext, address: str,
                          names: List[str], timeout: float) -> None:
        def check() -> bool:
            states = {svc.id: svc for svc in self.get_services(ctx, address)}
            for name in names:
                svc = states.get(name)
                if svc is None or not svc.running or svc.healthy is False:
                    return False
            return True

        poll_until(ctx, self.clock, check, timeout, self.settings.health_poll_seconds,
                   f"services {', '.join(names)} on {address}")

    def wait_for_static_pods(self, ctx: OperationContext, address: str, timeout: float) -> None:
        def check() -> bool:
            ready = set()
            for doc in self.client.get_resources(address, 'staticpodstatus'):
                pod_id = _id(doc)
                for required in STATIC_PODS:
                    if required in pod_id and pod_ready(_spec(doc).get('podStatus') or {}):
                        ready.add(required)
            return all(pod in ready for pod in STATIC_PODS)

        poll_until(ctx, self.clock, check, timeout, self.settings.health_poll_seconds,
                   f"static pods on {address}")

    def get_cluster_members(self, ctx: OperationContext) -> List[ClusterMember]:
        ctx.raise_if_cancelled()
        members = {}
        for doc in self.client.get_resources(None, 'members'):
            spec = _spec(doc)
            addresses = spec.get('addresses') or []
            if not addresses:
                continue
            ip = addresses[0]
            machine_type = spec.get('machineType', '')
            members[ip] = ClusterMember(
                ip=ip,
                hostname=spec.get('hostname', ''),
                role=NodeRole.parse(machine_type),
                machine_type=machine_type,
            )
        return list(members.values())

    def get_hardware_info(self, ctx: OperationContext, address: str) -> HardwareInfo:
        ctx.raise_if_cancelled()
        hw = HardwareInfo()
        for doc in self.client.get_resources(address, 'systeminformation'):
            spec = _spec(doc)
            hw.system_manufacturer = spec.get('manufacturer', '')
            hw.system_product_name = spec.get('productName', '')
            break
        for doc in self.client.get_resources(address, 'cpus'):
            spec = _spec(doc)
            hw.processor_manufacturer = spec.get('manufacturer', '')
            hw.processor_product_name = spec.get('productName', '')
            break
        return hw

    def is_node_ready(self, ctx: OperationContext, address: str) -> Optional[bool]:
        ctx.raise_if_cancelled()
        if self.kube is None:
            return None
        return self.kube.is_ready(address)
