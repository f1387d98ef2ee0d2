"""Machine event payloads and the subscription that carries them.

A subscription is fed by a background producer thread and drained by the
upgrade state machine. The queue is unbounded so the producer never blocks;
the consumer can stop reading at any point and simply drop the subscription.
"""
import logging
import queue
import threading
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

from .models import UpgradeProgress

logger = logging.getLogger("rollctl.events")

STAGE_RUNNING = 'running'


@dataclass
class SequenceEvent:
    sequence: str
    action: str = ''
    error: Optional[str] = None


@dataclass
class PhaseEvent:
    phase: str
    action: str = ''


@dataclass
class TaskEvent:
    task: str
    action: str = ''


@dataclass
class MachineStatusEvent:
    stage: str


@dataclass
class EventResult:
    """One item read from a subscription: a payload, or a stream-level error."""
    payload: Any = None
    error: Optional[str] = None


def decode_event(payload: Any) -> Optional[UpgradeProgress]:
    """Convert a machine event payload into an ``UpgradeProgress`` record.

    Unknown payload shapes decode to ``None`` and are ignored by callers.
    """
    if isinstance(payload, SequenceEvent):
        return UpgradeProgress(
            phase=payload.sequence,
            action=payload.action,
            error=payload.error or '',
        )
    if isinstance(payload, PhaseEvent):
        return UpgradeProgress(phase=payload.phase, action=payload.action)
    if isinstance(payload, TaskEvent):
        return UpgradeProgress(task=payload.task, action=payload.action)
    if isinstance(payload, MachineStatusEvent):
        stage = (payload.stage or '').lower()
        return UpgradeProgress(stage=stage, done=stage == STAGE_RUNNING)
    return None


class EventSubscription:
    """Tailing stream of ``EventResult`` items for one node."""

    def __init__(self, address: str = ''):
        self.address = address
        self._queue: "queue.Queue[EventResult]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def close(self) -> None:
        """Tell the producer nobody is reading any more.

        Never blocks. Producers may keep publishing; the items are dropped
        together with the subscription.
        """
        self._closed.set()

    def publish(self, payload: Any) -> None:
        self._queue.put(EventResult(payload=payload))

    def fail(self, error: str) -> None:
        self._queue.put(EventResult(error=error))

    def get(self, timeout: float) -> EventResult:
        """Return the next item, raising ``queue.Empty`` after ``timeout`` seconds."""
        if timeout <= 0:
            return self._queue.get_nowait()
        return self._queue.get(timeout=timeout)

    def start(self, producer: Callable[['EventSubscription'], None]) -> 'EventSubscription':
        """Run ``producer`` on a daemon thread; any exception becomes a stream error."""
        def _run():
            try:
                producer(self)
            except Exception as e:
                logger.debug("Event producer for %s stopped: %s", self.address, e)
                self.fail(str(e))

        self._thread = threading.Thread(
            target=_run, name=f"events-{self.address}", daemon=True
        )
        self._thread.start()
        return self

    @classmethod
    def of(cls, items: Iterable[Any], address: str = '') -> 'EventSubscription':
        """Build a subscription already holding ``items``.

        Items that are ``EventResult`` instances are queued as-is; anything
        else is treated as a payload.
        """
        sub = cls(address)
        for item in items:
            if isinstance(item, EventResult):
                sub._queue.put(item)
            else:
                sub.publish(item)
        return sub
