import queue
import threading

import pytest

from rollctl.modules.events import (
    EventResult,
    EventSubscription,
    MachineStatusEvent,
    PhaseEvent,
    SequenceEvent,
    TaskEvent,
    decode_event,
)


def test_decode_machine_status_running_is_done():
    progress = decode_event(MachineStatusEvent(stage="RUNNING"))
    assert progress.stage == "running"
    assert progress.done


def test_decode_machine_status_other_stage():
    progress = decode_event(MachineStatusEvent(stage="REBOOTING"))
    assert progress.stage == "rebooting"
    assert not progress.done


def test_decode_sequence_with_error():
    progress = decode_event(SequenceEvent(sequence="upgrade", action="STOP", error="disk full"))
    assert progress.phase == "upgrade"
    assert progress.action == "STOP"
    assert progress.error == "disk full"
    assert not progress.done


def test_decode_phase_and_task():
    assert decode_event(PhaseEvent(phase="stopEverything", action="START")).phase == "stopEverything"
    task = decode_event(TaskEvent(task="leaveEtcd", action="STOP"))
    assert task.task == "leaveEtcd"
    assert task.action == "STOP"


@pytest.mark.parametrize("payload", [None, "text", {"stage": "running"}, 42])
def test_decode_unknown_payload(payload):
    assert decode_event(payload) is None


def test_subscription_of_preserves_order():
    error = EventResult(error="EOF")
    sub = EventSubscription.of([PhaseEvent(phase="a"), error], "10.0.0.1")
    assert sub.get(0).payload == PhaseEvent(phase="a")
    assert sub.get(0) is error
    with pytest.raises(queue.Empty):
        sub.get(0)


def test_subscription_get_times_out():
    with pytest.raises(queue.Empty):
        EventSubscription().get(0.01)


def test_producer_error_becomes_stream_error():
    def produce(sub):
        sub.publish(TaskEvent(task="t"))
        raise RuntimeError("stream reset")

    sub = EventSubscription("10.0.0.1").start(produce)
    assert sub.get(2).payload == TaskEvent(task="t")
    item = sub.get(2)
    assert item.payload is None
    assert item.error == "stream reset"


def test_close_does_not_block_producer():
    release = threading.Event()
    stopped = threading.Event()

    def produce(sub):
        release.wait(2)
        while not sub.closed:
            sub.publish(TaskEvent(task="t"))
        stopped.set()

    sub = EventSubscription().start(produce)
    sub.close()
    release.set()
    assert sub.closed
    assert stopped.wait(2)
