# tests/test_state_machine.py

from __future__ import annotations

import pytest

from taskly_sync.models import SyncStatus
from taskly_sync.services import InvalidTransitionError, SyncEvent, SyncStateMachine
from taskly_sync.services.replication import TRANSITIONS

from .fakes import RecordingSink

# events that drive a fresh machine into each status
_PATHS = {
    SyncStatus.DISABLED: [],
    SyncStatus.CONNECTING: [SyncEvent.CONNECT],
    SyncStatus.SYNCING: [SyncEvent.CONNECT, SyncEvent.CYCLE_STARTED],
    SyncStatus.PAUSED: [SyncEvent.CONNECT, SyncEvent.CYCLE_STARTED, SyncEvent.CYCLE_SUCCEEDED],
    SyncStatus.ERROR: [SyncEvent.CONNECT, SyncEvent.CONNECT_FAILED],
}


def machine_in(status: SyncStatus) -> SyncStateMachine:
    machine = SyncStateMachine(RecordingSink())
    for event in _PATHS[status]:
        machine.transition(event)
    assert machine.state.status is status
    return machine


@pytest.mark.parametrize("event", list(SyncEvent))
@pytest.mark.parametrize("status", list(SyncStatus))
def test_transition_table(event: SyncEvent, status: SyncStatus) -> None:
    machine = machine_in(status)
    allowed, target = TRANSITIONS[event]

    if status in allowed:
        assert machine.transition(event, error="boom").status is target
    else:
        with pytest.raises(InvalidTransitionError):
            machine.transition(event)
        assert machine.state.status is status


def test_initial_state_is_disabled() -> None:
    state = SyncStateMachine().state
    assert state.status is SyncStatus.DISABLED
    assert state.last_synced is None
    assert state.error is None


def test_sink_receives_every_snapshot_in_order() -> None:
    sink = RecordingSink()
    machine = SyncStateMachine(sink)

    machine.transition(SyncEvent.CONNECT, sync_mode="cloud")
    machine.transition(SyncEvent.CYCLE_STARTED)
    machine.transition(SyncEvent.CYCLE_SUCCEEDED)

    assert sink.statuses() == [SyncStatus.CONNECTING, SyncStatus.SYNCING, SyncStatus.PAUSED]
    assert all(s.sync_mode == "cloud" for s in sink.states)
    assert sink.states[-1] == machine.state


def test_rejected_transition_is_not_published() -> None:
    sink = RecordingSink()
    machine = SyncStateMachine(sink)

    with pytest.raises(InvalidTransitionError):
        machine.transition(SyncEvent.CYCLE_SUCCEEDED)
    assert sink.states == []


def test_last_synced_and_error_bookkeeping() -> None:
    machine = machine_in(SyncStatus.PAUSED)
    synced = machine.state.last_synced
    assert synced is not None

    machine.transition(SyncEvent.CYCLE_STARTED)
    failed = machine.transition(SyncEvent.CYCLE_FAILED, error="HTTP 500")
    assert failed.status is SyncStatus.ERROR
    assert failed.error == "HTTP 500"
    assert failed.last_synced == synced

    recovered = machine.transition(SyncEvent.CYCLE_STARTED)
    assert recovered.status is SyncStatus.SYNCING
    assert recovered.error is None


def test_single_session_at_a_time() -> None:
    machine = SyncStateMachine()

    token = machine.begin_session()
    assert token is not None
    assert machine.running is True
    assert machine.begin_session() is None

    machine.end_session(token)
    assert machine.running is False
    assert machine.begin_session() is not None


def test_stop_cancels_session_and_drops_its_transitions() -> None:
    sink = RecordingSink()
    machine = SyncStateMachine(sink)
    token = machine.begin_session()
    machine.transition(SyncEvent.CONNECT, token=token)

    stopped = machine.stop()

    assert stopped.status is SyncStatus.PAUSED
    assert token.cancelled is True
    assert machine.transition(SyncEvent.CONNECT_FAILED, token=token, error="late") is None
    assert machine.state.status is SyncStatus.PAUSED
    assert sink.statuses() == [SyncStatus.CONNECTING, SyncStatus.PAUSED]


def test_old_token_cannot_drive_new_session() -> None:
    machine = SyncStateMachine()
    old = machine.begin_session()
    machine.stop()
    new = machine.begin_session()

    assert machine.transition(SyncEvent.CONNECT, token=old) is None
    assert machine.transition(SyncEvent.CONNECT, token=new).status is SyncStatus.CONNECTING


def test_disable_records_mode() -> None:
    machine = machine_in(SyncStatus.PAUSED)
    token = machine.begin_session()

    state = machine.disable("local")

    assert state.status is SyncStatus.DISABLED
    assert state.sync_mode == "local"
    assert token.cancelled is True
    assert machine.running is False


def test_failing_sink_does_not_block_transitions() -> None:
    class ExplodingSink(RecordingSink):
        def state_changed(self, state) -> None:
            super().state_changed(state)
            raise RuntimeError("listener crashed")

    sink = ExplodingSink()
    machine = SyncStateMachine(sink)

    assert machine.transition(SyncEvent.CONNECT).status is SyncStatus.CONNECTING
    assert machine.transition(SyncEvent.CYCLE_STARTED).status is SyncStatus.SYNCING
    assert sink.statuses() == [SyncStatus.CONNECTING, SyncStatus.SYNCING]
