"""Tests for RequestStateMachine."""

import asyncio

import pytest

from parley.config import RequestSpec
from parley.core.cancellation import CancelToken
from parley.core.sinks import RecordingRenderSink
from parley.core.state_machine import TRANSITIONS, RequestStateMachine
from parley.types import EventType, RequestState

S = RequestState


class TestTransitions:
    def test_full_cycle(self):
        sm = RequestStateMachine()
        for state in (S.SENDING, S.STREAMING, S.TOOL_CALLING, S.CONTINUATION, S.STREAMING, S.COMPLETED):
            assert sm.transition(state)
        assert sm.state is S.COMPLETED
        assert [r.to_state for r in sm.history][-1] is S.COMPLETED

    def test_illegal_rejected(self, caplog):
        sm = RequestStateMachine()
        assert not sm.transition(S.STREAMING)
        assert sm.state is S.IDLE
        assert "idle -> streaming" in caplog.text

    def test_accepts_state_values(self):
        sm = RequestStateMachine()
        assert sm.transition("sending")
        assert sm.state is S.SENDING

    def test_every_state_can_reach_idle(self):
        for state, targets in TRANSITIONS.items():
            if state is S.IDLE:
                continue
            assert S.IDLE in targets or targets & {S.COMPLETED, S.ERROR, S.CANCELLED}

    def test_sending_metadata(self):
        token = CancelToken()
        sm = RequestStateMachine()
        sm.transition(S.SENDING, token=token, session_id="s1")
        assert sm.token is token
        assert sm.session_id == "s1"
        assert sm.history[-1].metadata == {"session_id": "s1"}
        assert sm.is_busy()

    def test_sending_creates_token(self):
        sm = RequestStateMachine()
        sm.transition(S.SENDING)
        assert isinstance(sm.token, CancelToken)

    def test_idle_clears_request_data(self):
        sm = RequestStateMachine()
        sm.transition(S.SENDING, session_id="s1")
        sm.transition(S.STREAMING, sink=RecordingRenderSink())
        sm.transition(S.COMPLETED)
        sm.transition(S.IDLE)
        assert (sm.token, sm.sink, sm.session_id) == (None, None, None)
        assert not sm.is_busy()

    def test_history_bounded(self):
        sm = RequestStateMachine()
        for _ in range(10):
            sm.transition(S.SENDING)
            sm.transition(S.COMPLETED)
            sm.transition(S.IDLE)
        assert len(sm.history) == 20

    def test_begin_from_idle(self):
        token = CancelToken()
        sm = RequestStateMachine()
        assert sm.begin(token=token, session_id="s1")
        assert sm.state is S.SENDING
        assert sm.token is token

    def test_begin_settles_transient_state(self):
        sm = RequestStateMachine()
        sm.transition(S.SENDING)
        sm.transition(S.COMPLETED)
        token = CancelToken()
        assert sm.begin(token=token)
        assert sm.token is token
        assert [(r.from_state, r.to_state) for r in sm.history][-2:] == [
            (S.COMPLETED, S.IDLE), (S.IDLE, S.SENDING),
        ]
        assert sm.history[-2].metadata == {"settled": True}

    def test_begin_refused_while_busy(self):
        sm = RequestStateMachine()
        sm.transition(S.SENDING)
        token = sm.token
        assert not sm.begin(token=CancelToken())
        assert sm.state is S.SENDING
        assert sm.token is token

    def test_publishes_state_changes(self, bus):
        sm = RequestStateMachine(event_bus=bus)
        sm.transition(S.SENDING)
        event = bus.history[-1]
        assert event.type is EventType.REQUEST_STATE_CHANGED
        assert (event.data["from"], event.data["to"]) == ("idle", "sending")


class TestTimers:
    @pytest.mark.asyncio
    async def test_transient_reverts_after_grace(self):
        sm = RequestStateMachine(RequestSpec(grace_delay=0.01))
        sm.transition(S.SENDING)
        sm.transition(S.COMPLETED)
        await asyncio.sleep(0.05)
        assert sm.state is S.IDLE
        assert sm.history[-1].metadata == {"auto": True}
        sm.close()

    @pytest.mark.asyncio
    async def test_lock_timeout_forces_reset(self, bus):
        token = CancelToken()
        sm = RequestStateMachine(RequestSpec(lock_timeout=0.02), event_bus=bus)
        sm.transition(S.SENDING, token=token)
        await asyncio.sleep(0.08)
        assert sm.state is S.IDLE
        assert token.cancelled
        assert token.reason == "force_reset:timeout"
        assert EventType.REQUEST_FORCE_RESET in [e.type for e in bus.history]

    @pytest.mark.asyncio
    async def test_streaming_disarms_lock(self):
        sm = RequestStateMachine(RequestSpec(lock_timeout=0.02))
        sm.transition(S.SENDING)
        sm.transition(S.STREAMING)
        await asyncio.sleep(0.06)
        assert sm.state is S.STREAMING
        sm.close()

    @pytest.mark.asyncio
    async def test_close_cancels_revert(self):
        sm = RequestStateMachine(RequestSpec(grace_delay=0.01))
        sm.transition(S.SENDING)
        sm.transition(S.ERROR)
        sm.close()
        await asyncio.sleep(0.05)
        assert sm.state is S.ERROR

    @pytest.mark.asyncio
    async def test_new_request_after_manual_idle_not_reverted(self):
        sm = RequestStateMachine(RequestSpec(grace_delay=0.02))
        sm.transition(S.SENDING)
        sm.transition(S.COMPLETED)
        sm.transition(S.IDLE)
        sm.transition(S.SENDING)
        await asyncio.sleep(0.06)
        assert sm.state is S.SENDING
        sm.close()

    def test_no_running_loop(self):
        sm = RequestStateMachine()
        assert sm.transition(S.SENDING)
        assert sm.transition(S.COMPLETED)
        assert sm.state is S.COMPLETED


class TestCancelAndReset:
    @pytest.mark.asyncio
    async def test_cancel_in_flight(self):
        sink = RecordingRenderSink()
        sm = RequestStateMachine(RequestSpec(grace_delay=0.01))
        sm.transition(S.SENDING)
        token = sm.token
        sm.transition(S.STREAMING, sink=sink)

        assert sm.cancel("user")
        assert sm.state is S.CANCELLED
        assert token.reason == "user"
        assert sink.markers_cleared == 1
        await asyncio.sleep(0.05)
        assert sm.state is S.IDLE

    def test_cancel_idle(self):
        assert not RequestStateMachine().cancel()

    def test_cancel_transient_only_cancels_token(self):
        sm = RequestStateMachine()
        sm.transition(S.SENDING)
        token = sm.token
        sm.transition(S.ERROR)
        assert sm.cancel()
        assert sm.state is S.ERROR
        assert token.cancelled

    def test_force_reset(self, bus):
        sink = RecordingRenderSink()
        sm = RequestStateMachine(event_bus=bus)
        sm.transition(S.SENDING)
        token = sm.token
        sm.transition(S.STREAMING, sink=sink)
        sm.force_reset("stuck")

        assert sm.state is S.IDLE
        assert token.reason == "force_reset:stuck"
        assert sink.markers_cleared == 1
        assert sm.history[-1].metadata == {"forced": True, "reason": "stuck"}
        assert bus.history[-1].type is EventType.REQUEST_FORCE_RESET
