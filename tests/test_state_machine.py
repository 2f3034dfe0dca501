"""Tests for TrackingStateMachine — legal follow-up tracking transitions."""
import pytest
from datetime import datetime, timezone

from context.state_machine import (
    TRANSITIONS, TrackingStateMachine, TrackingTrigger, TransitionResult,
)
from models.schemas import FollowupTracking, TrackingStatus


def _tracking(status: TrackingStatus) -> FollowupTracking:
    return FollowupTracking(lead_id="lead_1", tenant_id="t1", status=status)


class TestTransitionTable:
    def test_every_trigger_declared(self):
        assert set(TRANSITIONS) == set(TrackingTrigger)

    def test_cycle_started_from_any_state(self):
        sm = TrackingStateMachine()
        for status in TrackingStatus:
            assert sm.can_apply(status, TrackingTrigger.CYCLE_STARTED)

    @pytest.mark.parametrize("terminal", [
        TrackingStatus.RESPONDED, TrackingStatus.EXHAUSTED, TrackingStatus.CANCELLED,
    ])
    def test_terminal_states_only_leave_through_new_cycle(self, terminal):
        targets = {
            TRANSITIONS[t][1]
            for t in TrackingStateMachine.available_triggers(terminal)
        }
        # Either stay put (idempotent re-application) or restart at waiting
        assert targets <= {terminal, TrackingStatus.WAITING}

    def test_send_started_only_from_waiting(self):
        sm = TrackingStateMachine()
        assert sm.can_apply(TrackingStatus.WAITING, TrackingTrigger.SEND_STARTED)
        assert not sm.can_apply(TrackingStatus.IN_PROGRESS, TrackingTrigger.SEND_STARTED)
        assert not sm.can_apply(TrackingStatus.RESPONDED, TrackingTrigger.SEND_STARTED)


class TestApply:
    def test_successful_transition(self):
        sm = TrackingStateMachine()
        tracking = _tracking(TrackingStatus.WAITING)
        now = datetime(2024, 6, 3, 12, 0, tzinfo=timezone.utc)

        result = sm.apply(tracking, TrackingTrigger.SEND_STARTED, now)

        assert result
        assert result.from_state == TrackingStatus.WAITING
        assert result.to_state == TrackingStatus.IN_PROGRESS
        assert tracking.status == TrackingStatus.IN_PROGRESS
        assert tracking.updated_at == now

    def test_rejected_transition_leaves_tracking_untouched(self):
        sm = TrackingStateMachine()
        tracking = _tracking(TrackingStatus.RESPONDED)
        before = tracking.updated_at

        result = sm.apply(tracking, TrackingTrigger.STEP_SENT)

        assert not result
        assert tracking.status == TrackingStatus.RESPONDED
        assert tracking.updated_at == before

    def test_send_round_trip(self):
        sm = TrackingStateMachine()
        tracking = _tracking(TrackingStatus.WAITING)
        assert sm.apply(tracking, TrackingTrigger.SEND_STARTED)
        assert sm.apply(tracking, TrackingTrigger.STEP_SENT)
        assert tracking.status == TrackingStatus.WAITING

    def test_failed_send_returns_to_waiting(self):
        sm = TrackingStateMachine()
        tracking = _tracking(TrackingStatus.IN_PROGRESS)
        assert sm.apply(tracking, TrackingTrigger.SEND_FAILED)
        assert tracking.status == TrackingStatus.WAITING

    def test_exhausted_is_idempotent(self):
        sm = TrackingStateMachine()
        tracking = _tracking(TrackingStatus.EXHAUSTED)
        assert sm.apply(tracking, TrackingTrigger.EXHAUSTED)
        assert tracking.status == TrackingStatus.EXHAUSTED

    def test_reply_does_not_reopen_exhausted(self):
        sm = TrackingStateMachine()
        tracking = _tracking(TrackingStatus.EXHAUSTED)
        assert not sm.apply(tracking, TrackingTrigger.LEAD_REPLIED)

    def test_opt_out_from_in_progress(self):
        sm = TrackingStateMachine()
        tracking = _tracking(TrackingStatus.IN_PROGRESS)
        assert sm.apply(tracking, TrackingTrigger.OPTED_OUT)
        assert tracking.status == TrackingStatus.CANCELLED

    def test_result_repr(self):
        sm = TrackingStateMachine()
        result = sm.apply(_tracking(TrackingStatus.WAITING), TrackingTrigger.EXHAUSTED)
        assert "waiting" in repr(result) and "exhausted" in repr(result)
        assert repr(TransitionResult(False, _tracking(TrackingStatus.WAITING))) == "<NoTransition>"
