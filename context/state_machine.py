"""
Follow-up Tracking State Machine — legal status transitions for a lead's cycle.

    waiting ──send_started──▶ in_progress ──step_sent────▶ waiting
       │                          │        ──send_failed──▶ waiting
       │                          │        ──exhausted────▶ exhausted
       ├──lead_replied / opted_out┴──────────────────────▶ responded / cancelled
       └──exhausted─────────────────────────────────────▶ exhausted

Terminal states (responded, exhausted, cancelled) are left only by
``cycle_started``, fired when a fresh outbound AI message opens a new cycle.

Usage:
    sm = TrackingStateMachine()
    result = sm.apply(tracking, TrackingTrigger.SEND_STARTED, now)
    if result:
        await store.save_tracking(result.tracking)
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from models.schemas import FollowupTracking, TrackingStatus

logger = structlog.get_logger()


class TrackingTrigger(str, Enum):
    CYCLE_STARTED = "cycle_started"
    SEND_STARTED = "send_started"
    SEND_FAILED = "send_failed"
    STEP_SENT = "step_sent"
    EXHAUSTED = "exhausted"
    LEAD_REPLIED = "lead_replied"
    OPTED_OUT = "opted_out"


_ALL = frozenset(TrackingStatus)
_ACTIVE = frozenset({TrackingStatus.WAITING, TrackingStatus.IN_PROGRESS})

# trigger → (allowed from-states, to-state)
TRANSITIONS: dict[TrackingTrigger, tuple[frozenset[TrackingStatus], TrackingStatus]] = {
    TrackingTrigger.CYCLE_STARTED: (_ALL, TrackingStatus.WAITING),
    TrackingTrigger.SEND_STARTED: (frozenset({TrackingStatus.WAITING}), TrackingStatus.IN_PROGRESS),
    TrackingTrigger.SEND_FAILED: (frozenset({TrackingStatus.IN_PROGRESS}), TrackingStatus.WAITING),
    TrackingTrigger.STEP_SENT: (frozenset({TrackingStatus.IN_PROGRESS}), TrackingStatus.WAITING),
    TrackingTrigger.EXHAUSTED: (_ACTIVE | {TrackingStatus.EXHAUSTED}, TrackingStatus.EXHAUSTED),
    TrackingTrigger.LEAD_REPLIED: (_ACTIVE | {TrackingStatus.RESPONDED}, TrackingStatus.RESPONDED),
    TrackingTrigger.OPTED_OUT: (_ACTIVE | {TrackingStatus.CANCELLED}, TrackingStatus.CANCELLED),
}


# ──────────────────────────────────────────────────────────────
#  Transition Result
# ──────────────────────────────────────────────────────────────

class TransitionResult:
    """Outcome of applying a trigger to a tracking row."""

    def __init__(
        self,
        transitioned: bool,
        tracking: FollowupTracking,
        from_state: Optional[TrackingStatus] = None,
        to_state: Optional[TrackingStatus] = None,
    ):
        self.transitioned = transitioned
        self.tracking = tracking
        self.from_state = from_state
        self.to_state = to_state

    def __bool__(self):
        return self.transitioned

    def __repr__(self):
        if self.transitioned:
            return f"<Transition {self.from_state.value} → {self.to_state.value}>"
        return "<NoTransition>"


# ──────────────────────────────────────────────────────────────
#  Tracking State Machine
# ──────────────────────────────────────────────────────────────

class TrackingStateMachine:

    def can_apply(self, status: TrackingStatus, trigger: TrackingTrigger) -> bool:
        allowed, _ = TRANSITIONS[trigger]
        return status in allowed

    def apply(
        self,
        tracking: FollowupTracking,
        trigger: TrackingTrigger,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        """
        Move ``tracking`` to the trigger's target state when the current state
        allows it. The tracking object is mutated in place; the caller persists it.
        """
        allowed, to_state = TRANSITIONS[trigger]
        from_state = tracking.status

        if from_state not in allowed:
            logger.info("tracking_transition_rejected",
                        lead_id=tracking.lead_id,
                        status=from_state.value,
                        trigger=trigger.value)
            return TransitionResult(transitioned=False, tracking=tracking)

        tracking.status = to_state
        tracking.updated_at = now or datetime.now(timezone.utc)

        logger.debug("tracking_transition",
                     lead_id=tracking.lead_id,
                     transition=f"{from_state.value} → {to_state.value}",
                     trigger=trigger.value)

        return TransitionResult(
            transitioned=True,
            tracking=tracking,
            from_state=from_state,
            to_state=to_state,
        )

    @staticmethod
    def available_triggers(status: TrackingStatus) -> list[TrackingTrigger]:
        return [t for t, (allowed, _) in TRANSITIONS.items() if status in allowed]
