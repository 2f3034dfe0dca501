"""
Follow-up Orchestrator — Event handlers that drive each lead's follow-up cycle.

Flow:
  ai_message_sent        → open a cycle (tracking waiting, step 0)
                           → schedule follow_up_send(step=1) after intervals[0]
  follow_up_send(step)   → guard: tracking waiting, no reply since the AI message,
                           config active, inside business hours, quota left
                           → ask the agent to send → log → schedule step+1
                           or follow_up_exhausted after max_attempts
  lead_message_received  → cancel pending events, tracking responded
  lead_opted_out         → cancel pending events, tracking cancelled
  follow_up_exhausted    → tracking exhausted
  daily_limit_reached    → logged for operators

At most one follow_up_send is pending per lead: every (re)schedule cancels
the lead's pending sends first. Handlers reload tracking from the store on
every event and never keep it across events.
"""
from __future__ import annotations

import structlog
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo

from config.settings import get_settings
from context.state_machine import TrackingStateMachine, TrackingTrigger
from core.exceptions import FollowupSendError
from core.quota import DailyQuotaCounter
from backend.agent_client import AgentSender
from database.models import as_utc
from database.store_base import BaseFollowupStore
from job_queue.event_queue import EventQueue
from models.schemas import (
    AgentRequest, EventPriority, EventType, FollowupConfig, FollowupLog,
    FollowupLogStatus, FollowupTracking, QueueEvent, SendResult, TrackingStatus,
)
from utils.business_hours import (
    get_next_valid_slot, is_within_business_hours, start_of_next_day,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FollowupOrchestrator:
    """
    One handler per EventType. Register them on a QueueProcessor with
    ``orchestrator.register(processor)``.
    """

    def __init__(
        self,
        store: BaseFollowupStore,
        queue: EventQueue,
        sender: AgentSender,
        quota: DailyQuotaCounter = None,
        state_machine: TrackingStateMachine = None,
        clock: Callable[[], datetime] = None,
        default_timezone: str = None,
    ):
        self.store = store
        self.queue = queue
        self.sender = sender
        self.state_machine = state_machine or TrackingStateMachine()
        self.clock = clock or _utcnow

        if quota is None or default_timezone is None:
            defaults = get_settings().followup
            quota = quota or DailyQuotaCounter(store, default_limit=defaults.default_daily_limit)
            default_timezone = default_timezone or defaults.default_timezone
        self.quota = quota
        self.default_timezone = default_timezone

    # ══════════════════════════════════════════════════════════
    #  Registration
    # ══════════════════════════════════════════════════════════

    def handler_table(self) -> dict[EventType, Callable[[QueueEvent], Any]]:
        return {
            EventType.AI_MESSAGE_SENT: self.on_ai_message_sent,
            EventType.LEAD_MESSAGE_RECEIVED: self.on_lead_message_received,
            EventType.FOLLOW_UP_SEND: self.on_follow_up_send,
            EventType.FOLLOW_UP_EXHAUSTED: self.on_follow_up_exhausted,
            EventType.LEAD_OPTED_OUT: self.on_lead_opted_out,
            EventType.DAILY_LIMIT_REACHED: self.on_daily_limit_reached,
        }

    def register(self, processor) -> None:
        for event_type, handler in self.handler_table().items():
            processor.register_handler(event_type, handler)

    # ══════════════════════════════════════════════════════════
    #  CYCLE START — an AI message went out to the lead
    # ══════════════════════════════════════════════════════════

    async def on_ai_message_sent(self, event: QueueEvent) -> None:
        lead_id, tenant_id = self._lead_and_tenant(event)
        now = self.now()

        config = await self._active_config(tenant_id, lead_id)
        if config is None:
            return

        tracking = await self.store.get_tracking(lead_id)
        if tracking is None:
            tracking = FollowupTracking(lead_id=lead_id, tenant_id=tenant_id, created_at=now)
        tracking.tenant_id = tenant_id

        self.state_machine.apply(tracking, TrackingTrigger.CYCLE_STARTED, now)
        tracking.current_step = 0
        tracking.cycle_count += 1
        tracking.last_ai_message_at = now

        tz = self._tz(config)
        send_at = self._clamp(config, now + timedelta(minutes=config.interval_for_step(0)), tz)
        await self._schedule_send(lead_id, tenant_id, 1, send_at)
        tracking.next_send_at = send_at
        await self.store.save_tracking(tracking)

        logger.info("followup_cycle_started",
                    lead_id=lead_id,
                    tenant_id=tenant_id,
                    cycle=tracking.cycle_count,
                    next_send_at=send_at.isoformat())

    # ══════════════════════════════════════════════════════════
    #  SEND — one follow-up step
    # ══════════════════════════════════════════════════════════

    async def on_follow_up_send(self, event: QueueEvent) -> None:
        lead_id, tenant_id = self._lead_and_tenant(event)
        step = int(event.payload.get("step", 1))
        now = self.now()

        tracking = await self.store.get_tracking(lead_id)
        if tracking is None or tracking.status != TrackingStatus.WAITING:
            logger.info("followup_send_stale",
                        lead_id=lead_id,
                        step=step,
                        status=tracking.status.value if tracking else None)
            return

        # The reply may have landed after this send was scheduled
        if tracking.last_ai_message_at and await self.store.has_inbound_message_since(
            lead_id, tracking.last_ai_message_at,
        ):
            self.state_machine.apply(tracking, TrackingTrigger.LEAD_REPLIED, now)
            tracking.current_step = 0
            tracking.next_send_at = None
            await self.store.save_tracking(tracking)
            logger.info("followup_send_skipped_lead_replied", lead_id=lead_id, step=step)
            return

        config = await self._active_config(tenant_id, lead_id)
        if config is None:
            return
        tz = self._tz(config)

        if not self._is_open(config, now, tz):
            slot = self._clamp(config, now, tz)
            await self._reschedule(tracking, step, slot)
            logger.info("followup_outside_business_hours",
                        lead_id=lead_id,
                        step=step,
                        next_send_at=slot.isoformat())
            return

        day = now.astimezone(tz).date()
        quota = await self.quota.can_send(day, tenant_id)
        if not quota.allowed:
            await self.queue.enqueue(
                tenant_id,
                EventType.DAILY_LIMIT_REACHED,
                {
                    "tenant_id": tenant_id,
                    "day": day.isoformat(),
                    "limit": quota.limit,
                    "sent_so_far": quota.sent_so_far,
                },
            )
            slot = self._clamp(config, start_of_next_day(now, tz), tz)
            await self._reschedule(tracking, step, slot)
            logger.info("followup_deferred_daily_limit",
                        lead_id=lead_id,
                        step=step,
                        next_send_at=slot.isoformat())
            return

        self.state_machine.apply(tracking, TrackingTrigger.SEND_STARTED, now)
        tracking = await self.store.save_tracking(tracking)

        result = await self._send(lead_id, tenant_id, step)

        if not result.success:
            await self._log(tracking, step, FollowupLogStatus.FAILED, result.error)
            tracking = await self.store.get_tracking(lead_id) or tracking
            self.state_machine.apply(tracking, TrackingTrigger.SEND_FAILED, self.now())
            await self.store.save_tracking(tracking)
            raise FollowupSendError(
                f"Follow-up step {step} failed for lead {lead_id}: {result.error}"
            )

        try:
            await self._finish_step(tracking, config, step, day, now, tz)
        except Exception as e:
            # Bookkeeping failed after delivery; put tracking back so the retry is not stale
            logger.error("followup_post_send_error", lead_id=lead_id, step=step, error=str(e))
            await self._release_in_progress(lead_id)
            raise

    async def _finish_step(
        self,
        tracking: FollowupTracking,
        config: FollowupConfig,
        step: int,
        day: date,
        now: datetime,
        tz: tzinfo,
    ) -> None:
        """Count, log and advance the cycle after a successful send."""
        lead_id, tenant_id = tracking.lead_id, tracking.tenant_id
        await self.quota.increment_sent(day, tenant_id)
        await self._log(tracking, step, FollowupLogStatus.SENT)

        tracking = await self.store.get_tracking(lead_id) or tracking
        if tracking.status != TrackingStatus.IN_PROGRESS:
            logger.info("followup_state_changed_during_send",
                        lead_id=lead_id,
                        step=step,
                        status=tracking.status.value)
            return

        tracking.current_step = step
        if step < config.max_attempts:
            delay = config.interval_for_step(step)
            send_at = self._clamp(config, now + timedelta(minutes=delay), tz)
            await self._schedule_send(lead_id, tenant_id, step + 1, send_at)
            self.state_machine.apply(tracking, TrackingTrigger.STEP_SENT, now)
            tracking.next_send_at = send_at
            logger.info("followup_step_sent",
                        lead_id=lead_id,
                        step=step,
                        next_step=step + 1,
                        next_send_at=send_at.isoformat())
        else:
            await self.queue.enqueue(
                tenant_id,
                EventType.FOLLOW_UP_EXHAUSTED,
                {"lead_id": lead_id, "tenant_id": tenant_id},
            )
            self.state_machine.apply(tracking, TrackingTrigger.EXHAUSTED, now)
            tracking.next_send_at = None
            logger.info("followup_final_step_sent", lead_id=lead_id, step=step)

        await self.store.save_tracking(tracking)

    async def _release_in_progress(self, lead_id: str) -> None:
        tracking = await self.store.get_tracking(lead_id)
        if tracking and self.state_machine.apply(tracking, TrackingTrigger.SEND_FAILED, self.now()):
            await self.store.save_tracking(tracking)

    # ══════════════════════════════════════════════════════════
    #  CYCLE END — reply, opt-out, exhaustion
    # ══════════════════════════════════════════════════════════

    async def on_lead_message_received(self, event: QueueEvent) -> None:
        lead_id = self._lead_id(event)
        now = self.now()

        cancelled = await self.queue.cancel_by_lead_id(lead_id)

        tracking = await self.store.get_tracking(lead_id)
        if tracking is None:
            logger.info("followup_reply_without_tracking", lead_id=lead_id, cancelled=cancelled)
            return

        if self.state_machine.apply(tracking, TrackingTrigger.LEAD_REPLIED, now):
            tracking.current_step = 0
        tracking.next_send_at = None
        tracking.last_lead_message_at = now
        await self.store.save_tracking(tracking)

        logger.info("followup_lead_responded",
                    lead_id=lead_id,
                    status=tracking.status.value,
                    cancelled=cancelled)

    async def on_lead_opted_out(self, event: QueueEvent) -> None:
        lead_id = self._lead_id(event)
        now = self.now()

        cancelled = await self.queue.cancel_by_lead_id(lead_id)

        tracking = await self.store.get_tracking(lead_id)
        if tracking is None:
            logger.info("followup_opt_out_without_tracking", lead_id=lead_id, cancelled=cancelled)
            return

        self.state_machine.apply(tracking, TrackingTrigger.OPTED_OUT, now)
        tracking.next_send_at = None
        tracking.last_lead_message_at = now
        await self.store.save_tracking(tracking)

        logger.info("followup_lead_opted_out",
                    lead_id=lead_id,
                    status=tracking.status.value,
                    cancelled=cancelled)

    async def on_follow_up_exhausted(self, event: QueueEvent) -> None:
        lead_id = self._lead_id(event)

        tracking = await self.store.get_tracking(lead_id)
        if tracking is None:
            return

        if self.state_machine.apply(tracking, TrackingTrigger.EXHAUSTED, self.now()):
            tracking.next_send_at = None
            await self.store.save_tracking(tracking)
            logger.info("followup_exhausted",
                        lead_id=lead_id,
                        steps_sent=tracking.current_step)

    async def on_daily_limit_reached(self, event: QueueEvent) -> None:
        logger.warning("daily_send_limit_reached",
                       tenant_id=event.payload.get("tenant_id", event.tenant_id),
                       day=event.payload.get("day"),
                       limit=event.payload.get("limit"),
                       sent_so_far=event.payload.get("sent_so_far"))

    # ══════════════════════════════════════════════════════════
    #  Helpers
    # ══════════════════════════════════════════════════════════

    def now(self) -> datetime:
        return as_utc(self.clock())

    @staticmethod
    def _lead_id(event: QueueEvent) -> str:
        lead_id = event.payload.get("lead_id")
        if not lead_id:
            raise ValueError(f"Event {event.id} ({event.event_type}) has no lead_id in its payload")
        return lead_id

    def _lead_and_tenant(self, event: QueueEvent) -> tuple[str, str]:
        return self._lead_id(event), event.payload.get("tenant_id") or event.tenant_id

    async def _active_config(self, tenant_id: str, lead_id: str) -> Optional[FollowupConfig]:
        config = await self.store.get_followup_config(tenant_id)
        if config is None or not config.is_active:
            logger.info("followup_config_inactive",
                        tenant_id=tenant_id,
                        lead_id=lead_id,
                        configured=config is not None)
            return None
        return config

    def _tz(self, config: FollowupConfig) -> tzinfo:
        return ZoneInfo(config.timezone or self.default_timezone)

    @staticmethod
    def _is_open(config: FollowupConfig, instant: datetime, tz: tzinfo) -> bool:
        # An empty schedule places no restriction on sending hours
        if not config.sending_schedule:
            return True
        return is_within_business_hours(config.sending_schedule, instant, tz)

    @staticmethod
    def _clamp(config: FollowupConfig, instant: datetime, tz: tzinfo) -> datetime:
        if not config.sending_schedule:
            return instant
        return get_next_valid_slot(config.sending_schedule, instant, tz).astimezone(timezone.utc)

    async def _schedule_send(self, lead_id: str, tenant_id: str, step: int, at: datetime) -> QueueEvent:
        await self.queue.cancel_by_filter(EventType.FOLLOW_UP_SEND, {"lead_id": lead_id})
        return await self.queue.enqueue(
            tenant_id,
            EventType.FOLLOW_UP_SEND,
            {"lead_id": lead_id, "tenant_id": tenant_id, "step": step},
            scheduled_at=at,
            priority=EventPriority.NORMAL.value,
        )

    async def _reschedule(self, tracking: FollowupTracking, step: int, at: datetime) -> None:
        """Same step, later instant; no attempt is consumed."""
        await self._schedule_send(tracking.lead_id, tracking.tenant_id, step, at)
        tracking.next_send_at = at
        await self.store.save_tracking(tracking)

    async def _send(self, lead_id: str, tenant_id: str, step: int) -> SendResult:
        request = AgentRequest(
            lead_id=lead_id,
            tenant_id=tenant_id,
            metadata={"step_number": step},
        )
        try:
            return await self.sender.execute(request)
        except Exception as e:
            logger.error("followup_sender_error", lead_id=lead_id, step=step, error=str(e))
            return SendResult(success=False, error=str(e) or type(e).__name__)

    async def _log(
        self,
        tracking: FollowupTracking,
        step: int,
        status: FollowupLogStatus,
        error: str = None,
    ) -> None:
        await self.store.add_log(FollowupLog(
            tracking_id=tracking.id,
            lead_id=tracking.lead_id,
            tenant_id=tracking.tenant_id,
            step=step,
            status=status,
            error_message=error,
            created_at=self.now(),
        ))
