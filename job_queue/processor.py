"""
Queue Processor — Polls the event queue and dispatches events to handlers.

Runs as a background task inside the worker process:

    processor = QueueProcessor(queue)
    processor.register_handler(EventType.FOLLOW_UP_SEND, orchestrator.on_follow_up_send)
    await processor.init()        # first drain runs right away, then every poll interval
    ...
    await processor.stop()        # the event in flight finishes first

Each drain claims at most batch_size events. A handler that raises marks its
event failed (the queue decides between retry and terminal failure); it never
stops the loop.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Awaitable, Callable, Optional

from job_queue.event_queue import EventQueue
from models.schemas import EventType, QueueEvent

logger = structlog.get_logger()

Handler = Callable[[QueueEvent], Awaitable[None]]

NO_HANDLER_MESSAGE = "No handler registered for event type: {event_type}"


class QueueProcessor:
    """
    Timer-driven dispatcher. Drains within one process never overlap.

    Configure in settings:
        queue:
          poll_interval_seconds: 15
          batch_size: 50
    """

    def __init__(
        self,
        queue: EventQueue,
        poll_interval_s: float = 15,
        batch_size: int = 50,
    ):
        self.queue = queue
        self.poll_interval_s = poll_interval_s
        self.batch_size = batch_size
        self._handlers: dict[EventType, Handler] = {}
        self._running = False
        self._stopping = False
        self._task: Optional[asyncio.Task] = None
        self._drain_lock = asyncio.Lock()

    # ── Registration ──────────────────────────────────────────

    def register_handler(self, event_type: Any, handler: Handler) -> None:
        """Bind a handler to an event type. Unknown type names raise ValueError."""
        name = event_type.value if isinstance(event_type, EventType) else str(event_type)
        try:
            key = EventType(name)
        except ValueError:
            raise ValueError(f"Unknown event type: {event_type!r}") from None
        self._handlers[key] = handler
        logger.debug("handler_registered", event_type=key.value)

    def _handler_for(self, event_type: str) -> Optional[Handler]:
        try:
            return self._handlers.get(EventType(event_type))
        except ValueError:
            return None

    # ── Lifecycle ─────────────────────────────────────────────

    async def init(self) -> None:
        """Start the polling task. A second call while running does nothing."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._poll_loop(), name="queue_processor")
        logger.info("queue_processor_started",
                    interval_s=self.poll_interval_s,
                    batch_size=self.batch_size,
                    handlers=len(self._handlers))

    async def stop(self) -> None:
        """Stop polling; waits for the event currently being handled."""
        if not self._running:
            return
        self._running = False
        self._stopping = True
        try:
            async with self._drain_lock:
                if self._task and not self._task.done():
                    self._task.cancel()
                    try:
                        await self._task
                    except asyncio.CancelledError:
                        pass
        finally:
            self._task = None
            self._stopping = False
        logger.info("queue_processor_stopped")

    def get_status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "registered_types": sorted(t.value for t in self._handlers),
        }

    async def _poll_loop(self) -> None:
        """Main polling loop — runs until stopped."""
        while self._running:
            try:
                await self.process_batch()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("queue_drain_error", error=str(e))

            await asyncio.sleep(self.poll_interval_s)

    # ── Draining ──────────────────────────────────────────────

    async def process_batch(self) -> int:
        """
        Single drain cycle: claim and handle due events until the queue has
        nothing due, batch_size events were handled, or stop() was called.

        Returns the number of events handled.
        """
        async with self._drain_lock:
            processed = 0
            while processed < self.batch_size and not self._stopping:
                try:
                    event = await self.queue.dequeue()
                except Exception as e:
                    logger.error("event_claim_error", error=str(e))
                    break
                if event is None:
                    break

                await self._process_event(event)
                processed += 1

            if processed:
                logger.info("queue_batch_processed", count=processed)
            return processed

    async def trigger_immediate(self) -> int:
        """Drain now instead of waiting for the next tick; skipped if a drain is running."""
        if self._drain_lock.locked():
            logger.debug("queue_drain_already_running")
            return 0
        return await self.process_batch()

    async def queue_stats(self, tenant_id: str = None) -> dict[str, int]:
        return await self.queue.get_pending_count(tenant_id)

    async def _process_event(self, event: QueueEvent) -> None:
        handler = self._handler_for(event.event_type)
        if handler is None:
            logger.warning("event_handler_missing",
                           event_id=event.id,
                           event_type=event.event_type)
            await self._fail(event, NO_HANDLER_MESSAGE.format(event_type=event.event_type))
            return

        try:
            await handler(event)
        except Exception as e:
            logger.error("event_handler_error",
                         event_id=event.id,
                         event_type=event.event_type,
                         attempt=event.retry_count + 1,
                         error=str(e))
            await self._fail(event, str(e) or type(e).__name__)
            return

        try:
            await self.queue.complete(event.id)
        except Exception as e:
            logger.error("event_complete_error", event_id=event.id, error=str(e))

    async def _fail(self, event: QueueEvent, message: str) -> None:
        try:
            await self.queue.fail(event.id, message)
        except Exception as e:
            logger.error("event_fail_error", event_id=event.id, error=str(e))
