"""
Event queue — Durable, prioritised, scheduled work for the follow-up engine.

- Triggers and handlers ENQUEUE events (optionally scheduled for later)
- QueueProcessor CLAIMS due events and dispatches them to handlers
- Failed events are retried with backoff until max_retries
- Supports SQL (PostgreSQL / SQLite, production) and in-memory (dev) backends
"""
from job_queue.event_queue import (
    EventQueue, SqlEventQueue, InMemoryEventQueue, backoff_minutes,
    create_event_queue, get_event_queue, reset_event_queue,
)
from job_queue.processor import QueueProcessor

__all__ = [
    "EventQueue", "SqlEventQueue", "InMemoryEventQueue", "backoff_minutes",
    "create_event_queue", "get_event_queue", "reset_event_queue",
    "QueueProcessor",
]
