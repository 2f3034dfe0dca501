"""
Database layer — Multi-backend persistence.

Backends:
  - SQL (PostgreSQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store, get_store
  store = create_store({"store_backend": "memory"})
  tracking = await store.get_tracking("lead-1")
"""
from database.models import (
    Base, EventQueueRow, FollowupConfigRow, FollowupTrackingRow,
    FollowupLogRow, DailySendControlRow, LeadMessageRow,
)
from database.session import get_engine, get_session, init_db, close_db
from database.store_base import BaseFollowupStore
from database.store import SqlFollowupStore
from database.store_memory import InMemoryFollowupStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "EventQueueRow", "FollowupConfigRow", "FollowupTrackingRow",
    "FollowupLogRow", "DailySendControlRow", "LeadMessageRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db",
    # Store interface
    "BaseFollowupStore",
    # Store backends
    "SqlFollowupStore", "InMemoryFollowupStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
