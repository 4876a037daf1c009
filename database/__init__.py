"""
Database layer — Multi-backend persistence for the automation engine.

Backends:
  - SQL (PostgreSQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store, get_store
  store = create_store({"store_backend": "memory"})
  session = await store.get_active_session("conv-1")
"""
from database.models import (
    Base, ConnectionRow, ConversationRow, FlowRow, FlowVersionRow,
    FlowSessionRow, CampaignRow, CampaignMessageRow, DealRow,
    CRMStageAutomationRow, CRMDealAutomationRow, CRMAutomationLogRow,
)
from database.session import configure_engine, get_engine, get_session, init_db, close_db
from database.store_base import BaseAutomationStore
from database.store import SqlAutomationStore
from database.store_memory import InMemoryAutomationStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "ConnectionRow", "ConversationRow", "FlowRow", "FlowVersionRow",
    "FlowSessionRow", "CampaignRow", "CampaignMessageRow", "DealRow",
    "CRMStageAutomationRow", "CRMDealAutomationRow", "CRMAutomationLogRow",
    # Session management
    "configure_engine", "get_engine", "get_session", "init_db", "close_db",
    # Store interface
    "BaseAutomationStore",
    # Store backends
    "SqlAutomationStore", "InMemoryAutomationStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
