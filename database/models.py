"""
SQLAlchemy ORM models — PostgreSQL and SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB — on PG the dialect maps
    JSON to jsonb automatically; on SQLite it serializes to TEXT.
  - The two single-owner invariants are partial unique indexes, supported
    by both PostgreSQL and SQLite:
        flow_sessions(conversation_id)   WHERE is_active
        crm_deal_automations(deal_id)    WHERE status IN (pending, flow_sent, waiting)
  - String primary keys (uuid hex) — no database-specific sequences.
  - Every table carries organization_id (tenant partition key).
"""
from __future__ import annotations

import uuid
from datetime import date, datetime, time, timezone
from typing import Any, Optional

from sqlalchemy import (
    Boolean, Date, DateTime, Float, ForeignKey, Index, Integer, JSON,
    String, Text, Time, text,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


_ACTIVE_SESSION = text("is_active")
_ACTIVE_AUTOMATION = text("status IN ('pending', 'flow_sent', 'waiting')")


# ──────────────────────────────────────────────────────────────
#  Connections & conversations
# ──────────────────────────────────────────────────────────────

class ConnectionRow(Base):
    __tablename__ = "whatsapp_connections"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(256), default="")
    phone_number: Mapped[str] = mapped_column(String(32), default="")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class ConversationRow(Base):
    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False)
    connection_id: Mapped[str] = mapped_column(String(64), nullable=False)
    contact_phone: Mapped[str] = mapped_column(String(32), nullable=False)
    contact_name: Mapped[str] = mapped_column(String(256), default="")
    attendance_status: Mapped[str] = mapped_column(String(32), default="bot")
    transferred_to: Mapped[str] = mapped_column(String(128), default="")
    tags: Mapped[Any] = mapped_column(JSON, default=list)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ux_conversations_connection_phone", "connection_id", "contact_phone", unique=True),
        Index("ix_conversations_org", "organization_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Flows
# ──────────────────────────────────────────────────────────────

class FlowRow(Base):
    __tablename__ = "flows"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(256), default="")
    kind: Mapped[str] = mapped_column(String(16), default="flow")
    nodes_data: Mapped[Any] = mapped_column(JSON, default=list)
    edges_data: Mapped[Any] = mapped_column(JSON, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    trigger_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    trigger_keywords: Mapped[Any] = mapped_column(JSON, default=list)
    trigger_match_mode: Mapped[str] = mapped_column(String(16), default="exact")
    trigger_priority: Mapped[int] = mapped_column(Integer, default=0)
    connection_ids: Mapped[Any] = mapped_column(JSON, default=list)
    activation_mode: Mapped[str] = mapped_column(String(16), default="keywords")
    business_hours_start: Mapped[time] = mapped_column(Time, default=time(8, 0))
    business_hours_end: Mapped[time] = mapped_column(Time, default=time(18, 0))
    business_days: Mapped[Any] = mapped_column(JSON, default=lambda: [1, 2, 3, 4, 5])
    timezone: Mapped[str] = mapped_column(String(64), default="UTC")
    welcome_message: Mapped[str] = mapped_column(Text, default="")
    transfer_after_failures: Mapped[int] = mapped_column(Integer, default=3)
    fallback_message: Mapped[str] = mapped_column(Text, default="")
    version: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    versions: Mapped[list["FlowVersionRow"]] = relationship(
        back_populates="flow", cascade="all, delete-orphan", lazy="raise", passive_deletes=True,
    )
    sessions: Mapped[list["FlowSessionRow"]] = relationship(
        back_populates="flow", cascade="all, delete-orphan", lazy="raise", passive_deletes=True,
    )

    __table_args__ = (
        Index("ix_flows_org_trigger", "organization_id", "is_active", "trigger_enabled"),
    )


class FlowVersionRow(Base):
    __tablename__ = "flow_versions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    flow_id: Mapped[str] = mapped_column(String(64), ForeignKey("flows.id", ondelete="CASCADE"), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    nodes_data: Mapped[Any] = mapped_column(JSON, default=list)
    edges_data: Mapped[Any] = mapped_column(JSON, default=list)
    published_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    flow: Mapped["FlowRow"] = relationship(back_populates="versions")

    __table_args__ = (
        Index("ux_flow_versions_flow_version", "flow_id", "version", unique=True),
    )


class FlowSessionRow(Base):
    __tablename__ = "flow_sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False)
    flow_id: Mapped[str] = mapped_column(String(64), ForeignKey("flows.id", ondelete="CASCADE"), nullable=False)
    conversation_id: Mapped[str] = mapped_column(String(64), nullable=False)
    connection_id: Mapped[str] = mapped_column(String(64), default="")
    contact_phone: Mapped[str] = mapped_column(String(32), default="")
    current_node_id: Mapped[str] = mapped_column(String(128), default="")
    variables: Mapped[Any] = mapped_column(JSON, default=dict)
    awaiting_input: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    failure_count: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(16), default="active")
    transferred_to: Mapped[str] = mapped_column(String(128), default="")
    context: Mapped[Any] = mapped_column(JSON, default=list)
    resume_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    last_interaction_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    flow: Mapped["FlowRow"] = relationship(back_populates="sessions")

    __table_args__ = (
        Index(
            "ux_flow_sessions_active_conversation", "conversation_id", unique=True,
            postgresql_where=_ACTIVE_SESSION, sqlite_where=_ACTIVE_SESSION,
        ),
        Index("ix_flow_sessions_flow", "flow_id"),
        Index("ix_flow_sessions_resume_at", "resume_at"),
    )


# ──────────────────────────────────────────────────────────────
#  Campaigns
# ──────────────────────────────────────────────────────────────

class CampaignRow(Base):
    __tablename__ = "campaigns"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(256), default="")
    connection_id: Mapped[str] = mapped_column(String(64), nullable=False)
    template: Mapped[Any] = mapped_column(JSON, default=dict)
    status: Mapped[str] = mapped_column(String(16), default="pending", index=True)
    start_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    end_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    start_time: Mapped[Optional[time]] = mapped_column(Time, nullable=True)
    end_time: Mapped[Optional[time]] = mapped_column(Time, nullable=True)
    timezone: Mapped[str] = mapped_column(String(64), default="UTC")
    min_delay: Mapped[float] = mapped_column(Float, default=5)
    max_delay: Mapped[float] = mapped_column(Float, default=15)
    pause_after_messages: Mapped[int] = mapped_column(Integer, default=0)
    pause_duration: Mapped[float] = mapped_column(Float, default=0)
    random_order: Mapped[bool] = mapped_column(Boolean, default=False)
    shuffle_seed: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    sent_count: Mapped[int] = mapped_column(Integer, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, default=0)
    last_dispatch_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cooldown_at_count: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    messages: Mapped[list["CampaignMessageRow"]] = relationship(
        back_populates="campaign", cascade="all, delete-orphan", lazy="raise", passive_deletes=True,
    )


class CampaignMessageRow(Base):
    __tablename__ = "campaign_messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    campaign_id: Mapped[str] = mapped_column(String(64), ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False)
    contact_id: Mapped[str] = mapped_column(String(64), default="")
    phone: Mapped[str] = mapped_column(String(32), nullable=False)
    contact_data: Mapped[Any] = mapped_column(JSON, default=dict)
    status: Mapped[str] = mapped_column(String(16), default="pending")
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str] = mapped_column(Text, default="")

    campaign: Mapped["CampaignRow"] = relationship(back_populates="messages")

    __table_args__ = (
        Index("ix_campaign_messages_pending", "campaign_id", "status", "scheduled_at"),
    )


# ──────────────────────────────────────────────────────────────
#  CRM
# ──────────────────────────────────────────────────────────────

class DealRow(Base):
    __tablename__ = "crm_deals"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False)
    funnel_id: Mapped[str] = mapped_column(String(64), nullable=False)
    stage_id: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(256), default="")
    contact_phone: Mapped[str] = mapped_column(String(32), default="")
    contact_name: Mapped[str] = mapped_column(String(256), default="")
    connection_id: Mapped[str] = mapped_column(String(64), default="")
    conversation_id: Mapped[str] = mapped_column(String(64), default="")

    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class CRMStageAutomationRow(Base):
    __tablename__ = "crm_stage_automations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False)
    stage_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    flow_id: Mapped[str] = mapped_column(String(64), nullable=False)
    wait_hours: Mapped[float] = mapped_column(Float, default=24)
    next_stage_id: Mapped[str] = mapped_column(String(64), default="")
    fallback_funnel_id: Mapped[str] = mapped_column(String(64), default="")
    fallback_stage_id: Mapped[str] = mapped_column(String(64), default="")
    execute_immediately: Mapped[bool] = mapped_column(Boolean, default=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class CRMDealAutomationRow(Base):
    __tablename__ = "crm_deal_automations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False)
    deal_id: Mapped[str] = mapped_column(String(64), nullable=False)
    stage_automation_id: Mapped[str] = mapped_column(String(64), nullable=False)
    stage_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="pending")
    flow_session_id: Mapped[str] = mapped_column(String(64), default="")
    conversation_id: Mapped[str] = mapped_column(String(64), default="", index=True)
    flow_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    wait_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    responded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    chain_depth: Mapped[int] = mapped_column(Integer, default=0)
    error: Mapped[str] = mapped_column(Text, default="")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index(
            "ux_crm_deal_automations_active_deal", "deal_id", unique=True,
            postgresql_where=_ACTIVE_AUTOMATION, sqlite_where=_ACTIVE_AUTOMATION,
        ),
        Index("ix_crm_deal_automations_due", "status", "wait_until"),
    )


class CRMAutomationLogRow(Base):
    __tablename__ = "crm_automation_logs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False)
    deal_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    automation_id: Mapped[str] = mapped_column(String(64), default="")
    from_status: Mapped[str] = mapped_column(String(16), default="")
    to_status: Mapped[str] = mapped_column(String(16), default="")
    event: Mapped[str] = mapped_column(String(64), nullable=False)
    details: Mapped[Any] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
