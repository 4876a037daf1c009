"""
SqlAutomationStore — Portable SQL queries for PostgreSQL and SQLite.

Single-owner invariants are delegated to the partial unique indexes declared
in database/models.py: an IntegrityError on insert becomes ConcurrencyViolation.
Campaign counters are bumped with column arithmetic inside the same
transaction that flips the message row, never read-modify-write.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError

from core.errors import ConcurrencyViolation
from database.models import (
    Base, CampaignMessageRow, CampaignRow, ConnectionRow, ConversationRow,
    CRMAutomationLogRow, CRMDealAutomationRow, CRMStageAutomationRow, DealRow,
    FlowRow, FlowSessionRow, FlowVersionRow,
)
from database.session import get_session
from database.store_base import BaseAutomationStore
from models.schemas import (
    Campaign, CampaignMessage, CampaignMessageStatus, CampaignStatus,
    Connection, Conversation, CRMAutomationLog, CRMDealAutomation,
    CRMStageAutomation, Deal, DealAutomationStatus, FlowDefinition,
    FlowSession, FlowVersion, utcnow,
)

logger = structlog.get_logger()


def _as_utc(value: Any) -> Any:
    """SQLite hands back naive datetimes; everything in the domain is UTC-aware."""
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _row_dict(row: Base) -> dict[str, Any]:
    return {c.key: _as_utc(getattr(row, c.key)) for c in row.__table__.columns}


def _values(model, rename: dict[str, str] = None, exclude: set[str] = None) -> dict[str, Any]:
    """Dump a domain model into column values (enums flattened to their value)."""
    rename = rename or {}
    exclude = exclude or set()
    out = {}
    for key, value in model.model_dump().items():
        if key in exclude:
            continue
        if isinstance(value, Enum):
            value = value.value
        out[rename.get(key, key)] = value
    return out


_FLOW_RENAME = {"nodes": "nodes_data", "edges": "edges_data"}

# Written only by the dispatcher path, never by save_campaign()
_CAMPAIGN_RUNTIME = {"sent_count", "failed_count", "last_dispatch_at", "cooldown_at_count"}


class SqlAutomationStore(BaseAutomationStore):
    """
    Persistent automation store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL (asyncpg) and SQLite (aiosqlite).
    """

    # ── Connections ───────────────────────────────────────────

    async def save_connection(self, connection: Connection) -> Connection:
        async with get_session() as db:
            await db.merge(ConnectionRow(**_values(connection)))
        return connection

    async def get_connection(self, connection_id: str) -> Optional[Connection]:
        async with get_session() as db:
            row = await db.get(ConnectionRow, connection_id)
            return Connection.model_validate(_row_dict(row)) if row else None

    # ── Flows ─────────────────────────────────────────────────

    async def get_flow(self, flow_id: str) -> Optional[FlowDefinition]:
        async with get_session() as db:
            row = await db.get(FlowRow, flow_id)
            return self._row_to_flow(row) if row else None

    async def save_flow(self, flow: FlowDefinition) -> FlowDefinition:
        async with get_session() as db:
            await db.merge(FlowRow(**_values(flow, rename=_FLOW_RENAME)))
        return flow

    async def delete_flow(self, flow_id: str) -> bool:
        async with get_session() as db:
            row = await db.get(FlowRow, flow_id)
            if row is None:
                return False
            await db.execute(delete(FlowSessionRow).where(FlowSessionRow.flow_id == flow_id))
            await db.execute(delete(FlowVersionRow).where(FlowVersionRow.flow_id == flow_id))
            await db.delete(row)
            return True

    async def list_trigger_flows(self, organization_id: str) -> list[FlowDefinition]:
        async with get_session() as db:
            stmt = select(FlowRow).where(
                FlowRow.organization_id == organization_id,
                FlowRow.is_active.is_(True),
                FlowRow.trigger_enabled.is_(True),
            )
            result = await db.execute(stmt)
            return [self._row_to_flow(r) for r in result.scalars()]

    async def save_flow_version(self, version: FlowVersion) -> FlowVersion:
        async with get_session() as db:
            db.add(FlowVersionRow(**_values(version)))
        return version

    async def get_flow_version(self, flow_id: str, version: int) -> Optional[FlowVersion]:
        async with get_session() as db:
            stmt = select(FlowVersionRow).where(
                FlowVersionRow.flow_id == flow_id, FlowVersionRow.version == version,
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            return FlowVersion.model_validate(_row_dict(row)) if row else None

    async def list_flow_versions(self, flow_id: str) -> list[FlowVersion]:
        async with get_session() as db:
            stmt = (
                select(FlowVersionRow)
                .where(FlowVersionRow.flow_id == flow_id)
                .order_by(FlowVersionRow.version)
            )
            result = await db.execute(stmt)
            return [FlowVersion.model_validate(_row_dict(r)) for r in result.scalars()]

    # ── Conversations ─────────────────────────────────────────

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        async with get_session() as db:
            row = await db.get(ConversationRow, conversation_id)
            return Conversation.model_validate(_row_dict(row)) if row else None

    async def find_conversation(self, connection_id: str, contact_phone: str) -> Optional[Conversation]:
        async with get_session() as db:
            stmt = select(ConversationRow).where(
                ConversationRow.connection_id == connection_id,
                ConversationRow.contact_phone == contact_phone,
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            return Conversation.model_validate(_row_dict(row)) if row else None

    async def save_conversation(self, conversation: Conversation) -> Conversation:
        conversation.updated_at = utcnow()
        async with get_session() as db:
            await db.merge(ConversationRow(**_values(conversation)))
        return conversation

    async def ensure_conversation(
        self, organization_id: str, connection_id: str,
        contact_phone: str, contact_name: str = "",
    ) -> Conversation:
        try:
            return await super().ensure_conversation(
                organization_id, connection_id, contact_phone, contact_name,
            )
        except IntegrityError:
            # Lost the insert race on (connection_id, contact_phone)
            conv = await self.find_conversation(connection_id, contact_phone)
            if conv is None:
                raise
            return conv

    # ── Flow sessions ─────────────────────────────────────────

    async def create_session(self, session: FlowSession) -> FlowSession:
        try:
            async with get_session() as db:
                db.add(FlowSessionRow(**_values(session)))
                await db.flush()
        except IntegrityError as e:
            logger.info("flow_session_insert_conflict", conversation_id=session.conversation_id)
            raise ConcurrencyViolation("flow_session", session.conversation_id) from e
        return session

    async def get_session(self, session_id: str) -> Optional[FlowSession]:
        async with get_session() as db:
            row = await db.get(FlowSessionRow, session_id)
            return FlowSession.model_validate(_row_dict(row)) if row else None

    async def get_active_session(self, conversation_id: str) -> Optional[FlowSession]:
        async with get_session() as db:
            stmt = select(FlowSessionRow).where(
                FlowSessionRow.conversation_id == conversation_id,
                FlowSessionRow.is_active.is_(True),
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            return FlowSession.model_validate(_row_dict(row)) if row else None

    async def save_session(self, session: FlowSession) -> FlowSession:
        try:
            async with get_session() as db:
                await db.merge(FlowSessionRow(**_values(session)))
                await db.flush()
        except IntegrityError as e:
            raise ConcurrencyViolation("flow_session", session.conversation_id) from e
        return session

    async def increment_session_failure(self, session_id: str) -> int:
        async with get_session() as db:
            await db.execute(
                update(FlowSessionRow)
                .where(FlowSessionRow.id == session_id)
                .values(failure_count=FlowSessionRow.failure_count + 1)
            )
            value = await db.scalar(
                select(FlowSessionRow.failure_count).where(FlowSessionRow.id == session_id)
            )
            return value or 0

    async def list_due_sessions(self, before: datetime, limit: int = 100) -> list[FlowSession]:
        async with get_session() as db:
            stmt = (
                select(FlowSessionRow)
                .where(
                    FlowSessionRow.is_active.is_(True),
                    FlowSessionRow.resume_at.is_not(None),
                    FlowSessionRow.resume_at <= before,
                )
                .order_by(FlowSessionRow.resume_at, FlowSessionRow.id)
                .limit(limit)
            )
            rows = (await db.execute(stmt)).scalars().all()
            return [FlowSession.model_validate(_row_dict(r)) for r in rows]

    # ── Campaigns ─────────────────────────────────────────────

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        async with get_session() as db:
            row = await db.get(CampaignRow, campaign_id)
            return Campaign.model_validate(_row_dict(row)) if row else None

    async def save_campaign(self, campaign: Campaign) -> Campaign:
        campaign.updated_at = utcnow()
        values = _values(campaign, exclude=_CAMPAIGN_RUNTIME)
        async with get_session() as db:
            row = await db.get(CampaignRow, campaign.id)
            if row is None:
                db.add(CampaignRow(**values, sent_count=campaign.sent_count,
                                   failed_count=campaign.failed_count,
                                   last_dispatch_at=campaign.last_dispatch_at,
                                   cooldown_at_count=campaign.cooldown_at_count))
            else:
                for key, value in values.items():
                    setattr(row, key, value)
                campaign.sent_count = row.sent_count
                campaign.failed_count = row.failed_count
                campaign.last_dispatch_at = _as_utc(row.last_dispatch_at)
                campaign.cooldown_at_count = row.cooldown_at_count
        return campaign

    async def set_campaign_status(
        self, campaign_id: str, status: CampaignStatus,
        expected: Optional[list[CampaignStatus]] = None,
    ) -> bool:
        async with get_session() as db:
            stmt = (
                update(CampaignRow)
                .where(CampaignRow.id == campaign_id)
                .values(status=status.value, updated_at=utcnow())
            )
            if expected is not None:
                stmt = stmt.where(CampaignRow.status.in_([s.value for s in expected]))
            result = await db.execute(stmt)
            return result.rowcount == 1

    async def list_campaigns(self, statuses: list[CampaignStatus]) -> list[Campaign]:
        async with get_session() as db:
            stmt = (
                select(CampaignRow)
                .where(CampaignRow.status.in_([s.value for s in statuses]))
                .order_by(CampaignRow.created_at, CampaignRow.id)
            )
            result = await db.execute(stmt)
            return [Campaign.model_validate(_row_dict(r)) for r in result.scalars()]

    async def add_campaign_messages(self, messages: list[CampaignMessage]) -> int:
        async with get_session() as db:
            db.add_all([CampaignMessageRow(**_values(m)) for m in messages])
        return len(messages)

    async def list_pending_messages(
        self, campaign_id: str, due_before: Optional[datetime] = None, limit: int = 0,
    ) -> list[CampaignMessage]:
        async with get_session() as db:
            stmt = (
                select(CampaignMessageRow)
                .where(
                    CampaignMessageRow.campaign_id == campaign_id,
                    CampaignMessageRow.status == CampaignMessageStatus.PENDING.value,
                )
                .order_by(CampaignMessageRow.scheduled_at, CampaignMessageRow.id)
            )
            if due_before is not None:
                stmt = stmt.where(CampaignMessageRow.scheduled_at <= due_before)
            if limit:
                stmt = stmt.limit(limit)
            result = await db.execute(stmt)
            return [CampaignMessage.model_validate(_row_dict(r)) for r in result.scalars()]

    async def record_message_result(
        self, message_id: str, status: CampaignMessageStatus,
        error_message: str = "", sent_at: Optional[datetime] = None,
    ) -> bool:
        async with get_session() as db:
            result = await db.execute(
                update(CampaignMessageRow)
                .where(
                    CampaignMessageRow.id == message_id,
                    CampaignMessageRow.status == CampaignMessageStatus.PENDING.value,
                )
                .values(status=status.value, error_message=error_message, sent_at=sent_at)
            )
            if result.rowcount != 1:
                return False
            campaign_id = await db.scalar(
                select(CampaignMessageRow.campaign_id).where(CampaignMessageRow.id == message_id)
            )
            if status == CampaignMessageStatus.SENT:
                counter = {"sent_count": CampaignRow.sent_count + 1}
            else:
                counter = {"failed_count": CampaignRow.failed_count + 1}
            if sent_at is not None:
                counter["last_dispatch_at"] = sent_at
            await db.execute(update(CampaignRow).where(CampaignRow.id == campaign_id).values(**counter))
            return True

    async def mark_cool_down(self, campaign_id: str, sent_count: int) -> None:
        async with get_session() as db:
            await db.execute(
                update(CampaignRow).where(CampaignRow.id == campaign_id).values(cooldown_at_count=sent_count)
            )

    async def reschedule_pending(self, campaign_id: str, scheduled_at: datetime) -> int:
        async with get_session() as db:
            result = await db.execute(
                update(CampaignMessageRow)
                .where(
                    CampaignMessageRow.campaign_id == campaign_id,
                    CampaignMessageRow.status == CampaignMessageStatus.PENDING.value,
                )
                .values(scheduled_at=scheduled_at)
            )
            return result.rowcount

    async def count_messages(self, campaign_id: str) -> dict[str, int]:
        counts = {s.value: 0 for s in CampaignMessageStatus}
        async with get_session() as db:
            stmt = (
                select(CampaignMessageRow.status, func.count())
                .where(CampaignMessageRow.campaign_id == campaign_id)
                .group_by(CampaignMessageRow.status)
            )
            for status, count in (await db.execute(stmt)).all():
                counts[status] = count
        return counts

    # ── Deals ─────────────────────────────────────────────────

    async def get_deal(self, deal_id: str) -> Optional[Deal]:
        async with get_session() as db:
            row = await db.get(DealRow, deal_id)
            return Deal.model_validate(_row_dict(row)) if row else None

    async def save_deal(self, deal: Deal) -> Deal:
        async with get_session() as db:
            await db.merge(DealRow(**_values(deal)))
        return deal

    # ── Stage automations ─────────────────────────────────────

    async def save_stage_automation(self, automation: CRMStageAutomation) -> CRMStageAutomation:
        async with get_session() as db:
            await db.merge(CRMStageAutomationRow(**_values(automation)))
        return automation

    async def get_stage_automation(self, automation_id: str) -> Optional[CRMStageAutomation]:
        async with get_session() as db:
            row = await db.get(CRMStageAutomationRow, automation_id)
            return CRMStageAutomation.model_validate(_row_dict(row)) if row else None

    async def get_stage_automation_for_stage(self, stage_id: str) -> Optional[CRMStageAutomation]:
        async with get_session() as db:
            stmt = select(CRMStageAutomationRow).where(
                CRMStageAutomationRow.stage_id == stage_id,
                CRMStageAutomationRow.is_active.is_(True),
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            return CRMStageAutomation.model_validate(_row_dict(row)) if row else None

    # ── Deal automations ──────────────────────────────────────

    async def create_deal_automation(self, automation: CRMDealAutomation) -> CRMDealAutomation:
        try:
            async with get_session() as db:
                db.add(CRMDealAutomationRow(**_values(automation)))
                await db.flush()
        except IntegrityError as e:
            logger.info("deal_automation_insert_conflict", deal_id=automation.deal_id)
            raise ConcurrencyViolation("deal_automation", automation.deal_id) from e
        return automation

    async def get_deal_automation(self, automation_id: str) -> Optional[CRMDealAutomation]:
        async with get_session() as db:
            row = await db.get(CRMDealAutomationRow, automation_id)
            return CRMDealAutomation.model_validate(_row_dict(row)) if row else None

    async def get_active_deal_automation(self, deal_id: str) -> Optional[CRMDealAutomation]:
        async with get_session() as db:
            stmt = select(CRMDealAutomationRow).where(
                CRMDealAutomationRow.deal_id == deal_id,
                CRMDealAutomationRow.status.in_(["pending", "flow_sent", "waiting"]),
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            return CRMDealAutomation.model_validate(_row_dict(row)) if row else None

    async def list_deal_automations(
        self, statuses: list[DealAutomationStatus],
        due_before: Optional[datetime] = None,
        conversation_id: Optional[str] = None,
    ) -> list[CRMDealAutomation]:
        async with get_session() as db:
            stmt = (
                select(CRMDealAutomationRow)
                .where(CRMDealAutomationRow.status.in_([s.value for s in statuses]))
                .order_by(CRMDealAutomationRow.created_at, CRMDealAutomationRow.id)
            )
            if due_before is not None:
                stmt = stmt.where(CRMDealAutomationRow.wait_until <= due_before)
            if conversation_id is not None:
                stmt = stmt.where(CRMDealAutomationRow.conversation_id == conversation_id)
            result = await db.execute(stmt)
            return [CRMDealAutomation.model_validate(_row_dict(r)) for r in result.scalars()]

    async def save_deal_automation(self, automation: CRMDealAutomation) -> CRMDealAutomation:
        automation.updated_at = utcnow()
        try:
            async with get_session() as db:
                await db.merge(CRMDealAutomationRow(**_values(automation)))
                await db.flush()
        except IntegrityError as e:
            raise ConcurrencyViolation("deal_automation", automation.deal_id) from e
        return automation

    # ── Automation log ────────────────────────────────────────

    async def append_automation_log(self, entry: CRMAutomationLog) -> None:
        async with get_session() as db:
            db.add(CRMAutomationLogRow(**_values(entry)))

    async def list_automation_logs(self, deal_id: str) -> list[CRMAutomationLog]:
        async with get_session() as db:
            stmt = (
                select(CRMAutomationLogRow)
                .where(CRMAutomationLogRow.deal_id == deal_id)
                .order_by(CRMAutomationLogRow.created_at)
            )
            result = await db.execute(stmt)
            return [CRMAutomationLog.model_validate(_row_dict(r)) for r in result.scalars()]

    # ── Utility ───────────────────────────────────────────────

    async def stats(self) -> dict[str, Any]:
        async with get_session() as db:
            active_sessions = await db.scalar(
                select(func.count()).select_from(FlowSessionRow).where(FlowSessionRow.is_active.is_(True))
            )
            campaigns = await db.scalar(select(func.count()).select_from(CampaignRow))
        return {"backend": "sql", "active_sessions": active_sessions, "campaigns": campaigns}

    # ── Converters ────────────────────────────────────────────

    @staticmethod
    def _row_to_flow(row: FlowRow) -> FlowDefinition:
        data = _row_dict(row)
        data["nodes"] = data.pop("nodes_data") or []
        data["edges"] = data.pop("edges_data") or []
        return FlowDefinition.model_validate(data)
