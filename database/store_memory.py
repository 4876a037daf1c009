"""
InMemoryAutomationStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database, no Redis)
  - Full interface compatibility with SqlAutomationStore
  - Safe under asyncio: every check-and-insert runs without an await in between
  - Returns deep copies, so callers never mutate stored state by accident
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Any, Optional

from core.errors import ConcurrencyViolation
from database.store_base import BaseAutomationStore
from models.schemas import (
    ACTIVE_DEAL_AUTOMATION_STATUSES, Campaign, CampaignMessage,
    CampaignMessageStatus, CampaignStatus, Connection, Conversation,
    CRMAutomationLog, CRMDealAutomation, CRMStageAutomation, Deal,
    DealAutomationStatus, FlowDefinition, FlowSession, FlowVersion, utcnow,
)

logger = structlog.get_logger()


def _copy(model):
    return model.model_copy(deep=True) if model is not None else None


class InMemoryAutomationStore(BaseAutomationStore):
    """Full-featured in-memory store with the same interface as SqlAutomationStore."""

    def __init__(self):
        self._connections: dict[str, Connection] = {}
        self._flows: dict[str, FlowDefinition] = {}
        self._flow_versions: dict[tuple[str, int], FlowVersion] = {}
        self._conversations: dict[str, Conversation] = {}
        self._sessions: dict[str, FlowSession] = {}
        self._campaigns: dict[str, Campaign] = {}
        self._messages: dict[str, CampaignMessage] = {}
        self._deals: dict[str, Deal] = {}
        self._stage_automations: dict[str, CRMStageAutomation] = {}
        self._deal_automations: dict[str, CRMDealAutomation] = {}
        self._logs: list[CRMAutomationLog] = []

        # Indexes
        self._conversation_index: dict[str, str] = {}     # "connection:phone" → conversation_id
        self._active_sessions: dict[str, str] = {}        # conversation_id → session_id
        self._active_deal_automations: dict[str, str] = {}  # deal_id → automation_id
        logger.info("inmemory_store_initialized")

    # ── Connections ───────────────────────────────────────────

    async def save_connection(self, connection: Connection) -> Connection:
        self._connections[connection.id] = _copy(connection)
        return connection

    async def get_connection(self, connection_id: str) -> Optional[Connection]:
        return _copy(self._connections.get(connection_id))

    # ── Flows ─────────────────────────────────────────────────

    async def get_flow(self, flow_id: str) -> Optional[FlowDefinition]:
        return _copy(self._flows.get(flow_id))

    async def save_flow(self, flow: FlowDefinition) -> FlowDefinition:
        self._flows[flow.id] = _copy(flow)
        return flow

    async def delete_flow(self, flow_id: str) -> bool:
        if self._flows.pop(flow_id, None) is None:
            return False
        for key in [k for k in self._flow_versions if k[0] == flow_id]:
            del self._flow_versions[key]
        for sid in [s.id for s in self._sessions.values() if s.flow_id == flow_id]:
            session = self._sessions.pop(sid)
            if self._active_sessions.get(session.conversation_id) == sid:
                del self._active_sessions[session.conversation_id]
        return True

    async def list_trigger_flows(self, organization_id: str) -> list[FlowDefinition]:
        return [
            _copy(f) for f in self._flows.values()
            if f.organization_id == organization_id and f.is_active and f.trigger_enabled
        ]

    async def save_flow_version(self, version: FlowVersion) -> FlowVersion:
        self._flow_versions[(version.flow_id, version.version)] = _copy(version)
        return version

    async def get_flow_version(self, flow_id: str, version: int) -> Optional[FlowVersion]:
        return _copy(self._flow_versions.get((flow_id, version)))

    async def list_flow_versions(self, flow_id: str) -> list[FlowVersion]:
        versions = [_copy(v) for (fid, _), v in self._flow_versions.items() if fid == flow_id]
        return sorted(versions, key=lambda v: v.version)

    # ── Conversations ─────────────────────────────────────────

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        return _copy(self._conversations.get(conversation_id))

    async def find_conversation(self, connection_id: str, contact_phone: str) -> Optional[Conversation]:
        cid = self._conversation_index.get(f"{connection_id}:{contact_phone}")
        return await self.get_conversation(cid) if cid else None

    async def save_conversation(self, conversation: Conversation) -> Conversation:
        conversation.updated_at = utcnow()
        self._conversations[conversation.id] = _copy(conversation)
        key = f"{conversation.connection_id}:{conversation.contact_phone}"
        self._conversation_index.setdefault(key, conversation.id)
        return conversation

    # ── Flow sessions ─────────────────────────────────────────

    async def create_session(self, session: FlowSession) -> FlowSession:
        if session.is_active:
            if session.conversation_id in self._active_sessions:
                raise ConcurrencyViolation("flow_session", session.conversation_id)
            self._active_sessions[session.conversation_id] = session.id
        self._sessions[session.id] = _copy(session)
        return session

    async def get_session(self, session_id: str) -> Optional[FlowSession]:
        return _copy(self._sessions.get(session_id))

    async def get_active_session(self, conversation_id: str) -> Optional[FlowSession]:
        sid = self._active_sessions.get(conversation_id)
        return await self.get_session(sid) if sid else None

    async def save_session(self, session: FlowSession) -> FlowSession:
        owner = self._active_sessions.get(session.conversation_id)
        if session.is_active:
            if owner and owner != session.id:
                raise ConcurrencyViolation("flow_session", session.conversation_id)
            self._active_sessions[session.conversation_id] = session.id
        elif owner == session.id:
            del self._active_sessions[session.conversation_id]
        self._sessions[session.id] = _copy(session)
        return session

    async def increment_session_failure(self, session_id: str) -> int:
        stored = self._sessions.get(session_id)
        if stored is None:
            return 0
        stored.failure_count += 1
        return stored.failure_count

    async def list_due_sessions(self, before: datetime, limit: int = 100) -> list[FlowSession]:
        due = [
            s for s in self._sessions.values()
            if s.is_active and s.resume_at is not None and s.resume_at <= before
        ]
        due.sort(key=lambda s: (s.resume_at, s.id))
        return [_copy(s) for s in due[:limit]]

    # ── Campaigns ─────────────────────────────────────────────

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        return _copy(self._campaigns.get(campaign_id))

    async def save_campaign(self, campaign: Campaign) -> Campaign:
        existing = self._campaigns.get(campaign.id)
        stored = _copy(campaign)
        if existing:
            stored.sent_count = existing.sent_count
            stored.failed_count = existing.failed_count
            stored.last_dispatch_at = existing.last_dispatch_at
            stored.cooldown_at_count = existing.cooldown_at_count
        stored.updated_at = utcnow()
        self._campaigns[campaign.id] = stored
        return _copy(stored)

    async def set_campaign_status(
        self, campaign_id: str, status: CampaignStatus,
        expected: Optional[list[CampaignStatus]] = None,
    ) -> bool:
        stored = self._campaigns.get(campaign_id)
        if stored is None:
            return False
        if expected is not None and stored.status not in expected:
            return False
        stored.status = status
        stored.updated_at = utcnow()
        return True

    async def list_campaigns(self, statuses: list[CampaignStatus]) -> list[Campaign]:
        found = [_copy(c) for c in self._campaigns.values() if c.status in statuses]
        return sorted(found, key=lambda c: (c.created_at, c.id))

    async def add_campaign_messages(self, messages: list[CampaignMessage]) -> int:
        for msg in messages:
            self._messages[msg.id] = _copy(msg)
        return len(messages)

    async def list_pending_messages(
        self, campaign_id: str, due_before: Optional[datetime] = None, limit: int = 0,
    ) -> list[CampaignMessage]:
        rows = [
            m for m in self._messages.values()
            if m.campaign_id == campaign_id
            and m.status == CampaignMessageStatus.PENDING
            and (due_before is None or m.scheduled_at <= due_before)
        ]
        rows.sort(key=lambda m: (m.scheduled_at, m.id))
        if limit:
            rows = rows[:limit]
        return [_copy(m) for m in rows]

    async def record_message_result(
        self, message_id: str, status: CampaignMessageStatus,
        error_message: str = "", sent_at: Optional[datetime] = None,
    ) -> bool:
        msg = self._messages.get(message_id)
        if msg is None or msg.status != CampaignMessageStatus.PENDING:
            return False
        campaign = self._campaigns.get(msg.campaign_id)
        msg.status = status
        msg.error_message = error_message
        msg.sent_at = sent_at
        if campaign is not None:
            if status == CampaignMessageStatus.SENT:
                campaign.sent_count += 1
            else:
                campaign.failed_count += 1
            if sent_at is not None:
                campaign.last_dispatch_at = sent_at
        return True

    async def mark_cool_down(self, campaign_id: str, sent_count: int) -> None:
        campaign = self._campaigns.get(campaign_id)
        if campaign is not None:
            campaign.cooldown_at_count = sent_count

    async def reschedule_pending(self, campaign_id: str, scheduled_at: datetime) -> int:
        count = 0
        for msg in self._messages.values():
            if msg.campaign_id == campaign_id and msg.status == CampaignMessageStatus.PENDING:
                msg.scheduled_at = scheduled_at
                count += 1
        return count

    async def count_messages(self, campaign_id: str) -> dict[str, int]:
        counts = {s.value: 0 for s in CampaignMessageStatus}
        for msg in self._messages.values():
            if msg.campaign_id == campaign_id:
                counts[msg.status.value] += 1
        return counts

    # ── Deals ─────────────────────────────────────────────────

    async def get_deal(self, deal_id: str) -> Optional[Deal]:
        return _copy(self._deals.get(deal_id))

    async def save_deal(self, deal: Deal) -> Deal:
        self._deals[deal.id] = _copy(deal)
        return deal

    # ── Stage automations ─────────────────────────────────────

    async def save_stage_automation(self, automation: CRMStageAutomation) -> CRMStageAutomation:
        self._stage_automations[automation.id] = _copy(automation)
        return automation

    async def get_stage_automation(self, automation_id: str) -> Optional[CRMStageAutomation]:
        return _copy(self._stage_automations.get(automation_id))

    async def get_stage_automation_for_stage(self, stage_id: str) -> Optional[CRMStageAutomation]:
        for automation in self._stage_automations.values():
            if automation.stage_id == stage_id and automation.is_active:
                return _copy(automation)
        return None

    # ── Deal automations ──────────────────────────────────────

    async def create_deal_automation(self, automation: CRMDealAutomation) -> CRMDealAutomation:
        if not automation.is_terminal:
            if automation.deal_id in self._active_deal_automations:
                raise ConcurrencyViolation("deal_automation", automation.deal_id)
            self._active_deal_automations[automation.deal_id] = automation.id
        self._deal_automations[automation.id] = _copy(automation)
        return automation

    async def get_deal_automation(self, automation_id: str) -> Optional[CRMDealAutomation]:
        return _copy(self._deal_automations.get(automation_id))

    async def get_active_deal_automation(self, deal_id: str) -> Optional[CRMDealAutomation]:
        aid = self._active_deal_automations.get(deal_id)
        return await self.get_deal_automation(aid) if aid else None

    async def list_deal_automations(
        self, statuses: list[DealAutomationStatus],
        due_before: Optional[datetime] = None,
        conversation_id: Optional[str] = None,
    ) -> list[CRMDealAutomation]:
        found = [
            _copy(a) for a in self._deal_automations.values()
            if a.status in statuses
            and (due_before is None or (a.wait_until is not None and a.wait_until <= due_before))
            and (conversation_id is None or a.conversation_id == conversation_id)
        ]
        return sorted(found, key=lambda a: (a.created_at, a.id))

    async def save_deal_automation(self, automation: CRMDealAutomation) -> CRMDealAutomation:
        automation.updated_at = utcnow()
        owner = self._active_deal_automations.get(automation.deal_id)
        if automation.status in ACTIVE_DEAL_AUTOMATION_STATUSES:
            if owner and owner != automation.id:
                raise ConcurrencyViolation("deal_automation", automation.deal_id)
            self._active_deal_automations[automation.deal_id] = automation.id
        elif owner == automation.id:
            del self._active_deal_automations[automation.deal_id]
        self._deal_automations[automation.id] = _copy(automation)
        return automation

    # ── Automation log ────────────────────────────────────────

    async def append_automation_log(self, entry: CRMAutomationLog) -> None:
        self._logs.append(_copy(entry))

    async def list_automation_logs(self, deal_id: str) -> list[CRMAutomationLog]:
        return [_copy(e) for e in self._logs if e.deal_id == deal_id]

    # ── Utility ───────────────────────────────────────────────

    async def stats(self) -> dict[str, Any]:
        return {
            "backend": "memory",
            "flows": len(self._flows),
            "conversations": len(self._conversations),
            "active_sessions": len(self._active_sessions),
            "campaigns": len(self._campaigns),
            "campaign_messages": len(self._messages),
            "deal_automations": len(self._deal_automations),
            "active_deal_automations": len(self._active_deal_automations),
            "automation_logs": len(self._logs),
        }
