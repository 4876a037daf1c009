"""
Abstract Automation Store — Interface for all storage backends.

Implementations:
  - SqlAutomationStore      (PostgreSQL / SQLite via SQLAlchemy)
  - InMemoryAutomationStore (dict-based, single-process, no persistence)

Both backends enforce the two single-owner invariants on insert and raise
ConcurrencyViolation instead of overwriting:
  - at most one active FlowSession per conversation
  - at most one non-terminal CRMDealAutomation per deal

Campaign counters only move through record_message_result(), which flips a
pending row and bumps the matching counter in one step, so
sent_count + failed_count always equals the number of non-pending rows.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from models.schemas import (
    Campaign, CampaignMessage, CampaignMessageStatus, CampaignStatus,
    Connection, Conversation, CRMAutomationLog, CRMDealAutomation,
    CRMStageAutomation, Deal, DealAutomationStatus, FlowDefinition,
    FlowSession, FlowVersion,
)


class BaseAutomationStore(ABC):
    """Interface that all automation store backends must implement."""

    # ── Connections ───────────────────────────────────────────

    @abstractmethod
    async def save_connection(self, connection: Connection) -> Connection:
        ...

    @abstractmethod
    async def get_connection(self, connection_id: str) -> Optional[Connection]:
        ...

    # ── Flows ─────────────────────────────────────────────────

    @abstractmethod
    async def get_flow(self, flow_id: str) -> Optional[FlowDefinition]:
        ...

    @abstractmethod
    async def save_flow(self, flow: FlowDefinition) -> FlowDefinition:
        ...

    @abstractmethod
    async def delete_flow(self, flow_id: str) -> bool:
        """Delete a flow with its versions and sessions."""
        ...

    @abstractmethod
    async def list_trigger_flows(self, organization_id: str) -> list[FlowDefinition]:
        """Active, trigger-enabled flows of one organization."""
        ...

    @abstractmethod
    async def save_flow_version(self, version: FlowVersion) -> FlowVersion:
        ...

    @abstractmethod
    async def get_flow_version(self, flow_id: str, version: int) -> Optional[FlowVersion]:
        ...

    @abstractmethod
    async def list_flow_versions(self, flow_id: str) -> list[FlowVersion]:
        ...

    # ── Conversations ─────────────────────────────────────────

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        ...

    @abstractmethod
    async def find_conversation(self, connection_id: str, contact_phone: str) -> Optional[Conversation]:
        ...

    @abstractmethod
    async def save_conversation(self, conversation: Conversation) -> Conversation:
        ...

    async def ensure_conversation(
        self, organization_id: str, connection_id: str,
        contact_phone: str, contact_name: str = "",
    ) -> Conversation:
        """Return the conversation for (connection, phone), creating it if missing."""
        conv = await self.find_conversation(connection_id, contact_phone)
        if conv:
            if contact_name and not conv.contact_name:
                conv.contact_name = contact_name
                await self.save_conversation(conv)
            return conv
        conv = Conversation(
            organization_id=organization_id,
            connection_id=connection_id,
            contact_phone=contact_phone,
            contact_name=contact_name,
        )
        return await self.save_conversation(conv)

    # ── Flow sessions ─────────────────────────────────────────

    @abstractmethod
    async def create_session(self, session: FlowSession) -> FlowSession:
        """Insert-or-fail. Raises ConcurrencyViolation if the conversation already has an active session."""
        ...

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[FlowSession]:
        ...

    @abstractmethod
    async def get_active_session(self, conversation_id: str) -> Optional[FlowSession]:
        ...

    @abstractmethod
    async def save_session(self, session: FlowSession) -> FlowSession:
        ...

    @abstractmethod
    async def increment_session_failure(self, session_id: str) -> int:
        """Bump failure_count without touching any other field. Returns the new value."""
        ...

    @abstractmethod
    async def list_due_sessions(self, before: datetime, limit: int = 100) -> list[FlowSession]:
        """Active sessions parked on a delay whose resume_at <= before, oldest first."""
        ...

    # ── Campaigns ─────────────────────────────────────────────

    @abstractmethod
    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        ...

    @abstractmethod
    async def save_campaign(self, campaign: Campaign) -> Campaign:
        """Persist campaign settings. Counters are never written through here."""
        ...

    @abstractmethod
    async def set_campaign_status(
        self, campaign_id: str, status: CampaignStatus,
        expected: Optional[list[CampaignStatus]] = None,
    ) -> bool:
        """Set status, optionally only when the current status is in `expected`."""
        ...

    @abstractmethod
    async def list_campaigns(self, statuses: list[CampaignStatus]) -> list[Campaign]:
        ...

    @abstractmethod
    async def add_campaign_messages(self, messages: list[CampaignMessage]) -> int:
        ...

    @abstractmethod
    async def list_pending_messages(
        self, campaign_id: str, due_before: Optional[datetime] = None, limit: int = 0,
    ) -> list[CampaignMessage]:
        """Pending rows ordered by (scheduled_at, id)."""
        ...

    @abstractmethod
    async def record_message_result(
        self, message_id: str, status: CampaignMessageStatus,
        error_message: str = "", sent_at: Optional[datetime] = None,
    ) -> bool:
        """
        Flip a pending row to sent/failed and bump the campaign counter.
        Also stamps the campaign's last_dispatch_at with sent_at.
        Returns False (and changes nothing) if the row is no longer pending.
        """
        ...

    @abstractmethod
    async def mark_cool_down(self, campaign_id: str, sent_count: int) -> None:
        """Remember that the cool-down due at sent_count has been served."""
        ...

    @abstractmethod
    async def reschedule_pending(self, campaign_id: str, scheduled_at: datetime) -> int:
        ...

    @abstractmethod
    async def count_messages(self, campaign_id: str) -> dict[str, int]:
        """Row counts per CampaignMessageStatus value."""
        ...

    # ── Deals ─────────────────────────────────────────────────

    @abstractmethod
    async def get_deal(self, deal_id: str) -> Optional[Deal]:
        ...

    @abstractmethod
    async def save_deal(self, deal: Deal) -> Deal:
        ...

    # ── Stage automations ─────────────────────────────────────

    @abstractmethod
    async def save_stage_automation(self, automation: CRMStageAutomation) -> CRMStageAutomation:
        ...

    @abstractmethod
    async def get_stage_automation(self, automation_id: str) -> Optional[CRMStageAutomation]:
        ...

    @abstractmethod
    async def get_stage_automation_for_stage(self, stage_id: str) -> Optional[CRMStageAutomation]:
        """Active automation configured for a stage, if any."""
        ...

    # ── Deal automations ──────────────────────────────────────

    @abstractmethod
    async def create_deal_automation(self, automation: CRMDealAutomation) -> CRMDealAutomation:
        """Insert-or-fail. Raises ConcurrencyViolation if the deal already has a non-terminal automation."""
        ...

    @abstractmethod
    async def get_deal_automation(self, automation_id: str) -> Optional[CRMDealAutomation]:
        ...

    @abstractmethod
    async def get_active_deal_automation(self, deal_id: str) -> Optional[CRMDealAutomation]:
        ...

    @abstractmethod
    async def list_deal_automations(
        self, statuses: list[DealAutomationStatus],
        due_before: Optional[datetime] = None,
        conversation_id: Optional[str] = None,
    ) -> list[CRMDealAutomation]:
        ...

    @abstractmethod
    async def save_deal_automation(self, automation: CRMDealAutomation) -> CRMDealAutomation:
        ...

    # ── Automation log ────────────────────────────────────────

    @abstractmethod
    async def append_automation_log(self, entry: CRMAutomationLog) -> None:
        ...

    @abstractmethod
    async def list_automation_logs(self, deal_id: str) -> list[CRMAutomationLog]:
        ...

    # ── Utility ───────────────────────────────────────────────

    async def stats(self) -> dict[str, Any]:
        """Return store statistics (optional, for monitoring)."""
        return {"backend": self.__class__.__name__}
