"""
Orchestrator — wires the automation engine together and owns its lifecycle.

Architecture:
  Inbound:   webhook → queue → consumer (pool keyed by contact)
             → handle_inbound(): ensure conversation → CRM reply hook
             → resume the active flow session, or match a trigger and start one
  Delays:    Ticker → FlowRunner.resume_due() re-enters sessions parked on a
             delay node once their resume_at has passed

  Campaigns: Ticker → CampaignScheduler.tick() → pool keyed by campaign
             → CampaignDispatcher.run()

  CRM:       stage change (API) → StageAutomationScheduler.on_stage_change()
             Ticker → StageAutomationScheduler.tick() (fire / arm / time out)

The orchestrator holds no business rules of its own. Flows, campaigns and
stage automations are data in the store.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from campaigns.dispatcher import CampaignDispatcher
from campaigns.scheduler import CampaignScheduler
from channels.base import MessagingGateway
from channels.whatsapp_adapter import is_individual_jid, phone_from_jid
from config.settings import Settings, get_settings
from core.engine import LLMResponder
from core.errors import ConfigurationError
from crm.automation import StageAutomationScheduler
from database.store_base import BaseAutomationStore
from flows.engine import FlowExecutionEngine
from flows.graph import FlowGraphResolver
from flows.publishing import publish_flow
from flows.runner import FlowRunner
from flows.triggers import TriggerMatcher
from job_queue.consumer import InboundEventConsumer
from job_queue.message_queue import MessageQueue
from job_queue.workers import KeyedWorkerPool, Ticker
from models.schemas import (
    AttendanceStatus, Campaign, CRMDealAutomation, FlowSession, FlowVersion,
    InboundEvent, StageChangeEvent, utcnow,
)

logger = structlog.get_logger()

# Attendance states in which a human owns the conversation
_HUMAN_OWNED = {AttendanceStatus.WAITING, AttendanceStatus.IN_SERVICE}


class AutomationOrchestrator:
    """
    Usage:
        orchestrator = AutomationOrchestrator(store, gateway, queue=queue)
        await orchestrator.start()
        await orchestrator.handle_inbound(event)
        await orchestrator.stop()
    """

    def __init__(
        self,
        store: BaseAutomationStore,
        gateway: MessagingGateway,
        settings: Optional[Settings] = None,
        llm: Optional[LLMResponder] = None,
        queue: Optional[MessageQueue] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.gateway = gateway
        self.queue = queue

        self.resolver = FlowGraphResolver(store)
        self.engine = FlowExecutionEngine(
            self.settings.flows, llm=llm or LLMResponder(self.settings.llm), clock=clock,
        )
        self.runner = FlowRunner(store, self.resolver, self.engine, gateway)
        self.triggers = TriggerMatcher(store, clock=clock)

        self.campaign_pool = KeyedWorkerPool(self.settings.workers.concurrency, name="campaigns")
        self.dispatcher = CampaignDispatcher(store, gateway, self.settings.campaigns, sleep=sleep, clock=clock)
        self.campaigns = CampaignScheduler(store, self.dispatcher, self.campaign_pool,
                                           self.settings.campaigns, clock=clock)
        self.crm = StageAutomationScheduler(store, self.runner, self.settings.automations, clock=clock)

        self.consumer: Optional[InboundEventConsumer] = None
        if queue is not None:
            self.consumer = InboundEventConsumer(
                self.handle_inbound,
                queue,
                KeyedWorkerPool(self.settings.queue.consumer_concurrency, name="inbound"),
                consumer_group=self.settings.queue.consumer_group,
            )
        self.tickers = [
            Ticker("campaigns", self.campaigns.tick, self.settings.campaigns.tick_interval),
            Ticker("crm_automations", self.crm.tick, self.settings.automations.tick_interval),
            Ticker("flow_delays", self.runner.resume_due, self.settings.flows.delay_tick_interval),
        ]
        self._started = False

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self):
        if self._started:
            return
        if self.queue is not None:
            await self.queue.connect()
            await self.consumer.start_background()
        for ticker in self.tickers:
            ticker.start()
        self._started = True
        logger.info("orchestrator_started", tickers=[t.name for t in self.tickers],
                    queue=type(self.queue).__name__ if self.queue else None)

    async def stop(self):
        if not self._started:
            return
        for ticker in self.tickers:
            await ticker.stop()
        if self.consumer is not None:
            await self.consumer.stop()
        await self.campaign_pool.stop()
        if self.queue is not None:
            await self.queue.close()
        await self.gateway.close()
        self._started = False
        logger.info("orchestrator_stopped")

    # ══════════════════════════════════════════════════════════
    #  INBOUND — Message received from a contact
    # ══════════════════════════════════════════════════════════

    async def handle_inbound(self, event: InboundEvent) -> dict[str, Any]:
        """
        Main entry point for every inbound WhatsApp event.

        1. Resolve connection → organization, ensure the conversation
        2. Tell the CRM scheduler the contact replied
        3. Active session → resume it with the text
        4. Otherwise, unless a human owns the conversation → trigger match + start
        """
        if not is_individual_jid(event.remote_jid):
            return {"status": "ignored", "reason": "not_individual"}

        connection = await self.store.get_connection(event.connection_id)
        if connection is None or not connection.is_active:
            logger.warning("inbound_unknown_connection", connection_id=event.connection_id)
            return {"status": "ignored", "reason": "unknown_connection"}

        phone = phone_from_jid(event.remote_jid)
        conversation = await self.store.ensure_conversation(
            connection.organization_id, connection.id, phone, event.contact_name,
        )
        logger.info("inbound_message", conversation_id=conversation.id,
                    connection_id=connection.id, content=event.text[:100])

        responded = await self.crm.on_contact_reply(conversation.id, event.timestamp)

        if await self.runner.has_active_session(conversation.id):
            session = await self.runner.resume(conversation.id, event.text)
            return self._result("resumed", conversation.id, session, crm_responded=responded)

        if conversation.attendance_status in _HUMAN_OWNED:
            return {"status": "human", "conversation_id": conversation.id, "crm_responded": responded}

        flow = await self.triggers.match(connection.id, event.text, connection.organization_id, conversation)
        if flow is None:
            return {"status": "no_match", "conversation_id": conversation.id, "crm_responded": responded}

        if conversation.attendance_status == AttendanceStatus.CLOSED:
            conversation.attendance_status = AttendanceStatus.BOT
            await self.store.save_conversation(conversation)

        try:
            session = await self.runner.start(flow.id, conversation.id)
        except ConfigurationError as e:
            logger.error("flow_trigger_start_failed", flow_id=flow.id,
                         conversation_id=conversation.id, error=str(e))
            conversation.attendance_status = AttendanceStatus.WAITING
            await self.store.save_conversation(conversation)
            return {"status": "configuration_error", "conversation_id": conversation.id, "error": str(e)}

        if session is None:
            # Lost the race to a concurrent start; the winner owns the conversation
            session = await self.runner.resume(conversation.id, event.text)
            return self._result("resumed", conversation.id, session, crm_responded=responded)
        return self._result("started", conversation.id, session, flow_id=flow.id, crm_responded=responded)

    @staticmethod
    def _result(status: str, conversation_id: str, session: Optional[FlowSession], **extra) -> dict[str, Any]:
        return {
            "status": status,
            "conversation_id": conversation_id,
            "session_id": session.id if session else None,
            "session_status": session.status.value if session else None,
            **extra,
        }

    # ══════════════════════════════════════════════════════════
    #  FLOWS — manual start / cancel / publish
    # ══════════════════════════════════════════════════════════

    async def start_flow(
        self, flow_id: str, conversation_id: str, variables: Optional[dict[str, str]] = None,
    ) -> Optional[FlowSession]:
        return await self.runner.start(flow_id, conversation_id, variables)

    async def cancel_session(self, conversation_id: str, reason: str = "manual") -> Optional[FlowSession]:
        return await self.runner.cancel(conversation_id, reason)

    async def publish_flow(self, flow_id: str) -> FlowVersion:
        return await publish_flow(self.store, flow_id, self.resolver)

    # ══════════════════════════════════════════════════════════
    #  CAMPAIGNS
    # ══════════════════════════════════════════════════════════

    async def create_campaign(self, campaign: Campaign, recipients: list[dict[str, Any]]) -> Campaign:
        return await self.campaigns.create_campaign(campaign, recipients)

    async def control_campaign(self, campaign_id: str, action: str) -> bool:
        handlers = {
            "start": self.campaigns.start,
            "pause": self.campaigns.pause,
            "resume": self.campaigns.resume,
            "cancel": self.campaigns.cancel,
        }
        if action not in handlers:
            raise ValueError(f"Unknown campaign action '{action}'")
        changed = await handlers[action](campaign_id)
        if changed and action in ("start", "resume"):
            self.campaigns.submit(campaign_id)
        return changed

    async def campaign_progress(self, campaign_id: str) -> Optional[dict[str, Any]]:
        return await self.campaigns.progress(campaign_id)

    # ══════════════════════════════════════════════════════════
    #  CRM
    # ══════════════════════════════════════════════════════════

    async def on_stage_change(self, event: StageChangeEvent) -> Optional[CRMDealAutomation]:
        return await self.crm.on_stage_change(event)

    async def stats(self) -> dict[str, Any]:
        return {
            "store": await self.store.stats(),
            "campaign_pool": {
                "pending": self.campaign_pool.pending,
                "completed": self.campaign_pool.completed,
                "failed": self.campaign_pool.failed,
            },
            "inbound_processed": self.consumer.processed if self.consumer else 0,
            "tickers": {t.name: {"running": t.running, "ticks": t.ticks} for t in self.tickers},
        }
