"""
CRM Stage Automation Scheduler — fire a flow when a deal enters a stage,
wait for the contact to reply, fall back on timeout.

State machine (CRMDealAutomation.status):

    pending ──fire──▶ flow_sent ──tick──▶ waiting
       │                 │  │                │
       │                 │  └─reply──▶ responded ◀──reply──┤
       │                 └──────timeout──────┬─────────────┘
       │                                     ▼
       │                        moved (next / fallback stage)
       │                        expired (no stage to move to)
       └──────────── failed (from any non-terminal state) ──────

  - a reply only counts while now <= wait_until
  - a new stage change supersedes the deal's previous non-terminal
    automation (moved, reason stage_changed)
  - moving the deal on timeout re-enters the stage logic for the
    destination stage with chain_depth + 1; past max_chain_depth the chain
    stops (logged, no automation created)
  - every transition appends a CRMAutomationLog row

All mutations for one deal run under that deal's lock.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from config.settings import AutomationConfig
from core.errors import ConcurrencyViolation, ConfigurationError
from database.store_base import BaseAutomationStore
from flows.runner import FlowRunner
from job_queue.workers import KeyedLocks
from models.schemas import (
    CRMAutomationLog, CRMDealAutomation, CRMStageAutomation, Deal,
    DealAutomationStatus as S, StageChangeEvent, utcnow,
)

logger = structlog.get_logger()


ALLOWED_TRANSITIONS: dict[S, set[S]] = {
    S.PENDING: {S.FLOW_SENT, S.MOVED, S.FAILED},
    S.FLOW_SENT: {S.WAITING, S.RESPONDED, S.MOVED, S.EXPIRED, S.FAILED},
    S.WAITING: {S.RESPONDED, S.MOVED, S.EXPIRED, S.FAILED},
    S.RESPONDED: set(),
    S.MOVED: set(),
    S.EXPIRED: set(),
    S.FAILED: set(),
}


class StageAutomationScheduler:
    def __init__(
        self,
        store: BaseAutomationStore,
        runner: FlowRunner,
        config: Optional[AutomationConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.runner = runner
        self.config = config or AutomationConfig()
        self.clock = clock
        self.locks = KeyedLocks()

    # ── Entry points ──────────────────────────────────────────

    async def on_stage_change(self, event: StageChangeEvent) -> Optional[CRMDealAutomation]:
        """A deal entered a stage (pipeline UI / API)."""
        async with self.locks.hold(event.deal_id):
            return await self._enter_stage(event, depth=0)

    async def on_contact_reply(self, conversation_id: str, at: Optional[datetime] = None) -> int:
        """The contact wrote in. Returns how many automations moved to responded."""
        at = at or self.clock()
        waiting = await self.store.list_deal_automations(
            [S.FLOW_SENT, S.WAITING], conversation_id=conversation_id,
        )
        responded = 0
        for candidate in waiting:
            async with self.locks.hold(candidate.deal_id):
                automation = await self.store.get_deal_automation(candidate.id)
                if automation is None or automation.status not in (S.FLOW_SENT, S.WAITING):
                    continue
                if automation.wait_until and at > automation.wait_until:
                    continue
                automation.responded_at = at
                if await self._transition(automation, S.RESPONDED, "contact_replied"):
                    responded += 1
        return responded

    async def tick(self) -> dict[str, int]:
        """
        One scheduler pass:
          1. fire pending automations (execute_immediately = false)
          2. arm timers: flow_sent → waiting
          3. time out waiting automations past wait_until
        Units for different deals run concurrently.
        """
        now = self.clock()
        pending = await self.store.list_deal_automations([S.PENDING])
        flow_sent = await self.store.list_deal_automations([S.FLOW_SENT])

        fired = await self._gather(pending, self._fire_pending)
        armed = await self._gather(flow_sent, self._arm)
        due = await self.store.list_deal_automations([S.WAITING], due_before=now)
        timed_out = await self._gather(due, self._time_out)

        stats = {"fired": fired, "armed": armed, "timed_out": timed_out}
        if any(stats.values()):
            logger.info("crm_automation_tick", **stats)
        return stats

    # ── Stage entry ───────────────────────────────────────────

    async def _enter_stage(self, event: StageChangeEvent, depth: int) -> Optional[CRMDealAutomation]:
        deal = await self.store.get_deal(event.deal_id)
        if deal is None:
            logger.warning("crm_deal_not_found", deal_id=event.deal_id)
            return None
        if deal.stage_id != event.to_stage:
            deal.stage_id = event.to_stage
            await self.store.save_deal(deal)

        previous = await self.store.get_active_deal_automation(deal.id)
        if previous is not None:
            await self._transition(previous, S.MOVED, "superseded",
                                   {"reason": "stage_changed", "to_stage": event.to_stage})

        stage_config = await self.store.get_stage_automation_for_stage(event.to_stage)
        if stage_config is None:
            return None

        if depth > self.config.max_chain_depth:
            await self._log(deal, None, "", "", "chain_depth_exceeded",
                            {"stage_id": event.to_stage, "depth": depth,
                             "max_chain_depth": self.config.max_chain_depth})
            logger.error("crm_automation_chain_stopped", deal_id=deal.id,
                         stage_id=event.to_stage, depth=depth)
            return None

        automation = CRMDealAutomation(
            organization_id=deal.organization_id,
            deal_id=deal.id,
            stage_automation_id=stage_config.id,
            stage_id=event.to_stage,
            conversation_id=deal.conversation_id,
            chain_depth=depth,
        )
        try:
            await self.store.create_deal_automation(automation)
        except ConcurrencyViolation:
            logger.info("crm_automation_already_active", deal_id=deal.id)
            return None

        await self._log(deal, automation, "", S.PENDING.value, "created",
                        {"stage_id": event.to_stage, "from_stage": event.from_stage, "depth": depth})
        if stage_config.execute_immediately:
            await self._fire(automation, stage_config, deal)
        return automation

    async def _fire(self, automation: CRMDealAutomation, stage_config: CRMStageAutomation, deal: Deal) -> bool:
        try:
            conversation_id = await self._conversation_for(deal)
            session = await self.runner.start(
                stage_config.flow_id, conversation_id,
                variables={"deal_title": deal.title, "stage_id": automation.stage_id},
            )
        except ConfigurationError as e:
            await self._fail(automation, str(e))
            return False
        if session is None:
            await self._fail(automation, "Conversation already has an active flow session")
            return False

        now = self.clock()
        automation.flow_session_id = session.id
        automation.conversation_id = conversation_id
        automation.flow_sent_at = now
        automation.wait_until = now + timedelta(hours=stage_config.wait_hours)
        return await self._transition(automation, S.FLOW_SENT, "flow_sent",
                                      {"flow_id": stage_config.flow_id, "session_id": session.id,
                                       "wait_until": automation.wait_until.isoformat()})

    async def _conversation_for(self, deal: Deal) -> str:
        if deal.conversation_id:
            if await self.store.get_conversation(deal.conversation_id):
                return deal.conversation_id
        if not (deal.connection_id and deal.contact_phone):
            raise ConfigurationError(f"Deal '{deal.id}' has no reachable contact")
        conversation = await self.store.ensure_conversation(
            deal.organization_id, deal.connection_id, deal.contact_phone, deal.contact_name,
        )
        if deal.conversation_id != conversation.id:
            deal.conversation_id = conversation.id
            await self.store.save_deal(deal)
        return conversation.id

    # ── Tick units ────────────────────────────────────────────

    async def _gather(self, automations: list[CRMDealAutomation], unit) -> int:
        results = await asyncio.gather(*(self._guarded(a, unit) for a in automations))
        return sum(1 for r in results if r)

    async def _guarded(self, candidate: CRMDealAutomation, unit) -> bool:
        async with self.locks.hold(candidate.deal_id):
            automation = await self.store.get_deal_automation(candidate.id)
            if automation is None or automation.status != candidate.status:
                return False
            try:
                return await unit(automation)
            except Exception as e:
                logger.error("crm_automation_unit_failed", automation_id=automation.id,
                             deal_id=automation.deal_id, error=str(e), exc_info=True)
                await self._fail(automation, str(e))
                return False

    async def _fire_pending(self, automation: CRMDealAutomation) -> bool:
        stage_config = await self.store.get_stage_automation(automation.stage_automation_id)
        deal = await self.store.get_deal(automation.deal_id)
        if stage_config is None or not stage_config.is_active or deal is None:
            await self._fail(automation, "Stage automation or deal no longer exists")
            return False
        return await self._fire(automation, stage_config, deal)

    async def _arm(self, automation: CRMDealAutomation) -> bool:
        return await self._transition(automation, S.WAITING, "timer_armed",
                                      {"wait_until": automation.wait_until.isoformat() if automation.wait_until else None})

    async def _time_out(self, automation: CRMDealAutomation) -> bool:
        stage_config = await self.store.get_stage_automation(automation.stage_automation_id)
        deal = await self.store.get_deal(automation.deal_id)
        if stage_config is None or deal is None:
            await self._fail(automation, "Stage automation or deal no longer exists")
            return False

        if stage_config.next_stage_id:
            target_stage, target_funnel = stage_config.next_stage_id, ""
        else:
            target_stage, target_funnel = stage_config.fallback_stage_id, stage_config.fallback_funnel_id
        if not target_stage:
            return await self._transition(automation, S.EXPIRED, "timed_out", {"reason": "no_target_stage"})

        from_stage = deal.stage_id
        moved = await self._transition(automation, S.MOVED, "timed_out",
                                       {"from_stage": from_stage, "to_stage": target_stage,
                                        "to_funnel": target_funnel})
        if not moved:
            return False

        deal.stage_id = target_stage
        if target_funnel:
            deal.funnel_id = target_funnel
        await self.store.save_deal(deal)
        logger.info("crm_deal_moved", deal_id=deal.id, from_stage=from_stage,
                    to_stage=target_stage, funnel_id=deal.funnel_id)

        await self._enter_stage(
            StageChangeEvent(deal_id=deal.id, from_stage=from_stage, to_stage=target_stage),
            depth=automation.chain_depth + 1,
        )
        return True

    # ── Transitions & audit ───────────────────────────────────

    async def _transition(
        self, automation: CRMDealAutomation, target: S, event: str,
        details: Optional[dict[str, Any]] = None,
    ) -> bool:
        source = automation.status
        if target not in ALLOWED_TRANSITIONS[source]:
            logger.warning("crm_automation_transition_rejected", automation_id=automation.id,
                           from_status=source.value, to_status=target.value, trigger=event)
            return False
        automation.status = target
        await self.store.save_deal_automation(automation)
        await self._log(None, automation, source.value, target.value, event, details or {})
        logger.info("crm_automation_transition", automation_id=automation.id,
                    deal_id=automation.deal_id, from_status=source.value,
                    to_status=target.value, trigger=event)
        return True

    async def _fail(self, automation: CRMDealAutomation, error: str) -> None:
        automation.error = error[:1000]
        await self._transition(automation, S.FAILED, "failed", {"error": automation.error})

    async def _log(
        self, deal: Optional[Deal], automation: Optional[CRMDealAutomation],
        from_status: str, to_status: str, event: str, details: dict[str, Any],
    ) -> None:
        organization_id = automation.organization_id if automation else deal.organization_id
        deal_id = automation.deal_id if automation else deal.id
        await self.store.append_automation_log(CRMAutomationLog(
            organization_id=organization_id,
            deal_id=deal_id,
            automation_id=automation.id if automation else "",
            from_status=from_status,
            to_status=to_status,
            event=event,
            details=details,
            created_at=self.clock(),
        ))
