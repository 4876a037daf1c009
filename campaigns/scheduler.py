"""
Campaign Scheduler — campaign control plus the periodic tick.

tick():
  1. auto-start `pending` campaigns that have at least one due message
  2. submit every `running` campaign to the worker pool as one
     de-duplicated work unit (a campaign still being dispatched is skipped,
     so is one whose window can never open again, past its end_date)

Control operations are plain status transitions; the dispatcher observes
them at its next pacing checkpoint.
"""
from __future__ import annotations

import structlog
from datetime import datetime, time
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo

from campaigns.dispatcher import CampaignDispatcher, DispatchStats, next_window_opening
from config.settings import CampaignConfig
from database.store_base import BaseAutomationStore
from job_queue.workers import KeyedWorkerPool
from models.schemas import (
    Campaign, CampaignMessage, CampaignMessageStatus, CampaignStatus, utcnow,
)

logger = structlog.get_logger()

_TRANSITIONS: dict[str, tuple[list[CampaignStatus], CampaignStatus]] = {
    "pause": ([CampaignStatus.PENDING, CampaignStatus.RUNNING], CampaignStatus.PAUSED),
    "resume": ([CampaignStatus.PAUSED], CampaignStatus.RUNNING),
    "cancel": ([CampaignStatus.PENDING, CampaignStatus.RUNNING, CampaignStatus.PAUSED], CampaignStatus.CANCELLED),
    "start": ([CampaignStatus.PENDING], CampaignStatus.RUNNING),
}


class CampaignScheduler:
    def __init__(
        self,
        store: BaseAutomationStore,
        dispatcher: CampaignDispatcher,
        pool: KeyedWorkerPool,
        config: Optional[CampaignConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.pool = pool
        self.config = config or CampaignConfig()
        self.clock = clock

    # ── Tick ──────────────────────────────────────────────────

    async def tick(self) -> dict[str, int]:
        now = self.clock()
        started = 0
        for campaign in await self.store.list_campaigns([CampaignStatus.PENDING]):
            due = await self.store.list_pending_messages(campaign.id, due_before=now, limit=1)
            if due and await self.store.set_campaign_status(
                campaign.id, CampaignStatus.RUNNING, expected=[CampaignStatus.PENDING],
            ):
                started += 1
                logger.info("campaign_auto_started", campaign_id=campaign.id, name=campaign.name)

        submitted = 0
        for campaign in await self.store.list_campaigns([CampaignStatus.RUNNING]):
            if next_window_opening(campaign, now) is None:
                # Past end_date: rows stay pending, nothing left to dispatch
                continue
            if self.submit(campaign.id):
                submitted += 1
        if started or submitted:
            logger.info("campaign_tick", started=started, submitted=submitted)
        return {"started": started, "submitted": submitted}

    def submit(self, campaign_id: str) -> bool:
        task = self.pool.submit_unique(f"campaign:{campaign_id}", lambda: self.dispatcher.run(campaign_id))
        return task is not None

    async def run_now(self, campaign_id: str) -> DispatchStats:
        """Run one dispatch cycle inline (manual trigger / tests)."""
        return await self.dispatcher.run(campaign_id)

    # ── Control ───────────────────────────────────────────────

    async def create_campaign(self, campaign: Campaign, recipients: list[dict[str, Any]]) -> Campaign:
        """
        Persist a campaign and one pending message per recipient.
        Each recipient dict needs "phone"; everything else becomes template data.
        """
        if not campaign.min_delay and not campaign.max_delay:
            campaign.min_delay = self.config.default_min_delay
            campaign.max_delay = self.config.default_max_delay
        if campaign.max_delay < campaign.min_delay:
            campaign.min_delay, campaign.max_delay = campaign.max_delay, campaign.min_delay

        await self.store.save_campaign(campaign)
        scheduled_at = self._start_moment(campaign)
        messages = [
            CampaignMessage(
                campaign_id=campaign.id,
                contact_id=str(r.get("contact_id", "")),
                phone=str(r["phone"]),
                contact_data={k: v for k, v in r.items() if k not in ("phone", "contact_id")},
                scheduled_at=scheduled_at,
            )
            for r in recipients if r.get("phone")
        ]
        await self.store.add_campaign_messages(messages)
        logger.info("campaign_created", campaign_id=campaign.id, recipients=len(messages),
                    scheduled_at=scheduled_at.isoformat())
        return campaign

    def _start_moment(self, campaign: Campaign) -> datetime:
        if not campaign.start_date:
            return self.clock()
        tz = ZoneInfo(campaign.timezone or "UTC")
        start = datetime.combine(campaign.start_date, campaign.start_time or time.min, tzinfo=tz)
        return max(start.astimezone(self.clock().tzinfo), self.clock())

    async def pause(self, campaign_id: str) -> bool:
        return await self._transition(campaign_id, "pause")

    async def resume(self, campaign_id: str) -> bool:
        return await self._transition(campaign_id, "resume")

    async def cancel(self, campaign_id: str) -> bool:
        return await self._transition(campaign_id, "cancel")

    async def start(self, campaign_id: str) -> bool:
        return await self._transition(campaign_id, "start")

    async def _transition(self, campaign_id: str, action: str) -> bool:
        expected, target = _TRANSITIONS[action]
        changed = await self.store.set_campaign_status(campaign_id, target, expected=expected)
        if changed:
            logger.info("campaign_status_changed", campaign_id=campaign_id, action=action, status=target.value)
        else:
            logger.info("campaign_transition_rejected", campaign_id=campaign_id, action=action)
        return changed

    async def progress(self, campaign_id: str) -> Optional[dict[str, Any]]:
        campaign = await self.store.get_campaign(campaign_id)
        if campaign is None:
            return None
        counts = await self.store.count_messages(campaign_id)
        total = sum(counts.values())
        done = total - counts.get(CampaignMessageStatus.PENDING.value, 0)
        return {
            "campaign_id": campaign_id,
            "status": campaign.status.value,
            "total": total,
            "pending": counts.get(CampaignMessageStatus.PENDING.value, 0),
            "sent_count": campaign.sent_count,
            "failed_count": campaign.failed_count,
            "percent": round(100 * done / total, 1) if total else 0.0,
        }
