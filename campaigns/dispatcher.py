"""
Campaign Dispatcher — paced bulk sends for one running campaign.

One run() is one dispatch cycle:
  - the due pending rows are fetched once and, with random_order, shuffled
    once with a seeded RNG (shuffle_seed, else the campaign id)
  - between consecutive sends: sleep uniform(min_delay, max_delay); after
    every pause_after_messages successful sends the cool-down
    (pause_duration) replaces that delay
  - pacing state (last_dispatch_at, cooldown_at_count) lives on the campaign,
    so the gap before a cycle's first send counts the time since the previous
    cycle's last send, and a resume after pause only waits out what is left
  - each pacing checkpoint re-reads the campaign: paused / cancelled stops
    the cycle, leaving the remaining rows pending
  - outside the date/time window the remaining rows are rescheduled to the
    next opening (never failed)
  - a failed send marks only that row failed; the cycle goes on
  - once no pending rows remain the campaign is completed

sleep, clock and rng are injectable so pacing is testable without waiting.
"""
from __future__ import annotations

import asyncio
import random
import structlog
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional
from zoneinfo import ZoneInfo

from channels.base import GatewayError, MessagingGateway, normalize_gateway_error
from config.settings import CampaignConfig
from core.errors import ConfigurationError
from database.store_base import BaseAutomationStore
from models.schemas import (
    Campaign, CampaignMessage, CampaignMessageStatus, CampaignStatus,
    OutboundMessage, TemplateItem, utcnow,
)
from utils.conditions import render_template
from utils.schedule import time_in_window

logger = structlog.get_logger()

NO_CONTENT_ERROR = "Template has no content"


@dataclass
class DispatchStats:
    campaign_id: str
    processed: int = 0
    sent: int = 0
    failed: int = 0
    rescheduled_to: Optional[datetime] = None
    stopped: str = ""              # why the cycle ended early, "" when it ran through
    completed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "campaign_id": self.campaign_id,
            "processed": self.processed,
            "sent": self.sent,
            "failed": self.failed,
            "rescheduled_to": self.rescheduled_to.isoformat() if self.rescheduled_to else None,
            "stopped": self.stopped,
            "completed": self.completed,
        }


# ──────────────────────────────────────────────────────────────
#  Send window
# ──────────────────────────────────────────────────────────────

def _tz(campaign: Campaign) -> ZoneInfo:
    return ZoneInfo(campaign.timezone or "UTC")


def in_send_window(campaign: Campaign, now: datetime) -> bool:
    local = now.astimezone(_tz(campaign))
    if campaign.start_date and local.date() < campaign.start_date:
        return False
    if campaign.end_date and local.date() > campaign.end_date:
        return False
    return time_in_window(local.time(), campaign.start_time, campaign.end_time)


def next_window_opening(campaign: Campaign, now: datetime) -> Optional[datetime]:
    """
    `now` when inside the window, else the next moment the window opens.
    None when the window never opens again (past end_date).
    """
    if in_send_window(campaign, now):
        return now
    tz = _tz(campaign)
    local = now.astimezone(tz)
    day: date = max(local.date(), campaign.start_date or local.date())
    opens_at = campaign.start_time or time.min
    for _ in range(2):
        candidate = datetime.combine(day, opens_at, tzinfo=tz)
        if candidate > local:
            if campaign.end_date and candidate.date() > campaign.end_date:
                return None
            return candidate.astimezone(timezone.utc)
        day += timedelta(days=1)
    return None


# ──────────────────────────────────────────────────────────────
#  Dispatcher
# ──────────────────────────────────────────────────────────────

class CampaignDispatcher:
    def __init__(
        self,
        store: BaseAutomationStore,
        gateway: MessagingGateway,
        config: Optional[CampaignConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.config = config or CampaignConfig()
        self.sleep = sleep
        self.clock = clock
        self.rng = rng or random.Random()

    async def run(self, campaign_id: str) -> DispatchStats:
        stats = DispatchStats(campaign_id=campaign_id)
        campaign = await self.store.get_campaign(campaign_id)
        if campaign is None or campaign.status != CampaignStatus.RUNNING:
            stats.stopped = "not_running"
            return stats

        try:
            items = self._template_items(campaign)
        except ConfigurationError as e:
            await self._fail_campaign(campaign, str(e), stats)
            return stats

        now = self.clock()
        if not await self._window_open(campaign, now, stats):
            return stats

        rows = await self.store.list_pending_messages(
            campaign_id, due_before=now, limit=self.config.batch_limit,
        )
        if campaign.random_order:
            seed = campaign.shuffle_seed if campaign.shuffle_seed is not None else campaign.id
            random.Random(seed).shuffle(rows)

        logger.info("campaign_cycle_started", campaign_id=campaign_id, recipients=len(rows),
                    random_order=campaign.random_order)

        last_at = campaign.last_dispatch_at
        sent_total = campaign.sent_count
        cooled_at = campaign.cooldown_at_count
        for idx, row in enumerate(rows):
            if last_at is not None:
                cooling = self._cool_down_due(campaign, sent_total, cooled_at)
                if cooling:
                    gap = campaign.pause_duration
                    logger.info("campaign_cool_down", campaign_id=campaign_id,
                                seconds=gap, after=sent_total)
                else:
                    gap = self.rng.uniform(campaign.min_delay, campaign.max_delay)
                # Time already spent since the previous send, possibly in an earlier cycle
                remaining = gap - (self.clock() - last_at).total_seconds()
                if remaining > 0:
                    await self.sleep(remaining)

                # Pacing checkpoint
                current = await self.store.get_campaign(campaign_id)
                if current is None or current.status != CampaignStatus.RUNNING:
                    stats.stopped = current.status.value if current else "deleted"
                    logger.info("campaign_cycle_interrupted", campaign_id=campaign_id,
                                reason=stats.stopped, remaining=len(rows) - idx)
                    return stats
                if not await self._window_open(campaign, self.clock(), stats):
                    return stats
                if cooling:
                    cooled_at = sent_total
                    await self.store.mark_cool_down(campaign_id, sent_total)

            ok, last_at = await self._send_row(campaign, row, items)
            if ok:
                sent_total += 1
                stats.sent += 1
            else:
                stats.failed += 1
            stats.processed += 1

        await self._maybe_complete(campaign_id, stats)
        logger.info("campaign_cycle_finished", **stats.to_dict())
        return stats

    # ── Helpers ───────────────────────────────────────────────

    @staticmethod
    def _cool_down_due(campaign: Campaign, sent_total: int, cooled_at: int) -> bool:
        every = campaign.pause_after_messages
        return bool(every) and sent_total > 0 and sent_total % every == 0 and cooled_at != sent_total

    @staticmethod
    def _template_items(campaign: Campaign) -> list[TemplateItem]:
        items = [i for i in campaign.template.items if i.content.strip() or i.media_url]
        if not items:
            raise ConfigurationError(NO_CONTENT_ERROR)
        return items

    async def _window_open(self, campaign: Campaign, now: datetime, stats: DispatchStats) -> bool:
        opening = next_window_opening(campaign, now)
        if opening == now:
            return True
        if opening is None:
            stats.stopped = "window_closed"
            logger.warning("campaign_window_expired", campaign_id=campaign.id,
                           end_date=str(campaign.end_date))
            return False
        await self.store.reschedule_pending(campaign.id, opening)
        stats.stopped = "outside_window"
        stats.rescheduled_to = opening
        logger.info("campaign_rescheduled", campaign_id=campaign.id, until=opening.isoformat())
        return False

    async def _send_row(
        self, campaign: Campaign, row: CampaignMessage, items: list[TemplateItem],
    ) -> tuple[bool, datetime]:
        variables = {"name": "", "phone": row.phone, **{k: str(v) for k, v in row.contact_data.items()}}
        first_error = ""
        for idx, item in enumerate(items):
            if idx > 0:
                await self.sleep(self.config.item_gap_seconds)
            message = OutboundMessage(
                connection_id=campaign.connection_id,
                to=row.phone,
                content=render_template(item.content, variables),
                media_type=item.type,
                media_url=item.media_url,
            )
            try:
                await self.gateway.send(message)
            except GatewayError as e:
                if idx == 0:
                    first_error = normalize_gateway_error(str(e))
                    break
                logger.warning("campaign_item_failed", campaign_id=campaign.id,
                               message_id=row.id, item=idx, error=str(e))

        at = self.clock()
        if first_error:
            await self.store.record_message_result(row.id, CampaignMessageStatus.FAILED, first_error, at)
            logger.info("campaign_message_failed", campaign_id=campaign.id,
                        message_id=row.id, phone=row.phone, error=first_error)
            return False, at

        await self.store.record_message_result(row.id, CampaignMessageStatus.SENT, "", at)
        logger.info("campaign_message_sent", campaign_id=campaign.id,
                    message_id=row.id, items=len(items))
        return True, at

    async def _fail_campaign(self, campaign: Campaign, error: str, stats: DispatchStats) -> None:
        rows = await self.store.list_pending_messages(campaign.id)
        for row in rows:
            if await self.store.record_message_result(
                row.id, CampaignMessageStatus.FAILED, error, self.clock(),
            ):
                stats.failed += 1
                stats.processed += 1
        await self.store.set_campaign_status(campaign.id, CampaignStatus.FAILED, expected=[CampaignStatus.RUNNING])
        stats.stopped = "configuration_error"
        logger.error("campaign_configuration_error", campaign_id=campaign.id,
                     error=error, failed_rows=stats.failed)

    async def _maybe_complete(self, campaign_id: str, stats: DispatchStats) -> None:
        counts = await self.store.count_messages(campaign_id)
        if counts.get(CampaignMessageStatus.PENDING.value, 0) == 0:
            stats.completed = await self.store.set_campaign_status(
                campaign_id, CampaignStatus.COMPLETED, expected=[CampaignStatus.RUNNING],
            )
            if stats.completed:
                logger.info("campaign_completed", campaign_id=campaign_id,
                            sent=counts.get("sent", 0), failed=counts.get("failed", 0))
