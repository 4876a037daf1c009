"""
Trigger Matcher — picks the flow to start from an inbound free-text message.

Only consulted when the conversation has no active session. Keywords and
text are compared after trim + case-fold:

  exact        text == keyword
  contains     keyword in text
  starts_with  text.startswith(keyword)

A flow's activation_mode gates it before keywords are looked at:

  keywords        a keyword must match (no keywords → never matches)
  always          any text
  business_hours  only inside the flow's business hours
  outside_hours   only outside them
  pre_service     only while the conversation is still with the bot

Outside keywords mode, configured keywords still narrow the match.
Business hours are evaluated in the flow's own timezone.

Several matches resolve deterministically: trigger_priority desc, then
updated_at desc, then flow id asc.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Callable, Optional

from database.store_base import BaseAutomationStore
from models.schemas import (
    ActivationMode, AttendanceStatus, Conversation, FlowDefinition, MatchMode, utcnow,
)
from utils.schedule import within_business_hours

logger = structlog.get_logger()


def _fold(text: str) -> str:
    return text.strip().casefold()


def keyword_matches(text: str, keyword: str, mode: MatchMode) -> bool:
    text, keyword = _fold(text), _fold(keyword)
    if not text or not keyword:
        return False
    if mode == MatchMode.CONTAINS:
        return keyword in text
    if mode == MatchMode.STARTS_WITH:
        return text.startswith(keyword)
    return text == keyword


def is_activation_open(
    flow: FlowDefinition, now: datetime, conversation: Optional[Conversation] = None,
) -> bool:
    """Whether the flow's activation mode lets it start right now."""
    mode = flow.activation_mode
    if mode in (ActivationMode.BUSINESS_HOURS, ActivationMode.OUTSIDE_HOURS):
        inside = within_business_hours(
            now, flow.business_hours_start, flow.business_hours_end,
            flow.business_days, flow.timezone,
        )
        return inside if mode == ActivationMode.BUSINESS_HOURS else not inside
    if mode == ActivationMode.PRE_SERVICE:
        return conversation is None or conversation.attendance_status == AttendanceStatus.BOT
    return True


def flow_matches(
    flow: FlowDefinition,
    connection_id: str,
    text: str,
    now: Optional[datetime] = None,
    conversation: Optional[Conversation] = None,
) -> bool:
    if not (flow.is_active and flow.trigger_enabled):
        return False
    if flow.connection_ids and connection_id not in flow.connection_ids:
        return False
    if flow.activation_mode == ActivationMode.KEYWORDS and not flow.trigger_keywords:
        return False
    if not is_activation_open(flow, now or utcnow(), conversation):
        return False
    if not flow.trigger_keywords:
        return bool(text.strip())
    return any(keyword_matches(text, kw, flow.trigger_match_mode) for kw in flow.trigger_keywords)


class TriggerMatcher:
    def __init__(self, store: BaseAutomationStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    async def match(
        self,
        connection_id: str,
        text: str,
        organization_id: str,
        conversation: Optional[Conversation] = None,
    ) -> Optional[FlowDefinition]:
        if not text or not text.strip():
            return None
        now = self.clock()
        candidates = [
            f for f in await self.store.list_trigger_flows(organization_id)
            if flow_matches(f, connection_id, text, now, conversation)
        ]
        if not candidates:
            return None

        # Stable sorts, least significant key first
        candidates.sort(key=lambda f: f.id)
        candidates.sort(key=lambda f: f.updated_at, reverse=True)
        candidates.sort(key=lambda f: f.trigger_priority, reverse=True)
        chosen = candidates[0]
        logger.info("flow_trigger_matched", flow_id=chosen.id, connection_id=connection_id,
                    mode=chosen.trigger_match_mode.value, activation=chosen.activation_mode.value,
                    candidates=len(candidates))
        return chosen
