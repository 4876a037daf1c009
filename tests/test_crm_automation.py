"""Tests for the CRM stage automation state machine."""
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from conftest import CONNECTION_ID, CONTACT_PHONE, ORG_ID, Clock, build_flow
from config.settings import AutomationConfig
from crm.automation import StageAutomationScheduler
from models.schemas import CRMStageAutomation, Deal, DealAutomationStatus, StageChangeEvent

T0 = datetime(2026, 5, 4, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock() -> Clock:
    return Clock(T0)


@pytest.fixture
def scheduler(store, runner, automation_config, clock) -> StageAutomationScheduler:
    return StageAutomationScheduler(store, runner, automation_config, clock=clock)


@pytest_asyncio.fixture
async def deal(store):
    await store.save_flow(build_flow(
        [("start", "start"), ("hello", "message", {"text": "Hi {{name}}, about {{deal_title}}"})],
        [("start", "hello")],
        id="flow-crm",
    ))
    deal = Deal(
        id="deal-1", organization_id=ORG_ID, funnel_id="funnel-1", stage_id="stage-new",
        title="ACME renewal", connection_id=CONNECTION_ID, contact_phone=CONTACT_PHONE,
        contact_name="Maria",
    )
    await store.save_deal(deal)
    return deal


async def add_stage(store, stage_id, **kwargs) -> CRMStageAutomation:
    kwargs.setdefault("flow_id", "flow-crm")
    kwargs.setdefault("wait_hours", 1)
    automation = CRMStageAutomation(id=f"auto-{stage_id}", organization_id=ORG_ID, stage_id=stage_id, **kwargs)
    await store.save_stage_automation(automation)
    return automation


def enter(stage_id: str, from_stage: str = "stage-new") -> StageChangeEvent:
    return StageChangeEvent(deal_id="deal-1", from_stage=from_stage, to_stage=stage_id)


class TestStageEntry:
    @pytest.mark.asyncio
    async def test_fires_flow_immediately(self, store, gateway, scheduler, deal):
        await add_stage(store, "stage-a", wait_hours=2)
        automation = await scheduler.on_stage_change(enter("stage-a"))

        assert automation.status == DealAutomationStatus.FLOW_SENT
        assert automation.flow_sent_at == T0
        assert automation.wait_until == T0 + timedelta(hours=2)
        assert automation.chain_depth == 0
        assert gateway.texts() == ["Hi Maria, about ACME renewal"]

        stored_deal = await store.get_deal("deal-1")
        assert stored_deal.stage_id == "stage-a"
        assert stored_deal.conversation_id == automation.conversation_id

        logs = await store.list_automation_logs("deal-1")
        assert [(l.from_status, l.to_status, l.event) for l in logs] == [
            ("", "pending", "created"),
            ("pending", "flow_sent", "flow_sent"),
        ]

    @pytest.mark.asyncio
    async def test_stage_without_automation(self, store, scheduler, deal):
        assert await scheduler.on_stage_change(enter("stage-x")) is None
        assert (await store.get_deal("deal-1")).stage_id == "stage-x"

    @pytest.mark.asyncio
    async def test_unknown_deal(self, scheduler):
        assert await scheduler.on_stage_change(StageChangeEvent(deal_id="nope", to_stage="s")) is None

    @pytest.mark.asyncio
    async def test_deferred_automation_fires_on_tick(self, store, gateway, scheduler, deal):
        await add_stage(store, "stage-a", execute_immediately=False)
        automation = await scheduler.on_stage_change(enter("stage-a"))
        assert automation.status == DealAutomationStatus.PENDING
        assert gateway.sent == []

        assert await scheduler.tick() == {"fired": 1, "armed": 0, "timed_out": 0}
        stored = await store.get_deal_automation(automation.id)
        assert stored.status == DealAutomationStatus.FLOW_SENT
        assert len(gateway.sent) == 1

    @pytest.mark.asyncio
    async def test_new_stage_supersedes_previous(self, store, scheduler, deal):
        await add_stage(store, "stage-a")
        await add_stage(store, "stage-b")
        first = await scheduler.on_stage_change(enter("stage-a"))
        second = await scheduler.on_stage_change(enter("stage-b", from_stage="stage-a"))

        assert (await store.get_deal_automation(first.id)).status == DealAutomationStatus.MOVED
        assert second.status == DealAutomationStatus.FLOW_SENT
        assert (await store.get_active_deal_automation("deal-1")).id == second.id
        superseded = [l for l in await store.list_automation_logs("deal-1") if l.event == "superseded"]
        assert superseded[0].automation_id == first.id
        assert superseded[0].details["reason"] == "stage_changed"


class TestFailures:
    @pytest.mark.asyncio
    async def test_busy_conversation_fails_automation(self, store, runner, scheduler, deal, conversation, menu_flow):
        await store.save_flow(menu_flow)
        await runner.start(menu_flow.id, conversation.id)
        await add_stage(store, "stage-a")

        automation = await scheduler.on_stage_change(enter("stage-a"))
        assert automation.status == DealAutomationStatus.FAILED
        assert "active flow session" in automation.error
        assert await store.get_active_deal_automation("deal-1") is None

    @pytest.mark.asyncio
    async def test_deal_without_contact_fails(self, store, scheduler, deal):
        await store.save_deal(deal.model_copy(update={"connection_id": "", "contact_phone": ""}))
        await add_stage(store, "stage-a")

        automation = await scheduler.on_stage_change(enter("stage-a"))
        assert automation.status == DealAutomationStatus.FAILED
        assert "no reachable contact" in automation.error

    @pytest.mark.asyncio
    async def test_missing_flow_fails(self, store, scheduler, deal):
        await add_stage(store, "stage-a", flow_id="ghost-flow")
        automation = await scheduler.on_stage_change(enter("stage-a"))
        assert automation.status == DealAutomationStatus.FAILED


class TestReplies:
    @pytest.mark.asyncio
    async def test_reply_within_window(self, store, scheduler, deal, clock):
        await add_stage(store, "stage-a")
        automation = await scheduler.on_stage_change(enter("stage-a"))

        clock.advance(minutes=30)
        assert await scheduler.on_contact_reply(automation.conversation_id) == 1
        stored = await store.get_deal_automation(automation.id)
        assert stored.status == DealAutomationStatus.RESPONDED
        assert stored.responded_at == T0 + timedelta(minutes=30)

        clock.advance(hours=2)
        assert await scheduler.tick() == {"fired": 0, "armed": 0, "timed_out": 0}
        assert (await store.get_deal("deal-1")).stage_id == "stage-a"

    @pytest.mark.asyncio
    async def test_reply_after_deadline_is_ignored(self, store, scheduler, deal, clock):
        await add_stage(store, "stage-a")
        automation = await scheduler.on_stage_change(enter("stage-a"))
        await scheduler.tick()

        late = T0 + timedelta(hours=1, seconds=1)
        assert await scheduler.on_contact_reply(automation.conversation_id, at=late) == 0
        stored = await store.get_deal_automation(automation.id)
        assert stored.status == DealAutomationStatus.WAITING

    @pytest.mark.asyncio
    async def test_reply_from_unrelated_conversation(self, scheduler):
        assert await scheduler.on_contact_reply("conv-unknown") == 0


class TestTimeouts:
    @pytest.mark.asyncio
    async def test_timeout_moves_to_fallback_stage(self, store, scheduler, deal, clock):
        await add_stage(store, "stage-a", fallback_funnel_id="funnel-lost", fallback_stage_id="stage-lost")
        automation = await scheduler.on_stage_change(enter("stage-a"))

        clock.advance(hours=2)
        assert await scheduler.tick() == {"fired": 0, "armed": 1, "timed_out": 1}

        stored = await store.get_deal_automation(automation.id)
        assert stored.status == DealAutomationStatus.MOVED
        moved = await store.get_deal("deal-1")
        assert (moved.funnel_id, moved.stage_id) == ("funnel-lost", "stage-lost")
        events = [l.event for l in await store.list_automation_logs("deal-1")]
        assert events == ["created", "flow_sent", "timer_armed", "timed_out"]

    @pytest.mark.asyncio
    async def test_next_stage_preferred_over_fallback(self, store, scheduler, deal, clock):
        await add_stage(store, "stage-a", next_stage_id="stage-b", fallback_stage_id="stage-lost")
        await scheduler.on_stage_change(enter("stage-a"))

        clock.advance(hours=2)
        await scheduler.tick()
        moved = await store.get_deal("deal-1")
        assert (moved.funnel_id, moved.stage_id) == ("funnel-1", "stage-b")

    @pytest.mark.asyncio
    async def test_not_due_yet(self, store, scheduler, deal, clock):
        await add_stage(store, "stage-a")
        automation = await scheduler.on_stage_change(enter("stage-a"))

        clock.advance(minutes=59)
        assert await scheduler.tick() == {"fired": 0, "armed": 1, "timed_out": 0}
        assert (await store.get_deal_automation(automation.id)).status == DealAutomationStatus.WAITING

    @pytest.mark.asyncio
    async def test_no_target_expires(self, store, scheduler, deal, clock):
        await add_stage(store, "stage-a")
        automation = await scheduler.on_stage_change(enter("stage-a"))

        clock.advance(hours=2)
        await scheduler.tick()
        assert (await store.get_deal_automation(automation.id)).status == DealAutomationStatus.EXPIRED
        assert (await store.get_deal("deal-1")).stage_id == "stage-a"

    @pytest.mark.asyncio
    async def test_chain_stops_at_max_depth(self, store, runner, deal, clock):
        scheduler = StageAutomationScheduler(store, runner, AutomationConfig(max_chain_depth=1), clock=clock)
        await add_stage(store, "stage-a", wait_hours=0, next_stage_id="stage-b")
        await add_stage(store, "stage-b", wait_hours=0, next_stage_id="stage-a")

        first = await scheduler.on_stage_change(enter("stage-a"))
        await scheduler.tick()
        second = await store.get_active_deal_automation("deal-1")
        assert second.stage_id == "stage-b"
        assert second.chain_depth == 1
        assert (await store.get_deal_automation(first.id)).status == DealAutomationStatus.MOVED

        await scheduler.tick()
        assert await store.get_active_deal_automation("deal-1") is None
        assert (await store.get_deal("deal-1")).stage_id == "stage-a"
        logs = await store.list_automation_logs("deal-1")
        assert logs[-1].event == "chain_depth_exceeded"
        assert logs[-1].details["depth"] == 2
