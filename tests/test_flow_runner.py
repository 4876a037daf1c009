"""Tests for FlowRunner: single-owner sessions, delivery, actions, handoff and delay wake-ups."""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from conftest import CONTACT_PHONE, Clock, build_flow
from config.settings import FlowConfig
from core.errors import ConfigurationError
from flows.engine import FlowExecutionEngine
from flows.runner import FlowRunner
from models.schemas import AttendanceStatus, SessionStatus

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
MENU_TEXT = "How can we help?\n\n1. Sales\n2. Support"


class TestStart:
    @pytest.mark.asyncio
    async def test_start_sends_first_step_and_persists(self, store, runner, gateway, conversation, menu_flow):
        await store.save_flow(menu_flow)
        session = await runner.start(menu_flow.id, conversation.id)

        assert gateway.texts() == [MENU_TEXT]
        assert gateway.sent[0].to == CONTACT_PHONE
        stored = await store.get_active_session(conversation.id)
        assert stored.id == session.id
        assert stored.current_node_id == "menu"
        assert stored.awaiting_input
        assert stored.variables["name"] == "Maria"

    @pytest.mark.asyncio
    async def test_concurrent_starts_create_one_session(self, store, runner, gateway, conversation, menu_flow):
        await store.save_flow(menu_flow)
        results = await asyncio.gather(
            runner.start(menu_flow.id, conversation.id),
            runner.start(menu_flow.id, conversation.id),
        )
        started = [r for r in results if r is not None]
        assert len(started) == 1
        assert results.count(None) == 1
        assert gateway.texts() == [MENU_TEXT]

    @pytest.mark.asyncio
    async def test_second_start_after_first_finishes(self, store, runner, conversation, menu_flow):
        await store.save_flow(menu_flow)
        await runner.start(menu_flow.id, conversation.id)
        await runner.resume(conversation.id, "1")
        assert await store.get_active_session(conversation.id) is None
        assert await runner.start(menu_flow.id, conversation.id) is not None

    @pytest.mark.asyncio
    async def test_unknown_conversation(self, store, runner, menu_flow):
        await store.save_flow(menu_flow)
        with pytest.raises(ConfigurationError):
            await runner.start(menu_flow.id, "missing")

    @pytest.mark.asyncio
    async def test_inactive_flow(self, store, runner, conversation, menu_flow):
        menu_flow.is_active = False
        await store.save_flow(menu_flow)
        with pytest.raises(ConfigurationError):
            await runner.start(menu_flow.id, conversation.id)

    @pytest.mark.asyncio
    async def test_extra_variables(self, store, runner, gateway, conversation):
        flow = build_flow([("start", "start"), ("end", "end", {"message": "Deal {{deal_title}}"})],
                          [("start", "end")])
        await store.save_flow(flow)
        session = await runner.start(flow.id, conversation.id, {"deal_title": "ACME"})
        assert gateway.texts() == ["Deal ACME"]
        assert session.status == SessionStatus.COMPLETED


class TestResume:
    @pytest.mark.asyncio
    async def test_reply_advances_to_completion(self, store, runner, gateway, conversation, menu_flow):
        await store.save_flow(menu_flow)
        await runner.start(menu_flow.id, conversation.id)
        session = await runner.resume(conversation.id, "Sales")

        assert gateway.texts() == [MENU_TEXT, "Sales team here", "Bye Maria"]
        assert session.status == SessionStatus.COMPLETED
        assert await store.get_active_session(conversation.id) is None

    @pytest.mark.asyncio
    async def test_no_active_session(self, runner, conversation):
        assert await runner.resume(conversation.id, "hello") is None

    @pytest.mark.asyncio
    async def test_flow_broken_after_start_fails_session(self, store, runner, conversation, menu_flow):
        await store.save_flow(menu_flow)
        await runner.start(menu_flow.id, conversation.id)

        broken = await store.get_flow(menu_flow.id)
        broken.edges.append(broken.edges[0].model_copy(update={"target_node_id": "ghost"}))
        broken.version += 1
        await store.save_flow(broken)

        session = await runner.resume(conversation.id, "1")
        assert session.status == SessionStatus.FAILED
        conv = await store.get_conversation(conversation.id)
        assert conv.attendance_status == AttendanceStatus.WAITING


class TestDeliveryFailure:
    @pytest.mark.asyncio
    async def test_failed_send_only_bumps_failure_count(self, store, runner, gateway, conversation, menu_flow):
        await store.save_flow(menu_flow)
        gateway.fail_all = True
        session = await runner.start(menu_flow.id, conversation.id)

        assert session.failure_count == 1
        stored = await store.get_active_session(conversation.id)
        assert stored.failure_count == 1
        assert stored.current_node_id == ""
        assert not stored.awaiting_input

    @pytest.mark.asyncio
    async def test_next_event_reruns_the_step(self, store, runner, gateway, conversation, menu_flow):
        await store.save_flow(menu_flow)
        gateway.fail_all = True
        await runner.start(menu_flow.id, conversation.id)

        gateway.fail_all = False
        session = await runner.resume(conversation.id, "hello")
        assert gateway.texts() == [MENU_TEXT]
        assert session.current_node_id == "menu"


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_stops_further_steps(self, store, runner, gateway, conversation, menu_flow):
        await store.save_flow(menu_flow)
        await runner.start(menu_flow.id, conversation.id)

        cancelled = await runner.cancel(conversation.id, reason="agent_took_over")
        assert cancelled.status == SessionStatus.CANCELLED
        assert not await runner.has_active_session(conversation.id)

        assert await runner.resume(conversation.id, "1") is None
        assert gateway.texts() == [MENU_TEXT]

    @pytest.mark.asyncio
    async def test_cancel_without_session(self, runner, conversation):
        assert await runner.cancel(conversation.id) is None


class TestConversationEffects:
    @pytest.mark.asyncio
    async def test_invalid_replies_hand_off_to_human(self, store, runner, gateway, conversation, menu_flow):
        await store.save_flow(menu_flow)
        await runner.start(menu_flow.id, conversation.id)
        for reply in ("x", "y", "z"):
            await runner.resume(conversation.id, reply)

        assert gateway.texts() == [MENU_TEXT] * 3
        conv = await store.get_conversation(conversation.id)
        assert conv.attendance_status == AttendanceStatus.WAITING
        assert await store.get_active_session(conversation.id) is None

    @pytest.mark.asyncio
    async def test_transfer_records_target(self, store, runner, conversation):
        flow = build_flow([("start", "start"), ("t", "transfer", {"to_user_id": "agent-7"})], [("start", "t")])
        await store.save_flow(flow)
        await runner.start(flow.id, conversation.id)
        conv = await store.get_conversation(conversation.id)
        assert conv.attendance_status == AttendanceStatus.WAITING
        assert conv.transferred_to == "agent-7"

    @pytest.mark.asyncio
    async def test_tag_actions_applied_once(self, store, runner, conversation):
        flow = build_flow(
            [("start", "start"),
             ("t1", "action", {"action_type": "add_tag", "tag": "lead"}),
             ("t2", "action", {"action_type": "add_tag", "tag": "lead"}),
             ("close", "action", {"action_type": "close_conversation"})],
            [("start", "t1"), ("t1", "t2"), ("t2", "close")],
        )
        await store.save_flow(flow)
        await runner.start(flow.id, conversation.id)
        conv = await store.get_conversation(conversation.id)
        assert conv.tags == ["lead"]
        assert conv.attendance_status == AttendanceStatus.CLOSED


class TestDelayedSessions:
    @pytest.fixture
    def clock(self):
        return Clock(NOW)

    @pytest.fixture
    def delayed_runner(self, store, resolver, gateway, clock):
        return FlowRunner(store, resolver, FlowExecutionEngine(FlowConfig(), clock=clock), gateway)

    @pytest.fixture
    def delay_flow(self):
        return build_flow(
            [("start", "start"), ("hello", "message", {"text": "One moment"}),
             ("wait", "delay", {"delay_seconds": 30}), ("end", "end", {"message": "Thanks for waiting"})],
            [("start", "hello"), ("hello", "wait"), ("wait", "end")],
        )

    @pytest.mark.asyncio
    async def test_resume_due_wakes_parked_session(self, store, delayed_runner, gateway, conversation,
                                                   clock, delay_flow):
        await store.save_flow(delay_flow)
        await delayed_runner.start(delay_flow.id, conversation.id)
        stored = await store.get_active_session(conversation.id)
        assert stored.resume_at == NOW + timedelta(seconds=30)
        assert await delayed_runner.resume_due() == 0

        clock.now = NOW + timedelta(seconds=31)
        assert await delayed_runner.resume_due() == 1

        assert gateway.texts() == ["One moment", "Thanks for waiting"]
        assert await store.get_active_session(conversation.id) is None

    @pytest.mark.asyncio
    async def test_cancelled_session_is_not_woken(self, store, delayed_runner, gateway, conversation,
                                                  clock, delay_flow):
        await store.save_flow(delay_flow)
        await delayed_runner.start(delay_flow.id, conversation.id)
        await delayed_runner.cancel(conversation.id)

        clock.now = NOW + timedelta(minutes=5)
        assert await delayed_runner.resume_due() == 0
        assert await delayed_runner.wake(conversation.id) is None
        assert gateway.texts() == ["One moment"]

    @pytest.mark.asyncio
    async def test_failed_wake_is_retried_next_tick(self, store, delayed_runner, gateway, conversation,
                                                    clock, delay_flow):
        await store.save_flow(delay_flow)
        await delayed_runner.start(delay_flow.id, conversation.id)
        clock.now = NOW + timedelta(seconds=31)
        gateway.fail_all = True
        await delayed_runner.resume_due()

        stored = await store.get_active_session(conversation.id)
        assert stored.failure_count == 1
        assert stored.current_node_id == "wait"

        gateway.fail_all = False
        assert await delayed_runner.resume_due() == 1
        assert gateway.texts()[-1] == "Thanks for waiting"
