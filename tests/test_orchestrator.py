"""Integration tests for the inbound path and lifecycle of AutomationOrchestrator."""
import asyncio
from datetime import datetime, timezone

import pytest

from conftest import CONNECTION_ID, CONTACT_PHONE, ORG_ID, Clock, FakeLLM, build_flow
from config.settings import Settings
from core.orchestrator import AutomationOrchestrator
from job_queue.consumer import publish_inbound
from job_queue.message_queue import InMemoryMessageQueue
from models.schemas import ActivationMode, AttendanceStatus, InboundEvent, SessionStatus

JID = f"{CONTACT_PHONE}@s.whatsapp.net"


def inbound(text: str, jid: str = JID, connection_id: str = CONNECTION_ID) -> InboundEvent:
    return InboundEvent(connection_id=connection_id, remote_jid=jid, text=text, contact_name="Maria")


@pytest.fixture
def orchestrator(store, gateway) -> AutomationOrchestrator:
    return AutomationOrchestrator(store, gateway, Settings(), llm=FakeLLM())


@pytest.fixture
def trigger_menu_flow(menu_flow):
    return menu_flow.model_copy(update={"trigger_enabled": True, "trigger_keywords": ["menu"]})


class TestHandleInbound:
    @pytest.mark.asyncio
    async def test_group_messages_ignored(self, orchestrator, connection):
        result = await orchestrator.handle_inbound(inbound("menu", jid="120363025@g.us"))
        assert result == {"status": "ignored", "reason": "not_individual"}

    @pytest.mark.asyncio
    async def test_unknown_connection_ignored(self, orchestrator):
        result = await orchestrator.handle_inbound(inbound("menu", connection_id="conn-x"))
        assert result["reason"] == "unknown_connection"

    @pytest.mark.asyncio
    async def test_no_matching_trigger(self, orchestrator, store, connection, gateway):
        result = await orchestrator.handle_inbound(inbound("hello"))
        assert result["status"] == "no_match"
        assert gateway.sent == []
        conversation = await store.find_conversation(CONNECTION_ID, CONTACT_PHONE)
        assert conversation.contact_name == "Maria"
        assert result["conversation_id"] == conversation.id

    @pytest.mark.asyncio
    async def test_trigger_starts_then_reply_resumes(self, orchestrator, store, connection, gateway,
                                                     trigger_menu_flow):
        await store.save_flow(trigger_menu_flow)

        started = await orchestrator.handle_inbound(inbound("Menu"))
        assert started["status"] == "started"
        assert started["flow_id"] == trigger_menu_flow.id
        assert started["session_status"] == SessionStatus.ACTIVE.value
        assert "How can we help?" in gateway.texts()[0]

        resumed = await orchestrator.handle_inbound(inbound("1"))
        assert resumed["status"] == "resumed"
        assert resumed["session_id"] == started["session_id"]
        assert resumed["session_status"] == SessionStatus.COMPLETED.value
        assert gateway.texts()[1:] == ["Sales team here", "Bye Maria"]

    @pytest.mark.asyncio
    async def test_active_session_wins_over_trigger(self, orchestrator, store, connection, gateway,
                                                    trigger_menu_flow):
        await store.save_flow(trigger_menu_flow)
        await orchestrator.handle_inbound(inbound("menu"))

        result = await orchestrator.handle_inbound(inbound("menu"))
        assert result["status"] == "resumed"

    @pytest.mark.asyncio
    async def test_human_owned_conversation_not_automated(self, orchestrator, store, conversation, gateway,
                                                          trigger_menu_flow):
        await store.save_flow(trigger_menu_flow)
        conversation.attendance_status = AttendanceStatus.IN_SERVICE
        await store.save_conversation(conversation)

        result = await orchestrator.handle_inbound(inbound("menu"))
        assert result["status"] == "human"
        assert gateway.sent == []

    @pytest.mark.asyncio
    async def test_closed_conversation_reopens_on_trigger(self, orchestrator, store, conversation,
                                                          trigger_menu_flow):
        await store.save_flow(trigger_menu_flow)
        conversation.attendance_status = AttendanceStatus.CLOSED
        await store.save_conversation(conversation)

        result = await orchestrator.handle_inbound(inbound("menu"))
        assert result["status"] == "started"
        assert (await store.get_conversation(conversation.id)).attendance_status == AttendanceStatus.BOT

    @pytest.mark.asyncio
    async def test_broken_trigger_flow_hands_off(self, orchestrator, store, connection, gateway):
        await store.save_flow(build_flow(
            [("s1", "start"), ("s2", "start")], [],
            id="broken", trigger_enabled=True, trigger_keywords=["menu"],
        ))

        result = await orchestrator.handle_inbound(inbound("menu"))
        assert result["status"] == "configuration_error"
        assert "exactly one start node" in result["error"]
        conversation = await store.get_conversation(result["conversation_id"])
        assert conversation.attendance_status == AttendanceStatus.WAITING
        assert gateway.sent == []

    @pytest.mark.asyncio
    async def test_delay_node_wakes_from_ticker(self, store, gateway, connection):
        clock = Clock(datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc))
        orchestrator = AutomationOrchestrator(store, gateway, Settings(), llm=FakeLLM(), clock=clock)
        flow = build_flow(
            [("start", "start"), ("hello", "message", {"text": "One moment"}),
             ("wait", "delay", {"delay_seconds": 30}), ("end", "end", {"message": "Thanks for waiting"})],
            [("start", "hello"), ("hello", "wait"), ("wait", "end")],
            trigger_enabled=True, trigger_keywords=["wait"],
        )
        await store.save_flow(flow)

        assert (await orchestrator.handle_inbound(inbound("wait")))["status"] == "started"
        assert (await orchestrator.handle_inbound(inbound("still there?")))["status"] == "resumed"
        assert gateway.texts() == ["One moment"]

        clock.advance(seconds=30)
        assert await orchestrator.runner.resume_due() == 1
        assert gateway.texts() == ["One moment", "Thanks for waiting"]
        assert "flow_delays" in [t.name for t in orchestrator.tickers]

    @pytest.mark.asyncio
    async def test_pre_service_flow_greets_new_contacts_only(self, orchestrator, store, conversation,
                                                             gateway, menu_flow):
        await store.save_flow(menu_flow.model_copy(update={
            "trigger_enabled": True,
            "activation_mode": ActivationMode.PRE_SERVICE,
            "welcome_message": "Olá {{name}}!",
        }))
        conversation.attendance_status = AttendanceStatus.CLOSED
        await store.save_conversation(conversation)
        assert (await orchestrator.handle_inbound(inbound("bom dia")))["status"] == "no_match"

        conversation.attendance_status = AttendanceStatus.BOT
        await store.save_conversation(conversation)
        assert (await orchestrator.handle_inbound(inbound("bom dia")))["status"] == "started"
        assert gateway.texts()[0] == "Olá Maria!"


class TestControlSurface:
    @pytest.mark.asyncio
    async def test_manual_start_and_cancel(self, orchestrator, store, conversation, menu_flow):
        await store.save_flow(menu_flow)
        session = await orchestrator.start_flow(menu_flow.id, conversation.id, {"plan": "gold"})
        assert session.variables["plan"] == "gold"

        cancelled = await orchestrator.cancel_session(conversation.id)
        assert cancelled.status == SessionStatus.CANCELLED
        assert await orchestrator.cancel_session(conversation.id) is None

    @pytest.mark.asyncio
    async def test_publish_bumps_version(self, orchestrator, store, menu_flow):
        await store.save_flow(menu_flow)
        version = await orchestrator.publish_flow(menu_flow.id)
        assert version.version == menu_flow.version + 1

    @pytest.mark.asyncio
    async def test_unknown_campaign_action(self, orchestrator):
        with pytest.raises(ValueError):
            await orchestrator.control_campaign("camp-1", "explode")


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_queue_to_reply(self, store, gateway, connection, trigger_menu_flow):
        await store.save_flow(trigger_menu_flow)
        queue = InMemoryMessageQueue(promote_interval=60)
        orchestrator = AutomationOrchestrator(store, gateway, Settings(), llm=FakeLLM(), queue=queue)

        await orchestrator.start()
        assert all(t.running for t in orchestrator.tickers)
        await publish_inbound(inbound("menu"), queue)

        async def processed():
            while orchestrator.consumer.processed < 1:
                await asyncio.sleep(0.01)
        await asyncio.wait_for(processed(), 3.0)

        stats = await orchestrator.stats()
        await orchestrator.stop()

        assert stats["inbound_processed"] == 1
        assert "How can we help?" in gateway.texts()[0]
        assert not any(t.running for t in orchestrator.tickers)
        assert gateway.closed
