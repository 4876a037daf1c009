"""
Flow Runner — the only writer of FlowSession rows.

Per conversation, under one lock:
  1. load the active session (a cancelled session is inactive, so a
     cancel is observed before any further step)
  2. engine.advance()
  3. send the produced messages in order
  4. apply conversation actions / handoff, then persist the session

Sessions parked on a delay node are re-entered by resume_due(), driven by
a ticker, under the same lock.

Delivery is at-least-once: if the process dies between 3 and 4, the next
event re-runs the same node and its messages go out again. A failed send
leaves the session as it was, except failure_count + 1.
"""
from __future__ import annotations

import structlog
from typing import Optional

from channels.base import GatewayError, MessagingGateway, normalize_gateway_error
from core.errors import ConcurrencyViolation, ConfigurationError
from database.store_base import BaseAutomationStore
from flows.actions import ActionExecutor
from flows.engine import AdvanceResult, FlowExecutionEngine, Handoff
from flows.graph import FlowGraph, FlowGraphResolver
from job_queue.workers import KeyedLocks
from models.schemas import (
    AttendanceStatus, Conversation, FlowSession, SessionStatus,
)

logger = structlog.get_logger()


class FlowRunner:
    def __init__(
        self,
        store: BaseAutomationStore,
        resolver: FlowGraphResolver,
        engine: FlowExecutionEngine,
        gateway: MessagingGateway,
        locks: Optional[KeyedLocks] = None,
    ):
        self.store = store
        self.resolver = resolver
        self.engine = engine
        self.gateway = gateway
        self.locks = locks or KeyedLocks()
        self.actions: ActionExecutor = engine.actions

    # ── Public API ────────────────────────────────────────────

    async def start(
        self,
        flow_id: str,
        conversation_id: str,
        variables: Optional[dict[str, str]] = None,
    ) -> Optional[FlowSession]:
        """
        Start `flow_id` for a conversation. Returns None when another session
        already owns the conversation.
        """
        async with self.locks.hold(conversation_id):
            conversation = await self.store.get_conversation(conversation_id)
            if conversation is None:
                raise ConfigurationError(f"Conversation '{conversation_id}' not found", flow_id)
            graph = await self.resolver.load(flow_id)
            if not graph.flow.is_active:
                raise ConfigurationError(f"Flow '{flow_id}' is inactive", flow_id)

            session = FlowSession(
                organization_id=conversation.organization_id,
                flow_id=flow_id,
                conversation_id=conversation.id,
                connection_id=conversation.connection_id,
                contact_phone=conversation.contact_phone,
                variables={
                    "name": conversation.contact_name,
                    "phone": conversation.contact_phone,
                    **(variables or {}),
                },
            )
            try:
                await self.store.create_session(session)
            except ConcurrencyViolation:
                logger.info("flow_start_skipped_active_session",
                            flow_id=flow_id, conversation_id=conversation_id)
                return None

            logger.info("flow_session_started", session_id=session.id,
                        flow_id=flow_id, conversation_id=conversation_id)
            return await self._step(session, graph, conversation, None)

    async def resume(self, conversation_id: str, text: str) -> Optional[FlowSession]:
        """Feed an inbound text to the conversation's active session, if any."""
        async with self.locks.hold(conversation_id):
            session = await self.store.get_active_session(conversation_id)
            if session is None:
                return None
            conversation = await self.store.get_conversation(conversation_id)
            try:
                graph = await self.resolver.load(session.flow_id)
            except ConfigurationError as e:
                return await self._fail_unloadable(session, conversation, e)
            return await self._step(session, graph, conversation, text)

    async def wake(self, conversation_id: str) -> Optional[FlowSession]:
        """Re-enter a session parked on a delay node once its resume_at has passed."""
        async with self.locks.hold(conversation_id):
            session = await self.store.get_active_session(conversation_id)
            if session is None or session.resume_at is None or session.resume_at > self.engine.clock():
                return None
            conversation = await self.store.get_conversation(conversation_id)
            try:
                graph = await self.resolver.load(session.flow_id)
            except ConfigurationError as e:
                return await self._fail_unloadable(session, conversation, e)
            logger.info("flow_session_woken", session_id=session.id, node_id=session.current_node_id)
            return await self._step(session, graph, conversation, None)

    async def resume_due(self) -> int:
        """Wake every session whose delay has elapsed. Returns how many advanced."""
        woken = 0
        for session in await self.store.list_due_sessions(self.engine.clock()):
            if await self.wake(session.conversation_id) is not None:
                woken += 1
        return woken

    async def cancel(self, conversation_id: str, reason: str = "manual") -> Optional[FlowSession]:
        """Stop automation for a conversation (a human takes over)."""
        async with self.locks.hold(conversation_id):
            session = await self.store.get_active_session(conversation_id)
            if session is None:
                return None
            session.end(SessionStatus.CANCELLED)
            await self.store.save_session(session)
            logger.info("flow_session_cancelled", session_id=session.id,
                        conversation_id=conversation_id, reason=reason)
            return session

    async def has_active_session(self, conversation_id: str) -> bool:
        return await self.store.get_active_session(conversation_id) is not None

    # ── Internals ─────────────────────────────────────────────

    async def _step(
        self,
        session: FlowSession,
        graph: FlowGraph,
        conversation: Optional[Conversation],
        text: Optional[str],
    ) -> FlowSession:
        result = await self.engine.advance(session, graph, text)
        if result.noop:
            return session

        try:
            for message in result.messages:
                await self.gateway.send(message)
        except GatewayError as e:
            failures = await self.store.increment_session_failure(session.id)
            logger.warning("flow_delivery_failed", session_id=session.id,
                           node_id=session.current_node_id, failures=failures,
                           error=normalize_gateway_error(str(e)))
            session.failure_count = failures
            return session

        await self._commit(result, conversation)
        return result.session

    async def _commit(self, result: AdvanceResult, conversation: Optional[Conversation]) -> None:
        if conversation is not None:
            changed = self.actions.apply(conversation, result.actions)
            if result.handoff is not None:
                self._hand_off(conversation, result.handoff)
                changed = True
            if changed:
                await self.store.save_conversation(conversation)
        await self.store.save_session(result.session)

    @staticmethod
    def _hand_off(conversation: Conversation, handoff: Handoff) -> None:
        if conversation.attendance_status != AttendanceStatus.CLOSED:
            conversation.attendance_status = AttendanceStatus.WAITING
        if handoff.transferred_to:
            conversation.transferred_to = handoff.transferred_to
        logger.info("conversation_handed_off", conversation_id=conversation.id,
                    reason=handoff.reason, to=handoff.transferred_to)

    async def _fail_unloadable(
        self, session: FlowSession, conversation: Optional[Conversation], error: ConfigurationError,
    ) -> FlowSession:
        session.end(SessionStatus.FAILED)
        logger.error("flow_configuration_error", session_id=session.id,
                     flow_id=session.flow_id, error=str(error))
        result = AdvanceResult(
            session=session,
            handoff=Handoff(reason="configuration_error", detail=str(error)),
        )
        await self._commit(result, conversation)
        return session
