"""
Flow Execution Engine — advances one FlowSession against one event.

advance() is free of persistence: it takes a session and a validated graph
and returns the messages to send, the conversation actions to apply and
the next session state. The runner (flows/runner.py) owns locking,
sending and saving.

Node semantics:
  start        continue on the first edge
  message      emit (text / media / gallery), continue
  menu         emit numbered options and wait; on reply match by position
               (1..n) or label; a bad reply counts a failure and re-presents
               the menu; at transfer_after_failures the session is handed to
               a human without any further message
  input        emit prompt and wait; on reply validate and store
               variables[field_name], continue
  condition    first outgoing edge (insertion order) whose branch matches,
               else the else edge
  action       plan via ActionExecutor, continue
  transfer     emit optional message, end as transferred, hand off
  ai_response  ask the LLM, emit the reply; a self-loop edge keeps the
               session parked on the node (free chat)
  delay        park the session until resume_at (now + seconds) without
               blocking; the runner wakes it once due, and replies that arrive
               earlier are not buffered
  end          emit optional message, end as completed

A flow's welcome_message, when set, is emitted once on entering the start node.

Configuration errors end the session as failed and hand it to a human.
"""
from __future__ import annotations

import re
import structlog
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from config.settings import FlowConfig
from core.engine import LLMResponder
from core.errors import ConfigurationError
from flows.actions import ActionExecutor, ConversationAction
from flows.graph import ELSE_HANDLES, FlowGraph, GraphNode
from models.schemas import (
    AIResponseContent, ActionContent, ConditionContent, DelayContent, EndContent, FlowSession,
    InputContent, MenuContent, MessageContent, NodeType, OutboundMessage,
    SessionStatus, TransferContent, utcnow,
)
from utils.conditions import evaluate_conditions, render_template

logger = structlog.get_logger()

_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass
class Handoff:
    """Request to put a human in charge of the conversation."""
    reason: str
    transferred_to: str = ""
    detail: str = ""


@dataclass
class AdvanceResult:
    session: FlowSession
    messages: list[OutboundMessage] = field(default_factory=list)
    actions: list[ConversationAction] = field(default_factory=list)
    handoff: Optional[Handoff] = None
    noop: bool = False


@dataclass
class _Step:
    session: FlowSession
    graph: FlowGraph
    result: AdvanceResult
    input: Optional[str]

    def take_input(self) -> Optional[str]:
        text, self.input = self.input, None
        return text

    def emit(self, content: str = "", media_type: str = "text", media_url: str = ""):
        self.result.messages.append(OutboundMessage(
            connection_id=self.session.connection_id,
            to=self.session.contact_phone,
            content=content,
            media_type=media_type,
            media_url=media_url,
        ))


# Handler outcome: the next node id, or None to stop and wait for the next event
_Handler = Callable[[_Step, GraphNode], Awaitable[Optional[str]]]


def validate_input(kind: str, text: str) -> bool:
    text = text.strip()
    if kind == "number":
        try:
            float(text.replace(",", "."))
        except ValueError:
            return False
        return True
    if kind == "email":
        return bool(_EMAIL.match(text))
    if kind == "phone":
        return 8 <= len(re.sub(r"\D", "", text)) <= 15
    return bool(text)


def render_menu(content: MenuContent, variables: dict[str, str]) -> str:
    lines = [render_template(content.prompt, variables)]
    if content.options:
        lines.append("")
        lines.extend(
            f"{idx}. {render_template(opt.label, variables)}"
            for idx, opt in enumerate(content.options, start=1)
        )
    return "\n".join(lines)


def match_menu_option(content: MenuContent, text: str) -> Optional[int]:
    """Return the 0-based option index matched by position or label."""
    wanted = text.strip().lower()
    if not wanted:
        return None
    if wanted.isdigit():
        position = int(wanted)
        if 1 <= position <= len(content.options):
            return position - 1
    for idx, opt in enumerate(content.options):
        label = opt.label.strip().lower()
        if label and (label == wanted or (opt.value and opt.value.strip().lower() == wanted)):
            return idx
    for idx, opt in enumerate(content.options):
        label = opt.label.strip().lower()
        if label and label in wanted:
            return idx
    return None


class FlowExecutionEngine:
    """
    Advances sessions one event at a time.

    One handler per NodeType; construction fails if a node kind is left
    without a handler.
    """

    def __init__(
        self,
        config: Optional[FlowConfig] = None,
        llm: Optional[LLMResponder] = None,
        actions: Optional[ActionExecutor] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config or FlowConfig()
        self.llm = llm
        self.actions = actions or ActionExecutor()
        self.clock = clock
        self._handlers: dict[NodeType, _Handler] = {
            NodeType.START: self._on_start,
            NodeType.MESSAGE: self._on_message,
            NodeType.MENU: self._on_menu,
            NodeType.INPUT: self._on_input,
            NodeType.CONDITION: self._on_condition,
            NodeType.ACTION: self._on_action,
            NodeType.TRANSFER: self._on_transfer,
            NodeType.AI_RESPONSE: self._on_ai_response,
            NodeType.DELAY: self._on_delay,
            NodeType.END: self._on_end,
        }
        missing = set(NodeType) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for node types: {sorted(m.value for m in missing)}")

    # ── Public API ────────────────────────────────────────────

    async def advance(
        self, session: FlowSession, graph: FlowGraph, inbound_text: Optional[str] = None,
    ) -> AdvanceResult:
        """
        Advance `session` with an optional inbound text. A session that is
        no longer active is returned untouched with noop=True.
        """
        if not session.is_active or session.status != SessionStatus.ACTIVE:
            return AdvanceResult(session=session, noop=True)

        working = session.model_copy(deep=True)
        result = AdvanceResult(session=working)
        step = _Step(session=working, graph=graph, result=result, input=inbound_text)

        try:
            await self._run(step)
        except ConfigurationError as e:
            self._fail(step, e)

        working.last_interaction_at = self.clock()
        return result

    # ── Loop ──────────────────────────────────────────────────

    async def _run(self, step: _Step) -> None:
        session = step.session
        if not session.current_node_id:
            session.current_node_id = step.graph.start_node().node_id
            if step.graph.flow.welcome_message:
                step.emit(render_template(step.graph.flow.welcome_message, session.variables))

        steps = 0
        while session.is_active:
            steps += 1
            if steps > self.config.max_steps_per_advance:
                raise ConfigurationError(
                    f"Exceeded {self.config.max_steps_per_advance} steps in one advance",
                    session.flow_id, session.current_node_id,
                )
            node = step.graph.node(session.current_node_id)
            next_id = await self._handlers[node.type](step, node)
            if next_id is None:
                return
            session.current_node_id = next_id

    def _follow(self, step: _Step, node: GraphNode) -> Optional[str]:
        """Continue on the first outgoing edge; a dead end completes the session."""
        edge = step.graph.next_edge(node.node_id)
        if edge is None:
            self._complete(step)
            return None
        return edge.target_node_id

    def _complete(self, step: _Step) -> None:
        step.session.end(SessionStatus.COMPLETED)
        logger.info("flow_session_completed", session_id=step.session.id,
                    flow_id=step.session.flow_id, node_id=step.session.current_node_id)

    def _transfer(self, step: _Step, reason: str, target: str = "") -> None:
        session = step.session
        session.end(SessionStatus.TRANSFERRED)
        session.transferred_to = target
        step.result.handoff = Handoff(reason=reason, transferred_to=target)
        logger.info("flow_session_transferred", session_id=session.id,
                    flow_id=session.flow_id, reason=reason, to=target)

    def _fail(self, step: _Step, error: ConfigurationError) -> None:
        session = step.session
        session.end(SessionStatus.FAILED)
        step.result.handoff = Handoff(reason="configuration_error", detail=str(error))
        fallback = step.graph.flow.fallback_message
        if fallback:
            step.emit(render_template(fallback, session.variables))
        logger.error("flow_configuration_error", session_id=session.id,
                     flow_id=session.flow_id, node_id=error.node_id or session.current_node_id,
                     error=str(error))

    def _failure_threshold(self, step: _Step, content: MenuContent) -> int:
        return (
            content.transfer_after_failures
            or step.graph.flow.transfer_after_failures
            or self.config.default_transfer_after_failures
        )

    # ── Handlers ──────────────────────────────────────────────

    async def _on_start(self, step: _Step, node: GraphNode) -> Optional[str]:
        return self._follow(step, node)

    async def _on_message(self, step: _Step, node: GraphNode) -> Optional[str]:
        content: MessageContent = node.content
        variables = step.session.variables
        text = render_template(content.text, variables)
        caption = render_template(content.caption, variables) or text

        if content.media_type == "gallery":
            if text:
                step.emit(text)
            for image in content.gallery_images:
                step.emit(render_template(image.caption, variables), "image", image.url)
        elif content.media_type != "text" and content.media_url:
            step.emit(caption, content.media_type, render_template(content.media_url, variables))
        elif text:
            step.emit(text)
        return self._follow(step, node)

    async def _on_menu(self, step: _Step, node: GraphNode) -> Optional[str]:
        content: MenuContent = node.content
        session = step.session

        if not session.awaiting_input:
            step.emit(render_menu(content, session.variables))
            session.awaiting_input = True
            return None

        text = step.take_input()
        if text is None:
            return None

        idx = match_menu_option(content, text)
        if idx is None:
            session.failure_count += 1
            threshold = self._failure_threshold(step, content)
            logger.info("flow_menu_invalid_reply", session_id=session.id,
                        node_id=node.node_id, failures=session.failure_count, threshold=threshold)
            if session.failure_count >= threshold:
                self._transfer(step, "too_many_invalid_replies", content.transfer_to)
                return None
            step.emit(render_menu(content, session.variables))
            return None

        option = content.options[idx]
        session.variables[content.variable_name] = option.value or option.label
        session.failure_count = 0
        session.awaiting_input = False
        edge = step.graph.menu_edge(node.node_id, idx, option.label)
        if edge is None:
            raise ConfigurationError(f"Menu option {idx + 1} has no edge", session.flow_id, node.node_id)
        return edge.target_node_id

    async def _on_input(self, step: _Step, node: GraphNode) -> Optional[str]:
        content: InputContent = node.content
        session = step.session

        if not session.awaiting_input:
            if content.prompt:
                step.emit(render_template(content.prompt, session.variables))
            session.awaiting_input = True
            return None

        text = step.take_input()
        if text is None:
            return None

        if not validate_input(content.validation, text):
            session.failure_count += 1
            threshold = step.graph.flow.transfer_after_failures or self.config.default_transfer_after_failures
            if session.failure_count >= threshold:
                self._transfer(step, "too_many_invalid_replies")
                return None
            retry = content.retry_message or content.prompt
            if retry:
                step.emit(render_template(retry, session.variables))
            return None

        session.variables[content.field_name] = text.strip()
        session.failure_count = 0
        session.awaiting_input = False
        return self._follow(step, node)

    async def _on_condition(self, step: _Step, node: GraphNode) -> Optional[str]:
        content: ConditionContent = node.content
        variables = step.session.variables
        for edge in step.graph.outgoing(node.node_id):
            if edge.source_handle in ELSE_HANDLES:
                continue
            branch = content.branch_for(edge.source_handle)
            if branch and evaluate_conditions(branch.rules, variables, branch.logic):
                return edge.target_node_id
        edge = step.graph.else_edge(node.node_id)
        if edge is None:
            raise ConfigurationError("Condition node has no else edge", step.session.flow_id, node.node_id)
        return edge.target_node_id

    async def _on_action(self, step: _Step, node: GraphNode) -> Optional[str]:
        content: ActionContent = node.content
        messages, actions = self.actions.plan(node.node_id, content, step.session)
        step.result.messages.extend(messages)
        step.result.actions.extend(actions)
        return self._follow(step, node)

    async def _on_transfer(self, step: _Step, node: GraphNode) -> Optional[str]:
        content: TransferContent = node.content
        if content.message:
            step.emit(render_template(content.message, step.session.variables))
        self._transfer(step, "transfer_node", content.target)
        return None

    async def _on_ai_response(self, step: _Step, node: GraphNode) -> Optional[str]:
        content: AIResponseContent = node.content
        session = step.session
        edge = step.graph.next_edge(node.node_id)
        free_chat = edge is not None and edge.target_node_id == node.node_id

        text = step.take_input()
        if text is None and (free_chat or session.awaiting_input):
            session.awaiting_input = True
            return None
        if self.llm is None:
            raise ConfigurationError("AI node used but no LLM is configured", session.flow_id, node.node_id)

        reply = await self.llm.generate(
            history=session.context,
            variables=session.variables,
            user_message=text or "",
            extra_context=render_template(content.context, session.variables),
        )
        if not reply:
            reply = render_template(step.graph.flow.fallback_message, session.variables)
        if text:
            session.context.append({"role": "user", "content": text})
        if reply:
            session.context.append({"role": "assistant", "content": reply})
            step.emit(reply)
            if content.save_to_variable:
                session.variables[content.save_to_variable] = reply
        del session.context[:-self.config.ai_context_messages]

        if free_chat:
            session.awaiting_input = True
            return None
        session.awaiting_input = False
        if edge is None:
            self._complete(step)
            return None
        return edge.target_node_id

    async def _on_end(self, step: _Step, node: GraphNode) -> Optional[str]:
        content: EndContent = node.content
        if content.message:
            step.emit(render_template(content.message, step.session.variables))
        self._complete(step)
        return None

    async def _on_delay(self, step: _Step, node: GraphNode) -> Optional[str]:
        content: DelayContent = node.content
        session = step.session
        now = self.clock()

        if session.resume_at is None:
            if content.seconds <= 0:
                return self._follow(step, node)
            session.resume_at = now + timedelta(seconds=content.seconds)
            logger.info("flow_delay_parked", session_id=session.id, node_id=node.node_id,
                        resume_at=session.resume_at.isoformat())
            return None

        if now < session.resume_at:
            if step.take_input() is not None:
                logger.info("flow_delay_reply_dropped", session_id=session.id, node_id=node.node_id)
            return None

        session.resume_at = None
        return self._follow(step, node)
