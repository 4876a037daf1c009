"""
Action nodes — side effects a flow can request.

  add_tag / remove_tag      tag the conversation
  close_conversation        attendance → closed
  set_variable              write a session variable
  external_notification     WhatsApp message to a third-party number

The engine only plans actions. Conversation changes are applied by the
runner after the step's messages went out and before the session is
persisted, so a crash in between re-runs the node. Every action here is
idempotent for that reason.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass

from core.errors import ConfigurationError
from models.schemas import (
    ActionContent, AttendanceStatus, Conversation, FlowSession, OutboundMessage,
)
from utils.conditions import render_template

logger = structlog.get_logger()


@dataclass(frozen=True)
class ConversationAction:
    action_type: str
    tag: str = ""


class ActionExecutor:
    CONVERSATION_ACTIONS = ("add_tag", "remove_tag", "close_conversation")
    SESSION_ACTIONS = ("set_variable", "external_notification")

    def plan(
        self, node_id: str, content: ActionContent, session: FlowSession,
    ) -> tuple[list[OutboundMessage], list[ConversationAction]]:
        """Resolve an action node into outbound messages and conversation changes."""
        kind = content.action_type
        variables = session.variables

        if kind in ("add_tag", "remove_tag"):
            tag = render_template(content.tag, variables).strip()
            if not tag:
                raise ConfigurationError(f"{kind} action without a tag", session.flow_id, node_id)
            return [], [ConversationAction(kind, tag)]

        if kind == "close_conversation":
            return [], [ConversationAction(kind)]

        if kind == "set_variable":
            if not content.variable:
                raise ConfigurationError("set_variable action without a variable", session.flow_id, node_id)
            variables[content.variable] = render_template(content.value, variables)
            return [], []

        if kind == "external_notification":
            phone = render_template(content.external_phone, variables).strip()
            text = render_template(content.external_message, variables)
            if not phone or not text:
                logger.warning("external_notification_skipped", flow_id=session.flow_id, node_id=node_id)
                return [], []
            return [OutboundMessage(connection_id=session.connection_id, to=phone, content=text)], []

        raise ConfigurationError(f"Unknown action type '{kind}'", session.flow_id, node_id)

    def apply(self, conversation: Conversation, actions: list[ConversationAction]) -> bool:
        """Apply conversation changes in order. Returns True if anything changed."""
        changed = False
        for action in actions:
            if action.action_type == "add_tag" and action.tag not in conversation.tags:
                conversation.tags.append(action.tag)
                changed = True
            elif action.action_type == "remove_tag" and action.tag in conversation.tags:
                conversation.tags.remove(action.tag)
                changed = True
            elif action.action_type == "close_conversation" and conversation.attendance_status != AttendanceStatus.CLOSED:
                conversation.attendance_status = AttendanceStatus.CLOSED
                changed = True
        if changed:
            logger.info("conversation_actions_applied", conversation_id=conversation.id,
                        actions=[a.action_type for a in actions])
        return changed
