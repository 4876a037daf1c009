"""
Core data models for the automation engine.
These are the universal types shared across all modules.

Node `content` is decoded once into a typed payload per node kind
(see NODE_CONTENT_TYPES); raw JSON only exists at the persistence boundary.
"""
from __future__ import annotations

import uuid
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class NodeType(str, Enum):
    START = "start"
    MESSAGE = "message"
    MENU = "menu"
    INPUT = "input"
    CONDITION = "condition"
    ACTION = "action"
    TRANSFER = "transfer"
    AI_RESPONSE = "ai_response"
    DELAY = "delay"
    END = "end"


class FlowKind(str, Enum):
    FLOW = "flow"
    CHATBOT = "chatbot"


class MatchMode(str, Enum):
    EXACT = "exact"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"


class ActivationMode(str, Enum):
    """When a trigger flow may start from an inbound message."""
    KEYWORDS = "keywords"              # a trigger keyword must match
    ALWAYS = "always"
    BUSINESS_HOURS = "business_hours"
    OUTSIDE_HOURS = "outside_hours"
    PRE_SERVICE = "pre_service"        # only before any human has served the conversation


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    TRANSFERRED = "transferred"
    FAILED = "failed"


class AttendanceStatus(str, Enum):
    BOT = "bot"
    WAITING = "waiting"            # waiting for a human agent
    IN_SERVICE = "in_service"
    CLOSED = "closed"


class CampaignStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class CampaignMessageStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class DealAutomationStatus(str, Enum):
    PENDING = "pending"
    FLOW_SENT = "flow_sent"
    WAITING = "waiting"
    RESPONDED = "responded"
    MOVED = "moved"
    EXPIRED = "expired"            # timed out with no stage to move to
    FAILED = "failed"


ACTIVE_DEAL_AUTOMATION_STATUSES = (
    DealAutomationStatus.PENDING,
    DealAutomationStatus.FLOW_SENT,
    DealAutomationStatus.WAITING,
)


# ──────────────────────────────────────────────────────────────
#  Node payloads — one typed model per node kind
# ──────────────────────────────────────────────────────────────

class _Content(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class GalleryImage(_Content):
    url: str
    caption: str = ""


class StartContent(_Content):
    pass


class MessageContent(_Content):
    text: str = Field("", validation_alias=AliasChoices("text", "message"))
    media_type: str = "text"                 # text | image | video | audio | document | gallery
    media_url: str = ""
    caption: str = ""
    gallery_images: list[GalleryImage] = []


class MenuOption(_Content):
    label: str = Field("", validation_alias=AliasChoices("label", "text"))
    value: str = ""


class MenuContent(_Content):
    prompt: str = Field("Select an option:", validation_alias=AliasChoices("prompt", "text", "message"))
    options: list[MenuOption] = []
    variable_name: str = "option"
    transfer_after_failures: Optional[int] = None
    transfer_to: str = ""


class InputContent(_Content):
    prompt: str = Field("", validation_alias=AliasChoices("prompt", "text", "message"))
    field_name: str = Field("answer", validation_alias=AliasChoices("field_name", "variable_name", "variable"))
    validation: str = "text"                 # text | number | email | phone
    retry_message: str = ""


class ConditionRule(_Content):
    variable: str
    operator: str = "equals"
    value: Any = ""


class ConditionBranch(_Content):
    handle: str
    rules: list[ConditionRule] = []
    logic: str = "AND"                       # AND | OR


class ConditionContent(_Content):
    branches: list[ConditionBranch] = []
    # Shorthand: a single rule set routed to the "true" handle
    rules: list[ConditionRule] = []
    logic: str = Field("AND", validation_alias=AliasChoices("logic", "operator"))

    def branch_for(self, handle: str) -> Optional[ConditionBranch]:
        for branch in self.branches:
            if branch.handle == handle:
                return branch
        if handle == "true" and self.rules:
            return ConditionBranch(handle="true", rules=self.rules, logic=self.logic)
        return None


class ActionContent(_Content):
    action_type: str = Field(validation_alias=AliasChoices("action_type", "type"))
    tag: str = Field("", validation_alias=AliasChoices("tag", "tag_id"))
    variable: str = ""
    value: str = ""
    external_phone: str = ""
    external_message: str = ""


class TransferContent(_Content):
    message: str = ""
    to_user_id: str = ""
    to_department: str = ""

    @property
    def target(self) -> str:
        return self.to_user_id or self.to_department


class AIResponseContent(_Content):
    context: str = ""                        # extra system context for the LLM
    save_to_variable: str = ""


class DelayContent(_Content):
    seconds: float = Field(1, ge=0, validation_alias=AliasChoices("seconds", "delay_seconds"))


class EndContent(_Content):
    message: str = ""


NodeContent = Union[
    StartContent, MessageContent, MenuContent, InputContent, ConditionContent,
    ActionContent, TransferContent, AIResponseContent, DelayContent, EndContent,
]

NODE_CONTENT_TYPES: dict[NodeType, type] = {
    NodeType.START: StartContent,
    NodeType.MESSAGE: MessageContent,
    NodeType.MENU: MenuContent,
    NodeType.INPUT: InputContent,
    NodeType.CONDITION: ConditionContent,
    NodeType.ACTION: ActionContent,
    NodeType.TRANSFER: TransferContent,
    NodeType.AI_RESPONSE: AIResponseContent,
    NodeType.DELAY: DelayContent,
    NodeType.END: EndContent,
}


# ──────────────────────────────────────────────────────────────
#  Flow definitions
# ──────────────────────────────────────────────────────────────

class FlowNode(BaseModel):
    """Raw node as stored. `content` is the undecoded JSON blob."""
    node_id: str
    type: str
    content: dict[str, Any] = {}
    position: dict[str, float] = {}


class FlowEdge(BaseModel):
    source_node_id: str
    target_node_id: str
    source_handle: str = ""
    label: str = ""


class FlowDefinition(BaseModel):
    id: str = Field(default_factory=new_id)
    organization_id: str
    name: str = ""
    kind: FlowKind = FlowKind.FLOW
    nodes: list[FlowNode] = []
    edges: list[FlowEdge] = []
    is_active: bool = True
    trigger_enabled: bool = False
    trigger_keywords: list[str] = []
    trigger_match_mode: MatchMode = MatchMode.EXACT
    trigger_priority: int = 0
    connection_ids: list[str] = []           # empty → bound to every connection
    activation_mode: ActivationMode = ActivationMode.KEYWORDS
    business_hours_start: time = time(8, 0)
    business_hours_end: time = time(18, 0)
    business_days: list[int] = [1, 2, 3, 4, 5]   # 0=Sunday .. 6=Saturday
    timezone: str = "UTC"
    welcome_message: str = ""               # sent once when a session starts
    transfer_after_failures: int = 3
    fallback_message: str = ""
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class FlowVersion(BaseModel):
    """Immutable publish snapshot. Used for audit / rollback, never executed."""
    id: str = Field(default_factory=new_id)
    flow_id: str
    version: int
    nodes_data: list[dict[str, Any]] = []
    edges_data: list[dict[str, Any]] = []
    published_at: datetime = Field(default_factory=utcnow)


# ──────────────────────────────────────────────────────────────
#  Conversations & sessions
# ──────────────────────────────────────────────────────────────

class Connection(BaseModel):
    """A WhatsApp number attached to an organization."""
    id: str = Field(default_factory=new_id)
    organization_id: str
    name: str = ""
    phone_number: str = ""
    is_active: bool = True


class Conversation(BaseModel):
    id: str = Field(default_factory=new_id)
    organization_id: str
    connection_id: str
    contact_phone: str
    contact_name: str = ""
    attendance_status: AttendanceStatus = AttendanceStatus.BOT
    transferred_to: str = ""
    tags: list[str] = []
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class FlowSession(BaseModel):
    """
    One in-progress walk through a flow for one conversation.
    At most one active session exists per conversation.
    """
    id: str = Field(default_factory=new_id)
    organization_id: str
    flow_id: str
    conversation_id: str
    connection_id: str = ""
    contact_phone: str = ""
    current_node_id: str = ""
    variables: dict[str, str] = {}
    awaiting_input: bool = False
    is_active: bool = True
    failure_count: int = 0
    status: SessionStatus = SessionStatus.ACTIVE
    transferred_to: str = ""
    context: list[dict[str, str]] = []       # bounded transcript for ai_response nodes
    resume_at: Optional[datetime] = None     # set while parked on a delay node
    started_at: datetime = Field(default_factory=utcnow)
    last_interaction_at: datetime = Field(default_factory=utcnow)
    ended_at: Optional[datetime] = None

    def end(self, status: SessionStatus, when: Optional[datetime] = None):
        self.status = status
        self.is_active = False
        self.awaiting_input = False
        self.resume_at = None
        self.ended_at = when or utcnow()


# ──────────────────────────────────────────────────────────────
#  Gateway contracts
# ──────────────────────────────────────────────────────────────

class InboundEvent(BaseModel):
    connection_id: str
    remote_jid: str
    text: str = ""
    media_type: str = ""
    media_url: str = ""
    contact_name: str = ""
    message_id: str = ""
    timestamp: datetime = Field(default_factory=utcnow)


class OutboundMessage(BaseModel):
    connection_id: str
    to: str
    content: str = ""
    media_type: str = "text"
    media_url: str = ""


class DeliveryReceipt(BaseModel):
    message_id: str
    status: str = "sent"
    timestamp: datetime = Field(default_factory=utcnow)


# ──────────────────────────────────────────────────────────────
#  Campaigns
# ──────────────────────────────────────────────────────────────

class TemplateItem(BaseModel):
    type: str = "text"                       # text | image | video | audio | document
    content: str = ""
    media_url: str = Field("", validation_alias=AliasChoices("media_url", "mediaUrl"))


class MessageTemplate(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str = ""
    items: list[TemplateItem] = []


class Campaign(BaseModel):
    id: str = Field(default_factory=new_id)
    organization_id: str
    name: str = ""
    connection_id: str
    template: MessageTemplate = Field(default_factory=MessageTemplate)
    status: CampaignStatus = CampaignStatus.PENDING
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    timezone: str = "UTC"
    min_delay: float = 5
    max_delay: float = 15
    pause_after_messages: int = 0            # 0 disables the cool-down
    pause_duration: float = 0
    random_order: bool = False
    shuffle_seed: Optional[int] = None
    sent_count: int = 0
    failed_count: int = 0
    # Pacing state carried across dispatch cycles
    last_dispatch_at: Optional[datetime] = None
    cooldown_at_count: int = 0               # sent_count when the last cool-down was served
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class CampaignMessage(BaseModel):
    id: str = Field(default_factory=new_id)
    campaign_id: str
    contact_id: str = ""
    phone: str
    contact_data: dict[str, Any] = {}        # name, email, company, ... for template variables
    status: CampaignMessageStatus = CampaignMessageStatus.PENDING
    scheduled_at: datetime = Field(default_factory=utcnow)
    sent_at: Optional[datetime] = None
    error_message: str = ""


# ──────────────────────────────────────────────────────────────
#  CRM
# ──────────────────────────────────────────────────────────────

class Deal(BaseModel):
    id: str = Field(default_factory=new_id)
    organization_id: str
    funnel_id: str
    stage_id: str
    title: str = ""
    contact_phone: str = ""
    contact_name: str = ""
    connection_id: str = ""
    conversation_id: str = ""


class StageChangeEvent(BaseModel):
    deal_id: str
    from_stage: str = ""
    to_stage: str


class CRMStageAutomation(BaseModel):
    id: str = Field(default_factory=new_id)
    organization_id: str
    stage_id: str
    flow_id: str
    wait_hours: float = 24
    next_stage_id: str = ""
    fallback_funnel_id: str = ""
    fallback_stage_id: str = ""
    execute_immediately: bool = True
    is_active: bool = True


class CRMDealAutomation(BaseModel):
    id: str = Field(default_factory=new_id)
    organization_id: str
    deal_id: str
    stage_automation_id: str
    stage_id: str
    status: DealAutomationStatus = DealAutomationStatus.PENDING
    flow_session_id: str = ""
    conversation_id: str = ""
    flow_sent_at: Optional[datetime] = None
    wait_until: Optional[datetime] = None
    responded_at: Optional[datetime] = None
    chain_depth: int = 0
    error: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status not in ACTIVE_DEAL_AUTOMATION_STATUSES


class CRMAutomationLog(BaseModel):
    """Append-only audit row. Never mutated."""
    id: str = Field(default_factory=new_id)
    organization_id: str
    deal_id: str
    automation_id: str = ""
    from_status: str = ""
    to_status: str = ""
    event: str
    details: dict[str, Any] = {}
    created_at: datetime = Field(default_factory=utcnow)
