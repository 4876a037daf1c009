"""Shared test fixtures for the automation engine."""
import pytest
from datetime import datetime, timedelta
import pytest_asyncio
from typing import Any, Optional

from channels.base import MessagingGateway, PermanentGatewayError, TransientGatewayError
from config.settings import AutomationConfig, CampaignConfig, FlowConfig
from database.store_memory import InMemoryAutomationStore
from flows.engine import FlowExecutionEngine
from flows.graph import FlowGraphResolver
from flows.runner import FlowRunner
from models.schemas import (
    Connection, Conversation, DeliveryReceipt, FlowDefinition, FlowEdge, FlowNode,
    OutboundMessage,
)


ORG_ID = "org-1"
CONNECTION_ID = "conn-1"
CONTACT_PHONE = "5511999990000"


class Clock:
    """Settable clock for code that takes a `clock` callable."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeGateway(MessagingGateway):
    """Records every send. Phones in `fail_for` fail permanently; `transient_failures` fail first."""

    def __init__(self):
        self.sent: list[OutboundMessage] = []
        self.fail_for: set[str] = set()
        self.fail_all = False
        self.transient_failures = 0
        self.closed = False

    async def send(self, message: OutboundMessage) -> DeliveryReceipt:
        if self.transient_failures > 0:
            self.transient_failures -= 1
            raise TransientGatewayError("timeout while sending", message.connection_id)
        if self.fail_all or message.to in self.fail_for:
            raise PermanentGatewayError("recipient is not on whatsapp", message.connection_id)
        self.sent.append(message)
        return DeliveryReceipt(message_id=f"wamid.{len(self.sent)}")

    async def close(self) -> None:
        self.closed = True

    def texts(self) -> list[str]:
        return [m.content for m in self.sent]


class FakeLLM:
    """Stands in for LLMResponder. Returns queued replies, then `default`."""

    def __init__(self, replies: Optional[list[str]] = None, default: str = "ok"):
        self.replies = list(replies or [])
        self.default = default
        self.calls: list[dict[str, Any]] = []

    async def generate(self, history, variables, user_message="", extra_context=""):
        self.calls.append({
            "history": list(history),
            "variables": dict(variables),
            "user_message": user_message,
            "extra_context": extra_context,
        })
        return self.replies.pop(0) if self.replies else self.default


def build_flow(nodes: list[tuple], edges: list[tuple], **kwargs) -> FlowDefinition:
    """
    nodes: (node_id, type, content) tuples
    edges: (source, target) or (source, target, handle) or (source, target, handle, label)
    """
    flow_nodes = [FlowNode(node_id=n[0], type=n[1], content=n[2] if len(n) > 2 else {}) for n in nodes]
    flow_edges = []
    for e in edges:
        flow_edges.append(FlowEdge(
            source_node_id=e[0],
            target_node_id=e[1],
            source_handle=e[2] if len(e) > 2 else "",
            label=e[3] if len(e) > 3 else "",
        ))
    kwargs.setdefault("organization_id", ORG_ID)
    return FlowDefinition(nodes=flow_nodes, edges=flow_edges, **kwargs)


@pytest.fixture
def store() -> InMemoryAutomationStore:
    return InMemoryAutomationStore()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def flow_config() -> FlowConfig:
    return FlowConfig()


@pytest.fixture
def campaign_config() -> CampaignConfig:
    return CampaignConfig(item_gap_seconds=1.5, batch_limit=500)


@pytest.fixture
def automation_config() -> AutomationConfig:
    return AutomationConfig(max_chain_depth=5)


@pytest.fixture
def engine(flow_config, llm) -> FlowExecutionEngine:
    return FlowExecutionEngine(flow_config, llm=llm)


@pytest.fixture
def resolver(store) -> FlowGraphResolver:
    return FlowGraphResolver(store)


@pytest.fixture
def runner(store, resolver, engine, gateway) -> FlowRunner:
    return FlowRunner(store, resolver, engine, gateway)


@pytest_asyncio.fixture
async def connection(store) -> Connection:
    conn = Connection(id=CONNECTION_ID, organization_id=ORG_ID, name="Main", phone_number="5511000000000")
    await store.save_connection(conn)
    return conn


@pytest_asyncio.fixture
async def conversation(store, connection) -> Conversation:
    return await store.ensure_conversation(ORG_ID, CONNECTION_ID, CONTACT_PHONE, "Maria")


@pytest.fixture
def menu_flow() -> FlowDefinition:
    """start → menu (Sales / Support) → message per option → end."""
    return build_flow(
        nodes=[
            ("start", "start"),
            ("menu", "menu", {"prompt": "How can we help?",
                              "options": [{"label": "Sales"}, {"label": "Support"}]}),
            ("sales", "message", {"text": "Sales team here"}),
            ("support", "message", {"text": "Support team here"}),
            ("end", "end", {"message": "Bye {{name}}"}),
        ],
        edges=[
            ("start", "menu"),
            ("menu", "sales", "option_0"),
            ("menu", "support", "option_1"),
            ("sales", "end"),
            ("support", "end"),
        ],
        id="flow-menu",
        name="Menu",
    )
