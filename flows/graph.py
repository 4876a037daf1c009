"""
Flow Graph Resolver — typed, validated, cached view of a FlowDefinition.

Raw node JSON is decoded exactly once, here, into the payload model of its
node kind (models.schemas.NODE_CONTENT_TYPES). The engine only ever sees
GraphNode objects.

Edge handles:
  menu        option_<idx> (0-based), then edge label == option label,
              then "default", then the first edge
  condition   branch handle, else edge is "else" | "default" | "false"
  others      first outgoing edge
"""
from __future__ import annotations

import structlog
from collections import defaultdict
from dataclasses import dataclass
from typing import Optional

from pydantic import ValidationError

from core.errors import ConfigurationError
from database.store_base import BaseAutomationStore
from models.schemas import (
    FlowDefinition, FlowEdge, MenuContent, NodeContent, NodeType, NODE_CONTENT_TYPES,
)

logger = structlog.get_logger()

ELSE_HANDLES = ("else", "default", "false")


@dataclass(frozen=True)
class GraphNode:
    node_id: str
    type: NodeType
    content: NodeContent


def decode_node(flow_id: str, node_id: str, node_type: str, content: dict) -> GraphNode:
    try:
        kind = NodeType(node_type)
    except ValueError:
        raise ConfigurationError(f"Unknown node type '{node_type}'", flow_id, node_id)
    try:
        payload = NODE_CONTENT_TYPES[kind].model_validate(content or {})
    except ValidationError as e:
        raise ConfigurationError(f"Invalid {kind.value} node content: {e}", flow_id, node_id) from e
    return GraphNode(node_id=node_id, type=kind, content=payload)


class FlowGraph:
    """Immutable graph of one flow version."""

    def __init__(self, flow: FlowDefinition):
        self.flow = flow
        self.flow_id = flow.id
        self.version = flow.version
        self.nodes: dict[str, GraphNode] = {}
        self._duplicates: list[str] = []
        for raw in flow.nodes:
            if raw.node_id in self.nodes:
                self._duplicates.append(raw.node_id)
                continue
            self.nodes[raw.node_id] = decode_node(flow.id, raw.node_id, raw.type, raw.content)
        self._outgoing: dict[str, list[FlowEdge]] = defaultdict(list)
        for edge in flow.edges:
            self._outgoing[edge.source_node_id].append(edge)

    # ── Lookups ───────────────────────────────────────────────

    def node(self, node_id: str) -> GraphNode:
        node = self.nodes.get(node_id)
        if node is None:
            raise ConfigurationError(f"Node '{node_id}' not found", self.flow_id, node_id)
        return node

    def start_node(self) -> GraphNode:
        starts = [n for n in self.nodes.values() if n.type == NodeType.START]
        if len(starts) != 1:
            raise ConfigurationError(f"Flow must have exactly one start node, found {len(starts)}", self.flow_id)
        return starts[0]

    def outgoing(self, node_id: str) -> list[FlowEdge]:
        """Outgoing edges in insertion order."""
        return list(self._outgoing.get(node_id, []))

    def edge_for_handle(self, node_id: str, handle: str) -> Optional[FlowEdge]:
        for edge in self._outgoing.get(node_id, []):
            if edge.source_handle == handle:
                return edge
        return None

    def else_edge(self, node_id: str) -> Optional[FlowEdge]:
        for handle in ELSE_HANDLES:
            edge = self.edge_for_handle(node_id, handle)
            if edge:
                return edge
        return None

    def next_edge(self, node_id: str) -> Optional[FlowEdge]:
        edges = self._outgoing.get(node_id, [])
        return edges[0] if edges else None

    def menu_edge(self, node_id: str, option_index: int, label: str) -> Optional[FlowEdge]:
        edge = self.edge_for_handle(node_id, f"option_{option_index}")
        if edge:
            return edge
        wanted = label.strip().lower()
        for candidate in self._outgoing.get(node_id, []):
            if wanted and candidate.label.strip().lower() == wanted:
                return candidate
        return self.edge_for_handle(node_id, "default") or self.next_edge(node_id)

    # ── Validation ────────────────────────────────────────────

    def validate(self) -> list[str]:
        """Return a list of configuration errors (empty when the graph is runnable)."""
        errors: list[str] = []
        for dup in self._duplicates:
            errors.append(f"Duplicate node id '{dup}'")

        starts = [n for n in self.nodes.values() if n.type == NodeType.START]
        if len(starts) != 1:
            errors.append(f"Flow must have exactly one start node, found {len(starts)}")

        for edge in self.flow.edges:
            if edge.source_node_id not in self.nodes:
                errors.append(f"Edge source '{edge.source_node_id}' does not exist")
            if edge.target_node_id not in self.nodes:
                errors.append(f"Edge target '{edge.target_node_id}' does not exist")

        for node in self.nodes.values():
            if node.type == NodeType.CONDITION:
                if self.else_edge(node.node_id) is None:
                    errors.append(f"Condition node '{node.node_id}' has no else edge")
            elif node.type == NodeType.MENU:
                errors.extend(self._validate_menu(node))
            elif node.type == NodeType.AI_RESPONSE:
                if not self.outgoing(node.node_id):
                    errors.append(f"AI node '{node.node_id}' has no outgoing edge")
        return errors

    def _validate_menu(self, node: GraphNode) -> list[str]:
        content: MenuContent = node.content
        if not content.options:
            return [f"Menu node '{node.node_id}' has no options"]
        if not self.outgoing(node.node_id):
            return [f"Menu node '{node.node_id}' has no outgoing edges"]
        return []

    def ensure_valid(self) -> "FlowGraph":
        errors = self.validate()
        if errors:
            raise ConfigurationError("; ".join(errors), self.flow_id)
        return self


class FlowGraphResolver:
    """
    Loads flows from the store and caches validated graphs per (flow_id, version).
    A publish bumps the version, so stale graphs are never served.
    """

    def __init__(self, store: BaseAutomationStore, max_entries: int = 256):
        self.store = store
        self.max_entries = max_entries
        self._cache: dict[tuple[str, int], FlowGraph] = {}

    async def load(self, flow_id: str) -> FlowGraph:
        flow = await self.store.get_flow(flow_id)
        if flow is None:
            raise ConfigurationError(f"Flow '{flow_id}' not found", flow_id)
        return self.resolve(flow)

    def resolve(self, flow: FlowDefinition) -> FlowGraph:
        key = (flow.id, flow.version)
        graph = self._cache.get(key)
        if graph is None:
            graph = FlowGraph(flow).ensure_valid()
            if len(self._cache) >= self.max_entries:
                self._cache.pop(next(iter(self._cache)))
            self._cache[key] = graph
            logger.debug("flow_graph_loaded", flow_id=flow.id, version=flow.version, nodes=len(graph.nodes))
        return graph

    def invalidate(self, flow_id: str) -> None:
        for key in [k for k in self._cache if k[0] == flow_id]:
            del self._cache[key]
