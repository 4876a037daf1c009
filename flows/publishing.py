"""
Flow publishing — validate, bump the version and snapshot a FlowVersion.

Snapshots are audit / rollback records only. The engine always runs the
live FlowDefinition at its current version.
"""
from __future__ import annotations

import structlog
from typing import Optional

from core.errors import ConfigurationError
from database.store_base import BaseAutomationStore
from flows.graph import FlowGraph, FlowGraphResolver
from models.schemas import FlowDefinition, FlowEdge, FlowNode, FlowVersion, utcnow

logger = structlog.get_logger()


async def publish_flow(
    store: BaseAutomationStore,
    flow_id: str,
    resolver: Optional[FlowGraphResolver] = None,
) -> FlowVersion:
    """Validate the flow as currently edited and publish it as a new version."""
    flow = await store.get_flow(flow_id)
    if flow is None:
        raise ConfigurationError(f"Flow '{flow_id}' not found", flow_id)
    return await _publish(store, flow, resolver)


async def rollback_flow(
    store: BaseAutomationStore,
    flow_id: str,
    version: int,
    resolver: Optional[FlowGraphResolver] = None,
) -> FlowVersion:
    """Re-publish an earlier snapshot as a new version."""
    flow = await store.get_flow(flow_id)
    if flow is None:
        raise ConfigurationError(f"Flow '{flow_id}' not found", flow_id)
    snapshot = await store.get_flow_version(flow_id, version)
    if snapshot is None:
        raise ConfigurationError(f"Flow '{flow_id}' has no version {version}", flow_id)

    flow.nodes = [FlowNode.model_validate(n) for n in snapshot.nodes_data]
    flow.edges = [FlowEdge.model_validate(e) for e in snapshot.edges_data]
    published = await _publish(store, flow, resolver)
    logger.info("flow_rolled_back", flow_id=flow_id, from_version=version, new_version=published.version)
    return published


async def _publish(
    store: BaseAutomationStore,
    flow: FlowDefinition,
    resolver: Optional[FlowGraphResolver],
) -> FlowVersion:
    FlowGraph(flow).ensure_valid()

    flow.version += 1
    flow.updated_at = utcnow()
    snapshot = FlowVersion(
        flow_id=flow.id,
        version=flow.version,
        nodes_data=[n.model_dump() for n in flow.nodes],
        edges_data=[e.model_dump() for e in flow.edges],
    )
    await store.save_flow_version(snapshot)
    await store.save_flow(flow)
    if resolver is not None:
        resolver.invalidate(flow.id)

    logger.info("flow_published", flow_id=flow.id, version=flow.version,
                nodes=len(flow.nodes), edges=len(flow.edges))
    return snapshot
