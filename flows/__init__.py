"""
Flow automation — graph resolution, execution, triggers and publishing.

Quick start:
  from flows import FlowGraphResolver, FlowExecutionEngine, FlowRunner
  resolver = FlowGraphResolver(store)
  runner = FlowRunner(store, resolver, FlowExecutionEngine(), gateway)
  await runner.start(flow_id, conversation_id)
  await runner.resume(conversation_id, "2")
"""
from flows.actions import ActionExecutor, ConversationAction
from flows.engine import AdvanceResult, FlowExecutionEngine, Handoff
from flows.graph import FlowGraph, FlowGraphResolver, GraphNode
from flows.publishing import publish_flow, rollback_flow
from flows.runner import FlowRunner
from flows.triggers import TriggerMatcher, keyword_matches

__all__ = [
    "ActionExecutor", "ConversationAction",
    "AdvanceResult", "FlowExecutionEngine", "Handoff",
    "FlowGraph", "FlowGraphResolver", "GraphNode",
    "publish_flow", "rollback_flow",
    "FlowRunner",
    "TriggerMatcher", "keyword_matches",
]
