"""Tests for graph decoding, validation, caching and publishing."""
import pytest

from conftest import build_flow
from core.errors import ConfigurationError
from flows.graph import FlowGraph, FlowGraphResolver, decode_node
from flows.publishing import publish_flow, rollback_flow
from models.schemas import DelayContent, MenuContent, MessageContent, NodeType


class TestDecodeNode:
    def test_decodes_typed_payload(self):
        node = decode_node("f", "m1", "message", {"message": "Hello"})
        assert node.type == NodeType.MESSAGE
        assert isinstance(node.content, MessageContent)
        assert node.content.text == "Hello"

    def test_menu_options_accept_text_alias(self):
        node = decode_node("f", "menu", "menu", {"text": "Pick", "options": [{"text": "A"}, {"label": "B"}]})
        assert isinstance(node.content, MenuContent)
        assert node.content.prompt == "Pick"
        assert [o.label for o in node.content.options] == ["A", "B"]

    def test_delay_accepts_delay_seconds_key(self):
        node = decode_node("f", "wait", "delay", {"delay_seconds": 30})
        assert node.type == NodeType.DELAY
        assert isinstance(node.content, DelayContent)
        assert node.content.seconds == 30
        assert decode_node("f", "wait", "delay", {}).content.seconds == 1

    def test_negative_delay_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            decode_node("f", "wait", "delay", {"seconds": -5})

    def test_unknown_type_is_configuration_error(self):
        with pytest.raises(ConfigurationError) as exc:
            decode_node("f", "x", "webhook", {})
        assert exc.value.node_id == "x"

    def test_invalid_content_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            decode_node("f", "a", "action", {})  # action_type is required


class TestFlowGraphValidation:
    def test_valid_menu_flow(self, menu_flow):
        assert FlowGraph(menu_flow).validate() == []

    def test_requires_exactly_one_start(self):
        flow = build_flow([("a", "message", {"text": "hi"})], [])
        errors = FlowGraph(flow).validate()
        assert any("exactly one start" in e for e in errors)

    def test_duplicate_node_ids(self):
        flow = build_flow([("start", "start"), ("start", "end")], [])
        assert any("Duplicate node id" in e for e in FlowGraph(flow).validate())

    def test_dangling_edge(self):
        flow = build_flow([("start", "start")], [("start", "ghost")])
        assert any("'ghost' does not exist" in e for e in FlowGraph(flow).validate())

    def test_condition_without_else_edge(self):
        flow = build_flow(
            [("start", "start"), ("cond", "condition", {"rules": [{"variable": "x", "value": "1"}]}),
             ("end", "end")],
            [("start", "cond"), ("cond", "end", "true")],
        )
        assert any("no else edge" in e for e in FlowGraph(flow).validate())

    def test_menu_without_options(self):
        flow = build_flow([("start", "start"), ("menu", "menu", {"prompt": "?"}), ("end", "end")],
                          [("start", "menu"), ("menu", "end")])
        assert any("has no options" in e for e in FlowGraph(flow).validate())

    def test_ensure_valid_raises(self):
        flow = build_flow([("start", "start")], [("start", "ghost")])
        with pytest.raises(ConfigurationError):
            FlowGraph(flow).ensure_valid()


class TestEdgeResolution:
    def test_menu_edge_by_handle_then_label(self):
        flow = build_flow(
            [("start", "start"),
             ("menu", "menu", {"options": [{"label": "Sales"}, {"label": "Support"}]}),
             ("a", "end"), ("b", "end")],
            [("start", "menu"), ("menu", "a", "", "Sales"), ("menu", "b", "option_1")],
        )
        graph = FlowGraph(flow)
        assert graph.menu_edge("menu", 0, "Sales").target_node_id == "a"
        assert graph.menu_edge("menu", 1, "Support").target_node_id == "b"

    def test_menu_edge_falls_back_to_default(self):
        flow = build_flow(
            [("start", "start"), ("menu", "menu", {"options": [{"label": "A"}]}), ("x", "end"), ("d", "end")],
            [("start", "menu"), ("menu", "x", "option_5"), ("menu", "d", "default")],
        )
        assert FlowGraph(flow).menu_edge("menu", 0, "A").target_node_id == "d"

    def test_else_edge_handles(self):
        flow = build_flow(
            [("start", "start"), ("cond", "condition", {}), ("n", "end")],
            [("start", "cond"), ("cond", "n", "false")],
        )
        assert FlowGraph(flow).else_edge("cond").target_node_id == "n"


class TestFlowGraphResolver:
    @pytest.mark.asyncio
    async def test_caches_per_version(self, store, menu_flow):
        await store.save_flow(menu_flow)
        resolver = FlowGraphResolver(store)
        first = await resolver.load(menu_flow.id)
        second = await resolver.load(menu_flow.id)
        assert first is second

    @pytest.mark.asyncio
    async def test_publish_serves_new_graph(self, store, menu_flow):
        await store.save_flow(menu_flow)
        resolver = FlowGraphResolver(store)
        before = await resolver.load(menu_flow.id)
        await publish_flow(store, menu_flow.id, resolver)
        after = await resolver.load(menu_flow.id)
        assert after is not before
        assert after.version == before.version + 1

    @pytest.mark.asyncio
    async def test_missing_flow(self, store):
        with pytest.raises(ConfigurationError):
            await FlowGraphResolver(store).load("nope")

    @pytest.mark.asyncio
    async def test_evicts_oldest_entry(self, store):
        resolver = FlowGraphResolver(store, max_entries=2)
        for i in range(3):
            flow = build_flow([("start", "start")], [], id=f"f{i}")
            await store.save_flow(flow)
            await resolver.load(flow.id)
        assert len(resolver._cache) == 2
        assert ("f0", 0) not in resolver._cache


class TestPublishing:
    @pytest.mark.asyncio
    async def test_publish_snapshots_version(self, store, menu_flow):
        await store.save_flow(menu_flow)
        v1 = await publish_flow(store, menu_flow.id)
        assert v1.version == 1
        assert len(v1.nodes_data) == len(menu_flow.nodes)
        stored = await store.get_flow(menu_flow.id)
        assert stored.version == 1

    @pytest.mark.asyncio
    async def test_publish_rejects_invalid_graph(self, store):
        flow = build_flow([("start", "start")], [("start", "ghost")], id="broken")
        await store.save_flow(flow)
        with pytest.raises(ConfigurationError):
            await publish_flow(store, "broken")
        assert await store.list_flow_versions("broken") == []

    @pytest.mark.asyncio
    async def test_rollback_republishes_snapshot(self, store, menu_flow):
        await store.save_flow(menu_flow)
        await publish_flow(store, menu_flow.id)

        edited = await store.get_flow(menu_flow.id)
        edited.nodes[2].content = {"text": "Changed"}
        await store.save_flow(edited)
        await publish_flow(store, menu_flow.id)

        restored = await rollback_flow(store, menu_flow.id, 1)
        assert restored.version == 3
        current = await store.get_flow(menu_flow.id)
        assert current.nodes[2].content == {"text": "Sales team here"}
        assert [v.version for v in await store.list_flow_versions(menu_flow.id)] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_rollback_unknown_version(self, store, menu_flow):
        await store.save_flow(menu_flow)
        with pytest.raises(ConfigurationError):
            await rollback_flow(store, menu_flow.id, 7)
