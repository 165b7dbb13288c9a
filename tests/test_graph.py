# ============================================================================
# WORKFLOW GRAPH TESTS
# ============================================================================
# STATUS: Tests - Graph validation and traversal
# PURPOSE: Verify structure checks, editor format and ordering
# CREATED: 19 OCT 2026
# ============================================================================
"""
Workflow Graph Tests

Run with:
    pytest tests/test_graph.py -v
"""

from core.models import Connection, GraphNode, WorkflowGraph


class TestValidation:

    def test_valid_chain(self, make_graph):
        graph = make_graph({"a": "echo", "b": "echo", "c": "echo"}, [("a", "b"), ("b", "c")])
        assert graph.validate_structure() == []
        assert graph.topological_order() == ["a", "b", "c"]

    def test_empty_graph(self):
        errors = WorkflowGraph(nodes={}).validate_structure()
        assert errors == ["Workflow must have at least one node"]

    def test_cycle_detected(self, make_graph):
        graph = make_graph({"a": "echo", "b": "echo", "c": "echo"}, [("a", "b"), ("b", "c"), ("c", "b")])
        assert "Workflow graph contains a cycle" in graph.validate_structure()

    def test_dangling_connection(self, make_graph):
        graph = make_graph({"a": "echo"}, [("a", "ghost")])
        assert graph.validate_structure() == ["Connection references unknown node 'ghost'"]

    def test_self_loop(self, make_graph):
        graph = make_graph({"a": "echo"}, [("a", "a")])
        assert "Node 'a' is connected to itself" in graph.validate_structure()


class TestTraversal:

    def test_diamond(self, make_graph):
        graph = make_graph(
            {"a": "echo", "b": "echo", "c": "echo", "d": "echo"},
            [("a", "b"), ("a", "c"), ("b", "d"), ("c", "d")],
        )
        order = graph.topological_order()
        assert order[0] == "a"
        assert order[-1] == "d"
        assert graph.upstream_of("d") == ["b", "c"]
        assert graph.descendants_of({"b"}) == {"d"}
        assert graph.descendants_of({"a"}) == {"b", "c", "d"}

    def test_parallel_edges_count_once(self, make_graph):
        graph = make_graph(
            {"a": "echo", "b": "echo"},
            [("a", "image", "b", "image"), ("a", "mask", "b", "mask")],
        )
        assert graph.upstream_of("b") == ["a"]
        assert len(graph.incoming("b")) == 2
        assert graph.topological_order() == ["a", "b"]


class TestEditorFormat:

    def test_nested_connection(self):
        conn = Connection.model_validate({
            "from": {"nodeId": "a", "portId": "image"},
            "to": {"nodeId": "b", "portId": "source"},
        })
        assert (conn.from_node, conn.from_port, conn.to_node, conn.to_port) == ("a", "image", "b", "source")

    def test_nested_connection_default_ports(self):
        conn = Connection.model_validate({"from": {"nodeId": "a"}, "to": {"nodeId": "b"}})
        assert conn.from_port == "output"
        assert conn.to_port == "input"

    def test_graph_from_json(self):
        graph = WorkflowGraph.model_validate({
            "nodes": {
                "start": {"node_type": "start-flow"},
                "gen": {"node_type": "fake-gen", "data": {"prompt": "cat"}, "optional": True},
            },
            "connections": [{"from": {"nodeId": "start"}, "to": {"nodeId": "gen"}}],
        })
        assert isinstance(graph.nodes["gen"], GraphNode)
        assert graph.nodes["gen"].optional is True
        assert graph.validate_structure() == []
