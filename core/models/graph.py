# ============================================================================
# WORKFLOW GRAPH MODEL
# ============================================================================
# STATUS: Core model - Workflow graph snapshot
# PURPOSE: Nodes and port-to-port connections captured when a run starts
# CREATED: 19 OCT 2026
# EXPORTS: WorkflowGraph, GraphNode, Connection
# DEPENDENCIES: pydantic
# ============================================================================
"""
Workflow Graph Models

A WorkflowGraph is the template an execution is created from:
- What nodes exist and their node_type
- Static input data for each node
- Which output port feeds which input port downstream

The graph is copied into the execution when it starts so later
edits to the saved workflow never change a run in flight.
"""

from collections import deque
from typing import Any, Dict, List, Set

from pydantic import BaseModel, Field, model_validator


class GraphNode(BaseModel):
    """Definition of a single node in a workflow graph."""
    node_type: str = Field(..., max_length=64, description="Registry key for the node type")
    data: Dict[str, Any] = Field(
        default_factory=dict,
        description="Static inputs configured on the node"
    )
    optional: bool = Field(
        default=False,
        description="Failure does not fail the execution; downstream gets None"
    )


class Connection(BaseModel):
    """
    Directed edge from an output port to an input port.

    Accepts the editor's nested form as well:
        {"from": {"nodeId": "a", "portId": "image"},
         "to":   {"nodeId": "b", "portId": "image"}}
    """
    from_node: str = Field(..., max_length=64)
    from_port: str = Field(default="output", max_length=64)
    to_node: str = Field(..., max_length=64)
    to_port: str = Field(default="input", max_length=64)

    @model_validator(mode="before")
    @classmethod
    def accept_editor_format(cls, value: Any) -> Any:
        if isinstance(value, dict) and "from" in value and "to" in value:
            source = value["from"] or {}
            target = value["to"] or {}
            return {
                "from_node": source.get("nodeId"),
                "from_port": source.get("portId") or "output",
                "to_node": target.get("nodeId"),
                "to_port": target.get("portId") or "input",
            }
        return value


class WorkflowGraph(BaseModel):
    """
    Directed acyclic graph of typed nodes.

    Dependencies are derived from connections: a node depends on every
    node that has a connection into it.
    """
    nodes: Dict[str, GraphNode] = Field(
        ...,
        description="Map of node_id -> GraphNode"
    )
    connections: List[Connection] = Field(default_factory=list)

    def validate_structure(self) -> List[str]:
        """
        Validate graph structure.

        Returns list of validation errors (empty if valid).
        """
        errors = []

        if not self.nodes:
            errors.append("Workflow must have at least one node")

        for conn in self.connections:
            if conn.from_node not in self.nodes:
                errors.append(f"Connection references unknown node '{conn.from_node}'")
            if conn.to_node not in self.nodes:
                errors.append(f"Connection references unknown node '{conn.to_node}'")
            if conn.from_node == conn.to_node:
                errors.append(f"Node '{conn.from_node}' is connected to itself")

        if not errors and len(self.topological_order()) != len(self.nodes):
            errors.append("Workflow graph contains a cycle")

        return errors

    def upstream_of(self, node_id: str) -> List[str]:
        """Distinct nodes with a connection into node_id."""
        seen: List[str] = []
        for conn in self.connections:
            if conn.to_node == node_id and conn.from_node not in seen:
                seen.append(conn.from_node)
        return seen

    def downstream_of(self, node_id: str) -> List[str]:
        """Distinct nodes node_id connects into."""
        seen: List[str] = []
        for conn in self.connections:
            if conn.from_node == node_id and conn.to_node not in seen:
                seen.append(conn.to_node)
        return seen

    def incoming(self, node_id: str) -> List[Connection]:
        return [c for c in self.connections if c.to_node == node_id]

    def descendants_of(self, node_ids: Set[str]) -> Set[str]:
        """All nodes transitively reachable from node_ids (exclusive)."""
        result: Set[str] = set()
        frontier = deque(node_ids)
        while frontier:
            current = frontier.popleft()
            for child in self.downstream_of(current):
                if child not in result:
                    result.add(child)
                    frontier.append(child)
        return result

    def topological_order(self) -> List[str]:
        """
        Kahn's algorithm over the connections.

        Nodes on a cycle are left out, so a short result means the
        graph is not acyclic.
        """
        in_degree = {node_id: 0 for node_id in self.nodes}
        for node_id in self.nodes:
            for parent in self.upstream_of(node_id):
                if parent in in_degree:
                    in_degree[node_id] += 1

        queue = deque(n for n, degree in in_degree.items() if degree == 0)
        order: List[str] = []
        while queue:
            current = queue.popleft()
            order.append(current)
            for child in self.downstream_of(current):
                if child not in in_degree:
                    continue
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    queue.append(child)
        return order


__all__ = ["WorkflowGraph", "GraphNode", "Connection"]
