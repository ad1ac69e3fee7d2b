"""
Node and edge types for the knowledge tree.

Nodes carry their own position, pin and velocity so that the simulator,
the tree layout and the position store can all work on the same objects.
Edges are a small tagged variant: only structural (hierarchy) edges take
part in the acyclicity and visibility rules.
"""

from __future__ import annotations

from typing import Any, Optional, Union
from enum import Enum
import math


class NodeType(str, Enum):
    """Kind of node in the tree."""
    root = 'root'
    question = 'question'
    memo = 'memo'


class NodeShape(str, Enum):
    """Display shape of a node."""
    rectangle = 'rectangle'
    dot = 'dot'
    ellipse = 'ellipse'
    diamond = 'diamond'


class Relationship(str, Enum):
    """
    Relationship carried by an edge.

    - hierarchy: parent -> child, must stay acyclic
    - connection: free cross-link between any two nodes
    - memo: annotation node attached to its owner
    """
    hierarchy = 'hierarchy'
    connection = 'connection'
    memo = 'memo'


DEFAULT_SIZE_VALUE = 50.0
MIN_SIZE_SCALE = 0.1
MAX_NODE_RADIUS_SCALE = 4.0


class Node:
    """
    Tree node with position, optional pin and velocity.

    Client-passed nodes may be missing most properties, which get sensible
    defaults. Any additional keyword arguments are kept as attributes.

    Attributes:
        id: Unique, stable identifier
        level: Depth in the hierarchy (derived, >= 0)
        node_type: root, question or memo
        shape: Display shape
        size_value: Display scale slider (0-100, 50 is neutral)
        x, y: Current position (None when never placed)
        fx, fy: Pin overriding the simulated position
        vx, vy: Velocity, owned by the simulator
        index: Arena slot assigned by the simulator
    """

    def __init__(self, id: Any = None, **kwargs):
        self.id = id
        self.level: int = int(kwargs.get('level', 0) or 0)
        self.node_type: NodeType = NodeType(kwargs.get('node_type', NodeType.question))
        self.shape: NodeShape = NodeShape(kwargs.get('shape', NodeShape.rectangle))
        self.size_value: float = float(kwargs.get('size_value', DEFAULT_SIZE_VALUE))
        self.x: Optional[float] = kwargs.get('x')
        self.y: Optional[float] = kwargs.get('y')
        self.fx: Optional[float] = kwargs.get('fx')
        self.fy: Optional[float] = kwargs.get('fy')
        self.vx: float = kwargs.get('vx', 0.0)
        self.vy: float = kwargs.get('vy', 0.0)
        self.index: Optional[int] = kwargs.get('index')
        self.memo_parent_id: Any = kwargs.get('memo_parent_id')
        self.keyword: Optional[str] = kwargs.get('keyword')

        # Filled in by GraphInvariantManager.annotate_hierarchy_metrics
        self.child_count: int = 0
        self.descendant_count: int = 0
        self.descendant_size_scale: float = 1.0

        for key, value in kwargs.items():
            if not hasattr(self, key):
                setattr(self, key, value)

    def __repr__(self) -> str:
        return f"Node({self.id!r}, level={self.level}, type={self.node_type.value})"

    @property
    def is_memo(self) -> bool:
        return self.node_type == NodeType.memo

    @property
    def is_pinned(self) -> bool:
        return self.fx is not None and self.fy is not None

    def has_position(self) -> bool:
        """True when both coordinates are set and finite."""
        return is_finite(self.x) and is_finite(self.y)

    def pin(self, x: float, y: float) -> None:
        self.fx = x
        self.fy = y

    def unpin(self) -> None:
        self.fx = None
        self.fy = None


class Edge:
    """
    Edge between two nodes, referenced by id.

    Use make_edge() to build the variant matching a relationship.

    Attributes:
        source: Source node id
        target: Target node id
        weight: Relative importance of the edge
    """

    relationship: Relationship = Relationship.connection

    def __init__(self, source: Any, target: Any, weight: float = 1.0, **kwargs):
        self.source = source
        self.target = target
        self.weight = weight

        for key, value in kwargs.items():
            if not hasattr(self, key):
                setattr(self, key, value)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.source!r} -> {self.target!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Edge):
            return NotImplemented
        return self.key == other.key

    def __hash__(self) -> int:
        return hash(self.key)

    @property
    def key(self) -> tuple:
        """Identity of the edge: (relationship, source, target)."""
        return (self.relationship.value, self.source, self.target)

    @property
    def is_structural(self) -> bool:
        return self.relationship == Relationship.hierarchy

    def touches(self, node_id: Any) -> bool:
        return self.source == node_id or self.target == node_id


class StructuralEdge(Edge):
    """Parent -> child edge. The set of all such edges stays acyclic."""
    relationship = Relationship.hierarchy


class ConnectionEdge(Edge):
    """Auxiliary cross-link, exempt from cycle checks."""
    relationship = Relationship.connection


class MemoEdge(Edge):
    """Owner -> memo edge, exempt from cycle checks."""
    relationship = Relationship.memo


_EDGE_TYPES = {
    Relationship.hierarchy: StructuralEdge,
    Relationship.connection: ConnectionEdge,
    Relationship.memo: MemoEdge,
}


def make_edge(
    source: Any,
    target: Any,
    relationship: Union[Relationship, str] = Relationship.hierarchy,
    weight: float = 1.0,
    **kwargs
) -> Edge:
    """
    Build the edge variant for a relationship.

    Args:
        source: Source node id
        target: Target node id
        relationship: Relationship (enum member or its string value)
        weight: Edge weight

    Returns:
        StructuralEdge, ConnectionEdge or MemoEdge
    """
    return _EDGE_TYPES[Relationship(relationship)](source, target, weight, **kwargs)


def is_finite(value: Any) -> bool:
    """Check that a value is a real, finite number."""
    if value is None or isinstance(value, bool):
        return False
    try:
        return math.isfinite(value)
    except TypeError:
        return False


def node_radius(node: Optional[Node], fallback: float = 24.0) -> float:
    """
    Visual radius of a node, used for collision and edge clearance.

    Args:
        node: The node (None gives the fallback)
        fallback: Radius used when no node is available

    Returns:
        Radius in scene units
    """
    if node is None:
        return fallback
    if node.shape == NodeShape.dot:
        return 4.0

    base = 18.0 if (node.is_memo or node.level == 0) else 14.0
    slider_scale = max(MIN_SIZE_SCALE, node.size_value / DEFAULT_SIZE_VALUE)
    descendant_scale = max(1.0, node.descendant_size_scale)
    return base * min(MAX_NODE_RADIUS_SCALE, slider_scale * descendant_scale)
