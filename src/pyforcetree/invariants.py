"""
Structural invariants of the knowledge tree.

This module derives hierarchy adjacency, rejects hierarchy edges that
would create a cycle (or a second parent), computes the visible subgraph
under a collapse set and collects cascading removal sets.

Only hierarchy edges take part in these rules. Connection and memo edges
may form arbitrary graphs.
"""

from __future__ import annotations

from typing import Any, Iterable, Optional
import logging
import math

from .model import Node, Edge, Relationship

logger = logging.getLogger(__name__)

_DONE = object()

AUTO_SCALE_AMPLIFIER = 1.6
CYCLE_MESSAGE = "Cannot connect: the link would create a cycle."
SECOND_PARENT_MESSAGE = "Cannot connect: the node already has a parent."


class CycleError(ValueError):
    """
    A hierarchy edge was rejected by validation.

    Recoverable: graph state is unchanged when this is raised.

    Attributes:
        source: Rejected edge source id
        target: Rejected edge target id
        message: Human readable validation message
    """

    def __init__(self, source: Any, target: Any, message: str = CYCLE_MESSAGE):
        super().__init__(message)
        self.source = source
        self.target = target
        self.message = message


class VisibleSubgraph:
    """
    Nodes and edges left visible under a collapse set.

    Attributes:
        nodes: Visible nodes in dataset order
        edges: Visible edges in dataset order
        visible_ids: Set of visible node ids
    """

    def __init__(self, nodes: list[Node], edges: list[Edge], visible_ids: set):
        self.nodes = nodes
        self.edges = edges
        self.visible_ids = visible_ids

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, VisibleSubgraph):
            return NotImplemented
        return (
            [n.id for n in self.nodes] == [n.id for n in other.nodes]
            and self.edges == other.edges
            and self.visible_ids == other.visible_ids
        )


def derive_children_map(edges: Iterable[Edge]) -> dict[Any, list]:
    """
    Map each parent id to its hierarchy children, in edge order.

    Args:
        edges: Any edges; non-hierarchy edges are ignored

    Returns:
        Dict parent id -> list of child ids
    """
    children: dict[Any, list] = {}
    for e in edges:
        if not e.is_structural:
            continue
        children.setdefault(e.source, []).append(e.target)
    return children


def derive_parent_map(edges: Iterable[Edge]) -> dict[Any, Any]:
    """
    Map each child id to its hierarchy parent.

    Args:
        edges: Any edges; non-hierarchy edges are ignored

    Returns:
        Dict child id -> parent id
    """
    return {e.target: e.source for e in edges if e.is_structural}


class GraphInvariantManager:
    """
    Validation and traversal over the controller-owned node and edge sets.

    The manager does not copy its inputs: `nodes` (id -> Node, insertion
    ordered) and `edges` are the live containers of the owner, and the
    mutating operations change them in place.
    """

    def __init__(self, nodes: dict[Any, Node], edges: list[Edge]):
        self.nodes = nodes
        self.edges = edges

    def hierarchy_edges(self) -> list[Edge]:
        return [e for e in self.edges if e.is_structural]

    def children_map(self) -> dict[Any, list]:
        return derive_children_map(self.edges)

    def parent_map(self) -> dict[Any, Any]:
        return derive_parent_map(self.edges)

    def find_root_id(self) -> Optional[Any]:
        """
        Find the root: the first node that is not a hierarchy target.

        Memo nodes are only chosen when no other candidate exists.

        Returns:
            Root id, or None when every node has a hierarchy parent
        """
        targets = {e.target for e in self.edges if e.is_structural}
        fallback = None
        for node_id, node in self.nodes.items():
            if node_id in targets:
                continue
            if not node.is_memo:
                return node_id
            if fallback is None:
                fallback = node_id
        return fallback

    def would_create_cycle(
        self,
        source_id: Any,
        target_id: Any,
        pending_edges: Iterable[Edge] = ()
    ) -> bool:
        """
        Check whether a hierarchy edge source -> target would close a cycle.

        The adjacency is built from the committed hierarchy edges, the
        hierarchy edges pending in the same transaction and the proposed
        edge. The edge closes a cycle when source is reachable from target.

        Args:
            source_id: Proposed parent
            target_id: Proposed child
            pending_edges: Edges not yet committed

        Returns:
            True if the edge must be rejected
        """
        if source_id is None or target_id is None or source_id == '' or target_id == '':
            return False
        if source_id == target_id:
            return True

        adjacency: dict[Any, set] = {}

        def append_edge(a: Any, b: Any) -> None:
            if a is None or b is None:
                return
            adjacency.setdefault(a, set()).add(b)

        for e in self.edges:
            if e.is_structural:
                append_edge(e.source, e.target)
        for e in pending_edges:
            if e.is_structural:
                append_edge(e.source, e.target)
        append_edge(source_id, target_id)

        stack = [target_id]
        visited = set()
        while stack:
            current = stack.pop()
            if current == source_id:
                return True
            if current in visited:
                continue
            visited.add(current)
            for nxt in adjacency.get(current, ()):
                if nxt not in visited:
                    stack.append(nxt)

        return False

    def validate_edge(self, edge: Edge, pending_edges: Iterable[Edge] = ()) -> None:
        """
        Validate an edge before it is committed.

        Args:
            edge: Edge to validate
            pending_edges: Edges of the same transaction already accepted

        Raises:
            CycleError: if a hierarchy edge would create a cycle or give
                its target a second parent
        """
        if not edge.is_structural:
            return

        pending_edges = list(pending_edges)
        if self.would_create_cycle(edge.source, edge.target, pending_edges):
            raise CycleError(edge.source, edge.target)

        for e in self.edges + pending_edges:
            if e.is_structural and e.target == edge.target and e.source != edge.source:
                raise CycleError(edge.source, edge.target, SECOND_PARENT_MESSAGE)

    def compute_visible_subgraph(
        self,
        root_id: Optional[Any] = None,
        collapsed: Iterable = frozenset()
    ) -> VisibleSubgraph:
        """
        Compute what stays visible when some nodes are collapsed.

        Collapsed nodes are visible themselves but their hierarchy
        descendants are pruned (unless reachable some other way).

        Args:
            root_id: Traversal root; found automatically when None
            collapsed: Ids of collapsed nodes

        Returns:
            VisibleSubgraph with nodes and edges in dataset order
        """
        collapsed = set(collapsed)
        if root_id is None or root_id not in self.nodes:
            root_id = self.find_root_id()

        if root_id is None:
            return VisibleSubgraph(
                list(self.nodes.values()),
                list(self.edges),
                set(self.nodes)
            )

        children = self.children_map()
        visible = set()
        stack = [root_id]
        while stack:
            current = stack.pop()
            if current in visible:
                continue
            visible.add(current)
            if current in collapsed:
                continue
            stack.extend(children.get(current, ()))

        # Memo nodes ride along with their visible owner
        changed = True
        while changed:
            changed = False
            for e in self.edges:
                if (e.relationship == Relationship.memo and e.source in visible
                        and e.target not in visible and e.source not in collapsed):
                    visible.add(e.target)
                    changed = True

        nodes = [n for node_id, n in self.nodes.items() if node_id in visible]
        edges = []
        for e in self.edges:
            if e.source not in visible or e.target not in visible:
                continue
            if e.is_structural and e.source in collapsed:
                continue
            edges.append(e)

        return VisibleSubgraph(nodes, edges, visible)

    def collect_descendants(self, node_id: Any) -> set:
        """
        Collect a node and all of its hierarchy descendants.

        Memo annotations hang off memo edges and are not collected; their
        edges disappear with the owner.

        Args:
            node_id: Start node

        Returns:
            Set of ids, empty when node_id is unknown
        """
        if node_id not in self.nodes:
            return set()

        children = self.children_map()
        removed = set()
        stack = [node_id]
        while stack:
            current = stack.pop()
            if current in removed:
                continue
            removed.add(current)
            stack.extend(children.get(current, ()))

        return removed

    def remove_node_and_descendants(self, node_id: Any) -> set:
        """
        Remove a node, its hierarchy descendants and every touching edge.

        Args:
            node_id: Node to remove

        Returns:
            The removed id set so callers can purge their own per-node state
        """
        removed = self.collect_descendants(node_id)
        if not removed:
            return removed

        for rid in removed:
            self.nodes.pop(rid, None)
        self.edges[:] = [
            e for e in self.edges
            if e.source not in removed and e.target not in removed
        ]

        logger.debug("removed %d nodes under %r", len(removed), node_id)
        return removed

    def compute_levels(self) -> dict[Any, int]:
        """
        Assign each node its hierarchy depth.

        Memo nodes sit one level below their owner. Nodes unreachable from
        any root keep level 0.

        Returns:
            Dict node id -> level (also written to Node.level)
        """
        children = self.children_map()
        memo_children: dict[Any, list] = {}
        for e in self.edges:
            if e.relationship == Relationship.memo:
                memo_children.setdefault(e.source, []).append(e.target)

        parents = self.parent_map()
        memo_targets = {t for targets in memo_children.values() for t in targets}
        levels: dict[Any, int] = {}
        queue = [nid for nid in self.nodes if nid not in parents and nid not in memo_targets]
        for nid in queue:
            levels[nid] = 0

        i = 0
        while i < len(queue):
            current = queue[i]
            i += 1
            for child in children.get(current, []) + memo_children.get(current, []):
                if child in levels or child not in self.nodes:
                    continue
                levels[child] = levels[current] + 1
                queue.append(child)

        for nid, node in self.nodes.items():
            node.level = levels.setdefault(nid, 0)
        return levels

    def annotate_hierarchy_metrics(self) -> None:
        """
        Set child_count, descendant_count and descendant_size_scale.

        The size scale grows logarithmically with the descendant count,
        relative to the largest subtree, between 1 and 1 + AUTO_SCALE_AMPLIFIER.
        """
        children = self.children_map()
        counts: dict[Any, int] = {}

        # post-order walk; a child still on the current path closes a cycle and is skipped
        for start in self.nodes:
            if start in counts:
                continue
            on_path = {start}
            stack = [(start, iter(children.get(start, ())))]
            while stack:
                nid, pending = stack[-1]
                child = next(pending, _DONE)
                if child is _DONE:
                    stack.pop()
                    on_path.discard(nid)
                    counts[nid] = sum(
                        1 + counts[c] for c in children.get(nid, ()) if c in counts
                    )
                elif child not in counts and child not in on_path:
                    on_path.add(child)
                    stack.append((child, iter(children.get(child, ()))))

        max_count = max(counts.values(), default=0)
        for nid, node in self.nodes.items():
            node.child_count = len(children.get(nid, ()))
            node.descendant_count = counts.get(nid, 0)
            node.descendant_size_scale = _descendant_scale(node.descendant_count, max_count)


def _descendant_scale(count: int, max_count: int) -> float:
    if not max_count or count <= 0:
        return 1.0
    normalized = math.log1p(count) / math.log1p(max_count)
    scaled = 1.0 + normalized * AUTO_SCALE_AMPLIFIER
    return min(max(scaled, 1.0), 1.0 + AUTO_SCALE_AMPLIFIER)
