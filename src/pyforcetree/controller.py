"""
Tree layout controller.

TreeLayoutController owns the shared state of one knowledge tree view:
nodes, edges, the collapse set, the selection, the live position map and
whichever layout engine (force simulation or tree animation) is active.
Mutations are validated before they are committed; a rejected mutation
leaves state unchanged and raises an auto-expiring validation message.
"""

from __future__ import annotations

from typing import Any, Callable, Iterable, Mapping, Optional, Union
import asyncio
import itertools
import logging
import random
import time

from .model import Node, Edge, NodeType, NodeShape, Relationship, make_edge
from .invariants import CycleError, GraphInvariantManager, VisibleSubgraph
from .positions import PositionStore, Position
from .persistence import PositionPersistence
from .simulation import EventType, Event, Simulation, SimulationConfig
from .treelayout import LayoutAnimator, compute_tree_layout

logger = logging.getLogger(__name__)

MESSAGE_TTL = 2.6

# manual overrides accepted by update_node, with their coercions
OVERRIDABLE = {
    'size_value': float,
    'shape': NodeShape,
    'node_type': NodeType,
    'keyword': lambda value: None if value is None else str(value),
}


def _as_node(value: Union[Node, Mapping[str, Any]]) -> Node:
    if isinstance(value, Node):
        return value
    return Node(**dict(value))


def _as_edge(value: Union[Edge, Mapping[str, Any], tuple]) -> Edge:
    if isinstance(value, Edge):
        return value
    if isinstance(value, Mapping):
        data = dict(value)
        return make_edge(
            data.pop('source'),
            data.pop('target'),
            data.pop('relationship', Relationship.hierarchy),
            **data
        )
    return make_edge(*value)


class TreeLayoutController:
    """
    Coordinates graph mutations, layout engines and position persistence.

    Args:
        nodes: Initial nodes (Node objects or keyword mappings)
        edges: Initial edges (Edge objects, mappings or (source, target[, relationship]))
        config: Simulator settings shared by every simulation it starts
        persistence: Optional position persistence adapter
        clock: Time source for animations and message expiry
        rng: Random source for fallback placement
    """

    def __init__(
        self,
        nodes: Iterable[Any] = (),
        edges: Iterable[Any] = (),
        config: Optional[SimulationConfig] = None,
        persistence: Optional[PositionPersistence] = None,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None
    ):
        self.config = config or SimulationConfig()
        self.persistence = persistence
        self.clock = clock
        self.rng = rng

        self.nodes: dict[Any, Node] = {}
        for value in nodes:
            node = _as_node(value)
            self.nodes.setdefault(node.id, node)

        self.edges: list[Edge] = []
        keys = set()
        for value in edges:
            edge = _as_edge(value)
            if edge.source not in self.nodes or edge.target not in self.nodes:
                continue
            if edge.key in keys:
                continue
            keys.add(edge.key)
            self.edges.append(edge)

        self.invariants = GraphInvariantManager(self.nodes, self.edges)
        self.collapsed: set = set()
        self.selection: set = set()
        self.positions = PositionStore()
        for node in self.nodes.values():
            if node.has_position():
                self.positions.update({node.id: (node.x, node.y)})

        self.simulation: Optional[Simulation] = None
        self.animator = LayoutAnimator(clock=clock)
        self.mode: Optional[str] = None
        self.event: Optional[dict] = None

        self._message: Optional[str] = None
        self._message_time = 0.0
        self._manual_drag: dict[Any, dict] = {}
        self._deferred: Optional[tuple[str, dict]] = None
        self._ids = itertools.count(1)

        self._refresh()

    # events

    def on(self, e: Union[EventType, str], listener: Callable[[Event], None]) -> TreeLayoutController:
        """
        Subscribe to controller events.

        start, tick and end are forwarded from the active simulation;
        validation fires when a mutation is rejected.
        """
        if self.event is None:
            self.event = {}
        event_type = EventType[e] if isinstance(e, str) else e
        self.event[event_type] = listener
        return self

    def trigger(self, e: Event) -> None:
        if self.event and e['type'] in self.event:
            self.event[e['type']](e)

    def _reject(self, message: str) -> None:
        logger.warning("mutation rejected: %s", message)
        self._message = message
        self._message_time = self.clock()
        self.trigger({'type': EventType.validation, 'message': message})

    def validation_message(self) -> Optional[str]:
        """The last validation message, or None once it has expired."""
        if self._message is None:
            return None
        if self.clock() - self._message_time >= MESSAGE_TTL:
            self._message = None
            return None
        return self._message

    # graph state

    def _refresh(self) -> None:
        self.invariants.compute_levels()
        self.invariants.annotate_hierarchy_metrics()

    def _changed(self) -> None:
        """Re-derive node metrics and rebuild a running simulation."""
        self._refresh()
        if self.mode == 'simulation':
            self._record()
            self.start_simulation(alpha=0.3)

    def node(self, node_id: Any) -> Optional[Node]:
        return self.nodes.get(node_id)

    def root_id(self) -> Optional[Any]:
        return self.invariants.find_root_id()

    def _new_id(self) -> str:
        while True:
            candidate = f"node-{next(self._ids)}"
            if candidate not in self.nodes:
                return candidate

    def add_node(
        self,
        parent_id: Any = None,
        node_id: Any = None,
        relationship: Union[Relationship, str] = Relationship.hierarchy,
        **attrs
    ) -> Optional[Node]:
        """
        Add a node under a parent.

        An unknown (or missing) parent resolves to the root. Memo nodes are
        attached to their owner with a memo edge.

        Args:
            parent_id: Parent node id
            node_id: Id for the new node (generated when None)
            relationship: Edge relationship to the parent
            **attrs: Node attributes

        Returns:
            The new node, or None when the mutation was rejected
        """
        if node_id is None:
            node_id = self._new_id()
        elif node_id in self.nodes:
            return None

        if parent_id not in self.nodes:
            parent_id = self.root_id()

        relationship = Relationship(relationship)
        if attrs.get('node_type') in (NodeType.memo, NodeType.memo.value):
            relationship = Relationship.memo
        if relationship == Relationship.memo:
            attrs['node_type'] = NodeType.memo
            attrs.setdefault('memo_parent_id', parent_id)
        if parent_id is None:
            attrs.setdefault('node_type', NodeType.root)

        node = Node(node_id, **attrs)
        edge = None
        if parent_id is not None:
            edge = make_edge(parent_id, node_id, relationship)
            try:
                self.invariants.validate_edge(edge)
            except CycleError as exc:
                self._reject(exc.message)
                return None
            node.level = self.nodes[parent_id].level + 1

        self.nodes[node_id] = node
        if edge is not None:
            self.edges.append(edge)
        logger.debug("added node %r under %r", node_id, parent_id)
        self._changed()
        return node

    def add_edge(
        self,
        source_id: Any,
        target_id: Any,
        relationship: Union[Relationship, str] = Relationship.hierarchy,
        pending: Iterable[Edge] = ()
    ) -> Optional[Edge]:
        """
        Add a single edge after validation.

        Returns:
            The committed edge, or None when ignored or rejected
        """
        if source_id not in self.nodes or target_id not in self.nodes:
            return None
        edge = make_edge(source_id, target_id, relationship)
        if any(e.key == edge.key for e in self.edges):
            return None
        try:
            self.invariants.validate_edge(edge, pending)
        except CycleError as exc:
            self._reject(exc.message)
            return None

        self.edges.append(edge)
        self._changed()
        return edge

    def add_edges(self, edges: Iterable[Any]) -> Optional[list[Edge]]:
        """
        Add several edges as one transaction.

        Each edge is validated against the committed edges and the earlier
        edges of the same batch. Edges with unknown endpoints are skipped.

        Returns:
            The committed edges, or None when any edge was rejected (in
            which case nothing is committed)
        """
        existing = {e.key for e in self.edges}
        pending: list[Edge] = []
        for value in edges:
            edge = _as_edge(value)
            if edge.source not in self.nodes or edge.target not in self.nodes:
                continue
            if edge.key in existing:
                continue
            try:
                self.invariants.validate_edge(edge, pending)
            except CycleError as exc:
                self._reject(exc.message)
                return None
            pending.append(edge)
            existing.add(edge.key)

        if pending:
            self.edges.extend(pending)
            self._changed()
        return pending

    def update_node(self, node_id: Any, **attrs) -> Optional[Node]:
        """
        Apply manual overrides to a node.

        Only size_value, shape, node_type and keyword can be overridden;
        other keys (id, level, pins, memo ownership) belong to the
        invariant layer and the simulator and are ignored.

        Returns:
            The node, or None if it does not exist
        """
        node = self.nodes.get(node_id)
        if node is None:
            return None
        ignored = set(attrs) - set(OVERRIDABLE)
        if ignored:
            logger.warning("ignoring non-overridable attributes %s on %r", sorted(ignored), node_id)
        for key in OVERRIDABLE:
            if key in attrs:
                setattr(node, key, OVERRIDABLE[key](attrs[key]))

        self._changed()
        if self.mode != 'simulation' and self.simulation is not None:
            self.simulation.reinitialize()
        return node

    def remove_node(self, node_id: Any) -> set:
        """
        Remove a node with its hierarchy descendants.

        Memo annotations owned by removed nodes go too. Selection, collapse
        set and stored positions are purged of the removed ids.

        Returns:
            Set of removed ids
        """
        removed = self.invariants.remove_node_and_descendants(node_id)
        if not removed:
            return removed

        orphans = [
            nid for nid, n in self.nodes.items()
            if n.is_memo and n.memo_parent_id in removed
        ]
        for nid in orphans:
            removed |= self.invariants.remove_node_and_descendants(nid)

        self.selection -= removed
        self.collapsed -= removed
        self.positions.discard(removed)
        self.animator.discard(removed)
        self._manual_drag = {k: v for k, v in self._manual_drag.items() if k not in removed}
        self._changed()
        return removed

    def toggle_collapse(self, node_id: Any) -> bool:
        """
        Collapse or expand a node.

        Returns:
            True if the node is collapsed afterwards
        """
        if node_id not in self.nodes:
            return False
        if node_id in self.collapsed:
            self.collapsed.discard(node_id)
        else:
            self.collapsed.add(node_id)
        self._changed()
        return node_id in self.collapsed

    def visible_subgraph(self) -> VisibleSubgraph:
        return self.invariants.compute_visible_subgraph(collapsed=self.collapsed)

    def select(self, node_ids: Iterable[Any]) -> set:
        """Replace the selection; unknown ids are dropped."""
        self.selection = {nid for nid in node_ids if nid in self.nodes}
        return set(self.selection)

    # layout engines

    def _record(self) -> None:
        if self.simulation is not None:
            self.positions.update(self.simulation.positions())

    def _awaiting_load(self) -> bool:
        return self.persistence is not None and not self.persistence.loaded

    def start_simulation(self, alpha: Optional[float] = None) -> Optional[Simulation]:
        """
        Build and start a simulation over the visible subgraph.

        Stored positions are restored first, the rest falls back to depth
        rings. Until persistence has loaded, the start is deferred and
        run by load_positions().

        Args:
            alpha: Starting heat (defaults to the configured initial alpha)

        Returns:
            The simulation, or None when the start was deferred
        """
        if self._awaiting_load():
            logger.debug("simulation deferred until positions are loaded")
            self._deferred = ('simulation', {'alpha': alpha})
            return None
        self._deferred = None
        self.animator.stop()
        if self.simulation is not None:
            self.simulation.stop()

        sub = self.visible_subgraph()
        sim = Simulation(
            sub.nodes,
            sub.edges,
            self.config,
            previous_positions=self.positions.as_dict(),
            rng=self.rng
        )
        for event_type in (EventType.start, EventType.tick, EventType.end):
            sim.on(event_type, self.trigger)
        self.simulation = sim
        self.mode = 'simulation'

        sim.start()
        if alpha is not None and sim.running:
            sim.alpha(alpha)
        self._record()
        if not sim.running:
            self.mode = None
        return sim

    def start_tree_layout(self, orientation: str = 'vertical') -> Optional[dict[Any, Position]]:
        """
        Stop the simulation and animate the visible nodes onto a tidy tree.

        With the force simulation disabled the nodes jump to their targets
        and are pinned there. Deferred like start_simulation() until
        persistence has loaded.

        Returns:
            Target positions keyed by node id, or None when deferred
        """
        if self._awaiting_load():
            logger.debug("tree layout deferred until positions are loaded")
            self._deferred = ('tree', {'orientation': orientation})
            return None
        self._deferred = None
        if self.simulation is not None:
            self.simulation.stop()
            self._record()
        self.animator.stop()

        sub = self.visible_subgraph()
        self.positions.prepare(sub.nodes, self.rng)
        targets = compute_tree_layout(
            sub.nodes, sub.edges, self.config.width, self.config.height, orientation
        )

        if not self.config.enable_force_simulation:
            for node_id, state in self.animator.animate_static(targets).items():
                self.nodes[node_id].pin(state['fx'], state['fy'])
                self.nodes[node_id].x = state['x']
                self.nodes[node_id].y = state['y']
            self.positions.update(targets)
            self.mode = None
            return targets

        self.animator.animate(targets, current=self.positions.as_dict(), now=self.clock())
        self.mode = 'tree'
        return targets

    def frame(self, now: Optional[float] = None) -> Optional[dict[Any, Position]]:
        """
        Advance the active layout engine by one frame.

        Args:
            now: Clock value for the tree animation

        Returns:
            Positions for this frame, or None when nothing is running
        """
        if self.mode == 'simulation' and self.simulation is not None:
            snapshot = self.simulation.step()
            if snapshot is None:
                self.mode = None
                self._record()
                self._autosave()
                return None
            self._record()
            if not self.simulation.running:
                self.mode = None
                self._autosave()
            return self.simulation.positions()

        if self.mode == 'tree':
            positions = self.animator.frame(self.clock() if now is None else now)
            if positions is None:
                self.mode = None
                return None
            for node_id, (x, y) in positions.items():
                node = self.nodes.get(node_id)
                if node is not None:
                    node.x, node.y = x, y
            self.positions.update(positions)
            if not self.animator.is_animating:
                self.mode = None
                self._autosave()
            return positions

        return None

    def stop(self) -> None:
        """Cancel the simulation, any animation and any deferred start."""
        self._deferred = None
        if self.simulation is not None:
            self.simulation.stop()
            self._record()
        self.animator.stop()
        self.mode = None

    # dragging

    def drag_start(self, node_id: Any) -> None:
        """Start dragging a node; other selected nodes follow it."""
        if node_id not in self.nodes:
            return
        others = [nid for nid in self.selection if nid != node_id]
        sim = self.simulation
        if sim is not None and sim.index_of(node_id) is not None and self.mode != 'tree':
            sim.drag_start(node_id, others)
            if sim.running:
                self.mode = 'simulation'
            return

        self.animator.stop()
        if self.mode == 'tree':
            self.mode = None
        node = self.nodes[node_id]
        ox, oy = node.x or 0.0, node.y or 0.0
        offsets = {}
        for nid in others:
            other = self.nodes[nid]
            if other.has_position():
                offsets[nid] = (other.x - ox, other.y - oy)
        self._manual_drag[node_id] = offsets

    def drag(self, node_id: Any, x: float, y: float) -> None:
        """Move a dragged node (and its followers) to the pointer."""
        if node_id not in self.nodes:
            return
        if node_id not in self._manual_drag and self.simulation is not None \
                and self.simulation.index_of(node_id) is not None:
            self.simulation.drag(node_id, x, y)
            self._record()
            return

        offsets = self._manual_drag.setdefault(node_id, {})
        moved = {node_id: (x, y)}
        for nid, (dx, dy) in offsets.items():
            moved[nid] = (x + dx, y + dy)
        for nid, (px, py) in moved.items():
            node = self.nodes.get(nid)
            if node is None:
                continue
            node.x, node.y = px, py
            if node.is_pinned:
                node.pin(px, py)
        self.positions.update(moved)

    def drag_end(self, node_id: Any) -> None:
        """Finish a drag and schedule a save of the new layout."""
        if node_id in self._manual_drag:
            self._manual_drag.pop(node_id)
        elif self.simulation is not None and self.simulation.index_of(node_id) is not None:
            self.simulation.drag_end(node_id)
            self._record()
        self._autosave()

    # persistence

    async def load_positions(self) -> dict[Any, Position]:
        """
        Load stored positions once and merge them into the live map.

        A layout start requested before loading finished runs now.

        Returns:
            The loaded positions (empty without persistence)
        """
        if self.persistence is None:
            return {}
        loaded = await self.persistence.load()
        self.positions.update(loaded)

        deferred, self._deferred = self._deferred, None
        if deferred is not None:
            kind, kwargs = deferred
            if kind == 'simulation':
                self.start_simulation(**kwargs)
            else:
                self.start_tree_layout(**kwargs)
        return loaded

    def schedule_save(self) -> None:
        """Debounced save of the current positions. Needs a running event loop."""
        if self.persistence is None:
            return
        self.persistence.schedule_save(self.positions.as_dict())

    def _autosave(self) -> None:
        if self.persistence is None:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        self.schedule_save()
