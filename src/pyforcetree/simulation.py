"""
Force-field simulator for the knowledge tree.

This module implements the Simulation class which provides:
- Arena-indexed node positions and velocities (numpy 2 x n arrays)
- Composition of link, charge, collision, anchor, radial, centering and
  edge repulsion forces
- Alpha ("heat") decay with auto-stop after a run of cool ticks
- Pinning for drag gestures, including multi-node and memo-follower drags
- An event system (start/tick/end) and a lazy frame stream driven by an
  external per-frame clock

The simulator never runs on its own: callers invoke step() (or pull from
frames()) once per frame. stop() is immediate and idempotent; nothing is
emitted afterwards.
"""

from __future__ import annotations

from typing import Any, Callable, Iterable, Iterator, Mapping, Optional, TypedDict, Union
from dataclasses import dataclass, field, fields
from enum import IntEnum
import logging
import math
import random
import numpy as np

from .model import Node, Edge, Relationship, is_finite
from .forces import (
    Force,
    ForceConfig,
    LinkForce,
    ManyBodyForce,
    CollideForce,
    PositionForce,
    RadialForce,
    CenterForce,
    ring_radius,
    sector_angles,
)
from .edgerepulsion import EdgeRepulsionConfig, EdgeRepulsionForce
from .invariants import derive_children_map, derive_parent_map
from .positions import restore, assign_fallback_positions

logger = logging.getLogger(__name__)


class EventType(IntEnum):
    """
    The simulator and controller fire these events:
    - start: iterations started (or restarted)
    - tick: fired once per iteration with the new snapshot
    - end: the loop halted (auto-stop, convergence or explicit stop)
    - validation: a mutation was rejected; carries a message
    """
    start = 0
    tick = 1
    end = 2
    validation = 3


class NodeFrame(TypedDict):
    """Position state of one node in a snapshot."""
    id: Any
    x: float
    y: float
    vx: float
    vy: float
    fx: Optional[float]
    fy: Optional[float]


class EdgeFrame(TypedDict):
    """Edge with resolved endpoint coordinates."""
    source: Any
    target: Any
    relationship: str
    x1: float
    y1: float
    x2: float
    y2: float


class Snapshot(TypedDict):
    """Everything the UI needs to draw one frame."""
    tick: int
    alpha: float
    nodes: list[NodeFrame]
    edges: list[EdgeFrame]


class Event(TypedDict, total=False):
    """Event dictionary passed to event listeners."""
    type: EventType
    alpha: float
    reason: str
    message: str
    snapshot: Snapshot


@dataclass
class SimulationConfig:
    """
    Simulator settings.

    Attributes:
        initial_alpha: Heat at start
        alpha_min: The loop halts once alpha drops below this
        alpha_decay: Fraction of the gap to alpha_target closed per tick
        velocity_decay: Friction; velocities keep (1 - velocity_decay) per tick
        auto_stop_alpha_threshold: Alpha regarded as "cool"
        auto_stop_tick_count: Consecutive cool ticks before auto-stop (0 disables)
        drag_alpha_target: Heat kept up while a drag is in progress
        release_on_drag_end: Unpin on release (free mode) or keep pinned (manual mode)
        enable_force_simulation: False pins every node and emits one static frame
        width, height: Viewport size, bounds the charge range
        anchor: Centre of the layout
    """
    initial_alpha: float = 0.6
    alpha_min: float = 0.015
    alpha_decay: float = 0.08
    velocity_decay: float = 0.58
    auto_stop_alpha_threshold: float = 0.035
    auto_stop_tick_count: int = 28
    drag_alpha_target: float = 0.3
    release_on_drag_end: bool = True
    enable_force_simulation: bool = True
    width: float = 928.0
    height: float = 600.0
    anchor: tuple[float, float] = (0.0, 0.0)
    forces: ForceConfig = field(default_factory=ForceConfig)
    edge_repulsion: EdgeRepulsionConfig = field(default_factory=EdgeRepulsionConfig)

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> SimulationConfig:
        """
        Build a config from a plain mapping, ignoring unknown keys.

        Nested 'forces' and 'edge_repulsion' mappings are accepted too.
        """
        def pick(klass, data: Mapping[str, Any]) -> dict:
            names = {f.name for f in fields(klass)}
            return {k: v for k, v in data.items() if k in names}

        kwargs = pick(cls, values)
        if isinstance(kwargs.get('forces'), Mapping):
            kwargs['forces'] = ForceConfig(**pick(ForceConfig, kwargs['forces']))
        if isinstance(kwargs.get('edge_repulsion'), Mapping):
            er = pick(EdgeRepulsionConfig, kwargs['edge_repulsion'])
            if 'sample_ratios' in er:
                er['sample_ratios'] = tuple(er['sample_ratios'])
            kwargs['edge_repulsion'] = EdgeRepulsionConfig(**er)
        if 'anchor' in kwargs:
            kwargs['anchor'] = tuple(kwargs['anchor'])
        return cls(**kwargs)


class Simulation:
    """
    Force-directed simulation over an arena of nodes.

    Node i lives in column i of the position (x) and velocity (v) arrays.
    Node objects are kept in sync after every tick.

    Args:
        nodes: Nodes to simulate (their index attribute is assigned here)
        edges: Edges; those with an endpoint outside the node set are ignored
        config: Simulator settings
        previous_positions: Last known positions keyed by node id
        rng: Random source for fallback placement
    """

    def __init__(
        self,
        nodes: Iterable[Node],
        edges: Iterable[Edge] = (),
        config: Optional[SimulationConfig] = None,
        previous_positions: Optional[Mapping[Any, Any]] = None,
        rng: Optional[random.Random] = None
    ):
        self.config = config or SimulationConfig()
        self.nodes: list[Node] = list(nodes)
        self._index: dict[Any, int] = {}
        for i, n in enumerate(self.nodes):
            n.index = i
            self._index[n.id] = i

        self.arena_edges: list[Edge] = []
        pairs = []
        for e in edges:
            s = self._index.get(e.source)
            t = self._index.get(e.target)
            if s is None or t is None or s == t:
                continue
            self.arena_edges.append(e)
            pairs.append((s, t))
        self.edge_index = np.array(pairs, dtype=int).reshape(len(pairs), 2)

        previous = dict(previous_positions or {})
        self._previous = previous
        restore(previous, self.nodes)
        assign_fallback_positions(self.nodes, rng)

        n = len(self.nodes)
        self.x = np.array(
            [[nd.x for nd in self.nodes], [nd.y for nd in self.nodes]],
            dtype=float
        ).reshape(2, n)
        self.v = np.array(
            [[nd.vx or 0.0 for nd in self.nodes], [nd.vy or 0.0 for nd in self.nodes]],
            dtype=float
        ).reshape(2, n)
        self.v = np.where(np.isfinite(self.v), self.v, 0.0)

        self.anchor_targets = self._compute_anchor_targets(previous)

        self.event: Optional[dict] = None
        self.ticks = 0
        self._alpha = 0.0
        self._alpha_target = 0.0
        self._running = False
        self._generation = 0
        self._stable_ticks = 0
        self._drag: dict[Any, dict] = {}

        self._forces: dict[str, Force] = {}
        fc = self.config.forces
        self.force('link', LinkForce(fc))
        self.force('charge', ManyBodyForce(fc))
        self.force('collide', CollideForce(fc))
        self.force('anchor', PositionForce(fc))
        self.force('radial', RadialForce(fc))
        self.force('center', CenterForce())
        if self.config.edge_repulsion.enabled and len(self.arena_edges):
            self.force('edge-repulsion', EdgeRepulsionForce(self.config.edge_repulsion))

    def _compute_anchor_targets(self, previous: Mapping[Any, Any]) -> np.ndarray:
        """Per-node spring target: last known position, else sector target, else anchor."""
        cx, cy = self.config.anchor
        n = len(self.nodes)
        targets = np.empty((2, n))
        targets[0, :] = cx
        targets[1, :] = cy

        hierarchy = [e for e in self.arena_edges if e.is_structural]
        children = derive_children_map(hierarchy)
        parents = derive_parent_map(hierarchy)
        roots = [nd.id for nd in self.nodes if nd.id not in parents and not nd.is_memo]
        angles = sector_angles(children, roots, self.config.forces.sibling_padding)

        for i, nd in enumerate(self.nodes):
            known = previous.get(nd.id)
            if known is not None and nd.has_position():
                targets[0, i] = nd.x
                targets[1, i] = nd.y
                continue
            angle = angles.get(nd.id)
            if angle is not None:
                r = ring_radius(nd.level, self.config.forces)
                targets[0, i] = cx + math.cos(angle) * r
                targets[1, i] = cy + math.sin(angle) * r
        return targets

    def force(self, name: str, f: Optional[Force] = None) -> Union[Optional[Force], Simulation]:
        """
        Get, add or replace a named force.

        Args:
            name: Force name
            f: Force to install (initialized immediately)

        Returns:
            The named force if f is None, otherwise self for chaining
        """
        if f is None:
            return self._forces.get(name)
        f.initialize(self)
        self._forces[name] = f
        return self

    def reinitialize(self) -> Simulation:
        """Recompute anchor targets and per-node force parameters after node attributes changed."""
        self.anchor_targets = self._compute_anchor_targets(self._previous)
        for f in self._forces.values():
            f.initialize(self)
        return self

    def on(self, e: Union[EventType, str], listener: Callable[[Event], None]) -> Simulation:
        """
        Subscribe a listener to an event.

        Args:
            e: Event type (EventType enum or string name)
            listener: Function to call when the event fires

        Returns:
            self for method chaining
        """
        if self.event is None:
            self.event = {}
        event_type = EventType[e] if isinstance(e, str) else e
        self.event[event_type] = listener
        return self

    def trigger(self, e: Event) -> None:
        """Call the listener registered for the event type, if any."""
        if self.event and e['type'] in self.event:
            self.event[e['type']](e)

    @property
    def running(self) -> bool:
        return self._running

    def alpha(self, x: Optional[float] = None) -> Union[float, Simulation]:
        """
        Get or set alpha (heat).

        Args:
            x: Optional alpha value to set

        Returns:
            Current alpha if x is None, otherwise self for chaining
        """
        if x is None:
            return self._alpha
        self._alpha = float(x)
        return self

    def alpha_target(self, x: Optional[float] = None) -> Union[float, Simulation]:
        """Get or set the value alpha decays towards."""
        if x is None:
            return self._alpha_target
        self._alpha_target = float(x)
        return self

    def start(self) -> Simulation:
        """
        Start iterating from the configured initial alpha.

        With the force simulation disabled every node is pinned where it is
        and a single static frame is emitted instead.
        """
        if not self.config.enable_force_simulation:
            for i, nd in enumerate(self.nodes):
                nd.pin(float(self.x[0, i]), float(self.x[1, i]))
            self._running = False
            self.trigger({'type': EventType.tick, 'alpha': 0.0, 'snapshot': self.snapshot()})
            return self
        return self.restart(self.config.initial_alpha)

    def restart(self, alpha: Optional[float] = 0.3) -> Simulation:
        """
        Resume iterations, optionally reheating.

        Args:
            alpha: New alpha, or None to keep the current value
        """
        if not self.config.enable_force_simulation:
            return self
        if alpha is not None:
            self._alpha = float(alpha)
        self._stable_ticks = 0
        was_running = self._running
        self._running = True
        if not was_running:
            self.trigger({'type': EventType.start, 'alpha': self._alpha})
        return self

    def stop(self) -> Simulation:
        """
        Stop immediately. Idempotent; no snapshot is emitted afterwards.
        """
        self._generation += 1
        if self._running:
            self._running = False
            self.trigger({'type': EventType.end, 'alpha': self._alpha, 'reason': 'stopped'})
        return self

    def _halt(self, reason: str) -> None:
        self._running = False
        self._alpha = 0.0
        self._alpha_target = 0.0
        self.v[:] = 0.0
        for nd in self.nodes:
            nd.vx = 0.0
            nd.vy = 0.0
        logger.debug("simulation halted after %d ticks (%s)", self.ticks, reason)
        self.trigger({'type': EventType.end, 'alpha': 0.0, 'reason': reason})

    def step(self) -> Optional[Snapshot]:
        """
        Advance exactly one tick.

        Returns:
            The snapshot for this tick, or None if the simulation is stopped
            (or was stopped while the tick was being processed)
        """
        if not self._running:
            return None
        generation = self._generation
        cfg = self.config

        self._alpha += (self._alpha_target - self._alpha) * cfg.alpha_decay
        self._apply_pins()
        for f in self._forces.values():
            f.apply(self._alpha)
        self._integrate()
        self.ticks += 1
        self._update_node_positions()

        snapshot = self.snapshot()
        self.trigger({'type': EventType.tick, 'alpha': self._alpha, 'snapshot': snapshot})
        if generation != self._generation:
            return None

        if cfg.auto_stop_tick_count > 0 and cfg.auto_stop_alpha_threshold > 0:
            if self._alpha <= cfg.auto_stop_alpha_threshold:
                self._stable_ticks += 1
                if self._stable_ticks >= cfg.auto_stop_tick_count:
                    self._halt('auto-stop')
                    return snapshot
            else:
                self._stable_ticks = 0

        if self._alpha < cfg.alpha_min:
            self._halt('converged')

        return snapshot

    def frames(self) -> Iterator[Snapshot]:
        """
        Lazy stream of snapshots, one per call to next().

        Ends when the simulation halts or is stopped.
        """
        while True:
            snapshot = self.step()
            if snapshot is None:
                return
            yield snapshot

    def kick(self, max_ticks: int = 10000) -> int:
        """
        Run ticks synchronously until halted.

        Args:
            max_ticks: Safety bound on the number of ticks

        Returns:
            Number of ticks run
        """
        count = 0
        while count < max_ticks and self.step() is not None:
            count += 1
        return count

    def _pins(self) -> Iterator[tuple[int, float, float]]:
        for i, nd in enumerate(self.nodes):
            if is_finite(nd.fx) and is_finite(nd.fy):
                yield i, float(nd.fx), float(nd.fy)

    def _apply_pins(self) -> None:
        for i, fx, fy in self._pins():
            self.x[0, i] = fx
            self.x[1, i] = fy
            self.v[:, i] = 0.0

    def _integrate(self) -> None:
        """Apply friction and move free nodes; pinned nodes snap to their pin."""
        self.v *= (1.0 - self.config.velocity_decay)
        self.v[~np.isfinite(self.v)] = 0.0

        moved = self.x + self.v
        bad = ~np.isfinite(moved)
        moved[bad] = self.x[bad]
        self.v[bad] = 0.0
        self.x[:] = moved

        self._apply_pins()

    def _update_node_positions(self) -> None:
        """Copy positions and velocities from the arena into the node objects."""
        for i, nd in enumerate(self.nodes):
            nd.x = float(self.x[0, i])
            nd.y = float(self.x[1, i])
            nd.vx = float(self.v[0, i])
            nd.vy = float(self.v[1, i])

    def index_of(self, node_id: Any) -> Optional[int]:
        return self._index.get(node_id)

    def node(self, node_id: Any) -> Optional[Node]:
        i = self._index.get(node_id)
        return None if i is None else self.nodes[i]

    def positions(self) -> dict[Any, tuple[float, float]]:
        """Current coordinates keyed by node id (finite ones only)."""
        return {
            nd.id: (float(self.x[0, i]), float(self.x[1, i]))
            for i, nd in enumerate(self.nodes)
            if np.isfinite(self.x[:, i]).all()
        }

    def snapshot(self) -> Snapshot:
        """Build the frame payload for the current state."""
        nodes: list[NodeFrame] = [
            {
                'id': nd.id,
                'x': float(self.x[0, i]),
                'y': float(self.x[1, i]),
                'vx': float(self.v[0, i]),
                'vy': float(self.v[1, i]),
                'fx': nd.fx,
                'fy': nd.fy,
            }
            for i, nd in enumerate(self.nodes)
        ]
        edges: list[EdgeFrame] = []
        for k, e in enumerate(self.arena_edges):
            s, t = self.edge_index[k]
            edges.append({
                'source': e.source,
                'target': e.target,
                'relationship': e.relationship.value,
                'x1': float(self.x[0, s]),
                'y1': float(self.x[1, s]),
                'x2': float(self.x[0, t]),
                'y2': float(self.x[1, t]),
            })
        return {'tick': self.ticks, 'alpha': self._alpha, 'nodes': nodes, 'edges': edges}

    def drag_start(self, node_id: Any, selection: Iterable[Any] = ()) -> None:
        """
        Handle drag start: pin the node where it is and reheat.

        Other selected nodes (multi-drag) and the node's memo annotations
        follow the pointer at their current offsets.

        Args:
            node_id: Node under the pointer
            selection: Ids of other selected nodes to drag along
        """
        i = self._index.get(node_id)
        if i is None:
            return

        node = self.nodes[i]
        ox, oy = float(self.x[0, i]), float(self.x[1, i])
        node.pin(ox, oy)

        followers: dict[int, tuple[float, float]] = {}
        for other in selection:
            j = self._index.get(other)
            if j is None or j == i:
                continue
            followers[j] = (self.x[0, j] - ox, self.x[1, j] - oy)

        if self.config.enable_force_simulation and not node.is_memo:
            for j in self._memo_indices(node_id):
                if j not in followers and j != i:
                    followers[j] = (self.x[0, j] - ox, self.x[1, j] - oy)

        self._drag[node_id] = {'followers': followers}

        if self.config.enable_force_simulation:
            self._alpha_target = self.config.drag_alpha_target
            if not self._running:
                self.restart(None)

    def _memo_indices(self, owner_id: Any) -> list[int]:
        result = []
        for k, e in enumerate(self.arena_edges):
            if e.relationship == Relationship.memo and e.source == owner_id:
                result.append(int(self.edge_index[k, 1]))
        for j, nd in enumerate(self.nodes):
            if nd.is_memo and nd.memo_parent_id == owner_id and j not in result:
                result.append(j)
        return result

    def drag(self, node_id: Any, x: float, y: float) -> None:
        """
        Handle drag: move the pin (and the followers' pins) to the pointer.

        Args:
            node_id: Dragged node
            x, y: Pointer position in scene coordinates
        """
        i = self._index.get(node_id)
        if i is None or not (is_finite(x) and is_finite(y)):
            return

        state = self._drag.get(node_id)
        if state is None:
            self.drag_start(node_id)
            state = self._drag[node_id]

        targets = [(i, float(x), float(y))]
        for j, (dx, dy) in state['followers'].items():
            targets.append((j, float(x + dx), float(y + dy)))

        for j, px, py in targets:
            self.nodes[j].pin(px, py)
            if not self._running:
                self.x[0, j] = px
                self.x[1, j] = py
                self.nodes[j].x = px
                self.nodes[j].y = py

    def drag_end(self, node_id: Any) -> None:
        """
        Handle drag end.

        In free mode (release_on_drag_end) the pins are cleared and the
        simulator takes the nodes back on the next tick; in manual mode
        the nodes stay pinned where they were dropped.

        Args:
            node_id: Dragged node
        """
        i = self._index.get(node_id)
        if i is None:
            return

        state = self._drag.pop(node_id, {'followers': {}})
        indices = [i] + list(state['followers'])
        free = self.config.release_on_drag_end and self.config.enable_force_simulation

        for j in indices:
            nd = self.nodes[j]
            if free:
                nd.unpin()
            else:
                px = nd.fx if is_finite(nd.fx) else float(self.x[0, j])
                py = nd.fy if is_finite(nd.fy) else float(self.x[1, j])
                nd.pin(px, py)

        if not self._drag:
            self._alpha_target = 0.0
