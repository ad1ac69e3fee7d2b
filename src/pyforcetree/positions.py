"""
Node position bookkeeping.

PositionStore keeps the live id -> (x, y) map that survives layout
recomputation, snapshots and restores node coordinates, and places new
nodes on depth rings when nothing better is known.
"""

from __future__ import annotations

from typing import Any, Iterable, Mapping, Optional, Union
import logging
import math
import random

from sortedcontainers import SortedDict

from .model import Node, is_finite

logger = logging.getLogger(__name__)

BASE_RING_RADIUS = 200.0
RING_GAP = 120.0
JITTER = 50.0

Position = tuple[float, float]


def _coerce(value: Any) -> Optional[Position]:
    """Accept (x, y) pairs and {'x': .., 'y': ..} mappings; None if not finite."""
    if value is None:
        return None
    if isinstance(value, Mapping):
        x, y = value.get('x'), value.get('y')
    else:
        try:
            x, y = value
        except (TypeError, ValueError):
            return None
    if is_finite(x) and is_finite(y):
        return (float(x), float(y))
    return None


def snapshot(nodes: Iterable[Node]) -> dict[Any, Position]:
    """
    Capture the current coordinates of nodes.

    Args:
        nodes: Nodes to capture; nodes without finite coordinates are skipped

    Returns:
        Dict node id -> (x, y)
    """
    return {n.id: (float(n.x), float(n.y)) for n in nodes if n.has_position()}


def restore(positions: Mapping[Any, Any], nodes: Iterable[Node]) -> int:
    """
    Apply known coordinates to nodes.

    Matched nodes get the stored position and zero velocity. Unmatched
    nodes keep their coordinates when those are finite.

    Args:
        positions: Dict node id -> (x, y) or {'x', 'y'}
        nodes: Nodes to update

    Returns:
        Number of restored nodes
    """
    restored = 0
    for n in nodes:
        p = _coerce(positions.get(n.id))
        if p is None:
            continue
        n.x, n.y = p
        n.vx = 0.0
        n.vy = 0.0
        restored += 1

    if restored:
        logger.debug("restored %d node positions", restored)
    return restored


def ring_radius(level: int) -> float:
    """Radius of the fallback ring for a depth."""
    return BASE_RING_RADIUS + max(level, 0) * RING_GAP


def assign_fallback_positions(
    nodes: Iterable[Node],
    rng: Optional[random.Random] = None
) -> list[Node]:
    """
    Place unpositioned nodes evenly on a ring per depth.

    Each depth gets a random global angular offset; node i of a ring of
    count nodes (ordered by id) sits at offset + 2*pi*i/count with a small
    random jitter. Positioned nodes are left alone but keep their slot, so
    every placed node of a ring gets its own angle.

    Args:
        nodes: Nodes to place
        rng: Random source; pass a seeded random.Random for repeatable output

    Returns:
        The nodes that were placed
    """
    rng = rng if rng is not None else random.Random()

    levels = SortedDict()
    for n in nodes:
        level = n.level if is_finite(n.level) else 0
        levels.setdefault(level, []).append(n)

    placed = []
    for level, items in levels.items():
        radius = ring_radius(level)
        ordered = sorted(items, key=lambda n: str(n.id) if n.id is not None else '')
        count = len(ordered) or 1
        offset = rng.random() * math.pi * 2

        for i, n in enumerate(ordered):
            if n.has_position():
                continue
            angle = offset + (i / count) * math.pi * 2
            jitter_x = (rng.random() - 0.5) * JITTER
            jitter_y = (rng.random() - 0.5) * JITTER
            n.x = math.cos(angle) * radius + jitter_x
            n.y = math.sin(angle) * radius + jitter_y
            n.fallback_angle = angle
            placed.append(n)

    return placed


class PositionStore:
    """
    Live position map keyed by node id.

    The store outlives individual simulations: every frame records the
    latest coordinates, and a new layout starts from them.
    """

    def __init__(self, positions: Optional[Mapping[Any, Any]] = None):
        self._positions: dict[Any, Position] = {}
        if positions:
            self.update(positions)

    def __len__(self) -> int:
        return len(self._positions)

    def __contains__(self, node_id: Any) -> bool:
        return node_id in self._positions

    def get(self, node_id: Any) -> Optional[Position]:
        return self._positions.get(node_id)

    def as_dict(self) -> dict[Any, Position]:
        return dict(self._positions)

    def update(self, positions: Union[Mapping[Any, Any], Iterable[Node]]) -> None:
        """
        Merge positions into the store.

        Args:
            positions: Dict id -> position, or nodes whose coordinates to record
        """
        if isinstance(positions, Mapping):
            items = positions.items()
        else:
            items = snapshot(positions).items()
        for node_id, value in items:
            p = _coerce(value)
            if p is not None:
                self._positions[node_id] = p

    def discard(self, node_ids: Iterable[Any]) -> None:
        for node_id in node_ids:
            self._positions.pop(node_id, None)

    def restore(self, nodes: Iterable[Node]) -> int:
        return restore(self._positions, nodes)

    def prepare(self, nodes: list[Node], rng: Optional[random.Random] = None) -> None:
        """
        Give every node a starting position.

        Known positions are restored first, then the rest is placed on
        fallback rings. The result is recorded back into the store.
        """
        self.restore(nodes)
        assign_fallback_positions(nodes, rng)
        self.update(nodes)
