"""
Standard forces for the force-field simulator.

Each force follows the same two-step protocol: initialize(simulation)
binds it to the simulator's arena (node list, 2 x n position and velocity
arrays, edge index arrays) and precomputes per-node or per-edge
parameters; apply(alpha) adds impulses to the velocity array for one
tick. Forces never write pinned coordinates; the integrator restores pins
after all forces ran.

Zero-length and non-finite vectors are masked out before any impulse is
applied so that a degenerate pair cannot poison the position arrays.
"""

from __future__ import annotations

from typing import Any, Optional, TYPE_CHECKING
from dataclasses import dataclass
import math
import numpy as np

from .model import Node, NodeShape, Relationship, node_radius

if TYPE_CHECKING:
    from .simulation import Simulation


@dataclass
class ForceConfig:
    """
    Strengths and distances of the standard forces.

    Link rest distances depend on the target: memo annotations sit close
    and rigid, leaves closer than branches. Charge gets weaker with depth.
    """
    # Link
    memo_link_distance: float = 18.0
    memo_link_strength: float = 3.1
    leaf_link_distance: float = 72.0
    leaf_link_strength: float = 1.6
    branch_link_distance: float = 108.0
    branch_link_strength: float = 0.9
    connection_link_distance: float = 160.0
    connection_link_strength: float = 0.05

    # Charge (many-body)
    root_charge: float = -520.0
    level1_charge: float = -420.0
    level2_charge: float = -320.0
    default_charge: float = -260.0
    memo_charge: float = -25.0
    charge_distance_min: float = 12.0
    charge_distance_max: Optional[float] = None

    # Collision
    collide_radius: float = 40.0
    memo_collide_radius: float = 16.0
    collide_padding: float = 8.0
    collide_strength: float = 0.9

    # Anchor springs (x / y)
    anchor_strength: float = 0.025
    memo_anchor_strength: float = 0.012

    # Radial rings
    child_radius: float = 140.0
    grandchild_radius: float = 280.0
    radial_gap: float = 140.0
    radial_strength: float = 0.24
    memo_radial_strength: float = 0.05

    # Angular sectors
    sibling_padding: float = 0.05


def charge_strength(node: Node, config: ForceConfig) -> float:
    """Many-body strength of a node: nearer the root repels harder."""
    if node.is_memo:
        return config.memo_charge
    if node.level <= 0:
        return config.root_charge
    if node.level == 1:
        return config.level1_charge
    if node.level == 2:
        return config.level2_charge
    return config.default_charge


def collision_radius(node: Node, config: ForceConfig) -> float:
    """Collision radius by node shape and type."""
    if node.shape == NodeShape.dot:
        return node_radius(node) + config.collide_padding
    if node.is_memo:
        return config.memo_collide_radius
    return max(config.collide_radius, node_radius(node) + config.collide_padding)


def ring_radius(level: int, config: ForceConfig) -> float:
    """Target distance from the anchor for a depth."""
    if level <= 0:
        return 0.0
    if level == 1:
        return config.child_radius
    if level == 2:
        return config.grandchild_radius
    return config.grandchild_radius + (level - 2) * config.radial_gap


def link_parameters(edge: Any, target: Node, config: ForceConfig) -> tuple[float, float]:
    """
    Rest distance and strength of an edge, by target type.

    Args:
        edge: The edge
        target: Target node of the edge
        config: Force configuration

    Returns:
        (distance, strength)
    """
    if edge.relationship == Relationship.connection:
        return config.connection_link_distance, config.connection_link_strength
    if target.is_memo or edge.relationship == Relationship.memo:
        return config.memo_link_distance, config.memo_link_strength
    if not target.child_count:
        return config.leaf_link_distance, config.leaf_link_strength
    return config.branch_link_distance, config.branch_link_strength


def sector_angles(
    children: dict[Any, list],
    roots: list[Any],
    sibling_padding: float = 0.05
) -> dict[Any, float]:
    """
    Split the full circle into angular sectors down the hierarchy.

    Every child gets an equal slice of its parent's span (minus a small
    padding between siblings); a node's angle is the middle of its slice.
    Several roots share the circle as if under a virtual root.

    Args:
        children: Parent id -> child ids
        roots: Root ids
        sibling_padding: Padding in radians, capped at a third of a slice

    Returns:
        Dict node id -> angle in radians
    """
    angles: dict[Any, float] = {}
    stack: list[tuple[Any, float, float]] = []

    def split(ids: list, start: float, end: float) -> None:
        slice_ = (end - start) / max(len(ids), 1)
        padding = min(sibling_padding, slice_ / 3)
        # reversed so the first child is assigned first
        for i in reversed(range(len(ids))):
            stack.append((
                ids[i],
                start + i * slice_ + padding,
                start + (i + 1) * slice_ - padding
            ))

    if len(roots) == 1:
        stack.append((roots[0], 0.0, 2 * math.pi))
    elif roots:
        split(list(roots), 0.0, 2 * math.pi)

    while stack:
        node_id, start, end = stack.pop()
        if node_id in angles:
            continue
        angles[node_id] = (start + end) / 2
        kids = [c for c in children.get(node_id, ()) if c not in angles]
        if kids:
            split(kids, start, end)
    return angles


class Force:
    """Base class for forces."""

    def __init__(self):
        self.sim: Optional[Simulation] = None

    def initialize(self, sim: Simulation) -> None:
        """
        Bind the force to a simulation.

        Args:
            sim: The simulation; its arena must be built already
        """
        self.sim = sim

    def apply(self, alpha: float) -> None:
        """Add this force's impulses for one tick."""
        raise NotImplementedError


class LinkForce(Force):
    """
    Spring along every edge towards a rest distance.

    Impulses are split between the endpoints by degree, so that hubs move
    less than leaves.
    """

    def __init__(self, config: Optional[ForceConfig] = None):
        super().__init__()
        self.config = config or ForceConfig()
        self.distances = np.zeros(0)
        self.strengths = np.zeros(0)
        self.bias = np.zeros(0)

    def initialize(self, sim: Simulation) -> None:
        super().initialize(sim)
        m = len(sim.edge_index)
        self.distances = np.zeros(m)
        self.strengths = np.zeros(m)

        for k, edge in enumerate(sim.arena_edges):
            target = sim.nodes[sim.edge_index[k, 1]]
            self.distances[k], self.strengths[k] = link_parameters(edge, target, self.config)

        count = np.zeros(len(sim.nodes))
        if m:
            np.add.at(count, sim.edge_index[:, 0], 1)
            np.add.at(count, sim.edge_index[:, 1], 1)
            s = count[sim.edge_index[:, 0]]
            t = count[sim.edge_index[:, 1]]
            self.bias = s / (s + t)
        else:
            self.bias = np.zeros(0)

    def apply(self, alpha: float) -> None:
        sim = self.sim
        if len(sim.edge_index) == 0:
            return

        src = sim.edge_index[:, 0]
        tgt = sim.edge_index[:, 1]
        predicted = sim.x + sim.v
        dx = predicted[0, tgt] - predicted[0, src]
        dy = predicted[1, tgt] - predicted[1, src]
        length = np.hypot(dx, dy)

        ok = np.isfinite(length) & (length > 0)
        factor = np.zeros_like(length)
        factor[ok] = (length[ok] - self.distances[ok]) / length[ok] * alpha * self.strengths[ok]
        dx = np.where(ok, dx * factor, 0.0)
        dy = np.where(ok, dy * factor, 0.0)

        np.add.at(sim.v[0], tgt, -dx * self.bias)
        np.add.at(sim.v[1], tgt, -dy * self.bias)
        np.add.at(sim.v[0], src, dx * (1 - self.bias))
        np.add.at(sim.v[1], src, dy * (1 - self.bias))


class ManyBodyForce(Force):
    """
    Pairwise charge between all nodes.

    Negative strengths repel. Distances below distance_min are softened and
    pairs farther than distance_max are ignored.
    """

    def __init__(self, config: Optional[ForceConfig] = None):
        super().__init__()
        self.config = config or ForceConfig()
        self.strengths = np.zeros(0)

    def initialize(self, sim: Simulation) -> None:
        super().initialize(sim)
        self.strengths = np.array([charge_strength(n, self.config) for n in sim.nodes], dtype=float)

    def apply(self, alpha: float) -> None:
        sim = self.sim
        n = len(sim.nodes)
        if n < 2:
            return

        d_min2 = self.config.charge_distance_min ** 2
        d_max = self.config.charge_distance_max
        if d_max is None:
            d_max = max(sim.config.width, sim.config.height)
        d_max2 = d_max * d_max

        # dx[i, j] points from i to j
        dx = sim.x[0][None, :] - sim.x[0][:, None]
        dy = sim.x[1][None, :] - sim.x[1][:, None]
        l2 = dx * dx + dy * dy

        ok = np.isfinite(l2) & (l2 > 0) & (l2 < d_max2)
        np.fill_diagonal(ok, False)
        l2 = np.where(l2 < d_min2, np.sqrt(d_min2 * l2), l2)
        scale = np.zeros_like(l2)
        scale[ok] = (self.strengths[None, :] * alpha / np.where(ok, l2, 1.0))[ok]

        sim.v[0] += np.sum(np.where(ok, dx, 0.0) * scale, axis=1)
        sim.v[1] += np.sum(np.where(ok, dy, 0.0) * scale, axis=1)


class CollideForce(Force):
    """Push overlapping nodes apart, heavier push on the smaller node."""

    def __init__(self, config: Optional[ForceConfig] = None):
        super().__init__()
        self.config = config or ForceConfig()
        self.radii = np.zeros(0)

    def initialize(self, sim: Simulation) -> None:
        super().initialize(sim)
        self.radii = np.array([collision_radius(n, self.config) for n in sim.nodes], dtype=float)

    def apply(self, alpha: float) -> None:
        sim = self.sim
        n = len(sim.nodes)
        if n < 2:
            return

        predicted = sim.x + sim.v
        dx = predicted[0][:, None] - predicted[0][None, :]
        dy = predicted[1][:, None] - predicted[1][None, :]
        l2 = dx * dx + dy * dy
        r = self.radii[:, None] + self.radii[None, :]

        ok = np.isfinite(l2) & (l2 > 0) & (l2 < r * r)
        np.fill_diagonal(ok, False)
        if not ok.any():
            return

        length = np.sqrt(np.where(ok, l2, 1.0))
        factor = np.where(ok, (r - length) / length * self.config.collide_strength, 0.0)
        ri2 = (self.radii ** 2)[:, None]
        rj2 = (self.radii ** 2)[None, :]
        share = rj2 / (ri2 + rj2)

        sim.v[0] += np.sum(np.where(ok, dx, 0.0) * factor * share, axis=1)
        sim.v[1] += np.sum(np.where(ok, dy, 0.0) * factor * share, axis=1)


class PositionForce(Force):
    """
    Weak spring of each node towards its own anchor point.

    The anchor is the node's last known position when there is one,
    otherwise its angular-sector target, otherwise the simulation anchor.
    """

    def __init__(self, config: Optional[ForceConfig] = None):
        super().__init__()
        self.config = config or ForceConfig()
        self.targets = np.zeros((2, 0))
        self.strengths = np.zeros(0)

    def initialize(self, sim: Simulation) -> None:
        super().initialize(sim)
        self.targets = np.array(sim.anchor_targets, dtype=float).reshape(2, len(sim.nodes))
        self.strengths = np.array([
            self.config.memo_anchor_strength if n.is_memo else self.config.anchor_strength
            for n in sim.nodes
        ], dtype=float)

    def apply(self, alpha: float) -> None:
        sim = self.sim
        delta = self.targets - sim.x
        delta = np.where(np.isfinite(delta), delta, 0.0)
        sim.v += delta * self.strengths[None, :] * alpha


class RadialForce(Force):
    """Pull each node towards the ring radius of its depth."""

    def __init__(self, config: Optional[ForceConfig] = None):
        super().__init__()
        self.config = config or ForceConfig()
        self.radii = np.zeros(0)
        self.strengths = np.zeros(0)

    def initialize(self, sim: Simulation) -> None:
        super().initialize(sim)
        self.radii = np.array([ring_radius(n.level, self.config) for n in sim.nodes], dtype=float)
        self.strengths = np.array([
            self.config.memo_radial_strength if n.is_memo else self.config.radial_strength
            for n in sim.nodes
        ], dtype=float)

    def apply(self, alpha: float) -> None:
        sim = self.sim
        cx, cy = sim.config.anchor
        dx = sim.x[0] - cx
        dy = sim.x[1] - cy
        r = np.hypot(dx, dy)

        ok = np.isfinite(r) & (r > 0)
        k = np.zeros_like(r)
        k[ok] = (self.radii[ok] - r[ok]) * self.strengths[ok] * alpha / r[ok]
        sim.v[0] += np.where(ok, dx * k, 0.0)
        sim.v[1] += np.where(ok, dy * k, 0.0)


class CenterForce(Force):
    """Translate the whole layout so that its mean sits on the anchor."""

    def __init__(self, strength: float = 1.0):
        super().__init__()
        self.strength = strength

    def apply(self, alpha: float) -> None:
        sim = self.sim
        finite = np.isfinite(sim.x).all(axis=0)
        if not finite.any():
            return
        cx, cy = sim.config.anchor
        sx = (sim.x[0, finite].mean() - cx) * self.strength
        sy = (sim.x[1, finite].mean() - cy) * self.strength
        sim.x[0, finite] -= sx
        sim.x[1, finite] -= sy
