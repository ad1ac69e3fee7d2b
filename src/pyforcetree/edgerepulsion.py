"""
Edge repulsion force.

Keeps edges visually clear of unrelated nodes and of each other. Every
edge is sampled at a few fixed ratios along its segment, and

1. a node that crowds a sample of an edge it is not part of is pushed
   away from that sample, with a smaller counter impulse on the edge's
   endpoints;
2. every pair of edges pushes its endpoint sets apart wherever their
   samples come closer than a padding. Pairs that share an endpoint
   interact more weakly; pairs whose segments cross are boosted.

Samples and node radii are recomputed on every tick because positions
move. All per-pair work is vectorised with numpy.
"""

from __future__ import annotations

from typing import Optional, TYPE_CHECKING
from dataclasses import dataclass
import numpy as np

from .forces import Force
from .geom import segments_intersect_many
from .model import node_radius

if TYPE_CHECKING:
    from .simulation import Simulation


@dataclass
class EdgeRepulsionConfig:
    """Tuning of the edge repulsion force."""
    enabled: bool = True
    sample_ratios: tuple[float, ...] = (0.33, 0.5, 0.67)
    node_padding: float = 68.0
    line_padding: float = 92.0
    node_strength: float = 1.2
    line_strength: float = 0.85
    counter_force_ratio: float = 0.62
    shared_node_strength_factor: float = 0.48
    intersection_boost: float = 2.4
    fallback_radius: float = 24.0


class EdgeRepulsionForce(Force):
    """
    Node/edge and edge/edge separation force.

    Args:
        config: Tuning parameters
    """

    def __init__(self, config: Optional[EdgeRepulsionConfig] = None):
        super().__init__()
        self.config = config or EdgeRepulsionConfig()
        self.ratios = np.array(self.config.sample_ratios, dtype=float)

    def initialize(self, sim: Simulation) -> None:
        super().initialize(sim)
        self.ratios = np.array(self.config.sample_ratios, dtype=float)

    def radii(self) -> np.ndarray:
        """Effective radius of every node for this tick."""
        return np.array(
            [node_radius(n, self.config.fallback_radius) for n in self.sim.nodes],
            dtype=float
        )

    def samples(self) -> np.ndarray:
        """
        Sample points of every edge at the configured ratios.

        Returns:
            (m, s, 2) array of sample coordinates
        """
        sim = self.sim
        src = sim.edge_index[:, 0]
        tgt = sim.edge_index[:, 1]
        start = sim.x[:, src].T  # (m, 2)
        end = sim.x[:, tgt].T
        return start[:, None, :] + (end - start)[:, None, :] * self.ratios[None, :, None]

    def apply(self, alpha: float) -> None:
        sim = self.sim
        if not self.config.enabled or len(sim.edge_index) == 0 or len(sim.nodes) == 0:
            return
        if len(self.ratios) == 0:
            return

        samples = self.samples()
        edge_ok = np.isfinite(samples).all(axis=(1, 2))
        self._apply_node_edge(samples, edge_ok, alpha)
        if len(sim.edge_index) > 1:
            self._apply_edge_pairs(samples, edge_ok, alpha)

    def _apply_node_edge(self, samples: np.ndarray, edge_ok: np.ndarray, alpha: float) -> None:
        sim = self.sim
        cfg = self.config
        n = len(sim.nodes)
        src = sim.edge_index[:, 0]
        tgt = sim.edge_index[:, 1]

        positions = sim.x.T  # (n, 2)
        node_ok = np.isfinite(positions).all(axis=1)
        padding = self.radii() + cfg.node_padding  # (n,)

        # delta[i, k, s] points from sample s of edge k to node i
        delta = positions[:, None, None, :] - samples[None, :, :, :]
        dist = np.hypot(delta[..., 0], delta[..., 1])

        idx = np.arange(n)[:, None]
        incident = (src[None, :] == idx) | (tgt[None, :] == idx)  # (n, m)
        pair_ok = node_ok[:, None] & edge_ok[None, :] & ~incident

        pad = padding[:, None, None]
        ok = pair_ok[:, :, None] & np.isfinite(dist) & (dist > 0) & (dist < pad)
        if not ok.any():
            return

        safe = np.where(ok, dist, 1.0)
        strength = np.where(ok, (pad - dist) / pad * cfg.node_strength * alpha, 0.0)
        push = np.where(ok[..., None], delta / safe[..., None] * strength[..., None], 0.0)

        node_push = push.sum(axis=(1, 2))  # (n, 2)
        sim.v[0] += node_push[:, 0]
        sim.v[1] += node_push[:, 1]

        counter = -push.sum(axis=(0, 2)) * cfg.counter_force_ratio  # (m, 2)
        for end in (src, tgt):
            np.add.at(sim.v[0], end, counter[:, 0])
            np.add.at(sim.v[1], end, counter[:, 1])

    def _apply_edge_pairs(self, samples: np.ndarray, edge_ok: np.ndarray, alpha: float) -> None:
        sim = self.sim
        cfg = self.config
        m = len(sim.edge_index)
        src = sim.edge_index[:, 0]
        tgt = sim.edge_index[:, 1]

        I, J = np.triu_indices(m, 1)
        valid = edge_ok[I] & edge_ok[J]
        if not valid.any():
            return
        I, J = I[valid], J[valid]

        shared = (
            (src[I] == src[J]) | (src[I] == tgt[J])
            | (tgt[I] == src[J]) | (tgt[I] == tgt[J])
        )
        base = cfg.line_strength * np.where(shared, cfg.shared_node_strength_factor, 1.0)

        segments = np.concatenate([sim.x[:, src].T, sim.x[:, tgt].T], axis=1)  # (m, 4)
        crossing = segments_intersect_many(segments[I], segments[J]) & ~shared
        effective = base * np.where(crossing, cfg.intersection_boost, 1.0)
        active = effective > 0
        if not active.any():
            return
        I, J, effective = I[active], J[active], effective[active]

        # delta[p, a, b] points from sample a of edge I to sample b of edge J
        delta = samples[J][:, None, :, :] - samples[I][:, :, None, :]
        dist = np.hypot(delta[..., 0], delta[..., 1])
        pad = cfg.line_padding
        ok = np.isfinite(dist) & (dist > 0) & (dist < pad)
        if not ok.any():
            return

        safe = np.where(ok, dist, 1.0)
        scaled = np.where(ok, (pad - dist) / pad * effective[:, None, None] * alpha, 0.0)
        push = np.where(ok[..., None], delta / safe[..., None] * scaled[..., None], 0.0)
        push = push.sum(axis=(1, 2))  # (p, 2)

        for end in (src[I], tgt[I]):
            np.add.at(sim.v[0], end, -push[:, 0])
            np.add.at(sim.v[1], end, -push[:, 1])
        for end in (src[J], tgt[J]):
            np.add.at(sim.v[0], end, push[:, 0])
            np.add.at(sim.v[1], end, push[:, 1])
