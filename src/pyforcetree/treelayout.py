"""
Tidy tree layout and the animator that moves nodes onto it.

compute_tree_layout() turns the visible hierarchy into target coordinates:
leaves take consecutive breadth slots, parents sit centred over their
first and last child, and depth grows by a fixed spacing per level.
LayoutAnimator interpolates from the last rendered positions to those
targets with a cubic ease-in-out.
"""

from __future__ import annotations

from typing import Any, Callable, Iterable, Iterator, Mapping, Optional
import logging
import math
import time

from sortedcontainers import SortedDict

from .model import Node, Edge, Relationship, is_finite
from .positions import Position, _coerce

logger = logging.getLogger(__name__)

VIRTUAL_ROOT = '__virtual_root__'

MARGIN = 120.0
MIN_USABLE = 120.0
MIN_BREADTH_SPACING = 28.0
MAX_BREADTH_SPACING = 96.0
MIN_DEPTH_SPACING = 140.0
SIBLING_SEPARATION = 1.0
COUSIN_SEPARATION = 1.5


class _TreeNode:
    __slots__ = ('id', 'parent', 'children', 'depth', 'breadth')

    def __init__(self, id: Any, parent: Optional[_TreeNode] = None):
        self.id = id
        self.parent = parent
        self.children: list[_TreeNode] = []
        self.depth = 0
        self.breadth = 0.0


def _sort_key(node: Node) -> tuple[str, str]:
    keyword = getattr(node, 'keyword', None) or getattr(node, 'name', None) or ''
    return (str(keyword), str(node.id))


def _build_hierarchy(nodes: list[Node], edges: Iterable[Edge]) -> Optional[_TreeNode]:
    """
    Nest nodes along hierarchy and memo edges.

    Nodes without an incoming edge are roots; several roots hang under a
    virtual root. Returns None when there is no root at all.
    """
    by_id = {n.id: n for n in nodes}
    children: dict[Any, list[Any]] = {}
    has_parent = set()
    for e in edges:
        if e.relationship == Relationship.connection:
            continue
        if e.source not in by_id or e.target not in by_id or e.target in has_parent:
            continue
        children.setdefault(e.source, []).append(e.target)
        has_parent.add(e.target)

    roots = [n for n in nodes if n.id not in has_parent]
    if not roots:
        return None

    seen = {r.id for r in roots}
    if len(roots) == 1:
        top = _TreeNode(roots[0].id)
    else:
        top = _TreeNode(VIRTUAL_ROOT)
        for r in sorted(roots, key=_sort_key):
            top.children.append(_TreeNode(r.id, parent=top))

    stack = [top]
    while stack:
        t = stack.pop()
        if t.parent is not None:
            t.depth = t.parent.depth + 1
        if t.id != VIRTUAL_ROOT:
            kids = [by_id[c] for c in children.get(t.id, ()) if c not in seen]
            for k in sorted(kids, key=_sort_key):
                t.children.append(_TreeNode(k.id, parent=t))
                seen.add(k.id)
        stack.extend(reversed(t.children))
    return top


def _walk(root: _TreeNode) -> Iterator[_TreeNode]:
    stack = [root]
    while stack:
        t = stack.pop()
        yield t
        stack.extend(reversed(t.children))


def _height(root: _TreeNode) -> int:
    return max(t.depth for t in _walk(root)) - root.depth


def compute_tree_layout(
    nodes: Iterable[Node],
    edges: Iterable[Edge],
    width: float = 900,
    height: float = 700,
    orientation: str = 'vertical'
) -> dict[Any, Position]:
    """
    Compute tidy tree target positions.

    Args:
        nodes: Visible nodes
        edges: Visible edges; connection edges are ignored
        width, height: Viewport size
        orientation: 'vertical' (depth grows downwards) or 'horizontal'

    Returns:
        Dict node id -> (x, y). With no root the current positions are
        returned unchanged.
    """
    nodes = list(nodes)
    width = width if is_finite(width) else 900
    height = height if is_finite(height) else 700
    horizontal = orientation == 'horizontal'
    usable_w = max(width - MARGIN, MIN_USABLE)
    usable_h = max(height - MARGIN, MIN_USABLE)

    root = _build_hierarchy(nodes, edges)
    if root is None:
        logger.debug("tree layout skipped: no root among %d nodes", len(nodes))
        return {n.id: (float(n.x or 0.0), float(n.y or 0.0)) for n in nodes}

    leaves = [t for t in _walk(root) if not t.children]
    breadth_spacing = max(
        MIN_BREADTH_SPACING,
        min(MAX_BREADTH_SPACING, (usable_h if horizontal else usable_w) / max(len(leaves), 1))
    )
    depth_spacing = max(
        MIN_DEPTH_SPACING,
        (usable_w if horizontal else usable_h) / max(1, _height(root) + 1)
    )

    previous = None
    for leaf in leaves:
        if previous is None:
            leaf.breadth = 0.0
        else:
            sep = SIBLING_SEPARATION if previous.parent is leaf.parent else COUSIN_SEPARATION
            leaf.breadth = previous.breadth + sep * breadth_spacing
        previous = leaf

    # parents after children: bucket by depth and go deepest first
    by_depth = SortedDict()
    for t in _walk(root):
        by_depth.setdefault(t.depth, []).append(t)
    for depth in reversed(by_depth.keys()):
        for t in by_depth[depth]:
            if t.children:
                t.breadth = (t.children[0].breadth + t.children[-1].breadth) / 2

    min_breadth = min(t.breadth for t in _walk(root))
    breadth_offset = max(breadth_spacing, 40.0)
    depth_offset = max(depth_spacing * 0.35, 50.0)

    result: dict[Any, Position] = {}
    for t in _walk(root):
        if t.id == VIRTUAL_ROOT:
            continue
        b = (t.breadth - min_breadth) + breadth_offset
        d = t.depth * depth_spacing + depth_offset
        result[t.id] = (d, b) if horizontal else (b, d)

    # nodes cut off by a cycle keep where they are
    for n in nodes:
        if n.id not in result:
            result[n.id] = (float(n.x or 0.0), float(n.y or 0.0))
    return result


def ease_cubic_in_out(t: float) -> float:
    """Cubic ease-in-out on [0, 1]."""
    t = min(max(t, 0.0), 1.0)
    if t < 0.5:
        return 4 * t * t * t
    return 1 - math.pow(-2 * t + 2, 3) / 2


class LayoutAnimator:
    """
    Interpolates node positions towards layout targets over a fixed duration.

    Args:
        duration: Animation length in seconds
        clock: Time source used when frame() is called without a time
    """

    def __init__(self, duration: float = 1.0, clock: Callable[[], float] = time.monotonic):
        self.duration = duration
        self.clock = clock
        self._origin: dict[Any, Position] = {}
        self._targets: dict[Any, Position] = {}
        self._rendered: dict[Any, Position] = {}
        self._start = 0.0
        self._active = False
        self._cancelled = False
        self._generation = 0

    @property
    def is_animating(self) -> bool:
        return self._active

    @property
    def rendered(self) -> dict[Any, Position]:
        """Last positions handed out by frame() or frames()."""
        return dict(self._rendered)

    def animate(
        self,
        targets: Mapping[Any, Any],
        current: Optional[Mapping[Any, Any]] = None,
        now: Optional[float] = None
    ) -> LayoutAnimator:
        """
        Start a new animation, cancelling any running one.

        Each node starts from its last rendered position, else from
        current, else from its target.

        Args:
            targets: Dict node id -> target position
            current: Fallback start positions
            now: Start time (defaults to the clock)
        """
        self.stop()
        current = current or {}
        self._targets = {}
        self._origin = {}
        for node_id, value in targets.items():
            target = _coerce(value)
            if target is None:
                continue
            self._targets[node_id] = target
            start = self._rendered.get(node_id) or _coerce(current.get(node_id)) or target
            self._origin[node_id] = start
        self._start = self.clock() if now is None else now
        self._active = True
        self._cancelled = False
        return self

    def _interpolate(self, progress: float) -> dict[Any, Position]:
        eased = ease_cubic_in_out(progress)
        positions = {}
        for node_id, (tx, ty) in self._targets.items():
            if progress >= 1:
                positions[node_id] = (tx, ty)
                continue
            ox, oy = self._origin[node_id]
            positions[node_id] = (ox + (tx - ox) * eased, oy + (ty - oy) * eased)
        self._rendered.update(positions)
        return positions

    def frame(self, now: Optional[float] = None) -> Optional[dict[Any, Position]]:
        """
        Positions for a clock value.

        Returns:
            Dict node id -> (x, y), or None when no animation is running.
            The frame at or after the end lands exactly on the targets and
            completes the animation.
        """
        if not self._active:
            return None
        now = self.clock() if now is None else now
        if self.duration <= 0:
            progress = 1.0
        else:
            progress = min(max((now - self._start) / self.duration, 0.0), 1.0)
        positions = self._interpolate(progress)
        if progress >= 1:
            self._active = False
        return positions

    def frames(self, fps: float = 60) -> Iterator[dict[Any, Position]]:
        """
        Finite frame sequence at a fixed rate, independent of the clock.

        Every call starts again from the beginning of the current
        animation. The sequence ends early if stop() or animate() is called.
        """
        if self._cancelled or not self._targets:
            return
        generation = self._generation
        count = max(1, math.ceil(self.duration * fps))
        for k in range(1, count + 1):
            if generation != self._generation:
                return
            yield self._interpolate(k / count)
        if generation == self._generation:
            self._active = False

    def stop(self) -> None:
        """Cancel the running animation; no further frame is produced."""
        self._generation += 1
        self._active = False
        self._cancelled = True

    def discard(self, node_ids: Iterable[Any]) -> None:
        """Forget removed nodes, including any in the running animation."""
        for node_id in node_ids:
            self._rendered.pop(node_id, None)
            self._targets.pop(node_id, None)
            self._origin.pop(node_id, None)

    def animate_static(self, targets: Mapping[Any, Any]) -> dict[Any, dict]:
        """
        Jump straight to the targets with every node pinned there.

        Returns:
            Dict node id -> {'x', 'y', 'fx', 'fy'}
        """
        self.stop()
        result = {}
        for node_id, value in targets.items():
            p = _coerce(value)
            if p is None:
                continue
            result[node_id] = {'x': p[0], 'y': p[1], 'fx': p[0], 'fy': p[1]}
            self._rendered[node_id] = p
        return result
