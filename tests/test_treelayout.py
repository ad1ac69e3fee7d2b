"""Tests for the tidy tree layout and animator."""

import pytest
from pyforcetree.model import Node, make_edge
from pyforcetree.treelayout import LayoutAnimator, compute_tree_layout, ease_cubic_in_out


def tree():
    """R -> A, R -> C, A -> D, A -> E."""
    nodes = [Node(i) for i in ['R', 'A', 'C', 'D', 'E']]
    edges = [make_edge('R', 'A'), make_edge('R', 'C'), make_edge('A', 'D'), make_edge('A', 'E')]
    return nodes, edges


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestComputeTreeLayout:
    """Test compute_tree_layout."""

    def test_vertical(self):
        """Test slots, centring and spacing."""
        nodes, edges = tree()
        pos = compute_tree_layout(nodes, edges, 900, 700)
        breadth = 96.0
        depth = 580 / 3
        depth_offset = depth * 0.35
        assert pos['D'] == pytest.approx((breadth, 2 * depth + depth_offset))
        assert pos['E'] == pytest.approx((2 * breadth, 2 * depth + depth_offset))
        # cousins are 1.5 slots apart
        assert pos['C'][0] == pytest.approx(pos['E'][0] + 1.5 * breadth)
        assert pos['A'] == pytest.approx((1.5 * breadth, depth + depth_offset))
        assert pos['R'][0] == pytest.approx((pos['A'][0] + pos['C'][0]) / 2)
        assert pos['R'][1] == pytest.approx(depth_offset)

    def test_horizontal(self):
        """Test depth runs along x in horizontal orientation."""
        nodes, edges = tree()
        pos = compute_tree_layout(nodes, edges, 900, 700, orientation='horizontal')
        assert pos['R'][0] < pos['A'][0] < pos['D'][0]
        assert pos['D'][1] < pos['E'][1]
        assert pos['A'][0] == pytest.approx(pos['C'][0])

    def test_small_viewport_minimums(self):
        """Test spacing minimums on a tiny viewport."""
        nodes, edges = tree()
        pos = compute_tree_layout(nodes, edges, 10, 10)
        assert pos['E'][0] - pos['D'][0] == pytest.approx(40.0)
        assert pos['A'][1] - pos['R'][1] == pytest.approx(140.0)
        assert pos['R'][1] == pytest.approx(50.0)

    def test_keyword_order(self):
        """Test children are sorted by keyword."""
        nodes = [Node('R'), Node('a', keyword='zeta'), Node('b', keyword='alpha')]
        edges = [make_edge('R', 'a'), make_edge('R', 'b')]
        pos = compute_tree_layout(nodes, edges)
        assert pos['b'][0] < pos['a'][0]

    def test_multiple_roots(self):
        """Test several roots hang under a virtual root."""
        nodes = [Node('P'), Node('Q')]
        pos = compute_tree_layout(nodes, [])
        assert set(pos) == {'P', 'Q'}
        assert pos['P'][1] == pytest.approx(pos['Q'][1])
        assert pos['Q'][0] - pos['P'][0] == pytest.approx(96.0)
        assert pos['P'][1] > 140.0

    def test_connection_edges_ignored(self):
        """Test cross links do not change the hierarchy."""
        nodes, edges = tree()
        plain = compute_tree_layout(nodes, edges)
        linked = compute_tree_layout(nodes, edges + [make_edge('D', 'C', 'connection')])
        assert plain == linked

    def test_memo_placed_under_owner(self):
        """Test memo nodes are laid out as children of their owner."""
        nodes = [Node('R'), Node('M', node_type='memo')]
        pos = compute_tree_layout(nodes, [make_edge('R', 'M', 'memo')])
        assert pos['M'][1] > pos['R'][1]

    def test_no_root_keeps_positions(self):
        """Test a rootless graph returns current positions."""
        nodes = [Node('a', x=1.0, y=2.0), Node('b')]
        edges = [make_edge('a', 'b'), make_edge('b', 'a')]
        assert compute_tree_layout(nodes, edges) == {'a': (1.0, 2.0), 'b': (0.0, 0.0)}


class TestEasing:
    """Test ease_cubic_in_out."""

    def test_endpoints(self):
        """Test fixed points."""
        assert ease_cubic_in_out(0.0) == 0.0
        assert ease_cubic_in_out(0.5) == pytest.approx(0.5)
        assert ease_cubic_in_out(1.0) == 1.0

    def test_shape(self):
        """Test slow start and clamping."""
        assert ease_cubic_in_out(0.25) == pytest.approx(0.0625)
        assert ease_cubic_in_out(0.75) == pytest.approx(0.9375)
        assert ease_cubic_in_out(-1.0) == 0.0
        assert ease_cubic_in_out(2.0) == 1.0


class TestLayoutAnimator:
    """Test LayoutAnimator."""

    def test_interpolates_and_finishes(self):
        """Test mid-way and final frames."""
        clock = FakeClock()
        anim = LayoutAnimator(clock=clock)
        anim.animate({'a': (100.0, 0.0)}, current={'a': (0.0, 0.0)})
        assert anim.is_animating
        clock.now = 0.5
        assert anim.frame()['a'] == pytest.approx((50.0, 0.0))
        clock.now = 1.5
        assert anim.frame() == {'a': (100.0, 0.0)}
        assert not anim.is_animating
        assert anim.frame() is None

    def test_explicit_time(self):
        """Test frame with an explicit clock value."""
        anim = LayoutAnimator(duration=2.0)
        anim.animate({'a': (10.0, 10.0)}, current={'a': (0.0, 0.0)}, now=100.0)
        assert anim.frame(100.5)['a'] == pytest.approx((0.625, 0.625))

    def test_missing_start_uses_target(self):
        """Test nodes without a start position appear on their target."""
        anim = LayoutAnimator()
        anim.animate({'a': (5.0, 5.0)}, now=0.0)
        assert anim.frame(0.3) == {'a': (5.0, 5.0)}

    def test_restart_from_rendered(self):
        """Test a new animation starts where the last frame was drawn."""
        anim = LayoutAnimator()
        anim.animate({'a': (100.0, 0.0)}, current={'a': (0.0, 0.0)}, now=0.0)
        anim.frame(0.5)
        anim.animate({'a': (0.0, 0.0)}, current={'a': (999.0, 999.0)}, now=1.0)
        assert anim.frame(1.0)['a'] == pytest.approx((50.0, 0.0))

    def test_stop(self):
        """Test no frame is produced after stop."""
        anim = LayoutAnimator()
        anim.animate({'a': (1.0, 1.0)}, now=0.0)
        anim.stop()
        assert anim.frame(0.5) is None
        assert list(anim.frames()) == []

    def test_frames_finite(self):
        """Test the frame sequence ends on the targets."""
        anim = LayoutAnimator(duration=1.0)
        anim.animate({'a': (10.0, 0.0)}, current={'a': (0.0, 0.0)}, now=0.0)
        frames = list(anim.frames(fps=10))
        assert len(frames) == 10
        assert frames[-1] == {'a': (10.0, 0.0)}
        assert frames[4]['a'][0] == pytest.approx(5.0)

    def test_frames_restartable(self):
        """Test iterating frames again replays the animation."""
        anim = LayoutAnimator(duration=0.5)
        anim.animate({'a': (10.0, 0.0)}, current={'a': (0.0, 0.0)}, now=0.0)
        first = list(anim.frames(fps=10))
        second = list(anim.frames(fps=10))
        assert first == second
        assert len(first) == 5

    def test_frames_cancelled_midway(self):
        """Test stop() ends a running frame sequence."""
        anim = LayoutAnimator(duration=1.0)
        anim.animate({'a': (10.0, 0.0)}, current={'a': (0.0, 0.0)}, now=0.0)
        seen = []
        for frame in anim.frames(fps=10):
            seen.append(frame)
            if len(seen) == 3:
                anim.stop()
        assert len(seen) == 3

    def test_animate_static(self):
        """Test static placement pins every node on its target."""
        anim = LayoutAnimator()
        result = anim.animate_static({'a': (1.0, 2.0), 'b': None})
        assert result == {'a': {'x': 1.0, 'y': 2.0, 'fx': 1.0, 'fy': 2.0}}
        assert not anim.is_animating
        assert anim.rendered == {'a': (1.0, 2.0)}

    def test_discard(self):
        """Test discarded nodes drop out of rendered state and later frames."""
        anim = LayoutAnimator()
        anim.animate({'a': (10.0, 0.0), 'b': (0.0, 10.0)}, current={'a': (0.0, 0.0)}, now=0.0)
        anim.frame(0.5)
        anim.discard(['b', 'zz'])
        assert set(anim.rendered) == {'a'}
        assert set(anim.frame(1.0)) == {'a'}
