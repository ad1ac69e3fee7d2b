"""Tests for geometry utilities."""

import numpy as np
from pyforcetree.geom import turn_sign, within_box, segments_intersect_many


def intersects(a, b):
    return bool(segments_intersect_many(np.array([a]), np.array([b]))[0])


class TestTurnSign:
    """Test turn_sign."""

    def test_left_right_collinear(self):
        """Test left/on/right of a line."""
        cx = np.array([5.0, 5.0, 20.0])
        cy = np.array([5.0, -5.0, 0.0])
        assert turn_sign(0.0, 0.0, 10.0, 0.0, cx, cy).tolist() == [1.0, -1.0, 0.0]

    def test_within_box(self):
        """Test bounding box membership of collinear points."""
        qx = np.array([5.0, 15.0])
        assert within_box(0.0, 0.0, qx, 0.0, 10.0, 0.0).tolist() == [True, False]


class TestSegmentsIntersect:
    """Test segments_intersect_many."""

    def test_crossing(self):
        """Test an X crossing."""
        assert intersects((0, 0, 10, 10), (0, 10, 10, 0))

    def test_disjoint(self):
        """Test separated parallel segments."""
        assert not intersects((0, 0, 10, 0), (0, 5, 10, 5))

    def test_touching_endpoint(self):
        """Test segments sharing an endpoint."""
        assert intersects((0, 0, 10, 0), (10, 0, 10, 10))

    def test_collinear_overlap(self):
        """Test overlapping collinear segments."""
        assert intersects((0, 0, 10, 0), (5, 0, 15, 0))

    def test_collinear_apart(self):
        """Test collinear segments with a gap."""
        assert not intersects((0, 0, 4, 0), (5, 0, 15, 0))

    def test_rows_independent(self):
        """Test each row is decided on its own."""
        A = np.array([(0, 0, 10, 10), (0, 0, 10, 0), (0, 0, 4, 0)], dtype=float)
        B = np.array([(0, 10, 10, 0), (0, 5, 10, 5), (5, 0, 15, 0)], dtype=float)
        assert segments_intersect_many(A, B).tolist() == [True, False, False]

    def test_empty(self):
        """Test no rows gives an empty result."""
        assert segments_intersect_many(np.empty((0, 4)), np.empty((0, 4))).shape == (0,)
