"""
Vectorised segment geometry for edge separation.

Segments are rows of an (m, 4) array holding x1, y1, x2, y2. Every
predicate works row-wise so the edge repulsion force can test all edge
pairs in one call.
"""

from __future__ import annotations

import numpy as np


def turn_sign(ax, ay, bx, by, cx, cy) -> np.ndarray:
    """
    Sign of the turn a -> b -> c for arrays of points.

    Returns:
        1 where c is left of the line a-b (counter-clockwise), -1 where it
        is right, 0 where the three points are collinear
    """
    return np.sign((bx - ax) * (cy - ay) - (by - ay) * (cx - ax))


def within_box(px, py, qx, qy, rx, ry) -> np.ndarray:
    """
    Whether q lies inside the bounding box of p-r.

    Only meaningful for rows where p, q and r are collinear.
    """
    return (
        (np.minimum(px, rx) <= qx) & (qx <= np.maximum(px, rx))
        & (np.minimum(py, ry) <= qy) & (qy <= np.maximum(py, ry))
    )


def segments_intersect_many(A: np.ndarray, B: np.ndarray) -> np.ndarray:
    """
    Row-wise segment intersection, touching and collinear overlap included.

    Args:
        A: (m, 4) array of segments
        B: (m, 4) array of segments

    Returns:
        Boolean array of length m, True where A[i] and B[i] share a point
    """
    A = np.asarray(A, dtype=float).reshape(-1, 4)
    B = np.asarray(B, dtype=float).reshape(-1, 4)
    ax, ay, bx, by = A[:, 0], A[:, 1], A[:, 2], A[:, 3]
    cx, cy, dx, dy = B[:, 0], B[:, 1], B[:, 2], B[:, 3]

    o1 = turn_sign(ax, ay, bx, by, cx, cy)
    o2 = turn_sign(ax, ay, bx, by, dx, dy)
    o3 = turn_sign(cx, cy, dx, dy, ax, ay)
    o4 = turn_sign(cx, cy, dx, dy, bx, by)

    result = (o1 != o2) & (o3 != o4)
    # collinear touching or overlap
    result |= (o1 == 0) & within_box(ax, ay, cx, cy, bx, by)
    result |= (o2 == 0) & within_box(ax, ay, dx, dy, bx, by)
    result |= (o3 == 0) & within_box(cx, cy, ax, ay, dx, dy)
    result |= (o4 == 0) & within_box(cx, cy, bx, by, dx, dy)
    return result
