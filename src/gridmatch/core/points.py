from __future__ import annotations

from dataclasses import dataclass
from numbers import Real
from typing import Any, Iterable, Mapping

import numpy as np

from gridmatch.errors import InvalidInputError


@dataclass(frozen=True)
class OrderedPoints:
    """
    Two independent orderings of the same point set, each (N,2).

    - row_major: ascending y, ties by ascending x
    - col_major: ascending x, ties by ascending y
    """

    row_major: np.ndarray
    col_major: np.ndarray

    def __len__(self) -> int:
        return int(self.row_major.shape[0])


def as_points(points: Any) -> np.ndarray:
    pts = np.asarray(points, dtype=np.float64)
    if pts.ndim != 2 or pts.shape[1] != 2:
        raise InvalidInputError(f"expected (N,2) points, got shape {pts.shape}")
    if pts.shape[0] < 2:
        raise InvalidInputError(f"expected at least 2 points to match (got {pts.shape[0]})")
    if not np.all(np.isfinite(pts)):
        raise InvalidInputError("point coordinates must be finite (NaN/inf found)")
    return pts


def order_points(points: Any) -> OrderedPoints:
    pts = as_points(points)
    # np.lexsort sorts by the last key first and is stable.
    row_major = pts[np.lexsort((pts[:, 0], pts[:, 1]))]
    col_major = pts[np.lexsort((pts[:, 1], pts[:, 0]))]
    return OrderedPoints(row_major=row_major, col_major=col_major)


def _is_number(v: Any) -> bool:
    return isinstance(v, Real) and not isinstance(v, bool)


def points_from_rects(rects: Iterable[Any]) -> np.ndarray:
    """
    Extract rect centers as (N,2). Entries without numeric `x`/`y` are skipped.
    """
    xy = [
        (float(r["x"]), float(r["y"]))
        for r in rects
        if isinstance(r, Mapping) and _is_number(r.get("x")) and _is_number(r.get("y"))
    ]
    return np.asarray(xy, dtype=np.float64).reshape(-1, 2)
