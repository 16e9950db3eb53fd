from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any

import numpy as np

from gridmatch.core.spacing import AxisStats
from gridmatch.errors import EmptyCorrespondenceError, SpacingEstimationError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GridCorrespondence:
    """
    Matched image/object points for one view, index-aligned.

    - image_points: (N,2) pixels
    - grid_points: (N,2) integer (col,row) indices as accumulated along the walk
    - object_points: (N,3) grid indices recentred on `centroid` and scaled by the
      physical separations; z is the constant objZ
    - centroid: (3,) mean (col,row) of `grid_points`, z = -objZ
    """

    image_points: np.ndarray
    grid_points: np.ndarray
    object_points: np.ndarray
    centroid: np.ndarray

    def __len__(self) -> int:
        return int(self.image_points.shape[0])

    def to_records(self) -> list[dict[str, float]]:
        return [
            {"x": float(uv[0]), "y": float(uv[1]), "objX": float(o[0]), "objY": float(o[1]), "objZ": float(o[2])}
            for uv, o in zip(self.image_points.tolist(), self.object_points.tolist(), strict=True)
        ]


def round_half_away(value: float) -> int:
    return math.trunc(value + (-0.5 if value < 0 else 0.5))


def grid_step(cur: np.ndarray, prev: np.ndarray, pitch: tuple[float, float]) -> np.ndarray:
    """Displacement `cur - prev` rounded to whole grid steps per axis."""
    return np.array(
        [
            round_half_away((float(cur[0]) - float(prev[0])) / pitch[0]),
            round_half_away((float(cur[1]) - float(prev[1])) / pitch[1]),
        ],
        dtype=np.int64,
    )


def assign_grid(
    ordered: np.ndarray,
    *,
    columns: AxisStats,
    rows: AxisStats,
    sep_x: float,
    sep_y: float,
    obj_z: float = 0.0,
) -> GridCorrespondence:
    """
    Label row-major ordered points with integer (col,row) grid coordinates.

    Consecutive pairs whose x step falls inside the column 1-step band are connected;
    the others are skipped. Gaps between connected runs are bridged by rounding the
    image displacement to whole grid steps.
    """
    if columns.scale is None or rows.scale is None:
        raise SpacingEstimationError("grid assignment needs both column and row scales", columns=columns, rows=rows)

    pts = np.asarray(ordered, dtype=np.float64).reshape(-1, 2)
    pitch = (float(columns.scale) * float(sep_x), float(rows.scale) * float(sep_y))
    if not all(math.isfinite(v) and v > 0.0 for v in pitch):
        raise SpacingEstimationError(f"grid pitch must be positive and finite (got {pitch})", columns=columns, rows=rows)
    band = columns.band()
    # Steps are measured as prev - cur: a negative median means the walk moves toward +x.
    col_step = 1 if columns.median < 0 else -1
    logger.debug("assign_grid band=[%g,%g] pitch=(%g,%g) col_step=%d", band.low, band.high, pitch[0], pitch[1], col_step)

    emitted: list[int] = []
    cells: list[np.ndarray] = []
    cell: np.ndarray | None = None
    tracked = -1
    for i in range(1, pts.shape[0]):
        prev = pts[i - 1]
        cur = pts[i]
        if not band.contains(float(math.trunc(prev[0] - cur[0]))):
            logger.debug("skip (%g,%g) -> (%g,%g)", prev[0], prev[1], cur[0], cur[1])
            continue

        if cell is None:
            cell = np.array([round_half_away(prev[0] / pitch[0]), round_half_away(prev[1] / pitch[1])], dtype=np.int64)
            emitted.append(i - 1)
            cells.append(cell)
            cell = cell + np.array([col_step, 0], dtype=np.int64)
        else:
            if tracked != i - 1:
                cell = cell + grid_step(prev, pts[tracked], pitch)
                emitted.append(i - 1)
                cells.append(cell)
            cell = cell + grid_step(cur, prev, pitch)
        emitted.append(i)
        cells.append(cell)
        tracked = i
        logger.debug("match (%g,%g) => (%d,%d)", cur[0], cur[1], cell[0], cell[1])

    if not emitted:
        raise EmptyCorrespondenceError("no neighbouring grid points matched within tolerance")

    image_points = pts[np.asarray(emitted, dtype=np.int64)]
    grid_points = np.stack(cells, axis=0)
    mean_cr = grid_points.mean(axis=0)
    centroid = np.array([mean_cr[0], mean_cr[1], -float(obj_z)], dtype=np.float64)

    object_points = np.empty((grid_points.shape[0], 3), dtype=np.float64)
    object_points[:, 0] = float(sep_x) * (grid_points[:, 0] - centroid[0])
    object_points[:, 1] = float(sep_y) * (grid_points[:, 1] - centroid[1])
    object_points[:, 2] = float(obj_z)

    logger.debug("assign_grid matched %d points, centroid=(%g,%g)", len(emitted), centroid[0], centroid[1])
    return GridCorrespondence(
        image_points=image_points,
        grid_points=grid_points,
        object_points=object_points,
        centroid=centroid,
    )


def correspondence_report(corr: GridCorrespondence) -> dict[str, Any]:
    return {
        "rects": corr.to_records(),
        "centroid": [float(v) for v in corr.centroid.tolist()],
    }
