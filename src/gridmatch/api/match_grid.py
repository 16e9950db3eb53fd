from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, MutableMapping

import numpy as np

from gridmatch.config import MatchGridConfig, parse_match_grid_config
from gridmatch.core.calibration import CalibrationResult, calibrate_single_view, undistort_image
from gridmatch.core.grid_assign import GridCorrespondence, assign_grid, correspondence_report
from gridmatch.core.image_io import image_size
from gridmatch.core.points import order_points, points_from_rects
from gridmatch.core.spacing import AxisStats, estimate_axis_spacing
from gridmatch.errors import GridMatchError, InvalidConfigError, InvalidInputError, SpacingEstimationError


logger = logging.getLogger(__name__)

Calibrator = Callable[[np.ndarray, np.ndarray, tuple[int, int]], CalibrationResult]
Undistorter = Callable[[np.ndarray, CalibrationResult], np.ndarray]


@dataclass(frozen=True)
class GridMatch:
    columns: AxisStats
    rows: AxisStats
    correspondence: GridCorrespondence


@dataclass
class PipelineModel:
    """
    Minimal host-pipeline state seen by the stage.

    - image: working image, replaced by the undistorted one on success
    - stages: outputs of earlier stages keyed by stage name
    - args: pipeline argument map used to bind `{{name}}` stage values
    """

    image: np.ndarray
    stages: dict[str, Any] = field(default_factory=dict)
    args: dict[str, Any] = field(default_factory=dict)


def match_grid(
    points: np.ndarray,
    *,
    config: MatchGridConfig,
    report: MutableMapping[str, Any] | None = None,
) -> GridMatch:
    """
    Infer the grid correspondence of unordered points.

    Per-axis diagnostics are written to `report` before a spacing failure is raised.
    """
    ordered = order_points(points)
    # Column neighbours are consecutive in row-major order, row neighbours in column-major order.
    columns = estimate_axis_spacing(ordered.row_major, axis="x", tolerance=config.tolerance, separation=config.sep_x)
    rows = estimate_axis_spacing(ordered.col_major, axis="y", tolerance=config.tolerance, separation=config.sep_y)
    if report is not None:
        report.update(columns.to_report())
        report.update(rows.to_report())

    errors = [s.error for s in (columns, rows) if s.error]
    if errors:
        raise SpacingEstimationError("; ".join(errors), columns=columns, rows=rows)

    corr = assign_grid(
        ordered.row_major,
        columns=columns,
        rows=rows,
        sep_x=config.sep_x,
        sep_y=config.sep_y,
        obj_z=config.obj_z,
    )
    if report is not None:
        report.update(correspondence_report(corr))
    return GridMatch(columns=columns, rows=rows, correspondence=corr)


def _rects_from_model(name: str, model: PipelineModel) -> list[Any]:
    rects_model = model.stages.get(name)
    if not isinstance(rects_model, Mapping):
        raise InvalidConfigError(f"Named stage is not in model: {name}")
    rects = rects_model.get("rects")
    if not isinstance(rects, list):
        raise InvalidInputError("Expected array of rects to match")
    if len(rects) < 2:
        raise InvalidInputError("Expected array of at least 2 rects to match")
    return rects


def apply_match_grid(
    stage: Mapping[str, Any],
    stage_model: MutableMapping[str, Any],
    model: PipelineModel,
    *,
    calibrate: Calibrator = calibrate_single_view,
    undistort: Undistorter = undistort_image,
) -> bool:
    """
    matchGrid pipeline stage: rects of a prior stage -> grid correspondence -> calibration
    -> undistorted working image.

    Failures are recorded as `stage_model["error"]` and leave `model.image` untouched.
    """
    config: MatchGridConfig | None = None
    try:
        config = parse_match_grid_config(stage, model.args)
        points = points_from_rects(_rects_from_model(config.model, model))
        match = match_grid(points, config=config, report=stage_model)
        corr = match.correspondence
        result = calibrate(corr.image_points, corr.object_points, image_size(model.image))
        stage_model["calibrate"] = result.to_report()
        undistorted = undistort(model.image, result)
    except GridMatchError as e:
        stage_model["error"] = str(e)
        logger.warning("matchGrid(%s) failed: %s", config.model if config is not None else "", e)
        return False

    model.image = undistorted
    logger.info(
        "matchGrid(%s) matched %d points, gridX=%.4g gridY=%.4g rms=%.4g",
        config.model,
        len(match.correspondence),
        match.columns.scale,
        match.rows.scale,
        result.rms_error,
    )
    return True
