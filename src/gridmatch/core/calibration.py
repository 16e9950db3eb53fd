from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import numpy as np

from gridmatch.errors import CalibrationError


logger = logging.getLogger(__name__)


def flatten_matrix(m: np.ndarray) -> list[float]:
    """Row-major flattening used by the JSON report."""
    return [float(v) for v in np.asarray(m, dtype=np.float64).reshape(-1).tolist()]


@dataclass(frozen=True)
class CalibrationResult:
    camera_matrix: np.ndarray  # (3,3)
    dist_coeffs: np.ndarray  # (1,K) OpenCV layout
    rvecs: tuple[np.ndarray, ...]  # per view (3,1)
    tvecs: tuple[np.ndarray, ...]  # per view (3,1)
    rms_error: float

    @property
    def fx(self) -> float:
        return float(self.camera_matrix[0, 0])

    @property
    def fy(self) -> float:
        return float(self.camera_matrix[1, 1])

    @property
    def cx(self) -> float:
        return float(self.camera_matrix[0, 2])

    @property
    def cy(self) -> float:
        return float(self.camera_matrix[1, 2])

    def to_report(self) -> dict[str, Any]:
        return {
            "rmserror": float(self.rms_error),
            "camera": flatten_matrix(self.camera_matrix),
            "distCoeffs": flatten_matrix(self.dist_coeffs),
            "rvecs": [flatten_matrix(r) for r in self.rvecs],
            "tvecs": [flatten_matrix(t) for t in self.tvecs],
        }


def calibrate_single_view(
    image_points: np.ndarray,
    object_points: np.ndarray,
    image_size: tuple[int, int],
) -> CalibrationResult:
    """
    Calibrate intrinsics + distortion from one view of matched grid points.

    `image_size` is (width, height). Solver failures are raised as CalibrationError with
    the OpenCV message; nothing is retried.
    """
    import cv2  # type: ignore

    uv = np.asarray(image_points, dtype=np.float32).reshape(-1, 1, 2)
    xyz = np.asarray(object_points, dtype=np.float32).reshape(-1, 1, 3)
    if uv.shape[0] != xyz.shape[0]:
        raise CalibrationError(f"image/object point count mismatch: {uv.shape[0]} != {xyz.shape[0]}")
    w, h = int(image_size[0]), int(image_size[1])

    try:
        rms, K, dist, rvecs, tvecs = cv2.calibrateCamera([xyz], [uv], (w, h), None, None)
    except cv2.error as e:
        raise CalibrationError(str(e)) from e

    K = np.asarray(K, dtype=np.float64).reshape(3, 3)
    dist = np.asarray(dist, dtype=np.float64).reshape(1, -1)
    if not (np.isfinite(rms) and np.all(np.isfinite(K)) and np.all(np.isfinite(dist))):
        raise CalibrationError("calibration produced non-finite camera parameters")

    result = CalibrationResult(
        camera_matrix=K,
        dist_coeffs=dist,
        rvecs=tuple(np.asarray(r, dtype=np.float64).reshape(3, 1) for r in rvecs),
        tvecs=tuple(np.asarray(t, dtype=np.float64).reshape(3, 1) for t in tvecs),
        rms_error=float(rms),
    )
    logger.info(
        "calibrate_single_view: %d points, rms=%.4f px, f=(%.2f,%.2f) c=(%.2f,%.2f)",
        uv.shape[0],
        result.rms_error,
        result.fx,
        result.fy,
        result.cx,
        result.cy,
    )
    return result


def undistort_image(image: np.ndarray, calibration: CalibrationResult) -> np.ndarray:
    import cv2  # type: ignore

    try:
        out = cv2.undistort(np.asarray(image), calibration.camera_matrix, calibration.dist_coeffs)
    except cv2.error as e:
        raise CalibrationError(str(e)) from e
    return out
