from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Literal

import numpy as np

from gridmatch.errors import InvalidInputError


Axis = Literal["x", "y"]

_AXIS_INDEX = {"x": 0, "y": 1}
_REPORT_PREFIX = {"x": "dx", "y": "dy"}
_SCALE_KEY = {"x": "gridX", "y": "gridY"}


@dataclass(frozen=True)
class ToleranceBand:
    low: float
    high: float

    def contains(self, delta: float) -> bool:
        return self.low <= delta <= self.high

    def mask(self, deltas: np.ndarray) -> np.ndarray:
        deltas = np.asarray(deltas, dtype=np.float64)
        return (self.low <= deltas) & (deltas <= self.high)


def tolerance_multipliers(median: float, tolerance: float) -> tuple[float, float]:
    """
    Returns (min_tol, max_tol) such that [median*min_tol, median*max_tol] is ordered
    and contains `median` whatever its sign.
    """
    if median < 0:
        return 1.0 + tolerance, 1.0 - tolerance
    return 1.0 - tolerance, 1.0 + tolerance


def tolerance_band(median: float, tolerance: float, *, steps: int = 1) -> ToleranceBand:
    min_tol, max_tol = tolerance_multipliers(median, tolerance)
    expected = float(steps) * float(median)
    return ToleranceBand(low=expected * min_tol, high=expected * max_tol)


def whole_pixels(deltas: np.ndarray) -> np.ndarray:
    """Measured deltas are compared as whole pixels (truncated toward zero)."""
    return np.trunc(np.asarray(deltas, dtype=np.float64))


def axis_deltas(ordered: np.ndarray, *, step: int = 1) -> np.ndarray:
    """(N-step,2) displacement vectors `prev - cur` between points `step` apart."""
    ordered = np.asarray(ordered, dtype=np.float64).reshape(-1, 2)
    if ordered.shape[0] <= step:
        return np.zeros((0, 2), dtype=np.float64)
    return ordered[:-step] - ordered[step:]


def median_step(deltas: np.ndarray) -> float:
    """Lower median: element `(n-1)//2` of the ascending sort."""
    deltas = np.sort(np.asarray(deltas, dtype=np.float64).reshape(-1))
    if deltas.size == 0:
        raise InvalidInputError("cannot take the median of an empty delta list")
    return float(deltas[(deltas.size - 1) // 2])


@dataclass(frozen=True)
class AxisStats:
    """
    Spacing statistics for one traversal axis.

    `one_step_*` accumulate `prev - cur` vectors of consecutive in-band pairs, `two_step_*`
    those of pairs two positions apart. `scale` is the grid pitch in image units per
    physical separation unit; it is only set when `two_step_count > 0`.
    """

    axis: Axis
    median: float
    tolerance: float
    separation: float
    one_step_sum: np.ndarray
    one_step_count: int
    two_step_sum: np.ndarray
    two_step_count: int
    scale: float | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.scale is not None

    @property
    def one_step_avg(self) -> np.ndarray | None:
        if self.one_step_count == 0:
            return None
        return self.one_step_sum / float(self.one_step_count)

    @property
    def two_step_avg(self) -> np.ndarray | None:
        """Per-step average of the 2-step displacements (halved)."""
        if self.two_step_count == 0:
            return None
        return self.two_step_sum / float(self.two_step_count) / 2.0

    def band(self, *, steps: int = 1) -> ToleranceBand:
        return tolerance_band(self.median, self.tolerance, steps=steps)

    def to_report(self) -> dict[str, Any]:
        p = _REPORT_PREFIX[self.axis]
        out: dict[str, Any] = {
            f"{p}Median": float(self.median),
            f"{p}Count1": int(self.one_step_count),
            f"{p}Count2": int(self.two_step_count),
        }
        avg1 = self.one_step_avg
        if avg1 is not None:
            out[f"{p}dxAvg1"] = float(avg1[0])
            out[f"{p}dyAvg1"] = float(avg1[1])
        if self.error is None:
            avg2 = self.two_step_avg
            if avg2 is not None:
                out[f"{p}dxAvg2"] = float(avg2[0])
                out[f"{p}dyAvg2"] = float(avg2[1])
            if self.scale is not None:
                out[_SCALE_KEY[self.axis]] = float(self.scale)
        return out


def estimate_axis_spacing(
    ordered: np.ndarray,
    *,
    axis: Axis,
    tolerance: float,
    separation: float,
) -> AxisStats:
    """
    Estimate the dominant spacing along `axis` from a sorted point sequence.

    The returned stats carry an `error` message instead of raising when too few pairs
    fall inside the tolerance band, so both axes can be reported together.
    """
    if axis not in _AXIS_INDEX:
        raise ValueError(f"unknown axis: {axis}")
    a = _AXIS_INDEX[axis]
    ordered = np.asarray(ordered, dtype=np.float64).reshape(-1, 2)
    if ordered.shape[0] < 2:
        raise InvalidInputError(f"expected at least 2 points to estimate {axis} spacing")

    step1 = axis_deltas(ordered, step=1)
    step2 = axis_deltas(ordered, step=2)
    median = median_step(step1[:, a])

    in1 = tolerance_band(median, tolerance, steps=1).mask(whole_pixels(step1[:, a]))
    in2 = tolerance_band(median, tolerance, steps=2).mask(whole_pixels(step2[:, a]))

    one_sum = step1[in1].sum(axis=0) if np.any(in1) else np.zeros((2,), dtype=np.float64)
    two_sum = step2[in2].sum(axis=0) if np.any(in2) else np.zeros((2,), dtype=np.float64)
    stats = AxisStats(
        axis=axis,
        median=median,
        tolerance=float(tolerance),
        separation=float(separation),
        one_step_sum=one_sum,
        one_step_count=int(np.count_nonzero(in1)),
        two_step_sum=two_sum,
        two_step_count=int(np.count_nonzero(in2)),
    )

    p = _REPORT_PREFIX[axis]
    if stats.one_step_count == 0:
        return replace(stats, error=f"no grid points matched within 1-step tolerance ({p}Count1:0)")
    if stats.two_step_count == 0:
        return replace(stats, error=f"no grid points matched within 2-step tolerance ({p}Count2:0)")

    avg2 = stats.two_step_avg
    step = float(np.hypot(avg2[0], avg2[1]))
    # Coincident points match a zero median band with zero-length steps.
    if not (np.isfinite(step) and step > 0.0):
        return replace(stats, error=f"2-step neighbours have zero mean displacement ({p}Count2:{stats.two_step_count})")
    return replace(stats, scale=step / float(separation))
