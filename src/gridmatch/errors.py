from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from gridmatch.core.spacing import AxisStats


class GridMatchError(ValueError):
    """Base class for failures that abort the matchGrid stage."""


class InvalidConfigError(GridMatchError):
    pass


class InvalidInputError(GridMatchError):
    pass


class SpacingEstimationError(GridMatchError):
    """
    Row and/or column spacing could not be estimated.

    The per-axis statistics are attached so callers can still report the partial
    diagnostics (medians, 1-step counts and averages).
    """

    def __init__(self, message: str, *, columns: AxisStats | None = None, rows: AxisStats | None = None) -> None:
        super().__init__(message)
        self.columns = columns
        self.rows = rows


class EmptyCorrespondenceError(GridMatchError):
    pass


class CalibrationError(GridMatchError):
    pass
