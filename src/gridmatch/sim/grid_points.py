from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from gridmatch.core.distortion import BrownDistortion


@dataclass(frozen=True)
class GridSpec:
    """Planar board of cols x rows dots, `sep_x`/`sep_y` apart (board units, e.g. mm)."""

    cols: int
    rows: int
    sep_x: float = 5.0
    sep_y: float = 5.0

    def __post_init__(self) -> None:
        if self.cols < 1 or self.rows < 1:
            raise ValueError("cols and rows must be >= 1")
        if self.sep_x <= 0 or self.sep_y <= 0:
            raise ValueError("sep_x and sep_y must be > 0")

    def board_points(self) -> np.ndarray:
        """(rows*cols,3) row-major board coordinates centred on the board, z=0."""
        cc, rr = np.meshgrid(np.arange(self.cols, dtype=np.float64), np.arange(self.rows, dtype=np.float64))
        x = (cc.reshape(-1) - (self.cols - 1) / 2.0) * self.sep_x
        y = (rr.reshape(-1) - (self.rows - 1) / 2.0) * self.sep_y
        return np.stack([x, y, np.zeros_like(x)], axis=1)


@dataclass(frozen=True)
class SimCamera:
    fx: float
    fy: float
    cx: float
    cy: float
    distortion: BrownDistortion = field(default_factory=BrownDistortion)

    @classmethod
    def centered(cls, width: int, height: int, f_px: float, distortion: BrownDistortion | None = None) -> "SimCamera":
        return cls(
            fx=float(f_px),
            fy=float(f_px),
            cx=(width - 1) / 2.0,
            cy=(height - 1) / 2.0,
            distortion=distortion if distortion is not None else BrownDistortion(),
        )

    def K(self) -> np.ndarray:
        return np.array(
            [[float(self.fx), 0.0, float(self.cx)], [0.0, float(self.fy), float(self.cy)], [0.0, 0.0, 1.0]],
            dtype=np.float64,
        )

    def project(self, XYZ_cam: np.ndarray) -> np.ndarray:
        XYZ_cam = np.asarray(XYZ_cam, dtype=np.float64).reshape(-1, 3)
        Z = XYZ_cam[:, 2]
        if np.any(~np.isfinite(Z) | (Z <= 1e-12)):
            raise ValueError("points must lie in front of the camera")
        xd, yd = self.distortion.distort(XYZ_cam[:, 0] / Z, XYZ_cam[:, 1] / Z)
        return np.stack([self.fx * xd + self.cx, self.fy * yd + self.cy], axis=1)


def regular_grid_points(
    cols: int,
    rows: int,
    *,
    pitch_x: float,
    pitch_y: float,
    origin: tuple[float, float] = (0.0, 0.0),
) -> np.ndarray:
    """Exact fronto-parallel pixel grid, (rows*cols,2) in row-major order."""
    cc, rr = np.meshgrid(np.arange(cols, dtype=np.float64), np.arange(rows, dtype=np.float64))
    u = origin[0] + cc.reshape(-1) * float(pitch_x)
    v = origin[1] + rr.reshape(-1) * float(pitch_y)
    return np.stack([u, v], axis=1)


def project_grid(spec: GridSpec, camera: SimCamera, *, rvec: np.ndarray, tvec: np.ndarray) -> np.ndarray:
    """
    Pixels of the board dots for a board pose X_cam = R(rvec) X_board + tvec.
    """
    from scipy.spatial.transform import Rotation as Rot  # type: ignore

    R = Rot.from_rotvec(np.asarray(rvec, dtype=np.float64).reshape(3)).as_matrix()
    t = np.asarray(tvec, dtype=np.float64).reshape(1, 3)
    XYZ_cam = (R @ spec.board_points().T).T + t
    return camera.project(XYZ_cam)


def perturb_points(
    points: np.ndarray,
    *,
    noise_std: float = 0.0,
    drop: int = 0,
    shuffle: bool = True,
    seed: int = 0,
) -> np.ndarray:
    """Add Gaussian pixel noise, drop `drop` random points and shuffle (detector-like output)."""
    rng = np.random.default_rng(seed)
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2).copy()
    if noise_std > 0.0:
        pts += rng.normal(scale=float(noise_std), size=pts.shape)
    if drop > 0:
        keep = rng.permutation(pts.shape[0])[int(drop) :]
        pts = pts[np.sort(keep)]
    if shuffle:
        pts = pts[rng.permutation(pts.shape[0])]
    return pts


def points_to_rects(points: np.ndarray, *, size_px: float = 6.0) -> list[dict[str, float]]:
    """Rect records as produced by an upstream blob/rect detection stage."""
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    return [
        {"x": float(u), "y": float(v), "width": float(size_px), "height": float(size_px), "angle": 0.0}
        for u, v in pts.tolist()
    ]


def render_dots(
    points: np.ndarray,
    image_size: tuple[int, int],
    *,
    radius_px: float = 4.0,
    background: int = 0,
    foreground: int = 255,
) -> np.ndarray:
    """
    Render filled dots on a uint8 grayscale (H,W) image; `image_size` is (width, height).
    """
    import cv2  # type: ignore

    w, h = int(image_size[0]), int(image_size[1])
    img = np.full((h, w), int(background), dtype=np.uint8)
    shift = 4
    scale = float(1 << shift)
    for u, v in np.asarray(points, dtype=np.float64).reshape(-1, 2).tolist():
        center = (int(round(u * scale)), int(round(v * scale)))
        cv2.circle(img, center, int(round(radius_px * scale)), int(foreground), -1, cv2.LINE_AA, shift)
    return img
