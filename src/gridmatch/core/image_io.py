from __future__ import annotations

from pathlib import Path

import numpy as np
from PIL import Image


def load_image(path: str | Path, *, grayscale: bool = False) -> np.ndarray:
    """
    Load an image as uint8, (H,W) or (H,W,3) BGR.

    OpenCV is the primary backend; Pillow reads what the local OpenCV build cannot decode.
    """
    import cv2  # type: ignore

    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Missing image {p}")

    img = cv2.imread(str(p), cv2.IMREAD_GRAYSCALE if grayscale else cv2.IMREAD_COLOR)
    if img is not None:
        if img.dtype != np.uint8:
            img = np.clip(img, 0, 255).astype(np.uint8)
        return img

    with Image.open(p) as im:
        if grayscale:
            return np.asarray(im.convert("L"), dtype=np.uint8)
        rgb = np.asarray(im.convert("RGB"), dtype=np.uint8)
    return np.ascontiguousarray(rgb[:, :, ::-1])


def save_image(path: str | Path, img: np.ndarray) -> Path:
    """Write a uint8 gray or BGR image; the format follows the file suffix."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    arr = np.asarray(img)
    if arr.dtype != np.uint8:
        arr = np.clip(arr, 0, 255).astype(np.uint8)
    if arr.ndim == 3:
        arr = np.ascontiguousarray(arr[:, :, ::-1])
    Image.fromarray(arr).save(p)
    return p


def image_size(img: np.ndarray) -> tuple[int, int]:
    """(width, height) of an (H,W[,C]) array."""
    h, w = np.asarray(img).shape[:2]
    return int(w), int(h)
