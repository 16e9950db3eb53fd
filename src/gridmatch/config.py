from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from gridmatch.errors import InvalidConfigError


_PLACEHOLDER = re.compile(r"^\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}$")


@dataclass(frozen=True)
class MatchGridConfig:
    """
    matchGrid stage parameters.

    `sep_x`/`sep_y` are the physical grid separations (board units, e.g. mm) and
    `tolerance` is the fractional half-width of the neighbour acceptance band.
    """

    model: str
    obj_z: float = 0.0
    sep_x: float = 5.0
    sep_y: float = 5.0
    tolerance: float = 0.35


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise InvalidConfigError(msg)


def _resolve(stage: Mapping[str, Any], key: str, default: Any, args: Mapping[str, Any]) -> Any:
    """
    Stage values may be `"{{name}}"` placeholders bound from the pipeline argument map.
    Unbound placeholders fall back to the default.
    """
    value = stage.get(key, default)
    if isinstance(value, str):
        m = _PLACEHOLDER.match(value.strip())
        if m is not None:
            value = args.get(m.group(1), default)
    return value


def _as_float(stage: Mapping[str, Any], key: str, default: float, args: Mapping[str, Any]) -> float:
    value = _resolve(stage, key, default, args)
    _require(not isinstance(value, bool), f"matchGrid {key} must be a number")
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise InvalidConfigError(f"matchGrid {key} must be a number (got {value!r})") from e


def parse_match_grid_config(stage: Mapping[str, Any], args: Mapping[str, Any] | None = None) -> MatchGridConfig:
    _require(isinstance(stage, Mapping), "matchGrid stage must be an object")
    args = {} if args is None else args

    model = _resolve(stage, "model", "", args)
    _require(isinstance(model, str) and model.strip() != "", "matchGrid model: expected name of stage with rects")

    obj_z = _as_float(stage, "objZ", 0.0, args)
    sep_x = _as_float(stage, "sepX", 5.0, args)
    sep_y = _as_float(stage, "sepY", 5.0, args)
    tolerance = _as_float(stage, "tolerance", 0.35, args)

    _require(sep_x > 0.0 and sep_y > 0.0, "matchGrid sepX and sepY must be > 0")
    _require(0.0 <= tolerance < 1.0, "matchGrid tolerance must be in [0, 1)")

    return MatchGridConfig(model=model.strip(), obj_z=obj_z, sep_x=sep_x, sep_y=sep_y, tolerance=tolerance)


def load_stage(path: Path) -> dict[str, Any]:
    """Stage object from a JSON file; placeholders are left unbound."""
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    _require(isinstance(data, dict), f"{path}: matchGrid stage must be an object")
    return data
