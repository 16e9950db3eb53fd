from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any

import numpy as np

from gridmatch.api.match_grid import PipelineModel, apply_match_grid
from gridmatch.config import load_stage
from gridmatch.core.distortion import BrownDistortion
from gridmatch.core.image_io import load_image, save_image
from gridmatch.errors import InvalidConfigError
from gridmatch.sim.grid_points import GridSpec, SimCamera, perturb_points, points_to_rects, project_grid, render_dots


def _parse_arg_pairs(pairs: list[str]) -> dict[str, Any]:
    args: dict[str, Any] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise SystemExit(f"--arg expects KEY=VALUE (got {pair!r})")
        try:
            args[key] = json.loads(value)
        except json.JSONDecodeError:
            args[key] = value
    return args


def _load_rects(path: Path) -> list[Any]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, dict):
        return data.get("rects")
    return data


def run_generate_grid(args: argparse.Namespace) -> int:
    spec = GridSpec(cols=args.cols, rows=args.rows, sep_x=args.sep_x, sep_y=args.sep_y)
    camera = SimCamera.centered(args.width, args.height, args.f_px, BrownDistortion(k1=args.k1, k2=args.k2))
    uv = project_grid(
        spec,
        camera,
        rvec=np.array([args.tilt_x, args.tilt_y, 0.0], dtype=np.float64),
        tvec=np.array([args.offset_x, args.offset_y, args.distance], dtype=np.float64),
    )
    uv = perturb_points(uv, noise_std=args.noise_std, drop=args.drop, seed=args.seed)

    args.out_rects.parent.mkdir(parents=True, exist_ok=True)
    args.out_rects.write_text(json.dumps({"rects": points_to_rects(uv)}, indent=2), encoding="utf-8")
    print(f"Wrote {args.out_rects}")
    if args.out_image is not None:
        save_image(args.out_image, render_dots(uv, (args.width, args.height)))
        print(f"Wrote {args.out_image}")
    return 0


def run_match_grid(args: argparse.Namespace) -> int:
    stage: dict[str, Any] = {}
    if args.stage is not None:
        try:
            stage.update(load_stage(args.stage))
        except InvalidConfigError as e:
            raise SystemExit(str(e)) from e
    stage.setdefault("model", args.model_name)
    for key, value in (("sepX", args.sep_x), ("sepY", args.sep_y), ("tolerance", args.tolerance), ("objZ", args.obj_z)):
        if value is not None:
            stage[key] = value

    model = PipelineModel(
        image=load_image(args.image),
        stages={args.model_name: {"rects": _load_rects(args.rects)}},
        args=_parse_arg_pairs(args.arg),
    )
    stage_model: dict[str, Any] = {}
    ok = apply_match_grid(stage, stage_model, model)

    if args.out_json is not None:
        args.out_json.parent.mkdir(parents=True, exist_ok=True)
        args.out_json.write_text(json.dumps(stage_model, indent=2, sort_keys=True), encoding="utf-8")
        print(f"Wrote {args.out_json}")
    if not ok:
        print(f"matchGrid failed: {stage_model.get('error')}")
        return 1

    summary = {k: stage_model[k] for k in ("gridX", "gridY") if k in stage_model}
    summary["n_points"] = len(stage_model.get("rects", []))
    summary["rmserror"] = stage_model["calibrate"]["rmserror"]
    print(json.dumps(summary, sort_keys=True))
    if args.out_image is not None:
        save_image(args.out_image, model.image)
        print(f"Wrote {args.out_image}")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="gridmatch")
    parser.add_argument("--log-level", type=str, default="WARNING", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    sub = parser.add_subparsers(dest="cmd", required=True)

    gen = sub.add_parser("generate-grid", help="Generate a synthetic dot-grid view (rects JSON + optional image).")
    gen.add_argument("--out-rects", type=Path, required=True)
    gen.add_argument("--out-image", type=Path, default=None)
    gen.add_argument("--cols", type=int, default=7)
    gen.add_argument("--rows", type=int, default=4)
    gen.add_argument("--sep-x", type=float, default=5.0, help="Board dot separation along x (mm).")
    gen.add_argument("--sep-y", type=float, default=5.0, help="Board dot separation along y (mm).")
    gen.add_argument("--width", type=int, default=640)
    gen.add_argument("--height", type=int, default=480)
    gen.add_argument("--f-px", type=float, default=800.0, help="Focal length (px).")
    gen.add_argument("--distance", type=float, default=100.0, help="Board distance along the optical axis (mm).")
    gen.add_argument("--offset-x", type=float, default=-10.0, help="Board offset along the camera x axis (mm).")
    gen.add_argument("--offset-y", type=float, default=5.0, help="Board offset along the camera y axis (mm).")
    gen.add_argument("--tilt-x", type=float, default=0.2, help="Board rotation about x (rad).")
    gen.add_argument("--tilt-y", type=float, default=0.25, help="Board rotation about y (rad).")
    gen.add_argument("--k1", type=float, default=0.0)
    gen.add_argument("--k2", type=float, default=0.0)
    gen.add_argument("--noise-std", type=float, default=0.0, help="Gaussian pixel noise.")
    gen.add_argument("--drop", type=int, default=0, help="Number of dots to drop at random.")
    gen.add_argument("--seed", type=int, default=0)

    match = sub.add_parser(
        "match-grid",
        help="Match rects to a grid, calibrate the camera and undistort the image.",
    )
    match.add_argument("rects", type=Path, help="JSON list of rects, or an object with a 'rects' list.")
    match.add_argument("--image", type=Path, required=True)
    match.add_argument("--stage", type=Path, default=None, help="matchGrid stage JSON (model, sepX, sepY, tolerance, objZ).")
    match.add_argument("--model-name", type=str, default="rects", help="Stage name the rects are registered under.")
    match.add_argument("--sep-x", type=float, default=None)
    match.add_argument("--sep-y", type=float, default=None)
    match.add_argument("--tolerance", type=float, default=None)
    match.add_argument("--obj-z", type=float, default=None)
    match.add_argument("--arg", action="append", default=[], help="Pipeline argument KEY=VALUE for {{KEY}} stage values.")
    match.add_argument("--out-json", type=Path, default=None)
    match.add_argument("--out-image", type=Path, default=None)

    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(levelname)s %(name)s: %(message)s")

    if args.cmd == "generate-grid":
        return run_generate_grid(args)

    if args.cmd == "match-grid":
        return run_match_grid(args)

    raise AssertionError(f"Unhandled cmd: {args.cmd}")


if __name__ == "__main__":
    raise SystemExit(main())
