from __future__ import annotations

import json
from pathlib import Path

import numpy as np
import pytest

from gridmatch.cli.main import main
from gridmatch.core.image_io import save_image


@pytest.mark.integration
def test_generate_then_match_grid(tmp_path: Path, capsys) -> None:
    pytest.importorskip("cv2")

    rects = tmp_path / "rects.json"
    dots = tmp_path / "dots.png"
    assert main(["generate-grid", "--out-rects", str(rects), "--out-image", str(dots), "--seed", "2"]) == 0
    assert len(json.loads(rects.read_text(encoding="utf-8"))["rects"]) == 28

    out_json = tmp_path / "match.json"
    out_image = tmp_path / "undistorted.png"
    rc = main(
        [
            "match-grid",
            str(rects),
            "--image",
            str(dots),
            "--out-json",
            str(out_json),
            "--out-image",
            str(out_image),
        ]
    )
    assert rc == 0
    assert out_image.exists()

    stage_model = json.loads(out_json.read_text(encoding="utf-8"))
    assert "error" not in stage_model
    assert len(stage_model["calibrate"]["camera"]) == 9
    summary = json.loads(capsys.readouterr().out.strip().splitlines()[-2])
    assert summary["n_points"] == len(stage_model["rects"])


def test_match_grid_failure_exit_code(tmp_path: Path) -> None:
    rects = tmp_path / "rects.json"
    rects.write_text(json.dumps([{"x": 1.0, "y": 2.0}]), encoding="utf-8")
    image = save_image(tmp_path / "blank.png", np.zeros((8, 8), dtype=np.uint8))
    stage = tmp_path / "stage.json"
    stage.write_text(json.dumps({"model": "{{src}}", "sepX": 4}), encoding="utf-8")
    out_json = tmp_path / "match.json"

    rc = main(
        [
            "match-grid",
            str(rects),
            "--image",
            str(image),
            "--stage",
            str(stage),
            "--model-name",
            "blobs",
            "--arg",
            "src=blobs",
            "--out-json",
            str(out_json),
        ]
    )
    assert rc == 1
    assert "at least 2 rects" in json.loads(out_json.read_text(encoding="utf-8"))["error"]


def test_match_grid_rejects_non_object_stage_file(tmp_path: Path) -> None:
    rects = tmp_path / "rects.json"
    rects.write_text(json.dumps([{"x": 1.0, "y": 2.0}, {"x": 3.0, "y": 2.0}]), encoding="utf-8")
    image = save_image(tmp_path / "blank.png", np.zeros((8, 8), dtype=np.uint8))
    stage = tmp_path / "stage.json"
    stage.write_text(json.dumps(["model"]), encoding="utf-8")

    with pytest.raises(SystemExit, match="must be an object"):
        main(["match-grid", str(rects), "--image", str(image), "--stage", str(stage)])
