from __future__ import annotations

import numpy as np
import pytest

from gridmatch.api.match_grid import PipelineModel, apply_match_grid, match_grid
from gridmatch.config import MatchGridConfig
from gridmatch.core.calibration import CalibrationResult
from gridmatch.errors import CalibrationError, SpacingEstimationError
from gridmatch.sim.grid_points import perturb_points, points_to_rects, regular_grid_points


class SpyCalibrator:
    def __init__(self, *, fail: str | None = None) -> None:
        self.calls: list[tuple[np.ndarray, np.ndarray, tuple[int, int]]] = []
        self.fail = fail

    def __call__(self, image_points, object_points, image_size):
        self.calls.append((np.array(image_points), np.array(object_points), image_size))
        if self.fail is not None:
            raise CalibrationError(self.fail)
        return CalibrationResult(
            camera_matrix=np.eye(3),
            dist_coeffs=np.zeros((1, 5)),
            rvecs=(np.zeros((3, 1)),),
            tvecs=(np.array([[0.0], [0.0], [100.0]]),),
            rms_error=0.25,
        )


def _plus_one(image, calibration):
    return image + 1


def _model(points, *, name: str = "blobs", args=None) -> PipelineModel:
    return PipelineModel(
        image=np.zeros((48, 64), dtype=np.uint8),
        stages={name: {"rects": points_to_rects(points)}},
        args={} if args is None else args,
    )


def test_small_grid_calibrates_and_replaces_image():
    truth = regular_grid_points(3, 3, pitch_x=8.0, pitch_y=6.0, origin=(20.0, 30.0))
    model = _model(perturb_points(truth, seed=1))
    calibrate = SpyCalibrator()
    stage_model: dict = {}

    ok = apply_match_grid(
        {"model": "blobs", "sepX": 4, "sepY": 4, "tolerance": 0.35, "objZ": 0},
        stage_model,
        model,
        calibrate=calibrate,
        undistort=_plus_one,
    )

    assert ok
    assert "error" not in stage_model
    assert stage_model["gridX"] == pytest.approx(2.0)
    assert stage_model["gridY"] == pytest.approx(1.5)
    assert len(stage_model["rects"]) == 9
    # cells are seeded from the absolute pixel position of the first pair
    assert stage_model["centroid"] == pytest.approx([4.0, 6.0, 0.0])

    assert len(calibrate.calls) == 1
    uv, xyz, size = calibrate.calls[0]
    assert size == (64, 48)
    np.testing.assert_allclose(uv, [[r["x"], r["y"]] for r in stage_model["rects"]])
    np.testing.assert_allclose(xyz, [[r["objX"], r["objY"], r["objZ"]] for r in stage_model["rects"]])
    np.testing.assert_allclose(xyz[:, :2].mean(axis=0), [0.0, 0.0], atol=1e-12)
    assert sorted(set(xyz[:, 0].tolist())) == [-4.0, 0.0, 4.0]

    assert stage_model["calibrate"]["rmserror"] == pytest.approx(0.25)
    assert stage_model["calibrate"]["camera"] == [1.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0, 1.0]
    assert stage_model["calibrate"]["tvecs"] == [[0.0, 0.0, 100.0]]
    assert np.all(model.image == 1)


def test_two_rows_report_row_failure():
    truth = regular_grid_points(3, 2, pitch_x=8.0, pitch_y=6.0)
    model = _model(truth)
    calibrate = SpyCalibrator()
    stage_model: dict = {}

    ok = apply_match_grid({"model": "blobs", "sepX": 4, "sepY": 4}, stage_model, model, calibrate=calibrate)

    assert not ok
    assert "2-step" in stage_model["error"]
    assert "dyCount2" in stage_model["error"]
    assert stage_model["gridX"] == pytest.approx(2.0)
    assert "gridY" not in stage_model
    assert stage_model["dyCount1"] == 3
    assert stage_model["dydyAvg1"] == pytest.approx(-6.0)
    assert "rects" not in stage_model
    assert calibrate.calls == []
    assert np.all(model.image == 0)


def test_both_axis_errors_are_joined():
    t = np.arange(6, dtype=np.float64) * 0.4
    pts = np.stack([t, t], axis=1)
    report: dict = {}

    with pytest.raises(SpacingEstimationError) as excinfo:
        match_grid(pts, config=MatchGridConfig(model="x"), report=report)

    msg = str(excinfo.value)
    assert "; " in msg
    assert msg.index("dxCount1") < msg.index("dyCount1")
    assert excinfo.value.columns is not None and excinfo.value.columns.one_step_count == 0
    assert report["dxCount1"] == 0
    assert report["dyCount1"] == 0


def test_placeholders_bind_from_model_args():
    truth = regular_grid_points(3, 3, pitch_x=8.0, pitch_y=6.0)
    model = _model(truth, name="dots", args={"src": "dots", "sep": 4})
    stage_model: dict = {}

    ok = apply_match_grid(
        {"model": "{{src}}", "sepX": "{{sep}}", "sepY": "{{sep}}"},
        stage_model,
        model,
        calibrate=SpyCalibrator(),
        undistort=_plus_one,
    )
    assert ok
    assert stage_model["gridX"] == pytest.approx(2.0)


@pytest.mark.parametrize(
    ("stage", "rects", "message"),
    [
        ({}, [], "expected name of stage with rects"),
        ({"model": "other"}, [], "Named stage is not in model: other"),
        ({"model": "blobs"}, {"x": 1}, "Expected array of rects to match"),
        ({"model": "blobs"}, [{"x": 1.0, "y": 2.0}], "Expected array of at least 2 rects to match"),
        ({"model": "blobs"}, [{"x": 1.0, "y": 2.0}, {"x": "a", "y": 2.0}], "at least 2 points"),
        ({"model": "blobs"}, [{"x": 1.0, "y": 2.0}, {"x": float("nan"), "y": 2.0}], "finite"),
        ({"model": "blobs", "tolerance": 2}, [], "tolerance"),
    ],
)
def test_invalid_inputs_set_error(stage, rects, message):
    model = PipelineModel(image=np.zeros((4, 4), dtype=np.uint8), stages={"blobs": {"rects": rects}})
    calibrate = SpyCalibrator()
    stage_model: dict = {}

    assert not apply_match_grid(stage, stage_model, model, calibrate=calibrate)
    assert message in stage_model["error"]
    assert calibrate.calls == []
    assert np.all(model.image == 0)


def test_calibration_failure_keeps_image():
    truth = regular_grid_points(3, 3, pitch_x=8.0, pitch_y=6.0)
    model = _model(truth)
    stage_model: dict = {}

    ok = apply_match_grid(
        {"model": "blobs", "sepX": 4, "sepY": 4},
        stage_model,
        model,
        calibrate=SpyCalibrator(fail="solver diverged"),
        undistort=_plus_one,
    )
    assert not ok
    assert stage_model["error"] == "solver diverged"
    assert len(stage_model["rects"]) == 9
    assert "calibrate" not in stage_model
    assert np.all(model.image == 0)


def test_coincident_rects_fail_without_raising():
    model = _model([(5.0, 5.0), (5.0, 5.0), (5.0, 5.0)], name="b")
    calibrate = SpyCalibrator()
    stage_model: dict = {}

    assert not apply_match_grid({"model": "b"}, stage_model, model, calibrate=calibrate)
    assert "dxCount2:1" in stage_model["error"]
    assert "dyCount2:1" in stage_model["error"]
    assert "rects" not in stage_model
    assert calibrate.calls == []
    assert np.all(model.image == 0)


def test_duplicated_grid_point_is_matched_to_the_same_cell():
    truth = regular_grid_points(3, 3, pitch_x=8.0, pitch_y=6.0)
    pts = np.concatenate([truth, [[8.0, 0.0]]])
    model = _model(pts)
    stage_model: dict = {}

    ok = apply_match_grid(
        {"model": "blobs", "sepX": 4, "sepY": 4},
        stage_model,
        model,
        calibrate=SpyCalibrator(),
        undistort=_plus_one,
    )
    assert ok
    assert stage_model["gridX"] == pytest.approx(2.0)
    assert stage_model["gridY"] == pytest.approx(1.5)
    records = [(r["x"], r["y"], r["objX"], r["objY"]) for r in stage_model["rects"]]
    assert len(records) == 10
    assert records.count(records[1]) == 2


@pytest.mark.parametrize("stage", [["model"], "blobs", None])
def test_non_object_stage_sets_error(stage):
    model = _model(regular_grid_points(3, 3, pitch_x=8.0, pitch_y=6.0))
    stage_model: dict = {}

    assert not apply_match_grid(stage, stage_model, model, calibrate=SpyCalibrator())
    assert stage_model["error"] == "matchGrid stage must be an object"
    assert np.all(model.image == 0)


def test_point_out_of_row_order_is_dropped():
    # Exact comparator: a 0.3 px lift moves the third dot of each row to the end of
    # that row in row-major order, so only the other five dots connect.
    truth = regular_grid_points(6, 5, pitch_x=20.0, pitch_y=15.0)
    pts = truth.copy()
    pts[2::6, 1] += 0.3
    report: dict = {}

    match = match_grid(perturb_points(pts, seed=4), config=MatchGridConfig(model="x"), report=report)

    assert report["dxMedian"] == -20.0
    assert report["dxCount1"] == 15
    assert report["dxCount2"] == 5
    assert report["gridX"] == pytest.approx(4.0)
    assert report["gridY"] == pytest.approx(3.0)

    corr = match.correspondence
    assert len(corr) == 25
    assert not np.any(np.isin(corr.image_points[:, 0], [40.0]))
    np.testing.assert_array_equal(corr.grid_points, np.round(corr.image_points / [20.0, 15.0]))


def test_noisy_grid_never_raises():
    truth = regular_grid_points(6, 5, pitch_x=20.0, pitch_y=15.0, origin=(50.0, 40.0))
    for seed in range(5):
        model = _model(perturb_points(truth, noise_std=0.3, seed=seed))
        stage_model: dict = {}

        ok = apply_match_grid({"model": "blobs"}, stage_model, model, calibrate=SpyCalibrator(), undistort=_plus_one)

        assert ok == ("error" not in stage_model)
        assert len(stage_model.get("rects", [])) <= 30
