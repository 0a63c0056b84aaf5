"""
Tests for stage orchestration and the command line entry point.

Tests cover:
- End-to-end single-layer run
- Full run with mesh, derived fields and statistics
- Failure policy (aborting vs skipped fields)
- CLI outputs and exit status
"""

import json

import pytest
import numpy as np
import trimesh

from voxfield.config import INPUT_GEOMETRY, OUTPUT_GEOMETRY, PipelineConfig
from voxfield.errors import MalformedInput
from voxfield.io import load_bag
from voxfield.pipeline import Pipeline
from voxfield.run import main

from conftest import serpentine


@pytest.fixture
def layered_trace(make_trace):
    """Six identical 4 x 4 mm infill layers."""
    return make_trace([[serpentine()] for _ in range(6)])


@pytest.fixture
def box_mesh(tmp_path):
    path = tmp_path / "part.stl"
    trimesh.creation.box(extents=(4.0, 4.0, 1.2)).export(str(path))
    return path


@pytest.fixture
def fast_config():
    return PipelineConfig(kernel_size_mm=1.0, direction_samples=8, n_workers=2)


# ============== End-to-End Tests ==============

class TestEndToEnd:
    """Tests for complete runs."""

    def test_single_layer(self, single_layer_trace):
        """One layer of dense infill is one fully covered voxel."""
        bag, summary = Pipeline().run(single_layer_trace)

        field = bag.get(OUTPUT_GEOMETRY)
        assert field.dims == (1, 1, 1)
        assert field.data[0, 0, 0] == 255
        assert summary.produced == [OUTPUT_GEOMETRY]
        assert "output_stats" in summary.skipped

    def test_layer_arrays_recorded(self, single_layer_trace):
        bag, _ = Pipeline().run(single_layer_trace)
        np.testing.assert_allclose(bag.arrays["layer_fan"], [128.0])
        np.testing.assert_allclose(bag.arrays["layer_feed_rate"], [1200.0])

    def test_full_run(self, layered_trace, box_mesh, fast_config):
        fast_config.array_fields = ["layer_fan"]
        fast_config.spherical = {"ref": ["layer_fan"]}
        fast_config.resample = [OUTPUT_GEOMETRY]
        fast_config.reference_direction = "ref"

        bag, summary = Pipeline(fast_config).run(layered_trace, box_mesh)

        assert summary.skipped == {}
        for name in (
            OUTPUT_GEOMETRY, INPUT_GEOMETRY, "layer_fan", "ref", "output_geometry_resampled",
            "output_stats_mean", "output_stats_mean_confidence", "output_stats_dir",
            "output_stats_dir_length", "output_stats_dir_change", "output_stats_dir_correlation",
        ):
            assert name in bag
            assert name in summary.produced

        assert bag.get(OUTPUT_GEOMETRY).dims == (6, 6, 6)
        assert bag.check_common_box() == []
        assert summary.layer_count == 6
        assert summary.mesh_stats["is_watertight"]
        assert bag.get(INPUT_GEOMETRY).data.max() == 255

    def test_border_padding(self, single_layer_trace):
        bag, _ = Pipeline(PipelineConfig(border_padding=1)).run(single_layer_trace)
        field = bag.get(OUTPUT_GEOMETRY)
        assert field.dims == (3, 3, 3)
        assert field.data[1, 1, 1] == 255
        assert field.data.sum() == 255


# ============== Failure Policy Tests ==============

class TestFailurePolicy:
    """Tests for aborting and skipping."""

    def test_malformed_trace_aborts(self, tmp_path):
        path = tmp_path / "bad.gcode"
        path.write_text("; nozzle_diameter_mm_0 : 0.4\nG1 X1..2\n")
        with pytest.raises(MalformedInput, match="line 2"):
            Pipeline().run(path)

    def test_missing_trace_aborts(self, tmp_path):
        with pytest.raises(MalformedInput):
            Pipeline().run(tmp_path / "missing.gcode")

    def test_missing_nozzle_aborts(self, tmp_path):
        path = tmp_path / "no_nozzle.gcode"
        path.write_text("; <layer>\nG0 X0 Y0 Z0.2\nG1 X1 E1\n; </layer>\n")
        with pytest.raises(MalformedInput, match="nozzle_diameter_mm_0"):
            Pipeline().run(path)

    def test_no_complete_layer_aborts(self, tmp_path):
        path = tmp_path / "open_layer.gcode"
        path.write_text("; nozzle_diameter_mm_0 : 0.4\n; <layer>\nG0 X0 Y0 Z0.2\nG1 X1 E1\n")
        with pytest.raises(MalformedInput, match="no complete layer"):
            Pipeline().run(path)

    def test_rasterization_failure_skips_dependents(self, make_trace, box_mesh):
        path = make_trace([[serpentine()], [serpentine()]], close_last=False)
        bag, summary = Pipeline().run(path, box_mesh)

        assert OUTPUT_GEOMETRY not in bag
        assert "out of bounds" in summary.skipped[OUTPUT_GEOMETRY]
        assert INPUT_GEOMETRY in summary.skipped
        assert "output_stats" in summary.skipped
        assert summary.produced == []

    def test_missing_mesh_skipped(self, layered_trace, tmp_path):
        bag, summary = Pipeline().run(layered_trace, tmp_path / "missing.stl")
        assert OUTPUT_GEOMETRY in bag
        assert INPUT_GEOMETRY in summary.skipped

    def test_optional_fields_skipped(self, single_layer_trace):
        config = PipelineConfig(array_fields=["unknown"], spherical={"vec": ["nothing"]}, resample=["x"])
        bag, summary = Pipeline(config).run(single_layer_trace)
        assert "unknown" in summary.skipped
        assert "vec" in summary.skipped
        assert "x_resampled" in summary.skipped
        assert OUTPUT_GEOMETRY in bag

    def test_missing_reference_skipped(self, layered_trace, box_mesh, fast_config):
        fast_config.reference_direction = "nowhere"
        bag, summary = Pipeline(fast_config).run(layered_trace, box_mesh)
        assert "output_stats_dir" in bag
        assert "output_stats_dir_correlation" in summary.skipped


# ============== CLI Tests ==============

class TestCli:
    """Tests for the voxfield command."""

    def test_writes_bag_and_summary(self, single_layer_trace, tmp_path):
        output = tmp_path / "out" / "fields.npz"
        main(["--gcode", str(single_layer_trace), "--output", str(output), "--samples", "4", "--workers", "1"])

        bag = load_bag(output)
        assert bag.get(OUTPUT_GEOMETRY).data[0, 0, 0] == 255

        with open(output.parent / "run_summary.json") as f:
            report = json.load(f)
        assert report["produced"] == [OUTPUT_GEOMETRY]
        assert report["config"]["samples"] == 4

    def test_config_file(self, single_layer_trace, tmp_path):
        config_path = tmp_path / "run.json"
        PipelineConfig(border_padding=2).save(config_path)
        output = tmp_path / "fields.npz"
        main(["--gcode", str(single_layer_trace), "--config", str(config_path), "--output", str(output)])
        assert load_bag(output).get(OUTPUT_GEOMETRY).dims == (5, 5, 5)

    def test_abort_exit_status(self, tmp_path):
        path = tmp_path / "bad.gcode"
        path.write_text("G1 Xoops\n")
        with pytest.raises(SystemExit) as excinfo:
            main(["--gcode", str(path), "--output", str(tmp_path / "fields.npz")])
        assert excinfo.value.code == 1
