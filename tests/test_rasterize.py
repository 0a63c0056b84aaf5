"""
Tests for the G-code infill rasterizer.

Tests cover:
- Printing bounding box
- Coverage of a single extrusion line
- Deterministic jitter
- Error cases (missing nozzle, unterminated layer)
"""

import pytest
import numpy as np

from voxfield.errors import MalformedInput, RasterizationError
from voxfield.field import FieldKind
from voxfield.gcode import load_trace
from voxfield.rasterize import GcodeInfillRasterizer, layer_statistics, printing_bounding_box

from conftest import serpentine


@pytest.fixture
def line_trace(make_trace):
    """
    Eleven layers: layer 1 holds a line along y = 5, layer 2 a line along
    x = 0, which gives an 11 x 11 grid whose row 5 is centred on y = 5.
    """
    layers = [[] for _ in range(11)]
    layers[0] = [[(-20.0, -20.0), (-19.0, -20.0)]]  # support, outside the box
    layers[1] = [[(0.0, 5.0), (10.0, 5.0)]]
    layers[2] = [[(0.0, 0.0), (0.0, 10.0)]]
    return make_trace(layers)


# ============== Bounding Box Tests ==============

class TestPrintingBoundingBox:
    """Tests for the dilated printing box."""

    def test_layer_zero_excluded(self, line_trace):
        summary = load_trace(line_trace)
        box = printing_bounding_box(summary, 0.4)
        np.testing.assert_allclose(box.min_corner[:2], [-0.2, -0.2])
        np.testing.assert_allclose(box.max_corner[:2], [10.2, 10.2])

    def test_z_dilation(self, line_trace):
        """A full nozzle below, half a nozzle above."""
        summary = load_trace(line_trace)
        box = printing_bounding_box(summary, 0.4)
        assert box.min_z == pytest.approx(0.4 - 0.4)
        assert box.max_z == pytest.approx(0.6 + 0.2)

    def test_single_layer_uses_layer_zero(self, single_layer_trace):
        summary = load_trace(single_layer_trace)
        box = printing_bounding_box(summary, 0.4)
        np.testing.assert_allclose(box.size()[:2], [4.4, 4.4])


# ============== Coverage Tests ==============

class TestLineCoverage:
    """Tests for the footprint of a single extrusion line."""

    def test_centerline_single_sample(self, line_trace):
        """Samples at voxel centres: row 5 fully covered, the rest empty."""
        field = GcodeInfillRasterizer(samples=1).rasterize_file(line_trace)
        assert field.kind is FieldKind.SCALAR_BYTE
        assert field.dims == (11, 11, 11)

        layer = field.data[1]
        np.testing.assert_array_equal(layer[5], 255)
        assert layer[np.arange(11) != 5].sum() == 0

    def test_band_width(self, line_trace):
        """Jittered samples stay within one voxel of the line."""
        field = GcodeInfillRasterizer(samples=16).rasterize_file(line_trace)
        layer = field.data[1]
        assert np.all(layer[5] > 0)
        assert layer[:4].sum() == 0
        assert layer[7:].sum() == 0
        assert layer[4].sum() == 0 and layer[6].sum() == 0

    def test_layers_are_separate(self, line_trace):
        field = GcodeInfillRasterizer(samples=1).rasterize_file(line_trace)
        assert field.data[3:].sum() == 0
        # layer 0 support lies outside the grid and covers nothing
        assert field.data[0].sum() == 0

    def test_dense_infill_saturates(self, single_layer_trace):
        field = GcodeInfillRasterizer(samples=4).rasterize_file(single_layer_trace)
        assert field.dims == (1, 1, 1)
        assert field.data[0, 0, 0] == 255


# ============== Determinism Tests ==============

class TestDeterminism:
    """Tests for reproducible jitter."""

    def test_same_seed_same_grid(self, line_trace):
        a = GcodeInfillRasterizer(samples=8, jitter_seed=3).rasterize_file(line_trace)
        b = GcodeInfillRasterizer(samples=8, jitter_seed=3, n_workers=1).rasterize_file(line_trace)
        np.testing.assert_array_equal(a.data, b.data)

    def test_block_jitter(self):
        rasterizer = GcodeInfillRasterizer(samples=5, jitter_seed=1)
        block = rasterizer._block_jitter(2, 6, (0, 3), (1, 4))
        assert block.shape == (4, 4, 5, 2)
        np.testing.assert_array_equal(block[:, :, 0], 0.0)
        assert np.all(np.abs(block) <= 0.5)
        assert np.any(block[:, :, 1:] != 0.0)
        np.testing.assert_array_equal(block, rasterizer._block_jitter(2, 6, (0, 3), (1, 4)))

    def test_voxel_jitter_independent_of_block(self):
        """A voxel gets the same offsets whether drawn alone or inside a larger block."""
        rasterizer = GcodeInfillRasterizer(samples=4, jitter_seed=7)
        full = rasterizer._block_jitter(3, 8, (0, 7), (0, 7))
        sub = rasterizer._block_jitter(3, 8, (2, 5), (3, 6))
        np.testing.assert_array_equal(sub, full[2:6, 3:7])
        single = rasterizer._block_jitter(3, 8, (4, 4), (7, 7))
        np.testing.assert_array_equal(single[0, 0], full[4, 7])

    def test_jitter_differs_between_layers(self):
        rasterizer = GcodeInfillRasterizer(samples=3, jitter_seed=0)
        a = rasterizer._block_jitter(0, 4, (0, 3), (0, 3))
        b = rasterizer._block_jitter(1, 4, (0, 3), (0, 3))
        assert not np.array_equal(a, b)


# ============== Error Tests ==============

class TestErrors:
    """Tests for rasterization failures."""

    def test_missing_nozzle(self, tmp_path):
        path = tmp_path / "no_nozzle.gcode"
        path.write_text("; <layer>\nG0 X0 Y0 Z0.2\nG1 X1 E1\n; </layer>\n")
        with pytest.raises(MalformedInput):
            GcodeInfillRasterizer().rasterize_file(path)

    def test_no_layers(self, tmp_path):
        path = tmp_path / "no_layers.gcode"
        path.write_text("; nozzle_diameter_mm_0 : 0.4\nG0 X0 Y0 Z0.2\nG1 X1 E1\n")
        with pytest.raises(MalformedInput):
            GcodeInfillRasterizer().rasterize_file(path)

    def test_unterminated_layer(self, make_trace):
        path = make_trace([[serpentine()], [serpentine()]], close_last=False)
        with pytest.raises(RasterizationError, match="out of bounds"):
            GcodeInfillRasterizer().rasterize_file(path)

    def test_invalid_samples(self):
        with pytest.raises(ValueError):
            GcodeInfillRasterizer(samples=0)


# ============== Layer Statistics Tests ==============

class TestLayerStatistics:
    """Tests for per-layer process statistics."""

    def test_counts_and_fan(self, line_trace):
        stats = layer_statistics(load_trace(line_trace))
        assert set(stats) == {0, 1, 2}
        assert stats[1]["segments"] == 1
        assert stats[1]["length_mm"] == pytest.approx(10.0)
        assert stats[1]["mean_fan"] == 128.0
        assert stats[1]["mean_feed_rate"] == 1200.0
