"""
Tests for the voxel field data model.

Tests cover:
- BoundingBox construction and geometry
- FieldKind inference
- Centralised conversions between field kinds
- Border padding
"""

import pytest
import numpy as np

from voxfield.errors import MalformedInput, UnsupportedConversion
from voxfield.field import BoundingBox, FieldKind, VoxelField, infer_kind, to_byte


@pytest.fixture
def unit_box():
    return BoundingBox(0.0, 0.0, 0.0, 4.0, 2.0, 1.0)


# ============== BoundingBox Tests ==============

class TestBoundingBox:
    """Tests for BoundingBox."""

    def test_rejects_inverted_bounds(self):
        """min > max on any axis is malformed."""
        with pytest.raises(MalformedInput):
            BoundingBox(1.0, 0.0, 0.0, 0.0, 1.0, 1.0)

    def test_size_and_center(self, unit_box):
        np.testing.assert_allclose(unit_box.size(), [4.0, 2.0, 1.0])
        np.testing.assert_allclose(unit_box.center(), [2.0, 1.0, 0.5])

    def test_from_points(self):
        points = np.array([[1.0, -2.0, 3.0], [-1.0, 4.0, 0.5], [0.0, 0.0, 1.0]])
        box = BoundingBox.from_points(points)
        assert box == BoundingBox(-1.0, -2.0, 0.5, 1.0, 4.0, 3.0)

    def test_from_no_points(self):
        with pytest.raises(MalformedInput):
            BoundingBox.from_points(np.zeros((0, 3)))

    def test_dilated_asymmetric_z(self, unit_box):
        """Z may grow differently below and above."""
        grown = unit_box.dilated(0.5, 0.5, 1.0, 0.25)
        assert grown == BoundingBox(-0.5, -0.5, -1.0, 4.5, 2.5, 1.25)

    def test_dict_round_trip(self, unit_box):
        assert BoundingBox.from_dict(unit_box.to_dict()) == unit_box


# ============== FieldKind Tests ==============

class TestFieldKind:
    """Tests for payload kind inference."""

    def test_infer_each_kind(self):
        assert infer_kind(np.zeros((2, 3, 4), np.uint8)) is FieldKind.SCALAR_BYTE
        assert infer_kind(np.zeros((2, 3, 4, 4), np.uint8)) is FieldKind.SCALAR_BYTE_VEC4
        assert infer_kind(np.zeros((2, 3, 4), np.float32)) is FieldKind.SCALAR_FLOAT
        assert infer_kind(np.zeros((2, 3, 4, 3), np.float32)) is FieldKind.VECTOR3_FLOAT

    def test_unknown_payload(self):
        with pytest.raises(MalformedInput):
            infer_kind(np.zeros((2, 3), np.uint8))
        with pytest.raises(MalformedInput):
            infer_kind(np.zeros((2, 3, 4, 2), np.float32))

    def test_explicit_kind_must_match(self, unit_box):
        with pytest.raises(MalformedInput):
            VoxelField(np.zeros((2, 2, 2)), unit_box, FieldKind.VECTOR3_FLOAT)

    def test_explicit_kind_casts_dtype(self, unit_box):
        field = VoxelField(np.zeros((2, 2, 2), np.float64), unit_box, FieldKind.SCALAR_FLOAT)
        assert field.data.dtype == np.float32


# ============== Conversion Tests ==============

class TestConversions:
    """Tests for conversions between field kinds."""

    def test_byte_float_byte_round_trip(self, unit_box):
        """Every byte value survives to_float -> to_byte."""
        data = np.arange(256, dtype=np.uint8).reshape(4, 8, 8)
        field = VoxelField(data, unit_box)
        floats = field.as_float()
        assert floats.dtype == np.float32
        assert np.all(np.abs(floats - data / 255.0) <= 1.0 / 255.0)
        np.testing.assert_array_equal(field.to_float_field().to_byte_field().data, data)

    def test_byte_scale(self, unit_box):
        field = VoxelField(np.full((1, 1, 2), 255, np.uint8), unit_box)
        np.testing.assert_allclose(field.as_float(180.0), 180.0)

    def test_vec4_uses_channel_zero(self, unit_box):
        data = np.zeros((1, 2, 2, 4), np.uint8)
        data[..., 0] = 255
        data[..., 1:] = 7
        field = VoxelField(data, unit_box)
        np.testing.assert_allclose(field.as_float(), 1.0)
        np.testing.assert_array_equal(field.as_byte(), 255)

    def test_float_unchanged(self, unit_box):
        data = np.linspace(0, 3, 8, dtype=np.float32).reshape(2, 2, 2)
        field = VoxelField(data, unit_box)
        np.testing.assert_array_equal(field.as_float(), data)

    def test_vector_not_scalar(self, unit_box):
        field = VoxelField(np.zeros((2, 2, 2, 3), np.float32), unit_box)
        with pytest.raises(UnsupportedConversion):
            field.as_float()
        with pytest.raises(UnsupportedConversion):
            field.as_byte()

    def test_scalar_not_vector(self, unit_box):
        field = VoxelField(np.zeros((2, 2, 2), np.uint8), unit_box)
        with pytest.raises(UnsupportedConversion):
            field.as_vector()

    def test_to_byte_saturates(self):
        values = np.array([-1.0, 0.0, 0.5, 1.0, 2.0, np.nan])
        np.testing.assert_array_equal(to_byte(values), [0, 0, 128, 255, 255, 0])


# ============== Geometry Tests ==============

class TestGeometry:
    """Tests for grid geometry helpers."""

    def test_dims_and_spacing(self, unit_box):
        field = VoxelField(np.zeros((2, 4, 8), np.uint8), unit_box)
        assert field.dims == (2, 4, 8)
        np.testing.assert_allclose(field.spacing(), [0.5, 0.5, 0.5])
        np.testing.assert_allclose(field.voxels_per_mm(), [2.0, 2.0, 2.0])

    def test_same_box(self, unit_box):
        a = VoxelField(np.zeros((2, 4, 8), np.uint8), unit_box)
        b = VoxelField(np.ones((2, 4, 8), np.float32), unit_box)
        c = VoxelField(np.zeros((2, 4, 4), np.uint8), unit_box)
        assert a.has_same_box(b)
        assert not a.has_same_box(c)

    def test_padded_keeps_spacing(self, unit_box):
        field = VoxelField(np.full((2, 4, 8), 9, np.uint8), unit_box)
        padded = field.padded(2)
        assert padded.dims == (6, 8, 12)
        np.testing.assert_allclose(padded.spacing(), field.spacing())
        np.testing.assert_allclose(padded.bbox.min_corner, [-1.0, -1.0, -1.0])
        assert padded.data[0].sum() == 0
        np.testing.assert_array_equal(padded.data[2:4, 2:6, 2:10], 9)

    def test_padded_vector(self, unit_box):
        field = VoxelField(np.ones((2, 2, 2, 3), np.float32), unit_box)
        assert field.padded(1).shape == (4, 4, 4, 3)
