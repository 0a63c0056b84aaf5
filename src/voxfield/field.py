"""
Voxel field data model.

A VoxelField is a dense grid payload plus the physical bounding box (mm)
it covers. Layout is z-major: ``data[k, j, i]`` is the voxel at
(x=i, y=j, z=k), with an optional trailing channel axis.

All conversions between field kinds live here.
"""

import numpy as np
from typing import Tuple, Optional, Dict, Any
from dataclasses import dataclass
from enum import Enum
import logging

from .errors import MalformedInput, UnsupportedConversion

logger = logging.getLogger(__name__)

BYTE_SCALE = 255.0


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned box in millimetres."""
    min_x: float
    min_y: float
    min_z: float
    max_x: float
    max_y: float
    max_z: float

    def __post_init__(self):
        if self.min_x > self.max_x or self.min_y > self.max_y or self.min_z > self.max_z:
            raise MalformedInput(f"invalid bounding box: {self}")

    @classmethod
    def from_points(cls, points: np.ndarray) -> "BoundingBox":
        """Tight box around an (N, 3) array of points."""
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        if len(points) == 0:
            raise MalformedInput("cannot compute the bounding box of zero points")
        mins = points.min(axis=0)
        maxs = points.max(axis=0)
        return cls(
            float(mins[0]), float(mins[1]), float(mins[2]),
            float(maxs[0]), float(maxs[1]), float(maxs[2])
        )

    @property
    def min_corner(self) -> np.ndarray:
        return np.array([self.min_x, self.min_y, self.min_z])

    @property
    def max_corner(self) -> np.ndarray:
        return np.array([self.max_x, self.max_y, self.max_z])

    def size(self) -> np.ndarray:
        """Extent (x, y, z)."""
        return self.max_corner - self.min_corner

    def center(self) -> np.ndarray:
        """Centre (x, y, z)."""
        return (self.min_corner + self.max_corner) / 2.0

    def dilated(
        self,
        dx: float,
        dy: float,
        dz_below: float,
        dz_above: Optional[float] = None
    ) -> "BoundingBox":
        """Grown copy; ``dz_above`` defaults to ``dz_below``."""
        if dz_above is None:
            dz_above = dz_below
        return BoundingBox(
            self.min_x - dx, self.min_y - dy, self.min_z - dz_below,
            self.max_x + dx, self.max_y + dy, self.max_z + dz_above
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "min": [self.min_x, self.min_y, self.min_z],
            "max": [self.max_x, self.max_y, self.max_z],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BoundingBox":
        (min_x, min_y, min_z), (max_x, max_y, max_z) = data["min"], data["max"]
        return cls(min_x, min_y, min_z, max_x, max_y, max_z)


class FieldKind(Enum):
    """Payload variants a VoxelField may carry."""
    SCALAR_BYTE = "scalar_byte"            # (nz, ny, nx) uint8
    SCALAR_BYTE_VEC4 = "scalar_byte_vec4"  # (nz, ny, nx, 4) uint8, legacy RGBA
    SCALAR_FLOAT = "scalar_float"          # (nz, ny, nx) float32
    VECTOR3_FLOAT = "vector3_float"        # (nz, ny, nx, 3) float32

    @property
    def components(self) -> int:
        return {
            FieldKind.SCALAR_BYTE: 1,
            FieldKind.SCALAR_BYTE_VEC4: 4,
            FieldKind.SCALAR_FLOAT: 1,
            FieldKind.VECTOR3_FLOAT: 3,
        }[self]

    @property
    def dtype(self) -> np.dtype:
        if self in (FieldKind.SCALAR_BYTE, FieldKind.SCALAR_BYTE_VEC4):
            return np.dtype(np.uint8)
        return np.dtype(np.float32)


def infer_kind(data: np.ndarray) -> FieldKind:
    """Pick the FieldKind matching a payload's dtype and rank."""
    is_byte = data.dtype == np.uint8
    if data.ndim == 3:
        return FieldKind.SCALAR_BYTE if is_byte else FieldKind.SCALAR_FLOAT
    if data.ndim == 4 and is_byte and data.shape[3] == 4:
        return FieldKind.SCALAR_BYTE_VEC4
    if data.ndim == 4 and not is_byte and data.shape[3] == 3:
        return FieldKind.VECTOR3_FLOAT
    raise MalformedInput(f"no field kind for payload of shape {data.shape} and dtype {data.dtype}")


class VoxelField:
    """
    Typed dense grid with a physical extent.

    Fields are treated as immutable once published to a FieldCollection;
    operations return new fields.
    """

    def __init__(self, data: np.ndarray, bbox: BoundingBox, kind: Optional[FieldKind] = None):
        data = np.asarray(data)
        if kind is None:
            kind = infer_kind(data)
        else:
            if data.ndim not in (3, 4):
                raise MalformedInput(f"{kind.value} payload must be 3-D or 4-D, got shape {data.shape}")
            expected_rank = 3 if kind.components == 1 else 4
            if data.ndim != expected_rank or (expected_rank == 4 and data.shape[3] != kind.components):
                raise MalformedInput(f"payload of shape {data.shape} does not match {kind.value}")
            if data.dtype != kind.dtype:
                data = data.astype(kind.dtype)

        if min(data.shape[:3]) < 1:
            raise MalformedInput(f"empty field payload: {data.shape}")

        self.data = data
        self.bbox = bbox
        self.kind = kind

    def __repr__(self) -> str:
        return f"VoxelField(kind={self.kind.value}, dims={self.dims}, bbox={self.bbox})"

    # ------------------------------------------------------------------
    # Geometry
    # ------------------------------------------------------------------

    @property
    def dims(self) -> Tuple[int, int, int]:
        """Grid shape (nz, ny, nx)."""
        nz, ny, nx = self.data.shape[:3]
        return nz, ny, nx

    @property
    def shape(self) -> Tuple[int, ...]:
        return self.data.shape

    def dims_xyz(self) -> np.ndarray:
        nz, ny, nx = self.dims
        return np.array([nx, ny, nz], dtype=np.float64)

    def spacing(self) -> np.ndarray:
        """Voxel size in mm along (x, y, z)."""
        return self.bbox.size() / self.dims_xyz()

    def voxels_per_mm(self) -> np.ndarray:
        """Inverse of spacing, (x, y, z); zero along a flat axis."""
        size = self.bbox.size()
        safe = np.where(size > 0, size, 1.0)
        return np.where(size > 0, self.dims_xyz() / safe, 0.0)

    def has_same_box(self, other: "VoxelField") -> bool:
        """True when both fields are co-registered (same dims and bbox)."""
        return self.dims == other.dims and self.bbox == other.bbox

    # ------------------------------------------------------------------
    # Conversions
    # ------------------------------------------------------------------

    def as_float(self, scale: float = 1.0) -> np.ndarray:
        """
        Scalar payload as float32.

        Byte kinds map [0, 255] to [0, scale] (channel 0 for vec4 grids);
        float fields are returned unchanged.
        """
        if self.kind is FieldKind.SCALAR_BYTE:
            return (self.data.astype(np.float64) * scale / BYTE_SCALE).astype(np.float32)
        if self.kind is FieldKind.SCALAR_BYTE_VEC4:
            return (self.data[..., 0].astype(np.float64) * scale / BYTE_SCALE).astype(np.float32)
        if self.kind is FieldKind.SCALAR_FLOAT:
            return self.data
        raise UnsupportedConversion(f"cannot convert {self.kind.value} field to a scalar float grid")

    def as_byte(self) -> np.ndarray:
        """Scalar payload as uint8; floats are read as fractions of 1."""
        if self.kind is FieldKind.SCALAR_BYTE:
            return self.data
        if self.kind is FieldKind.SCALAR_BYTE_VEC4:
            return np.ascontiguousarray(self.data[..., 0])
        if self.kind is FieldKind.SCALAR_FLOAT:
            return to_byte(self.data)
        raise UnsupportedConversion(f"cannot convert {self.kind.value} field to a scalar byte grid")

    def as_vector(self) -> np.ndarray:
        if self.kind is FieldKind.VECTOR3_FLOAT:
            return self.data
        raise UnsupportedConversion(f"cannot use {self.kind.value} field as a vector field")

    def to_float_field(self, scale: float = 1.0) -> "VoxelField":
        return VoxelField(self.as_float(scale), self.bbox, FieldKind.SCALAR_FLOAT)

    def to_byte_field(self) -> "VoxelField":
        return VoxelField(self.as_byte(), self.bbox, FieldKind.SCALAR_BYTE)

    # ------------------------------------------------------------------
    # Derived fields
    # ------------------------------------------------------------------

    def padded(self, border: int) -> "VoxelField":
        """
        Copy padded with ``border`` zero voxels on every side.

        The bounding box grows by the matching number of voxel spacings so
        that padded fields stay co-registered with each other.
        """
        if border <= 0:
            return self
        pad = [(border, border)] * 3 + [(0, 0)] * (self.data.ndim - 3)
        data = np.pad(self.data, pad, mode="constant")
        dx, dy, dz = self.spacing() * border
        return VoxelField(data, self.bbox.dilated(dx, dy, dz), self.kind)


def to_byte(values: np.ndarray) -> np.ndarray:
    """Map fractions in [0, 1] to uint8 with rounding and saturation."""
    return np.clip(np.rint(np.nan_to_num(np.asarray(values, dtype=np.float64)) * BYTE_SCALE), 0, 255).astype(np.uint8)
