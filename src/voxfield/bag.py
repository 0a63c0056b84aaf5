"""
Field collection ("bag").

Maps unique names to VoxelFields, alongside the per-layer parameter
arrays and scalar parameters that arrive with the upstream bag. Fields
are read-only once inserted; the only whole-bag mutation is the final
border padding pass.
"""

import logging
from typing import Dict, Iterator, List, Optional, Sequence, Union

import numpy as np

from .errors import DimensionMismatch, MalformedInput, UnsupportedConversion
from .field import FieldKind, VoxelField

logger = logging.getLogger(__name__)

ParamValue = Union[bool, float, str]

# Byte-encoded spherical sources span these ranges
RADIUS_SCALE = 1.0
THETA_SCALE_DEG = 180.0
PHI_SCALE_DEG = 360.0


class FieldCollection:
    """Named fields, per-layer arrays and parameters of one pipeline run."""

    def __init__(
        self,
        fields: Optional[Dict[str, VoxelField]] = None,
        arrays: Optional[Dict[str, np.ndarray]] = None,
        params: Optional[Dict[str, ParamValue]] = None
    ):
        self._fields: Dict[str, VoxelField] = {}
        self.arrays: Dict[str, np.ndarray] = {
            name: np.asarray(values, dtype=np.float64) for name, values in (arrays or {}).items()
        }
        self.params: Dict[str, ParamValue] = dict(params or {})

        for name, field in (fields or {}).items():
            self.insert(name, field)

    # ------------------------------------------------------------------
    # Mapping protocol
    # ------------------------------------------------------------------

    def __contains__(self, name: object) -> bool:
        return name in self._fields

    def __len__(self) -> int:
        return len(self._fields)

    def __iter__(self) -> Iterator[str]:
        return iter(self._fields)

    def names(self) -> List[str]:
        return list(self._fields)

    def items(self):
        return self._fields.items()

    def get(self, name: str) -> VoxelField:
        try:
            return self._fields[name]
        except KeyError:
            raise KeyError(f"field {name} not found") from None

    def first(self) -> VoxelField:
        """First inserted field; its grid is the reference grid of the bag."""
        if not self._fields:
            raise MalformedInput("field collection is empty")
        return next(iter(self._fields.values()))

    def insert(self, name: str, field: VoxelField) -> VoxelField:
        """Publish a field. Names are unique and the payload becomes read-only."""
        if name in self._fields:
            raise MalformedInput(f"field {name} already exists")

        field.data.flags.writeable = False
        self._fields[name] = field
        logger.debug(f"added field {name}: {field.kind.value} {field.dims}")
        return field

    # ------------------------------------------------------------------
    # Derived fields
    # ------------------------------------------------------------------

    def convert_to_field(self, name: str) -> VoxelField:
        """
        Force a per-layer parameter array into a scalar float field.

        The field uses the grid of the first field in the bag; z slice k
        takes ``array[floor(k * len(array) / nz)]``. The array is removed
        once converted.

        Args:
            name: Name of the array (and of the new field)

        Returns:
            The inserted field
        """
        if name not in self.arrays:
            raise MalformedInput(f"param array {name} not found")

        array = self.arrays[name]
        if len(array) == 0:
            raise MalformedInput(f"param array {name} is empty")

        reference = self.first()
        nz, ny, nx = reference.dims

        index = (np.arange(nz) * len(array)) // nz
        per_slice = array[index].astype(np.float32)
        data = np.broadcast_to(per_slice[:, None, None], (nz, ny, nx)).copy()

        field = self.insert(name, VoxelField(data, reference.bbox, FieldKind.SCALAR_FLOAT))
        del self.arrays[name]

        logger.info(f"converted param array {name} ({len(array)} values) into a field")
        return field

    def assemble_spherical(self, name: str, source_names: Sequence[str]) -> VoxelField:
        """
        Build a vector field from angle fields.

        One source is theta, two are (theta, phi), three are (r, theta, phi).
        Angles are in degrees; byte sources span [0, 180] for theta and
        [0, 360] for phi. Missing components default to r=1, theta=phi=0.

        Args:
            name: Name of the new vector field
            source_names: 1 to 3 field names

        Returns:
            The inserted VECTOR3_FLOAT field
        """
        if not 1 <= len(source_names) <= 3:
            raise MalformedInput(f"spherical field {name} needs 1 to 3 sources, got {len(source_names)}")

        sources = []
        for src_name in source_names:
            if src_name not in self._fields:
                raise MalformedInput(f"{src_name} field not found")
            sources.append(self._fields[src_name])

        dims = sources[0].dims
        for src_name, src in zip(source_names, sources):
            if src.dims != dims:
                raise DimensionMismatch(
                    f"spherical source {src_name} has dims {src.dims}, expected {dims}"
                )

        def component(idx: int, scale: float) -> np.ndarray:
            try:
                return sources[idx].as_float(scale).astype(np.float64)
            except UnsupportedConversion as e:
                raise UnsupportedConversion(
                    f"could not convert {source_names[idx]} field to float: {e}"
                ) from e

        if len(sources) == 3:
            r = component(0, RADIUS_SCALE)
            theta = component(1, THETA_SCALE_DEG)
            phi = component(2, PHI_SCALE_DEG)
        else:
            r = np.ones(dims)
            theta = component(0, THETA_SCALE_DEG)
            phi = component(1, PHI_SCALE_DEG) if len(sources) == 2 else np.zeros(dims)

        theta = np.deg2rad(theta)
        phi = np.deg2rad(phi)

        data = np.stack([
            r * np.cos(phi) * -np.sin(theta),
            r * np.cos(phi) * -np.cos(theta),
            r * np.sin(phi),
        ], axis=-1).astype(np.float32)

        return self.insert(name, VoxelField(data, sources[0].bbox, FieldKind.VECTOR3_FLOAT))

    # ------------------------------------------------------------------
    # Whole-bag operations
    # ------------------------------------------------------------------

    def check_common_box(self) -> List[str]:
        """Warn about (and return) fields not co-registered with the first one."""
        if not self._fields:
            return []

        reference = self.first()
        mismatched = [name for name, field in self._fields.items() if not field.has_same_box(reference)]
        for name in mismatched:
            logger.warning(
                f"field {name} doesn't have the same bounding box as the first field, "
                f"this may lead to inconsistencies"
            )
        return mismatched

    def pad_borders(self, border: int) -> None:
        """Pad every field by ``border`` voxels per side, all at once."""
        if border <= 0:
            return

        padded = {name: field.padded(border) for name, field in self._fields.items()}
        self._fields = {}
        for name, field in padded.items():
            self.insert(name, field)

        logger.info(f"padded {len(padded)} fields by {border} voxels")
