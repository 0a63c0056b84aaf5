"""
Field resampler.

Trilinearly resamples a field onto the grid of a destination mask and
modulates it by the mask's occupancy. Direction fields are renormalised
after interpolation so they stay unit length; the mask factor is then the
only magnitude they carry.
"""

import logging
from typing import Optional, Tuple

import numpy as np

from .errors import DimensionMismatch
from .field import BYTE_SCALE, FieldKind, VoxelField
from .parallel import map_partitions, resolve_workers, split_range

logger = logging.getLogger(__name__)

AxisSamples = Tuple[np.ndarray, np.ndarray, np.ndarray]


def axis_samples(dest_n: int, src_n: int, dest_size: float, src_size: float) -> AxisSamples:
    """
    Source indices and weights along one axis.

    Destination voxel i maps to ``(i + 0.5) * dest_scale / src_scale`` in
    source voxel units; interpolation is between the two source voxel
    centres around that position, clamped to ``[0, src_n - 1]``.

    Returns:
        (lower index, upper index, weight of the upper index)
    """
    dest_scale = dest_size / dest_n
    src_scale = src_size / src_n
    if src_scale > 0:
        coord = (np.arange(dest_n) + 0.5) * dest_scale / src_scale
    else:
        coord = np.full(dest_n, 0.5)

    grid = np.clip(coord - 0.5, 0.0, src_n - 1)
    lower = np.floor(grid).astype(np.intp)
    upper = np.minimum(lower + 1, src_n - 1)
    frac = grid - lower
    return lower, upper, frac


def trilinear(
    data: np.ndarray,
    x: AxisSamples,
    y: AxisSamples,
    z: AxisSamples
) -> np.ndarray:
    """
    Interpolate a z-major grid at the separable sample positions.

    A trailing channel axis, if present, is interpolated per component.
    """
    extra = (1,) * (data.ndim - 3)
    result = None

    for iz, wz in ((z[0], 1.0 - z[2]), (z[1], z[2])):
        for iy, wy in ((y[0], 1.0 - y[2]), (y[1], y[2])):
            for ix, wx in ((x[0], 1.0 - x[2]), (x[1], x[2])):
                weight = wz[:, None, None] * wy[None, :, None] * wx[None, None, :]
                corner = data[np.ix_(iz, iy, ix)].astype(np.float64)
                term = weight.reshape(weight.shape + extra) * corner
                result = term if result is None else result + term

    return result


class FieldResampler:
    """
    Resample fields onto the grid of a mask field.

    Byte sources produce byte fields, float sources float fields and
    vector sources unit vector fields scaled by the mask.
    """

    def __init__(self, n_workers: Optional[int] = None):
        self.n_workers = n_workers

    def resample(self, source: VoxelField, mask: VoxelField) -> VoxelField:
        """
        Resample ``source`` onto ``mask``'s grid.

        Args:
            source: Scalar (byte, byte vec4, float) or vector field
            mask: Scalar occupancy field defining the destination grid

        Returns:
            New field with the mask's dims and bbox
        """
        if mask.kind is FieldKind.VECTOR3_FLOAT:
            raise DimensionMismatch("resample mask must be a scalar field")

        is_vector = source.kind is FieldKind.VECTOR3_FLOAT
        if is_vector:
            values = source.as_vector()
            if values.ndim != 4 or values.shape[3] != 3:
                raise DimensionMismatch(f"vector field has shape {values.shape}")
        else:
            values = source.as_float(BYTE_SCALE if source.kind is not FieldKind.SCALAR_FLOAT else 1.0)
            if values.ndim != 3:
                raise DimensionMismatch(f"scalar field has shape {values.shape}")

        src_nz, src_ny, src_nx = source.dims
        dst_nz, dst_ny, dst_nx = mask.dims
        src_size = source.bbox.size()
        dst_size = mask.bbox.size()

        x = axis_samples(dst_nx, src_nx, dst_size[0], src_size[0])
        y = axis_samples(dst_ny, src_ny, dst_size[1], src_size[1])
        z = axis_samples(dst_nz, src_nz, dst_size[2], src_size[2])

        occupancy = mask.as_float()

        def resample_slab(bounds: Tuple[int, int]) -> np.ndarray:
            z0, z1 = bounds
            z_slab = (z[0][z0:z1], z[1][z0:z1], z[2][z0:z1])
            interpolated = trilinear(values, x, y, z_slab)
            weight = occupancy[z0:z1].astype(np.float64)

            if is_vector:
                norm = np.linalg.norm(interpolated, axis=-1, keepdims=True)
                unit = np.divide(interpolated, norm, out=np.zeros_like(interpolated), where=norm > 0)
                return unit * weight[..., None]
            return interpolated * weight

        slabs = split_range(dst_nz, resolve_workers(self.n_workers))
        result = np.concatenate(map_partitions(resample_slab, slabs, self.n_workers), axis=0)

        if is_vector:
            out = VoxelField(result.astype(np.float32), mask.bbox, FieldKind.VECTOR3_FLOAT)
        elif source.kind is FieldKind.SCALAR_FLOAT:
            out = VoxelField(result.astype(np.float32), mask.bbox, FieldKind.SCALAR_FLOAT)
        else:
            byte_data = np.clip(np.rint(result), 0, 255).astype(np.uint8)
            out = VoxelField(byte_data, mask.bbox, FieldKind.SCALAR_BYTE)

        logger.info(f"resampled {source.kind.value} field {source.dims} -> {out.dims}")
        return out
