"""
voxfield - voxel fields for printed-part analysis.

Builds co-registered voxel fields from a print:
- output_geometry: printed coverage rasterized from the G-code infill
- input_geometry: design occupancy voxelized from the mesh
- local statistics: windowed mean/confidence and dominant free directions

Usage:
    voxfield --gcode part.gcode --mesh part.stl --output outputs/part.npz
"""

from .bag import FieldCollection
from .config import INPUT_GEOMETRY, OUTPUT_GEOMETRY, PipelineConfig
from .depth import DepthExtentOracle, OrthoView, RasterDepthOracle
from .errors import (
    DimensionMismatch,
    MalformedInput,
    OracleFailure,
    RasterizationError,
    UnsupportedConversion,
    VoxfieldError,
)
from .field import BoundingBox, FieldKind, VoxelField
from .gcode import load_trace, parse_gcode, extract_segments
from .io import load_bag, save_bag
from .pipeline import Pipeline, RunSummary
from .rasterize import GcodeInfillRasterizer
from .resample import FieldResampler
from .stats import LocalStatisticsEngine
from .voxelize import MeshSolidVoxelizer

__version__ = "0.1.0"

__all__ = [
    'FieldCollection', 'PipelineConfig', 'INPUT_GEOMETRY', 'OUTPUT_GEOMETRY',
    'DepthExtentOracle', 'OrthoView', 'RasterDepthOracle',
    'VoxfieldError', 'MalformedInput', 'UnsupportedConversion',
    'DimensionMismatch', 'OracleFailure', 'RasterizationError',
    'BoundingBox', 'FieldKind', 'VoxelField',
    'load_trace', 'parse_gcode', 'extract_segments',
    'load_bag', 'save_bag',
    'Pipeline', 'RunSummary',
    'GcodeInfillRasterizer', 'FieldResampler', 'LocalStatisticsEngine', 'MeshSolidVoxelizer',
]
