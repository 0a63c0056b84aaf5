"""
Error taxonomy for voxel field construction.

Parsing failures abort a whole run. Optional per-field operations raise
these errors so the pipeline can log them and omit the field.
"""


class VoxfieldError(Exception):
    """Base class for every error raised by voxfield."""


class MalformedInput(VoxfieldError, ValueError):
    """Unparseable trace, invalid mesh or inconsistent field attributes."""


class UnsupportedConversion(VoxfieldError, TypeError):
    """A field cannot be coerced to the kind an operation needs."""


class DimensionMismatch(VoxfieldError, ValueError):
    """Inputs of incompatible rank or shape."""


class OracleFailure(VoxfieldError, RuntimeError):
    """The depth-rendering backend failed or returned unusable maps."""


class RasterizationError(VoxfieldError, IndexError):
    """A tool-path segment addresses a voxel outside the grid."""
