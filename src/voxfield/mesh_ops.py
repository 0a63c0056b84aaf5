"""
Mesh operation utilities.

Loading the design mesh, its bounding box and summary statistics.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Union

import numpy as np
import trimesh

from .errors import MalformedInput
from .field import BoundingBox

logger = logging.getLogger(__name__)


def load_mesh(path: Union[str, Path]) -> trimesh.Trimesh:
    """
    Load a triangulated surface mesh (STL or any format trimesh reads).

    Scenes are flattened into a single mesh.

    Args:
        path: Mesh file path

    Returns:
        Trimesh mesh object
    """
    path = Path(path)
    if not path.exists():
        raise MalformedInput(f"mesh file not found: {path}")

    try:
        mesh = trimesh.load(path, force="mesh")
    except Exception as e:
        raise MalformedInput(f"could not read mesh {path}: {e}") from e

    validate_mesh(mesh)
    logger.info(f"Loaded mesh {path.name}: {len(mesh.vertices)} verts, {len(mesh.faces)} faces")
    return mesh


def validate_mesh(mesh: trimesh.Trimesh) -> None:
    """Reject meshes the voxelizer cannot use."""
    if not isinstance(mesh, trimesh.Trimesh):
        raise MalformedInput(f"expected a triangle mesh, got {type(mesh).__name__}")
    if len(mesh.faces) == 0 or len(mesh.vertices) == 0:
        raise MalformedInput("mesh has no triangles")
    if not np.all(np.isfinite(mesh.vertices)):
        raise MalformedInput("mesh has non-finite vertex coordinates")


def mesh_bounding_box(mesh: trimesh.Trimesh) -> BoundingBox:
    """Bounding box of the mesh vertices."""
    return BoundingBox.from_points(mesh.vertices)


def compute_mesh_stats(mesh: trimesh.Trimesh) -> Dict[str, Any]:
    """
    Compute mesh statistics.

    Args:
        mesh: Trimesh mesh object

    Returns:
        Dictionary of mesh statistics
    """
    bounds = mesh.bounds
    extents = mesh.extents

    return {
        "n_vertices": len(mesh.vertices),
        "n_faces": len(mesh.faces),
        "bounds": {
            "min": bounds[0].tolist(),
            "max": bounds[1].tolist()
        },
        "extents": extents.tolist(),
        "volume": float(mesh.volume) if mesh.is_watertight else None,
        "surface_area": float(mesh.area),
        "is_watertight": mesh.is_watertight,
        "is_winding_consistent": mesh.is_winding_consistent,
    }


def align_to_box(mesh: trimesh.Trimesh, mesh_bbox: BoundingBox, target: BoundingBox) -> trimesh.Trimesh:
    """Copy of the mesh translated so its box centre matches the target box centre."""
    offset = target.center() - mesh_bbox.center()
    aligned = mesh.copy()
    aligned.apply_translation(offset)
    logger.debug(f"aligned mesh to target box, offset={offset}")
    return aligned
