"""
Field collection I/O.

A bag is stored as one compressed ``.npz`` holding every payload and a
JSON sidecar (same stem, ``.json``) with kinds, bounding boxes, per-layer
arrays and parameters.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Union

import numpy as np

from .bag import FieldCollection
from .errors import MalformedInput
from .field import BoundingBox, FieldKind, VoxelField

logger = logging.getLogger(__name__)

FIELD_PREFIX = "field:"
ARRAY_PREFIX = "array:"
FORMAT_VERSION = 1


def _bag_paths(path: Union[str, Path]):
    path = Path(path)
    if path.suffix != ".npz":
        path = path.with_suffix(".npz")
    return path, path.with_suffix(".json")


def save_bag(bag: FieldCollection, path: Union[str, Path]) -> Path:
    """
    Save a field collection with its metadata sidecar.

    Args:
        bag: Collection to save
        path: Output path (``.npz`` is enforced)

    Returns:
        Path of the written ``.npz``
    """
    data_path, meta_path = _bag_paths(path)
    data_path.parent.mkdir(parents=True, exist_ok=True)

    payloads = {FIELD_PREFIX + name: field.data for name, field in bag.items()}
    payloads.update({ARRAY_PREFIX + name: values for name, values in bag.arrays.items()})

    metadata: Dict[str, Any] = {
        "format_version": FORMAT_VERSION,
        "fields": {
            name: {
                "kind": field.kind.value,
                "dims": list(field.dims),
                "bbox": field.bbox.to_dict(),
            }
            for name, field in bag.items()
        },
        "arrays": list(bag.arrays),
        "params": bag.params,
    }

    np.savez_compressed(data_path, **payloads)
    with open(meta_path, 'w') as f:
        json.dump(metadata, f, indent=2)

    logger.info(f"Saved bag: {data_path} ({len(bag)} fields, {len(bag.arrays)} arrays)")
    return data_path


def load_bag(path: Union[str, Path]) -> FieldCollection:
    """
    Load a field collection written by :func:`save_bag`.

    Args:
        path: Path of the ``.npz`` (or its stem)

    Returns:
        FieldCollection with fields in their saved order
    """
    data_path, meta_path = _bag_paths(path)
    if not data_path.exists() or not meta_path.exists():
        raise MalformedInput(f"bag not found: {data_path} / {meta_path}")

    with open(meta_path) as f:
        metadata = json.load(f)

    bag = FieldCollection(params=metadata.get("params", {}))
    with np.load(data_path, allow_pickle=False) as payloads:
        for name, info in metadata.get("fields", {}).items():
            key = FIELD_PREFIX + name
            if key not in payloads:
                raise MalformedInput(f"bag {data_path} has no payload for field {name}")
            try:
                kind = FieldKind(info["kind"])
                bbox = BoundingBox.from_dict(info["bbox"])
            except (KeyError, ValueError, TypeError) as e:
                raise MalformedInput(f"invalid metadata for field {name}: {e}") from e

            field = VoxelField(payloads[key], bbox, kind)
            if list(field.dims) != list(info.get("dims", field.dims)):
                raise MalformedInput(f"field {name} has dims {field.dims}, metadata says {info['dims']}")
            bag.insert(name, field)

        for name in metadata.get("arrays", []):
            bag.arrays[name] = np.asarray(payloads[ARRAY_PREFIX + name], dtype=np.float64)

    logger.info(f"Loaded bag: {data_path} ({len(bag)} fields)")
    return bag
