"""
Configuration and constants for a voxelization run.

All lengths are millimetres, matching the units of the tool-path trace
and of the field bounding boxes.
"""

from dataclasses import dataclass, field, fields
from typing import Optional, Dict, Any, List
import json
from pathlib import Path

from .errors import MalformedInput


# Well-known bag keys
OUTPUT_GEOMETRY = "output_geometry"
INPUT_GEOMETRY = "input_geometry"


@dataclass
class PipelineConfig:
    """
    Global configuration for a voxelization run.

    Defaults are tuned for small FDM parts (0.4 mm nozzle, a few hundred
    layers). Every field can be overridden from a JSON file.
    """

    # Rasterizer
    samples: int = 4
    jitter_seed: int = 0

    # Statistics engine
    kernel_size_mm: float = 2.0
    direction_samples: int = 32
    occupancy_threshold: float = 0.5
    stats_name: str = "output_stats"
    reference_direction: Optional[str] = None

    # Bag preparation
    resample: List[str] = field(default_factory=list)
    spherical: Dict[str, List[str]] = field(default_factory=dict)
    array_fields: List[str] = field(default_factory=list)
    border_padding: int = 0

    # Mesh voxelizer
    align_mesh_center: bool = True
    depth_map_dir: Optional[Path] = None

    # Worker pool (None = one worker per CPU)
    n_workers: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "samples": self.samples,
            "jitter_seed": self.jitter_seed,
            "kernel_size_mm": self.kernel_size_mm,
            "direction_samples": self.direction_samples,
            "occupancy_threshold": self.occupancy_threshold,
            "stats_name": self.stats_name,
            "reference_direction": self.reference_direction,
            "resample": list(self.resample),
            "spherical": {k: list(v) for k, v in self.spherical.items()},
            "array_fields": list(self.array_fields),
            "border_padding": self.border_padding,
            "align_mesh_center": self.align_mesh_center,
            "depth_map_dir": str(self.depth_map_dir) if self.depth_map_dir else None,
            "n_workers": self.n_workers,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PipelineConfig":
        data = dict(data)
        unknown = set(data) - {f.name for f in fields(cls)}
        if unknown:
            raise MalformedInput(f"unknown config keys: {sorted(unknown)}")
        if data.get("depth_map_dir"):
            data["depth_map_dir"] = Path(data["depth_map_dir"])
        return cls(**data)

    @classmethod
    def from_json(cls, path: Path) -> "PipelineConfig":
        """Load config from JSON file."""
        with open(path) as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                raise MalformedInput(f"invalid config {path}: {e}") from e
        return cls.from_dict(data)

    def save(self, path: Path) -> None:
        """Save config to JSON file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)
