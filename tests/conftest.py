"""
Shared fixtures for voxfield tests.
"""

import sys
from pathlib import Path

import numpy as np
import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


def trace_lines(layers, nozzle=0.4, layer_height=0.2, close_last=True):
    """
    Build G-code lines, one list of polylines per layer.

    Every polyline is a list of (x, y) points printed with relative E.
    """
    lines = [
        "; generated test trace",
        f"; nozzle_diameter_mm_0 : {nozzle}",
        "M83",
        "M106 S128",
    ]
    for k, polylines in enumerate(layers):
        z = layer_height * (k + 1)
        lines.append("; <layer>")
        for polyline in polylines:
            x0, y0 = polyline[0]
            lines.append(f"G0 X{x0} Y{y0} Z{z:.3f} F6000")
            for x, y in polyline[1:]:
                lines.append(f"G1 X{x} Y{y} E0.05 F1200")
        if close_last or k < len(layers) - 1:
            lines.append("; </layer>")
    return lines


def serpentine(size=4.0, spacing=0.4):
    """Back-and-forth infill polyline covering a size x size square."""
    points = []
    n_lines = int(round(size / spacing)) + 1
    for idx in range(n_lines):
        y = round(idx * spacing, 6)
        row = [(0.0, y), (size, y)]
        points.extend(row if idx % 2 == 0 else row[::-1])
    return points


@pytest.fixture
def make_trace(tmp_path):
    """Write a trace file from per-layer polylines and return its path."""
    def _make(layers, name="trace.gcode", **kwargs):
        path = tmp_path / name
        path.write_text("\n".join(trace_lines(layers, **kwargs)) + "\n")
        return path
    return _make


@pytest.fixture
def single_layer_trace(make_trace):
    """One dense rectangular infill layer."""
    return make_trace([[serpentine()]])


@pytest.fixture
def rng():
    return np.random.default_rng(1234)
