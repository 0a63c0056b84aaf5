"""
Tool-path trace parsing.

A single pass over the trace turns every line into typed events (moves,
fan changes, layer markers, embedded parameters). Segment extraction then
replays the events with a small state machine, so comment-only lines such
as layer markers can never drift out of sync with the motion commands.

Recognised input:
- ``G0``/``G1`` with ``X Y Z E F`` words, ``G92 E`` resets
- ``M82``/``M83`` absolute/relative extrusion, ``M106 S<v>``, ``M107``
- ``; <layer>`` and ``; </layer>`` comment lines
- ``; key : value`` comment parameters (e.g. ``nozzle_diameter_mm_0``)
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Union

import numpy as np

from .errors import MalformedInput

logger = logging.getLogger(__name__)

PARAMETER_RE = re.compile(r"^; ([a-z0-9_]*) :\s*(.*)$")
COMMAND_RE = re.compile(r"^([GgMm])(\d+)(?![\d.])")
WORD_RE = re.compile(r"([A-Za-z])\s*([^A-Za-z\s]*)")
LAYER_BEGIN = "; <layer>"
LAYER_END = "; </layer>"
NOZZLE_DIAMETER_KEY = "nozzle_diameter_mm_0"

# Commands turned into events; every other command is skipped unparsed
HANDLED_COMMANDS = {("G", 0), ("G", 1), ("G", 92), ("M", 82), ("M", 83), ("M", 106), ("M", 107)}


# ============== Events ==============

@dataclass(frozen=True)
class Move:
    """G0/G1 motion; absent axes are None."""
    line: int
    x: Optional[float] = None
    y: Optional[float] = None
    z: Optional[float] = None
    e: Optional[float] = None
    f: Optional[float] = None
    rapid: bool = False


@dataclass(frozen=True)
class FanSet:
    line: int
    speed: int


@dataclass(frozen=True)
class LayerBegin:
    line: int


@dataclass(frozen=True)
class LayerEnd:
    line: int


@dataclass(frozen=True)
class Parameter:
    line: int
    key: str
    value: str


@dataclass(frozen=True)
class ExtrusionMode:
    line: int
    relative: bool


@dataclass(frozen=True)
class PositionReset:
    line: int
    e: Optional[float] = None


GcodeEvent = Union[Move, FanSet, LayerBegin, LayerEnd, Parameter, ExtrusionMode, PositionReset]


# ============== Segments ==============

@dataclass(frozen=True)
class Segment:
    """One extruded line, tagged with its print layer and process state."""
    start: np.ndarray  # (x, y, z) mm
    end: np.ndarray    # (x, y, z) mm
    layer: Optional[int]
    fan: int = 0
    feed_rate: float = 0.0
    line: int = 0

    @property
    def length(self) -> float:
        return float(np.linalg.norm(self.end - self.start))


@dataclass
class TraceSummary:
    """Everything the rasterizer needs from a trace."""
    segments: List[Segment]
    layer_count: int
    parameters: Dict[str, str] = field(default_factory=dict)

    @property
    def nozzle_diameter(self) -> Optional[float]:
        value = self.parameters.get(NOZZLE_DIAMETER_KEY)
        if value is None:
            return None
        try:
            return float(value)
        except ValueError:
            raise MalformedInput(f"invalid {NOZZLE_DIAMETER_KEY}: {value!r}") from None

    def layer_segments(self) -> Dict[int, List[Segment]]:
        """Segments grouped by layer index (segments outside layers dropped)."""
        grouped: Dict[int, List[Segment]] = {}
        for seg in self.segments:
            if seg.layer is not None:
                grouped.setdefault(seg.layer, []).append(seg)
        return grouped


# ============== Parsing ==============

def _parse_words(code: str, line_no: int) -> Dict[str, float]:
    words = {}
    for letter, value in WORD_RE.findall(code):
        try:
            words[letter.upper()] = float(value)
        except ValueError:
            raise MalformedInput(f"line {line_no}: invalid value {value!r} for word {letter}") from None
    return words


def parse_line(raw: str, line_no: int) -> Optional[GcodeEvent]:
    """
    Turn one trace line into at most one event.

    Args:
        raw: Line text without trailing newline
        line_no: 1-based line number, used in events and errors

    Returns:
        The event, or None for blank lines, plain comments and ignored commands
    """
    line = raw.strip()
    if not line:
        return None

    if line.startswith(";"):
        if line == LAYER_BEGIN:
            return LayerBegin(line_no)
        if line == LAYER_END:
            return LayerEnd(line_no)
        match = PARAMETER_RE.match(line)
        if match:
            return Parameter(line_no, match.group(1), match.group(2).strip())
        return None

    code = line.split(";", 1)[0].strip()
    if not code:
        return None

    match = COMMAND_RE.match(code)
    if not match:
        return None
    command = (match.group(1).upper(), int(match.group(2)))
    if command not in HANDLED_COMMANDS:
        return None

    words = _parse_words(code[match.end():], line_no)

    if command in (("G", 0), ("G", 1)):
        return Move(
            line=line_no,
            x=words.get("X"),
            y=words.get("Y"),
            z=words.get("Z"),
            e=words.get("E"),
            f=words.get("F"),
            rapid=command == ("G", 0),
        )
    if command == ("G", 92):
        return PositionReset(line_no, words.get("E"))
    if command == ("M", 82):
        return ExtrusionMode(line_no, relative=False)
    if command == ("M", 83):
        return ExtrusionMode(line_no, relative=True)
    if command == ("M", 106):
        speed = int(np.clip(words.get("S", 0.0), 0, 255))
        return FanSet(line_no, speed)
    if command == ("M", 107):
        return FanSet(line_no, 0)
    return None


def parse_gcode(lines: Iterable[str]) -> Iterator[GcodeEvent]:
    """Yield the events of a trace, one pass, in line order."""
    for line_no, raw in enumerate(lines, start=1):
        event = parse_line(raw, line_no)
        if event is not None:
            yield event


def extract_segments(events: Iterable[GcodeEvent]) -> TraceSummary:
    """
    Replay events into extrusion segments.

    A move becomes a segment when X, Y and Z are all known, the start and
    end Z match and the extrusion delta is positive. Extrusion is relative
    unless ``M82`` switched to absolute mode.
    """
    x = y = z = None
    e_position = 0.0
    relative_e = True
    fan = 0
    feed_rate = 0.0
    layer: Optional[int] = None
    completed_layers = 0
    parameters: Dict[str, str] = {}
    segments: List[Segment] = []

    for event in events:
        if isinstance(event, Move):
            if event.f is not None:
                feed_rate = event.f

            new_x = event.x if event.x is not None else x
            new_y = event.y if event.y is not None else y
            new_z = event.z if event.z is not None else z

            delta_e = 0.0
            if event.e is not None:
                delta_e = event.e if relative_e else event.e - e_position
                e_position = e_position + event.e if relative_e else event.e

            if None not in (x, y, z) and delta_e > 0.0 and new_z == z:
                segments.append(Segment(
                    start=np.array([x, y, z], dtype=np.float64),
                    end=np.array([new_x, new_y, new_z], dtype=np.float64),
                    layer=layer,
                    fan=fan,
                    feed_rate=feed_rate,
                    line=event.line,
                ))

            x, y, z = new_x, new_y, new_z
        elif isinstance(event, LayerBegin):
            layer = completed_layers
        elif isinstance(event, LayerEnd):
            layer = None
            completed_layers += 1
        elif isinstance(event, FanSet):
            fan = event.speed
        elif isinstance(event, ExtrusionMode):
            relative_e = event.relative
        elif isinstance(event, PositionReset):
            if event.e is not None:
                e_position = event.e
        elif isinstance(event, Parameter):
            parameters[event.key] = event.value

    return TraceSummary(segments=segments, layer_count=completed_layers, parameters=parameters)


def load_trace(path: Union[str, Path]) -> TraceSummary:
    """Parse a trace file and extract its segments."""
    path = Path(path)
    with open(path) as f:
        summary = extract_segments(parse_gcode(f))

    logger.info(
        f"extracted {len(summary.segments)} line segments from {path.name} "
        f"over {summary.layer_count} layers"
    )
    return summary
