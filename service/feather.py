"""Seeded feather geometry for feather_type.

A feather is two mirrored halves of short barb strokes drawn outward from a
central shaft. All geometry is expressed in feather-local units with the quill
at the origin and the tip along +y; the scene composer rotates and places it.
"""

from __future__ import annotations

from dataclasses import dataclass
import math
import random
from typing import Sequence, Tuple

from domain.feather_type import ColorStop, map_range

FEATHER_STEP = 2.5
FEATHER_WIDTH_RATIO = 0.15
FEATHER_STACK_RATIO = 0.5
BASE_TAPER_RATIO = 0.2
BASE_TAPER_MIN = 0.1
BASE_TAPER_MAX = 0.3
STACK_POWER = 0.03
STACK_POWER_SCALE = 0.25
SHAFT_RATIO = 0.75
COLOR_REPEAT_SCALE = 10
HALF_LENGTH_FACTOR = 2.0
HALF_SCALE_X = 0.5
HALF_SCALE_Y = 0.5 * 1.65
STROKE_WEIGHT = 1.5

BASE_GLYPH_SIZE = 180.0
DEFAULT_WING_LENGTH = 10.0
WING_LENGTH_RANGE = (0.0, 300.0)
FEATHER_LENGTH_RANGE = (200.0, 350.0)
FEATHER_SCALE = 2.0


@dataclass(frozen=True)
class FeatherStroke:
    """One barb segment in feather-local coordinates."""

    x0: float
    y0: float
    x1: float
    y1: float
    hex_value: str


@dataclass(frozen=True)
class FeatherGeometry:
    """Complete stroke list for one feather."""

    strokes: Tuple[FeatherStroke, ...]
    stroke_weight: float

    @property
    def stroke_count(self) -> int:
        return len(self.strokes)


EMPTY_FEATHER = FeatherGeometry(
    strokes=(), stroke_weight=STROKE_WEIGHT * math.sqrt(HALF_SCALE_X * HALF_SCALE_Y)
)


def normalize_hex(hex_value: str) -> str:
    """Return a lowercase #rrggbb token."""
    stripped = hex_value.strip().lower()
    return stripped if stripped.startswith("#") else f"#{stripped}"


def repetition_count(weight: float) -> int:
    """Return how many ramp entries a color of the given weight occupies."""
    if weight <= 0:
        return 0
    return int(math.ceil(math.sqrt(weight) * COLOR_REPEAT_SCALE))


def expand_colors(colors: Sequence[ColorStop]) -> Tuple[str, ...]:
    """Expand weighted colors into a dense ramp, tip color first."""
    expanded: list[str] = []
    for stop in colors:
        expanded.extend([normalize_hex(stop.hex_value)] * repetition_count(stop.weight))
    expanded.reverse()
    return tuple(expanded)


def compute_feather_length(glyph_size: float, wing_length: float | None) -> float:
    """Compute the feather length for a glyph size and optional wing length."""
    wing_value = wing_length if wing_length else DEFAULT_WING_LENGTH
    base_length = map_range(wing_value, *WING_LENGTH_RANGE, *FEATHER_LENGTH_RANGE)
    return base_length * (glyph_size / BASE_GLYPH_SIZE) * FEATHER_SCALE


def draw_feather_half(
    length: float,
    ramp: Sequence[str],
    progress: float,
    rng: random.Random,
) -> list[Tuple[float, float, float, float, str]]:
    """Draw one half of a feather as unscaled barb segments."""
    segments: list[Tuple[float, float, float, float, str]] = []
    barb_width = length * FEATHER_WIDTH_RATIO
    limit = length * progress
    ramp_size = len(ramp)
    stack = 0.0
    step_index = 0
    position = 0.0
    while position < limit:
        color_index = int(math.floor(position / length * ramp_size))
        hex_value = ramp[color_index % ramp_size]

        half_width = math.sin(position / length * math.pi) * barb_width
        if position < length * BASE_TAPER_RATIO:
            half_width *= rng.uniform(BASE_TAPER_MIN, BASE_TAPER_MAX)

        stack += FEATHER_STEP * FEATHER_STACK_RATIO + (
            math.pow(position, STACK_POWER) * STACK_POWER_SCALE
        )
        segments.append((0.0, stack * SHAFT_RATIO, half_width, stack, hex_value))

        step_index += 1
        position = step_index * FEATHER_STEP
    return segments


def generate_feather(
    length: float,
    colors: Sequence[ColorStop] | None,
    progress: float,
    seed: int | float,
) -> FeatherGeometry:
    """Generate the geometry of one symmetric feather.

    Identical arguments always yield identical strokes: the random source is a
    private ``random.Random`` reseeded with ``seed`` before each half.
    """
    if not colors or length <= 0:
        return EMPTY_FEATHER
    ramp = expand_colors(colors)
    if not ramp:
        return EMPTY_FEATHER

    clamped_progress = min(1.0, max(0.0, progress))
    half_length = length * HALF_LENGTH_FACTOR
    strokes: list[FeatherStroke] = []
    for mirror in (1.0, -1.0):
        rng = random.Random(seed)
        for x0, y0, x1, y1, hex_value in draw_feather_half(
            half_length, ramp, clamped_progress, rng
        ):
            strokes.append(
                FeatherStroke(
                    x0=x0 * HALF_SCALE_X * mirror,
                    y0=y0 * HALF_SCALE_Y,
                    x1=x1 * HALF_SCALE_X * mirror,
                    y1=y1 * HALF_SCALE_Y,
                    hex_value=hex_value,
                )
            )
    return FeatherGeometry(
        strokes=tuple(strokes), stroke_weight=EMPTY_FEATHER.stroke_weight
    )
