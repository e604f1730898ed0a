"""Letter layout and bird matching for feather_type."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import random
from typing import Callable, Mapping, Sequence, Tuple

from domain.feather_type import (
    INVALID_CONFIG_CODE,
    INVALID_SETTINGS_CODE,
    ColorEntry,
    DesignSettings,
    FeatherValidationError,
    LayoutStatus,
    LetterSlot,
    SEPARATOR_CHARACTER,
    bird_key,
    clamp,
    first_name_word,
    map_range,
)

LOGGER = logging.getLogger("feather_type.layout")

LOGICAL_CANVAS_WIDTH = 1200.0
BASE_GLYPH_SIZE = 180.0
MIN_GLYPH_SIZE = 60.0
MIN_FEATHER_CLEARANCE_SIZE = 80.0
FEATHER_CLEARANCE = 350.0
FEATHER_CLEARANCE_SCALE = 1.5
SHRINK_LENGTH_RANGE = (1.0, 15.0)
SHRINK_FACTOR_RANGE = (1.0, 0.4)
LETTER_SPACING_RATIO = 0.22
MAX_RUN_WIDTH_RATIO = 0.75
FEATHER_HEIGHT = 250.0
FEATHER_ANGLE_LIMIT = 0.1
SEED_LIMIT = 10000

GlyphMeasure = Callable[[str, float], float]


@dataclass(frozen=True)
class CanvasSize:
    """Logical canvas dimensions used for layout."""

    width: float
    height: float

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise FeatherValidationError(
                INVALID_CONFIG_CODE, "canvas width and height must be positive"
            )


@dataclass(frozen=True)
class GlyphRun:
    """Horizontal placement of a phrase's glyphs."""

    size: float
    spacing: float
    centers: Tuple[float, ...]
    top: float


@dataclass(frozen=True)
class LayoutResult:
    """Ordered letter slots, or an explicit no-results outcome."""

    status: LayoutStatus
    slots: Tuple[LetterSlot, ...]

    @property
    def ready(self) -> bool:
        return self.status == LayoutStatus.READY


NO_RESULTS = LayoutResult(status=LayoutStatus.NO_RESULTS, slots=())


def logical_canvas(output_width: int, output_height: int) -> CanvasSize:
    """Return the logical canvas for an output size (fixed logical width)."""
    if output_width <= 0 or output_height <= 0:
        raise FeatherValidationError(
            INVALID_CONFIG_CODE, "output width and height must be positive"
        )
    return CanvasSize(
        width=LOGICAL_CANVAS_WIDTH,
        height=LOGICAL_CANVAS_WIDTH * output_height / float(output_width),
    )


def compute_glyph_size(phrase_length: int, canvas: CanvasSize) -> float:
    """Compute the base glyph size for a phrase length."""
    shrink = map_range(float(phrase_length), *SHRINK_LENGTH_RANGE, *SHRINK_FACTOR_RANGE)
    size = BASE_GLYPH_SIZE * shrink
    # Feathers rise ~350 units above the row; keep them on the canvas.
    clearance_size = max(
        (canvas.height / 2.0 - FEATHER_CLEARANCE) * FEATHER_CLEARANCE_SCALE,
        MIN_FEATHER_CLEARANCE_SIZE,
    )
    return clamp(size, MIN_GLYPH_SIZE, min(BASE_GLYPH_SIZE, clearance_size))


def layout_glyph_run(
    phrase: str, canvas: CanvasSize, measure: GlyphMeasure
) -> GlyphRun:
    """Measure, space, fit, and center the glyphs of a phrase."""
    size = compute_glyph_size(len(phrase), canvas)
    widths = [measure(character, size) for character in phrase]
    spacing = size * LETTER_SPACING_RATIO
    total_width = sum(widths) + spacing * max(0, len(phrase) - 1)

    max_width = canvas.width * MAX_RUN_WIDTH_RATIO
    if total_width > max_width:
        scale = max_width / total_width
        size *= scale
        spacing *= scale
        widths = [width * scale for width in widths]
        total_width = max_width

    cursor = (canvas.width - total_width) / 2.0
    centers: list[float] = []
    for width in widths:
        centers.append(cursor + width / 2.0)
        cursor += width + spacing
    return GlyphRun(
        size=size,
        spacing=spacing,
        centers=tuple(centers),
        top=canvas.height / 2.0 - size / 2.0,
    )


def find_candidates(
    character: str,
    bird_names: Sequence[str],
    color_map: Mapping[str, ColorEntry],
) -> list[ColorEntry]:
    """Return featherable birds whose first name word starts with a character."""
    target = character.upper()
    candidates: list[ColorEntry] = []
    for name in bird_names:
        first_word = first_name_word(name)
        if not first_word or not first_word.upper().startswith(target):
            continue
        entry = color_map.get(bird_key(name))
        if entry is not None and entry.can_feather:
            candidates.append(entry)
    return candidates


def build_slot(
    character: str,
    center_x: float,
    run: GlyphRun,
    bird: ColorEntry | None,
    bird_name: str,
    feather_angle: float,
    random_seed: int | float,
) -> LetterSlot:
    return LetterSlot(
        character=character,
        x=center_x,
        y=run.top,
        size=run.size,
        feather_x=center_x,
        feather_y=run.top,
        feather_height=FEATHER_HEIGHT,
        bird=bird,
        bird_name=bird_name,
        feather_angle=feather_angle,
        random_seed=random_seed,
    )


def build_fresh_layout(
    phrase: str,
    canvas: CanvasSize,
    measure: GlyphMeasure,
    bird_names: Sequence[str],
    color_map: Mapping[str, ColorEntry],
    rng: random.Random,
) -> LayoutResult:
    """Lay out a phrase and match each letter to a random eligible bird."""
    usable_names = [name for name in bird_names if name and name.strip()]
    if not usable_names:
        LOGGER.info("feather_type.layout.no_results: no birds for %r", phrase)
        return NO_RESULTS

    run = layout_glyph_run(phrase, canvas, measure)
    slots: list[LetterSlot] = []
    for character, center_x in zip(phrase, run.centers):
        bird: ColorEntry | None = None
        if character != SEPARATOR_CHARACTER:
            candidates = find_candidates(character, usable_names, color_map)
            if candidates:
                bird = rng.choice(candidates)
            LOGGER.debug(
                "feather_type.layout.match: %s -> %s (%d candidates)",
                character,
                bird.name if bird else "-",
                len(candidates),
            )
        slots.append(
            build_slot(
                character,
                center_x,
                run,
                bird,
                bird.name if bird else "",
                rng.uniform(-FEATHER_ANGLE_LIMIT, FEATHER_ANGLE_LIMIT),
                rng.randrange(SEED_LIMIT),
            )
        )
    return LayoutResult(status=LayoutStatus.READY, slots=tuple(slots))


def build_snapshot_layout(
    settings: DesignSettings, canvas: CanvasSize, measure: GlyphMeasure
) -> LayoutResult:
    """Rebuild letter slots verbatim from a design snapshot."""
    phrase = settings.display_text
    run = layout_glyph_run(phrase, canvas, measure)
    slots: list[LetterSlot] = []
    for index, (character, center_x) in enumerate(zip(phrase, run.centers)):
        letter = settings.letters[index]
        if letter.character != character:
            raise FeatherValidationError(
                INVALID_SETTINGS_CODE,
                f"letterData[{index}] does not match displayText",
            )
        if character == SEPARATOR_CHARACTER or not letter.bird_name:
            bird = None
            bird_name = ""
        else:
            bird = settings.bird_colors.get(bird_key(letter.bird_name))
            bird_name = letter.bird_name
        slots.append(
            build_slot(
                character,
                center_x,
                run,
                bird,
                bird_name,
                letter.feather_angle,
                letter.random_seed,
            )
        )
    return LayoutResult(status=LayoutStatus.READY, slots=tuple(slots))
