"""Frame composition for feather_type.

``compose_frame`` is the single paint routine: given a design session and an
animation state it returns one RGB frame. Every render path (interactive,
still, video) goes through it.
"""

from __future__ import annotations

import logging
import math
from typing import Sequence, Tuple

import numpy as np
from PIL import Image, ImageDraw, ImageFont

from domain.feather_type import (
    FONT_LOAD_CODE,
    AnimationState,
    DesignSession,
    FeatherValidationError,
    LetterSlot,
    LetterTiming,
    SessionStatus,
)
from service.animation_clock import letter_timing
from service.feather import FeatherGeometry, compute_feather_length, generate_feather
from service.layout import LOGICAL_CANVAS_WIDTH

LOGGER = logging.getLogger("feather_type.scene")

MEASURE_REFERENCE_SIZE = 180
GLYPH_SCALE = 0.75
GLYPH_COLOR = (0, 0, 0)
TICK_OFFSET_RATIO = 0.3
TICK_LENGTH_RATIO = 0.4
TICK_WEIGHT_RATIO = 0.08
CAPTION_SIZE_RATIO = 0.1
CAPTION_MIN_SIZE = 12.0
CAPTION_OFFSET_RATIO = 0.84
CAPTION_PITCH = 1.2
CAPTION_COLOR = (100, 100, 100)
CAPTION_MIN_PROGRESS = 0.2
CAPTION_TICK_COLOR = (0, 0, 0, 128)
CAPTION_TICK_OFFSET_RATIO = 0.4
CAPTION_TICK_LENGTH_RATIO = 0.25
STATUS_TEXT_SIZE = 24.0
STATUS_COLOR = (0, 0, 0)
STATUS_BACKGROUND = (255, 255, 255)

WAITING_TEXT = "Waiting for bird data to load..."
NO_RESULTS_TEXT = "No birds found for this search term."


class FontSource:
    """Font loader with a per-size cache.

    Uses a TrueType/OpenType file when given, otherwise Pillow's bundled
    scalable default font.
    """

    def __init__(self, font_file: str | None = None) -> None:
        self.font_file = font_file
        self._cache: dict[int, ImageFont.FreeTypeFont] = {}

    def font(self, size: float) -> ImageFont.FreeTypeFont:
        font_size = max(1, int(round(size)))
        cached_font = self._cache.get(font_size)
        if cached_font is not None:
            return cached_font
        try:
            if self.font_file:
                font = ImageFont.truetype(self.font_file, size=font_size)
            else:
                font = ImageFont.load_default(size=font_size)
        except Exception as exc:
            raise FeatherValidationError(
                FONT_LOAD_CODE,
                f"failed to load font {self.font_file or '<default>'} at size {font_size}",
            ) from exc
        self._cache[font_size] = font
        return font

    def measure(self, character: str, size: float) -> float:
        """Return a glyph's advance width at ``size``, in the caller's units."""
        reference = self.font(MEASURE_REFERENCE_SIZE)
        return float(reference.getlength(character)) * size / MEASURE_REFERENCE_SIZE


def status_text(session: DesignSession) -> str | None:
    """Return the status line to show instead of the design, if any."""
    if session.status == SessionStatus.SEARCHING:
        return WAITING_TEXT
    if session.status == SessionStatus.LOADING_COLORS:
        return f"Loading colors... ({session.colors_settled} / {session.colors_issued})"
    if session.status == SessionStatus.NO_RESULTS:
        return NO_RESULTS_TEXT
    return None


def transform_strokes(
    geometry: FeatherGeometry,
    origin: Tuple[float, float],
    rotation: float,
    scale: float,
) -> np.ndarray:
    """Rotate feather-local strokes about the quill and map them to pixels.

    Returns an ``(n, 4)`` array of ``x0, y0, x1, y1`` pixel coordinates.
    """
    if not geometry.strokes:
        return np.zeros((0, 4), dtype=np.float64)
    local = np.array(
        [(stroke.x0, stroke.y0, stroke.x1, stroke.y1) for stroke in geometry.strokes],
        dtype=np.float64,
    ).reshape(-1, 2, 2)
    cos_value = math.cos(rotation)
    sin_value = math.sin(rotation)
    rotation_matrix = np.array([[cos_value, sin_value], [-sin_value, cos_value]])
    rotated = local @ rotation_matrix
    placed = (rotated + np.array(origin)) * scale
    return placed.reshape(-1, 4)


def draw_feather(
    draw: ImageDraw.ImageDraw,
    slot: LetterSlot,
    progress: float,
    sway: float,
    scale: float,
) -> int:
    """Draw one slot's feather and return the number of strokes drawn."""
    if slot.bird is None or slot.is_separator:
        return 0
    geometry = generate_feather(
        compute_feather_length(slot.size, slot.bird.wing_length),
        slot.bird.colors,
        progress,
        slot.random_seed,
    )
    pixels = transform_strokes(
        geometry,
        (slot.feather_x, slot.feather_y),
        math.pi + slot.feather_angle + sway,
        scale,
    )
    line_width = max(1, int(round(geometry.stroke_weight * scale)))
    for stroke, (x0, y0, x1, y1) in zip(geometry.strokes, pixels):
        draw.line((x0, y0, x1, y1), fill=stroke.hex_value, width=line_width)
    return geometry.stroke_count


def draw_tick(
    draw: ImageDraw.ImageDraw,
    x: float,
    y: float,
    length: float,
    weight: float,
    fill: Tuple[int, ...],
    scale: float,
) -> None:
    draw.line(
        (x * scale, y * scale, x * scale, (y + length) * scale),
        fill=fill,
        width=max(1, int(round(weight * scale))),
    )


def draw_glyph(
    draw: ImageDraw.ImageDraw, slot: LetterSlot, fonts: FontSource, scale: float
) -> None:
    if slot.is_separator:
        draw_tick(
            draw,
            slot.x,
            slot.y + slot.size * TICK_OFFSET_RATIO,
            slot.size * TICK_LENGTH_RATIO,
            slot.size * TICK_WEIGHT_RATIO,
            GLYPH_COLOR,
            scale,
        )
        return
    draw.text(
        (slot.x * scale, slot.y * scale),
        slot.character,
        font=fonts.font(slot.size * GLYPH_SCALE * scale),
        fill=GLYPH_COLOR,
        anchor="ma",
    )


def caption_characters(bird_name: str) -> str:
    """Return the caption text: the lowercase name minus its first character."""
    return bird_name.lower()[1:]


def visible_caption_count(caption: str, timing: LetterTiming) -> int:
    return min(len(caption), int(math.floor(timing.caption_progress * (len(caption) + 1))))


def draw_caption(
    draw: ImageDraw.ImageDraw,
    slot: LetterSlot,
    timing: LetterTiming,
    fonts: FontSource,
    scale: float,
) -> int:
    """Cascade the bird name below a glyph; return characters drawn."""
    if not slot.bird_name or slot.is_separator:
        return 0
    if timing.feather_progress <= CAPTION_MIN_PROGRESS:
        return 0
    caption_size = max(slot.size * CAPTION_SIZE_RATIO, CAPTION_MIN_SIZE)
    caption = caption_characters(slot.bird_name)
    count = visible_caption_count(caption, timing)
    top = slot.y + slot.size * CAPTION_OFFSET_RATIO
    font = fonts.font(caption_size * scale)
    for row, character in enumerate(caption[:count]):
        row_y = top + row * caption_size * CAPTION_PITCH
        if character == "-":
            draw_tick(
                draw,
                slot.x,
                row_y + caption_size * CAPTION_TICK_OFFSET_RATIO,
                caption_size * CAPTION_TICK_LENGTH_RATIO,
                caption_size * TICK_WEIGHT_RATIO,
                CAPTION_TICK_COLOR,
                scale,
            )
            continue
        draw.text(
            (slot.x * scale, row_y * scale),
            character,
            font=font,
            fill=CAPTION_COLOR,
            anchor="ma",
        )
    return count


def compose_status_frame(
    message: str, width: int, height: int, fonts: FontSource
) -> Image.Image:
    image = Image.new("RGB", (width, height), color=STATUS_BACKGROUND)
    draw = ImageDraw.Draw(image)
    scale = width / LOGICAL_CANVAS_WIDTH
    draw.text(
        (width / 2.0, height / 2.0),
        message,
        font=fonts.font(STATUS_TEXT_SIZE * scale),
        fill=STATUS_COLOR,
        anchor="mm",
    )
    return image


def compose_design(
    slots: Sequence[LetterSlot],
    background_rgb: Tuple[int, int, int],
    state: AnimationState,
    width: int,
    height: int,
    fonts: FontSource,
) -> Image.Image:
    """Paint feathers back-to-front, then glyphs and captions on top."""
    image = Image.new("RGB", (width, height), color=tuple(background_rgb))
    draw = ImageDraw.Draw(image, "RGBA")
    scale = width / LOGICAL_CANVAS_WIDTH
    timings = [letter_timing(state, index, len(slots)) for index in range(len(slots))]

    for slot, timing in zip(slots, timings):
        if state.in_motion and not timing.feather_visible:
            continue
        draw_feather(
            draw,
            slot,
            timing.eased_progress,
            state.wind_angle + timing.settle_sway,
            scale,
        )

    for slot, timing in zip(slots, timings):
        if timing.glyph_progress <= 0:
            continue
        draw_glyph(draw, slot, fonts, scale)
        draw_caption(draw, slot, timing, fonts, scale)
    return image


def compose_frame(
    session: DesignSession,
    state: AnimationState,
    width: int,
    height: int,
    fonts: FontSource,
) -> Image.Image:
    """Render one frame of a session at the given animation state."""
    message = status_text(session)
    if message is not None:
        return compose_status_frame(message, width, height, fonts)
    return compose_design(
        session.slots, session.background_rgb, state, width, height, fonts
    )
