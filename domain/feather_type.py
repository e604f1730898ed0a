"""Domain types and parsing for feather_type."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import re
from typing import Mapping, Tuple

INVALID_COLOR_CODE = "feather_type.input.invalid_color"
INVALID_CONFIG_CODE = "feather_type.input.invalid_config"
INVALID_SETTINGS_CODE = "feather_type.input.invalid_settings"
EMPTY_TEXT_CODE = "feather_type.input.empty_text"
INPUT_FILE_CODE = "feather_type.input.file_error"
FONT_LOAD_CODE = "feather_type.input.font_unloadable"
INVALID_MODE_CODE = "feather_type.input.invalid_mode"
INVALID_SLOT_CODE = "feather_type.internal.invalid_slot"

MAX_PHRASE_LENGTH = 50
SEPARATOR_CHARACTER = "-"
DISALLOWED_PHRASE_PATTERN = re.compile(r"[^A-Z0-9\s\-'.!?]")
HEX_COLOR_PATTERN = re.compile(r"#?([0-9a-fA-F]{6})")
MIN_FEATHER_COLORS = 3

DEFAULT_PHRASES = (
    "FLOCK TOGETHER",
    "HOPE IS A THING WITH FEATHERS",
    "BECAUSE IT HAS A SONG.",
)

BACKGROUND_COLORS: Tuple[Tuple[int, int, int], ...] = (
    (245, 240, 230),  # warm beige
    (240, 235, 225),  # cream
    (235, 240, 235),  # pale sage green
    (240, 235, 240),  # soft lavender
    (235, 235, 240),  # light periwinkle
    (240, 240, 235),  # ivory
    (245, 235, 235),  # blush pink
    (235, 240, 240),  # powder blue
    (238, 238, 238),  # soft gray
    (240, 238, 235),  # warm white
    (235, 242, 235),  # mint cream
    (242, 238, 242),  # pale lilac
    (238, 235, 230),  # taupe
    (230, 235, 240),  # light steel blue
    (245, 240, 240),  # pearl
)


class FeatherValidationError(ValueError):
    """Validation error with a stable error code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class RenderPipelineError(RuntimeError):
    """Runtime error with a stable error code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class RenderMode(str, Enum):
    """Supported render modes."""

    STILL = "still"
    VIDEO = "video"
    PREVIEW = "preview"


class LayoutStatus(str, Enum):
    """Outcome of a layout pass."""

    READY = "ready"
    NO_RESULTS = "no_results"


class SessionStatus(str, Enum):
    """Lifecycle of one design session."""

    SEARCHING = "searching"
    LOADING_COLORS = "loading_colors"
    READY = "ready"
    NO_RESULTS = "no_results"


@dataclass(frozen=True)
class ColorStop:
    """One plumage color and its relative weight."""

    hex_value: str
    weight: float

    def __post_init__(self) -> None:
        if not HEX_COLOR_PATTERN.fullmatch(self.hex_value.strip()):
            raise FeatherValidationError(
                INVALID_COLOR_CODE, f"invalid color value: {self.hex_value!r}"
            )
        if self.weight < 0:
            raise FeatherValidationError(
                INVALID_COLOR_CODE, "color weight must be non-negative"
            )


@dataclass(frozen=True)
class ColorEntry:
    """Plumage descriptor for one bird, keyed by its uppercased name."""

    name: str
    colors: Tuple[ColorStop, ...]
    wing_length: float | None = None

    @property
    def key(self) -> str:
        return bird_key(self.name)

    @property
    def can_feather(self) -> bool:
        """Return True when the entry has enough colors to carry a feather."""
        return len(self.colors) >= MIN_FEATHER_COLORS


@dataclass(frozen=True)
class BirdRecord:
    """A search result from the color service."""

    name: str | None
    species_code: str | None = None


@dataclass(frozen=True)
class LetterSlot:
    """Layout and render state for one phrase character."""

    character: str
    x: float
    y: float
    size: float
    feather_x: float
    feather_y: float
    feather_height: float
    bird: ColorEntry | None
    bird_name: str
    feather_angle: float
    random_seed: int | float

    def __post_init__(self) -> None:
        if len(self.character) != 1:
            raise FeatherValidationError(
                INVALID_SLOT_CODE, f"slot character must be one glyph: {self.character!r}"
            )
        if self.size <= 0:
            raise FeatherValidationError(INVALID_SLOT_CODE, "slot size must be positive")

    @property
    def is_separator(self) -> bool:
        return self.character == SEPARATOR_CHARACTER


@dataclass(frozen=True)
class LetterSettings:
    """Per-letter portion of a design snapshot."""

    character: str
    bird_name: str
    feather_angle: float
    random_seed: int | float


@dataclass(frozen=True)
class DesignSettings:
    """Network-free snapshot sufficient to rebuild one design."""

    display_text: str
    background_rgb: Tuple[int, int, int]
    letters: Tuple[LetterSettings, ...]
    bird_colors: Mapping[str, ColorEntry]

    def __post_init__(self) -> None:
        if len(self.background_rgb) != 3:
            raise FeatherValidationError(
                INVALID_SETTINGS_CODE, "backgroundColor must have three channels"
            )
        for channel in self.background_rgb:
            if channel < 0 or channel > 255:
                raise FeatherValidationError(
                    INVALID_SETTINGS_CODE, "backgroundColor channel out of range"
                )
        if not self.display_text:
            raise FeatherValidationError(
                INVALID_SETTINGS_CODE, "displayText must be non-empty"
            )
        if len(self.letters) != len(self.display_text):
            raise FeatherValidationError(
                INVALID_SETTINGS_CODE,
                "letterData length does not match displayText",
            )


@dataclass(frozen=True)
class DesignSession:
    """One generated (or replayed) design, identified by its generation.

    Sessions are replaced, never mutated; a newer generation supersedes any
    older one still waiting on color results.
    """

    generation: int
    phrase: str
    background_rgb: Tuple[int, int, int]
    status: SessionStatus = SessionStatus.SEARCHING
    slots: Tuple[LetterSlot, ...] = ()
    colors_settled: int = 0
    colors_issued: int = 0

    @property
    def ready(self) -> bool:
        return self.status == SessionStatus.READY


@dataclass(frozen=True)
class AnimationState:
    """Progress values for one paint cycle."""

    draw_progress: float
    sway_progress: float
    wind_angle: float
    in_motion: bool
    complete: bool
    elapsed_ms: float | None = None
    frame_index: int | None = None


@dataclass(frozen=True)
class LetterTiming:
    """Per-letter progress derived from an AnimationState."""

    feather_progress: float
    eased_progress: float
    settle_sway: float
    glyph_progress: float
    caption_progress: float

    @property
    def feather_visible(self) -> bool:
        return self.feather_progress > 0


def bird_key(name: str) -> str:
    """Return the cache key for a bird name."""
    return name.strip().upper()


def sanitize_phrase(text_value: str) -> str:
    """Uppercase, truncate, and strip unsupported characters from a phrase."""
    truncated = text_value.upper()[:MAX_PHRASE_LENGTH]
    return DISALLOWED_PHRASE_PATTERN.sub("", truncated)


def require_phrase(text_value: str) -> str:
    """Sanitize a phrase and reject it when nothing drawable remains."""
    phrase = sanitize_phrase(text_value)
    if not phrase.strip():
        raise FeatherValidationError(EMPTY_TEXT_CODE, "phrase contains no characters")
    return phrase


def phrase_letters(phrase: str) -> Tuple[str, ...]:
    """Return the unique A-Z letters of a phrase in first-occurrence order."""
    seen: list[str] = []
    for character in phrase.upper():
        if "A" <= character <= "Z" and character not in seen:
            seen.append(character)
    return tuple(seen)


def parse_render_mode(value: str) -> RenderMode:
    """Parse a render mode name."""
    normalized = value.strip().lower()
    try:
        return RenderMode(normalized)
    except ValueError as exc:
        raise FeatherValidationError(
            INVALID_MODE_CODE, f"invalid render mode: {value!r}"
        ) from exc


def first_name_word(name: str) -> str:
    """Return the first whitespace-delimited word of a common name."""
    parts = name.strip().split()
    return parts[0] if parts else ""


def map_range(
    value: float, in_min: float, in_max: float, out_min: float, out_max: float
) -> float:
    """Linearly map a value between ranges without clamping."""
    return out_min + (out_max - out_min) * ((value - in_min) / (in_max - in_min))


def clamp(value: float, min_value: float, max_value: float) -> float:
    """Clamp a value between min and max."""
    return max(min_value, min(max_value, value))


def parse_color_entry(payload: object, code: str = INVALID_SETTINGS_CODE) -> ColorEntry:
    """Parse a bird color payload into a ColorEntry."""
    if not isinstance(payload, dict):
        raise FeatherValidationError(code, "color entry must be an object")
    name = payload.get("name")
    if not isinstance(name, str) or not name.strip():
        raise FeatherValidationError(code, "color entry name must be non-empty")
    raw_colors = payload.get("colors")
    if not isinstance(raw_colors, list):
        raise FeatherValidationError(code, f"colors for {name!r} must be a list")

    stops: list[ColorStop] = []
    for raw_color in raw_colors:
        if not isinstance(raw_color, dict):
            raise FeatherValidationError(code, f"color for {name!r} must be an object")
        hex_value = raw_color.get("hex")
        weight = raw_color.get("span", raw_color.get("weight", 1))
        if not isinstance(hex_value, str):
            raise FeatherValidationError(code, f"color for {name!r} is missing hex")
        if isinstance(weight, bool) or not isinstance(weight, (int, float)):
            raise FeatherValidationError(code, f"color weight for {name!r} is invalid")
        try:
            stops.append(ColorStop(hex_value=hex_value, weight=float(weight)))
        except FeatherValidationError as exc:
            raise FeatherValidationError(code, str(exc)) from exc

    wing_length = payload.get("wingLength")
    if isinstance(wing_length, bool) or not isinstance(wing_length, (int, float)):
        wing_length = None
    return ColorEntry(
        name=name.strip(),
        colors=tuple(stops),
        wing_length=float(wing_length) if wing_length is not None else None,
    )
