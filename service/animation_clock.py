"""Animation timing for feather_type.

Elapsed wall-clock time (interactive) or an explicit frame index (video) is
mapped onto one two-phase timeline: a draw-in phase followed by a sway phase.
"""

from __future__ import annotations

from dataclasses import dataclass
import math

from domain.feather_type import (
    INVALID_CONFIG_CODE,
    AnimationState,
    FeatherValidationError,
    LetterTiming,
    clamp,
    map_range,
)

DRAW_DURATION_MS = 2500.0
SWAY_DURATION_MS = 2000.0
DEFAULT_TOTAL_FRAMES = 150
DEFAULT_FPS = 30

WIND_AMPLITUDE = 0.15
WIND_WAVES = 4
SETTLE_AMPLITUDE = 0.04
FEATHER_WINDOW_SLOTS = 2
EXTRA_TIMELINE_SLOTS = 2
GLYPH_START_OFFSET = 0.3
CAPTION_START = 0.2


@dataclass(frozen=True)
class AnimationTiming:
    """Durations of the draw-in and sway phases."""

    draw_duration_ms: float = DRAW_DURATION_MS
    sway_duration_ms: float = SWAY_DURATION_MS

    def __post_init__(self) -> None:
        if self.draw_duration_ms <= 0:
            raise FeatherValidationError(
                INVALID_CONFIG_CODE, "draw_duration_ms must be positive"
            )
        if self.sway_duration_ms <= 0:
            raise FeatherValidationError(
                INVALID_CONFIG_CODE, "sway_duration_ms must be positive"
            )

    @property
    def total_duration_ms(self) -> float:
        return self.draw_duration_ms + self.sway_duration_ms

    @property
    def draw_ratio(self) -> float:
        return self.draw_duration_ms / self.total_duration_ms


DEFAULT_TIMING = AnimationTiming()


def ease_out_quart(value: float) -> float:
    """Decelerating quartic ease."""
    return 1.0 - math.pow(1.0 - value, 4)


def compute_wind_angle(sway_progress: float, in_motion: bool) -> float:
    """Compute the global wind sway angle for the sway phase."""
    if sway_progress <= 0 or not in_motion:
        return 0.0
    intensity = math.sin(sway_progress * math.pi)
    oscillation = math.sin(sway_progress * math.pi * WIND_WAVES)
    return oscillation * intensity * WIND_AMPLITUDE


def split_timeline(total_progress: float, timing: AnimationTiming) -> tuple[float, float]:
    """Split overall timeline progress into draw and sway progress."""
    draw_ratio = timing.draw_ratio
    if total_progress <= draw_ratio:
        return total_progress / draw_ratio, 0.0
    return 1.0, (total_progress - draw_ratio) / (1.0 - draw_ratio)


def state_from_elapsed(
    elapsed_ms: float, timing: AnimationTiming = DEFAULT_TIMING
) -> AnimationState:
    """Derive the animation state from wall-clock time since start."""
    elapsed = max(0.0, elapsed_ms)
    if elapsed >= timing.total_duration_ms:
        return AnimationState(
            draw_progress=1.0,
            sway_progress=1.0,
            wind_angle=0.0,
            in_motion=False,
            complete=True,
            elapsed_ms=elapsed,
        )

    if elapsed <= timing.draw_duration_ms:
        draw_progress = elapsed / timing.draw_duration_ms
        sway_progress = 0.0
    else:
        draw_progress = 1.0
        sway_progress = (elapsed - timing.draw_duration_ms) / timing.sway_duration_ms
    draw_progress = clamp(draw_progress, 0.0, 1.0)
    sway_progress = clamp(sway_progress, 0.0, 1.0)
    return AnimationState(
        draw_progress=draw_progress,
        sway_progress=sway_progress,
        wind_angle=compute_wind_angle(sway_progress, True),
        in_motion=True,
        complete=False,
        elapsed_ms=elapsed,
    )


def state_from_frame(
    frame_index: int,
    total_frames: int,
    timing: AnimationTiming = DEFAULT_TIMING,
) -> AnimationState:
    """Derive the animation state for an explicitly requested video frame."""
    if total_frames <= 0:
        raise FeatherValidationError(
            INVALID_CONFIG_CODE, "total_frames must be positive"
        )
    if frame_index < 0 or frame_index >= total_frames:
        raise FeatherValidationError(
            INVALID_CONFIG_CODE,
            f"frame {frame_index} is outside 0..{total_frames - 1}",
        )
    if total_frames == 1:
        total_progress = 1.0
    else:
        total_progress = frame_index / float(total_frames - 1)
    draw_progress, sway_progress = split_timeline(total_progress, timing)
    return AnimationState(
        draw_progress=draw_progress,
        sway_progress=sway_progress,
        wind_angle=compute_wind_angle(sway_progress, True),
        in_motion=True,
        complete=frame_index == total_frames - 1,
        frame_index=frame_index,
    )


def still_state() -> AnimationState:
    """Return the pinned final state used for single-shot stills."""
    return AnimationState(
        draw_progress=1.0,
        sway_progress=0.0,
        wind_angle=0.0,
        in_motion=False,
        complete=True,
    )


def letter_timing(state: AnimationState, index: int, count: int) -> LetterTiming:
    """Compute the staggered progress window for one letter."""
    slots = count + EXTRA_TIMELINE_SLOTS
    feather_progress = clamp(
        map_range(
            state.draw_progress,
            index / slots,
            (index + FEATHER_WINDOW_SLOTS) / slots,
            0.0,
            1.0,
        ),
        0.0,
        1.0,
    )
    glyph_progress = clamp(
        map_range(
            state.draw_progress,
            (index + GLYPH_START_OFFSET) / slots,
            (index + 1) / slots,
            0.0,
            1.0,
        ),
        0.0,
        1.0,
    )
    if not state.in_motion:
        return LetterTiming(
            feather_progress=feather_progress,
            eased_progress=1.0,
            settle_sway=0.0,
            glyph_progress=glyph_progress,
            caption_progress=1.0,
        )

    settle_sway = 0.0
    if 0.0 < feather_progress < 1.0:
        intensity = (1.0 - feather_progress) * SETTLE_AMPLITUDE
        settle_sway = math.sin(ease_out_quart(feather_progress) * math.pi * 2) * intensity
    caption_progress = clamp(
        map_range(feather_progress, CAPTION_START, 1.0, 0.0, 1.0), 0.0, 1.0
    )
    return LetterTiming(
        feather_progress=feather_progress,
        eased_progress=ease_out_quart(feather_progress),
        settle_sway=settle_sway,
        glyph_progress=glyph_progress,
        caption_progress=caption_progress,
    )
