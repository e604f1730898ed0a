"""Render-mode state machine and render hosts for feather_type.

A controller owns the current ``DesignSession`` and paints it through
``compose_frame``. How often it paints is decided by its ``RenderHost``:

* ``InteractiveHost`` drives itself from a wall clock until the animation ends.
* ``StillImageHost`` paints once, at the final state.
* ``VideoHost`` paints only when a frame is explicitly requested.

In server mode completion is reported through ``RenderHost.signal_complete``
with a ``CompletionMarker``; video hosts receive exactly one marker per
requested frame.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from enum import Enum
import logging
import random
import threading
import time
from typing import Callable, Tuple

from PIL import Image

from domain.feather_type import (
    BACKGROUND_COLORS,
    INVALID_CONFIG_CODE,
    AnimationState,
    DesignSession,
    DesignSettings,
    FeatherValidationError,
    RenderPipelineError,
    SessionStatus,
    require_phrase,
)
from service.animation_clock import (
    DEFAULT_FPS,
    DEFAULT_TIMING,
    DEFAULT_TOTAL_FRAMES,
    AnimationTiming,
    state_from_elapsed,
    state_from_frame,
    still_state,
)
from service.color_resolver import EMPTY_RESOLUTION, ColorResolution, ColorResolver
from service.design_settings import capture_settings
from service.layout import (
    CanvasSize,
    LayoutResult,
    build_fresh_layout,
    build_snapshot_layout,
    logical_canvas,
)
from service.scene import FontSource, compose_frame

LOGGER = logging.getLogger("feather_type.render_mode")

MISSING_SURFACE_CODE = "feather_type.render.missing_surface"
INVALID_STATE_CODE = "feather_type.render.invalid_state"
NO_RESULTS_CODE = "feather_type.render.no_results"
MARKER_TIMEOUT_CODE = "feather_type.render.marker_timeout"


class ControllerState(str, Enum):
    """States of the render-mode controller."""

    IDLE = "idle"
    FRESH_GENERATION = "fresh_generation"
    SNAPSHOT_REPLAY = "snapshot_replay"
    VIDEO_FRAME_WAIT = "video_frame_wait"
    COMPLETE = "complete"


@dataclass(frozen=True)
class InjectedParameters:
    """Parameters a host supplies before the first paint."""

    server_mode: bool
    video_mode: bool
    width: int | None
    height: int | None
    total_frames: int = DEFAULT_TOTAL_FRAMES
    fps: int = DEFAULT_FPS
    settings: DesignSettings | None = None

    def __post_init__(self) -> None:
        if self.video_mode and not self.server_mode:
            raise FeatherValidationError(
                INVALID_CONFIG_CODE, "video mode requires server mode"
            )
        if self.total_frames <= 0:
            raise FeatherValidationError(
                INVALID_CONFIG_CODE, "total_frames must be positive"
            )
        if self.fps <= 0:
            raise FeatherValidationError(INVALID_CONFIG_CODE, "fps must be positive")


@dataclass(frozen=True)
class FrameRequest:
    """One paint request: wall-clock time or an explicit frame index."""

    now_ms: float | None = None
    frame_index: int | None = None
    total_frames: int | None = None


@dataclass(frozen=True)
class CompletionMarker:
    """Signal that a still image or a requested video frame is fully drawn."""

    generation: int
    frame_index: int | None = None


@dataclass(frozen=True)
class PaintResult:
    frame: Image.Image
    state: AnimationState
    complete: bool


FrameCallback = Callable[[FrameRequest], PaintResult]


class RenderHost(ABC):
    """Capabilities the controller needs from whatever drives it."""

    @abstractmethod
    def get_injected_parameters(self) -> InjectedParameters:
        """Return the mode flags, output size, and optional snapshot."""

    @abstractmethod
    def on_frame_requested(self, callback: FrameCallback) -> None:
        """Register the paint callback the host invokes for each frame."""

    @abstractmethod
    def signal_complete(self, marker: CompletionMarker) -> None:
        """Publish a completion marker."""


class MarkerHost(RenderHost):
    """Shared marker bookkeeping for concrete hosts."""

    def __init__(self, parameters: InjectedParameters) -> None:
        self.parameters = parameters
        self.markers: list[CompletionMarker] = []
        self.latest_frame: Image.Image | None = None
        self._callback: FrameCallback | None = None
        self._condition = threading.Condition()

    def get_injected_parameters(self) -> InjectedParameters:
        return self.parameters

    def on_frame_requested(self, callback: FrameCallback) -> None:
        self._callback = callback

    def signal_complete(self, marker: CompletionMarker) -> None:
        with self._condition:
            self.markers.append(marker)
            self._condition.notify_all()

    def paint(self, request: FrameRequest) -> PaintResult:
        if self._callback is None:
            raise RenderPipelineError(
                INVALID_STATE_CODE, "no controller is attached to this host"
            )
        result = self._callback(request)
        self.latest_frame = result.frame
        return result

    def wait_for_marker(
        self, frame_index: int | None, timeout_seconds: float
    ) -> CompletionMarker:
        """Block until a marker for ``frame_index`` has been published."""
        deadline = time.monotonic() + timeout_seconds
        with self._condition:
            while True:
                for marker in reversed(self.markers):
                    if marker.frame_index == frame_index:
                        return marker
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise RenderPipelineError(
                        MARKER_TIMEOUT_CODE,
                        f"no completion marker for frame {frame_index}",
                    )
                self._condition.wait(remaining)


class InteractiveHost(MarkerHost):
    """Self-driving host that repaints on a periodic schedule."""

    def __init__(
        self,
        parameters: InjectedParameters,
        clock_ms: Callable[[], float] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(parameters)
        self.clock_ms = clock_ms or (lambda: time.monotonic() * 1000.0)
        self.sleep = sleep

    def run(self, max_frames: int | None = None) -> PaintResult:
        """Repaint at the configured rate until the animation is complete."""
        interval = 1.0 / self.parameters.fps
        frames = 0
        while True:
            result = self.paint(FrameRequest(now_ms=self.clock_ms()))
            frames += 1
            if result.complete:
                return result
            if max_frames is not None and frames >= max_frames:
                return result
            self.sleep(interval)


class StillImageHost(MarkerHost):
    """One-shot host: paints the final state once."""

    def signal_complete(self, marker: CompletionMarker) -> None:
        with self._condition:
            if any(existing.generation == marker.generation for existing in self.markers):
                return
            super().signal_complete(marker)

    def render(self) -> PaintResult:
        return self.paint(FrameRequest())


class VideoHost(MarkerHost):
    """Externally stepped host: paints only on ``request_frame``."""

    def __init__(self, parameters: InjectedParameters) -> None:
        super().__init__(parameters)
        self._request_lock = threading.Lock()

    def request_frame(self, frame_index: int, total_frames: int) -> PaintResult:
        """Paint exactly one frame; overlapping requests are serialized."""
        with self._request_lock:
            return self.paint(
                FrameRequest(frame_index=frame_index, total_frames=total_frames)
            )


class RenderModeController:
    """Owns the current design session and paints it for a host."""

    def __init__(
        self,
        host: RenderHost,
        fonts: FontSource,
        resolver: ColorResolver | None = None,
        rng: random.Random | None = None,
        timing: AnimationTiming = DEFAULT_TIMING,
    ) -> None:
        self.host = host
        self.fonts = fonts
        self.resolver = resolver
        self.rng = rng or random.Random()
        self.timing = timing
        self.state = ControllerState.IDLE
        self.session: DesignSession | None = None
        self._generation = 0
        self._animation_start_ms: float | None = None
        self._completed_generation: int | None = None
        self._lock = threading.RLock()
        self._workers: list[threading.Thread] = []
        host.on_frame_requested(self.handle_frame_request)

    def start(self, phrase: str | None = None) -> DesignSession:
        """Enter the path selected by the host's injected parameters."""
        parameters = self.host.get_injected_parameters()
        if parameters.settings is not None:
            return self.load_snapshot(parameters.settings)
        if phrase is None:
            raise FeatherValidationError(
                INVALID_CONFIG_CODE, "a phrase is required without a settings snapshot"
            )
        session = self.start_generation(phrase, background=not parameters.server_mode)
        if not parameters.video_mode:
            return session
        # Video frames are only ever stepped from a snapshot.
        if not session.ready:
            self.reset()
            raise RenderPipelineError(NO_RESULTS_CODE, f"no birds found for {phrase!r}")
        return self.load_snapshot(self.capture_settings())

    def next_session(
        self, phrase: str, background_rgb: Tuple[int, int, int] | None = None
    ) -> DesignSession:
        with self._lock:
            if background_rgb is None:
                background_rgb = self.rng.choice(BACKGROUND_COLORS)
            self._generation += 1
            session = DesignSession(
                generation=self._generation,
                phrase=phrase,
                background_rgb=tuple(background_rgb),
            )
            self.session = session
            self._animation_start_ms = None
            self._completed_generation = None
            return session

    def start_generation(
        self,
        phrase: str,
        background_rgb: Tuple[int, int, int] | None = None,
        background: bool = False,
    ) -> DesignSession:
        """Begin a fresh generation, superseding any in flight.

        With ``background`` the color lookups run on a worker thread and the
        session reports loading progress until they settle.
        """
        if self.resolver is None:
            raise FeatherValidationError(
                INVALID_CONFIG_CODE, "fresh generation requires a color resolver"
            )
        clean_phrase = require_phrase(phrase)
        session = self.next_session(clean_phrase, background_rgb)
        with self._lock:
            self.state = ControllerState.FRESH_GENERATION
        LOGGER.info(
            "feather_type.generation.start: #%d %r", session.generation, clean_phrase
        )
        if background:
            worker = threading.Thread(
                target=self.generation_worker,
                args=(session.generation, clean_phrase),
                name=f"feather-type-generation-{session.generation}",
                daemon=True,
            )
            self._workers.append(worker)
            worker.start()
            return session
        self.resolve_generation(session.generation, clean_phrase)
        return self.session or session

    def resolve_generation(self, generation: int, phrase: str) -> None:
        """Resolve colors and lay out one generation.

        A resolver failure settles the generation as empty (no results). A
        layout failure abandons the generation and is re-raised.
        """
        try:
            resolution = self.resolver.resolve(
                phrase,
                on_progress=lambda settled, issued: self.update_progress(
                    generation, settled, issued
                ),
            )
        except Exception as exc:
            LOGGER.error(
                "feather_type.generation.failed: #%d color resolution: %r",
                generation,
                exc,
            )
            resolution = EMPTY_RESOLUTION
        try:
            self.apply_resolution(generation, resolution)
        except Exception as exc:
            LOGGER.error("feather_type.generation.failed: #%d layout: %r", generation, exc)
            with self._lock:
                if self.is_current(generation):
                    self.reset()
            raise

    def generation_worker(self, generation: int, phrase: str) -> None:
        try:
            self.resolve_generation(generation, phrase)
        except Exception:
            # Logged and reset above; the next paint reports the failure.
            return

    def is_current(self, generation: int) -> bool:
        return self.session is not None and self.session.generation == generation

    def update_progress(self, generation: int, settled: int, issued: int) -> None:
        with self._lock:
            if not self.is_current(generation) or self.session.status in (
                SessionStatus.READY,
                SessionStatus.NO_RESULTS,
            ):
                return
            self.session = replace(
                self.session,
                status=SessionStatus.LOADING_COLORS,
                colors_settled=settled,
                colors_issued=issued,
            )

    def apply_resolution(self, generation: int, resolution: ColorResolution) -> bool:
        """Lay out a settled resolution unless a newer generation has started."""
        with self._lock:
            if not self.is_current(generation):
                LOGGER.info(
                    "feather_type.generation.superseded: dropping results of #%d",
                    generation,
                )
                return False
            parameters = self.host.get_injected_parameters()
            layout = build_fresh_layout(
                self.session.phrase,
                self.canvas(parameters),
                self.fonts.measure,
                resolution.bird_names,
                resolution.color_map,
                self.rng,
            )
            self.session = self.session_with_layout(
                self.session, layout, resolution.settled, resolution.issued
            )
            LOGGER.info(
                "feather_type.generation.settled: #%d %s",
                generation,
                self.session.status.value,
            )
            return True

    def session_with_layout(
        self,
        session: DesignSession,
        layout: LayoutResult,
        settled: int,
        issued: int,
    ) -> DesignSession:
        return replace(
            session,
            status=SessionStatus.READY if layout.ready else SessionStatus.NO_RESULTS,
            slots=layout.slots,
            colors_settled=settled,
            colors_issued=issued,
        )

    def load_snapshot(self, settings: DesignSettings) -> DesignSession:
        """Rebuild a design from a snapshot without any color lookups."""
        parameters = self.host.get_injected_parameters()
        session = self.next_session(settings.display_text, settings.background_rgb)
        try:
            layout = build_snapshot_layout(
                settings, self.canvas(parameters), self.fonts.measure
            )
        except Exception:
            self.reset()
            raise
        with self._lock:
            self.session = self.session_with_layout(session, layout, 0, 0)
            self.state = (
                ControllerState.VIDEO_FRAME_WAIT
                if parameters.video_mode
                else ControllerState.SNAPSHOT_REPLAY
            )
            LOGGER.info(
                "feather_type.snapshot.loaded: #%d %r (%s)",
                session.generation,
                settings.display_text,
                self.state.value,
            )
            return self.session

    def capture_settings(self) -> DesignSettings:
        """Snapshot the current ready session."""
        session = self.session
        if session is None or not session.ready:
            raise RenderPipelineError(
                INVALID_STATE_CODE, "no ready design to capture"
            )
        return capture_settings(session.phrase, session.background_rgb, session.slots)

    def reset(self) -> None:
        """Return to Idle, abandoning the current session."""
        with self._lock:
            self.state = ControllerState.IDLE
            self.session = None
            self._animation_start_ms = None
            self._completed_generation = None

    def wait_for_workers(self, timeout_seconds: float | None = None) -> None:
        for worker in list(self._workers):
            worker.join(timeout_seconds)
        self._workers = [worker for worker in self._workers if worker.is_alive()]

    def canvas(self, parameters: InjectedParameters) -> CanvasSize:
        width, height = self.surface_size(parameters)
        return logical_canvas(width, height)

    def surface_size(self, parameters: InjectedParameters) -> Tuple[int, int]:
        if not parameters.width or not parameters.height:
            raise RenderPipelineError(
                MISSING_SURFACE_CODE, "host did not provide a drawing surface size"
            )
        if parameters.width <= 0 or parameters.height <= 0:
            raise RenderPipelineError(
                MISSING_SURFACE_CODE, "drawing surface size must be positive"
            )
        return parameters.width, parameters.height

    def animation_state(
        self, request: FrameRequest, session: DesignSession, video_mode: bool
    ) -> AnimationState:
        if video_mode:
            if request.frame_index is None or request.total_frames is None:
                raise RenderPipelineError(
                    INVALID_STATE_CODE, "video frames must be requested explicitly"
                )
            return state_from_frame(request.frame_index, request.total_frames, self.timing)
        if request.now_ms is None or session.status == SessionStatus.NO_RESULTS:
            return still_state()
        if session.status != SessionStatus.READY:
            return state_from_elapsed(0.0, self.timing)
        if self._animation_start_ms is None:
            self._animation_start_ms = request.now_ms
        return state_from_elapsed(request.now_ms - self._animation_start_ms, self.timing)

    def handle_frame_request(self, request: FrameRequest) -> PaintResult:
        """Paint one frame for the host; this is the host's paint callback."""
        with self._lock:
            session = self.session
            if session is None or self.state == ControllerState.IDLE:
                raise RenderPipelineError(INVALID_STATE_CODE, "no design is loaded")
            parameters = self.host.get_injected_parameters()
            video_mode = self.state == ControllerState.VIDEO_FRAME_WAIT
            # A bad frame request is rejected without abandoning the session.
            state = self.animation_state(request, session, video_mode)
            try:
                width, height = self.surface_size(parameters)
                frame = compose_frame(session, state, width, height, self.fonts)
            except Exception:
                LOGGER.error(
                    "feather_type.render.aborted: #%d in %s",
                    session.generation,
                    self.state.value,
                )
                self.reset()
                raise

            if video_mode:
                self.host.signal_complete(
                    CompletionMarker(
                        generation=session.generation, frame_index=request.frame_index
                    )
                )
                return PaintResult(frame=frame, state=state, complete=state.complete)

            settled = session.status in (SessionStatus.READY, SessionStatus.NO_RESULTS)
            complete = settled and state.complete
            if complete and self._completed_generation != session.generation:
                self._completed_generation = session.generation
                self.state = ControllerState.COMPLETE
                # Only server renders have an automation controller to notify.
                if parameters.server_mode:
                    self.host.signal_complete(
                        CompletionMarker(generation=session.generation)
                    )
            return PaintResult(frame=frame, state=state, complete=complete)
