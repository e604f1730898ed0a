"""Tests for the render-mode controller and its hosts."""

from __future__ import annotations

from dataclasses import replace
import http.client
import random
import threading

import pytest

from domain.feather_type import (
    BACKGROUND_COLORS,
    DesignSettings,
    FeatherValidationError,
    RenderPipelineError,
    SessionStatus,
)
from service.color_resolver import ColorResolver, EMPTY_RESOLUTION
from service.render_mode import (
    ControllerState,
    FrameRequest,
    InjectedParameters,
    InteractiveHost,
    RenderModeController,
    StillImageHost,
    VideoHost,
)
from service.scene import FontSource

from feather_fixtures import FakeColorService

SERVER = "https://colors.example.test/"
SIZE = 96


def video_parameters(settings: DesignSettings | None, total_frames: int = 6) -> InjectedParameters:
    return InjectedParameters(
        server_mode=True,
        video_mode=True,
        width=SIZE,
        height=SIZE,
        total_frames=total_frames,
        settings=settings,
    )


def still_parameters(settings: DesignSettings | None) -> InjectedParameters:
    return InjectedParameters(
        server_mode=True, video_mode=False, width=SIZE, height=SIZE, settings=settings
    )


def test_snapshot_with_video_flag_waits_for_frames(sample_settings: DesignSettings) -> None:
    """Video snapshots enter the frame-wait state and never paint on their own."""
    host = VideoHost(video_parameters(sample_settings))
    controller = RenderModeController(host, FontSource())
    session = controller.start()
    assert controller.state == ControllerState.VIDEO_FRAME_WAIT
    assert session.status == SessionStatus.READY
    assert host.markers == []
    assert host.latest_frame is None


def test_each_frame_request_emits_one_marker(sample_settings: DesignSettings) -> None:
    """N frame requests produce exactly N markers, in request order."""
    host = VideoHost(video_parameters(sample_settings))
    controller = RenderModeController(host, FontSource())
    controller.start()
    for frame_index in (0, 3, 3, 5):
        result = host.request_frame(frame_index, 6)
        assert host.markers[-1].frame_index == frame_index
        assert result.state.frame_index == frame_index
    assert [marker.frame_index for marker in host.markers] == [0, 3, 3, 5]
    assert host.wait_for_marker(5, 1.0).frame_index == 5


def test_overlapping_frame_requests_are_not_merged(sample_settings: DesignSettings) -> None:
    """Concurrent requests each get their own marker."""
    host = VideoHost(video_parameters(sample_settings, total_frames=8))
    controller = RenderModeController(host, FontSource())
    controller.start()
    threads = [
        threading.Thread(target=host.request_frame, args=(frame_index, 8))
        for frame_index in range(8)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(10.0)
    assert sorted(marker.frame_index for marker in host.markers) == list(range(8))


def test_still_marker_is_emitted_once(sample_settings: DesignSettings) -> None:
    """Repainting a finished still does not emit a second marker."""
    host = StillImageHost(still_parameters(sample_settings))
    controller = RenderModeController(host, FontSource())
    controller.start()
    assert controller.state == ControllerState.SNAPSHOT_REPLAY
    first = host.render()
    host.render()
    assert first.complete
    assert len(host.markers) == 1
    assert host.markers[0].frame_index is None
    assert controller.state == ControllerState.COMPLETE
    assert first.frame.size == (SIZE, SIZE)


def test_marker_wait_times_out(sample_settings: DesignSettings) -> None:
    """Waiting for a frame that was never requested fails with a code."""
    host = VideoHost(video_parameters(sample_settings))
    RenderModeController(host, FontSource()).start()
    with pytest.raises(RenderPipelineError) as excinfo:
        host.wait_for_marker(2, 0.05)
    assert excinfo.value.code == "feather_type.render.marker_timeout"


def test_missing_surface_aborts_without_poisoning_next_render(
    sample_settings: DesignSettings,
) -> None:
    """A render without a surface fails; the next render works normally."""
    host = StillImageHost(
        InjectedParameters(server_mode=True, video_mode=False, width=None, height=None)
    )
    controller = RenderModeController(host, FontSource())
    with pytest.raises(RenderPipelineError) as excinfo:
        controller.load_snapshot(sample_settings)
    assert excinfo.value.code == "feather_type.render.missing_surface"
    assert controller.state == ControllerState.IDLE

    host.parameters = replace(host.parameters, width=SIZE, height=SIZE)
    controller.load_snapshot(sample_settings)
    assert host.render().complete
    assert len(host.markers) == 1


def test_paint_without_design_is_rejected() -> None:
    """Painting before anything is loaded is an error."""
    host = StillImageHost(still_parameters(None))
    RenderModeController(host, FontSource())
    with pytest.raises(RenderPipelineError) as excinfo:
        host.render()
    assert excinfo.value.code == "feather_type.render.invalid_state"


def test_fresh_generation_lays_out_resolved_birds(color_service: FakeColorService) -> None:
    """A fresh generation resolves colors and matches birds."""
    host = StillImageHost(still_parameters(None))
    controller = RenderModeController(
        host,
        FontSource(),
        resolver=ColorResolver(SERVER, fetch=color_service),
        rng=random.Random(7),
    )
    session = controller.start("a-b")
    assert controller.state == ControllerState.FRESH_GENERATION
    assert session.status == SessionStatus.READY
    assert session.phrase == "A-B"
    assert [slot.bird_name != "" for slot in session.slots] == [True, False, True]
    settings = controller.capture_settings()
    assert settings.display_text == "A-B"
    assert host.render().complete


def test_fresh_generation_without_birds_is_no_results(
    color_service: FakeColorService,
) -> None:
    """An empty search is a visible no-results design, not an error."""
    host = StillImageHost(still_parameters(None))
    controller = RenderModeController(
        host, FontSource(), resolver=ColorResolver(SERVER, fetch=color_service)
    )
    session = controller.start("XYZ")
    assert session.status == SessionStatus.NO_RESULTS
    assert host.render().complete
    assert len(host.markers) == 1


def test_video_needs_results(color_service: FakeColorService) -> None:
    """Video without a snapshot captures a fresh design, or fails when empty."""
    host = VideoHost(video_parameters(None))
    controller = RenderModeController(
        host, FontSource(), resolver=ColorResolver(SERVER, fetch=color_service)
    )
    with pytest.raises(RenderPipelineError) as excinfo:
        controller.start("XYZ")
    assert excinfo.value.code == "feather_type.render.no_results"
    assert controller.state == ControllerState.IDLE

    controller.start("AB")
    assert controller.state == ControllerState.VIDEO_FRAME_WAIT
    host.request_frame(0, 6)
    assert len(host.markers) == 1


def test_newer_generation_supersedes_stale_results(color_service: FakeColorService) -> None:
    """Results from an older generation arriving late are discarded."""
    gate = threading.Event()
    color_service.blocked["American Robin"] = gate
    host = InteractiveHost(
        InjectedParameters(server_mode=False, video_mode=False, width=SIZE, height=SIZE)
    )
    controller = RenderModeController(
        host, FontSource(), resolver=ColorResolver(SERVER, fetch=color_service)
    )
    first = controller.start_generation("A", background=True)
    second = controller.start_generation("B")
    assert second.generation > first.generation
    assert second.status == SessionStatus.READY

    gate.set()
    controller.wait_for_workers(10.0)
    session = controller.session
    assert session.generation == second.generation
    assert session.phrase == "B"
    assert session.slots[0].bird_name in ("Blue Jay", "Barn Owl")
    assert controller.apply_resolution(first.generation, EMPTY_RESOLUTION) is False


def test_background_generation_reports_loading(color_service: FakeColorService) -> None:
    """While lookups are pending the session shows loading progress."""
    gate = threading.Event()
    color_service.blocked["Barn Owl"] = gate
    host = InteractiveHost(
        InjectedParameters(server_mode=False, video_mode=False, width=SIZE, height=SIZE)
    )
    controller = RenderModeController(
        host, FontSource(), resolver=ColorResolver(SERVER, fetch=color_service)
    )
    controller.start("B")
    try:
        for _ in range(200):
            if controller.session.colors_settled >= 1:
                break
            threading.Event().wait(0.01)
        assert controller.session.status == SessionStatus.LOADING_COLORS
        assert controller.session.colors_issued == 2
        assert not host.paint(FrameRequest(now_ms=0.0)).complete
    finally:
        gate.set()
    controller.wait_for_workers(10.0)
    assert controller.session.status == SessionStatus.READY


def test_interactive_host_runs_until_complete(sample_settings: DesignSettings) -> None:
    """The self-driving loop stops once the animation finishes."""
    ticks = iter(range(0, 100000, 500))
    host = InteractiveHost(
        InjectedParameters(
            server_mode=False,
            video_mode=False,
            width=SIZE,
            height=SIZE,
            settings=sample_settings,
        ),
        clock_ms=lambda: float(next(ticks)),
        sleep=lambda seconds: None,
    )
    controller = RenderModeController(host, FontSource())
    controller.start()
    result = host.run()
    assert result.complete
    assert result.state.elapsed_ms == 4500.0
    assert controller.state == ControllerState.COMPLETE
    assert host.markers == []


def test_video_mode_requires_server_mode() -> None:
    with pytest.raises(FeatherValidationError):
        InjectedParameters(server_mode=False, video_mode=True, width=10, height=10)


class FailingResolver(ColorResolver):
    """Resolver whose whole resolution raises."""

    def resolve(self, phrase, on_progress=None):
        raise http.client.IncompleteRead(b"")


class LockCheckingRandom(random.Random):
    """Counts choices made while the given lock is free."""

    def __init__(self, seed: int) -> None:
        super().__init__(seed)
        self.lock = None
        self.unlocked_choices = 0

    def choice(self, seq):
        if self.lock is not None and lock_is_free(self.lock):
            self.unlocked_choices += 1
        return super().choice(seq)


def lock_is_free(lock) -> bool:
    acquired: list[bool] = []

    def try_acquire() -> None:
        got_lock = lock.acquire(blocking=False)
        if got_lock:
            lock.release()
        acquired.append(got_lock)

    thread = threading.Thread(target=try_acquire)
    thread.start()
    thread.join(5.0)
    return acquired[0]


def interactive_parameters(width: int | None = SIZE) -> InjectedParameters:
    return InjectedParameters(
        server_mode=False, video_mode=False, width=width, height=width
    )


def test_bad_frame_request_keeps_video_session(sample_settings: DesignSettings) -> None:
    """An out-of-range frame is rejected; later frames still render."""
    host = VideoHost(video_parameters(sample_settings))
    controller = RenderModeController(host, FontSource())
    controller.start()
    with pytest.raises(FeatherValidationError) as excinfo:
        host.request_frame(6, 6)
    assert excinfo.value.code == "feather_type.input.invalid_config"
    assert controller.state == ControllerState.VIDEO_FRAME_WAIT
    assert host.markers == []

    result = host.request_frame(1, 6)
    assert result.state.frame_index == 1
    assert [marker.frame_index for marker in host.markers] == [1]


def test_failed_resolution_settles_as_no_results() -> None:
    """A resolver crash on the worker thread ends in a no-results design."""
    host = InteractiveHost(interactive_parameters(), sleep=lambda seconds: None)
    controller = RenderModeController(
        host, FontSource(), resolver=FailingResolver(SERVER)
    )
    controller.start("B")
    controller.wait_for_workers(10.0)
    assert controller.session.status == SessionStatus.NO_RESULTS
    result = host.run(max_frames=50)
    assert result.complete


def test_failed_background_layout_surfaces_to_loop(color_service: FakeColorService) -> None:
    """A layout failure on the worker thread is reported by the next paint."""
    host = InteractiveHost(interactive_parameters(width=None), sleep=lambda seconds: None)
    controller = RenderModeController(
        host, FontSource(), resolver=ColorResolver(SERVER, fetch=color_service)
    )
    controller.start("B")
    controller.wait_for_workers(10.0)
    assert controller.state == ControllerState.IDLE
    with pytest.raises(RenderPipelineError) as excinfo:
        host.run(max_frames=50)
    assert excinfo.value.code == "feather_type.render.invalid_state"


def test_fresh_generation_draws_randomness_under_lock(
    color_service: FakeColorService,
) -> None:
    """Background and bird choices share the controller's random source safely."""
    rng = LockCheckingRandom(11)
    host = StillImageHost(still_parameters(None))
    controller = RenderModeController(
        host,
        FontSource(),
        resolver=ColorResolver(SERVER, fetch=color_service),
        rng=rng,
    )
    rng.lock = controller._lock
    session = controller.start("AB")
    assert session.background_rgb in BACKGROUND_COLORS
    assert rng.unlocked_choices == 0
