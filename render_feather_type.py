#!/usr/bin/env -S uv run
# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "pillow>=10.1",
#   "numpy",
# ]
# ///
"""Render a FeatherType design to a still image, an MP4, or an animated preview."""

from __future__ import annotations

import argparse
from dataclasses import dataclass
import logging
import os
import random
import shutil
import subprocess
import sys
from typing import Mapping, Sequence

from PIL import Image

from domain.feather_type import (
    DEFAULT_PHRASES,
    INVALID_CONFIG_CODE,
    DesignSettings,
    FeatherValidationError,
    RenderMode,
    RenderPipelineError,
    parse_render_mode,
)
from service.animation_clock import DEFAULT_FPS, DEFAULT_TOTAL_FRAMES
from service.color_resolver import (
    DEFAULT_COLOR_SERVER,
    DEFAULT_FETCH_TIMEOUT_SECONDS,
    DEFAULT_MAX_WORKERS,
    ColorResolver,
)
from service.design_settings import dumps_settings, load_settings_file
from service.render_mode import (
    InjectedParameters,
    InteractiveHost,
    RenderModeController,
    StillImageHost,
    VideoHost,
)
from service.scene import FontSource

LOGGER = logging.getLogger("feather_type")

COLOR_SERVER_ENV = "FEATHER_TYPE_COLOR_SERVER"
FETCH_TIMEOUT_ENV = "FEATHER_TYPE_FETCH_TIMEOUT_SECONDS"
MAX_WORKERS_ENV = "FEATHER_TYPE_MAX_WORKERS"
FONT_FILE_ENV = "FEATHER_TYPE_FONT_FILE"
LOG_LEVEL_ENV = "FEATHER_TYPE_LOG_LEVEL"

DEFAULT_SIZES = {
    RenderMode.STILL: (4800, 4800),
    RenderMode.VIDEO: (1080, 1080),
    RenderMode.PREVIEW: (800, 800),
}
IMAGE_EXTENSIONS = {".png": "PNG", ".jpg": "JPEG", ".jpeg": "JPEG"}
VIDEO_EXTENSION = ".mp4"
MARKER_TIMEOUT_SECONDS = 30.0

FFMPEG_NOT_FOUND_CODE = "feather_type.ffmpeg.not_found"
FFMPEG_EXEC_CODE = "feather_type.ffmpeg.exec_error"
FFMPEG_UNSUPPORTED_CODE = "feather_type.ffmpeg.unsupported"
FFMPEG_PROCESS_CODE = "feather_type.ffmpeg.process_failed"
OUTPUT_WRITE_CODE = "feather_type.output.write_failed"
H264_CODEC = "libx264"
H264_PIXEL_FORMAT = "yuv420p"
H264_CRF = "18"
H264_PRESET = "slow"


@dataclass(frozen=True)
class RenderConfig:
    """Validated CLI configuration."""

    mode: RenderMode
    output_file: str
    width: int
    height: int
    total_frames: int
    fps: int
    settings_file: str | None
    phrase: str | None
    color_server: str
    fetch_timeout_seconds: float
    max_workers: int
    font_file: str | None
    seed: int | None
    emit_settings: bool

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise FeatherValidationError(
                INVALID_CONFIG_CODE, "width and height must be positive"
            )
        if self.total_frames <= 0:
            raise FeatherValidationError(
                INVALID_CONFIG_CODE, "total-frames must be positive"
            )
        if self.fps <= 0:
            raise FeatherValidationError(INVALID_CONFIG_CODE, "fps must be positive")
        if self.fetch_timeout_seconds <= 0:
            raise FeatherValidationError(
                INVALID_CONFIG_CODE, "fetch-timeout-seconds must be positive"
            )
        if self.max_workers <= 0:
            raise FeatherValidationError(
                INVALID_CONFIG_CODE, "max-workers must be positive"
            )
        if self.settings_file and self.phrase is not None:
            raise FeatherValidationError(
                INVALID_CONFIG_CODE, "phrase cannot be combined with settings-file"
            )
        if self.settings_file and self.seed is not None:
            raise FeatherValidationError(
                INVALID_CONFIG_CODE, "seed cannot be combined with settings-file"
            )
        if self.emit_settings:
            return
        extension = os.path.splitext(self.output_file)[1].lower()
        if self.mode == RenderMode.VIDEO:
            if extension != VIDEO_EXTENSION:
                raise FeatherValidationError(
                    INVALID_CONFIG_CODE, "video output must be an .mp4 file"
                )
            if self.width % 2 or self.height % 2:
                raise FeatherValidationError(
                    INVALID_CONFIG_CODE, "width and height must be even for video output"
                )
        elif extension not in IMAGE_EXTENSIONS:
            raise FeatherValidationError(
                INVALID_CONFIG_CODE, "image output must be a .png or .jpg file"
            )


def configure_logging(env: Mapping[str, str]) -> None:
    """Configure logging from environment."""
    level_name = env.get(LOG_LEVEL_ENV, "INFO").strip().upper()
    level = logging.INFO
    if level_name == "DEBUG":
        level = logging.DEBUG
    elif level_name == "WARNING":
        level = logging.WARNING
    elif level_name == "ERROR":
        level = logging.ERROR
    logging.basicConfig(level=level, format="%(message)s")


def parse_positive_int(raw_value: str, label: str) -> int:
    """Parse a positive integer from a string."""
    try:
        value = int(raw_value)
    except ValueError as exc:
        raise FeatherValidationError(
            INVALID_CONFIG_CODE, f"{label} must be an integer"
        ) from exc
    if value <= 0:
        raise FeatherValidationError(INVALID_CONFIG_CODE, f"{label} must be positive")
    return value


def parse_positive_float(raw_value: str, label: str) -> float:
    """Parse a positive float from a string."""
    try:
        value = float(raw_value)
    except ValueError as exc:
        raise FeatherValidationError(
            INVALID_CONFIG_CODE, f"{label} must be a number"
        ) from exc
    if value <= 0:
        raise FeatherValidationError(INVALID_CONFIG_CODE, f"{label} must be positive")
    return value


def read_env_int(env: Mapping[str, str], key: str, label: str, fallback: int) -> int:
    raw_value = env.get(key, "").strip()
    if not raw_value:
        return fallback
    return parse_positive_int(raw_value, label)


def read_env_float(
    env: Mapping[str, str], key: str, label: str, fallback: float
) -> float:
    raw_value = env.get(key, "").strip()
    if not raw_value:
        return fallback
    return parse_positive_float(raw_value, label)


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(prog="render_feather_type.py", add_help=True)
    parser.add_argument("--mode", default="still", help="still (default), video, or preview")
    parser.add_argument("--output-file", default=None)
    parser.add_argument("--width", type=int, default=None)
    parser.add_argument("--height", type=int, default=None)
    parser.add_argument("--total-frames", type=int, default=DEFAULT_TOTAL_FRAMES)
    parser.add_argument("--fps", type=int, default=DEFAULT_FPS)
    parser.add_argument("--settings-file", default=None)
    parser.add_argument("--phrase", default=None)
    parser.add_argument("--color-server", default=None)
    parser.add_argument("--fetch-timeout-seconds", type=float, default=None)
    parser.add_argument("--max-workers", type=int, default=None)
    parser.add_argument("--font-file", default=None)
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--emit-settings", action="store_true")
    return parser.parse_args(argv)


def load_config(args: argparse.Namespace, env: Mapping[str, str]) -> RenderConfig:
    """Load render configuration from args and environment."""
    mode = parse_render_mode(args.mode)
    default_width, default_height = DEFAULT_SIZES[mode]
    output_file = args.output_file
    if output_file is None:
        output_file = (
            "feathertype.mp4" if mode == RenderMode.VIDEO else "feathertype.png"
        )

    color_server = env.get(COLOR_SERVER_ENV, "").strip() or DEFAULT_COLOR_SERVER
    if args.color_server:
        color_server = args.color_server
    fetch_timeout = read_env_float(
        env, FETCH_TIMEOUT_ENV, "fetch-timeout-seconds", DEFAULT_FETCH_TIMEOUT_SECONDS
    )
    if args.fetch_timeout_seconds is not None:
        fetch_timeout = args.fetch_timeout_seconds
    max_workers = read_env_int(env, MAX_WORKERS_ENV, "max-workers", DEFAULT_MAX_WORKERS)
    if args.max_workers is not None:
        max_workers = args.max_workers
    font_file = env.get(FONT_FILE_ENV, "").strip() or None
    if args.font_file:
        font_file = args.font_file

    return RenderConfig(
        mode=mode,
        output_file=output_file,
        width=args.width if args.width is not None else default_width,
        height=args.height if args.height is not None else default_height,
        total_frames=args.total_frames,
        fps=args.fps,
        settings_file=args.settings_file,
        phrase=args.phrase,
        color_server=color_server,
        fetch_timeout_seconds=fetch_timeout,
        max_workers=max_workers,
        font_file=font_file,
        seed=args.seed,
        emit_settings=args.emit_settings,
    )


def select_phrase(config: RenderConfig, rng: random.Random) -> str:
    if config.phrase is not None:
        return config.phrase
    return rng.choice(DEFAULT_PHRASES)


def build_parameters(
    config: RenderConfig, settings: DesignSettings | None
) -> InjectedParameters:
    return InjectedParameters(
        server_mode=config.mode != RenderMode.PREVIEW,
        video_mode=config.mode == RenderMode.VIDEO,
        width=config.width,
        height=config.height,
        total_frames=config.total_frames,
        fps=config.fps,
        settings=settings,
    )


def build_controller(
    config: RenderConfig, host: StillImageHost | VideoHost | InteractiveHost
) -> RenderModeController:
    resolver = ColorResolver(
        server_url=config.color_server,
        timeout_seconds=config.fetch_timeout_seconds,
        max_workers=config.max_workers,
    )
    return RenderModeController(
        host,
        FontSource(config.font_file),
        resolver=resolver,
        rng=random.Random(config.seed),
    )


def save_image(frame: Image.Image, output_file: str) -> None:
    """Write a frame as PNG or JPEG based on the file extension."""
    image_format = IMAGE_EXTENSIONS[os.path.splitext(output_file)[1].lower()]
    try:
        frame.save(output_file, format=image_format)
    except OSError as exc:
        raise RenderPipelineError(
            OUTPUT_WRITE_CODE, f"failed to write {output_file}: {exc}"
        ) from exc


def emit_settings(config: RenderConfig, settings: DesignSettings | None, phrase: str) -> None:
    """Print the resolved design snapshot as JSON."""
    parameters = InjectedParameters(
        server_mode=True,
        video_mode=False,
        width=config.width,
        height=config.height,
        settings=settings,
    )
    controller = build_controller(config, StillImageHost(parameters))
    controller.start(phrase)
    sys.stdout.write(dumps_settings(controller.capture_settings()) + "\n")


def render_still(config: RenderConfig, settings: DesignSettings | None, phrase: str) -> None:
    """Render the final state of a design to an image file."""
    host = StillImageHost(build_parameters(config, settings))
    controller = build_controller(config, host)
    controller.start(phrase)
    result = host.render()
    host.wait_for_marker(None, MARKER_TIMEOUT_SECONDS)
    save_image(result.frame, config.output_file)
    LOGGER.info(
        "feather_type.output.written: %s (%dx%d)",
        config.output_file,
        config.width,
        config.height,
    )


def render_preview(config: RenderConfig, settings: DesignSettings | None, phrase: str) -> None:
    """Animate a design in real time and save its last frame."""
    host = InteractiveHost(build_parameters(config, settings))
    controller = build_controller(config, host)
    controller.start(phrase)
    result = host.run()
    controller.wait_for_workers()
    save_image(result.frame, config.output_file)
    LOGGER.info("feather_type.output.written: %s", config.output_file)


def ensure_ffmpeg_available() -> None:
    """Ensure ffmpeg is installed and executable."""
    ffmpeg_path = shutil.which("ffmpeg")
    if not ffmpeg_path:
        raise RenderPipelineError(FFMPEG_NOT_FOUND_CODE, "ffmpeg not on PATH")
    try:
        subprocess.run(
            [ffmpeg_path, "-version"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=True,
        )
    except Exception as exc:
        raise RenderPipelineError(
            FFMPEG_EXEC_CODE, "ffmpeg exists but could not be executed"
        ) from exc


def validate_ffmpeg_capabilities() -> None:
    """Validate the H.264 encoder and pixel format ffmpeg must provide."""
    ensure_ffmpeg_available()
    encoders_result = subprocess.run(
        ["ffmpeg", "-hide_banner", "-encoders"],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        check=True,
    )
    if H264_CODEC not in encoders_result.stdout:
        raise RenderPipelineError(
            FFMPEG_UNSUPPORTED_CODE, f"ffmpeg does not support {H264_CODEC} encoder"
        )
    pixfmts_result = subprocess.run(
        ["ffmpeg", "-hide_banner", "-pix_fmts"],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        check=True,
    )
    if H264_PIXEL_FORMAT not in pixfmts_result.stdout:
        raise RenderPipelineError(
            FFMPEG_UNSUPPORTED_CODE,
            f"ffmpeg does not support {H264_PIXEL_FORMAT} pixel format",
        )


def open_ffmpeg_process(config: RenderConfig) -> subprocess.Popen[bytes]:
    """Start ffmpeg for a raw RGB frame stream."""
    ffmpeg_cmd = [
        "ffmpeg",
        "-y",
        "-f",
        "rawvideo",
        "-pix_fmt",
        "rgb24",
        "-s",
        f"{config.width}x{config.height}",
        "-r",
        str(config.fps),
        "-i",
        "-",
        "-an",
        "-c:v",
        H264_CODEC,
        "-crf",
        H264_CRF,
        "-preset",
        H264_PRESET,
        "-pix_fmt",
        H264_PIXEL_FORMAT,
        "-movflags",
        "+faststart",
        config.output_file,
    ]
    try:
        return subprocess.Popen(
            ffmpeg_cmd,
            stdin=subprocess.PIPE,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise RenderPipelineError(FFMPEG_NOT_FOUND_CODE, "ffmpeg not found") from exc


def render_video(config: RenderConfig, settings: DesignSettings | None, phrase: str) -> None:
    """Step through every frame explicitly and encode them to MP4."""
    host = VideoHost(build_parameters(config, settings))
    controller = build_controller(config, host)
    controller.start(phrase)

    ffmpeg_process = open_ffmpeg_process(config)
    if not ffmpeg_process.stdin:
        raise RenderPipelineError(FFMPEG_PROCESS_CODE, "ffmpeg stdin unavailable")
    try:
        for frame_index in range(config.total_frames):
            host.request_frame(frame_index, config.total_frames)
            host.wait_for_marker(frame_index, MARKER_TIMEOUT_SECONDS)
            ffmpeg_process.stdin.write(host.latest_frame.tobytes())

        ffmpeg_process.stdin.close()
        stderr_bytes = ffmpeg_process.stderr.read() if ffmpeg_process.stderr else b""
        return_code = ffmpeg_process.wait()
        if return_code != 0:
            stderr_text = stderr_bytes.decode("utf-8", errors="replace").strip()
            raise RenderPipelineError(
                FFMPEG_PROCESS_CODE,
                f"ffmpeg failed with exit code {return_code}. {stderr_text}",
            )
    finally:
        try:
            if ffmpeg_process.stdin and not ffmpeg_process.stdin.closed:
                ffmpeg_process.stdin.close()
        except OSError:
            pass
        if ffmpeg_process.poll() is None:
            ffmpeg_process.kill()
    LOGGER.info(
        "feather_type.output.written: %s (%d frames at %d fps)",
        config.output_file,
        config.total_frames,
        config.fps,
    )


RENDERERS = {
    RenderMode.STILL: render_still,
    RenderMode.VIDEO: render_video,
    RenderMode.PREVIEW: render_preview,
}


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entrypoint."""
    env = dict(os.environ)
    configure_logging(env)

    try:
        config = load_config(parse_args(sys.argv[1:] if argv is None else argv), env)
        settings = load_settings_file(config.settings_file) if config.settings_file else None
        phrase = select_phrase(config, random.Random(config.seed))
        if config.emit_settings:
            emit_settings(config, settings, phrase)
            return 0
        if config.mode == RenderMode.VIDEO:
            validate_ffmpeg_capabilities()
        RENDERERS[config.mode](config, settings, phrase)
        return 0
    except FeatherValidationError as exc:
        LOGGER.error("%s: %s", exc.code, str(exc).strip())
        return 1
    except RenderPipelineError as exc:
        LOGGER.error("%s: %s", exc.code, str(exc).strip())
        return 1
    except Exception as exc:
        LOGGER.error("feather_type.unhandled_error: %s", str(exc).strip())
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
