#!/usr/bin/env -S uv run
# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "pillow>=10.1",
#   "numpy",
# ]
# ///
"""Pre-render gallery thumbnails listed in a gallery.json file."""

from __future__ import annotations

import argparse
from dataclasses import dataclass
import json
import logging
import os
import random
import sys
from typing import Sequence

from domain.feather_type import (
    INPUT_FILE_CODE,
    INVALID_CONFIG_CODE,
    FeatherValidationError,
    RenderPipelineError,
)
from render_feather_type import (
    COLOR_SERVER_ENV,
    FETCH_TIMEOUT_ENV,
    FONT_FILE_ENV,
    MAX_WORKERS_ENV,
    MARKER_TIMEOUT_SECONDS,
    configure_logging,
    read_env_float,
    read_env_int,
)
from service.color_resolver import (
    DEFAULT_COLOR_SERVER,
    DEFAULT_FETCH_TIMEOUT_SECONDS,
    DEFAULT_MAX_WORKERS,
    ColorResolver,
)
from service.render_mode import InjectedParameters, RenderModeController, StillImageHost
from service.scene import FontSource

LOGGER = logging.getLogger("feather_type.gallery")

GALLERY_FILE_NAME = "gallery.json"
GALLERY_IMAGE_SIZE = 800
JPEG_QUALITY = 90


@dataclass(frozen=True)
class GalleryItem:
    """One gallery entry to render."""

    item_id: str
    phrase: str


def load_gallery(gallery_path: str) -> dict[str, object]:
    """Read and validate a gallery file."""
    try:
        with open(gallery_path, "r", encoding="utf-8") as file_handle:
            payload = json.load(file_handle)
    except FileNotFoundError as exc:
        raise FeatherValidationError(
            INPUT_FILE_CODE, f"gallery file not found: {gallery_path}"
        ) from exc
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise FeatherValidationError(
            INPUT_FILE_CODE, f"gallery file is not valid JSON: {gallery_path}"
        ) from exc
    if not isinstance(payload, dict) or not isinstance(payload.get("items"), list):
        raise FeatherValidationError(
            INPUT_FILE_CODE, "gallery file must contain an items list"
        )
    return payload


def parse_gallery_item(raw_item: object) -> GalleryItem | None:
    if not isinstance(raw_item, dict):
        return None
    item_id = raw_item.get("id")
    phrase = raw_item.get("phrase")
    if not isinstance(item_id, str) or not item_id.strip():
        return None
    if not isinstance(phrase, str):
        return None
    return GalleryItem(item_id=item_id.strip(), phrase=phrase)


def render_item(
    item: GalleryItem,
    output_path: str,
    size: int,
    resolver: ColorResolver,
    fonts: FontSource,
    rng: random.Random,
) -> None:
    """Render one gallery phrase through a fresh generation."""
    host = StillImageHost(
        InjectedParameters(server_mode=True, video_mode=False, width=size, height=size)
    )
    controller = RenderModeController(host, fonts, resolver=resolver, rng=rng)
    controller.start(item.phrase)
    result = host.render()
    host.wait_for_marker(None, MARKER_TIMEOUT_SECONDS)
    result.frame.save(output_path, format="JPEG", quality=JPEG_QUALITY)


def render_gallery(
    gallery_dir: str,
    size: int,
    resolver: ColorResolver,
    fonts: FontSource,
    rng: random.Random,
) -> int:
    """Render every item and record image paths; return the rendered count."""
    gallery_path = os.path.join(gallery_dir, GALLERY_FILE_NAME)
    payload = load_gallery(gallery_path)
    LOGGER.info("feather_type.gallery.items: %d", len(payload["items"]))

    rendered = 0
    for raw_item in payload["items"]:
        item = parse_gallery_item(raw_item)
        if item is None:
            LOGGER.warning("feather_type.gallery.invalid_item: %r", raw_item)
            continue
        output_path = os.path.join(gallery_dir, f"{item.item_id}.jpg")
        try:
            render_item(item, output_path, size, resolver, fonts, rng)
        except (FeatherValidationError, RenderPipelineError) as exc:
            LOGGER.warning("%s: skipping %s: %s", exc.code, item.item_id, exc)
            continue
        except OSError as exc:
            LOGGER.warning(
                "feather_type.gallery.write_failed: skipping %s: %s", item.item_id, exc
            )
            continue
        raw_item["image"] = f"/gallery/{item.item_id}.jpg"
        rendered += 1
        LOGGER.info("feather_type.gallery.rendered: %s -> %s", item.phrase, output_path)

    with open(gallery_path, "w", encoding="utf-8") as file_handle:
        json.dump(payload, file_handle, indent=2)
        file_handle.write("\n")
    return rendered


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(prog="render_gallery.py", add_help=True)
    parser.add_argument("--gallery-dir", default=os.path.join("public", "gallery"))
    parser.add_argument("--size", type=int, default=GALLERY_IMAGE_SIZE)
    parser.add_argument("--color-server", default=None)
    parser.add_argument("--font-file", default=None)
    parser.add_argument("--seed", type=int, default=None)
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entrypoint."""
    env = dict(os.environ)
    configure_logging(env)

    try:
        args = parse_args(sys.argv[1:] if argv is None else argv)
        if args.size <= 0:
            raise FeatherValidationError(INVALID_CONFIG_CODE, "size must be positive")
        resolver = ColorResolver(
            server_url=args.color_server
            or env.get(COLOR_SERVER_ENV, "").strip()
            or DEFAULT_COLOR_SERVER,
            timeout_seconds=read_env_float(
                env,
                FETCH_TIMEOUT_ENV,
                "fetch-timeout-seconds",
                DEFAULT_FETCH_TIMEOUT_SECONDS,
            ),
            max_workers=read_env_int(
                env, MAX_WORKERS_ENV, "max-workers", DEFAULT_MAX_WORKERS
            ),
        )
        fonts = FontSource(args.font_file or env.get(FONT_FILE_ENV, "").strip() or None)
        rendered = render_gallery(
            args.gallery_dir, args.size, resolver, fonts, random.Random(args.seed)
        )
        LOGGER.info("feather_type.gallery.done: %d images rendered", rendered)
        return 0
    except FeatherValidationError as exc:
        LOGGER.error("%s: %s", exc.code, str(exc).strip())
        return 1
    except Exception as exc:
        LOGGER.error("feather_type.unhandled_error: %s", str(exc).strip())
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
