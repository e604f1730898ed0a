"""DesignSettings capture and (de)serialization for feather_type.

The JSON shape is the compatibility surface between interactive capture and
server replay:

    {
      "displayText": "A-B",
      "backgroundColor": [245, 240, 230],
      "letterData": [
        {"char": "A", "birdName": "American Robin", "featherAngle": 0.04,
         "randomSeed": 1234},
        ...
      ],
      "birdColors": {
        "AMERICAN ROBIN": {"name": "American Robin",
                           "colors": [{"hex": "#aa3311", "span": 4}, ...]}
      }
    }
"""

from __future__ import annotations

import json
from typing import Sequence, Tuple

from domain.feather_type import (
    INPUT_FILE_CODE,
    INVALID_SETTINGS_CODE,
    ColorEntry,
    DesignSettings,
    FeatherValidationError,
    LetterSettings,
    LetterSlot,
    bird_key,
    parse_color_entry,
)


def capture_settings(
    display_text: str,
    background_rgb: Tuple[int, int, int],
    slots: Sequence[LetterSlot],
) -> DesignSettings:
    """Snapshot a laid-out design, keeping only the colors it references."""
    letters = tuple(
        LetterSettings(
            character=slot.character,
            bird_name=slot.bird_name,
            feather_angle=slot.feather_angle,
            random_seed=slot.random_seed,
        )
        for slot in slots
    )
    bird_colors: dict[str, ColorEntry] = {}
    for slot in slots:
        if slot.bird is not None and slot.bird_name:
            bird_colors[bird_key(slot.bird_name)] = slot.bird
    return DesignSettings(
        display_text=display_text,
        background_rgb=tuple(background_rgb),
        letters=letters,
        bird_colors=bird_colors,
    )


def color_entry_to_payload(entry: ColorEntry) -> dict[str, object]:
    payload: dict[str, object] = {
        "name": entry.name,
        "colors": [
            {"hex": stop.hex_value, "span": stop.weight} for stop in entry.colors
        ],
    }
    if entry.wing_length is not None:
        payload["wingLength"] = entry.wing_length
    return payload


def settings_to_payload(settings: DesignSettings) -> dict[str, object]:
    """Serialize settings to a JSON-compatible dict."""
    return {
        "displayText": settings.display_text,
        "backgroundColor": list(settings.background_rgb),
        "letterData": [
            {
                "char": letter.character,
                "birdName": letter.bird_name,
                "featherAngle": letter.feather_angle,
                "randomSeed": letter.random_seed,
            }
            for letter in settings.letters
        ],
        "birdColors": {
            key: color_entry_to_payload(entry)
            for key, entry in sorted(settings.bird_colors.items())
        },
    }


def dumps_settings(settings: DesignSettings) -> str:
    """Serialize settings to a JSON string."""
    return json.dumps(settings_to_payload(settings), ensure_ascii=True)


def require_number(value: object, label: str) -> float | int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise FeatherValidationError(INVALID_SETTINGS_CODE, f"{label} must be a number")
    return value


def parse_letter_settings(raw_letter: object, index: int) -> LetterSettings:
    """Parse one letterData element."""
    if not isinstance(raw_letter, dict):
        raise FeatherValidationError(
            INVALID_SETTINGS_CODE, f"letterData[{index}] must be an object"
        )
    character = raw_letter.get("char")
    if not isinstance(character, str) or len(character) != 1:
        raise FeatherValidationError(
            INVALID_SETTINGS_CODE, f"letterData[{index}].char must be one character"
        )
    bird_name = raw_letter.get("birdName") or ""
    if not isinstance(bird_name, str):
        raise FeatherValidationError(
            INVALID_SETTINGS_CODE, f"letterData[{index}].birdName must be a string"
        )
    return LetterSettings(
        character=character,
        bird_name=bird_name,
        feather_angle=float(
            require_number(
                raw_letter.get("featherAngle", 0), f"letterData[{index}].featherAngle"
            )
        ),
        random_seed=require_number(
            raw_letter.get("randomSeed", 0), f"letterData[{index}].randomSeed"
        ),
    )


def settings_from_payload(payload: object) -> DesignSettings:
    """Parse and validate a settings payload."""
    if not isinstance(payload, dict):
        raise FeatherValidationError(INVALID_SETTINGS_CODE, "settings must be an object")

    display_text = payload.get("displayText")
    if not isinstance(display_text, str):
        raise FeatherValidationError(
            INVALID_SETTINGS_CODE, "displayText must be a string"
        )

    raw_background = payload.get("backgroundColor")
    if not isinstance(raw_background, list) or len(raw_background) != 3:
        raise FeatherValidationError(
            INVALID_SETTINGS_CODE, "backgroundColor must be a list of three numbers"
        )
    background_rgb = tuple(
        int(round(require_number(channel, "backgroundColor"))) for channel in raw_background
    )

    raw_letters = payload.get("letterData")
    if not isinstance(raw_letters, list):
        raise FeatherValidationError(INVALID_SETTINGS_CODE, "letterData must be a list")
    letters = tuple(
        parse_letter_settings(raw_letter, index)
        for index, raw_letter in enumerate(raw_letters)
    )

    raw_colors = payload.get("birdColors")
    if raw_colors is None:
        raw_colors = {}
    if not isinstance(raw_colors, dict):
        raise FeatherValidationError(INVALID_SETTINGS_CODE, "birdColors must be an object")
    bird_colors = {
        bird_key(str(key)): parse_color_entry(raw_entry, INVALID_SETTINGS_CODE)
        for key, raw_entry in raw_colors.items()
    }

    return DesignSettings(
        display_text=display_text,
        background_rgb=background_rgb,
        letters=letters,
        bird_colors=bird_colors,
    )


def loads_settings(text_value: str) -> DesignSettings:
    """Parse settings from a JSON string."""
    try:
        payload = json.loads(text_value)
    except json.JSONDecodeError as exc:
        raise FeatherValidationError(
            INVALID_SETTINGS_CODE, f"settings are not valid JSON: {exc.msg}"
        ) from exc
    return settings_from_payload(payload)


def load_settings_file(file_path: str) -> DesignSettings:
    """Read and parse a UTF-8 settings file."""
    try:
        with open(file_path, "rb") as file_handle:
            file_bytes = file_handle.read()
    except FileNotFoundError as exc:
        raise FeatherValidationError(
            INPUT_FILE_CODE, f"settings file not found: {file_path}"
        ) from exc
    try:
        text_value = file_bytes.decode("utf-8", errors="strict")
    except UnicodeDecodeError as exc:
        raise FeatherValidationError(
            INPUT_FILE_CODE,
            f"settings file is not valid UTF-8 at byte offset {exc.start}",
        ) from exc
    return loads_settings(text_value)
