"""Tests for DesignSettings capture and serialization."""

from __future__ import annotations

import json
from pathlib import Path
import random

import pytest

from domain.feather_type import DesignSettings, FeatherValidationError
from service.design_settings import (
    capture_settings,
    dumps_settings,
    load_settings_file,
    loads_settings,
    settings_from_payload,
    settings_to_payload,
)
from service.layout import CanvasSize, build_fresh_layout

from feather_fixtures import JAY_COLORS, OWL_COLORS, ROBIN_COLORS, color_entry


def valid_payload() -> dict:
    return {
        "displayText": "AB",
        "backgroundColor": [240, 235, 225],
        "letterData": [
            {"char": "A", "birdName": "American Robin", "featherAngle": 0.01, "randomSeed": 5},
            {"char": "B", "birdName": "", "featherAngle": -0.03, "randomSeed": 6},
        ],
        "birdColors": {
            "AMERICAN ROBIN": {"name": "American Robin", "colors": ROBIN_COLORS},
        },
    }


def test_payload_uses_snapshot_field_names(sample_settings: DesignSettings) -> None:
    """The serialized shape carries every snapshot field."""
    payload = settings_to_payload(sample_settings)
    assert payload["displayText"] == "A-B"
    assert payload["backgroundColor"] == [245, 240, 230]
    assert payload["letterData"][0] == {
        "char": "A",
        "birdName": "American Robin",
        "featherAngle": 0.05,
        "randomSeed": 1234,
    }
    assert payload["birdColors"]["BLUE JAY"]["wingLength"] == 140.0
    assert payload["birdColors"]["AMERICAN ROBIN"]["colors"][0] == {
        "hex": "#8a4b2a",
        "span": 4.0,
    }


def test_json_round_trip_preserves_settings(sample_settings: DesignSettings) -> None:
    """Parsing serialized settings restores an equal snapshot."""
    assert loads_settings(dumps_settings(sample_settings)) == sample_settings


def test_capture_keeps_only_referenced_birds() -> None:
    """Unused color entries are not captured."""
    color_map = {
        "AMERICAN ROBIN": color_entry("American Robin", ROBIN_COLORS),
        "BLUE JAY": color_entry("Blue Jay", JAY_COLORS),
        "BARN OWL": color_entry("Barn Owl", OWL_COLORS),
    }
    layout = build_fresh_layout(
        "A-Z",
        CanvasSize(1200.0, 1200.0),
        lambda character, size: size * 0.5,
        ("American Robin", "Blue Jay", "Barn Owl"),
        color_map,
        random.Random(2),
    )
    settings = capture_settings("A-Z", (238, 238, 238), layout.slots)
    assert set(settings.bird_colors) == {"AMERICAN ROBIN"}
    assert [letter.bird_name for letter in settings.letters] == ["American Robin", "", ""]
    assert settings.letters[0].random_seed == layout.slots[0].random_seed


def test_parses_valid_payload() -> None:
    """A well-formed payload parses into typed settings."""
    settings = settings_from_payload(valid_payload())
    assert settings.display_text == "AB"
    assert settings.letters[1].bird_name == ""
    assert settings.bird_colors["AMERICAN ROBIN"].can_feather


@pytest.mark.parametrize(
    "mutate",
    [
        lambda payload: payload.pop("displayText"),
        lambda payload: payload.update(displayText=""),
        lambda payload: payload.update(backgroundColor=[1, 2]),
        lambda payload: payload.update(backgroundColor=[1, 2, 300]),
        lambda payload: payload["letterData"].pop(),
        lambda payload: payload["letterData"][0].update(char="AB"),
        lambda payload: payload["letterData"][0].update(randomSeed="five"),
        lambda payload: payload.update(birdColors=[]),
        lambda payload: payload["birdColors"]["AMERICAN ROBIN"].update(colors="red"),
        lambda payload: payload["birdColors"]["AMERICAN ROBIN"].update(
            colors=[{"hex": "not-a-color", "span": 1}]
        ),
    ],
)
def test_malformed_payload_is_rejected(mutate) -> None:
    """Malformed snapshots raise a coded validation error."""
    payload = valid_payload()
    mutate(payload)
    with pytest.raises(FeatherValidationError) as excinfo:
        settings_from_payload(payload)
    assert excinfo.value.code == "feather_type.input.invalid_settings"


def test_invalid_json_is_rejected() -> None:
    """Non-JSON text is a settings error."""
    with pytest.raises(FeatherValidationError) as excinfo:
        loads_settings("{not json")
    assert excinfo.value.code == "feather_type.input.invalid_settings"


def test_load_settings_file(tmp_path: Path) -> None:
    """Settings load from a UTF-8 JSON file."""
    settings_path = tmp_path / "settings.json"
    settings_path.write_text(json.dumps(valid_payload()), encoding="utf-8")
    assert load_settings_file(str(settings_path)).display_text == "AB"


def test_missing_settings_file(tmp_path: Path) -> None:
    """A missing file reports a file error."""
    with pytest.raises(FeatherValidationError) as excinfo:
        load_settings_file(str(tmp_path / "missing.json"))
    assert excinfo.value.code == "feather_type.input.file_error"


def test_non_utf8_settings_file(tmp_path: Path) -> None:
    """Invalid UTF-8 reports a file error."""
    settings_path = tmp_path / "settings.json"
    settings_path.write_bytes(b"\xff\xfe{}")
    with pytest.raises(FeatherValidationError) as excinfo:
        load_settings_file(str(settings_path))
    assert excinfo.value.code == "feather_type.input.file_error"
