"""Shared fixtures for feather_type tests."""

from __future__ import annotations

import pytest

from domain.feather_type import DesignSettings
from feather_fixtures import FakeColorService, build_sample_settings


@pytest.fixture
def color_service() -> FakeColorService:
    return FakeColorService()


@pytest.fixture
def sample_settings() -> DesignSettings:
    return build_sample_settings()
