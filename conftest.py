"""Shared pytest fixtures: an on-disk FHIR store and isolated configuration."""

from __future__ import annotations

import pytest

from fhirbots.config import BotConfig, reset_config
from fhirbots.medplum import FhirJsonStore


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch):
    """Keep the developer's environment out of the tests."""
    for name in (
        "FHIR_BACKEND",
        "FHIR_DATA_DIR",
        "MEDPLUM_CLIENT_ID",
        "MEDPLUM_CLIENT_SECRET",
        "PREDICTION_API_URL",
        "OPKIT_API_KEY",
    ):
        monkeypatch.delenv(name, raising=False)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def config() -> BotConfig:
    return BotConfig()


@pytest.fixture
def store(tmp_path) -> FhirJsonStore:
    return FhirJsonStore(tmp_path / "fhir")
