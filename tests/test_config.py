import logging

import pytest
from pydantic import ValidationError

from archivist.config import configure_logging, load_settings


def test_overrides_and_defaults():
    settings = load_settings(_env_file=None, max_concurrent_fetches=8)
    assert settings.max_concurrent_fetches == 8
    assert settings.single_flight_policy == "wait"
    assert settings.storage_backend == "local"


def test_settings_are_read_only():
    settings = load_settings(_env_file=None)
    with pytest.raises(ValidationError):
        settings.base_storage_dir = "/elsewhere"


def test_environment_is_read(monkeypatch):
    monkeypatch.setenv("MAX_REDIRECTS", "3")
    monkeypatch.setenv("SINGLE_FLIGHT_POLICY", "reject")
    settings = load_settings(_env_file=None)
    assert settings.max_redirects == 3
    assert settings.single_flight_policy == "reject"


def test_unknown_policy_is_rejected():
    with pytest.raises(ValidationError):
        load_settings(_env_file=None, single_flight_policy="sometimes")


def test_configure_logging():
    configure_logging(load_settings(_env_file=None, log_level="debug"))
    logger = logging.getLogger("archivist")
    assert logger.level == logging.DEBUG
    assert len(logger.handlers) == 1
