"""
Shared test fixtures for adeval tests.

This module provides common fixtures used across the unit tests:
- Scripted fake Azure CLI runners (see tests/mocks/azure_cli.py)
- No-op sleep and silent progress output
- Isolation from ADE_* and ADEVAL_* variables in the developer's shell
"""

import io
import os
from unittest.mock import Mock

import pytest

from adeval.config import PollSettings, reset_poll_settings
from adeval.progress import ProgressDisplay
from tests.mocks.azure_cli import FakeRunner, script_provisioning


@pytest.fixture
def fake_runner():
    """Fake Azure CLI runner with no scripted responses (every command returns None)."""
    return FakeRunner()


@pytest.fixture
def provisioning_runner():
    """Fake Azure CLI runner scripted for a successful provisioning run."""
    return script_provisioning(FakeRunner())


@pytest.fixture
def no_sleep():
    """Sleep replacement that records requested intervals."""
    return Mock()


@pytest.fixture
def quiet_progress():
    """Progress display writing to an in-memory buffer."""
    return ProgressDisplay(use_unicode=False, output_file=io.StringIO())


@pytest.fixture
def settings():
    """Default poll settings (sleep is faked in tests, so only cycle counts matter)."""
    return PollSettings()


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep ADE_* and ADEVAL_* variables of the developer's shell out of tests."""
    for var in list(os.environ):
        if var.startswith(("ADE_", "ADEVAL_")):
            monkeypatch.delenv(var, raising=False)
    reset_poll_settings()
    yield
    reset_poll_settings()
