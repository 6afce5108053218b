"""Pytest fixtures shared by the ironheart tests.

Provides:
- settings / osc_settings: default configuration
- osc_capture: OSC capture server on a free loopback port

Helpers live in tests/utils.py. All fixtures clean up on teardown.
"""

import pytest

from ironheart.config import Settings
from tests.utils import OSCMessageCapture


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def osc_settings(settings):
    return settings.osc


@pytest.fixture
def osc_capture():
    """Fixture providing an OSC capture server on a free loopback port."""
    capture = OSCMessageCapture()
    capture.start()
    yield capture
    capture.stop()
