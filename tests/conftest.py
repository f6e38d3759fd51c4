"""
Pytest configuration for voicewake tests.

Tests marked @pytest.mark.requires_portaudio are skipped when the PortAudio
library cannot be loaded (common in CI containers).
"""

import pytest

from tests.test_helpers import FakeAudioSession, FakeCapture, FakePermissions, FakeRecognizer
from voicewake.orchestrator.controller import VoiceWakeController

PORTAUDIO_AVAILABLE = False
try:
    import pyaudio  # noqa: F401
    PORTAUDIO_AVAILABLE = True
except (ImportError, OSError):
    pass


def pytest_collection_modifyitems(config, items):
    if not PORTAUDIO_AVAILABLE:
        skip_portaudio = pytest.mark.skip(reason="PortAudio library not available")
        for item in items:
            if "requires_portaudio" in item.keywords:
                item.add_marker(skip_portaudio)


@pytest.fixture
def capture():
    return FakeCapture()


@pytest.fixture
def recognizer():
    return FakeRecognizer()


@pytest.fixture
def permissions():
    return FakePermissions()


@pytest.fixture
def audio_session():
    return FakeAudioSession()


@pytest.fixture
def make_controller(capture, recognizer, permissions, audio_session):
    def factory(**kwargs):
        kwargs.setdefault("triggers", ["hey assistant"])
        kwargs.setdefault("restart_delay", 0.01)
        return VoiceWakeController(
            capture=kwargs.pop("capture", capture),
            recognizer=kwargs.pop("recognizer", recognizer),
            permissions=kwargs.pop("permissions", permissions),
            audio_session=kwargs.pop("audio_session", audio_session),
            **kwargs,
        )

    return factory
