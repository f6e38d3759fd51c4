from __future__ import annotations

import asyncio
import logging
import os
from typing import Optional

import pyaudio

from voicewake.audio.capture import AudioCapture
from voicewake.orchestrator.errors import UnsupportedEnvironment

logger = logging.getLogger(__name__)

_HEADLESS_ENV = "VOICEWAKE_DISABLE_AUDIO"


def _count_input_devices() -> int:
    pa = pyaudio.PyAudio()
    try:
        return sum(
            1
            for i in range(pa.get_device_count())
            if int(pa.get_device_info_by_index(i).get("maxInputChannels") or 0) > 0
        )
    finally:
        pa.terminate()


class DesktopPermissions:
    """Microphone and speech checks for a desktop host.

    There is no OS prompt here: the microphone counts as granted when an
    input device exists, speech when the engine has an API key.
    """

    def __init__(self, api_key: Optional[str]) -> None:
        self._api_key = api_key

    async def request_microphone(self) -> bool:
        if os.getenv(_HEADLESS_ENV) == "1":
            raise UnsupportedEnvironment("no real microphone available")
        loop = asyncio.get_running_loop()
        try:
            count = await loop.run_in_executor(None, _count_input_devices)
        except OSError as e:
            logger.error("PortAudio unavailable: %s", e)
            raise UnsupportedEnvironment("audio backend unavailable") from e
        if count == 0:
            raise UnsupportedEnvironment("no input device found")
        logger.info("Found %d input device(s)", count)
        return True

    async def request_speech(self) -> bool:
        return bool(self._api_key)


class PyAudioSession:
    """Owns the PyAudio host used by the capture while the session is active."""

    def __init__(self, capture: AudioCapture) -> None:
        self._capture = capture
        self._pa: Optional[pyaudio.PyAudio] = None

    @property
    def active(self) -> bool:
        return self._pa is not None

    def configure(self) -> None:
        if self._pa is None:
            self._pa = pyaudio.PyAudio()
        self._capture.attach(self._pa)

    def deactivate(self) -> None:
        pa, self._pa = self._pa, None
        if pa is None:
            return
        self._capture.stop()
        self._capture.attach(None)
        pa.terminate()
