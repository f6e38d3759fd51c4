from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

import pyaudio

from voicewake.audio.format import AudioFormat

logger = logging.getLogger(__name__)

TapCallback = Callable[[bytes], None]


class AudioCapture:
    """Microphone capture delivering raw PCM16 frames to a single tap.

    Frames of frame_ms are delivered from the PortAudio callback thread.
    Call attach() with a PyAudio host before start().
    """

    def __init__(self, sample_rate: int, channels: int, device: Optional[str], frame_ms: int = 20) -> None:
        self.sample_rate = sample_rate
        self.channels = channels
        self.device_name = device
        self.frame_ms = frame_ms

        self._pa: Optional[pyaudio.PyAudio] = None
        self._device_index: Optional[int] = None
        self._stream = None
        self._tap: Optional[TapCallback] = None
        self._lock = threading.Lock()
        self._buffer_count = 0

    def attach(self, pa: Optional[pyaudio.PyAudio]) -> None:
        self._pa = pa
        self._device_index = self._find_device_index(self.device_name) if pa else None

    def _find_device_index(self, device_name: Optional[str]) -> Optional[int]:
        if not device_name or device_name == "default":
            return None
        for i in range(self._pa.get_device_count()):
            info = self._pa.get_device_info_by_index(i)
            if info.get("name") == device_name and info.get("maxInputChannels") > 0:
                return i
        # Fallback to default if not found
        return None

    def _device_info(self) -> Optional[dict]:
        if self._pa is None:
            return None
        try:
            if self._device_index is None:
                return self._pa.get_default_input_device_info()
            return self._pa.get_device_info_by_index(self._device_index)
        except (IOError, OSError):
            return None

    def input_format(self) -> AudioFormat:
        info = self._device_info()
        if info is None:
            return AudioFormat(sample_rate=0, channels=0)
        max_channels = int(info.get("maxInputChannels") or 0)
        channels = min(self.channels, max_channels) if self.channels else max_channels
        rate = self.sample_rate or int(info.get("defaultSampleRate") or 0)
        return AudioFormat(sample_rate=rate, channels=channels)

    def install_tap(self, callback: TapCallback) -> None:
        with self._lock:
            self._tap = callback
            self._buffer_count = 0

    def remove_tap(self) -> None:
        with self._lock:
            self._tap = None

    def _stream_callback(self, in_data, frame_count, time_info, status):
        with self._lock:
            tap = self._tap
            self._buffer_count += 1
            count = self._buffer_count
        if count % 50 == 1:
            logger.debug("buf #%d: fr=%d, rate=%d, ch=%d", count, frame_count, self.sample_rate, self.channels)
        if in_data and tap is not None:
            tap(in_data)
        return (None, pyaudio.paContinue)

    def start(self) -> None:
        if self._stream is not None:
            return
        if self._pa is None:
            raise RuntimeError("audio capture has no PyAudio host attached")
        fmt = self.input_format()
        blocksize = int(fmt.sample_rate * self.frame_ms / 1000)
        self._stream = self._pa.open(
            format=pyaudio.paInt16,
            channels=fmt.channels,
            rate=fmt.sample_rate,
            input=True,
            frames_per_buffer=blocksize,
            input_device_index=self._device_index,
            stream_callback=self._stream_callback,
        )
        self._stream.start_stream()
        logger.info("Audio capture started (rate=%d, ch=%d)", fmt.sample_rate, fmt.channels)

    def stop(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop_stream()
            stream.close()
        except (IOError, OSError) as e:
            logger.warning("Error closing audio stream: %s", e)
