from __future__ import annotations

from typing import Tuple

import webrtcvad

# Rates webrtcvad accepts; frames must be mono PCM16
VAD_SAMPLE_RATES = (8000, 16000, 32000, 48000)


class Endpointer:
    """Finalizes an utterance after a trailing-silence threshold.

    Tracks how long the current utterance has been running so callers can
    cap single-utterance recognition.
    """

    def __init__(
        self,
        frame_ms: int,
        sample_rate: int,
        finalize_silence_ms: int = 800,
        aggressiveness: int = 2,
    ) -> None:
        self._vad = webrtcvad.Vad(aggressiveness)
        self._sample_rate = sample_rate
        self._frame_ms = frame_ms
        self._finalize_silence_ms = finalize_silence_ms
        self._trailing_silence_ms = 0
        self._in_speech = False
        self._speech_frames = 0
        self._min_speech_frames = 2
        self.utterance_ms = 0

    @property
    def in_speech(self) -> bool:
        return self._in_speech

    def reset(self) -> None:
        self._in_speech = False
        self._speech_frames = 0
        self._trailing_silence_ms = 0
        self.utterance_ms = 0

    def process(self, frame: bytes) -> Tuple[bool, bool]:
        """Return (is_speech, is_final)."""
        speech = self._vad.is_speech(frame, self._sample_rate)
        if self._in_speech:
            self.utterance_ms += self._frame_ms
        if speech:
            self._speech_frames += 1
            if self._speech_frames >= self._min_speech_frames:
                if not self._in_speech:
                    self.utterance_ms = self._speech_frames * self._frame_ms
                self._in_speech = True
                self._trailing_silence_ms = 0
        else:
            self._speech_frames = 0
            if self._in_speech:
                self._trailing_silence_ms += self._frame_ms
                if self._trailing_silence_ms >= self._finalize_silence_ms:
                    self.reset()
                    return True, True

        is_speech_frame = self._in_speech or self._speech_frames > 0
        return is_speech_frame, False
