from __future__ import annotations


class VoiceWakeError(Exception):
    """Base error; ``status`` is the text shown to the user."""

    status_prefix = "Start failed"

    @property
    def status(self) -> str:
        return f"{self.status_prefix}: {self}"


class PermissionDenied(VoiceWakeError):
    def __init__(self, kind: str) -> None:
        super().__init__(f"{kind} permission denied")
        self.kind = kind

    @property
    def status(self) -> str:
        return "Mic denied" if self.kind == "mic" else "Speech denied"


class UnsupportedEnvironment(VoiceWakeError):
    status_prefix = "Not supported"


class AudioFormatInvalid(VoiceWakeError):
    pass


class RecognitionEngineUnavailable(VoiceWakeError):
    pass


class RecognitionStreamError(VoiceWakeError):
    status_prefix = "Recognizer error"
