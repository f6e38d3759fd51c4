from __future__ import annotations

import asyncio
import io
import logging
import time
import wave
from collections import deque
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Deque, List, Optional

import httpx
from openai import AsyncOpenAI, OpenAIError

from voicewake.audio.format import AudioFormat
from voicewake.audio.vad import VAD_SAMPLE_RATES, Endpointer
from voicewake.orchestrator.errors import RecognitionStreamError
from voicewake.wake.gate import WordSegment, segments_from_words

logger = logging.getLogger(__name__)

_END = None


@dataclass
class RecognitionResult:
    transcript: str
    segments: List[WordSegment] = field(default_factory=list)
    is_final: bool = False


ResultHandler = Callable[[Optional[RecognitionResult], Optional[Exception]], None]


class AudioBufferRequest:
    """Audio frames for one recognition task.

    append() and end_audio() may be called from any thread; frames() must be
    consumed on the loop the request was created on.
    """

    def __init__(self, maxsize: int = 500) -> None:
        self._loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue[Optional[bytes]] = asyncio.Queue(maxsize=maxsize)
        self._ended = False

    def _put(self, item: Optional[bytes]) -> None:
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            if item is _END:
                self._queue.get_nowait()
                self._queue.put_nowait(item)

    def append(self, frame: bytes) -> None:
        if self._ended:
            return
        try:
            self._loop.call_soon_threadsafe(self._put, frame)
        except RuntimeError:
            # Loop already closed during shutdown
            pass

    def end_audio(self) -> None:
        if self._ended:
            return
        self._ended = True
        try:
            self._loop.call_soon_threadsafe(self._put, _END)
        except RuntimeError:
            pass

    async def frames(self) -> AsyncIterator[bytes]:
        while True:
            frame = await self._queue.get()
            if frame is _END:
                return
            yield frame


class RecognitionTask:
    def __init__(self, task: asyncio.Task) -> None:
        self._task = task

    @property
    def done(self) -> bool:
        return self._task.done()

    def cancel(self) -> None:
        self._task.cancel()


class OpenAIStreamingRecognizer:
    """Single-utterance recognizer on the OpenAI transcription API.

    Audio from the first speech frame onward is buffered and re-transcribed
    with word timestamps every partial_interval_ms; each pass reports the
    whole hypothesis. The task ends after one final result.
    """

    def __init__(
        self,
        api_key: str,
        model: str,
        language: Optional[str],
        sample_rate: int,
        channels: int,
        frame_ms: int = 20,
        finalize_silence_ms: int = 800,
        vad_aggressiveness: int = 2,
        partial_interval_ms: int = 1200,
        max_utterance_ms: int = 15000,
        pre_roll_ms: int = 300,
    ) -> None:
        self._api_key = api_key
        self._client: Optional[AsyncOpenAI] = None
        self._model = model
        self._language = language
        self._sample_rate = sample_rate
        self._channels = channels
        self._frame_ms = frame_ms
        self._finalize_silence_ms = finalize_silence_ms
        self._vad_aggressiveness = vad_aggressiveness
        self._partial_interval = partial_interval_ms / 1000.0
        self._max_utterance_ms = max_utterance_ms
        self._pre_roll_frames = max(1, pre_roll_ms // frame_ms)

    @property
    def is_available(self) -> bool:
        return bool(self._api_key)

    def supports_format(self, fmt: AudioFormat) -> bool:
        """True when captured frames can go straight to the VAD and the WAV encoder."""
        return (
            fmt.channels == 1
            and fmt.sample_rate in VAD_SAMPLE_RATES
            and fmt == AudioFormat(sample_rate=self._sample_rate, channels=self._channels)
        )

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self._api_key,
                timeout=httpx.Timeout(60.0, connect=10.0),
                max_retries=2,
            )
        return self._client

    def recognition_task(self, request: AudioBufferRequest, handler: ResultHandler) -> RecognitionTask:
        task = asyncio.get_running_loop().create_task(self._run(request, handler))
        return RecognitionTask(task)

    def _to_wav(self, pcm16: bytes) -> io.BytesIO:
        wav_buffer = io.BytesIO()
        with wave.open(wav_buffer, "wb") as wf:
            wf.setnchannels(self._channels)
            wf.setsampwidth(2)  # 16-bit PCM
            wf.setframerate(self._sample_rate)
            wf.writeframes(pcm16)
        wav_buffer.seek(0)
        # The API needs a file-like object with a name attribute
        wav_buffer.name = "audio.wav"
        return wav_buffer

    async def transcribe(self, pcm16: bytes, is_final: bool) -> RecognitionResult:
        try:
            resp = await self._get_client().audio.transcriptions.create(
                model=self._model,
                file=self._to_wav(pcm16),
                language=self._language,
                response_format="verbose_json",
                timestamp_granularities=["word"],
            )
        except OpenAIError as e:
            raise RecognitionStreamError(str(e)) from e
        text = (getattr(resp, "text", None) or "").strip()
        segments = segments_from_words(getattr(resp, "words", None) or [])
        return RecognitionResult(transcript=text, segments=segments, is_final=is_final)

    async def _run(self, request: AudioBufferRequest, handler: ResultHandler) -> None:
        endpointer = Endpointer(
            frame_ms=self._frame_ms,
            sample_rate=self._sample_rate,
            finalize_silence_ms=self._finalize_silence_ms,
            aggressiveness=self._vad_aggressiveness,
        )
        pre_roll: Deque[bytes] = deque(maxlen=self._pre_roll_frames)
        utterance = bytearray()
        partial: Optional[asyncio.Task] = None
        last_partial = time.monotonic()

        async def emit_partial(snapshot: bytes) -> None:
            try:
                handler(await self.transcribe(snapshot, is_final=False), None)
            except Exception as e:
                logger.warning("Partial transcription failed: %s", e)

        try:
            async for frame in request.frames():
                is_speech, is_final = endpointer.process(frame)
                if not utterance:
                    if not endpointer.in_speech:
                        pre_roll.append(frame)
                        continue
                    utterance.extend(b"".join(pre_roll))
                    last_partial = time.monotonic()
                utterance.extend(frame)

                if is_final or endpointer.utterance_ms >= self._max_utterance_ms:
                    break

                now = time.monotonic()
                if now - last_partial >= self._partial_interval and (partial is None or partial.done()):
                    last_partial = now
                    partial = asyncio.create_task(emit_partial(bytes(utterance)))

            if partial is not None:
                partial.cancel()
            if not utterance:
                handler(RecognitionResult(transcript="", is_final=True), None)
                return
            try:
                result = await self.transcribe(bytes(utterance), is_final=True)
            except RecognitionStreamError as e:
                handler(None, e)
                return
            handler(result, None)
        except asyncio.CancelledError:
            if partial is not None:
                partial.cancel()
            raise
        except Exception as e:
            if partial is not None:
                partial.cancel()
            logger.exception("Recognition task failed")
            handler(None, RecognitionStreamError(str(e) or type(e).__name__))
