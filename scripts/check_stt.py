from __future__ import annotations

import asyncio
import os
import sys
import time
import wave
from pathlib import Path

from dotenv import load_dotenv

# Add project root to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from voicewake.audio.capture import AudioCapture
from voicewake.audio.vad import Endpointer
from voicewake.config.settings import AppSettings, load_settings
from voicewake.orchestrator.errors import RecognitionStreamError
from voicewake.stt.openai_stt import OpenAIStreamingRecognizer
from voicewake.system.desktop import PyAudioSession
from voicewake.utils.display import printable
from voicewake.wake.gate import match_command, parse_triggers


def _write_wav(path: Path, pcm16: bytes, sample_rate: int, channels: int) -> None:
    with wave.open(str(path), "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(2)  # int16
        wf.setframerate(sample_rate)
        wf.writeframes(pcm16)


async def _record_utterance(settings: AppSettings, max_seconds: float = 10.0) -> bytes:
    endpointer = Endpointer(
        frame_ms=settings.audio.vad_frame_ms,
        sample_rate=settings.audio.sample_rate,
        finalize_silence_ms=settings.timeouts.stt_finalize_ms,
        aggressiveness=settings.audio.vad_aggressiveness,
    )
    capture = AudioCapture(
        sample_rate=settings.audio.sample_rate,
        channels=settings.audio.channels,
        device=settings.audio.device_input,
        frame_ms=settings.audio.vad_frame_ms,
    )
    session = PyAudioSession(capture)
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[bytes] = asyncio.Queue()

    session.configure()
    capture.install_tap(lambda frame: loop.call_soon_threadsafe(queue.put_nowait, frame))
    capture.start()
    try:
        start_time = time.time()
        audio_buf = bytearray()
        while time.time() - start_time <= max_seconds:
            frame = await queue.get()
            is_speech, is_final = endpointer.process(frame)
            if is_speech:
                audio_buf.extend(frame)
            if is_final:
                break
        return bytes(audio_buf)
    finally:
        capture.remove_tap()
        session.deactivate()


async def main() -> int:
    load_dotenv()
    settings = load_settings()

    print(
        "Audio config:",
        f"sr={settings.audio.sample_rate}",
        f"ch={settings.audio.channels}",
        f"input={settings.audio.device_input}",
        f"vad_ms={settings.audio.vad_frame_ms}",
        f"vad_aggr={settings.audio.vad_aggressiveness}",
    )
    print("Models:", f"stt={settings.models.stt}")
    print("Triggers:", ", ".join(settings.wake.triggers) or "(none)")

    api_key = os.getenv("OPENAI_API_KEY", "")
    if not api_key:
        print("Missing OPENAI_API_KEY in environment")
        return 1

    print("Speak now… (Ctrl+C to abort)")
    try:
        audio = await _record_utterance(settings)
    except KeyboardInterrupt:
        print("Interrupted")
        return 130

    if not audio:
        print("No speech captured. Try increasing vad_aggressiveness or frame_ms.")
        return 2

    out_path = Path("/tmp/stt_check.wav")
    _write_wav(out_path, audio, settings.audio.sample_rate, settings.audio.channels)
    seconds = len(audio) / (settings.audio.sample_rate * settings.audio.channels * 2)
    print(f"Saved {len(audio) / 1024:.1f} KB ({seconds:.2f}s) to {out_path}")

    recognizer = OpenAIStreamingRecognizer(
        api_key=api_key,
        model=settings.models.stt,
        language=settings.language.stt_lang,
        sample_rate=settings.audio.sample_rate,
        channels=settings.audio.channels,
    )
    try:
        result = await recognizer.transcribe(audio, is_final=True)
    except RecognitionStreamError as e:
        print(f"Transcription error: {e}")
        return 3

    print("Transcript:")
    print(printable(result.transcript))
    print("Segments:")
    for seg in result.segments:
        print(f"  {seg.start:6.2f} - {seg.end:6.2f}  {printable(seg.text)}")

    match = match_command(
        result.transcript,
        result.segments,
        parse_triggers(settings.wake.triggers),
        settings.wake.min_post_trigger_gap_s,
    )
    if match is None:
        print("No wake command detected.")
    else:
        print(f"Wake phrase '{match.trigger.text}' -> command: {printable(match.command)}")
    return 0


if __name__ == "__main__":
    try:
        rc = asyncio.run(main())
    except KeyboardInterrupt:
        rc = 130
    sys.exit(rc)
