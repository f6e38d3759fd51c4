from __future__ import annotations

import asyncio
import os
import signal
import sys
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from voicewake.audio.capture import AudioCapture
from voicewake.config.settings import AppSettings, load_settings
from voicewake.orchestrator.controller import VoiceWakeController
from voicewake.stt.openai_stt import OpenAIStreamingRecognizer
from voicewake.system.desktop import DesktopPermissions, PyAudioSession
from voicewake.utils.display import printable
from voicewake.utils.logging import configure_logging
from voicewake.wake.preferences import TriggerWordStore


class VoiceWakeApp:
    def __init__(self, settings: AppSettings):
        self._settings = settings
        api_key = os.environ.get("OPENAI_API_KEY", "")
        self._capture = AudioCapture(
            sample_rate=settings.audio.sample_rate,
            channels=settings.audio.channels,
            device=settings.audio.device_input,
            frame_ms=settings.audio.vad_frame_ms,
        )
        self._recognizer = OpenAIStreamingRecognizer(
            api_key=api_key,
            model=settings.models.stt,
            language=settings.language.stt_lang,
            sample_rate=settings.audio.sample_rate,
            channels=settings.audio.channels,
            frame_ms=settings.audio.vad_frame_ms,
            finalize_silence_ms=settings.timeouts.stt_finalize_ms,
            vad_aggressiveness=settings.audio.vad_aggressiveness,
            partial_interval_ms=settings.timeouts.partial_interval_ms,
            max_utterance_ms=settings.timeouts.max_utterance_ms,
        )
        triggers_file = settings.wake.triggers_file
        self._store = TriggerWordStore(
            path=Path(triggers_file).expanduser() if triggers_file else None,
            defaults=settings.wake.triggers,
        )
        self._controller = VoiceWakeController(
            capture=self._capture,
            recognizer=self._recognizer,
            permissions=DesktopPermissions(api_key),
            audio_session=PyAudioSession(self._capture),
            trigger_store=self._store,
            min_post_trigger_gap=settings.wake.min_post_trigger_gap_s,
            restart_delay=settings.wake.restart_delay_ms / 1000.0,
        )
        self._controller.configure(self._on_command)
        self._last_status: Optional[str] = None

    def warm_up(self) -> None:
        print("Voice wake starting…")
        print(f"Trigger words: {', '.join(self._controller.active_trigger_words) or '(none)'}")
        print(f"Models: STT={self._settings.models.stt}, lang={self._settings.language.stt_lang}")
        print(
            "Audio: sample_rate="
            f"{self._settings.audio.sample_rate}, channels={self._settings.audio.channels}, "
            f"input={self._settings.audio.device_input}, "
            f"vad_frame_ms={self._settings.audio.vad_frame_ms}, vad_aggr={self._settings.audio.vad_aggressiveness}"
        )

    async def _on_command(self, command: str) -> None:
        print(f"\n🗣️  Command: {printable(command)}")

    def _report_status(self) -> None:
        status = self._controller.status_text
        if status != self._last_status:
            self._last_status = status
            print(f"[{self._controller.state.name}] {status}")

    async def run(self) -> None:
        watcher = asyncio.create_task(self._store.watch(self._settings.wake.watch_interval_s))
        self._controller.set_enabled(True)
        try:
            while True:
                self._report_status()
                await asyncio.sleep(0.1)
        finally:
            watcher.cancel()
            self._controller.close()
            self._report_status()


async def _run() -> None:
    settings = load_settings()
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))
    app = VoiceWakeApp(settings)
    app.warm_up()
    await app.run()


def main() -> None:
    load_dotenv()

    if not os.environ.get("OPENAI_API_KEY"):
        print("ERROR: OPENAI_API_KEY environment variable is not set!")
        print("Please create a .env file with your OpenAI API key:")
        print("  OPENAI_API_KEY=your_api_key_here")
        sys.exit(1)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    stop: Optional[asyncio.Future[None]] = loop.create_future()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda: (not stop.done()) and stop.set_result(None))

    async def runner() -> None:
        task = asyncio.create_task(_run())
        await asyncio.wait({task, stop}, return_when=asyncio.FIRST_COMPLETED)
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    try:
        loop.run_until_complete(runner())
    finally:
        loop.close()


if __name__ == "__main__":
    main()
