from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Set

from voicewake.orchestrator.errors import (
    AudioFormatInvalid,
    PermissionDenied,
    RecognitionEngineUnavailable,
    RecognitionStreamError,
    VoiceWakeError,
)
from voicewake.orchestrator.fsm import FSM, State
from voicewake.stt.openai_stt import AudioBufferRequest, RecognitionResult
from voicewake.wake.gate import DEFAULT_MIN_POST_TRIGGER_GAP, match_command, parse_triggers, sanitize_trigger_words
from voicewake.wake.preferences import TriggerWordStore

logger = logging.getLogger(__name__)

CommandHandler = Callable[[str], Awaitable[None]]

DEFAULT_RESTART_DELAY = 0.7


class VoiceWakeController:
    """Keeps an "always listening" session alive over single-utterance recognition.

    All methods must be called on the event loop that owns the session.
    Recognition callbacks may arrive from any thread; they are marshaled onto
    that loop before touching state.

    Collaborators:
      capture: input_format(), install_tap(cb), remove_tap(), start(), stop()
      recognizer: is_available, supports_format(fmt),
                  recognition_task(request, handler) -> task with done and cancel()
      permissions: async request_microphone() / request_speech() -> bool
      audio_session: configure(), deactivate()
    """

    def __init__(
        self,
        capture,
        recognizer,
        permissions,
        audio_session,
        trigger_store: Optional[TriggerWordStore] = None,
        triggers: Optional[List[str]] = None,
        min_post_trigger_gap: float = DEFAULT_MIN_POST_TRIGGER_GAP,
        restart_delay: float = DEFAULT_RESTART_DELAY,
    ) -> None:
        self._capture = capture
        self._recognizer = recognizer
        self._permissions = permissions
        self._audio_session = audio_session
        self._min_gap = min_post_trigger_gap
        self._restart_delay = restart_delay

        self._fsm = FSM()
        self._enabled = False
        self._starting = False
        self._on_command: Optional[CommandHandler] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        self._request: Optional[AudioBufferRequest] = None
        self._task = None
        self._generation = 0
        self._last_dispatched: Optional[str] = None
        self.last_triggered_command: Optional[str] = None

        self._start_tasks: Set[asyncio.Task] = set()
        self._restart_task: Optional[asyncio.Task] = None
        self._handler_tasks: Set[asyncio.Task] = set()

        self._unsubscribe: Optional[Callable[[], None]] = None
        if trigger_store is not None:
            self._set_trigger_words(trigger_store.words)
            self._unsubscribe = trigger_store.subscribe(self._set_trigger_words)
        else:
            self._set_trigger_words(triggers or [])

    # -- observable state ------------------------------------------------

    @property
    def state(self) -> State:
        return self._fsm.state

    @property
    def status_text(self) -> str:
        return self._fsm.status_text

    @property
    def is_enabled(self) -> bool:
        return self._enabled

    @property
    def is_listening(self) -> bool:
        return self._fsm.state is State.LISTENING

    @property
    def active_trigger_words(self) -> List[str]:
        return list(self._trigger_words)

    @property
    def pending_commands(self) -> int:
        return len(self._handler_tasks)

    def _set_trigger_words(self, words: List[str]) -> None:
        self._trigger_words = sanitize_trigger_words(words)
        self._triggers = parse_triggers(self._trigger_words)

    # -- public API --------------------------------------------------------

    def configure(self, on_command: CommandHandler) -> None:
        self._on_command = on_command

    def set_enabled(self, enabled: bool) -> None:
        if not enabled:
            self.stop()
            return
        self._enabled = True
        if self._fsm.state is State.DISABLED:
            self._fsm.to_starting()
            self._spawn_start()

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        if not self._enabled:
            self._fsm.set_status("Not enabled")
            return
        if self._fsm.state is State.LISTENING or self._starting:
            return

        self._starting = True
        try:
            await self._start_sequence()
        finally:
            self._starting = False

    async def _start_sequence(self) -> None:
        try:
            self._fsm.to_starting("Requesting mic...")
            if not await self._permissions.request_microphone():
                raise PermissionDenied("mic")
            if not self._enabled:
                return

            self._fsm.set_status("Requesting speech...")
            if not await self._permissions.request_speech():
                raise PermissionDenied("speech")
            if not self._enabled:
                return

            self._fsm.set_status("Configuring audio...")
            self._audio_session.configure()
            if self._handler_tasks:
                # The stream starts once the last pending command handler finishes
                self._fsm.to_restarting("Waiting for command...")
                return
            self._fsm.set_status("Starting recognition...")
            self._start_recognition()
        except VoiceWakeError as e:
            logger.error("Voice wake start failed: %s", e)
            self._fail(e.status)
            return
        except OSError as e:
            logger.error("Voice wake start failed: %s", e)
            self._fail(f"Start failed: {e}")
            return
        self._fsm.to_listening()
        logger.info("Listening for %s", ", ".join(self._trigger_words) or "(no trigger words)")

    def stop(self) -> None:
        self._enabled = False
        for task in list(self._start_tasks):
            task.cancel()
        self._start_tasks.clear()
        self._cancel_restart()
        self._stop_recognition()
        self._audio_session.deactivate()
        self._fsm.to_disabled("Off")

    def suspend_for_external_audio_capture(self) -> bool:
        """Release the microphone so another subsystem can record.

        Returns True when listening was active and has been suspended.
        """
        if not self._enabled or self._fsm.state is not State.LISTENING:
            return False
        self._stop_recognition()
        self._audio_session.deactivate()
        self._fsm.to_paused()
        logger.info("Listening paused for external audio capture")
        return True

    def resume_after_external_audio_capture(self, was_suspended: bool) -> None:
        if not was_suspended:
            return
        self._spawn_start()

    def post_recognition_event(
        self, result: Optional[RecognitionResult], error: Optional[Exception] = None
    ) -> None:
        """Feed an event for the current stream; safe to call from any thread."""
        self._make_result_handler(self._generation)(result, error)

    def close(self) -> None:
        self.stop()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    # -- recognition stream ------------------------------------------------

    def _spawn_start(self) -> None:
        task = asyncio.get_running_loop().create_task(self.start())
        self._start_tasks.add(task)
        task.add_done_callback(self._start_tasks.discard)

    def _start_recognition(self) -> None:
        self._stop_recognition()
        self._last_dispatched = None

        if not self._recognizer.is_available:
            logger.error("Speech recognizer unavailable")
            raise RecognitionEngineUnavailable("Speech recognizer unavailable")

        fmt = self._capture.input_format()
        logger.info("Audio format: rate=%s, ch=%s", fmt.sample_rate, fmt.channels)
        if not fmt.is_valid:
            logger.error("Invalid audio format")
            raise AudioFormatInvalid("Audio input not available")
        if not self._recognizer.supports_format(fmt):
            logger.error("Unsupported audio format for recognition")
            raise AudioFormatInvalid(f"Unsupported audio format ({fmt.sample_rate} Hz, {fmt.channels} ch)")

        request = AudioBufferRequest()
        self._request = request
        self._capture.install_tap(request.append)
        self._capture.start()

        self._generation += 1
        self._task = self._recognizer.recognition_task(request, self._make_result_handler(self._generation))
        logger.debug("Recognition task %d created", self._generation)

    def _stop_recognition(self) -> None:
        # Callbacks of the stream being torn down are dropped from here on
        self._generation += 1
        task, self._task = self._task, None
        if task is not None and not task.done:
            task.cancel()
        request, self._request = self._request, None
        if request is not None:
            request.end_audio()
        self._capture.remove_tap()
        self._capture.stop()

    def _make_result_handler(self, generation: int):
        loop = self._loop or asyncio.get_running_loop()

        def handler(result: Optional[RecognitionResult], error: Optional[Exception]) -> None:
            if error is not None:
                logger.error("Recog err: %s", error)
            elif result is not None:
                logger.debug("Recog result: final=%s, text=%s", result.is_final, result.transcript[:50])
            loop.call_soon_threadsafe(self._handle_recognition_callback, generation, result, error)

        return handler

    def _handle_recognition_callback(
        self, generation: int, result: Optional[RecognitionResult], error: Optional[Exception]
    ) -> None:
        if generation != self._generation or self._fsm.state is not State.LISTENING:
            return

        if error is not None:
            if not isinstance(error, RecognitionStreamError):
                error = RecognitionStreamError(str(error))
            self._stop_recognition()
            self._fsm.to_restarting(error.status)
            self._restart_task = asyncio.get_running_loop().create_task(self._restart_after_delay())
            return

        if result is None:
            return

        match = match_command(result.transcript, result.segments, self._triggers, self._min_gap)
        if match is not None and match.command != self._last_dispatched:
            self._dispatch(match.command)
        elif result.is_final:
            self._utterance_finished()

    def _dispatch(self, command: str) -> None:
        self._last_dispatched = command
        self.last_triggered_command = command
        self._fsm.set_status("Triggered")
        logger.info("Wake command: %s", command)

        task = asyncio.get_running_loop().create_task(self._run_handler(command))
        self._handler_tasks.add(task)
        task.add_done_callback(self._handler_tasks.discard)

    async def _run_handler(self, command: str) -> None:
        try:
            if self._enabled and self._on_command is not None:
                await self._on_command(command)
        except Exception:
            logger.exception("Command handler failed for %r", command)
        finally:
            self._handler_tasks.discard(asyncio.current_task())
        self._start_if_enabled()

    def _utterance_finished(self) -> None:
        # The engine handles one utterance per stream
        if self._handler_tasks:
            return
        self._restart_recognition()

    def _start_if_enabled(self) -> None:
        if not self._enabled or self._handler_tasks:
            return
        if self._fsm.state is State.LISTENING:
            self._restart_recognition()
        elif self._fsm.state is State.RESTARTING and self._restart_task is None:
            self._restart_recognition()

    def _restart_recognition(self) -> None:
        try:
            self._start_recognition()
        except VoiceWakeError as e:
            logger.error("Recognition restart failed: %s", e)
            self._fail(e.status)
            return
        except OSError as e:
            logger.error("Recognition restart failed: %s", e)
            self._fail(f"Start failed: {e}")
            return
        self._fsm.to_listening()

    async def _restart_after_delay(self) -> None:
        try:
            await asyncio.sleep(self._restart_delay)
        finally:
            if self._restart_task is asyncio.current_task():
                self._restart_task = None
        if not self._enabled:
            self._fsm.to_disabled("Off")
            return
        if self._fsm.state is not State.RESTARTING or self._handler_tasks:
            return
        logger.info("Restarting recognition after error")
        self._restart_recognition()

    def _cancel_restart(self) -> None:
        task, self._restart_task = self._restart_task, None
        if task is not None:
            task.cancel()

    def _fail(self, status: str) -> None:
        self._enabled = False
        self._cancel_restart()
        self._stop_recognition()
        self._audio_session.deactivate()
        self._fsm.to_disabled(status)
