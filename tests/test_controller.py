"""
Tests for the listening session controller.

Scenarios run on a fresh event loop via asyncio.run; recognition events are
fed through the fake recognizer's handler exactly as the real engine would.
"""

import asyncio
import threading

from tests.test_helpers import FakePermissions, FakeRecognizer, settle, timed, wake_segments
from voicewake.audio.format import AudioFormat
from voicewake.orchestrator.errors import RecognitionStreamError, UnsupportedEnvironment
from voicewake.orchestrator.fsm import State
from voicewake.wake.preferences import TriggerWordStore


async def _enable(controller):
    controller.set_enabled(True)
    await settle()


def _command_event(task, words, gap=0.6, is_final=False):
    task.emit("hey assistant " + " ".join(words), wake_segments(words, gap=gap), is_final=is_final)


class TestStart:
    def test_enable_reaches_listening(self, make_controller, recognizer, capture, audio_session):
        async def scenario():
            controller = make_controller()
            assert controller.state is State.DISABLED
            assert controller.status_text == "Off"
            controller.set_enabled(True)
            assert controller.state is State.STARTING
            await settle()
            return controller

        controller = asyncio.run(scenario())
        assert controller.state is State.LISTENING
        assert controller.status_text == "Listening"
        assert controller.is_listening
        assert len(recognizer.tasks) == 1
        assert capture.running and capture.tap is not None
        assert audio_session.configure_calls == 1

    def test_mic_denied_ends_disabled_without_stream(self, make_controller, recognizer, audio_session):
        async def scenario():
            controller = make_controller(permissions=FakePermissions(mic=False))
            await _enable(controller)
            await asyncio.sleep(0.05)
            return controller

        controller = asyncio.run(scenario())
        assert controller.state is State.DISABLED
        assert controller.status_text == "Mic denied"
        assert not controller.is_enabled
        assert recognizer.tasks == []
        assert audio_session.configure_calls == 0

    def test_speech_denied_has_distinct_status(self, make_controller, recognizer):
        async def scenario():
            permissions = FakePermissions(speech=False)
            controller = make_controller(permissions=permissions)
            await _enable(controller)
            return controller, permissions

        controller, permissions = asyncio.run(scenario())
        assert controller.state is State.DISABLED
        assert controller.status_text == "Speech denied"
        assert permissions.mic_requests == 1
        assert recognizer.tasks == []

    def test_unsupported_environment(self, make_controller, recognizer):
        async def scenario():
            permissions = FakePermissions(mic_error=UnsupportedEnvironment("no real microphone available"))
            controller = make_controller(permissions=permissions)
            await _enable(controller)
            return controller

        controller = asyncio.run(scenario())
        assert controller.state is State.DISABLED
        assert controller.status_text == "Not supported: no real microphone available"
        assert recognizer.tasks == []

    def test_invalid_audio_format_fails_start(self, make_controller, recognizer, capture):
        capture.format = AudioFormat(sample_rate=0, channels=1)

        async def scenario():
            controller = make_controller()
            await _enable(controller)
            return controller

        controller = asyncio.run(scenario())
        assert controller.state is State.DISABLED
        assert controller.status_text == "Start failed: Audio input not available"
        assert recognizer.tasks == []
        assert not capture.running

    def test_format_the_recognizer_cannot_use_fails_start(self, make_controller, recognizer, capture):
        capture.format = AudioFormat(sample_rate=16000, channels=2)

        async def scenario():
            controller = make_controller()
            await _enable(controller)
            return controller

        controller = asyncio.run(scenario())
        assert controller.state is State.DISABLED
        assert controller.status_text == "Start failed: Unsupported audio format (16000 Hz, 2 ch)"
        assert recognizer.tasks == []
        assert not capture.running

    def test_recognizer_unavailable_fails_start(self, make_controller):
        recognizer = FakeRecognizer(available=False)

        async def scenario():
            controller = make_controller(recognizer=recognizer)
            await _enable(controller)
            return controller

        controller = asyncio.run(scenario())
        assert controller.state is State.DISABLED
        assert controller.status_text == "Start failed: Speech recognizer unavailable"
        assert recognizer.tasks == []

    def test_start_when_not_enabled(self, make_controller, recognizer):
        async def scenario():
            controller = make_controller()
            await controller.start()
            return controller

        controller = asyncio.run(scenario())
        assert controller.state is State.DISABLED
        assert controller.status_text == "Not enabled"
        assert recognizer.tasks == []

    def test_empty_trigger_list_still_listens(self, make_controller, recognizer):
        async def scenario():
            controller = make_controller(triggers=["", "  "])
            await _enable(controller)
            _command_event(recognizer.current, ["open", "mail"])
            await settle()
            return controller

        controller = asyncio.run(scenario())
        assert controller.state is State.LISTENING
        assert controller.active_trigger_words == []
        assert controller.last_triggered_command is None


class TestStop:
    def test_disable_is_idempotent(self, make_controller, recognizer, capture, audio_session):
        async def scenario():
            controller = make_controller()
            await _enable(controller)
            controller.set_enabled(False)
            controller.set_enabled(False)
            return controller

        controller = asyncio.run(scenario())
        assert controller.state is State.DISABLED
        assert controller.status_text == "Off"
        assert recognizer.tasks[0].cancelled
        assert recognizer.tasks[0].request is not None
        assert not capture.running and capture.tap is None
        assert not audio_session.active

    def test_disable_while_requesting_permissions(self, make_controller, recognizer):
        class SlowPermissions(FakePermissions):
            async def request_microphone(self):
                await asyncio.sleep(0.05)
                return True

        async def scenario():
            controller = make_controller(permissions=SlowPermissions())
            controller.set_enabled(True)
            await settle()
            controller.set_enabled(False)
            await asyncio.sleep(0.1)
            return controller

        controller = asyncio.run(scenario())
        assert controller.state is State.DISABLED
        assert recognizer.tasks == []


class TestDispatch:
    def test_command_dispatched_once_then_stream_restarts(self, make_controller, recognizer):
        received = []

        async def scenario():
            controller = make_controller()
            release = asyncio.Event()

            async def on_command(cmd):
                received.append(cmd)
                await release.wait()

            controller.configure(on_command)
            await _enable(controller)
            first = recognizer.current

            _command_event(first, ["turn", "on", "the", "lights"])
            _command_event(first, ["turn", "on", "the", "lights"])
            await settle()
            assert controller.status_text == "Triggered"
            assert controller.pending_commands == 1
            # No new stream while the handler is still running
            assert len(recognizer.tasks) == 1

            release.set()
            await settle()
            return controller, first

        controller, first = asyncio.run(scenario())
        assert received == ["turn on the lights"]
        assert controller.last_triggered_command == "turn on the lights"
        assert first.cancelled
        assert len(recognizer.tasks) == 2
        assert controller.state is State.LISTENING
        assert controller.status_text == "Listening"

    def test_different_command_in_same_stream_dispatches_again(self, make_controller, recognizer):
        received = []

        async def scenario():
            controller = make_controller()
            release = asyncio.Event()

            async def on_command(cmd):
                received.append(cmd)
                await release.wait()

            controller.configure(on_command)
            await _enable(controller)
            task = recognizer.current
            _command_event(task, ["turn", "on"])
            await settle()
            _command_event(task, ["turn", "on"])
            _command_event(task, ["turn", "on", "the", "lights"])
            await settle()
            pending = controller.pending_commands
            release.set()
            await settle()
            return pending

        pending = asyncio.run(scenario())
        assert received == ["turn on", "turn on the lights"]
        assert pending == 2
        assert len(recognizer.tasks) == 2

    def test_dedup_is_scoped_to_stream(self, make_controller, recognizer):
        received = []

        async def scenario():
            controller = make_controller()

            async def on_command(cmd):
                received.append(cmd)

            controller.configure(on_command)
            await _enable(controller)
            _command_event(recognizer.current, ["stop"])
            await settle()
            _command_event(recognizer.current, ["stop"])
            await settle()
            return controller

        asyncio.run(scenario())
        assert received == ["stop", "stop"]
        assert len(recognizer.tasks) == 3

    def test_no_pause_after_trigger_does_not_dispatch(self, make_controller, recognizer):
        received = []

        async def scenario():
            controller = make_controller()

            async def on_command(cmd):
                received.append(cmd)

            controller.configure(on_command)
            await _enable(controller)
            _command_event(recognizer.current, ["yesterday"], gap=0.05)
            await settle()

        asyncio.run(scenario())
        assert received == []
        assert len(recognizer.tasks) == 1

    def test_final_result_without_command_starts_fresh_stream(self, make_controller, recognizer):
        async def scenario():
            controller = make_controller()
            await _enable(controller)
            words = "just chatting here".split()
            recognizer.current.emit(
                "just chatting here",
                timed(*[(w, i * 0.3, i * 0.3 + 0.25) for i, w in enumerate(words)]),
                is_final=True,
            )
            await settle()
            return controller

        controller = asyncio.run(scenario())
        assert len(recognizer.tasks) == 2
        assert recognizer.tasks[0].cancelled
        assert controller.state is State.LISTENING

    def test_handler_failure_keeps_session_alive(self, make_controller, recognizer):
        async def scenario():
            controller = make_controller()

            async def on_command(cmd):
                raise RuntimeError("handler blew up")

            controller.configure(on_command)
            await _enable(controller)
            _command_event(recognizer.current, ["open", "mail"])
            await settle()
            return controller

        controller = asyncio.run(scenario())
        assert controller.state is State.LISTENING
        assert len(recognizer.tasks) == 2

    def test_no_restart_when_disabled_during_handler(self, make_controller, recognizer):
        async def scenario():
            controller = make_controller()
            release = asyncio.Event()

            async def on_command(cmd):
                await release.wait()

            controller.configure(on_command)
            await _enable(controller)
            _command_event(recognizer.current, ["open", "mail"])
            await settle()
            controller.set_enabled(False)
            release.set()
            await settle()
            return controller

        controller = asyncio.run(scenario())
        assert controller.state is State.DISABLED
        assert len(recognizer.tasks) == 1

    def test_events_from_torn_down_stream_are_ignored(self, make_controller, recognizer):
        received = []

        async def scenario():
            controller = make_controller()

            async def on_command(cmd):
                received.append(cmd)

            controller.configure(on_command)
            await _enable(controller)
            stale = recognizer.current
            stale.emit("", [], is_final=True)
            await settle()
            _command_event(stale, ["open", "mail"])
            await settle()

        asyncio.run(scenario())
        assert received == []
        assert len(recognizer.tasks) == 2

    def test_events_from_engine_thread_are_marshaled(self, make_controller, recognizer):
        received = []

        async def scenario():
            controller = make_controller()

            async def on_command(cmd):
                received.append((cmd, threading.current_thread() is threading.main_thread()))

            controller.configure(on_command)
            await _enable(controller)
            worker = threading.Thread(target=_command_event, args=(recognizer.current, ["lights", "off"]))
            worker.start()
            worker.join()
            await settle()

        asyncio.run(scenario())
        assert received == [("lights off", True)]

    def test_trigger_word_changes_apply_to_next_event(self, make_controller, recognizer):
        received = []

        async def scenario():
            store = TriggerWordStore(defaults=["computer"])
            controller = make_controller(trigger_store=store, triggers=None)

            async def on_command(cmd):
                received.append(cmd)

            controller.configure(on_command)
            await _enable(controller)
            _command_event(recognizer.current, ["open", "mail"])
            await settle()
            store.save(["hey assistant", "Hey Assistant"])
            words = controller.active_trigger_words
            _command_event(recognizer.current, ["open", "mail"])
            await settle()
            controller.close()
            return words

        words = asyncio.run(scenario())
        assert words == ["hey assistant"]
        assert received == ["open mail"]


class TestErrorRecovery:
    def test_stream_error_restarts_once_after_delay(self, make_controller, recognizer):
        async def scenario():
            controller = make_controller(restart_delay=0.05)
            await _enable(controller)
            first = recognizer.current
            first.fail(RecognitionStreamError("boom"))
            await settle()
            seen = (controller.state, controller.status_text, len(recognizer.tasks), first.cancelled)
            await asyncio.sleep(0.15)
            return controller, seen

        controller, seen = asyncio.run(scenario())
        assert seen == (State.RESTARTING, "Recognizer error: boom", 1, True)
        assert len(recognizer.tasks) == 2
        assert controller.state is State.LISTENING

    def test_generic_errors_are_treated_as_stream_errors(self, make_controller, recognizer):
        async def scenario():
            controller = make_controller()
            await _enable(controller)
            recognizer.current.fail(OSError("audio glitch"))
            await settle()
            return controller.status_text

        assert asyncio.run(scenario()) == "Recognizer error: audio glitch"

    def test_disable_during_backoff_prevents_restart(self, make_controller, recognizer):
        async def scenario():
            controller = make_controller(restart_delay=0.05)
            await _enable(controller)
            recognizer.current.fail(RecognitionStreamError("boom"))
            await settle()
            controller.set_enabled(False)
            await asyncio.sleep(0.15)
            return controller

        controller = asyncio.run(scenario())
        assert controller.state is State.DISABLED
        assert controller.status_text == "Off"
        assert len(recognizer.tasks) == 1

    def test_restart_failure_degrades_to_disabled(self, make_controller, recognizer, capture):
        async def scenario():
            controller = make_controller()
            await _enable(controller)
            capture.format = AudioFormat(sample_rate=16000, channels=0)
            recognizer.current.fail(RecognitionStreamError("boom"))
            await asyncio.sleep(0.1)
            return controller

        controller = asyncio.run(scenario())
        assert controller.state is State.DISABLED
        assert controller.status_text == "Start failed: Audio input not available"
        assert len(recognizer.tasks) == 1


class TestExternalAudioCapture:
    def test_suspend_when_not_listening(self, make_controller, audio_session):
        async def scenario():
            controller = make_controller()
            return controller, controller.suspend_for_external_audio_capture()

        controller, suspended = asyncio.run(scenario())
        assert suspended is False
        assert controller.state is State.DISABLED
        assert controller.status_text == "Off"
        assert audio_session.deactivate_calls == 0

    def test_suspend_and_resume(self, make_controller, recognizer, capture, audio_session):
        async def scenario():
            controller = make_controller()
            await _enable(controller)
            suspended = controller.suspend_for_external_audio_capture()
            paused = (controller.state, controller.status_text, capture.running, audio_session.active)
            again = controller.suspend_for_external_audio_capture()
            controller.resume_after_external_audio_capture(suspended)
            await settle()
            return controller, suspended, again, paused

        controller, suspended, again, paused = asyncio.run(scenario())
        assert suspended is True
        assert again is False
        assert paused == (State.PAUSED, "Paused", False, False)
        assert recognizer.tasks[0].cancelled
        assert len(recognizer.tasks) == 2
        assert controller.state is State.LISTENING

    def test_resume_without_suspension_is_noop(self, make_controller, recognizer):
        async def scenario():
            controller = make_controller()
            await _enable(controller)
            controller.resume_after_external_audio_capture(False)
            await settle()
            return controller

        controller = asyncio.run(scenario())
        assert len(recognizer.tasks) == 1
        assert controller.state is State.LISTENING

    def test_resume_waits_for_pending_handler(self, make_controller, recognizer):
        received = []

        async def scenario():
            controller = make_controller()
            release = asyncio.Event()

            async def on_command(cmd):
                received.append(cmd)
                await release.wait()

            controller.configure(on_command)
            await _enable(controller)
            _command_event(recognizer.current, ["open", "mail"])
            await settle()
            suspended = controller.suspend_for_external_audio_capture()
            controller.resume_after_external_audio_capture(suspended)
            await settle()
            waiting = (controller.state, controller.status_text, len(recognizer.tasks))
            release.set()
            await settle()
            return controller, suspended, waiting

        controller, suspended, waiting = asyncio.run(scenario())
        assert suspended is True
        assert waiting == (State.RESTARTING, "Waiting for command...", 1)
        assert received == ["open mail"]
        assert len(recognizer.tasks) == 2
        assert controller.state is State.LISTENING
        assert controller.status_text == "Listening"
