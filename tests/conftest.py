from __future__ import annotations

import asyncio
from typing import Callable

import pytest

from kindred.errors import ReplyError, SynthesisError, TranscriptionError
from kindred.history.store import ChatHistoryStore
from kindred.models import UserProfile
from kindred.orchestration.chat_session import ChatSession
from kindred.orchestration.turn_controller import TurnController
from kindred.stt.base import TranscriptionProvider
from kindred.tts.speaker import PlaybackSpeaker


class FakeTranscription(TranscriptionProvider):
    """Behaves like browser recognition: stop() ends the session right away."""

    def __init__(self, fail_start: bool = False):
        super().__init__()
        self.fail_start = fail_start
        self.start_calls = 0
        self.stop_calls = 0

    async def start(self):
        if self.fail_start:
            raise TranscriptionError("Permission denied")
        self.start_calls += 1
        self.is_active = True

    async def stop(self):
        if not self.is_active:
            return
        self.stop_calls += 1
        self.is_active = False
        await self._emit_end()

    async def interim(self, text: str, index: int = 0):
        await self._emit_result(text, index, is_final=False)

    async def final(self, text: str, index: int = 0):
        await self._emit_result(text, index, is_final=True)

    async def end(self):
        self.is_active = False
        await self._emit_end()

    async def error(self, message: str):
        self.is_active = False
        await self._emit_error(message)


class FakeSpeaker(PlaybackSpeaker):
    def __init__(self, transcription: FakeTranscription, auto_complete: bool = True, fail: bool = False):
        super().__init__(send=self._send, playback_timeout_s=2.0)
        self.transcription = transcription
        self.auto_complete = auto_complete
        self.fail = fail
        self.spoken: list[tuple[str, str, str, str]] = []
        self.mic_open_while_speaking = False

    async def _send(self, message: dict):
        return None

    async def speak(self, text, voice, language, tone="neutral"):
        if self.is_cancelled:
            return
        if self.transcription.is_active:
            self.mic_open_while_speaking = True
        self.spoken.append((text, voice, language, tone))
        if self.fail:
            raise SynthesisError("audio device unavailable")
        if self.auto_complete:
            await asyncio.sleep(0)
            return
        await self._wait_for_playback()


class FakeReplySource:
    def __init__(self, reply: str = "That sounds lovely.", error: Exception | None = None):
        self.reply = reply
        self.error = error
        self.calls: list[tuple] = []
        self.images: list = []

    async def generate_chat_response(self, user_name, message, history, language, image=None):
        self.calls.append((user_name, message, list(history), language))
        self.images.append(image)
        if self.error:
            raise self.error
        return self.reply


class Harness:
    def __init__(self, controller, transcription, speaker, replies, chat, store):
        self.controller = controller
        self.transcription = transcription
        self.speaker = speaker
        self.replies = replies
        self.chat = chat
        self.store = store
        self.states: list = []
        self.activations = 0
        self.notices: list[tuple[str, str]] = []
        self.transcripts: list[str] = []
        self.invariant_violations = 0


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def store(tmp_path) -> ChatHistoryStore:
    return ChatHistoryStore(tmp_path / "history")


@pytest.fixture
def make_harness(store):
    def factory(
        reply: str = "That sounds lovely.",
        reply_error: Exception | None = None,
        fail_start: bool = False,
        auto_complete: bool = True,
        fail_speech: bool = False,
        silence_timeout_ms: int = 5000,
        onboarded: bool = True,
    ) -> Harness:
        transcription = FakeTranscription(fail_start=fail_start)
        speaker = FakeSpeaker(transcription, auto_complete=auto_complete, fail=fail_speech)
        replies = FakeReplySource(reply, reply_error)
        chat = ChatSession(
            user=UserProfile(name="Asha", language_code="en-US", has_been_onboarded=onboarded),
            store=store,
            reply_source=replies,
            wake_phrase="hey kindred",
        )
        harness = Harness(None, transcription, speaker, replies, chat, store)

        async def on_state_change(from_state, to_state):
            harness.states.append((from_state, to_state))
            ts = harness.controller.turn_state
            if ts.listening and ts.speaking:
                harness.invariant_violations += 1

        async def on_activation():
            harness.activations += 1

        async def on_notice(code, text):
            harness.notices.append((code, text))

        async def on_transcript(text):
            harness.transcripts.append(text)

        harness.controller = TurnController(
            chat=chat,
            transcription=transcription,
            synthesis=speaker,
            on_state_change=on_state_change,
            on_transcript=on_transcript,
            on_activation=on_activation,
            on_notice=on_notice,
            wake_phrase="hey kindred",
            silence_timeout_ms=silence_timeout_ms,
        )
        return harness

    return factory


@pytest.fixture
def reply_error() -> ReplyError:
    return ReplyError("service unavailable")
