import asyncio

import pytest

from conftest import wait_until
from kindred.orchestration.chat_session import Greeting
from kindred.orchestration.turn_controller import FALLBACK_REPLY, IMAGE_FALLBACK_REPLY
from kindred.state_machine import ConversationState
from kindred.tts.speaker import ClientSpeaker


@pytest.mark.asyncio
async def test_mic_toggle_starts_passive_listening(make_harness):
    h = make_harness()

    await h.controller.toggle_microphone()

    assert h.controller.state == ConversationState.PASSIVE_LISTENING
    assert h.controller.wake_word_armed is True
    assert h.controller.voice_mode_active is False
    assert h.transcription.is_active is True
    assert h.transcription.start_calls == 1


@pytest.mark.asyncio
async def test_wake_phrase_command_is_dispatched_without_wake_phrase(make_harness):
    h = make_harness(reply="It looks sunny today.")
    await h.controller.toggle_microphone()

    await h.transcription.interim("hey kindred what's the weather", 0)
    assert h.controller.state == ConversationState.VOICE_MODE_ACTIVE
    assert h.controller.voice_mode_active is True
    assert h.activations == 1
    assert h.transcripts[-1] == "what's the weather"

    await h.transcription.final("hey kindred what's the weather", 0)
    await h.transcription.end()
    await h.controller.wait_for_turn()

    user_messages = [m for m in h.chat.messages if m.sender == "user"]
    assert [m.text for m in user_messages] == ["what's the weather"]
    assert h.replies.calls[0][1] == "what's the weather"
    assert h.speaker.spoken == [("It looks sunny today.", "female-us", "en-US", "cheerful")]

    # Hands-free: listening again without the wake phrase
    assert h.controller.state == ConversationState.VOICE_MODE_ACTIVE
    assert h.controller.wake_word_armed is False
    assert h.transcription.start_calls == 2
    assert h.speaker.mic_open_while_speaking is False


@pytest.mark.asyncio
async def test_wake_phrase_match_is_case_insensitive(make_harness):
    h = make_harness()
    await h.controller.toggle_microphone()

    await h.transcription.interim("Hey Kindred, are you there", 0)

    assert h.controller.state == ConversationState.VOICE_MODE_ACTIVE
    assert h.activations == 1


@pytest.mark.asyncio
async def test_wake_phrase_alone_does_not_dispatch(make_harness):
    h = make_harness()
    await h.controller.toggle_microphone()

    await h.transcription.interim("hey kindred", 0)
    await h.transcription.final("Hey Kindred", 0)
    await h.transcription.end()

    assert h.chat.messages == []
    assert h.replies.calls == []
    assert h.controller.state == ConversationState.VOICE_MODE_ACTIVE
    assert h.transcription.start_calls == 2


@pytest.mark.asyncio
async def test_passive_session_ending_without_speech_goes_idle(make_harness):
    h = make_harness()
    await h.controller.toggle_microphone()

    await h.transcription.end()

    assert h.controller.state == ConversationState.IDLE
    assert h.controller.wake_word_armed is False
    assert h.replies.calls == []


@pytest.mark.asyncio
async def test_single_shot_turn_returns_to_idle(make_harness):
    h = make_harness()
    await h.controller.toggle_microphone()

    await h.transcription.final("how are you", 0)
    await h.transcription.end()
    await h.controller.wait_for_turn()

    assert [m.sender for m in h.chat.messages] == ["user", "ai"]
    assert h.chat.messages[0].text == "how are you"
    assert h.controller.state == ConversationState.IDLE
    assert h.transcription.is_active is False
    assert h.transcription.start_calls == 1


@pytest.mark.asyncio
async def test_silence_ends_listening_and_dispatches(make_harness):
    h = make_harness(silence_timeout_ms=100)
    await h.controller.toggle_microphone()

    await h.transcription.interim("tell me", 0)
    await asyncio.sleep(0.06)
    await h.transcription.interim("tell me a joke", 0)
    await asyncio.sleep(0.06)

    # Restarted by the second update, so the session is still open
    assert h.controller.state == ConversationState.PASSIVE_LISTENING
    assert h.transcription.stop_calls == 0

    await h.transcription.final("tell me a joke", 0)
    await wait_until(lambda: h.transcription.stop_calls == 1)
    await wait_until(lambda: h.controller._turn_task is not None)
    await h.controller.wait_for_turn()

    assert h.chat.messages[0].text == "tell me a joke"
    assert h.controller.state == ConversationState.IDLE


@pytest.mark.asyncio
async def test_explicit_stop_discards_transcript(make_harness):
    h = make_harness()
    await h.controller.toggle_microphone()
    await h.transcription.final("don't send this", 0)

    await h.controller.toggle_microphone()

    assert h.controller.state == ConversationState.IDLE
    assert h.transcription.is_active is False
    assert h.chat.messages == []
    assert h.replies.calls == []


@pytest.mark.asyncio
async def test_typing_preempts_voice_mode(make_harness):
    h = make_harness()
    await h.controller.toggle_microphone()
    await h.transcription.interim("hey kindred remind me to", 0)
    assert h.controller.voice_mode_active is True

    await h.controller.handle_typing()

    ts = h.controller.turn_state
    assert ts.state == ConversationState.IDLE
    assert ts.voice_mode_active is False
    assert ts.passive_listening is False
    assert ts.listening is False
    assert ts.interim_transcript == ""
    assert h.transcription.is_active is False
    assert h.chat.messages == []


@pytest.mark.asyncio
async def test_provider_error_resets_to_idle(make_harness):
    h = make_harness()
    await h.controller.toggle_microphone()
    await h.transcription.interim("hey kindred what time", 0)
    await h.transcription.final("hey kindred what time is it", 1)

    await h.transcription.error("network")

    ts = h.controller.turn_state
    assert ts.state == ConversationState.IDLE
    assert ts.voice_mode_active is False
    assert ts.interim_transcript == ""
    assert ts.finalized_transcript == ""
    assert h.notices[-1][0] == "TRANSCRIPTION_ERROR"
    assert h.replies.calls == []


@pytest.mark.asyncio
async def test_provider_error_while_speaking_stops_playback(make_harness):
    h = make_harness(auto_complete=False)
    await h.controller.send_text("hello there")
    await wait_until(lambda: h.speaker.is_playing)

    await h.transcription.error("aborted")

    assert h.controller.state == ConversationState.IDLE
    assert h.speaker.is_playing is False


@pytest.mark.asyncio
async def test_microphone_start_failure_notifies_and_stays_idle(make_harness):
    h = make_harness(fail_start=True)

    await h.controller.toggle_microphone()

    assert h.controller.state == ConversationState.IDLE
    assert h.notices[0][0] == "MIC_UNAVAILABLE"
    assert h.transcription.is_active is False


@pytest.mark.asyncio
async def test_reply_failure_speaks_fallback(make_harness, reply_error):
    h = make_harness(reply_error=reply_error)

    assert await h.controller.send_text("hello") is True
    await h.controller.wait_for_turn()

    assert h.chat.messages[-1].sender == "ai"
    assert h.chat.messages[-1].text == FALLBACK_REPLY
    assert h.speaker.spoken[-1][0] == FALLBACK_REPLY
    assert h.speaker.spoken[-1][3] == "soothing"
    assert h.controller.state == ConversationState.IDLE


@pytest.mark.asyncio
async def test_synthesis_failure_still_completes_turn(make_harness):
    h = make_harness(fail_speech=True)
    await h.controller.set_hands_free(True)
    assert h.controller.state == ConversationState.VOICE_MODE_ACTIVE

    await h.transcription.final("what should I cook", 0)
    await h.transcription.end()
    await h.controller.wait_for_turn()

    assert h.chat.messages[-1].sender == "ai"
    assert h.controller.state == ConversationState.VOICE_MODE_ACTIVE
    assert h.transcription.start_calls == 2


@pytest.mark.asyncio
async def test_speaking_waits_for_playback_complete(make_harness):
    h = make_harness(auto_complete=False)
    await h.controller.send_text("good morning")
    await wait_until(lambda: h.speaker.is_playing)

    ts = h.controller.turn_state
    assert ts.speaking is True
    assert ts.listening is False

    await h.controller.handle_playback_complete()
    await h.controller.wait_for_turn()

    assert h.controller.state == ConversationState.IDLE


@pytest.mark.asyncio
async def test_typed_message_while_speaking_cancels_playback(make_harness):
    h = make_harness(auto_complete=False)
    await h.controller.greet(Greeting("Hello Asha, welcome back!", "cheerful"))
    await wait_until(lambda: h.speaker.is_playing)

    h.speaker.auto_complete = True
    assert await h.controller.send_text("hi") is True
    await h.controller.wait_for_turn()

    assert [s[0] for s in h.speaker.spoken] == ["Hello Asha, welcome back!", "That sounds lovely."]
    assert h.controller.state == ConversationState.IDLE


@pytest.mark.asyncio
async def test_typed_message_ignored_while_dispatching(make_harness):
    h = make_harness()
    blocker = asyncio.Event()

    async def slow_reply(user_name, message, history, language, image=None):
        await blocker.wait()
        return "done"

    h.replies.generate_chat_response = slow_reply
    await h.controller.send_text("first")
    assert h.controller.state == ConversationState.DISPATCHING

    assert await h.controller.send_text("second") is False

    blocker.set()
    await h.controller.wait_for_turn()
    assert [m.text for m in h.chat.messages if m.sender == "user"] == ["first"]


@pytest.mark.asyncio
async def test_mic_toggle_while_dispatching_cancels_turn(make_harness):
    h = make_harness()
    blocker = asyncio.Event()

    async def never_replies(user_name, message, history, language, image=None):
        await blocker.wait()
        return "too late"

    h.replies.generate_chat_response = never_replies
    await h.controller.send_text("are you there")
    await wait_until(lambda: len(h.chat.messages) == 1)

    await h.controller.toggle_microphone()

    assert h.controller.state == ConversationState.IDLE
    assert h.speaker.spoken == []
    assert [m.sender for m in h.chat.messages] == ["user"]


@pytest.mark.asyncio
async def test_results_after_teardown_are_ignored(make_harness):
    h = make_harness()
    await h.controller.toggle_microphone()
    await h.controller.stop_listening()

    await h.transcription.final("late words", 0)
    await h.transcription.end()

    assert h.controller.state == ConversationState.IDLE
    assert h.controller.turn_state.finalized_transcript == ""
    assert h.replies.calls == []


@pytest.mark.asyncio
async def test_listening_and_speaking_never_overlap(make_harness):
    h = make_harness()
    await h.controller.set_hands_free(True)

    for phrase in ("first question", "second question"):
        await h.transcription.final(phrase, 0)
        await h.transcription.end()
        await h.controller.wait_for_turn()

    assert h.invariant_violations == 0
    assert h.speaker.mic_open_while_speaking is False
    assert len(h.speaker.spoken) == 2
    assert (ConversationState.DISPATCHING, ConversationState.SPEAKING) in h.states
    assert (ConversationState.SPEAKING, ConversationState.VOICE_MODE_ACTIVE) in h.states


@pytest.mark.asyncio
async def test_greeting_is_spoken_then_idle(make_harness):
    h = make_harness(onboarded=False)
    greeting = h.chat.open()

    await h.controller.greet(greeting)
    await h.controller.wait_for_turn()

    assert h.speaker.spoken[0][0].startswith("Hello Asha!")
    assert h.speaker.spoken[0][3] == "cheerful"
    assert h.controller.state == ConversationState.IDLE


@pytest.mark.asyncio
async def test_close_releases_microphone(make_harness):
    h = make_harness()
    await h.controller.toggle_microphone()
    await h.transcription.interim("hey kindred", 0)

    await h.controller.close()

    assert h.controller.state == ConversationState.IDLE
    assert h.transcription.is_active is False
    assert h.controller.silence_timer.is_running() is False


@pytest.mark.asyncio
async def test_passive_session_with_only_interim_speech_goes_idle(make_harness):
    h = make_harness()
    await h.controller.toggle_microphone()

    await h.transcription.interim("um hello", 0)
    await h.transcription.end()

    assert h.controller.state == ConversationState.IDLE
    assert h.transcription.start_calls == 1
    assert h.transcription.is_active is False
    assert h.replies.calls == []


@pytest.mark.asyncio
async def test_attached_image_reaches_reply_source(make_harness):
    h = make_harness(reply="That looks like an ibuprofen tablet.")

    await h.controller.send_text("what pill is this", image="data:image/png;base64,AAAA")
    await h.controller.wait_for_turn()

    assert h.replies.calls[0][1] == "what pill is this"
    assert h.replies.images == ["data:image/png;base64,AAAA"]
    assert h.chat.messages[0].image == "data:image/png;base64,AAAA"
    assert h.speaker.spoken[-1][0] == "That looks like an ibuprofen tablet."


@pytest.mark.asyncio
async def test_image_only_message_uses_default_question(make_harness):
    h = make_harness()

    await h.controller.send_text("", image="data:image/png;base64,AAAA")
    await h.controller.wait_for_turn()

    assert h.replies.calls[0][1] == "What do you see in this image?"
    assert h.replies.images == ["data:image/png;base64,AAAA"]


@pytest.mark.asyncio
async def test_image_reply_failure_speaks_image_fallback(make_harness, reply_error):
    h = make_harness(reply_error=reply_error)

    await h.controller.send_text("what pill is this", image="data:image/png;base64,AAAA")
    await h.controller.wait_for_turn()

    assert h.chat.messages[-1].text == IMAGE_FALLBACK_REPLY
    assert h.speaker.spoken[-1][0] == IMAGE_FALLBACK_REPLY
    assert h.speaker.spoken[-1][3] == "soothing"


@pytest.mark.asyncio
async def test_cancel_during_speaking_transition_is_not_lost(make_harness):
    h = make_harness()
    sent = []

    async def send(message):
        sent.append(message)

    speaker = ClientSpeaker(send, playback_timeout_s=5)
    h.controller.synthesis = speaker

    async def cancel_when_speaking(from_state, to_state):
        # The user stops playback while the state change is still being delivered
        if to_state == ConversationState.SPEAKING:
            await speaker.cancel()

    h.controller.on_state_change = cancel_when_speaking

    await h.controller.send_text("tell me a long story")
    await asyncio.wait_for(h.controller.wait_for_turn(), timeout=1)

    assert h.controller.state == ConversationState.IDLE
    assert [m for m in sent if m["type"] == "speak"] == []
