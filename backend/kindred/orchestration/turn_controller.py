"""
Turn Controller - Orchestrates the hands-free conversation loop.

Coordinates:
- Wake-phrase detection while passively listening
- Transcript buffering and silence-based end of turn
- Dispatching user messages to the chat pipeline
- Handing replies to the synthesis provider and waiting for playback
- Re-arming listening after the reply in hands-free mode

Critical: the microphone session and synthesized playback never overlap.
Listening and speaking are both derived from one state value, and the
transcription session is torn down before anything is spoken.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from kindred.config import settings
from kindred.orchestration.chat_session import ChatSession, Greeting, Reply
from kindred.orchestration.silence_timer import SilenceTimer
from kindred.orchestration.transcript_buffer import (
    TranscriptBuffer,
    contains_wake_phrase,
    strip_wake_phrase,
)
from kindred.orchestration.turn_state import TurnState
from kindred.state_machine import ConversationState, StateMachine
from kindred.stt.base import TranscriptionProvider
from kindred.tts.speaker import PlaybackSpeaker

logger = logging.getLogger(__name__)

FALLBACK_REPLY = "I'm sorry, I'm having trouble connecting right now. Please try again."
IMAGE_FALLBACK_REPLY = "Sorry, I had trouble analyzing that image."
MIC_UNAVAILABLE_NOTICE = "I couldn't access the microphone. Please check the permission and try again."


class TurnController:
    """
    Orchestrates turn-taking between the user and the companion.

    State Flow:
    IDLE → PASSIVE_LISTENING → VOICE_MODE_ACTIVE → DISPATCHING → SPEAKING → IDLE
     ↑  (mic)     ↓ (wake phrase)       ↓ (end of speech)            ↓
     └────────────┴── silence / stop ───┘        hands-free: back to VOICE_MODE_ACTIVE

    State Meanings:
    - PASSIVE_LISTENING: transcribing, waiting for the wake phrase
    - VOICE_MODE_ACTIVE: transcribing the command that follows
    - DISPATCHING: user message submitted, waiting for the reply
    - SPEAKING: reply is being played back
    """

    def __init__(
        self,
        chat: ChatSession,
        transcription: TranscriptionProvider,
        synthesis: PlaybackSpeaker,
        on_state_change: Optional[Callable[[ConversationState, ConversationState], Awaitable[None]]] = None,
        on_transcript: Optional[Callable[[str], Awaitable[None]]] = None,
        on_activation: Optional[Callable[[], Awaitable[None]]] = None,
        on_notice: Optional[Callable[[str, str], Awaitable[None]]] = None,  # code, text
        wake_phrase: Optional[str] = None,
        silence_timeout_ms: Optional[int] = None,
    ):
        self.chat = chat
        self.transcription = transcription
        self.synthesis = synthesis

        # Callbacks
        self.on_state_change = on_state_change
        self.on_transcript = on_transcript
        self.on_activation = on_activation
        self.on_notice = on_notice

        self.wake_phrase = wake_phrase or settings.wake_phrase

        # Core components
        self.state_machine = StateMachine()
        self.transcript_buffer = TranscriptBuffer()
        self.silence_timer = SilenceTimer(
            on_silence_complete=self._on_silence_complete,
            debounce_ms=silence_timeout_ms or settings.silence_timeout_ms,
        )

        # Flags that outlive a single state
        self.voice_mode_active = False
        self.wake_word_armed = False

        self._turn_task: Optional[asyncio.Task] = None
        self._discard_end = False

        self.transcription.set_callbacks(
            on_interim=self._handle_interim,
            on_final=self._handle_final,
            on_end=self._handle_end,
            on_error=self._handle_error,
        )

    @property
    def state(self) -> ConversationState:
        return self.state_machine.current_state

    @property
    def turn_state(self) -> TurnState:
        return TurnState(
            state=self.state,
            voice_mode_active=self.voice_mode_active,
            wake_word_armed=self.wake_word_armed,
            interim_transcript=self.transcript_buffer.interim_text,
            finalized_transcript=self.transcript_buffer.final_text,
        )

    # ------------------------------------------------------------------ #
    # User actions
    # ------------------------------------------------------------------ #

    async def toggle_microphone(self):
        """Microphone button: start passive listening, or stop whatever is going on."""
        current = self.state

        if current == ConversationState.IDLE:
            await self.start_listening(passive=True)
        elif self.state_machine.is_listening:
            await self.stop_listening()
        elif current == ConversationState.DISPATCHING:
            self.voice_mode_active = False
            await self._cancel_turn()
            await self._reset_to_idle("Stopped by user while waiting for reply")
        elif current == ConversationState.SPEAKING:
            # The turn task finishes in IDLE once playback is cancelled.
            self.voice_mode_active = False
            await self.synthesis.cancel()

    async def start_listening(self, passive: bool = True) -> bool:
        """
        Open a new listening session, tearing down any existing one first.

        Args:
            passive: wait for the wake phrase (True) or take a command right away

        Returns:
            True if the transcription provider started
        """
        await self._teardown_session()
        self.transcript_buffer.clear()

        if passive:
            self.voice_mode_active = False
            self.wake_word_armed = True
            target = ConversationState.PASSIVE_LISTENING
        else:
            self.wake_word_armed = False
            target = ConversationState.VOICE_MODE_ACTIVE

        await self._transition(target, reason="Listening started")

        try:
            await self.transcription.start()
        except Exception as e:
            logger.error(f"Failed to start transcription: {e}")
            await self._notify_notice("MIC_UNAVAILABLE", MIC_UNAVAILABLE_NOTICE)
            self.voice_mode_active = False
            await self._reset_to_idle("Transcription failed to start")
            return False

        await self._notify_transcript("")
        return True

    async def stop_listening(self):
        """Explicit stop: close the session without dispatching anything."""
        self.voice_mode_active = False
        await self._reset_to_idle("Stopped by user")

    async def handle_typing(self):
        """Typed input preempts voice: cancel listening and leave hands-free mode."""
        self.voice_mode_active = False
        if self.state_machine.is_listening:
            logger.info("Typing detected - cancelling listening session")
            await self._reset_to_idle("Typing preempted listening")

    async def set_hands_free(self, enabled: bool):
        """Opt in or out of hands-free mode without the wake phrase."""
        if not enabled:
            self.voice_mode_active = False
            if self.state_machine.is_listening:
                await self._reset_to_idle("Hands-free disabled")
            return

        self.voice_mode_active = True
        if self.state == ConversationState.IDLE:
            await self.start_listening(passive=False)
        elif self.state == ConversationState.PASSIVE_LISTENING:
            self.wake_word_armed = False
            await self._transition(ConversationState.VOICE_MODE_ACTIVE, reason="Hands-free enabled")

    async def send_text(self, text: str, image: Optional[str] = None) -> bool:
        """
        Submit a typed message.

        Returns:
            False if the message was empty or a reply is still being fetched
        """
        text = text.strip()
        if not text and not image:
            return False
        if self.state == ConversationState.DISPATCHING:
            logger.info("Reply in progress - ignoring typed message")
            return False

        await self.handle_typing()
        if self.state == ConversationState.SPEAKING:
            await self.synthesis.cancel()
            await self.wait_for_turn()

        await self._dispatch(text or "What do you see in this image?", image)
        return True

    async def greet(self, greeting: Greeting):
        """Speak a greeting produced when the chat session opened."""
        if self.state != ConversationState.IDLE:
            return
        self._turn_task = asyncio.create_task(self._speak(greeting.text, greeting.tone))

    async def handle_playback_complete(self):
        self.synthesis.handle_playback_complete()

    async def wait_for_turn(self):
        """Wait until the current dispatched turn (if any) has finished."""
        task = self._turn_task
        if task is None or task is asyncio.current_task():
            return
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def close(self):
        """Release the microphone session, timers and playback."""
        self.voice_mode_active = False
        self.silence_timer.cancel()
        await self._cancel_turn()
        if self.synthesis.is_playing:
            await self.synthesis.cancel()
        await self._reset_to_idle("Controller closed")
        logger.info("TurnController closed")

    # ------------------------------------------------------------------ #
    # Transcription callbacks
    # ------------------------------------------------------------------ #

    async def _handle_interim(self, text: str, result_index: int):
        if not self.state_machine.is_listening:
            logger.debug(f"Interim result in {self.state.value} state - ignoring")
            return
        self.transcript_buffer.add_partial(text, result_index)
        await self._after_result(text)

    async def _handle_final(self, text: str, result_index: int):
        if not self.state_machine.is_listening:
            logger.debug(f"Final result in {self.state.value} state - ignoring")
            return
        self.transcript_buffer.add_final(text, result_index)
        await self._after_result(text)

    async def _after_result(self, text: str):
        live = self.transcript_buffer.display_text()

        if self.wake_word_armed and contains_wake_phrase(live, self.wake_phrase):
            self.wake_word_armed = False
            self.voice_mode_active = True
            logger.info("Wake phrase detected - voice mode active")
            if self.state == ConversationState.PASSIVE_LISTENING:
                await self._transition(ConversationState.VOICE_MODE_ACTIVE, reason="Wake phrase detected")
            await self._notify_activation()

        await self._notify_transcript(strip_wake_phrase(live, self.wake_phrase))

        # Any new speech pushes the end of the turn back
        if text.strip():
            self.silence_timer.start()

    async def _on_silence_complete(self):
        if not self.state_machine.is_listening:
            logger.debug(f"Silence timer fired in {self.state.value} state - ignoring")
            return
        logger.info("Silence detected - ending listening session")
        await self.transcription.stop()

    async def _handle_end(self):
        if self._discard_end or not self.state_machine.is_listening:
            return

        self.silence_timer.cancel()
        command = strip_wake_phrase(self.transcript_buffer.get_final_text(), self.wake_phrase)
        self.transcript_buffer.clear()
        await self._notify_transcript("")

        if command:
            logger.info(f"End of speech - dispatching: {command[:50]}")
            await self._dispatch(command)
        elif self.voice_mode_active:
            logger.info("End of speech with no command - listening again")
            await self.start_listening(passive=False)
        else:
            # Interim-only speech never finalized counts as nothing heard
            await self._reset_to_idle("Listening ended without a finalized transcript")

    async def _handle_error(self, error: str):
        """Provider error: back to IDLE with buffers cleared, no retry."""
        logger.error(f"Transcription provider error in {self.state.value}: {error}")
        self.voice_mode_active = False
        await self._cancel_turn()
        if self.synthesis.is_playing:
            await self.synthesis.cancel()
        await self._reset_to_idle(f"Transcription error: {error}")
        await self._notify_notice("TRANSCRIPTION_ERROR", "Speech recognition stopped unexpectedly.")

    # ------------------------------------------------------------------ #
    # Turn execution
    # ------------------------------------------------------------------ #

    async def _dispatch(self, text: str, image: Optional[str] = None):
        await self._teardown_session()
        await self._transition(ConversationState.DISPATCHING, reason="User message submitted")
        self._turn_task = asyncio.create_task(self._run_turn(text, image))

    async def _run_turn(self, text: str, image: Optional[str] = None):
        try:
            turn = await self.chat.submit(text, image)

            if turn.canned_reply:
                reply, tone = Reply(turn.canned_reply), "cheerful"
            else:
                try:
                    reply, tone = await self.chat.request_reply(turn), "cheerful"
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(f"Failed to get response from AI: {e}")
                    fallback = IMAGE_FALLBACK_REPLY if turn.message.image else FALLBACK_REPLY
                    reply, tone = Reply(fallback), "soothing"

            if self.state != ConversationState.DISPATCHING:
                return
            await self.chat.add_message(reply.text, "ai", original_text=reply.original_text)
            await self._speak(reply.text, tone)

        except asyncio.CancelledError:
            logger.info("Turn cancelled")
            raise
        except Exception as e:
            logger.error(f"Turn failed: {e}", exc_info=True)
            await self._reset_to_idle("Turn failed")

    async def _speak(self, text: str, tone: str):
        await self._teardown_session()
        # Reset before the transition so a cancel() issued while the state
        # change is being sent still stops this utterance.
        self.synthesis.prepare()
        await self._transition(ConversationState.SPEAKING, reason="Reply ready")

        try:
            await self.synthesis.speak(
                text,
                voice=self.chat.user.voice_name or settings.default_voice,
                language=self.chat.language.code,
                tone=tone,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Speech synthesis failed: {e}")

        if self.state != ConversationState.SPEAKING:
            return
        if self.voice_mode_active:
            await self.start_listening(passive=False)
        else:
            await self._reset_to_idle("Reply spoken")

    async def _cancel_turn(self):
        task = self._turn_task
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    async def _teardown_session(self):
        """Stop any open transcription session without treating it as end of speech."""
        self.silence_timer.cancel()
        if not self.transcription.is_active:
            return
        self._discard_end = True
        try:
            await self.transcription.stop()
        except Exception as e:
            logger.warning(f"Error stopping transcription: {e}")
        finally:
            self._discard_end = False

    async def _reset_to_idle(self, reason: str):
        """Reset to IDLE, clear transcripts and close the microphone session."""
        self.wake_word_armed = False
        self.transcript_buffer.clear()
        await self._transition(ConversationState.IDLE, reason=reason)
        await self._teardown_session()

    async def _transition(self, to_state: ConversationState, reason: str):
        from_state = self.state
        if from_state == to_state:
            return
        self.state_machine.transition(to_state, reason=reason)
        logger.info(f"{from_state.value} → {to_state.value}: {reason}")
        await self._notify_state_change(from_state, to_state)

    async def _notify_state_change(self, from_state: ConversationState, to_state: ConversationState):
        """Notify state change via callback."""
        if not self.on_state_change:
            return
        try:
            await self.on_state_change(from_state, to_state)
        except Exception as e:
            logger.error(f"Error in state change callback: {e}")

    async def _notify_transcript(self, text: str):
        if not self.on_transcript:
            return
        try:
            await self.on_transcript(text)
        except Exception as e:
            logger.error(f"Error in transcript callback: {e}")

    async def _notify_activation(self):
        if not self.on_activation:
            return
        try:
            await self.on_activation()
        except Exception as e:
            logger.error(f"Error in activation callback: {e}")

    async def _notify_notice(self, code: str, text: str):
        if not self.on_notice:
            return
        try:
            await self.on_notice(code, text)
        except Exception as e:
            logger.error(f"Error in notice callback: {e}")
