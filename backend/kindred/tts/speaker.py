"""
Speech synthesis providers.

Playback always happens in the browser, so both providers hand something to
the client (text to speak, or audio chunks to play) and then wait for its
``playback_complete`` message. ``speak()`` returns once playback is over or
the safety timeout has passed; failures raise SynthesisError. Callers reset
a speaker with ``prepare()`` before each utterance; a ``cancel()`` issued after
that returns the pending or upcoming ``speak()`` immediately.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Sequence

from kindred.config import settings
from kindred.errors import SynthesisError
from kindred.tts.elevenlabs import ElevenLabsClient
from kindred.tts.voices import Voice, select_voice
from kindred.utils.audio import encode_audio_base64

logger = logging.getLogger(__name__)

SendMessage = Callable[[dict], Awaitable[None]]

# tone -> (rate, pitch)
TONE_PROSODY = {
    "soothing": (0.9, 1.0),
    "cheerful": (0.95, 1.05),
    "neutral": (1.0, 1.0),
}


class PlaybackSpeaker:
    """Shared voice selection and playback-completion bookkeeping."""

    def __init__(self, send: SendMessage, playback_timeout_s: Optional[float] = None):
        self.send = send
        self.playback_timeout_s = playback_timeout_s or settings.playback_timeout_s
        self.voices: list[Voice] = []
        self._playback_done = asyncio.Event()
        self._waiting_for_playback = False
        self._cancel_event = asyncio.Event()

    def set_voices(self, voices: Sequence[Voice]):
        self.voices = list(voices)
        logger.info(f"{len(self.voices)} voices available")

    def choose_voice(self, language_code: str, preference: Optional[str]) -> Optional[Voice]:
        return select_voice(self.voices, language_code, preference)

    def handle_playback_complete(self):
        if not self._waiting_for_playback:
            logger.debug("Received playback_complete but not waiting for playback - ignoring")
            return
        self._playback_done.set()

    @property
    def is_playing(self) -> bool:
        return self._waiting_for_playback

    async def speak(self, text: str, voice: Optional[str], language: str, tone: str = "neutral"):
        raise NotImplementedError

    async def cancel(self):
        """Abort the current utterance; a pending speak() returns immediately."""
        self._cancel_event.set()
        self._playback_done.set()

    def prepare(self):
        """Reset cancellation and playback state ahead of the next utterance."""
        self._cancel_event.clear()
        self._playback_done.clear()

    @property
    def is_cancelled(self) -> bool:
        return self._cancel_event.is_set()

    async def _wait_for_playback(self):
        self._waiting_for_playback = True
        try:
            await asyncio.wait_for(self._playback_done.wait(), timeout=self.playback_timeout_s)
        except asyncio.TimeoutError:
            logger.warning(f"Playback timeout after {self.playback_timeout_s}s - treating as complete")
        finally:
            self._waiting_for_playback = False


class ClientSpeaker(PlaybackSpeaker):
    """Asks the browser's own speech synthesis to read the text aloud."""

    async def speak(self, text: str, voice: Optional[str], language: str, tone: str = "neutral"):
        if self.is_cancelled:
            logger.info("Utterance cancelled before it started")
            return
        selected = self.choose_voice(language, voice)
        rate, pitch = TONE_PROSODY.get(tone, TONE_PROSODY["neutral"])

        try:
            await self.send({
                "type": "speak",
                "data": {
                    "text": text,
                    "voice": selected.name if selected else None,
                    "lang": language,
                    "rate": rate,
                    "pitch": pitch,
                },
            })
        except Exception as e:
            raise SynthesisError(f"Failed to send speak request: {e}") from e

        if selected:
            logger.info(f"Speaking with voice {selected.name} ({language})")
        await self._wait_for_playback()

    async def cancel(self):
        was_playing = self._waiting_for_playback
        await super().cancel()
        if was_playing:
            try:
                await self.send({"type": "speak_cancel", "data": {}})
            except Exception as e:
                logger.warning(f"Failed to send speak_cancel: {e}")


class ElevenLabsSpeaker(PlaybackSpeaker):
    """Streams ElevenLabs audio to the browser for playback."""

    def __init__(
        self,
        send: SendMessage,
        client: Optional[ElevenLabsClient] = None,
        playback_timeout_s: Optional[float] = None,
    ):
        super().__init__(send, playback_timeout_s)
        self.client = client or ElevenLabsClient()

    async def load_voices(self):
        self.set_voices(await self.client.list_voices())

    async def speak(self, text: str, voice: Optional[str], language: str, tone: str = "neutral"):
        if self.is_cancelled:
            logger.info("Utterance cancelled before it started")
            return
        selected = self.choose_voice(language, voice)
        if selected is None or not selected.voice_id:
            raise SynthesisError(f"No ElevenLabs voice available for {language}")

        chunk_index = 0
        async for audio_chunk in self.client.generate_audio(
            text=text,
            voice_id=selected.voice_id,
            tone=tone,
            cancel_event=self._cancel_event,
        ):
            await self.send({
                "type": "agent_audio_chunk",
                "data": {
                    "audio": encode_audio_base64(audio_chunk),
                    "chunk_index": chunk_index,
                    "is_final": False,
                },
            })
            chunk_index += 1

        if self._cancel_event.is_set():
            return
        if chunk_index == 0:
            raise SynthesisError("ElevenLabs returned no audio")

        await self.send({
            "type": "agent_audio_chunk",
            "data": {"audio": "", "chunk_index": chunk_index, "is_final": True},
        })
        logger.info(f"TTS streaming done ({chunk_index} chunks sent) - waiting for playback")
        await self._wait_for_playback()
