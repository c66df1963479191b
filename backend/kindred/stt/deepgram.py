"""
Deepgram streaming STT provider.

Audio arrives from the browser as base64 chunks and is forwarded over a
WebSocket to Deepgram's streaming API. A lost connection is reported through
the error callback and is not retried; the turn controller returns to idle
and the user starts a new session.
"""

import asyncio
import json
import logging
from typing import Optional
from websockets import connect, WebSocketClientProtocol
from websockets.exceptions import WebSocketException

from kindred.config import settings
from kindred.errors import TranscriptionError
from kindred.stt.base import TranscriptionProvider

logger = logging.getLogger(__name__)


class DeepgramTranscription(TranscriptionProvider):
    """
    Manages one streaming connection to Deepgram per listening session.

    Features:
    - Interim and final results, numbered per session
    - Audio format configuration (16kHz mono PCM by default)
    - Non-continuous mode stops after the first end of speech
    """

    def __init__(
        self,
        language: str = "en-US",
        continuous: bool = True,
        interim_results: bool = True,
        api_key: Optional[str] = None,
        sample_rate: int = 16000,
    ):
        super().__init__(language, continuous, interim_results)
        self.api_key = api_key if api_key is not None else settings.deepgram_api_key
        self.sample_rate = sample_rate

        self.ws: Optional[WebSocketClientProtocol] = None
        self.is_closing = False
        self._receive_task: Optional[asyncio.Task] = None
        self._send_task: Optional[asyncio.Task] = None
        self._audio_queue: asyncio.Queue = asyncio.Queue(maxsize=100)
        self._result_index = 0

    async def start(self):
        """
        Establish WebSocket connection to Deepgram.

        Raises:
            TranscriptionError: if the connection cannot be opened
        """
        if self.is_active:
            logger.warning("Already connected to Deepgram")
            return
        if not self.api_key:
            raise TranscriptionError("Deepgram API key is not configured")

        params = {
            "encoding": "linear16",
            "sample_rate": self.sample_rate,
            "channels": 1,
            "language": self.language,
            "interim_results": "true" if self.interim_results else "false",
            "punctuate": "true",
            "utterance_end_ms": 1000,
            "vad_events": "true",
        }
        query_string = "&".join(f"{k}={v}" for k, v in params.items())
        url = f"wss://api.deepgram.com/v1/listen?{query_string}"

        try:
            self.ws = await connect(
                url,
                extra_headers={"Authorization": f"Token {self.api_key}"},
                ping_interval=10,
                ping_timeout=5,
            )
        except Exception as e:
            logger.error(f"Failed to connect to Deepgram: {e}")
            raise TranscriptionError(f"Connection failed: {e}") from e

        self.is_active = True
        self.is_closing = False
        self._result_index = 0
        self._audio_queue = asyncio.Queue(maxsize=100)
        logger.info("Connected to Deepgram streaming API")

        self._receive_task = asyncio.create_task(self._receive_loop())
        self._send_task = asyncio.create_task(self._send_loop())

    async def stop(self):
        """Gracefully close the Deepgram connection and report end of session."""
        if not self.is_active:
            return

        await self._close()
        logger.info("Disconnected from Deepgram")
        await self._emit_end()

    async def _close(self):
        self.is_closing = True
        self.is_active = False

        if self.ws:
            try:
                await self.ws.send(json.dumps({"type": "CloseStream"}))
                await self.ws.close()
            except WebSocketException as e:
                logger.warning(f"Error during Deepgram disconnect: {e}")

        for task in (self._receive_task, self._send_task):
            if task and not task.done() and task is not asyncio.current_task():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._receive_task = None
        self._send_task = None

    async def send_audio(self, audio_data: bytes):
        """
        Queue audio chunk for sending to Deepgram.

        Args:
            audio_data: Raw PCM audio bytes (16kHz mono)
        """
        if not self.is_active:
            logger.debug("Dropping audio: no active Deepgram session")
            return

        try:
            await asyncio.wait_for(self._audio_queue.put(audio_data), timeout=0.1)
        except asyncio.TimeoutError:
            logger.warning("Audio queue full - dropping chunk to prevent blocking")

    async def _send_loop(self):
        """Continuously send audio from queue to Deepgram."""
        try:
            while not self.is_closing:
                try:
                    audio_data = await asyncio.wait_for(self._audio_queue.get(), timeout=5.0)
                    if self.ws and self.is_active:
                        await self.ws.send(audio_data)
                except asyncio.TimeoutError:
                    # No audio for 5 seconds - send keepalive
                    if self.ws and self.is_active:
                        await self.ws.send(json.dumps({"type": "KeepAlive"}))
        except asyncio.CancelledError:
            logger.debug("Send loop cancelled")
        except WebSocketException as e:
            await self._fail(f"Error sending audio to Deepgram: {e}")

    async def _receive_loop(self):
        """Continuously receive and process messages from Deepgram."""
        try:
            async for message in self.ws:
                if self.is_closing:
                    break
                try:
                    data = json.loads(message)
                except json.JSONDecodeError as e:
                    logger.error(f"Invalid JSON from Deepgram: {e}")
                    continue
                await self._handle_message(data)
        except asyncio.CancelledError:
            logger.debug("Receive loop cancelled")
        except WebSocketException as e:
            await self._fail(f"Connection lost: {e}")

    async def _fail(self, error: str):
        if self.is_closing:
            return
        await self._close()
        await self._emit_error(error)

    async def _handle_message(self, data: dict):
        """
        Process a single message from Deepgram.

        Args:
            data: Parsed JSON message from Deepgram
        """
        if "error" in data:
            await self._fail(str(data["error"]))
            return

        channel = data.get("channel")
        if not channel or not channel.get("alternatives"):
            return

        alternative = channel["alternatives"][0]
        transcript = alternative.get("transcript", "").strip()
        if not transcript:
            return

        is_final = data.get("is_final", False)
        speech_final = data.get("speech_final", False)

        if is_final or speech_final:
            logger.debug(f"Final transcript [{self._result_index}]: {transcript}")
            await self._emit_result(transcript, self._result_index, is_final=True)
            self._result_index += 1
            if speech_final and not self.continuous:
                asyncio.create_task(self.stop())
        else:
            logger.debug(f"Partial transcript [{self._result_index}]: {transcript}")
            await self._emit_result(transcript, self._result_index, is_final=False)

    @property
    def connection_status(self) -> str:
        """Get current connection status."""
        if self.is_closing and self.is_active:
            return "closing"
        elif self.is_active:
            return "connected"
        else:
            return "disconnected"
