"""
Transcription provider backed by the browser's speech recognition.

The browser owns the microphone; this provider only tells it when to start
and stop and relays the recognition events it sends back over the WebSocket.
Every session is numbered and the browser echoes the number, so events from a
session that was already torn down are dropped.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from kindred.errors import TranscriptionError
from kindred.stt.base import TranscriptionProvider

logger = logging.getLogger(__name__)

SendMessage = Callable[[dict], Awaitable[None]]


class ClientRecognitionRelay(TranscriptionProvider):

    def __init__(
        self,
        send: SendMessage,
        language: str = "en-US",
        continuous: bool = True,
        interim_results: bool = True,
        stop_grace_s: float = 2.0,
    ):
        super().__init__(language, continuous, interim_results)
        self.send = send
        self.stop_grace_s = stop_grace_s
        self.session = 0
        self._ended = True
        self._end_fallback_task: Optional[asyncio.Task] = None

    async def start(self):
        self.session += 1
        self._ended = False
        self.is_active = True
        try:
            await self.send({
                "type": "recognition_start",
                "data": {
                    "session": self.session,
                    "lang": self.language,
                    "continuous": self.continuous,
                    "interim_results": self.interim_results,
                },
            })
        except Exception as e:
            self.is_active = False
            self._ended = True
            raise TranscriptionError(f"Failed to start recognition: {e}") from e
        logger.info(f"Recognition session {self.session} started ({self.language})")

    async def stop(self):
        if not self.is_active:
            return
        self.is_active = False
        session = self.session
        try:
            await self.send({"type": "recognition_stop", "data": {"session": session}})
        except Exception as e:
            logger.warning(f"Failed to send recognition_stop: {e}")
        # The browser normally answers with recognition_end; do not hang if it never does.
        self._end_fallback_task = asyncio.create_task(self._end_fallback(session))

    async def _end_fallback(self, session: int):
        try:
            await asyncio.sleep(self.stop_grace_s)
        except asyncio.CancelledError:
            return
        if session == self.session and not self._ended:
            logger.warning(f"No recognition_end for session {session} - ending locally")
            await self._finish()

    def _is_current(self, session: Optional[int]) -> bool:
        if self._ended:
            return False
        return session is None or session == self.session

    async def handle_result(self, text: str, result_index: int, is_final: bool, session: Optional[int] = None):
        if not self._is_current(session):
            logger.debug(f"Dropping result from stale recognition session {session}")
            return
        await self._emit_result(text, result_index, is_final)

    async def handle_end(self, session: Optional[int] = None):
        if not self._is_current(session):
            return
        await self._finish()

    async def handle_error(self, error: str, session: Optional[int] = None):
        if not self._is_current(session):
            return
        self.is_active = False
        self._ended = True
        self._cancel_fallback()
        await self._emit_error(error)

    async def _finish(self):
        self.is_active = False
        self._ended = True
        self._cancel_fallback()
        await self._emit_end()

    def _cancel_fallback(self):
        task = self._end_fallback_task
        self._end_fallback_task = None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
