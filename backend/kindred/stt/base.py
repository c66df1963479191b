"""
Transcription provider contract.

A provider captures speech after ``start()`` and reports recognition results
keyed by a result index through four callbacks: interim text, final text,
end of session and error. ``stop()`` ends the session; the end callback fires
exactly once per session, whether the session was stopped or ended on its own.
"""

import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

ResultCallback = Callable[[str, int], Awaitable[None]]
EndCallback = Callable[[], Awaitable[None]]
ErrorCallback = Callable[[str], Awaitable[None]]


class TranscriptionProvider:

    def __init__(self, language: str = "en-US", continuous: bool = True, interim_results: bool = True):
        self.language = language
        self.continuous = continuous
        self.interim_results = interim_results
        self.is_active = False

        self.on_interim: Optional[ResultCallback] = None
        self.on_final: Optional[ResultCallback] = None
        self.on_end: Optional[EndCallback] = None
        self.on_error: Optional[ErrorCallback] = None

    def set_callbacks(
        self,
        on_interim: ResultCallback,
        on_final: ResultCallback,
        on_end: EndCallback,
        on_error: ErrorCallback,
    ):
        self.on_interim = on_interim
        self.on_final = on_final
        self.on_end = on_end
        self.on_error = on_error

    async def start(self):
        """Begin capturing. Raises TranscriptionError if capture cannot start."""
        raise NotImplementedError

    async def stop(self):
        """End the current session; a no-op when nothing is active."""
        raise NotImplementedError

    async def _emit_result(self, text: str, result_index: int, is_final: bool):
        if is_final:
            if self.on_final:
                await self.on_final(text, result_index)
        elif self.interim_results and self.on_interim:
            await self.on_interim(text, result_index)

    async def _emit_end(self):
        if self.on_end:
            await self.on_end()

    async def _emit_error(self, error: str):
        logger.error(f"Transcription error: {error}")
        if self.on_error:
            await self.on_error(error)
