"""
Restartable silence timer.

Every transcript update restarts the countdown; if it runs out the callback
fires once. Once the countdown has fired the timer forgets its task, so a
cancel() issued from inside the callback (e.g. while starting a new listening
session) does not cancel the callback itself.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class SilenceTimer:

    def __init__(
        self,
        on_silence_complete: Callable[[], Awaitable[None]],
        debounce_ms: int = 1500,
    ):
        self.on_silence_complete = on_silence_complete
        self._debounce_ms = debounce_ms
        self._task: Optional[asyncio.Task] = None

    def start(self):
        """Start or restart the countdown."""
        self.cancel()
        self._task = asyncio.create_task(self._countdown())

    def cancel(self):
        if self._task and not self._task.done():
            self._task.cancel()
        self._task = None

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def set_debounce_ms(self, debounce_ms: int):
        self._debounce_ms = debounce_ms

    def get_current_debounce_ms(self) -> int:
        return self._debounce_ms

    async def _countdown(self):
        try:
            await asyncio.sleep(self._debounce_ms / 1000)
        except asyncio.CancelledError:
            return

        self._task = None
        logger.debug(f"Silence for {self._debounce_ms}ms - firing")
        try:
            await self.on_silence_complete()
        except Exception as e:
            logger.error(f"Error in silence callback: {e}", exc_info=True)
