"""
Transcript accumulation for a single listening session.

Recognition results arrive keyed by a result index: an index receives any
number of interim hypotheses and at most one final text. Finals are appended
to the finalized transcript in arrival order; pending interims are kept per
index until their final replaces them.
"""

import logging
import re

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")


def contains_wake_phrase(text: str, wake_phrase: str) -> bool:
    """Case-insensitive substring match."""
    if not wake_phrase:
        return False
    return wake_phrase.lower() in text.lower()


def strip_wake_phrase(text: str, wake_phrase: str) -> str:
    """Remove every case-insensitive occurrence of the wake phrase and tidy spacing."""
    if wake_phrase:
        text = re.sub(re.escape(wake_phrase), " ", text, flags=re.IGNORECASE)
    return _WHITESPACE.sub(" ", text).strip()


class TranscriptBuffer:
    """Interim and finalized text of the current listening session."""

    def __init__(self):
        self._finals: list[str] = []
        self._final_indexes: set[int] = set()
        self._interims: dict[int, str] = {}

    def add_partial(self, text: str, result_index: int = 0):
        if result_index in self._final_indexes:
            logger.debug(f"Ignoring interim for already finalized result {result_index}")
            return
        self._interims[result_index] = text.strip()

    def add_final(self, text: str, result_index: int = 0):
        if result_index in self._final_indexes:
            logger.debug(f"Duplicate final for result {result_index} - ignoring")
            return
        self._interims.pop(result_index, None)
        self._final_indexes.add(result_index)
        text = text.strip()
        if text:
            self._finals.append(text)

    @property
    def interim_text(self) -> str:
        return " ".join(t for _, t in sorted(self._interims.items()) if t)

    @property
    def final_text(self) -> str:
        return " ".join(self._finals)

    def get_final_text(self) -> str:
        return self.final_text

    def display_text(self) -> str:
        """Finalized text followed by whatever is still being recognized."""
        return " ".join(t for t in (self.final_text, self.interim_text) if t)

    def clear(self):
        self._finals.clear()
        self._final_indexes.clear()
        self._interims.clear()
