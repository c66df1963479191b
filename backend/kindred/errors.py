"""Exception hierarchy shared by the conversation pipeline."""

from typing import Any, Dict


class KindredError(Exception):
    """Base class for all application errors."""


class TranscriptionError(KindredError):
    """Speech transcription could not be started or failed mid-session."""


class SynthesisError(KindredError):
    """Speech synthesis or playback failed."""


class ReplyError(KindredError):
    """The AI reply source did not produce a reply."""


class HistoryError(KindredError):
    """Chat history could not be read or written."""


class InvalidTransitionError(KindredError):
    """A state change not allowed by the transition table was requested."""

    def __init__(self, from_state, to_state):
        super().__init__(f"Invalid transition {from_state.value} -> {to_state.value}")
        self.from_state = from_state
        self.to_state = to_state


def error_payload(code: str, message: str, recoverable: bool = True) -> Dict[str, Any]:
    """Build the body of an outbound ``error`` frame."""
    return {
        "type": "error",
        "data": {
            "code": code,
            "message": message,
            "recoverable": recoverable,
        },
    }
