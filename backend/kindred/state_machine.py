"""
Conversation state machine.

States are a tagged enum with an explicit table of legal transitions, so the
listening/speaking flags exposed to the UI are derived from a single value
and can never disagree with each other.
"""

import logging
from enum import Enum
from typing import Optional

from kindred.errors import InvalidTransitionError

logger = logging.getLogger(__name__)


class ConversationState(str, Enum):
    """
    IDLE              - microphone closed, nothing playing
    PASSIVE_LISTENING - transcribing, waiting only for the wake phrase
    VOICE_MODE_ACTIVE - transcribing a command (wake phrase heard or hands-free)
    DISPATCHING       - user message submitted, waiting for the AI reply
    SPEAKING          - reply handed to the synthesis provider
    """

    IDLE = "idle"
    PASSIVE_LISTENING = "passive_listening"
    VOICE_MODE_ACTIVE = "voice_mode_active"
    DISPATCHING = "dispatching"
    SPEAKING = "speaking"


LISTENING_STATES = frozenset({ConversationState.PASSIVE_LISTENING, ConversationState.VOICE_MODE_ACTIVE})

_TRANSITIONS: dict[ConversationState, frozenset[ConversationState]] = {
    ConversationState.IDLE: frozenset({
        ConversationState.PASSIVE_LISTENING,
        ConversationState.VOICE_MODE_ACTIVE,
        ConversationState.DISPATCHING,
        ConversationState.SPEAKING,
    }),
    ConversationState.PASSIVE_LISTENING: frozenset({
        ConversationState.IDLE,
        ConversationState.VOICE_MODE_ACTIVE,
        ConversationState.DISPATCHING,
    }),
    ConversationState.VOICE_MODE_ACTIVE: frozenset({
        ConversationState.IDLE,
        ConversationState.PASSIVE_LISTENING,
        ConversationState.DISPATCHING,
    }),
    ConversationState.DISPATCHING: frozenset({
        ConversationState.IDLE,
        ConversationState.SPEAKING,
    }),
    ConversationState.SPEAKING: frozenset({
        ConversationState.IDLE,
        ConversationState.PASSIVE_LISTENING,
        ConversationState.VOICE_MODE_ACTIVE,
    }),
}


class StateMachine:
    """Holds the current state and rejects transitions outside the table."""

    def __init__(self, initial: ConversationState = ConversationState.IDLE):
        self.current_state = initial
        self.last_reason: Optional[str] = None

    def can_transition(self, to_state: ConversationState) -> bool:
        return to_state in _TRANSITIONS[self.current_state]

    def transition(self, to_state: ConversationState, reason: str = "") -> ConversationState:
        """
        Move to ``to_state``.

        Returns:
            The previous state

        Raises:
            InvalidTransitionError: if the move is not in the transition table
        """
        from_state = self.current_state
        if not self.can_transition(to_state):
            raise InvalidTransitionError(from_state, to_state)

        self.current_state = to_state
        self.last_reason = reason
        logger.debug(f"State {from_state.value} -> {to_state.value} ({reason})")
        return from_state

    @property
    def is_listening(self) -> bool:
        return self.current_state in LISTENING_STATES

    @property
    def is_speaking(self) -> bool:
        return self.current_state == ConversationState.SPEAKING
