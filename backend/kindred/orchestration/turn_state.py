"""Snapshot of the conversation loop as seen by the UI."""

from dataclasses import dataclass

from kindred.state_machine import ConversationState, LISTENING_STATES


@dataclass(frozen=True)
class TurnState:
    state: ConversationState
    voice_mode_active: bool
    wake_word_armed: bool
    interim_transcript: str
    finalized_transcript: str

    @property
    def listening(self) -> bool:
        return self.state in LISTENING_STATES

    @property
    def passive_listening(self) -> bool:
        return self.state == ConversationState.PASSIVE_LISTENING

    @property
    def speaking(self) -> bool:
        return self.state == ConversationState.SPEAKING

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "listening": self.listening,
            "passive_listening": self.passive_listening,
            "voice_mode_active": self.voice_mode_active,
            "speaking": self.speaking,
            "wake_word_armed": self.wake_word_armed,
            "interim_transcript": self.interim_transcript,
            "finalized_transcript": self.finalized_transcript,
        }
