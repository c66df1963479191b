"""
Pydantic models for chat messages and user profiles.

Messages are created once and never mutated; they are persisted as JSON by
the history store and sent to the browser as-is.
"""

import random
import time
from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from kindred.config import settings

Sender = Literal["user", "ai"]


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_message_id(sender: str) -> str:
    """Unique id of the form ``<sender>-<epoch ms>-<random suffix>``."""
    return f"{sender}-{int(time.time() * 1000)}-{random.randrange(16 ** 6):06x}"


class Message(BaseModel):
    """A single chat message from the user or the companion."""

    model_config = ConfigDict(frozen=True)

    id: str
    text: str
    sender: Sender
    timestamp: str = Field(default_factory=_utc_now_iso)
    image: Optional[str] = None
    original_text: Optional[str] = None
    detected_language: Optional[str] = None

    @classmethod
    def create(
        cls,
        text: str,
        sender: Sender,
        image: Optional[str] = None,
        original_text: Optional[str] = None,
        detected_language: Optional[str] = None,
    ) -> "Message":
        return cls(
            id=new_message_id(sender),
            text=text,
            sender=sender,
            image=image or None,
            original_text=original_text or None,
            detected_language=detected_language or None,
        )

    @property
    def created_at(self) -> datetime:
        created = datetime.fromisoformat(self.timestamp)
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return created


class ChatDay(BaseModel):
    """Messages of one calendar day (UTC), oldest first."""

    date: str
    messages: list[Message]


class UserProfile(BaseModel):
    """The parts of a user account the conversation loop needs."""

    name: str
    language_code: str = Field(default_factory=lambda: settings.default_language)
    voice_name: Optional[str] = None
    has_been_onboarded: bool = True
    translation_enabled: bool = False
    auto_detect_language: bool = False
