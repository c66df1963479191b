"""
Chat pipeline for one connected user.

Owns the in-memory message list, persists every message through the history
store and talks to the AI reply source. It does not know anything about
listening or speaking; the turn controller drives it.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, NamedTuple, Optional, Protocol, Sequence

from kindred.errors import HistoryError
from kindred.history.store import ChatHistoryStore
from kindred.languages import get_language
from kindred.models import Message, Sender, UserProfile

logger = logging.getLogger(__name__)

VISUAL_KEYWORDS = ("see", "watch", "seeing", "visual", "look at", "picture", "image", "describe this")
VISUAL_REPLY = "Of course. Please use the camera button to show me what you'd like me to see."
TRANSLATION_CONFIDENCE = 0.6

INTRODUCTION_TEMPLATE = (
    "Hello {name}! I'm Kindred, your personal AI companion designed to support your health "
    "and wellness journey. I'm here to provide empathetic conversations, help you track your "
    "well-being, and assist with your daily health needs.\n\n"
    "You can type to me or talk to me by saying \"{wake_phrase}\". I'll read my answers aloud, "
    "and in voice mode we can keep talking without pressing anything.\n\n"
    "How are you feeling today?"
)
WELCOME_BACK_TEMPLATE = "Hello {name}, welcome back! How are you feeling today?"


class ReplySource(Protocol):
    async def generate_chat_response(
        self,
        user_name: str,
        message: str,
        history: Sequence[Message],
        language: str,
        image: Optional[str] = None,
    ) -> str: ...


class Detection(NamedTuple):
    detected_language: str
    language_code: str
    confidence: float


class Translator(Protocol):
    async def detect(self, text: str) -> Detection: ...

    async def translate(self, text: str, target_language: str, target_code: str) -> str: ...


@dataclass(frozen=True)
class UserTurn:
    """A submitted user message and what should be sent to the AI for it."""

    message: Message
    outgoing_text: str
    history: tuple[Message, ...] = ()
    source_language: Optional[Detection] = None
    canned_reply: Optional[str] = None


class Reply(NamedTuple):
    text: str
    original_text: Optional[str] = None


class Greeting(NamedTuple):
    text: str
    tone: str


class ChatSession:

    def __init__(
        self,
        user: UserProfile,
        store: ChatHistoryStore,
        reply_source: ReplySource,
        translator: Optional[Translator] = None,
        wake_phrase: str = "hey kindred",
        on_message: Optional[Callable[[Message], Awaitable[None]]] = None,
    ):
        self.user = user
        self.store = store
        self.reply_source = reply_source
        self.translator = translator
        self.wake_phrase = wake_phrase
        self.on_message = on_message
        self.messages: list[Message] = []

    @property
    def language(self):
        return get_language(self.user.language_code)

    def open(self) -> Optional[Greeting]:
        """
        Load stored history and decide on a greeting.

        New users get the introduction (persisted); returning users without
        history get a short welcome that is only shown, not stored.
        """
        if not self.user.has_been_onboarded:
            self.user.has_been_onboarded = True
            text = INTRODUCTION_TEMPLATE.format(name=self.user.name, wake_phrase=self.wake_phrase.title())
            self._remember(Message.create(text, "ai"))
            return Greeting(text, "cheerful")

        self.messages = self.store.load(self.user.name)
        if self.messages:
            logger.info(f"Loaded {len(self.messages)} messages for {self.user.name}")
            return None

        welcome = Message(
            id="welcome-1",
            text=WELCOME_BACK_TEMPLATE.format(name=self.user.name),
            sender="ai",
        )
        self.messages.append(welcome)
        return Greeting(welcome.text, "cheerful")

    async def add_message(
        self,
        text: str,
        sender: Sender,
        image: Optional[str] = None,
        original_text: Optional[str] = None,
        detected_language: Optional[str] = None,
    ) -> Message:
        """Create, persist and publish a message."""
        message = Message.create(text, sender, image, original_text, detected_language)
        self._remember(message)
        if self.on_message:
            try:
                await self.on_message(message)
            except Exception as e:
                logger.error(f"Error in message callback: {e}")
        return message

    def _remember(self, message: Message):
        self.messages.append(message)
        try:
            self.store.append(self.user.name, message)
        except HistoryError as e:
            logger.error(f"Failed to save chat message: {e}")

    async def submit(self, text: str, image: Optional[str] = None) -> UserTurn:
        """Record a user message and work out what the AI should receive."""
        outgoing = text
        original_text = None
        detection = None
        translated = None

        # Image questions go to the AI as typed
        if not image and self.translator and self.user.translation_enabled and self.user.auto_detect_language:
            try:
                detection = await self.translator.detect(text)
                if (
                    detection.language_code != self.language.code
                    and detection.confidence > TRANSLATION_CONFIDENCE
                ):
                    outgoing = await self.translator.translate(text, self.language.name, self.language.code)
                    original_text = text
                    translated = detection
            except Exception as e:
                logger.error(f"Translation detection failed: {e}")

        history = tuple(self.messages)
        message = await self.add_message(
            text,
            "user",
            image,
            original_text,
            detection.detected_language if detection else None,
        )

        canned = None
        if not image and any(kw in text.lower() for kw in VISUAL_KEYWORDS):
            canned = VISUAL_REPLY

        return UserTurn(
            message=message,
            outgoing_text=outgoing,
            history=history,
            source_language=translated,
            canned_reply=canned,
        )

    async def request_reply(self, turn: UserTurn) -> Reply:
        """
        Ask the reply source for an answer to ``turn``.

        Raises whatever the reply source raises; translating the answer back
        into the user's spoken language is best effort.
        """
        text = await self.reply_source.generate_chat_response(
            self.user.name,
            turn.outgoing_text,
            list(turn.history),
            self.language.name,
            image=turn.message.image,
        )

        source = turn.source_language
        if self.translator and source:
            try:
                translated = await self.translator.translate(text, source.detected_language, source.language_code)
                return Reply(translated, original_text=text)
            except Exception as e:
                logger.error(f"AI response translation failed: {e}")
        return Reply(text)

    def clear_history(self):
        self.messages.clear()
        self.store.clear(self.user.name)
