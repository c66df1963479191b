"""
OpenAI chat client used as the companion's reply source.

Turns (user name, new message, prior history, language) into a single reply.
Any failure is raised as ReplyError; the turn controller decides what the user
hears instead.
"""

import asyncio
import logging
from typing import Optional, Sequence

import aiohttp

from kindred.config import settings
from kindred.errors import ReplyError
from kindred.models import Message

logger = logging.getLogger(__name__)


SYSTEM_PROMPT_TEMPLATE = (
    "You are KINDRED, an AI companion for a user named {user_name}.\n"
    "Your primary rules are:\n"
    "1. Be kind, empathetic, and non-judgmental. Sound like a real, caring friend.\n"
    "2. Analyze the conversation history to provide supportive and relevant responses.\n"
    "3. CRITICAL: You must respond ONLY in the following language: {language}. "
    "No other languages are permitted in your response under any circumstances.\n"
    "4. CRITICAL SELF-AWARENESS: You are a voice-enabled AI. Your responses are read aloud "
    "to the user. Never, under any circumstances, claim that you cannot speak, generate audio, "
    "or that you are a text-only model."
)

IMAGE_PROMPT_TEMPLATE = (
    "Analyze the attached image and answer the user's question: \"{question}\"\n"
    "Use simple, everyday language and these short sections:\n"
    "What is it? Identify the main subject and describe it briefly.\n"
    "What's it used for? Main uses and how people commonly use it.\n"
    "Side effects and risks. Known risks, or say \"No known side effects\".\n"
    "What to avoid. Precautions, or say \"Use as intended\"."
)


def image_url(image: str) -> str:
    """Data URL for ``image``; bare base64 is assumed to be JPEG."""
    if image.startswith(("data:", "http://", "https://")):
        return image
    return f"data:image/jpeg;base64,{image}"


class OpenAIClient:
    """
    Non-streaming chat completion client.

    A reply is short and spoken as a whole, so the full completion is awaited
    before the controller moves on to speaking it.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout_s: Optional[float] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.openai_api_key
        self.model = model or settings.openai_model
        self.base_url = base_url or settings.openai_base_url
        self.timeout_s = timeout_s or settings.openai_timeout_s

    def build_messages(
        self,
        user_name: str,
        message: str,
        history: Sequence[Message],
        language: str,
        image: Optional[str] = None,
    ) -> list[dict]:
        """
        Chat payload: system prompt, prior turns, then the new user message.

        With an ``image`` the new message becomes a text part carrying the
        analysis instructions plus an ``image_url`` part.
        """
        messages = [
            {
                "role": "system",
                "content": SYSTEM_PROMPT_TEMPLATE.format(user_name=user_name, language=language),
            }
        ]
        for item in history:
            role = "user" if item.sender == "user" else "assistant"
            messages.append({"role": role, "content": item.text})
        if image:
            messages.append({
                "role": "user",
                "content": [
                    {"type": "text", "text": IMAGE_PROMPT_TEMPLATE.format(question=message)},
                    {"type": "image_url", "image_url": {"url": image_url(image)}},
                ],
            })
        else:
            messages.append({"role": "user", "content": message})
        return messages

    async def generate_chat_response(
        self,
        user_name: str,
        message: str,
        history: Sequence[Message],
        language: str,
        image: Optional[str] = None,
    ) -> str:
        """
        Generate the companion's reply.

        Args:
            user_name: Name the companion addresses
            message: New user message
            history: Earlier messages of this conversation, oldest first
            language: Language name the reply must be written in
            image: Optional image (data URL or base64) the message asks about

        Returns:
            Reply text

        Raises:
            ReplyError: on missing credentials, HTTP failure or an empty reply
        """
        if not self.api_key:
            raise ReplyError("OpenAI API key is not configured")

        payload = {
            "model": self.model,
            "messages": self.build_messages(user_name, message, history, language, image),
            "temperature": 0.7,
            "max_tokens": 400,
        }

        data = await self._post(payload)

        try:
            reply = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise ReplyError(f"Malformed OpenAI response: {e}") from e

        reply = reply.strip()
        if not reply:
            raise ReplyError("OpenAI returned an empty reply")

        usage = data.get("usage") or {}
        logger.info(
            f"Reply generated: {len(reply)} chars, "
            f"{usage.get('prompt_tokens', 0)} prompt / {usage.get('completion_tokens', 0)} completion tokens"
        )
        return reply

    async def _post(self, payload: dict) -> dict:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        timeout = aiohttp.ClientTimeout(total=self.timeout_s, connect=5)

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.base_url, headers=headers, json=payload) as response:
                    if response.status != 200:
                        error_text = await response.text()
                        logger.error(f"OpenAI API error {response.status}: {error_text}")
                        raise ReplyError(f"OpenAI API error {response.status}")
                    return await response.json()
        except aiohttp.ClientError as e:
            raise ReplyError(f"OpenAI request failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise ReplyError("OpenAI request timed out") from e
