"""
ElevenLabs HTTP client: voice catalog and streaming synthesis.
"""

import asyncio
import logging
from typing import AsyncGenerator, Optional

import aiohttp

from kindred.config import settings
from kindred.errors import SynthesisError
from kindred.tts.voices import Voice

logger = logging.getLogger(__name__)

API_BASE = "https://api.elevenlabs.io/v1"

ACCENT_REGIONS = {
    "american": "en-US",
    "british": "en-GB",
    "australian": "en-AU",
    "irish": "en-IE",
    "indian": "en-IN",
}

# Tone hint -> voice settings. Lower stability sounds livelier.
TONE_SETTINGS = {
    "soothing": {"stability": 0.75, "similarity_boost": 0.75, "style": 0.0},
    "cheerful": {"stability": 0.4, "similarity_boost": 0.75, "style": 0.45},
    "neutral": {"stability": 0.55, "similarity_boost": 0.75, "style": 0.15},
}


def voice_from_api(item: dict) -> Voice:
    """Map an entry of ``GET /v1/voices`` onto a Voice."""
    labels = item.get("labels") or {}
    accent = (labels.get("accent") or "").lower()
    language = labels.get("language")
    lang = ACCENT_REGIONS.get(accent) or language or "en"
    return Voice(
        name=item.get("name", ""),
        lang=lang,
        voice_id=item.get("voice_id"),
        gender=(labels.get("gender") or None),
    )


class ElevenLabsClient:

    def __init__(self, api_key: Optional[str] = None, model_id: Optional[str] = None):
        self.api_key = api_key if api_key is not None else settings.elevenlabs_api_key
        self.model_id = model_id or settings.elevenlabs_model_id

    def _headers(self) -> dict:
        if not self.api_key:
            raise SynthesisError("ElevenLabs API key is not configured")
        return {"xi-api-key": self.api_key}

    async def list_voices(self) -> list[Voice]:
        timeout = aiohttp.ClientTimeout(total=10, connect=5)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(f"{API_BASE}/voices", headers=self._headers()) as response:
                    if response.status != 200:
                        raise SynthesisError(f"ElevenLabs voices error {response.status}")
                    data = await response.json()
        except aiohttp.ClientError as e:
            raise SynthesisError(f"ElevenLabs voices request failed: {e}") from e

        voices = [voice_from_api(item) for item in data.get("voices", [])]
        logger.info(f"Loaded {len(voices)} ElevenLabs voices")
        return voices

    async def generate_audio(
        self,
        text: str,
        voice_id: str,
        tone: str = "neutral",
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncGenerator[bytes, None]:
        """
        Stream synthesized audio (MP3) for ``text``.

        Stops early without error when ``cancel_event`` is set.
        """
        payload = {
            "text": text,
            "model_id": self.model_id,
            "voice_settings": TONE_SETTINGS.get(tone, TONE_SETTINGS["neutral"]),
        }
        timeout = aiohttp.ClientTimeout(total=60, connect=5)
        url = f"{API_BASE}/text-to-speech/{voice_id}/stream"

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(url, headers=self._headers(), json=payload) as response:
                    if response.status != 200:
                        error_text = await response.text()
                        logger.error(f"ElevenLabs API error {response.status}: {error_text}")
                        raise SynthesisError(f"ElevenLabs API error {response.status}")

                    async for chunk in response.content.iter_chunked(4096):
                        if cancel_event is not None and cancel_event.is_set():
                            logger.info("TTS generation cancelled")
                            return
                        if chunk:
                            yield chunk
        except aiohttp.ClientError as e:
            raise SynthesisError(f"ElevenLabs request failed: {e}") from e
