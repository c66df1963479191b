"""
Per-user chat history persistence.

Each user's messages live in one JSON file under the history directory,
appended in creation order. Read failures are treated as an empty history so
a corrupt file never blocks a conversation.

The store keeps the last list it read or wrote for each user, so appending a
message costs one write and no re-read. Writes are synchronous; a history file
holds one user's chat and stays small enough for that.
"""

import json
import logging
import re
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional, Union

from pydantic import ValidationError

from kindred.config import settings
from kindred.errors import HistoryError
from kindred.models import ChatDay, Message

logger = logging.getLogger(__name__)

STORAGE_KEY_PREFIX = "kindred_chat_history_"
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]+")


class ChatHistoryStore:

    def __init__(self, root: Union[str, Path, None] = None):
        self.root = Path(root if root is not None else settings.history_dir)
        self._cache: dict[Path, list[Message]] = {}

    def _path(self, user: str) -> Path:
        safe = _UNSAFE_CHARS.sub("_", user.strip()) or "_"
        return self.root / f"{STORAGE_KEY_PREFIX}{safe}.json"

    def has_history(self, user: str) -> bool:
        return self._path(user).exists()

    def load(self, user: str) -> list[Message]:
        """All stored messages for ``user``, oldest first."""
        path = self._path(user)
        if not path.exists():
            return []

        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            messages = [Message.model_validate(item) for item in raw]
        except (OSError, ValueError, ValidationError) as e:
            logger.error(f"Failed to read chat history for {user}: {e}")
            return []
        self._cache[path] = list(messages)
        return messages

    def save(self, user: str, messages: list[Message]):
        """Replace the stored history for ``user``."""
        path = self._path(user)
        payload = [m.model_dump(mode="json", exclude_none=True) for m in messages]
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".tmp")
            tmp.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
            tmp.replace(path)
        except OSError as e:
            self._cache.pop(path, None)
            raise HistoryError(f"Failed to write chat history for {user}: {e}") from e
        self._cache[path] = list(messages)

    def append(self, user: str, message: Message):
        cached = self._cache.get(self._path(user))
        messages = list(cached) if cached is not None else self.load(user)
        messages.append(message)
        self.save(user, messages)

    def clear(self, user: str):
        path = self._path(user)
        self._cache.pop(path, None)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise HistoryError(f"Failed to delete chat history for {user}: {e}") from e
        logger.info(f"Chat history cleared for {user}")

    def get_chat_history(
        self,
        user: str,
        days: int = 30,
        now: Optional[datetime] = None,
    ) -> list[ChatDay]:
        """
        Messages from the last ``days`` days grouped by UTC date.

        Returns:
            Days newest first, each day's messages oldest first
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=days)

        grouped: dict[str, list[Message]] = {}
        for message in self.load(user):
            created = message.created_at
            if created < cutoff:
                continue
            date_key = created.astimezone(timezone.utc).date().isoformat()
            grouped.setdefault(date_key, []).append(message)

        return [
            ChatDay(date=date, messages=sorted(msgs, key=lambda m: m.created_at))
            for date, msgs in sorted(grouped.items(), reverse=True)
        ]
