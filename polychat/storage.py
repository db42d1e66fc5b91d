"""Conversation and message persistence: in-memory store and JSON files on disk."""

import asyncio
import json
import logging
import secrets
import time
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path

import aiofiles
import aiofiles.os

from polychat.models import Conversation, DiscussionMode, MessageRole, Participant, StoredMessage

logger = logging.getLogger(__name__)

_DEFAULT_TITLE = "New Conversation"
_TITLE_MAX_LEN = 60


def generate_id() -> str:
    """Millisecond timestamp plus a short random suffix."""
    return f"{int(time.time() * 1000)}-{secrets.token_hex(4)[:7]}"


def _title_from(text: str) -> str:
    first_line = text.strip().splitlines()[0] if text.strip() else ""
    if len(first_line) <= _TITLE_MAX_LEN:
        return first_line or _DEFAULT_TITLE
    return first_line[:_TITLE_MAX_LEN].rstrip() + "..."


class MessageStore(ABC):
    """Write side used by the orchestrator; it never reads messages back."""

    @abstractmethod
    async def create_message(
        self,
        conversation_id: str,
        role: MessageRole,
        content: str,
        participant_id: str | None = None,
        model_id: str | None = None,
        round_number: int | None = None,
    ) -> StoredMessage:
        """Persist one message and return it with its id and timestamp."""
        ...


class InMemoryMessageStore(MessageStore):
    """Keeps messages in a list. Handy for tests and one-off CLI runs."""

    def __init__(self) -> None:
        self.messages: list[StoredMessage] = []

    async def create_message(
        self,
        conversation_id: str,
        role: MessageRole,
        content: str,
        participant_id: str | None = None,
        model_id: str | None = None,
        round_number: int | None = None,
    ) -> StoredMessage:
        message = StoredMessage(
            id=generate_id(),
            conversation_id=conversation_id,
            role=role,
            content=content,
            participant_id=participant_id,
            model_id=model_id,
            round_number=round_number,
        )
        self.messages.append(message)
        return message


class JsonConversationStore(MessageStore):
    """One ``<conversation id>.json`` file per conversation under ``data_dir``.

    All file access goes through aiofiles so a write never stalls other
    streams on the event loop. Read-modify-write cycles are serialized per
    conversation, since independent turns finish concurrently.
    """

    def __init__(self, data_dir: Path) -> None:
        self._data_dir = data_dir
        self._locks: dict[str, asyncio.Lock] = {}

    def _path(self, conversation_id: str) -> Path:
        # Ids are generated here, but reject anything that could escape data_dir
        if not conversation_id or "/" in conversation_id or "\\" in conversation_id or conversation_id.startswith("."):
            raise KeyError(conversation_id)
        return self._data_dir / f"{conversation_id}.json"

    def _lock(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = self._locks[conversation_id] = asyncio.Lock()
        return lock

    async def _write(self, conversation: Conversation) -> None:
        await aiofiles.os.makedirs(self._data_dir, exist_ok=True)
        path = self._path(conversation.id)
        tmp = path.with_suffix(".json.tmp")
        async with aiofiles.open(tmp, "w", encoding="utf-8") as f:
            await f.write(json.dumps(conversation.to_dict(), ensure_ascii=False, indent=2))
        await aiofiles.os.replace(tmp, path)

    async def _read(self, path: Path) -> Conversation | None:
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                content = await f.read()
            return Conversation.from_dict(json.loads(content))
        except (OSError, ValueError, KeyError) as exc:
            logger.warning("Skipping unreadable conversation file %s: %s", path, exc)
            return None

    async def create_conversation(self, mode: DiscussionMode, participants: list[Participant]) -> Conversation:
        """Create a conversation; participant ids become ``<conversation id>-p<i>``."""
        conversation_id = generate_id()
        now = datetime.now()
        conversation = Conversation(
            id=conversation_id,
            title=_DEFAULT_TITLE,
            mode=mode,
            created_at=now,
            updated_at=now,
            participants=[
                Participant(
                    id=f"{conversation_id}-p{i}",
                    model_id=p.model_id,
                    display_name=p.display_name,
                    role=p.role,
                    order_index=p.order_index,
                    conversation_id=conversation_id,
                )
                for i, p in enumerate(participants)
            ],
        )
        await self._write(conversation)
        logger.info("Created conversation %s (%s, %d participants)", conversation_id, mode, len(participants))
        return conversation

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        try:
            path = self._path(conversation_id)
        except KeyError:
            return None
        if not await aiofiles.os.path.exists(path):
            return None
        return await self._read(path)

    async def list_conversations(self) -> list[Conversation]:
        """All conversations, most recently updated first."""
        if not await aiofiles.os.path.isdir(self._data_dir):
            return []
        names = [n for n in await aiofiles.os.listdir(self._data_dir) if n.endswith(".json")]
        conversations = [c for c in [await self._read(self._data_dir / n) for n in names] if c is not None]
        return sorted(conversations, key=lambda c: c.updated_at, reverse=True)

    async def delete_conversation(self, conversation_id: str) -> bool:
        try:
            path = self._path(conversation_id)
        except KeyError:
            return False
        async with self._lock(conversation_id):
            if not await aiofiles.os.path.exists(path):
                return False
            await aiofiles.os.remove(path)
        self._locks.pop(conversation_id, None)
        return True

    async def update_title(self, conversation_id: str, title: str) -> Conversation:
        """Rename a conversation and return it.

        Raises:
            KeyError: If the conversation does not exist.
        """
        async with self._lock(conversation_id):
            conversation = await self.get_conversation(conversation_id)
            if conversation is None:
                raise KeyError(conversation_id)
            conversation.title = title
            conversation.updated_at = datetime.now()
            await self._write(conversation)
        return conversation

    async def create_message(
        self,
        conversation_id: str,
        role: MessageRole,
        content: str,
        participant_id: str | None = None,
        model_id: str | None = None,
        round_number: int | None = None,
    ) -> StoredMessage:
        """Append a message to the conversation file.

        Raises:
            KeyError: If the conversation does not exist.
        """
        async with self._lock(conversation_id):
            conversation = await self.get_conversation(conversation_id)
            if conversation is None:
                raise KeyError(conversation_id)

            message = StoredMessage(
                id=generate_id(),
                conversation_id=conversation_id,
                role=role,
                content=content,
                participant_id=participant_id,
                model_id=model_id,
                round_number=round_number,
            )
            if role == "user" and conversation.title == _DEFAULT_TITLE and not conversation.messages:
                conversation.title = _title_from(content)
            conversation.messages.append(message)
            conversation.updated_at = message.created_at
            await self._write(conversation)
        return message
