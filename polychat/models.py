"""Dataclasses for participants, discussion history, wire events and stored records."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, Union

DiscussionMode = Literal["independent", "round_robin", "moderated"]
ParticipantRole = Literal["participant", "moderator"]
MessageRole = Literal["user", "assistant", "system"]


@dataclass(frozen=True)
class Participant:
    id: str
    model_id: str          # provider/model pair, e.g. "openai/gpt-4o"
    display_name: str
    role: ParticipantRole = "participant"
    order_index: int = 0
    conversation_id: str | None = None

    @property
    def is_moderator(self) -> bool:
        return self.role == "moderator"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "conversationId": self.conversation_id,
            "modelId": self.model_id,
            "displayName": self.display_name,
            "role": self.role,
            "orderIndex": self.order_index,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Participant":
        return cls(
            id=str(raw["id"]),
            model_id=str(raw["modelId"]),
            display_name=str(raw["displayName"]),
            role=raw.get("role", "participant"),
            order_index=int(raw.get("orderIndex", 0)),
            conversation_id=raw.get("conversationId"),
        )


@dataclass(frozen=True)
class HistoryEntry:
    role: Literal["user", "assistant"]
    content: str


class DiscussionHistory:
    """Append-only record of the topic and every labeled turn of one run."""

    def __init__(self, topic: str) -> None:
        self._entries: list[HistoryEntry] = [HistoryEntry("user", topic)]

    @property
    def topic(self) -> str:
        return self._entries[0].content

    @property
    def entries(self) -> tuple[HistoryEntry, ...]:
        return tuple(self._entries)

    @property
    def prior_turns(self) -> tuple[HistoryEntry, ...]:
        return tuple(self._entries[1:])

    def append_turn(self, participant: Participant, content: str) -> None:
        if participant.is_moderator:
            label = f"[Moderator - {participant.display_name}]"
        else:
            label = f"[{participant.display_name}]"
        self._entries.append(HistoryEntry("assistant", f"{label}: {content}"))

    def __len__(self) -> int:
        return len(self._entries)


# --- Wire events -----------------------------------------------------------


@dataclass(frozen=True)
class TurnStartEvent:
    participant_id: str
    model_id: str
    display_name: str
    round: int
    type: str = field(default="turn_start", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "participantId": self.participant_id,
            "modelId": self.model_id,
            "displayName": self.display_name,
            "round": self.round,
        }


@dataclass(frozen=True)
class TokenEvent:
    content: str
    participant_id: str
    type: str = field(default="token", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "content": self.content, "participantId": self.participant_id}


@dataclass(frozen=True)
class TurnEndEvent:
    participant_id: str
    full_content: str
    round: int
    message_id: str | None
    type: str = field(default="turn_end", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "participantId": self.participant_id,
            "fullContent": self.full_content,
            "round": self.round,
            "messageId": self.message_id,
        }


@dataclass(frozen=True)
class DiscussionCompleteEvent:
    total_rounds: int
    type: str = field(default="discussion_complete", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "totalRounds": self.total_rounds}


@dataclass(frozen=True)
class ErrorEvent:
    message: str
    participant_id: str | None = None
    type: str = field(default="error", init=False)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type, "message": self.message}
        if self.participant_id is not None:
            data["participantId"] = self.participant_id
        return data


DiscussionEvent = Union[TurnStartEvent, TokenEvent, TurnEndEvent, DiscussionCompleteEvent, ErrorEvent]


# --- Stored records --------------------------------------------------------


@dataclass
class StoredMessage:
    id: str
    conversation_id: str
    role: MessageRole
    content: str
    participant_id: str | None = None  # None for the user's own message
    model_id: str | None = None
    round_number: int | None = None
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "conversationId": self.conversation_id,
            "participantId": self.participant_id,
            "role": self.role,
            "content": self.content,
            "modelId": self.model_id,
            "roundNumber": self.round_number,
            "createdAt": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "StoredMessage":
        return cls(
            id=str(raw["id"]),
            conversation_id=str(raw["conversationId"]),
            role=raw["role"],
            content=str(raw["content"]),
            participant_id=raw.get("participantId"),
            model_id=raw.get("modelId"),
            round_number=raw.get("roundNumber"),
            created_at=datetime.fromisoformat(raw["createdAt"]),
        )


@dataclass
class Conversation:
    id: str
    title: str
    mode: DiscussionMode
    created_at: datetime
    updated_at: datetime
    participants: list[Participant] = field(default_factory=list)
    messages: list[StoredMessage] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "mode": self.mode,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "participants": [p.to_dict() for p in self.participants],
            "messages": [m.to_dict() for m in self.messages],
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Conversation":
        return cls(
            id=str(raw["id"]),
            title=str(raw["title"]),
            mode=raw["mode"],
            created_at=datetime.fromisoformat(raw["createdAt"]),
            updated_at=datetime.fromisoformat(raw["updatedAt"]),
            participants=[Participant.from_dict(p) for p in raw.get("participants", [])],
            messages=[StoredMessage.from_dict(m) for m in raw.get("messages", [])],
        )
