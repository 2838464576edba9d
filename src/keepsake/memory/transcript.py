"""Chat transcript collaborator and user/assistant pairing."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Protocol
from typing import runtime_checkable

from pydantic import BaseModel
from pydantic import Field
from pydantic import field_validator

_PAIRED_ROLES = frozenset({"user", "assistant"})


class TranscriptMessage(BaseModel):
    """One rendered chat message, as handed over by the chat service."""

    role: str = Field(description="'user', 'assistant' or 'system'.")
    content: str = Field(description="Message text.")
    id: str | None = Field(default=None, description="Message identifier.")
    timestamp: datetime | None = Field(default=None, description="Send time.")

    @field_validator("role", mode="before")
    @classmethod
    def lowercase_role(cls, value: object) -> object:
        return value.strip().lower() if isinstance(value, str) else value


class Exchange(BaseModel):
    """A user message and the assistant reply that directly follows it."""

    user_message: str
    assistant_message: str
    user_message_id: str | None = None
    assistant_message_id: str | None = None
    timestamp: datetime | None = None


@runtime_checkable
class TranscriptSource(Protocol):
    """Anything able to list the ordered messages of a chat."""

    async def get_messages(self, chat_id: str) -> list[TranscriptMessage]: ...


def pair_exchanges(
    messages: Iterable[TranscriptMessage],
    *,
    after: datetime | None = None,
    max_pairs: int | None = None,
) -> list[Exchange]:
    """Build exchanges from adjacent user -> assistant messages.

    System messages are dropped first, as are messages not strictly later
    than *after* (messages without a timestamp are kept).  A user message
    then counts only when the next remaining message is an assistant
    reply.  *max_pairs* keeps the earliest pairs; ``None`` or ``0`` keeps
    everything.
    """
    conversational = [
        m
        for m in messages
        if m.role in _PAIRED_ROLES
        and (after is None or m.timestamp is None or m.timestamp > after)
    ]
    pairs: list[Exchange] = []
    for current, following in zip(conversational, conversational[1:]):
        if current.role != "user" or following.role != "assistant":
            continue
        pairs.append(
            Exchange(
                user_message=current.content,
                assistant_message=following.content,
                user_message_id=current.id,
                assistant_message_id=following.id,
                timestamp=current.timestamp,
            )
        )
    if max_pairs:
        pairs = pairs[:max_pairs]
    return pairs