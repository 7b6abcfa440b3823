"""Chat log shared by both peers of a session."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, List, Optional, Tuple


class ChatOrigin(str, Enum):
    SELF = "self"
    PEER = "peer"


@dataclass(frozen=True)
class ChatMessage:
    id: str
    origin: ChatOrigin
    username: str
    text: str
    timestamp: int  # milliseconds since the epoch


def new_chat_message(
    origin: ChatOrigin, username: str, text: str, timestamp: Optional[int] = None
) -> ChatMessage:
    if timestamp is None:
        timestamp = int(time.time() * 1000)
    return ChatMessage(
        id=uuid.uuid4().hex,
        origin=origin,
        username=username,
        text=text,
        timestamp=timestamp,
    )


class ChatLog:
    """Append-only, in arrival order. Ordering is whatever the channel delivered."""

    def __init__(self) -> None:
        self._messages: List[ChatMessage] = []

    def append(self, message: ChatMessage) -> None:
        self._messages.append(message)

    def clear(self) -> None:
        self._messages = []

    @property
    def messages(self) -> Tuple[ChatMessage, ...]:
        return tuple(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[ChatMessage]:
        return iter(self.messages)
