"""Bridges the local engine and chat log to the peer data channel."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional, assert_never

from .chat import ChatLog, ChatMessage, ChatOrigin, new_chat_message
from .game import GameError, GameSnapshot, Mark, TicTacToeEngine
from .protocol import (
    ChatWireMessage,
    HostReadyMessage,
    JoinMessage,
    MoveMessage,
    ProtocolError,
    ResetMessage,
    SnapshotPayload,
    WireMessage,
    dump_message,
    parse_message,
)

logger = logging.getLogger(__name__)

Sender = Callable[[Dict[str, Any]], None]
Notifier = Callable[[str], None]


def _ignore(_: str) -> None:
    return None


class SyncHandler:
    """Turns incoming wire messages into engine/chat updates and back.

    The handler never checks whose turn an incoming ``move`` belongs to: the
    sending peer enforces that before it sends, and the engine only rejects
    moves that are illegal on the board itself.
    """

    def __init__(
        self,
        engine: TicTacToeEngine,
        chat: ChatLog,
        send: Sender,
        notify: Notifier = _ignore,
    ):
        self.engine = engine
        self.chat = chat
        self._send = send
        self._notify = notify
        self.username = ""
        self.local_mark: Optional[Mark] = None
        self.opponent_name = ""

    def bind(self, username: str, mark: Mark) -> None:
        self.username = username
        self.local_mark = mark
        self.opponent_name = ""

    def forget_peer(self) -> None:
        self.local_mark = None
        self.opponent_name = ""

    # ---- receive side ----

    def receive(self, payload: Any) -> None:
        try:
            message = parse_message(payload)
        except ProtocolError as exc:
            logger.warning("Dropping malformed payload from peer: %s", exc)
            return
        self.dispatch(message)

    def dispatch(self, message: WireMessage) -> None:
        if isinstance(message, JoinMessage):
            self._on_join(message)
        elif isinstance(message, HostReadyMessage):
            self._on_host_ready(message)
        elif isinstance(message, MoveMessage):
            self.apply_move(message.cell_index, local=False)
        elif isinstance(message, ResetMessage):
            # Never re-broadcast, the peer already reset
            self.engine.reset(Mark.X)
        elif isinstance(message, ChatWireMessage):
            self.chat.append(
                new_chat_message(
                    ChatOrigin.PEER,
                    message.username,
                    message.message,
                    timestamp=message.timestamp,
                )
            )
        else:
            assert_never(message)

    def _on_join(self, message: JoinMessage) -> None:
        self.opponent_name = message.username
        self._notify(f"{message.username} joined your lobby.")
        self.send(
            HostReadyMessage(
                username=self.username,
                you_are=Mark.O,
                snapshot=SnapshotPayload.from_snapshot(self.engine.get_snapshot()),
            )
        )

    def _on_host_ready(self, message: HostReadyMessage) -> None:
        self.opponent_name = message.username
        self.local_mark = message.you_are
        try:
            self.engine.load_snapshot(message.snapshot.to_snapshot())
        except GameError as exc:
            logger.warning("Could not adopt host snapshot: %s", exc)
            return
        self._notify(
            f"Connected to {message.username}. "
            f"You are playing as {message.you_are.value}."
        )

    # ---- send side ----

    def apply_move(self, index: int, local: bool) -> Optional[GameSnapshot]:
        try:
            snapshot = self.engine.play_move(index)
        except GameError as exc:
            logger.warning(
                "Ignoring %s move %r: %s", "local" if local else "remote", index, exc
            )
            return None
        if local:
            self.send(MoveMessage(cell_index=index))
        return snapshot

    def play_local(self, index: int) -> Optional[GameSnapshot]:
        return self.apply_move(index, local=True)

    def send_join(self) -> None:
        self.send(JoinMessage(username=self.username))

    def announce_reset(self) -> None:
        self.send(ResetMessage())

    def send_chat(self, text: str) -> ChatMessage:
        message = new_chat_message(ChatOrigin.SELF, self.username, text)
        self.chat.append(message)
        self.send(
            ChatWireMessage(
                message=message.text,
                username=message.username,
                timestamp=message.timestamp,
            )
        )
        return message

    def send(self, message: WireMessage) -> None:
        self._send(dump_message(message))
