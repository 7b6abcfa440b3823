"""Connection lifecycle for one PeerXO player: hosting, joining and playing."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, Optional, assert_never

from .chat import ChatLog, ChatMessage
from .game import DEFAULT_BOARD_SIZE, GameSnapshot, GameStatus, Mark, TicTacToeEngine
from .sync import SyncHandler
from .transport import (
    Channel,
    ChannelClosed,
    ChannelData,
    ChannelFailed,
    ChannelOpened,
    Endpoint,
    EndpointFailed,
    EndpointOpened,
    IncomingConnection,
    Transport,
    TransportConfig,
    TransportError,
    TransportEvent,
    normalize_peer_id,
)

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    HOSTING = "hosting"
    JOINING = "joining"
    CONNECTED = "connected"


class PeerSession:
    """State machine for one local player.

    Every transport event goes through ``handle`` and runs to completion
    before the next one, so no locking is needed. Events from a channel or
    endpoint that has already been torn down are ignored.
    """

    def __init__(
        self,
        transport: Transport,
        engine: Optional[TicTacToeEngine] = None,
        board_size: int = DEFAULT_BOARD_SIZE,
    ):
        self.transport = transport
        self.engine = engine if engine is not None else TicTacToeEngine(board_size)
        self.chat = ChatLog()
        self._sync = SyncHandler(
            self.engine, self.chat, send=self._send_payload, notify=self._set_info
        )
        self.state = SessionState.IDLE
        self.host_id = ""
        self.info_message: Optional[str] = None
        self.error_message: Optional[str] = None
        self._endpoint: Optional[Endpoint] = None
        self._channel: Optional[Channel] = None
        self._initiator = False
        self._has_opened = False
        self._join_target = ""
        self._config = TransportConfig()

    # ---- derived state ----

    @property
    def snapshot(self) -> GameSnapshot:
        return self.engine.get_snapshot()

    @property
    def username(self) -> str:
        return self._sync.username

    @property
    def local_mark(self) -> Optional[Mark]:
        return self._sync.local_mark

    @property
    def remote_mark(self) -> Optional[Mark]:
        local = self.local_mark
        return None if local is None else local.opponent

    @property
    def opponent_name(self) -> str:
        return self._sync.opponent_name

    @property
    def is_connected(self) -> bool:
        return self.state is SessionState.CONNECTED

    @property
    def is_players_turn(self) -> bool:
        snapshot = self.snapshot
        return (
            self.is_connected
            and snapshot.status is GameStatus.IN_PROGRESS
            and self.local_mark is not None
            and snapshot.current_player is self.local_mark
        )

    @property
    def status_message(self) -> str:
        snapshot = self.snapshot
        if snapshot.status is GameStatus.WON and snapshot.winner is not None:
            return f"Winner: {snapshot.winner.value}"
        if snapshot.status is GameStatus.DRAW:
            return "Draw! No moves remain."
        if not self.is_connected:
            return "Connect two peers to start playing."
        return f"Turn: {snapshot.current_player.value}"

    @property
    def connection_label(self) -> str:
        if self.state is SessionState.HOSTING:
            return "Hosting (waiting for opponent)..."
        if self.state is SessionState.JOINING:
            return "Connecting to host..."
        if self.state is SessionState.CONNECTED:
            mark = self.local_mark.value if self.local_mark is not None else "?"
            return f"Connected as {mark}"
        return "Idle"

    @property
    def chat_placeholder(self) -> str:
        if self.is_connected:
            return "Send a message to your opponent"
        return "Connect to enable chat"

    # ---- user intents ----

    def start_hosting(
        self, username: str, config: Optional[TransportConfig] = None
    ) -> bool:
        name = username.strip()
        if not self._ensure_username(name):
            return False

        self._prepare_for_new_session()
        self._sync.bind(name, Mark.X)
        self._initiator = False
        self._transition(SessionState.HOSTING)
        return self._open_endpoint(config)

    def join_game(
        self,
        username: str,
        target_id: str,
        config: Optional[TransportConfig] = None,
    ) -> bool:
        name = username.strip()
        if not self._ensure_username(name):
            return False
        target = normalize_peer_id(target_id)
        if not target:
            self._set_error("Enter a host ID to join.")
            return False

        self._prepare_for_new_session()
        self._sync.bind(name, Mark.O)
        self._initiator = True
        self._join_target = target
        self._transition(SessionState.JOINING)
        return self._open_endpoint(config)

    def cancel(self) -> None:
        self._disconnect("Session cancelled.")

    def close(self) -> None:
        """Release every transport resource, e.g. when the app shuts down."""
        self._disconnect(None)

    def can_play_cell(self, index: int) -> bool:
        return self.is_players_turn and self.engine.can_play(index)

    def click_cell(self, index: int) -> bool:
        if not self.can_play_cell(index):
            self._set_error("That cell cannot be played right now.")
            return False
        return self._sync.play_local(index) is not None

    def reset_game(self, announce: bool = True) -> GameSnapshot:
        snapshot = self.engine.reset(Mark.X)
        if announce and self.is_connected:
            self._sync.announce_reset()
        return snapshot

    def send_chat(self, text: str) -> Optional[ChatMessage]:
        if not self.is_connected:
            return None
        text = text.strip()
        if not text:
            return None
        return self._sync.send_chat(text)

    # ---- transport events ----

    def handle(self, event: TransportEvent) -> None:
        if isinstance(event, EndpointOpened):
            self._on_endpoint_open(event)
        elif isinstance(event, EndpointFailed):
            self._on_endpoint_error(event)
        elif isinstance(event, IncomingConnection):
            self._on_incoming_connection(event)
        elif isinstance(event, ChannelOpened):
            self._on_channel_open(event)
        elif isinstance(event, ChannelData):
            if event.channel is self._channel:
                self._sync.receive(event.payload)
        elif isinstance(event, ChannelClosed):
            if event.channel is self._channel:
                if not self._has_opened:
                    self._pre_open_failure(
                        "Connection closed before it could be established."
                    )
                else:
                    self._disconnect("Peer disconnected.")
        elif isinstance(event, ChannelFailed):
            if event.channel is self._channel:
                if not self._has_opened:
                    self._pre_open_failure(f"Negotiation failed: {event.reason}")
                else:
                    self._disconnect(event.reason)
        else:
            assert_never(event)

    def _on_endpoint_open(self, event: EndpointOpened) -> None:
        if event.endpoint is not self._endpoint:
            return
        self.host_id = event.peer_id
        if self.state is SessionState.HOSTING:
            self._set_info("Share your host ID with a friend to let them join.")
            return
        if self.state is SessionState.JOINING:
            try:
                channel = event.endpoint.connect(
                    self._join_target, reliable=self._config.reliable
                )
            except TransportError as exc:
                logger.warning("Could not connect to %s: %s", self._join_target, exc)
                self._disconnect("Failed to connect to host.")
                self._set_error("Unable to initiate connection.")
                return
            self._setup_channel(channel)

    def _on_endpoint_error(self, event: EndpointFailed) -> None:
        if event.endpoint is not self._endpoint:
            return
        logger.warning("Endpoint error in state %s: %s", self.state.value, event.reason)
        if self.state in (SessionState.HOSTING, SessionState.JOINING):
            self._disconnect(event.reason)
        self._set_error(event.reason)

    def _on_incoming_connection(self, event: IncomingConnection) -> None:
        if (
            event.endpoint is not self._endpoint
            or self._channel is not None
            or self.state is not SessionState.HOSTING
        ):
            logger.info("Rejecting extra inbound connection")
            self._safe_close(event.channel)
            return
        self._setup_channel(event.channel)

    def _on_channel_open(self, event: ChannelOpened) -> None:
        if event.channel is not self._channel:
            return
        self._has_opened = True
        self._transition(SessionState.CONNECTED)
        self._set_error(None)
        self._set_info("Peers connected. Have fun!")
        if self._initiator:
            self._sync.send_join()

    # ---- helpers ----

    def _setup_channel(self, channel: Channel) -> None:
        self._channel = channel
        self._has_opened = False
        self.chat.clear()
        self._sync.opponent_name = ""

    def _pre_open_failure(self, message: str) -> None:
        if self.state is SessionState.HOSTING:
            # The listening endpoint survives, another peer may still dial in
            self._release_channel()
            self._set_error(message)
            self._set_info("Still hosting. Waiting for another opponent.")
            return
        if self.state is SessionState.JOINING:
            self._disconnect("Failed to connect to host.")
            self._set_error(message)
            return
        self._disconnect(message)

    def _prepare_for_new_session(self) -> None:
        self._cleanup_endpoint()
        self.reset_game(announce=False)
        self.chat.clear()
        self._sync.forget_peer()
        self.host_id = ""
        self._join_target = ""

    def _open_endpoint(self, config: Optional[TransportConfig]) -> bool:
        self._config = config or TransportConfig()
        try:
            self._endpoint = self.transport.open_endpoint(self._config, self.handle)
        except TransportError as exc:
            logger.warning("Could not open endpoint: %s", exc)
            self._transition(SessionState.IDLE)
            self._sync.forget_peer()
            self._set_error(str(exc))
            return False
        return True

    def _disconnect(self, message: Optional[str]) -> None:
        self._set_info(message)
        self._transition(SessionState.IDLE)
        self._sync.forget_peer()
        self.chat.clear()
        self.host_id = ""
        self._cleanup_endpoint()

    def _cleanup_endpoint(self) -> None:
        self._release_channel()
        endpoint, self._endpoint = self._endpoint, None
        if endpoint is not None:
            try:
                endpoint.destroy()
            except Exception:  # teardown must always complete
                logger.debug("Ignoring error while destroying endpoint", exc_info=True)

    def _release_channel(self) -> None:
        channel, self._channel = self._channel, None
        self._has_opened = False
        if channel is not None:
            self._safe_close(channel)

    @staticmethod
    def _safe_close(channel: Channel) -> None:
        try:
            channel.close()
        except Exception:  # teardown must always complete
            logger.debug("Ignoring error while closing channel", exc_info=True)

    def _send_payload(self, payload: Dict[str, Any]) -> None:
        channel = self._channel
        if channel is None or not channel.open:
            return
        channel.send(payload)

    def _transition(self, state: SessionState) -> None:
        if state is not self.state:
            logger.info("Session %s -> %s", self.state.value, state.value)
        self.state = state

    def _ensure_username(self, name: str) -> bool:
        if not name:
            self._set_error("Choose a username first.")
            return False
        self._set_error(None)
        return True

    def _set_error(self, message: Optional[str]) -> None:
        self.error_message = message
        if message:
            self.info_message = None

    def _set_info(self, message: Optional[str]) -> None:
        self.info_message = message
