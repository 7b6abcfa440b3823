"""Wire messages exchanged between two PeerXO peers over the data channel."""

from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictInt,
    TypeAdapter,
    ValidationError,
)

from .game import GameSnapshot, GameStatus, Mark, Move


class ProtocolError(ValueError):
    """Raised when a payload received from the peer is not a valid message."""


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)


class MovePayload(_WireModel):
    cell_index: StrictInt = Field(alias="cellIndex")
    player: Mark


class SnapshotPayload(_WireModel):
    """Wire shape of a ``GameSnapshot``."""

    board: List[Optional[Mark]]
    status: GameStatus
    current_player: Mark = Field(alias="currentPlayer")
    winner: Optional[Mark] = None
    winning_line: Optional[List[int]] = Field(default=None, alias="winningLine")
    move_count: int = Field(alias="moveCount", ge=0)
    history: List[MovePayload] = Field(default_factory=list)

    @classmethod
    def from_snapshot(cls, snapshot: GameSnapshot) -> "SnapshotPayload":
        return cls(
            board=list(snapshot.board),
            status=snapshot.status,
            current_player=snapshot.current_player,
            winner=snapshot.winner,
            winning_line=(
                list(snapshot.winning_line)
                if snapshot.winning_line is not None
                else None
            ),
            move_count=snapshot.move_count,
            history=[
                MovePayload(cell_index=m.index, player=m.player)
                for m in snapshot.history
            ],
        )

    def to_snapshot(self) -> GameSnapshot:
        return GameSnapshot(
            board=tuple(self.board),
            status=self.status,
            current_player=self.current_player,
            winner=self.winner,
            winning_line=(
                tuple(self.winning_line) if self.winning_line is not None else None
            ),
            move_count=self.move_count,
            history=tuple(
                Move(index=m.cell_index, player=m.player) for m in self.history
            ),
        )


class JoinMessage(_WireModel):
    type: Literal["join"] = "join"
    username: str


class HostReadyMessage(_WireModel):
    type: Literal["host-ready"] = "host-ready"
    username: str
    you_are: Mark = Field(alias="youAre")
    snapshot: SnapshotPayload


class MoveMessage(_WireModel):
    type: Literal["move"] = "move"
    cell_index: StrictInt = Field(alias="cellIndex")


class ResetMessage(_WireModel):
    type: Literal["reset"] = "reset"


class ChatWireMessage(_WireModel):
    type: Literal["chat"] = "chat"
    message: str
    username: str
    timestamp: int


WireMessage = Annotated[
    Union[JoinMessage, HostReadyMessage, MoveMessage, ResetMessage, ChatWireMessage],
    Field(discriminator="type"),
]

_WIRE_ADAPTER: TypeAdapter[WireMessage] = TypeAdapter(WireMessage)


def parse_message(data: Any) -> WireMessage:
    """Validate a structured payload from the channel into a wire message."""
    try:
        return _WIRE_ADAPTER.validate_python(data)
    except ValidationError as exc:
        raise ProtocolError(f"Invalid peer payload: {exc}") from exc


def dump_message(message: WireMessage) -> Dict[str, Any]:
    return message.model_dump(by_alias=True, mode="json")
