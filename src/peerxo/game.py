"""Core rules for PeerXO: board evaluation and the game engine."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from functools import lru_cache
from typing import List, Optional, Sequence, Tuple

DEFAULT_BOARD_SIZE = 3
MIN_BOARD_SIZE = 3


class Mark(str, Enum):
    X = "X"
    O = "O"

    @property
    def opponent(self) -> "Mark":
        return Mark.O if self is Mark.X else Mark.X


class GameStatus(str, Enum):
    IN_PROGRESS = "in-progress"
    WON = "won"
    DRAW = "draw"


Cell = Optional[Mark]  # None means empty
Board = Tuple[Cell, ...]


# ---------- Errors ----------


class GameError(ValueError):
    """Base class for engine contract violations."""


class InvalidBoardSize(GameError):
    pass


class SizeMismatch(GameError):
    pass


class IndexOutOfRange(GameError):
    pass


class CellOccupied(GameError):
    pass


class GameNotInProgress(GameError):
    pass


class NoMovesAvailable(GameError):
    pass


# ---------- Snapshot ----------


@dataclass(frozen=True)
class Move:
    index: int
    player: Mark


@dataclass(frozen=True)
class GameSnapshot:
    """Complete game state at one instant.

    Snapshots are immutable: the board and history are tuples, so the engine
    can hand them out without worrying about callers mutating its state.
    """

    board: Board
    status: GameStatus = GameStatus.IN_PROGRESS
    current_player: Mark = Mark.X
    winner: Optional[Mark] = None
    winning_line: Optional[Tuple[int, ...]] = None
    move_count: int = 0
    history: Tuple[Move, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        # Accept lists from callers but always store tuples
        object.__setattr__(
            self, "board", tuple(Mark(c) if c is not None else None for c in self.board)
        )
        object.__setattr__(self, "status", GameStatus(self.status))
        object.__setattr__(self, "current_player", Mark(self.current_player))
        object.__setattr__(self, "history", tuple(self.history))
        if self.winner is not None:
            object.__setattr__(self, "winner", Mark(self.winner))
        if self.winning_line is not None:
            object.__setattr__(self, "winning_line", tuple(self.winning_line))

    @classmethod
    def empty(cls, size: int, first_player: Mark = Mark.X) -> "GameSnapshot":
        return cls(board=(None,) * (size * size), current_player=first_player)


# ---------- Board evaluator ----------


@dataclass(frozen=True)
class Evaluation:
    status: GameStatus
    winner: Optional[Mark] = None
    winning_line: Optional[Tuple[int, ...]] = None


@lru_cache(maxsize=None)
def winning_lines(size: int) -> Tuple[Tuple[int, ...], ...]:
    """Rows, then columns, then the main and anti diagonal."""
    lines: List[Tuple[int, ...]] = []
    for row in range(size):
        start = row * size
        lines.append(tuple(range(start, start + size)))
    for col in range(size):
        lines.append(tuple(row * size + col for row in range(size)))
    lines.append(tuple(i * (size + 1) for i in range(size)))
    lines.append(tuple((i + 1) * (size - 1) for i in range(size)))
    return tuple(lines)


def evaluate_board(board: Sequence[Cell], size: int) -> Evaluation:
    if len(board) != size * size:
        raise SizeMismatch(
            f"Board has {len(board)} cells, expected {size * size} for size {size}"
        )

    for line in winning_lines(size):
        first = board[line[0]]
        if first is not None and all(board[i] == first for i in line[1:]):
            return Evaluation(GameStatus.WON, winner=first, winning_line=line)

    if all(c is not None for c in board):
        return Evaluation(GameStatus.DRAW)
    return Evaluation(GameStatus.IN_PROGRESS)


# ---------- Engine ----------


class TicTacToeEngine:
    """Owns one game snapshot and applies moves to it.

    The engine never does I/O. Every mutating call builds a new snapshot and
    swaps it in only once the move has been validated.
    """

    def __init__(
        self, board_size: int = DEFAULT_BOARD_SIZE, first_player: Mark = Mark.X
    ):
        if isinstance(board_size, bool) or not isinstance(board_size, int):
            raise InvalidBoardSize("Board size must be an integer")
        if board_size < MIN_BOARD_SIZE:
            raise InvalidBoardSize(f"Board size must be at least {MIN_BOARD_SIZE}")
        self.board_size = board_size
        self.total_cells = board_size * board_size
        self._snapshot = GameSnapshot.empty(board_size, Mark(first_player))

    # ---- API used by the session & sync layers ----

    def reset(self, first_player: Mark = Mark.X) -> GameSnapshot:
        self._snapshot = GameSnapshot.empty(self.board_size, Mark(first_player))
        return self._snapshot

    def load_snapshot(self, snapshot: GameSnapshot) -> GameSnapshot:
        """Adopt a snapshot from elsewhere (typically the host) as local truth."""
        if len(snapshot.board) != self.total_cells:
            raise SizeMismatch("Snapshot size does not match the configured board")
        self._snapshot = replace(snapshot)
        return self._snapshot

    def play_move(self, index: int) -> GameSnapshot:
        self._assert_move_allowed(index)
        current = self._snapshot
        player = current.current_player

        board = list(current.board)
        board[index] = player
        result = evaluate_board(board, self.board_size)

        # The turn only passes while the game is still running
        next_player = (
            player.opponent if result.status is GameStatus.IN_PROGRESS else player
        )
        self._snapshot = GameSnapshot(
            board=tuple(board),
            status=result.status,
            current_player=next_player,
            winner=result.winner,
            winning_line=result.winning_line,
            move_count=current.move_count + 1,
            history=current.history + (Move(index=index, player=player),),
        )
        return self._snapshot

    def get_snapshot(self) -> GameSnapshot:
        return self._snapshot

    def available_moves(self) -> List[int]:
        return [i for i, c in enumerate(self._snapshot.board) if c is None]

    def can_play(self, index: int) -> bool:
        return (
            self._valid_index(index)
            and self._snapshot.board[index] is None
            and self._snapshot.status is GameStatus.IN_PROGRESS
        )

    def auto_play(self) -> GameSnapshot:
        """Play the lowest free cell. Placeholder strategy, not an opponent AI."""
        moves = self.available_moves()
        if not moves:
            raise NoMovesAvailable("No moves available")
        return self.play_move(moves[0])

    # ---- helpers ----

    def _valid_index(self, index: object) -> bool:
        return (
            isinstance(index, int)
            and not isinstance(index, bool)
            and 0 <= index < self.total_cells
        )

    def _assert_move_allowed(self, index: int) -> None:
        if self._snapshot.status is not GameStatus.IN_PROGRESS:
            raise GameNotInProgress("Game is not currently accepting moves")
        if not self._valid_index(index):
            raise IndexOutOfRange(
                f"Move index must be an integer between 0 and {self.total_cells - 1}"
            )
        if self._snapshot.board[index] is not None:
            raise CellOccupied(f"Cell {index} is already occupied")
