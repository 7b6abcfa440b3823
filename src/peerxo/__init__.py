"""PeerXO package exposing the game engine, peer session and broker app."""

from .broker import app
from .game import GameSnapshot, GameStatus, Mark, TicTacToeEngine
from .remote import BrokerNetwork
from .session import PeerSession, SessionState
from .transport import LoopbackNetwork, TransportConfig

__all__ = [
    "BrokerNetwork",
    "GameSnapshot",
    "GameStatus",
    "LoopbackNetwork",
    "Mark",
    "PeerSession",
    "SessionState",
    "TicTacToeEngine",
    "TransportConfig",
    "app",
]
