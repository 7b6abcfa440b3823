"""Transport capability used by sessions, plus an in-process loopback network.

A transport hands out *endpoints* (a listening identity other peers can dial)
and *channels* (an ordered, reliable, bidirectional link between two
endpoints). Everything the transport observes is reported back as one of the
event dataclasses below, delivered to the listener given at
``open_endpoint`` time. Events are never delivered from inside the call
that caused them, so callers can store the returned endpoint or channel
before its first event arrives.
"""

from __future__ import annotations

import copy
import logging
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol, Union

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

PEER_ID_LENGTH = 6
DEFAULT_KEY = "peerxo"


class TransportError(RuntimeError):
    """Raised when a transport cannot start a connection."""


def normalize_peer_id(peer_id: str) -> str:
    """Peer ids are matched case-insensitively and stored upper case."""
    return peer_id.strip().upper()


class TransportConfig(BaseModel):
    """Options for reaching the peer broker.

    Passed explicitly each time a session starts hosting or joining.
    """

    peer_id: Optional[str] = Field(default=None, min_length=1)
    host: str = "127.0.0.1"
    port: int = Field(default=8000, ge=1, le=65535)
    path: str = "/"
    secure: bool = False
    key: str = DEFAULT_KEY
    reliable: bool = True


# ---------- Capability protocols ----------


class Channel(Protocol):
    @property
    def open(self) -> bool: ...

    def send(self, payload: Dict[str, Any]) -> None: ...

    def close(self) -> None: ...


class Endpoint(Protocol):
    @property
    def id(self) -> Optional[str]: ...

    def connect(self, target_id: str, reliable: bool = True) -> Channel: ...

    def destroy(self) -> None: ...


# ---------- Events ----------


@dataclass(frozen=True)
class EndpointOpened:
    endpoint: Endpoint
    peer_id: str


@dataclass(frozen=True)
class EndpointFailed:
    endpoint: Endpoint
    reason: str


@dataclass(frozen=True)
class IncomingConnection:
    endpoint: Endpoint
    channel: Channel


@dataclass(frozen=True)
class ChannelOpened:
    channel: Channel


@dataclass(frozen=True)
class ChannelData:
    channel: Channel
    payload: Any


@dataclass(frozen=True)
class ChannelClosed:
    channel: Channel


@dataclass(frozen=True)
class ChannelFailed:
    channel: Channel
    reason: str


TransportEvent = Union[
    EndpointOpened,
    EndpointFailed,
    IncomingConnection,
    ChannelOpened,
    ChannelData,
    ChannelClosed,
    ChannelFailed,
]

Listener = Callable[[TransportEvent], None]


class Transport(Protocol):
    def open_endpoint(
        self, config: TransportConfig, listener: Listener
    ) -> Endpoint: ...


# ---------- Loopback network ----------


class LoopbackChannel:
    """One side of an in-process channel."""

    def __init__(self, network: "LoopbackNetwork", owner: "LoopbackEndpoint"):
        self._network = network
        self.owner = owner
        self.peer: Optional[LoopbackChannel] = None
        self._open = False
        self.closed = False

    @property
    def open(self) -> bool:
        return self._open and not self.closed

    def send(self, payload: Dict[str, Any]) -> None:
        if not self.open or self.peer is None:
            raise TransportError("Channel is not open")
        peer = self.peer
        data = copy.deepcopy(payload)
        self._network.post(lambda: peer._deliver(ChannelData(peer, data)))

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._open = False
        peer = self.peer
        if peer is not None and not peer.closed:
            peer.closed = True
            peer._open = False
            self._network.post(lambda: peer._deliver(ChannelClosed(peer)))

    def fail(self, reason: str) -> None:
        """Simulate a transport error seen by both sides."""
        for side in (self, self.peer):
            if side is None or side.closed:
                continue
            side.closed = True
            side._open = False
            self._network.post(
                lambda side=side: side._deliver(ChannelFailed(side, reason))
            )

    def _mark_open(self) -> None:
        if self.closed:
            return
        self._open = True
        self._deliver(ChannelOpened(self))

    def _deliver(self, event: TransportEvent) -> None:
        self.owner._deliver(event)


class LoopbackEndpoint:
    def __init__(
        self, network: "LoopbackNetwork", peer_id: str, listener: Listener
    ):
        self._network = network
        self._peer_id = peer_id
        self._listener = listener
        self.channels: List[LoopbackChannel] = []
        self.destroyed = False

    @property
    def id(self) -> Optional[str]:
        return None if self.destroyed else self._peer_id

    def connect(self, target_id: str, reliable: bool = True) -> LoopbackChannel:
        if self.destroyed:
            raise TransportError("Endpoint has been destroyed")
        local = LoopbackChannel(self._network, self)
        self.channels.append(local)
        self._network.post(lambda: self._network._offer(local, target_id))
        return local

    def destroy(self) -> None:
        if self.destroyed:
            return
        for channel in list(self.channels):
            channel.close()
        self.destroyed = True
        self._network._unregister(self)

    def _deliver(self, event: TransportEvent) -> None:
        if self.destroyed:
            return
        self._listener(event)


class LoopbackNetwork:
    """In-process transport delivering every event through one FIFO queue.

    Nothing is delivered until ``step`` or ``run_until_idle`` is called, and
    each delivery runs to completion before the next one starts.
    """

    def __init__(self) -> None:
        self.endpoints: Dict[str, LoopbackEndpoint] = {}
        self._queue: Deque[Callable[[], None]] = deque()

    def open_endpoint(
        self, config: TransportConfig, listener: Listener
    ) -> LoopbackEndpoint:
        peer_id = normalize_peer_id(config.peer_id or "") or self._generate_peer_id()
        if peer_id in self.endpoints:
            raise TransportError(f"Peer id {peer_id} is already taken")
        endpoint = LoopbackEndpoint(self, peer_id, listener)
        self.endpoints[peer_id] = endpoint
        self.post(lambda: endpoint._deliver(EndpointOpened(endpoint, peer_id)))
        return endpoint

    def post(self, delivery: Callable[[], None]) -> None:
        self._queue.append(delivery)

    def step(self) -> bool:
        if not self._queue:
            return False
        self._queue.popleft()()
        return True

    def run_until_idle(self, limit: int = 10_000) -> int:
        processed = 0
        while self.step():
            processed += 1
            if processed >= limit:
                raise RuntimeError("Loopback network did not settle")
        return processed

    @property
    def pending(self) -> int:
        return len(self._queue)

    # ---- helpers ----

    def _generate_peer_id(self) -> str:
        while True:
            peer_id = uuid.uuid4().hex[:PEER_ID_LENGTH].upper()
            if peer_id not in self.endpoints:
                return peer_id

    def _unregister(self, endpoint: LoopbackEndpoint) -> None:
        if self.endpoints.get(endpoint._peer_id) is endpoint:
            del self.endpoints[endpoint._peer_id]

    def _offer(self, local: LoopbackChannel, target_id: str) -> None:
        if local.closed:
            return
        target = self.endpoints.get(target_id)
        if target is None:
            logger.debug("Loopback connect to unknown peer %s", target_id)
            local.closed = True
            reason = f"Could not connect to peer {target_id}"
            local._deliver(ChannelFailed(local, reason))
            return

        remote = LoopbackChannel(self, target)
        remote.peer = local
        local.peer = remote
        target.channels.append(remote)
        target._deliver(IncomingConnection(target, remote))
        # The listener may have refused the connection while handling the offer
        self.post(lambda: self._open_pair(remote, local))

    def _open_pair(self, remote: LoopbackChannel, local: LoopbackChannel) -> None:
        if remote.closed or local.closed:
            return
        self.post(remote._mark_open)
        self.post(local._mark_open)
