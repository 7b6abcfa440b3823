"""Transport that reaches other peers through the PeerXO broker.

Every endpoint keeps one websocket open on ``/ws/peer/{id}``. A reader thread
per endpoint only receives frames and queues them; listeners run on whichever
thread calls ``step``, ``run_until_idle`` or ``wait_for``, one event at a time,
the same way the loopback network delivers them.
"""

from __future__ import annotations

import json
import logging
import queue
import threading
import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Protocol
from urllib.parse import urlencode

import httpx
from websockets.sync.client import connect as connect_websocket

from .transport import (
    ChannelClosed,
    ChannelData,
    ChannelFailed,
    ChannelOpened,
    EndpointFailed,
    EndpointOpened,
    IncomingConnection,
    Listener,
    TransportConfig,
    TransportError,
    TransportEvent,
    normalize_peer_id,
)

logger = logging.getLogger(__name__)


class BrokerSocket(Protocol):
    def send_json(self, data: Dict[str, Any]) -> None: ...

    def receive_json(self) -> Any: ...

    def close(self) -> None: ...


SocketFactory = Callable[[str], BrokerSocket]


class WebSocketsSocket:
    """``BrokerSocket`` backed by the ``websockets`` sync client."""

    def __init__(self, url: str):
        self._connection = connect_websocket(url)

    def send_json(self, data: Dict[str, Any]) -> None:
        self._connection.send(json.dumps(data))

    def receive_json(self) -> Any:
        return json.loads(self._connection.recv())

    def close(self) -> None:
        self._connection.close()


def broker_url(config: TransportConfig, route: str, websocket: bool = False) -> str:
    if websocket:
        scheme = "wss" if config.secure else "ws"
    else:
        scheme = "https" if config.secure else "http"
    prefix = config.path.strip("/")
    prefix = f"/{prefix}" if prefix else ""
    query = urlencode({"key": config.key})
    return f"{scheme}://{config.host}:{config.port}{prefix}/{route}?{query}"


class BrokerChannel:
    """One side of a connection relayed by the broker."""

    def __init__(
        self,
        endpoint: "BrokerEndpoint",
        connection_id: str,
        remote_id: str,
        reliable: bool = True,
    ):
        self._endpoint = endpoint
        self.connection_id = connection_id
        self.remote_id = remote_id
        self.reliable = reliable
        self._open = False
        self.closed = False

    @property
    def open(self) -> bool:
        return self._open and not self.closed

    def send(self, payload: Dict[str, Any]) -> None:
        if not self.open:
            raise TransportError("Channel is not open")
        self._endpoint._send(
            {"type": "data", "connectionId": self.connection_id, "payload": payload}
        )

    def close(self) -> None:
        if self.closed:
            return
        self._shut()
        try:
            self._endpoint._send({"type": "close", "connectionId": self.connection_id})
        except TransportError:
            logger.debug("Broker gone while closing %s", self.connection_id)

    def _shut(self) -> None:
        self.closed = True
        self._open = False
        self._endpoint.channels.pop(self.connection_id, None)


class BrokerEndpoint:
    def __init__(
        self,
        network: "BrokerNetwork",
        socket: BrokerSocket,
        listener: Listener,
    ):
        self._network = network
        self._socket = socket
        self._listener = listener
        self._peer_id: Optional[str] = None
        self._socket_lock = threading.Lock()
        self._socket_closed = False
        self.channels: Dict[str, BrokerChannel] = {}
        self.destroyed = False
        self._reader = threading.Thread(
            target=self._read_loop, name="peerxo-broker-reader", daemon=True
        )
        self._reader.start()

    @property
    def id(self) -> Optional[str]:
        return None if self.destroyed else self._peer_id

    def connect(self, target_id: str, reliable: bool = True) -> BrokerChannel:
        if self.destroyed:
            raise TransportError("Endpoint has been destroyed")
        if self._peer_id is None:
            raise TransportError("Endpoint is not open yet")
        target = normalize_peer_id(target_id)
        channel = BrokerChannel(self, uuid.uuid4().hex, target, reliable)
        self.channels[channel.connection_id] = channel
        frame = {"type": "connect", "connectionId": channel.connection_id}
        self._send({**frame, "target": target})
        return channel

    def destroy(self) -> None:
        if self.destroyed:
            return
        for channel in list(self.channels.values()):
            channel.close()
        self.destroyed = True
        try:
            # The broker answers by closing the socket, which ends the reader
            self._send({"type": "leave"})
        except TransportError:
            self._close_socket()

    def join(self, timeout: Optional[float] = None) -> None:
        self._reader.join(timeout)

    # ---- reader thread ----

    def _read_loop(self) -> None:
        while True:
            try:
                frame = self._socket.receive_json()
            except Exception as exc:  # any receive failure ends the socket
                reason = str(exc) or type(exc).__name__
                self._network.post(lambda: self._socket_lost(reason))
                break
            self._network.post(lambda frame=frame: self._handle_frame(frame))
        self._close_socket()

    def _close_socket(self) -> None:
        with self._socket_lock:
            if self._socket_closed:
                return
            self._socket_closed = True
        try:
            self._socket.close()
        except Exception:  # teardown must always complete
            logger.debug("Ignoring error while closing broker socket", exc_info=True)

    # ---- delivery, on the driving thread ----

    def _send(self, frame: Dict[str, Any]) -> None:
        if self._socket_closed:
            raise TransportError("Broker connection is closed")
        try:
            self._socket.send_json(frame)
        except Exception as exc:
            raise TransportError(f"Broker connection failed: {exc}") from exc

    def _handle_frame(self, frame: Any) -> None:
        if self.destroyed or not isinstance(frame, dict):
            return
        kind = frame.get("type")
        cid = frame.get("connectionId")
        channel = self.channels.get(cid) if cid is not None else None

        if kind == "open":
            self._peer_id = frame["id"]
            self._deliver(EndpointOpened(self, frame["id"]))
        elif kind == "connection":
            channel = BrokerChannel(self, cid, frame.get("source", ""))
            self.channels[cid] = channel
            self._deliver(IncomingConnection(self, channel))
            # The listener may have refused the connection while handling it
            if not channel.closed and not self.destroyed:
                try:
                    self._send({"type": "accept", "connectionId": cid})
                except TransportError:
                    logger.debug("Broker gone before accepting %s", cid)
        elif kind == "opened":
            if channel is not None and not channel.closed:
                channel._open = True
                self._deliver(ChannelOpened(channel))
        elif kind == "data":
            if channel is not None:
                self._deliver(ChannelData(channel, frame.get("payload")))
        elif kind == "close":
            if channel is not None:
                channel._shut()
                self._deliver(ChannelClosed(channel))
        elif kind == "error":
            message = frame.get("message") or "Broker error"
            if channel is not None:
                channel._shut()
                self._deliver(ChannelFailed(channel, message))
            elif cid is None:
                self._deliver(EndpointFailed(self, message))
            else:
                logger.debug("Broker error for unknown connection %s: %s", cid, message)
        else:
            logger.warning("Ignoring unknown broker frame %r", kind)

    def _socket_lost(self, reason: str) -> None:
        if self.destroyed:
            return
        logger.warning("Lost broker connection: %s", reason)
        for channel in list(self.channels.values()):
            channel._shut()
            self._deliver(ChannelFailed(channel, "Lost connection to the broker"))
        self._deliver(EndpointFailed(self, "Lost connection to the broker"))

    def _deliver(self, event: TransportEvent) -> None:
        if self.destroyed:
            return
        self._listener(event)


class BrokerNetwork:
    """Transport speaking the broker's websocket relay protocol.

    ``http`` is used to allocate peer ids and ``connect`` opens the websocket;
    both default to real network clients and can be swapped for in-process
    ones in tests.
    """

    def __init__(
        self,
        http: Optional[httpx.Client] = None,
        connect: Optional[SocketFactory] = None,
    ):
        self._http = http if http is not None else httpx.Client(timeout=10.0)
        self._connect = connect if connect is not None else WebSocketsSocket
        self._queue: "queue.Queue[Callable[[], None]]" = queue.Queue()
        self.endpoints: List[BrokerEndpoint] = []

    def open_endpoint(
        self, config: TransportConfig, listener: Listener
    ) -> BrokerEndpoint:
        peer_id = normalize_peer_id(config.peer_id or "") or self._allocate(config)
        url = broker_url(config, f"ws/peer/{peer_id}", websocket=True)
        try:
            socket = self._connect(url)
        except Exception as exc:
            raise TransportError(f"Could not reach the broker: {exc}") from exc
        endpoint = BrokerEndpoint(self, socket, listener)
        self.endpoints.append(endpoint)
        return endpoint

    def post(self, delivery: Callable[[], None]) -> None:
        self._queue.put(delivery)

    def step(self, timeout: Optional[float] = None) -> bool:
        try:
            if timeout is None:
                delivery = self._queue.get_nowait()
            else:
                delivery = self._queue.get(timeout=timeout)
        except queue.Empty:
            return False
        delivery()
        return True

    def run_until_idle(self) -> int:
        processed = 0
        while self.step():
            processed += 1
        return processed

    def wait_for(self, condition: Callable[[], bool], timeout: float = 5.0) -> bool:
        """Deliver events until ``condition`` holds or ``timeout`` runs out."""
        deadline = time.monotonic() + timeout
        while not condition():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            self.step(timeout=remaining)
        return True

    def shutdown(self, timeout: float = 5.0) -> None:
        for endpoint in self.endpoints:
            endpoint.destroy()
        for endpoint in self.endpoints:
            endpoint.join(timeout)
        self.endpoints.clear()

    def _allocate(self, config: TransportConfig) -> str:
        try:
            response = self._http.post(broker_url(config, "api/peer"))
            response.raise_for_status()
            return response.json()["peerId"]
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            raise TransportError(f"Could not reach the broker: {exc}") from exc
