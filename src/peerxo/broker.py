"""FastAPI peer broker: hands out peer ids and relays channel frames.

Each peer keeps one websocket open on ``/ws/peer/{peer_id}``. A peer that
knows another peer's id (shared out-of-band) can ``connect`` to it; once the
target ``accept``s, both sides get ``opened`` and may exchange ``data`` frames
until either side sends ``close`` or drops its websocket.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from .transport import DEFAULT_KEY, PEER_ID_LENGTH, normalize_peer_id

logger = logging.getLogger(__name__)

PEER_TTL_SECONDS = 60 * 30  # 30 minutes
BROKER_KEY = os.environ.get("PEERXO_KEY", DEFAULT_KEY)


@dataclass
class PeerSlot:
    """A reserved or online peer identity."""

    peer_id: str
    created_at: float = field(default_factory=lambda: time.time())
    socket: Optional[WebSocket] = field(default=None, repr=False)


@dataclass
class Relay:
    """A brokered connection between two peers."""

    connection_id: str
    source: str
    target: str
    accepted: bool = False

    def other(self, peer_id: str) -> Optional[str]:
        if peer_id == self.source:
            return self.target
        if peer_id == self.target:
            return self.source
        return None


PEERS: Dict[str, PeerSlot] = {}
RELAYS: Dict[str, Relay] = {}
PEER_LOCK = asyncio.Lock()

app = FastAPI(title="PeerXO broker", description="Peer id broker and relay for PeerXO")


class _Frame(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    connection_id: str = Field(alias="connectionId", min_length=1)


class ConnectFrame(_Frame):
    type: Literal["connect"]
    target: str = Field(min_length=1)


class AcceptFrame(_Frame):
    type: Literal["accept"]


class DataFrame(_Frame):
    type: Literal["data"]
    payload: Any = None


class CloseFrame(_Frame):
    type: Literal["close"]


class LeaveFrame(BaseModel):
    """Sent by a peer going away; the broker closes its websocket."""

    type: Literal["leave"]


RelayFrame = Union[ConnectFrame, AcceptFrame, DataFrame, CloseFrame]
BrokerFrame = Annotated[
    Union[ConnectFrame, AcceptFrame, DataFrame, CloseFrame, LeaveFrame],
    Field(discriminator="type"),
]
_FRAME_ADAPTER: TypeAdapter[BrokerFrame] = TypeAdapter(BrokerFrame)


def _cleanup_peers() -> None:
    """Drop reserved ids that never came online."""

    now = time.time()
    expired = [
        peer_id
        for peer_id, slot in list(PEERS.items())
        if slot.socket is None and now - slot.created_at >= PEER_TTL_SECONDS
    ]
    for peer_id in expired:
        PEERS.pop(peer_id, None)


def _generate_peer_id() -> str:
    return uuid.uuid4().hex[:PEER_ID_LENGTH].upper()


def _socket_for(peer_id: Optional[str]) -> Optional[WebSocket]:
    if peer_id is None:
        return None
    slot = PEERS.get(peer_id)
    return slot.socket if slot else None


async def _send(websocket: Optional[WebSocket], message: Dict[str, Any]) -> None:
    if websocket is None:
        return
    try:
        await websocket.send_json(message)
    except RuntimeError:
        logger.debug("Dropping frame for a closed websocket: %s", message.get("type"))


def _check_key(key: str) -> None:
    if key != BROKER_KEY:
        raise HTTPException(status_code=403, detail="Invalid key")


@app.post("/api/peer")
async def create_peer(key: str = DEFAULT_KEY) -> Dict[str, str]:
    _check_key(key)
    for _ in range(10):
        peer_id = _generate_peer_id()
        async with PEER_LOCK:
            _cleanup_peers()
            if peer_id not in PEERS:
                PEERS[peer_id] = PeerSlot(peer_id=peer_id)
                break
    else:
        raise HTTPException(status_code=500, detail="Unable to allocate peer id")
    return {"peerId": peer_id}


@app.get("/api/peer/{peer_id}")
async def inspect_peer(peer_id: str, key: str = DEFAULT_KEY) -> Dict[str, object]:
    _check_key(key)
    normalized = normalize_peer_id(peer_id)
    async with PEER_LOCK:
        _cleanup_peers()
        slot = PEERS.get(normalized)
        if slot is None:
            raise HTTPException(status_code=404, detail="Peer not found")
        online = slot.socket is not None
    return {"peerId": normalized, "online": online}


async def _route(peer_id: str, websocket: WebSocket, frame: RelayFrame) -> None:
    cid = frame.connection_id
    if isinstance(frame, ConnectFrame):
        target_id = normalize_peer_id(frame.target)
        async with PEER_LOCK:
            target = _socket_for(target_id)
            refused = target is None or target_id == peer_id or cid in RELAYS
            if not refused:
                RELAYS[cid] = Relay(
                    connection_id=cid, source=peer_id, target=target_id
                )
        if refused:
            await _send(
                websocket,
                {
                    "type": "error",
                    "connectionId": cid,
                    "message": f"Could not connect to peer {target_id}",
                },
            )
            return
        logger.info("Peer %s connecting to %s (%s)", peer_id, target_id, cid)
        await _send(
            target, {"type": "connection", "connectionId": cid, "source": peer_id}
        )
        return

    opened_now = False
    async with PEER_LOCK:
        relay = RELAYS.get(cid)
        other_id = relay.other(peer_id) if relay else None
        if relay is not None and other_id is not None:
            if isinstance(frame, CloseFrame):
                RELAYS.pop(cid, None)
            elif isinstance(frame, AcceptFrame):
                opened_now = peer_id == relay.target and not relay.accepted
                relay.accepted = relay.accepted or opened_now
        other = _socket_for(other_id)

    if relay is None or other_id is None:
        await _send(
            websocket,
            {"type": "error", "connectionId": cid, "message": "Unknown connection"},
        )
        return

    if isinstance(frame, AcceptFrame):
        # Only the target accepts, and only once
        if not opened_now:
            return
        await _send(websocket, {"type": "opened", "connectionId": cid})
        await _send(other, {"type": "opened", "connectionId": cid})
    elif isinstance(frame, DataFrame):
        if not relay.accepted:
            await _send(
                websocket,
                {
                    "type": "error",
                    "connectionId": cid,
                    "message": "Connection not open",
                },
            )
            return
        await _send(
            other, {"type": "data", "connectionId": cid, "payload": frame.payload}
        )
    else:
        await _send(other, {"type": "close", "connectionId": cid})


@app.websocket("/ws/peer/{peer_id}")
async def peer_socket(
    websocket: WebSocket, peer_id: str, key: str = DEFAULT_KEY
) -> None:
    await websocket.accept()
    if key != BROKER_KEY:
        await websocket.send_json({"type": "error", "message": "Invalid key"})
        await websocket.close()
        return
    normalized = normalize_peer_id(peer_id)

    async with PEER_LOCK:
        _cleanup_peers()
        slot = PEERS.get(normalized)
        if slot is None:
            slot = PeerSlot(peer_id=normalized)
            PEERS[normalized] = slot
        taken = slot.socket is not None
        if not taken:
            slot.socket = websocket

    if taken:
        await websocket.send_json({"type": "error", "message": "Peer id is taken"})
        await websocket.close()
        return

    logger.info("Peer %s online", normalized)
    await websocket.send_json({"type": "open", "id": normalized})

    leaving = False
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = _FRAME_ADAPTER.validate_json(raw)
            except ValidationError:
                await _send(websocket, {"type": "error", "message": "Invalid frame"})
                continue
            if isinstance(frame, LeaveFrame):
                leaving = True
                break
            await _route(normalized, websocket, frame)
    except WebSocketDisconnect:
        pass
    finally:
        dropped: List[Relay] = []
        async with PEER_LOCK:
            current = PEERS.get(normalized)
            if current is not None and current.socket is websocket:
                PEERS.pop(normalized, None)
            for cid, relay in list(RELAYS.items()):
                if relay.other(normalized) is not None:
                    dropped.append(RELAYS.pop(cid))
            targets = [(r, _socket_for(r.other(normalized))) for r in dropped]
        logger.info(
            "Peer %s offline, closing %d connection(s)", normalized, len(dropped)
        )
        for relay, other in targets:
            await _send(other, {"type": "close", "connectionId": relay.connection_id})
    if leaving:
        await websocket.close()
