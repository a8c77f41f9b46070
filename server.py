import asyncio
import json
import logging
import os
import secrets
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException, WebSocket
from starlette.websockets import WebSocketState

from rtcpipe.config import DEFAULT_ICE, MAX_SLOTS, PROTOCOL_VERSION, SLOT_TIMEOUT
from rtcpipe.models import SessionDescription
from rtcpipe.signaling import CloseCode

logger = logging.getLogger("rtcpipe.server")

app = FastAPI()


def ice_servers() -> List[dict]:
    """ICE servers announced to peers, in the broker's capitalised form."""
    urls = os.environ.get("RTCPIPE_BROKER_ICE", DEFAULT_ICE)
    return [
        {"URLs": [u.strip()], "Username": "", "Credential": ""}
        for u in urls.split(",")
        if u.strip()
    ]


# --- One-shot exchange (POST /{slot}) ---

@dataclass
class Exchange:
    offer: SessionDescription
    reply: asyncio.Future
    claimed: bool = False


exchanges: Dict[str, Exchange] = {}


@app.post("/{slot}")
async def exchange(slot: str, desc: SessionDescription):
    """
    Pair two POSTs on the same slot.

    The first poster waits. The second gets the first poster's offer back
    straight away, which tells it to answer. Its next POST, the answer, is
    handed to the waiting first poster.
    """
    ex = exchanges.get(slot)
    if ex is None:
        ex = Exchange(desc, asyncio.get_running_loop().create_future())
        exchanges[slot] = ex
        try:
            reply = await asyncio.wait_for(ex.reply, SLOT_TIMEOUT)
        except asyncio.TimeoutError:
            raise HTTPException(408, "Timed out waiting for peer")
        finally:
            if exchanges.get(slot) is ex:
                del exchanges[slot]
        return reply.model_dump()

    if not ex.claimed:
        ex.claimed = True
        return ex.offer.model_dump()

    del exchanges[slot]
    ex.reply.set_result(desc)
    return {"status": "delivered"}


# --- Persistent rendezvous (websocket, protocol "4") ---

@dataclass
class Slot:
    creator: WebSocket
    joined: asyncio.Future = field(default_factory=lambda: asyncio.get_running_loop().create_future())


slots: Dict[int, Slot] = {}


async def _accept(ws: WebSocket) -> bool:
    if PROTOCOL_VERSION not in ws.scope.get("subprotocols", []):
        await ws.accept()
        await ws.close(CloseCode.WRONG_PROTOCOL)
        return False
    await ws.accept(subprotocol=PROTOCOL_VERSION)
    return True


def _new_slot() -> Optional[int]:
    if len(slots) >= MAX_SLOTS:
        return None
    while True:
        n = secrets.randbelow(MAX_SLOTS * 4) + 1
        if n not in slots:
            return n


def _connected(ws: WebSocket) -> bool:
    return (ws.client_state == WebSocketState.CONNECTED
            and ws.application_state == WebSocketState.CONNECTED)


async def _forward(dst: WebSocket, msg: dict) -> None:
    if msg.get("bytes") is not None:
        await dst.send_bytes(msg["bytes"])
    elif msg.get("text") is not None:
        await dst.send_text(msg["text"])


async def _relay(src: WebSocket, dst: WebSocket, first: Optional[asyncio.Future] = None) -> None:
    """Forward src's messages to dst until either leaves, then hang up dst.

    ``first`` is a receive already in flight on src.
    """
    while True:
        if first is not None:
            msg, first = await first, None
        else:
            msg = await src.receive()
        if msg["type"] == "websocket.disconnect" or not _connected(dst):
            break
        await _forward(dst, msg)
    for ws in (src, dst):
        if _connected(ws):
            await ws.close(CloseCode.PEER_HUNG_UP)


@app.websocket("/")
async def create(ws: WebSocket):
    if not await _accept(ws):
        return
    n = _new_slot()
    if n is None:
        await ws.close(CloseCode.NO_MORE_SLOTS)
        return
    slot = slots[n] = Slot(ws)
    logger.info("slot %d allocated", n)
    loop = asyncio.get_running_loop()
    deadline = loop.time() + SLOT_TIMEOUT
    early: List[dict] = []
    receive = None
    try:
        await ws.send_text(json.dumps({"slot": str(n), "iceServers": ice_servers()}))
        # Keep reading so a creator that leaves gives its slot back.
        receive = asyncio.ensure_future(ws.receive())
        while not slot.joined.done():
            done, _ = await asyncio.wait(
                {slot.joined, receive},
                timeout=max(deadline - loop.time(), 0),
                return_when=asyncio.FIRST_COMPLETED,
            )
            if not done:
                receive.cancel()
                await ws.close(CloseCode.SLOT_TIMED_OUT)
                return
            if receive.done() and not slot.joined.done():
                msg = receive.result()
                if msg["type"] == "websocket.disconnect":
                    logger.info("slot %d abandoned", n)
                    return
                early.append(msg)
                receive = asyncio.ensure_future(ws.receive())
    finally:
        slots.pop(n, None)
    peer = slot.joined.result()
    for msg in early:
        await _forward(peer, msg)
    await _relay(ws, peer, receive)


@app.websocket("/{slot}")
async def join(ws: WebSocket, slot: str):
    if not await _accept(ws):
        return
    entry = slots.pop(int(slot), None) if slot.isdigit() else None
    if entry is None or entry.joined.done():
        await ws.close(CloseCode.NO_SUCH_SLOT)
        return
    await ws.send_text(json.dumps({"iceServers": ice_servers()}))
    entry.joined.set_result(ws)
    await _relay(ws, entry.creator)
