import asyncio
import json
from typing import Any, Callable

from aiohttp import ClientWebSocketResponse, WSMessage, WSMsgType

# Presence announcements and keepalives arrive at arbitrary points.
BACKGROUND_EVENTS = frozenset({"onlineUsers", "ping"})


async def _receive_with_deadline(ws: ClientWebSocketResponse, deadline: float) -> WSMessage:
    remaining = deadline - asyncio.get_running_loop().time()
    if remaining <= 0:
        raise asyncio.TimeoutError("Timed out waiting for websocket message")
    return await ws.receive(timeout=remaining)


def _check_open(ws: ClientWebSocketResponse, msg: WSMessage) -> None:
    if msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED):
        raise AssertionError("WebSocket closed while waiting for message")
    if msg.type == WSMsgType.ERROR:
        raise AssertionError(f"WebSocket error while waiting for message: {ws.exception()}")


async def _parse_frame(ws: ClientWebSocketResponse, msg: WSMessage) -> dict | None:
    if msg.type != WSMsgType.TEXT:
        return None
    try:
        frame = json.loads(msg.data)
    except ValueError:
        return None
    if not isinstance(frame, dict):
        return None
    if frame.get("t") == "ping":
        await ws.send_json({"v": 1, "t": "pong", "id": frame.get("id")})
    return frame


async def recv_frame_until(
    ws: ClientWebSocketResponse,
    *,
    timeout: float,
    predicate: Callable[[dict], bool],
) -> dict:
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        msg = await _receive_with_deadline(ws, deadline)
        _check_open(ws, msg)
        frame = await _parse_frame(ws, msg)
        if frame is not None and predicate(frame):
            return frame


async def recv_event(ws: ClientWebSocketResponse, event: str, *, timeout: float = 1.0) -> Any:
    """Wait for the next ``event`` frame and return the whole frame."""

    return await recv_frame_until(ws, timeout=timeout, predicate=lambda frame: frame.get("t") == event)


async def assert_no_event(ws: ClientWebSocketResponse, event: str | None = None, *, timeout: float = 0.2) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        try:
            msg = await _receive_with_deadline(ws, deadline)
        except asyncio.TimeoutError:
            return
        _check_open(ws, msg)
        frame = await _parse_frame(ws, msg)
        if frame is None:
            continue
        frame_type = frame.get("t")
        if event is None and frame_type in BACKGROUND_EVENTS:
            continue
        if event is None or frame_type == event:
            raise AssertionError(f"Unexpected websocket message: {frame}")
