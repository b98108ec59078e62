from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from aiohttp import WSMsgType, web

from .config import GatewayConfig
from .conversations import InMemoryConversationStore, SQLiteConversationStore
from .delivery import DeliveryChannel, Frame
from .errors import Internal, InvalidInput, MessagingError, Unauthorized
from .messages import InMemoryMessageStore, SQLiteMessageStore
from .service import MessagingService
from .sessions import Session, SessionStore, SQLiteSessionStore
from .sqlite_backend import SQLiteBackend

logger = logging.getLogger(__name__)

SESSION_COOKIE = "token"
OUTBOUND_QUEUE_SIZE = 1000


class Runtime:
    def __init__(
        self,
        *,
        service: MessagingService,
        sessions,
        channel: DeliveryChannel,
        config: GatewayConfig,
        backend: SQLiteBackend | None = None,
    ) -> None:
        self.service = service
        self.sessions = sessions
        self.channel = channel
        self.config = config
        self.backend = backend


RUNTIME_KEY = web.AppKey("runtime", Runtime)


def _with_no_store(response: web.Response) -> web.Response:
    response.headers["Cache-Control"] = "no-store"
    return response


def _error_response(exc: MessagingError) -> web.Response:
    return _with_no_store(web.json_response(exc.to_api_dict(), status=exc.status))


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except MessagingError as exc:
        if exc.status >= 500:
            logger.error("%s %s failed: %s", request.method, request.path, exc.message)
        return _error_response(exc)
    except web.HTTPException:
        raise
    except Exception:
        logger.exception("unhandled error on %s %s", request.method, request.path)
        return _error_response(Internal("internal error"))


def _session_token(request: web.Request) -> str | None:
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header[len("Bearer ") :].strip() or None
    return request.cookies.get(SESSION_COOKIE) or None


def _authenticate_request(request: web.Request) -> Session:
    runtime = request.app[RUNTIME_KEY]
    token = _session_token(request)
    session = runtime.sessions.get_by_session(token) if token else None
    if session is None:
        raise Unauthorized("invalid session_token")
    return session


async def _read_json_object(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        raise InvalidInput("malformed json")
    if not isinstance(body, dict):
        raise InvalidInput("json object required")
    return body


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


async def handle_send(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    body = await _read_json_object(request)
    text = body.get("text", body.get("textMessage"))
    message = await runtime.service.send_message(session.user_id, request.match_info["peer_id"], text)
    return _with_no_store(web.json_response({"success": True, "newMessage": message.to_api_dict()}, status=201))


async def handle_history(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    messages = await runtime.service.get_messages(session.user_id, request.match_info["peer_id"])
    return _with_no_store(
        web.json_response({"success": True, "messages": [message.to_api_dict() for message in messages]})
    )


async def handle_conversations(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    conversations = await runtime.service.list_conversations(session.user_id)
    return _with_no_store(web.json_response({"success": True, "conversations": conversations}))


async def handle_delete_conversation(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    await runtime.service.delete_conversation(session.user_id, request.match_info["conv_id"])
    return _with_no_store(web.json_response({"success": True}))


async def handle_clear_chat(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    await runtime.service.clear_chat(session.user_id, request.match_info["peer_id"])
    return _with_no_store(web.json_response({"success": True}))


async def handle_delete_peer(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    await runtime.service.delete_peer(session.user_id, request.match_info["peer_id"])
    return _with_no_store(web.json_response({"success": True}))


def create_app(config: GatewayConfig | None = None, *, clock: Callable[[], int] | None = None) -> web.Application:
    config = config or GatewayConfig()
    backend: SQLiteBackend | None = None
    if config.db_path is not None:
        backend = SQLiteBackend(config.db_path)
        conversations: Any = SQLiteConversationStore(backend)
        messages: Any = SQLiteMessageStore(backend)
        sessions: Any = SQLiteSessionStore(backend, ttl_ms=config.session_ttl_ms)
    else:
        conversations = InMemoryConversationStore()
        messages = InMemoryMessageStore()
        sessions = SessionStore(ttl_ms=config.session_ttl_ms)

    channel = DeliveryChannel()
    service = MessagingService(
        conversations=conversations,
        messages=messages,
        channel=channel,
        clock=clock,
        change_broadcast=config.change_broadcast,
    )
    runtime = Runtime(service=service, sessions=sessions, channel=channel, config=config, backend=backend)

    app = web.Application(middlewares=[error_middleware])
    app[RUNTIME_KEY] = runtime
    app.router.add_get("/healthz", handle_health)
    app.router.add_post("/message/send/{peer_id}", handle_send)
    app.router.add_get("/message/all/{peer_id}", handle_history)
    app.router.add_get("/message/conversations", handle_conversations)
    app.router.add_delete("/message/delete/{conv_id}", handle_delete_conversation)
    app.router.add_delete("/message/clear-chat/{peer_id}", handle_clear_chat)
    app.router.add_delete("/message/delete-user/{peer_id}", handle_delete_peer)
    app.router.add_get("/v1/ws", websocket_handler)
    if backend is not None:
        async def close_db(_: web.Application) -> None:
            backend.close()

        app.on_cleanup.append(close_db)
    return app


def _error_frame(code: str, message: str, *, request_id: str | None = None) -> Frame:
    return {"v": 1, "t": "error", "id": request_id, "body": {"code": code, "message": message}}


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    runtime = request.app[RUNTIME_KEY]
    config = runtime.config
    session = _authenticate_request(request)

    ws = web.WebSocketResponse(max_msg_size=config.max_msg_size)
    await ws.prepare(request)

    last_activity = asyncio.get_running_loop().time()
    missed_heartbeats = 0
    outbound: asyncio.Queue[Frame | None] = asyncio.Queue(maxsize=OUTBOUND_QUEUE_SIZE)
    connection = None
    closed = False

    async def close_with_error(message: str) -> None:
        nonlocal closed
        if closed:
            return
        closed = True
        await ws.close(code=1011, message=message.encode("utf-8"))

    def mark_activity() -> None:
        nonlocal last_activity, missed_heartbeats
        last_activity = asyncio.get_running_loop().time()
        missed_heartbeats = 0

    def enqueue_frame(frame: Frame) -> None:
        try:
            outbound.put_nowait(frame)
        except asyncio.QueueFull:
            logger.warning("outbound queue full for %s; closing connection", session.user_id)
            asyncio.create_task(close_with_error("backpressure"))

    async def writer() -> None:
        try:
            while True:
                frame = await outbound.get()
                if frame is None:
                    break
                if ws.closed:
                    continue
                await ws.send_json(frame)
        except asyncio.CancelledError:
            return
        except ConnectionResetError:
            logger.debug("connection reset while writing to %s", session.user_id)

    async def heartbeat() -> None:
        nonlocal missed_heartbeats
        try:
            while True:
                await asyncio.sleep(config.ping_interval_s)
                if ws.closed:
                    return
                now = asyncio.get_running_loop().time()
                if now - last_activity >= config.ping_interval_s:
                    await ws.send_json({"v": 1, "t": "ping"})
                    missed_heartbeats += 1
                    if missed_heartbeats > config.ping_miss_limit:
                        await ws.close(code=1001, message=b"heartbeat timeout")
                        return
        except asyncio.CancelledError:
            return

    writer_task = asyncio.create_task(writer())
    heartbeat_task = asyncio.create_task(heartbeat())

    try:
        await ws.send_json({"v": 1, "t": "session.ready", "body": {"user_id": str(session.user_id)}})
        connection = runtime.channel.connect(session.user_id, enqueue_frame)

        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except ValueError:
                    enqueue_frame(_error_frame("invalid_request", "malformed json"))
                    continue

                mark_activity()
                if not isinstance(frame, dict) or frame.get("v") != 1:
                    request_id = frame.get("id") if isinstance(frame, dict) else None
                    enqueue_frame(_error_frame("invalid_request", "unsupported version", request_id=request_id))
                    continue

                frame_type = frame.get("t")
                if frame_type == "ping":
                    enqueue_frame({"v": 1, "t": "pong", "id": frame.get("id")})
                elif frame_type == "pong":
                    continue
                else:
                    enqueue_frame(_error_frame("invalid_request", "unknown frame type", request_id=frame.get("id")))
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    finally:
        if connection is not None:
            runtime.channel.disconnect(connection)
        heartbeat_task.cancel()
        try:
            outbound.put_nowait(None)
        except asyncio.QueueFull:
            writer_task.cancel()
        await asyncio.gather(heartbeat_task, writer_task, return_exceptions=True)

    return ws
