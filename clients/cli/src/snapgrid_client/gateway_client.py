"""Async client for the messaging gateway REST surface and push channel."""

from __future__ import annotations

import json
import logging
from urllib.parse import quote
from typing import Any, AsyncIterator, Dict, List, Optional

import aiohttp

logger = logging.getLogger(__name__)


class ApiError(Exception):
    def __init__(self, status: int, code: str, message: str):
        self.status = status
        self.code = code
        self.message = message
        super().__init__(f"{status} {code}: {message}")


def _build_url(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}{path}"


def _segment(value: str) -> str:
    return quote(str(value), safe="")


async def _parse_response(response: aiohttp.ClientResponse) -> Dict[str, Any]:
    raw = await response.text()
    try:
        payload = json.loads(raw) if raw else {}
    except ValueError:
        payload = {}
    if response.status >= 400 or not isinstance(payload, dict) or payload.get("success") is False:
        code = payload.get("code", "http_error") if isinstance(payload, dict) else "http_error"
        message = payload.get("message", raw) if isinstance(payload, dict) else raw
        raise ApiError(response.status, str(code), str(message))
    return payload


class MessagingClient:
    def __init__(
        self,
        base_url: str,
        session_token: str,
        *,
        http: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.base_url = base_url
        self._headers = {"Authorization": f"Bearer {session_token}"}
        self._http = http
        self._owns_http = http is None

    async def __aenter__(self) -> "MessagingClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _session(self) -> aiohttp.ClientSession:
        if self._http is None:
            self._http = aiohttp.ClientSession()
        return self._http

    async def close(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.close()
        self._http = None

    async def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        async with self._session().request(
            method,
            _build_url(self.base_url, path),
            json=payload,
            headers=self._headers,
        ) as response:
            return await _parse_response(response)

    async def send_message(self, peer_id: str, text: str) -> Dict[str, Any]:
        body = await self._request("POST", f"/message/send/{_segment(peer_id)}", {"text": text})
        return body["newMessage"]

    async def fetch_messages(self, peer_id: str) -> List[Dict[str, Any]]:
        body = await self._request("GET", f"/message/all/{_segment(peer_id)}")
        return list(body.get("messages") or [])

    async def fetch_conversations(self) -> List[Dict[str, Any]]:
        body = await self._request("GET", "/message/conversations")
        return list(body.get("conversations") or [])

    async def delete_conversation(self, conv_id: str) -> None:
        await self._request("DELETE", f"/message/delete/{_segment(conv_id)}")

    async def clear_chat(self, peer_id: str) -> None:
        await self._request("DELETE", f"/message/clear-chat/{_segment(peer_id)}")

    async def delete_peer(self, peer_id: str) -> None:
        await self._request("DELETE", f"/message/delete-user/{_segment(peer_id)}")

    async def events(self) -> AsyncIterator[Dict[str, Any]]:
        """Yield push frames until the server closes the channel.

        Server heartbeats are answered here and not yielded.
        """

        async with self._session().ws_connect(
            _build_url(self.base_url, "/v1/ws"), headers=self._headers
        ) as ws:
            async for msg in ws:
                if msg.type != aiohttp.WSMsgType.TEXT:
                    if msg.type == aiohttp.WSMsgType.ERROR:
                        logger.warning("push channel error: %s", ws.exception())
                    break
                try:
                    frame = msg.json()
                except ValueError:
                    logger.debug("ignoring malformed push frame")
                    continue
                if frame.get("t") == "ping":
                    await ws.send_json({"v": 1, "t": "pong", "id": frame.get("id")})
                    continue
                yield frame
