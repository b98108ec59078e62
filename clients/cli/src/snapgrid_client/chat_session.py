from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional

import aiohttp

from .gateway_client import ApiError, MessagingClient
from .reconcile import Confirmed, MessageTimeline

logger = logging.getLogger(__name__)

_REFRESH_EVENTS = {"conversationsChanged", "updateConversations"}


def _now_ms() -> int:
    return int(time.time() * 1000)


def _sort_key(conversation: Dict[str, Any]) -> int:
    return int(conversation.get("lastMessageTime") or conversation.get("updatedAt") or 0)


class ChatSession:
    """Client-side chat state for one signed-in user.

    Holds the open conversation's timeline, the compose box, the
    conversation list and who is online, and keeps them current from push
    frames.
    """

    def __init__(self, client: MessagingClient, user_id: str, *, now_func: Callable[[], int] = _now_ms) -> None:
        self.client = client
        self.user_id = user_id
        self.peer_id: Optional[str] = None
        self.compose_text = ""
        self.timeline = MessageTimeline()
        self.conversations: List[Dict[str, Any]] = []
        self.online_users: List[str] = []
        self._now = now_func

    async def open_chat(self, peer_id: str) -> None:
        self.peer_id = peer_id
        history = await self.client.fetch_messages(peer_id)
        self.timeline.reset(Confirmed.from_api(item) for item in history)

    async def send_optimistic(self, text: Optional[str] = None) -> Optional[Confirmed]:
        """Show the message immediately, then swap in the server's copy.

        On failure the placeholder is dropped, the text goes back into the
        compose box and the error propagates.
        """

        if self.peer_id is None:
            raise RuntimeError("no conversation is open")
        text = self.compose_text if text is None else text
        if not text.strip():
            return None

        placeholder = self.timeline.add_speculative(self.user_id, self.peer_id, text, self._now())
        self.compose_text = ""
        try:
            payload = await self.client.send_message(self.peer_id, text)
        except (ApiError, aiohttp.ClientError, asyncio.TimeoutError):
            self.timeline.remove_speculative(placeholder.temp_id)
            self.compose_text = text
            raise
        confirmed = Confirmed.from_api(payload)
        self.timeline.apply_confirmed(confirmed)
        return confirmed

    async def refresh_conversations(self) -> List[Dict[str, Any]]:
        conversations = await self.client.fetch_conversations()
        self.conversations = sorted(conversations, key=_sort_key, reverse=True)
        return self.conversations

    async def clear_chat(self) -> None:
        if self.peer_id is None:
            raise RuntimeError("no conversation is open")
        await self.client.clear_chat(self.peer_id)
        self.timeline.reset([])

    async def handle_frame(self, frame: Dict[str, Any]) -> None:
        frame_type = frame.get("t")
        body = frame.get("body")
        if frame_type == "newMessage" and isinstance(body, dict):
            try:
                message = Confirmed.from_api(body)
            except (KeyError, TypeError, ValueError):
                logger.debug("ignoring malformed newMessage frame")
                return
            self._on_new_message(message)
        elif frame_type in _REFRESH_EVENTS:
            await self.refresh_conversations()
        elif frame_type == "onlineUsers" and isinstance(body, list):
            self.online_users = [str(user_id) for user_id in body]
        else:
            logger.debug("ignoring push frame %s", frame_type)

    async def run(self) -> None:
        """Consume the push channel until it closes."""

        async for frame in self.client.events():
            await self.handle_frame(frame)

    def _on_new_message(self, message: Confirmed) -> None:
        peer = message.receiver_id if message.sender_id == self.user_id else message.sender_id
        if peer == self.peer_id:
            self.timeline.apply_confirmed(message)
        for conversation in self.conversations:
            user = conversation.get("user") or {}
            if user.get("id") == peer:
                conversation["lastMessage"] = message.text
                conversation["lastMessageTime"] = message.created_at_ms
                conversation["updatedAt"] = message.created_at_ms
                self.conversations.sort(key=_sort_key, reverse=True)
                break
