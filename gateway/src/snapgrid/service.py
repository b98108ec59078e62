from __future__ import annotations

import functools
import logging
import sqlite3
from typing import Any, Callable, Dict, List

from .clock import MonotonicClock
from .config import BROADCAST_GLOBAL, BROADCAST_PARTICIPANTS
from .conversations import Conversation
from .delivery import CONVERSATIONS_CHANGED, NEW_MESSAGE, DeliveryChannel
from .errors import Forbidden, Internal, InvalidInput, NotFound
from .identity import UserId
from .messages import Message
from .visibility import preview_for, visible_messages

logger = logging.getLogger(__name__)


def _store_errors(func):
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except sqlite3.Error as exc:
            logger.exception("storage failure in %s", func.__name__)
            raise Internal("storage failure") from exc

    return wrapper


class MessagingService:
    """Send path, history reads and per-user hide operations.

    Every mutation is followed by a push on the delivery channel. Pushes are
    best effort and never fail the operation.
    """

    def __init__(
        self,
        *,
        conversations,
        messages,
        channel: DeliveryChannel,
        clock: Callable[[], int] | None = None,
        change_broadcast: str = BROADCAST_PARTICIPANTS,
    ) -> None:
        if change_broadcast not in (BROADCAST_PARTICIPANTS, BROADCAST_GLOBAL):
            raise ValueError(f"unknown change_broadcast mode: {change_broadcast}")
        self.conversations = conversations
        self.messages = messages
        self.channel = channel
        self._clock = clock or MonotonicClock()
        self._change_broadcast = change_broadcast

    @_store_errors
    async def send_message(self, sender_id: UserId | str, receiver_id: UserId | str, text: Any) -> Message:
        sender = UserId.of(sender_id)
        receiver = UserId.of(receiver_id)
        if not isinstance(text, str) or not text.strip():
            raise InvalidInput("message text required")
        if sender == receiver:
            raise InvalidInput("cannot message yourself")

        now_ms = self._clock()
        conversation, created = await self.conversations.find_or_create(sender, receiver, now_ms)
        self._require_participant(conversation, sender)
        if created:
            logger.info("conversation %s created for %s and %s", conversation.conv_id, sender, receiver)
        message = await self.messages.create(sender, receiver, text, now_ms)
        # Retrying this step is safe; the reference is only stored once.
        await self.conversations.append_message(conversation.conv_id, message.msg_id, now_ms)
        logger.debug("message %s appended to %s", message.msg_id, conversation.conv_id)

        self.channel.publish(NEW_MESSAGE, message.to_api_dict(), [sender, receiver])
        if self._change_broadcast == BROADCAST_GLOBAL:
            self.channel.broadcast_all(CONVERSATIONS_CHANGED)
        else:
            self.channel.publish(CONVERSATIONS_CHANGED, None, [sender, receiver])
        return message

    @_store_errors
    async def get_messages(self, viewer_id: UserId | str, peer_id: UserId | str) -> List[Message]:
        viewer = UserId.of(viewer_id)
        conversation = await self.conversations.find(viewer, UserId.of(peer_id))
        if conversation is None:
            return []
        self._require_participant(conversation, viewer)
        messages = await self.messages.get_many(conversation.message_ids)
        return visible_messages(conversation, viewer, messages)

    @_store_errors
    async def list_conversations(self, viewer_id: UserId | str) -> List[Dict[str, Any]]:
        viewer = UserId.of(viewer_id)
        summaries = []
        for conversation in await self.conversations.list_for_user(viewer):
            messages = await self.messages.get_many(conversation.message_ids)
            summaries.append(self._summary(conversation, viewer, preview_for(conversation, viewer, messages)))
        return summaries

    @_store_errors
    async def delete_conversation(self, user_id: UserId | str, conv_id: str) -> Conversation:
        user = UserId.of(user_id)
        conversation = await self.conversations.get(conv_id)
        if conversation is None:
            raise NotFound("conversation not found")
        if not conversation.is_participant(user):
            raise Forbidden("not a participant of this conversation")
        updated = await self.conversations.mark_deleted(conv_id, user, self._clock())
        logger.info("conversation %s deleted by %s", conv_id, user)
        self.channel.publish(CONVERSATIONS_CHANGED, None, [user])
        return updated

    @_store_errors
    async def delete_peer(self, user_id: UserId | str, peer_id: UserId | str) -> Conversation:
        """Hide the conversation with ``peer_id`` from the caller's list."""

        user = UserId.of(user_id)
        conversation = await self._require_pair(user, UserId.of(peer_id))
        updated = await self.conversations.mark_deleted(conversation.conv_id, user, self._clock())
        logger.info("conversation %s deleted by %s", conversation.conv_id, user)
        self.channel.publish(CONVERSATIONS_CHANGED, None, [user])
        return updated

    @_store_errors
    async def clear_chat(self, user_id: UserId | str, peer_id: UserId | str) -> Conversation:
        user = UserId.of(user_id)
        conversation = await self._require_pair(user, UserId.of(peer_id))
        updated = await self.conversations.mark_cleared(conversation.conv_id, user, self._clock())
        logger.info("conversation %s cleared by %s", conversation.conv_id, user)
        self.channel.publish(CONVERSATIONS_CHANGED, None, [user])
        return updated

    async def _require_pair(self, user: UserId, peer: UserId) -> Conversation:
        conversation = await self.conversations.find(user, peer)
        if conversation is None:
            raise NotFound("conversation not found")
        self._require_participant(conversation, user)
        return conversation

    @staticmethod
    def _require_participant(conversation: Conversation, user: UserId) -> None:
        if not conversation.is_participant(user):
            logger.error("pair lookup for %s resolved to conversation %s", user, conversation.conv_id)
            raise Forbidden("not a participant of this conversation")

    def _summary(self, conversation: Conversation, viewer: UserId, preview: Message | None) -> Dict[str, Any]:
        peer = conversation.peer_of(viewer)
        return {
            "id": conversation.conv_id,
            "user": {"id": str(peer), "online": self.channel.is_online(peer)},
            "lastMessage": preview.text if preview else "",
            "lastMessageTime": preview.created_at_ms if preview else conversation.updated_at_ms,
            "updatedAt": conversation.updated_at_ms,
        }
