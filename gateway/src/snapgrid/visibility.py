"""Per-viewer visibility rules for conversations and their history.

A viewer's cutoff is the later of their delete and clear instants; only
messages created strictly after it are visible. A viewer with neither
marker has no cutoff and sees everything. None of these functions raise
for unknown viewers.
"""

from __future__ import annotations

from typing import Iterable, List

from .conversations import Conversation
from .identity import UserId
from .messages import Message


def cutoff_for(conversation: Conversation, user_id: UserId) -> int | None:
    """Return the visibility cutoff in ms, or ``None`` when nothing is hidden."""

    marks = [
        at_ms
        for at_ms in (conversation.deleted_at.get(user_id), conversation.cleared_at.get(user_id))
        if at_ms is not None
    ]
    return max(marks) if marks else None


def visible_messages(conversation: Conversation, user_id: UserId, messages: Iterable[Message]) -> List[Message]:
    """Messages after the viewer's cutoff, ascending by creation time.

    ``sorted`` is stable, so equal timestamps keep their send order.
    """

    cutoff = cutoff_for(conversation, user_id)
    visible = [message for message in messages if cutoff is None or message.created_at_ms > cutoff]
    return sorted(visible, key=lambda message: message.created_at_ms)


def preview_for(conversation: Conversation, user_id: UserId, messages: Iterable[Message]) -> Message | None:
    """The latest visible message, used as the conversation-list summary."""

    visible = visible_messages(conversation, user_id, messages)
    return visible[-1] if visible else None
