"""Client-side chat state with optimistic sends for the messaging gateway."""

from .chat_session import ChatSession
from .gateway_client import ApiError, MessagingClient
from .reconcile import Confirmed, MessageTimeline, Speculative, TOLERANCE_MS

__all__ = [
    "ChatSession",
    "ApiError",
    "MessagingClient",
    "Confirmed",
    "MessageTimeline",
    "Speculative",
    "TOLERANCE_MS",
]
