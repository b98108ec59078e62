"""Direct-messaging gateway: conversation stores, visibility rules and push delivery."""

from .app import RUNTIME_KEY, create_app
from .config import GatewayConfig, load_config_from_env
from .conversations import Conversation, InMemoryConversationStore, SQLiteConversationStore
from .delivery import Connection, DeliveryChannel
from .errors import Forbidden, Internal, InvalidInput, MessagingError, NotFound, Unauthorized
from .identity import ConversationKey, UserId
from .messages import InMemoryMessageStore, Message, SQLiteMessageStore
from .server import main
from .service import MessagingService
from .visibility import cutoff_for, preview_for, visible_messages

__all__ = [
    "RUNTIME_KEY",
    "create_app",
    "GatewayConfig",
    "load_config_from_env",
    "Conversation",
    "InMemoryConversationStore",
    "SQLiteConversationStore",
    "Connection",
    "DeliveryChannel",
    "Forbidden",
    "Internal",
    "InvalidInput",
    "MessagingError",
    "NotFound",
    "Unauthorized",
    "ConversationKey",
    "UserId",
    "InMemoryMessageStore",
    "Message",
    "SQLiteMessageStore",
    "main",
    "MessagingService",
    "cutoff_for",
    "preview_for",
    "visible_messages",
]
