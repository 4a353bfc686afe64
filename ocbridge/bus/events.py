"""Event types for the message bus."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass
class InboundMessage:
    """Message received from a chat channel."""

    channel: str  # feishu
    sender_id: str  # User identifier
    chat_id: str  # Chat/conversation identifier
    content: str  # Message text
    chat_type: str = "p2p"  # p2p or group
    message_type: str = "text"  # text, post, file, image
    message_id: str = ""
    mentions: list[str] = field(default_factory=list)  # Mention keys/names present in the message
    timestamp: datetime = field(default_factory=datetime.now)
    media: list[str] = field(default_factory=list)  # Attachment keys or local paths
    metadata: dict[str, Any] = field(default_factory=dict)  # Channel-specific data

    @property
    def session_key(self) -> str:
        """Unique key for session identification."""
        return f"{self.sender_id}:{self.chat_id}"


@dataclass
class OutboundMessage:
    """Message to send to a chat channel."""

    channel: str
    chat_id: str
    content: str
    card: dict[str, Any] | None = None  # Interactive card; content is the plain-text fallback
    reply_to: str | None = None
    media: list[str] = field(default_factory=list)  # Local paths or URLs of images/files
    metadata: dict[str, Any] = field(default_factory=dict)
