"""Base channel interface for chat platforms."""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from loguru import logger

from ocbridge.bus.events import InboundMessage, OutboundMessage
from ocbridge.bus.queue import MessageBus


class BaseChannel(ABC):
    """
    Abstract base class for chat channel implementations.

    Each channel should implement this interface
    to integrate with the ocbridge message bus.
    """

    name: str = "base"

    def __init__(self, config: Any, bus: MessageBus):
        """
        Initialize the channel.

        Args:
            config: Channel-specific configuration.
            bus: The message bus for communication.
        """
        self.config = config
        self.bus = bus
        self._running = False

    @abstractmethod
    async def start(self) -> None:
        """Start listening for messages. Must return once the channel is ready."""

    @abstractmethod
    async def stop(self) -> None:
        """Stop the channel and clean up resources."""

    @abstractmethod
    async def send(self, msg: OutboundMessage) -> None:
        """
        Send a message through this channel.

        Args:
            msg: The message to send.
        """

    async def download_file(
        self, message_id: str, file_key: str, target_path: Path, resource_type: str = "file"
    ) -> Path:
        """Download an attachment of an inbound message to `target_path`."""
        raise NotImplementedError(f"{self.name} channel does not support file downloads")

    def is_allowed(self, sender_id: str) -> bool:
        """
        Check if a sender is allowed to use this bot.

        Args:
            sender_id: The sender's identifier.

        Returns:
            True if allowed, False otherwise.
        """
        allow_list = getattr(self.config, "allow_from", [])

        # If no allow list, allow everyone
        if not allow_list:
            return True

        sender_str = str(sender_id)
        if sender_str in allow_list:
            return True
        if "|" in sender_str:
            for part in sender_str.split("|"):
                if part and part in allow_list:
                    return True
        return False

    async def _handle_message(
        self,
        sender_id: str,
        chat_id: str,
        content: str,
        media: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
        *,
        chat_type: str = "p2p",
        message_type: str = "text",
        message_id: str = "",
        mentions: list[str] | None = None,
    ) -> None:
        """
        Handle an incoming message from the chat platform.

        Checks permissions and forwards to the bus.
        """
        if not self.is_allowed(sender_id):
            logger.warning(
                f"Access denied for sender {sender_id} on channel {self.name}. "
                f"Add them to allow_from list in config to grant access."
            )
            return

        msg = InboundMessage(
            channel=self.name,
            sender_id=str(sender_id),
            chat_id=str(chat_id),
            content=content,
            chat_type=chat_type,
            message_type=message_type,
            message_id=message_id,
            mentions=mentions or [],
            media=media or [],
            metadata=metadata or {},
        )

        await self.bus.publish_inbound(msg)

    @property
    def is_running(self) -> bool:
        """Check if the channel is running."""
        return self._running
