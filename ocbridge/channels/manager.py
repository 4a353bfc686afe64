"""Channel manager for coordinating chat channels."""

from __future__ import annotations

import asyncio
from pathlib import Path

from loguru import logger

from ocbridge.bus.queue import MessageBus
from ocbridge.channels.base import BaseChannel
from ocbridge.config.schema import Config


class ChannelManager:
    """
    Manages chat channels and coordinates message routing.

    Responsibilities:
    - Initialize enabled channels (Feishu)
    - Start/stop channels
    - Route outbound messages
    """

    def __init__(self, config: Config, bus: MessageBus, channels: dict[str, BaseChannel] | None = None):
        self.config = config
        self.bus = bus
        self.channels: dict[str, BaseChannel] = dict(channels or {})
        self._dispatch_task: asyncio.Task | None = None

        if channels is None:
            self._init_channels()

    def _init_channels(self) -> None:
        """Initialize channels based on config."""
        if self.config.feishu.enabled:
            from ocbridge.channels.feishu import FeishuChannel

            self.channels["feishu"] = FeishuChannel(self.config.feishu, self.bus)
            logger.info("Feishu channel enabled")

    async def start_all(self) -> None:
        """Start all channels and the outbound dispatcher."""
        if not self.channels:
            logger.warning("No channels enabled")
            return

        self._dispatch_task = asyncio.create_task(self._dispatch_outbound())
        for name, channel in self.channels.items():
            logger.info(f"Starting {name} channel...")
            try:
                await channel.start()
            except Exception as e:
                logger.error(f"Failed to start channel {name}: {e}")
                raise

    async def stop_all(self) -> None:
        """Stop all channels and the dispatcher."""
        logger.info("Stopping all channels...")

        if self._dispatch_task:
            self._dispatch_task.cancel()
            try:
                await self._dispatch_task
            except asyncio.CancelledError:
                pass
            self._dispatch_task = None

        for name, channel in self.channels.items():
            try:
                await channel.stop()
                logger.info(f"Stopped {name} channel")
            except Exception as e:
                logger.error(f"Error stopping {name}: {e}")

    async def _dispatch_outbound(self) -> None:
        """Dispatch outbound messages to the appropriate channel."""
        logger.info("Outbound dispatcher started")

        while True:
            try:
                msg = await asyncio.wait_for(self.bus.consume_outbound(), timeout=1.0)
            except asyncio.TimeoutError:
                continue

            channel = self.channels.get(msg.channel)
            if channel is None:
                logger.warning(f"Unknown channel: {msg.channel}")
                continue
            try:
                await channel.send(msg)
            except Exception as e:
                logger.error(f"Error sending to {msg.channel}: {e}")

    async def download_file(
        self,
        channel_name: str,
        message_id: str,
        file_key: str,
        target_path: Path,
        resource_type: str = "file",
    ) -> Path:
        channel = self.channels.get(channel_name)
        if channel is None:
            raise KeyError(f"Unknown channel: {channel_name}")
        return await channel.download_file(message_id, file_key, target_path, resource_type)

    @property
    def enabled_channels(self) -> list[str]:
        """Get list of enabled channel names."""
        return list(self.channels.keys())
