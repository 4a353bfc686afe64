"""Chat channels module with plugin architecture."""

from ocbridge.channels.base import BaseChannel
from ocbridge.channels.manager import ChannelManager

__all__ = ["BaseChannel", "ChannelManager"]
