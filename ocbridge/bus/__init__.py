"""Message bus module for decoupled channel-agent communication."""

from ocbridge.bus.events import InboundMessage, OutboundMessage
from ocbridge.bus.queue import MessageBus

__all__ = ["MessageBus", "InboundMessage", "OutboundMessage"]
