"""ocbridge - relay chat conversations to a local opencode agent."""

__version__ = "0.3.0"
__logo__ = "🌉"
