"""Session management module."""

from ocbridge.session.manager import Session, SessionManager

__all__ = ["Session", "SessionManager"]
