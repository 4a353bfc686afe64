"""Utility functions for ocbridge."""

from ocbridge.utils.helpers import ensure_dir, safe_filename

__all__ = ["ensure_dir", "safe_filename"]
