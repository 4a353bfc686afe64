"""Configuration module for ocbridge."""

from ocbridge.config.loader import load_config
from ocbridge.config.schema import Config

__all__ = ["Config", "load_config"]
