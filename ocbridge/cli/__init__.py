"""CLI module for ocbridge."""
