"""Configuration loading utilities."""

from pathlib import Path

from loguru import logger
from pydantic import ValidationError

from ocbridge.config.schema import Config


def load_config(env_file: Path | None = None) -> Config:
    """
    Load configuration from the environment and an optional .env file.

    Args:
        env_file: Optional path to a dotenv file. Defaults to ./.env.

    Returns:
        Loaded configuration object.

    Raises:
        ValidationError: If a provided value does not match the schema.
    """
    try:
        if env_file is not None:
            return Config(_env_file=env_file)  # type: ignore[call-arg]
        return Config()
    except ValidationError as e:
        logger.error(f"Invalid configuration: {e}")
        raise
