"""
Logging configuration for hosts embedding the engine.

The engine itself only creates module loggers; calling configure_logging()
is left to the host application.
"""

import logging
from typing import Optional, Union

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(level: Optional[Union[int, str]] = None) -> None:
    """
    Configure root logging with the engine's standard format.

    Args:
        level: Logging level name or number (default: EngineConfig.from_env().log_level)

    Raises:
        ValueError: If level is an unknown level name
    """
    if level is None:
        from formly.config import EngineConfig
        level = EngineConfig.from_env().log_level

    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        if not isinstance(resolved, int):
            raise ValueError(f"Unknown log level: {level}")
        level = resolved

    logging.basicConfig(level=level, format=LOG_FORMAT)
