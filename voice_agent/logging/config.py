import logging
import os
import sys
from typing import Optional

_NOISY_LOGGERS = [
    "uvicorn.access",
    "websockets",
    "websockets.protocol",
    "websockets.server",
    "httpx",
    "httpcore",
    "openai",
    "elevenlabs",
    "deepgram",
    "deepgram.clients",
]


def setup_logging(level: Optional[str] = None) -> None:
    """Configure stdout logging for the server process.

    ``LOG_LEVEL`` picks the level when ``level`` is not given.
    """
    level_name = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    resolved = logging.getLevelName(level_name)
    if not isinstance(resolved, int):
        resolved = logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(resolved)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(resolved)
    formatter = logging.Formatter(
        "%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%H:%M:%S",
    )
    console_handler.setFormatter(formatter)

    root_logger.handlers.clear()
    root_logger.addHandler(console_handler)

    # keep warnings and errors from third-party clients visible
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger("voice_agent").setLevel(resolved)
