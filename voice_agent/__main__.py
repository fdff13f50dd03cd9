"""Run the voice agent server: ``python -m voice_agent``."""

import os

import uvicorn

from voice_agent.logging.config import setup_logging


def main() -> None:
    setup_logging()
    uvicorn.run(
        "voice_agent.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        log_config=None,
        access_log=False,
    )


if __name__ == "__main__":
    main()
