"""Entry point for `python -m llm_chat`."""

import uvicorn

from .config import settings


def main():
    uvicorn.run(
        "llm_chat.app:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
