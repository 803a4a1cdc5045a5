"""Console entry point: serve the API with uvicorn."""

from __future__ import annotations

import uvicorn

from chatkernel.config import get_settings
from chatkernel.logging import get_logger

logger = get_logger(__name__)


def main() -> None:
    settings = get_settings()
    logger.info("server_starting", host=settings.host, port=settings.port)
    # structlog owns log formatting; keep uvicorn from installing its own config
    uvicorn.run("chatkernel.app:app", host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
