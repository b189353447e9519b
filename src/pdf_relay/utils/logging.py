from __future__ import annotations

import logging
import os

DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging() -> None:
    """
    Configure logging defaults for the HTTP service and the CLI.

    Goals:
    - Keep browser/DevTools chatter (websocket frames, CDP events) out of the service log.
    - Keep configuration idempotent so hosts (uvicorn, pytest) can override it safely.
    """
    root = logging.getLogger()

    # Only set up basicConfig if nothing configured yet (common for scripts).
    if not root.handlers:
        level = os.environ.get("LOG_LEVEL", "INFO").upper()
        log_format = os.environ.get("LOG_FORMAT") or DEFAULT_LOG_FORMAT
        logging.basicConfig(level=getattr(logging, level, logging.INFO), format=log_format)

    noisy_loggers = (
        "httpx",
        "httpcore",
        "asyncio",
        "nodriver",
        "websockets",
        "uc",
        "uvicorn.access",
    )
    for name in noisy_loggers:
        # `asyncio` can emit noisy warnings about slow callbacks while Chromium starts.
        level = logging.ERROR if name == "asyncio" else logging.WARNING
        logging.getLogger(name).setLevel(level)
