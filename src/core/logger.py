"""Logging setup for Conversation Sync.

Every component logs under the ``conversation_sync`` hierarchy, so one
``LOG_LEVEL`` (or a per-component ``logging.getLogger(...).setLevel``) tunes
the store, the push path and the client surfaces together. Components that
act for one user channel or one surface wrap their logger in
``ChannelLogger`` so each line says whose traffic it is.
"""

import logging
import os
import sys
from typing import Any, MutableMapping, Optional

ROOT_LOGGER_NAME = "conversation_sync"
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - [%(process)d] %(message)s"

NOISY_LOGGERS = ("httpx", "httpcore", "asyncio", "uvicorn.access", "multipart")


def configure_logging(level: Optional[str] = None) -> None:
    """Configure the root handler once per process.

    ``level`` falls back to the ``LOG_LEVEL`` environment variable, then INFO.
    """
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT,
        stream=sys.stdout,
        force=True,
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(component: Optional[str] = None) -> logging.Logger:
    """Return the logger for ``component`` under the conversation_sync hierarchy.

    Args:
        component: Short component name such as ``"surface"``. Omit it for
            the shared root logger.
    """
    if not component:
        return logging.getLogger(ROOT_LOGGER_NAME)
    if component.startswith(f"{ROOT_LOGGER_NAME}."):
        return logging.getLogger(component)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{component}")


class ChannelLogger(logging.LoggerAdapter):
    """Prefixes every record with the channel (user id or surface name) it belongs to."""

    def __init__(self, base: logging.Logger, channel: str):
        super().__init__(base, {"channel": channel})

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        return f"[{self.extra['channel']}] {msg}", kwargs


configure_logging()

logger = get_logger()
