import logging
import os
import sys

DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
LOG_LEVEL_ENV = "GSMTOWER_LOG_LEVEL"

_configured = False


def setup_logging(level: str | int | None = None) -> None:
    global _configured
    resolved = level or os.environ.get(LOG_LEVEL_ENV, "INFO")
    if isinstance(resolved, str):
        resolved = logging.getLevelName(resolved.upper())
        if not isinstance(resolved, int):
            resolved = logging.INFO

    root = logging.getLogger()
    if _configured:
        root.setLevel(resolved)
        return

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(DEFAULT_FORMAT))
    root.addHandler(handler)
    root.setLevel(resolved)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(max(resolved, logging.WARNING))
    _configured = True


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
