import logging
import sys
from typing import Optional

import structlog

_ROOT_LOGGER_NAME = "uploadguard"
_HANDLER_NAME = "uploadguard-handler"


def json_formatter() -> structlog.stdlib.ProcessorFormatter:
    """Render stdlib records as one JSON object per line through structlog."""
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
        ],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ],
    )


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return a module logger nested under the ``uploadguard`` namespace."""
    if not name or name == _ROOT_LOGGER_NAME:
        return logging.getLogger(_ROOT_LOGGER_NAME)
    if name.startswith(f"{_ROOT_LOGGER_NAME}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{_ROOT_LOGGER_NAME}.{name}")


def configure_logging(level: str = "INFO", json_output: bool = False) -> None:
    """
    Install a single stderr handler on the package logger.

    Called by the CLI and the HTTP entry point only; library code never
    configures logging. Calling it again replaces the previous handler.
    """
    root = logging.getLogger(_ROOT_LOGGER_NAME)
    for handler in list(root.handlers):
        if handler.get_name() == _HANDLER_NAME:
            root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(_HANDLER_NAME)
    if json_output:
        handler.setFormatter(json_formatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s")
        )

    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.propagate = False
