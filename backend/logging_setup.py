import logging
from logging.config import dictConfig
from typing import Any, Dict, Optional

from pythonjsonlogger.json import JsonFormatter  # type: ignore # noqa F401

from settings import Settings, get_settings

LOGGER_NAME = "clipboard_mcp"

_configured = False


def build_logging_config(settings: Settings) -> Dict[str, Any]:
    """dictConfig payload: plain text on stderr, JSON lines to the debug file."""
    level = settings.log_level
    handlers: Dict[str, Any] = {
        # stdout carries the stdio transport, so the console handler stays on stderr.
        "console": {
            "class": "logging.StreamHandler",
            "stream": "ext://sys.stderr",
            "formatter": "standard",
            "level": level,
        },
    }
    if settings.log_file is not None:
        handlers["file"] = {
            "class": "logging.FileHandler",
            "filename": str(settings.log_file),
            "formatter": "json",
            "level": level,
            "delay": True,
        }

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": "pythonjsonlogger.json.JsonFormatter",
                "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s",
            },
            "standard": {
                "format": "[%(levelname)s] %(asctime)s %(name)s: %(message)s"
            },
        },
        "handlers": handlers,
        "loggers": {
            LOGGER_NAME: {
                "handlers": list(handlers),
                "level": level,
                "propagate": False,
            },
        },
    }


def configure_logging(settings: Optional[Settings] = None, *, force: bool = False) -> None:
    global _configured
    if _configured and not force:
        return
    settings = settings or get_settings()
    if settings.log_file is not None:
        settings.log_file.parent.mkdir(parents=True, exist_ok=True)
    dictConfig(build_logging_config(settings))
    _configured = True


def get_logger(child: Optional[str] = None) -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    return logger.getChild(child) if child else logger
