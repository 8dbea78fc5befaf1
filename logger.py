"""Logging setup for the Notion AI bridge."""

from __future__ import annotations

import logging
import os
import re
from logging.handlers import RotatingFileHandler

import colorlog

LOGGER_NAME = "notion_bridge"
DEFAULT_LOG_PATH = "/var/log/notion-bridge/notion-bridge.log"

_COOKIE_VALUE_RE = re.compile(r"(token_v2=)([^;\s,|\"']+)")

_LOG_COLORS = {
    "DEBUG": "cyan",
    "INFO": "blue",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red,bg_white",
}


def mask_secret(s: str, keep_start: int = 6, keep_end: int = 4) -> str:
    """Mask a secret string, keeping only start and end characters."""
    s = (s or "").strip()
    if not s:
        return ""
    if len(s) <= keep_start + keep_end:
        return "*" * len(s)
    return f"{s[:keep_start]}...{s[-keep_end:]}"


class CookieRedactingFilter(logging.Filter):
    """Mask `token_v2=<value>` in log records before any handler writes them."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        if "token_v2=" in message:
            record.msg = _COOKIE_VALUE_RE.sub(lambda m: m.group(1) + mask_secret(m.group(2)), message)
            record.args = None
        return True


def setup_logging(
    log_path: str | None = None,
    level_name: str | None = None,
    color: bool | None = None,
) -> logging.Logger:
    """
    Configure the bridge logger.

    Records go to a rotating file (1 MB, 3 backups) and fall back to stderr
    when the file cannot be opened. LOG_LEVEL=DISABLE turns logging off.
    """
    level_name = (level_name or os.getenv("LOG_LEVEL", "INFO")).upper().strip()
    logger = logging.getLogger(LOGGER_NAME)
    logger.handlers.clear()
    logger.propagate = False

    if level_name == "DISABLE":
        logging.disable(logging.CRITICAL)
        logger.addHandler(logging.NullHandler())
        return logger

    logging.disable(logging.NOTSET)
    logger.setLevel(getattr(logging, level_name, logging.INFO))

    path = log_path or DEFAULT_LOG_PATH
    open_error: OSError | None = None
    try:
        handler: logging.Handler = RotatingFileHandler(
            path, maxBytes=1_048_576, backupCount=3, encoding="utf-8"
        )
    except OSError as e:
        handler = logging.StreamHandler()
        open_error = e

    if color is None:
        color = os.getenv("LOG_COLOR", "true").lower() in ("true", "1", "yes")
    handler.setFormatter(_formatter(color))
    handler.addFilter(CookieRedactingFilter())
    logger.addHandler(handler)

    if open_error is not None:
        logger.warning("Cannot open log file %r (%s); logging to stderr instead.", path, open_error)
    return logger


def _formatter(color: bool) -> logging.Formatter:
    if color:
        return colorlog.ColoredFormatter(
            "%(log_color)s%(asctime)s %(levelname)-8s%(reset)s %(module)s: %(message)s",
            log_colors=_LOG_COLORS,
        )
    return logging.Formatter("%(asctime)s %(levelname)s %(module)s: %(message)s")
