# src/consentkeys_bridge/app/core/logging.py
"""
Process logging for the bridge.

Our loggers all hang off "consentkeys_bridge" and follow LOG_LEVEL (or the
level handed to setup_logging). httpx/httpcore print full request URLs, query
string included, so they stay at WARNING unless we run at DEBUG.

A stderr handler is installed on the root logger only when nobody else
(uvicorn, pytest) has installed one. That handler scrubs credentials out of
every record it prints.
"""
from __future__ import annotations

import logging
import os
import re
from typing import Optional, Union

PACKAGE_LOGGER = "consentkeys_bridge"
DEFAULT_LEVEL = logging.INFO

_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
_HTTP_CLIENT_LOGGERS = ("httpx", "httpcore")

_SECRET_PATTERNS = (
    re.compile(r"(?i)(bearer\s+)[^\s,;\"']+"),
    re.compile(r"(?i)\b((?:code|access_token|refresh_token|id_token|client_secret|apikey|token)=)[^&\s\"']+"),
)


def scrub(text: str) -> str:
    """Mask bearer tokens and credential query/form params in a log line."""
    for pat in _SECRET_PATTERNS:
        text = pat.sub(r"\1***", text)
    return text


class SecretScrubber(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        msg = record.getMessage()
        clean = scrub(msg)
        if clean != msg:
            record.msg, record.args = clean, None
        return True


def resolve_level(value: Union[str, int, None]) -> int:
    """
    'debug', 'INFO', '10' or 10 -> a logging level.
    Unknown names fall back to INFO rather than failing startup.
    """
    if isinstance(value, int):
        return value
    name = (value or "").strip().upper()
    if name.isdigit():
        return int(name)
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else DEFAULT_LEVEL


def _our_handler(root: logging.Logger) -> Optional[logging.Handler]:
    for h in root.handlers:
        if any(isinstance(f, SecretScrubber) for f in h.filters):
            return h
    return None


def setup_logging(level: Union[str, int, None] = None) -> int:
    """
    Apply the bridge's log levels; safe to call more than once.
    `level` wins over LOG_LEVEL. Returns the level in effect.
    """
    lvl = resolve_level(level if level is not None else os.getenv("LOG_LEVEL"))
    logging.getLogger(PACKAGE_LOGGER).setLevel(lvl)
    for name in _HTTP_CLIENT_LOGGERS:
        logging.getLogger(name).setLevel(lvl if lvl <= logging.DEBUG else logging.WARNING)

    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT))
        handler.addFilter(SecretScrubber())
        root.addHandler(handler)
    if _our_handler(root) is not None:
        root.setLevel(lvl)
    return lvl
