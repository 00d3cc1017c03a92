# src/consentkeys_bridge/app/core/trace.py
"""
Opt-in tracing of the auth pipeline.

With AUTH_TRACE=1 every pipeline step logs one INFO line on
"consentkeys_bridge.auth":

  [auth] identity.created account=3f2a... email_domain=example.com

Values under credential-like keys are replaced with <redacted> before the
line is built. Callers still pass ids and flags only.
"""
from __future__ import annotations

import logging
import os
from typing import Any

from consentkeys_bridge.app.core.logging import PACKAGE_LOGGER

TRACE_LOGGER = f"{PACKAGE_LOGGER}.auth"
REDACTED = "<redacted>"

_TRUTHY = frozenset({"1", "true", "yes", "on"})
_SENSITIVE = frozenset({
    "code", "token", "access_token", "refresh_token", "id_token",
    "client_secret", "secret", "apikey", "password", "action_link",
})

_log = logging.getLogger(TRACE_LOGGER)


def trace_enabled() -> bool:
    return os.getenv("AUTH_TRACE", "").strip().lower() in _TRUTHY


def _render(key: str, value: Any) -> str:
    if key.lower() in _SENSITIVE:
        return REDACTED
    text = str(value)
    # keep one token per field so the line stays grep-able
    return repr(text) if not text or any(c.isspace() for c in text) else text


def auth_trace(event: str, **fields: Any) -> None:
    if not trace_enabled() or not _log.isEnabledFor(logging.INFO):
        return
    parts = [f"{k}={_render(k, v)}" for k, v in fields.items()]
    _log.info("[auth] %s%s", event, "".join(" " + p for p in parts))
