# src/consentkeys_bridge/app/main.py
from __future__ import annotations

import logging
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request

from consentkeys_bridge.app.core.logging import setup_logging
from consentkeys_bridge.app.auth.consentkeys import router as consentkeys_router, error_response
from consentkeys_bridge.app.core.config import Settings
from consentkeys_bridge.app.core.errors import BridgeError, UnhandledFault
from consentkeys_bridge.app.core.trace import auth_trace

log = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the FastAPI app around one immutable Settings object.

    With no explicit settings, .env is loaded and Settings.from_env() runs
    here, so missing configuration fails at startup (ConfigError), not per request.
    Run with:  uvicorn --factory consentkeys_bridge.app.main:create_app
    """
    setup_logging()
    if settings is None:
        load_dotenv()
        settings = Settings.from_env()

    app = FastAPI(title="ConsentKeys Bridge", version="0.1.0")
    app.state.settings = settings

    # 0) Auth routes (login redirect + callback)
    app.include_router(consentkeys_router)

    # 1) Health check (open)
    @app.get("/healthz")
    def health():
        return {"status": "ok"}

    # 2) Errors raised outside the callback's own handling
    @app.exception_handler(BridgeError)
    async def _bridge_error(_: Request, err: BridgeError):
        return error_response(err)

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, ex: Exception):
        log.exception("unhandled error on %s %s", request.method, request.url.path)
        return error_response(UnhandledFault())

    auth_trace("app.configured",
               provider=settings.provider_name,
               redirect=settings.redirect_uri,
               app_url=settings.app_redirect_url,
               login_enabled=bool(settings.authorize_endpoint))
    return app
