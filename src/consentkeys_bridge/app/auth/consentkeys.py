# app/auth/consentkeys.py  (login redirect + callback pipeline + tracing)
from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import urlencode

import httpx
from fastapi import APIRouter, Request, Response
from fastapi.responses import PlainTextResponse, RedirectResponse

from consentkeys_bridge.app.auth.provider import exchange_code, fetch_userinfo
from consentkeys_bridge.app.core.config import Settings
from consentkeys_bridge.app.core.errors import BridgeError, ClientError, UnhandledFault
from consentkeys_bridge.app.core.trace import auth_trace
from consentkeys_bridge.app.services.identity import mint_sign_in_link, resolve_account
from consentkeys_bridge.app.services.identity_store import IdentityStoreAdmin

log = logging.getLogger(__name__)

CALLBACK_PATH = "/auth/callback"
LOGIN_PATH = "/auth/login"

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
}

router = APIRouter(tags=["auth"])

# ------------------------
# Helpers
# ------------------------
def _settings(request: Request) -> Settings:
    return request.app.state.settings

def error_response(err: BridgeError) -> PlainTextResponse:
    return PlainTextResponse(err.message, status_code=err.status_code, headers=CORS_HEADERS)

def _require_code(request: Request) -> str:
    code = request.query_params.get("code")
    if not code:
        raise ClientError("Missing code")
    return code

def build_authorize_url(settings: Settings, state: Optional[str] = None) -> str:
    params = {
        "client_id": settings.client_id,
        "redirect_uri": settings.redirect_uri,
        "response_type": "code",
        "scope": settings.scope,
    }
    if state:
        params["state"] = state
    sep = "&" if "?" in (settings.authorize_endpoint or "") else "?"
    return f"{settings.authorize_endpoint}{sep}{urlencode(params)}"

# ------------------------
# /auth/login (start the provider flow)
# ------------------------
@router.get(LOGIN_PATH)
async def auth_login(request: Request):
    """
    Redirect the browser to the ConsentKeys authorize endpoint with
    client_id, redirect_uri, response_type=code and the OIDC scopes.
    """
    settings = _settings(request)
    if not settings.authorize_endpoint:
        return PlainTextResponse("Login not configured", status_code=500, headers=CORS_HEADERS)

    state = request.query_params.get("state")
    auth_trace("login.redirect", client_id_set=bool(settings.client_id), redirect=settings.redirect_uri)
    return RedirectResponse(build_authorize_url(settings, state), status_code=302, headers=CORS_HEADERS)

# ------------------------
# /auth/callback
# ------------------------
@router.options(CALLBACK_PATH)
async def callback_preflight():
    return Response(status_code=204, headers=CORS_HEADERS)

@router.get(CALLBACK_PATH)
async def auth_callback(request: Request):
    """
    code -> access token -> userinfo claims -> find-or-create account -> magic link.
    Stages run strictly in order; the first failure ends the request.
    """
    stage = "validate"
    try:
        code = _require_code(request)
        settings = _settings(request)

        async with httpx.AsyncClient(timeout=settings.http_timeout) as client:
            stage = "exchange"
            auth_trace("callback.exchange")
            token = await exchange_code(client, settings, code)

            stage = "userinfo"
            auth_trace("callback.userinfo")
            identity = await fetch_userinfo(client, settings, token.access_token)

            store = IdentityStoreAdmin(client, settings)

            stage = "resolve"
            auth_trace("callback.resolve")
            account = await resolve_account(store, settings, identity)

            stage = "link"
            auth_trace("callback.link", account=account.id)
            link = await mint_sign_in_link(store, settings, account, email=identity.email)

        auth_trace("callback.redirect", account=account.id)
        return Response(status_code=302, headers={"Location": link.action_link, **CORS_HEADERS})

    except BridgeError as err:
        auth_trace("callback.failed", stage=stage, kind=err.kind, status=err.status_code)
        return error_response(err)
    except Exception:
        # details stay in the server log; callers get a generic body
        log.exception("callback failed unexpectedly at stage=%s", stage)
        auth_trace("callback.failed", stage=stage, kind=UnhandledFault.kind, status=UnhandledFault.status_code)
        return error_response(UnhandledFault())
