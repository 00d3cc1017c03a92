# src/consentkeys_bridge/app/auth/provider.py
"""
ConsentKeys (OAuth/OIDC provider) calls: authorization-code exchange and
userinfo lookup. Both raise UpstreamError on any provider-side failure.
"""
from __future__ import annotations

import logging
from typing import Any, Dict

import httpx
from pydantic import ValidationError as PydanticValidationError

from consentkeys_bridge.app.core.config import Settings
from consentkeys_bridge.app.core.errors import UpstreamError, ValidationError
from consentkeys_bridge.app.core.trace import auth_trace
from consentkeys_bridge.app.models import ProviderIdentity, TokenResponse

log = logging.getLogger(__name__)

TOKEN_EXCHANGE_FAILED = "Token exchange failed"
USERINFO_FAILED = "Userinfo failed"
EMAIL_REQUIRED = "Email required"


def _json_body(resp: httpx.Response) -> Dict[str, Any]:
    data = resp.json()
    if not isinstance(data, dict):
        raise ValueError(f"expected JSON object, got {type(data).__name__}")
    return data


# ------------------------
# Code Exchanger
# ------------------------
async def exchange_code(client: httpx.AsyncClient, settings: Settings, code: str) -> TokenResponse:
    """
    POST the authorization code to the provider's token endpoint
    (form-encoded, grant_type=authorization_code).
    """
    data = {
        "grant_type": "authorization_code",
        "code": code,
        "client_id": settings.client_id,
        "client_secret": settings.client_secret,
        "redirect_uri": settings.redirect_uri,
    }
    try:
        tr = await client.post(
            settings.token_endpoint,
            data=data,
            headers={"Accept": "application/json"},
            timeout=settings.http_timeout,
        )
    except httpx.TimeoutException:
        log.warning("token exchange timed out after %.1fs", settings.http_timeout)
        raise UpstreamError(TOKEN_EXCHANGE_FAILED)
    except httpx.HTTPError as ex:
        log.warning("token exchange transport error: %s", type(ex).__name__)
        raise UpstreamError(TOKEN_EXCHANGE_FAILED)

    if not tr.is_success:
        auth_trace("provider.exchange_failed", status=tr.status_code)
        log.warning("token exchange rejected: status=%s", tr.status_code)
        raise UpstreamError(TOKEN_EXCHANGE_FAILED)

    try:
        return TokenResponse.model_validate(_json_body(tr))
    except (ValueError, PydanticValidationError):
        # body is not a token payload; don't echo it, it may contain secrets
        log.warning("token exchange returned an unusable body: status=%s", tr.status_code)
        raise UpstreamError(TOKEN_EXCHANGE_FAILED)


# ------------------------
# Identity Fetcher
# ------------------------
async def fetch_userinfo(client: httpx.AsyncClient, settings: Settings, access_token: str) -> ProviderIdentity:
    """
    GET the provider's userinfo endpoint with the bearer access token.
    Email is mandatory: it is the join key into the identity store.
    """
    try:
        ur = await client.get(
            settings.userinfo_endpoint,
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
            timeout=settings.http_timeout,
        )
    except httpx.TimeoutException:
        log.warning("userinfo timed out after %.1fs", settings.http_timeout)
        raise UpstreamError(USERINFO_FAILED)
    except httpx.HTTPError as ex:
        log.warning("userinfo transport error: %s", type(ex).__name__)
        raise UpstreamError(USERINFO_FAILED)

    if not ur.is_success:
        auth_trace("provider.userinfo_failed", status=ur.status_code)
        log.warning("userinfo rejected: status=%s", ur.status_code)
        raise UpstreamError(USERINFO_FAILED)

    try:
        identity = ProviderIdentity.model_validate(_json_body(ur))
    except (ValueError, PydanticValidationError):
        log.warning("userinfo returned an unusable body")
        raise UpstreamError(USERINFO_FAILED)

    if not identity.email:
        auth_trace("provider.userinfo_no_email", sub_set=bool(identity.sub))
        raise ValidationError(EMAIL_REQUIRED)
    return identity
