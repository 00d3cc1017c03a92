# Maps provider claims -> identity-store account. JIT-provisions on first login.
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from consentkeys_bridge.app.core.config import Settings
from consentkeys_bridge.app.core.errors import (
    DuplicateAccountError,
    IdentityStoreError,
    IdentityStoreUnavailable,
    LinkError,
    ProvisioningError,
    UpstreamError,
)
from consentkeys_bridge.app.core.trace import auth_trace
from consentkeys_bridge.app.models import Account, ProviderIdentity, SignInLink
from consentkeys_bridge.app.services.identity_store import IdentityStoreAdmin

log = logging.getLogger(__name__)

STORE_UNAVAILABLE = "Identity store unavailable"


def _email_domain(email: str) -> str:
    return email.rpartition("@")[2] or "-"


def derive_username(email: str, sub: Optional[str]) -> str:
    """
    Local part of the email (text before the first '@'), or user_<sub>
    when that is empty.
    """
    local = email.split("@", 1)[0]
    if local:
        return local
    return f"user_{sub}" if sub else "user"


def build_user_metadata(identity: ProviderIdentity, provider_name: str) -> Dict[str, Any]:
    email = identity.email or ""
    meta: Dict[str, Any] = {
        "provider": provider_name,
        "provider_id": identity.sub,
        "username": derive_username(email, identity.sub),
    }
    if identity.name:
        meta["full_name"] = identity.name
    return meta


async def _find(store: IdentityStoreAdmin, email: str) -> Optional[Account]:
    try:
        return await store.find_user_by_email(email)
    except IdentityStoreUnavailable as ex:
        log.warning("account lookup unavailable: %s", ex.detail)
        raise UpstreamError(STORE_UNAVAILABLE)
    except IdentityStoreError as ex:
        log.error("account lookup failed: %s", ex.detail)
        raise ProvisioningError()


async def resolve_account(store: IdentityStoreAdmin, settings: Settings, identity: ProviderIdentity) -> Account:
    """
    Return the account for identity.email, creating it if this is the first
    login for that email.

    Rules:
      1. Existing account with that email -> reuse it verbatim (no metadata refresh).
      2. Else create it, email pre-confirmed, with provider metadata.
      3. Create rejected as duplicate -> a concurrent callback won the race;
         re-fetch and reuse. The store's unique email is the only guard.
    Created accounts are never rolled back, even if a later stage fails.
    """
    email = identity.email
    if not email:
        # fetch_userinfo guarantees this; keep the resolver safe on its own
        raise ProvisioningError()

    existing = await _find(store, email)
    if existing is not None:
        auth_trace("identity.reuse", account=existing.id, email_domain=_email_domain(email))
        return existing

    meta = build_user_metadata(identity, settings.provider_name)
    try:
        account = await store.create_user(email, email_confirm=True, user_metadata=meta)
    except DuplicateAccountError:
        auth_trace("identity.create_race", email_domain=_email_domain(email))
        winner = await _find(store, email)
        if winner is None:
            log.error("create reported duplicate email but lookup found no account")
            raise ProvisioningError()
        return winner
    except IdentityStoreUnavailable as ex:
        log.warning("account create unavailable: %s", ex.detail)
        raise UpstreamError(STORE_UNAVAILABLE)
    except IdentityStoreError as ex:
        log.error("account create failed: %s", ex.detail)
        raise ProvisioningError()

    auth_trace("identity.created", account=account.id, email_domain=_email_domain(email))
    log.info("provisioned account %s via %s", account.id, settings.provider_name)
    return account


async def mint_sign_in_link(store: IdentityStoreAdmin, settings: Settings, account: Account,
                            email: Optional[str] = None) -> SignInLink:
    """
    Ask the store for a fresh single-use magic link for this account,
    landing on settings.app_redirect_url once redeemed.
    """
    target = account.email or email
    if not target:
        log.error("account %s has no email to bind a link to", account.id)
        raise LinkError()
    try:
        link = await store.generate_magic_link(target, redirect_to=settings.app_redirect_url)
    except IdentityStoreUnavailable as ex:
        log.warning("magic link unavailable: %s", ex.detail)
        raise UpstreamError(STORE_UNAVAILABLE)
    except IdentityStoreError as ex:
        log.error("magic link failed: %s", ex.detail)
        raise LinkError()

    auth_trace("identity.link_minted", account=account.id)
    return link
