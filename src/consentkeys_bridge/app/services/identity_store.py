# src/consentkeys_bridge/app/services/identity_store.py
"""
Thin async client for the identity store's admin API (GoTrue / Supabase Auth).

Only the three operations the callback needs: find a user by email, create a
user, and generate a magic link. All failures surface as IdentityStoreError
subclasses; callers translate them into pipeline errors.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from consentkeys_bridge.app.core.config import Settings
from consentkeys_bridge.app.core.errors import (
    DuplicateAccountError,
    IdentityStoreError,
    IdentityStoreUnavailable,
)
from consentkeys_bridge.app.models import Account, SignInLink

log = logging.getLogger(__name__)

ADMIN_USERS_PATH = "/auth/v1/admin/users"
GENERATE_LINK_PATH = "/auth/v1/admin/generate_link"

# GoTrue error codes for "email already taken"
_DUPLICATE_CODES = {"email_exists", "user_already_exists"}


def _json_object(resp: httpx.Response) -> Dict[str, Any]:
    try:
        body = resp.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _is_duplicate(resp: httpx.Response, body: Dict[str, Any]) -> bool:
    if resp.status_code not in (400, 409, 422):
        return False
    if body.get("error_code") in _DUPLICATE_CODES:
        return True
    msg = str(body.get("msg") or body.get("message") or body.get("error_description") or "").lower()
    return "already" in msg and ("registered" in msg or "exists" in msg)


def _next_page(resp: httpx.Response, page: int, seen: int) -> Optional[int]:
    """
    Page number to request after `page`, or None when the listing is done.

    GoTrue sends `Link: <...?page=2&per_page=50>; rel="next", <...>; rel="last"`
    and `X-Total-Count`. A Link header without rel="next" means last page.
    Without Link, stop once `seen` reaches X-Total-Count. Without either,
    keep going; the caller stops on an empty or repeated page.
    """
    links = resp.links
    if links:
        nxt = links.get("next")
        if not nxt:
            return None
        try:
            num = int(httpx.URL(nxt.get("url", "")).params.get("page", ""))
        except ValueError:
            return None
        return num if num > page else None

    total = resp.headers.get("x-total-count")
    if total is not None:
        try:
            return page + 1 if seen < int(total) else None
        except ValueError:
            pass
    return page + 1


class IdentityStoreAdmin:
    """
    Admin-key client bound to one httpx.AsyncClient (one per request).
    """
    def __init__(self, client: httpx.AsyncClient, settings: Settings):
        self._client = client
        self._base = settings.identity_store_url.rstrip("/")
        self._key = settings.identity_store_admin_key
        self._timeout = settings.http_timeout
        self._page_size = settings.store_page_size
        self._max_pages = settings.store_max_pages

    def _headers(self) -> Dict[str, str]:
        return {
            "apikey": self._key,
            "Authorization": f"Bearer {self._key}",
            "Accept": "application/json",
        }

    async def _request(self, method: str, path: str, **kw: Any) -> httpx.Response:
        try:
            return await self._client.request(
                method,
                f"{self._base}{path}",
                headers=self._headers(),
                timeout=self._timeout,
                **kw,
            )
        except httpx.TimeoutException as ex:
            raise IdentityStoreUnavailable(f"{method} {path} timed out") from ex
        except httpx.HTTPError as ex:
            raise IdentityStoreUnavailable(f"{method} {path} failed: {type(ex).__name__}") from ex

    def _fail(self, op: str, resp: httpx.Response) -> IdentityStoreError:
        body = _json_object(resp)
        error_code = body.get("error_code")
        if _is_duplicate(resp, body):
            return DuplicateAccountError(f"{op}: email already registered",
                                         status_code=resp.status_code, error_code=error_code)
        return IdentityStoreError(f"{op}: status {resp.status_code}",
                                  status_code=resp.status_code, error_code=error_code)

    # ------------------------
    # Lookup
    # ------------------------
    async def find_user_by_email(self, email: str) -> Optional[Account]:
        """
        Walk the paged user listing until an account with this email turns up
        or the listing ends. Comparison is case-insensitive, like the store's
        own uniqueness check on email.

        The end of the listing comes from the store's pagination headers
        (see _next_page), never from the page length: the store may cap
        per_page below what we asked for. An empty page, or a page identical
        to the previous one (store ignoring `page`), also ends the walk.
        Gives up with IdentityStoreError after store_max_pages requests.
        """
        want = email.lower()
        page = 1
        seen = 0
        prev_ids: Optional[List[Any]] = None
        for _ in range(self._max_pages):
            resp = await self._request(
                "GET", ADMIN_USERS_PATH,
                params={"page": page, "per_page": self._page_size},
            )
            if not resp.is_success:
                raise self._fail("list users", resp)

            users = _json_object(resp).get("users")
            if not isinstance(users, list):
                raise IdentityStoreError("list users: malformed response", status_code=resp.status_code)

            for raw in users:
                if isinstance(raw, dict) and (raw.get("email") or "").lower() == want:
                    return Account.model_validate(raw)

            ids = [raw.get("id") for raw in users if isinstance(raw, dict)]
            if not users or ids == prev_ids:
                log.debug("no account for email after %d page(s)", page)
                return None

            seen += len(users)
            nxt = _next_page(resp, page, seen)
            if nxt is None:
                log.debug("no account for email after %d page(s)", page)
                return None
            prev_ids = ids
            page = nxt

        raise IdentityStoreError(f"list users: no end of listing after {self._max_pages} page(s)")

    # ------------------------
    # Create
    # ------------------------
    async def create_user(self, email: str, *, email_confirm: bool, user_metadata: Dict[str, Any]) -> Account:
        resp = await self._request(
            "POST", ADMIN_USERS_PATH,
            json={"email": email, "email_confirm": email_confirm, "user_metadata": user_metadata},
        )
        if not resp.is_success:
            raise self._fail("create user", resp)

        body = _json_object(resp)
        # newer GoTrue returns the user directly, older wraps it in {"user": ...}
        raw = body.get("user") if isinstance(body.get("user"), dict) else body
        if not raw.get("id"):
            raise IdentityStoreError("create user: response carried no user id", status_code=resp.status_code)
        return Account.model_validate(raw)

    # ------------------------
    # Magic link
    # ------------------------
    async def generate_magic_link(self, email: str, *, redirect_to: str) -> SignInLink:
        resp = await self._request(
            "POST", GENERATE_LINK_PATH,
            json={"type": "magiclink", "email": email, "redirect_to": redirect_to},
        )
        if not resp.is_success:
            raise self._fail("generate link", resp)

        body = _json_object(resp)
        props = body.get("properties") if isinstance(body.get("properties"), dict) else {}
        action_link = body.get("action_link") or props.get("action_link")
        if not action_link:
            raise IdentityStoreError("generate link: response carried no action_link", status_code=resp.status_code)
        return SignInLink(
            action_link=action_link,
            redirect_to=body.get("redirect_to") or props.get("redirect_to"),
        )
