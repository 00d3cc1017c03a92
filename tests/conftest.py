# tests/conftest.py
from __future__ import annotations

import json
import re
import uuid
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx
import pytest
from fastapi.testclient import TestClient

from consentkeys_bridge.app.core.config import Settings
from consentkeys_bridge.app.main import create_app

# ---------- Constants for the mocked environment ----------
TOKEN_URL    = "https://consentkeys.test/oauth/token"
USERINFO_URL = "https://consentkeys.test/oauth/userinfo"
AUTHORIZE_URL = "https://consentkeys.test/oauth/authorize"
STORE_URL    = "https://store.test"
ADMIN_KEY    = "service-role-key"
APP_URL      = "http://localhost:5173"
CLIENT_ID    = "ck-client"
CLIENT_SECRET = "ck-secret"

STORE_PATTERN = re.compile(re.escape(STORE_URL) + r"/auth/v1/admin/.*")


# ---------- In-memory identity store (GoTrue admin API) ----------
class FakeIdentityStore:
    """
    Minimal stand-in for the admin endpoints the bridge calls.
    Emails are unique case-insensitively, like the real store.
    """
    def __init__(self) -> None:
        self.users: List[Dict[str, Any]] = []
        self.links: List[str] = []
        self.create_calls = 0
        self.list_calls = 0
        # hide all users from the next N list calls (simulates a concurrent create)
        self.stale_lookups = 0
        self.fail_create: Optional[int] = None
        self.fail_link: Optional[int] = None
        self.fail_list: Optional[int] = None
        # listing quirks: server-side per_page cap, `page` ignored, no pagination headers
        self.max_per_page: Optional[int] = None
        self.ignore_page = False
        self.send_headers = True

    def add_user(self, email: str, **metadata: Any) -> Dict[str, Any]:
        user = {"id": str(uuid.uuid4()), "email": email.lower(), "user_metadata": dict(metadata)}
        self.users.append(user)
        return user

    def find(self, email: str) -> List[Dict[str, Any]]:
        return [u for u in self.users if u["email"] == email.lower()]

    # --- httpx_mock callback ---
    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/auth/v1/admin/users" and request.method == "GET":
            return self._list(request)
        if path == "/auth/v1/admin/users" and request.method == "POST":
            return self._create(request)
        if path == "/auth/v1/admin/generate_link" and request.method == "POST":
            return self._link(request)
        return httpx.Response(404, json={"msg": "not found"})

    def _authorized(self, request: httpx.Request) -> bool:
        return (request.headers.get("apikey") == ADMIN_KEY
                and request.headers.get("authorization") == f"Bearer {ADMIN_KEY}")

    def _list(self, request: httpx.Request) -> httpx.Response:
        self.list_calls += 1
        if not self._authorized(request):
            return httpx.Response(401, json={"msg": "invalid JWT"})
        if self.fail_list:
            return httpx.Response(self.fail_list, json={"msg": "boom"})
        if self.stale_lookups > 0:
            self.stale_lookups -= 1
            return httpx.Response(200, json={"users": [], "aud": "authenticated"})
        page = 1 if self.ignore_page else int(request.url.params.get("page", "1"))
        per_page = int(request.url.params.get("per_page", "50"))
        if self.max_per_page:
            per_page = min(per_page, self.max_per_page)
        start = (page - 1) * per_page
        headers = self._page_headers(page, per_page) if self.send_headers else {}
        return httpx.Response(200, headers=headers,
                              json={"users": self.users[start:start + per_page], "aud": "authenticated"})

    def _page_headers(self, page: int, per_page: int) -> Dict[str, str]:
        # same shape as GoTrue: X-Total-Count plus Link with rel="next" (if any) and rel="last"
        total = len(self.users)
        last = max(1, -(-total // per_page))
        links = []
        if page < last:
            links.append(f'</admin/users?page={page + 1}&per_page={per_page}>; rel="next"')
        links.append(f'</admin/users?page={last}&per_page={per_page}>; rel="last"')
        return {"X-Total-Count": str(total), "Link": ", ".join(links)}

    def _create(self, request: httpx.Request) -> httpx.Response:
        self.create_calls += 1
        if not self._authorized(request):
            return httpx.Response(401, json={"msg": "invalid JWT"})
        if self.fail_create:
            return httpx.Response(self.fail_create, json={"msg": "Database error creating new user"})
        payload = json.loads(request.content)
        if self.find(payload["email"]):
            return httpx.Response(422, json={
                "code": 422,
                "error_code": "email_exists",
                "msg": "A user with this email address has already been registered",
            })
        user = self.add_user(payload["email"], **payload.get("user_metadata", {}))
        user["email_confirmed_at"] = "2026-01-01T00:00:00Z" if payload.get("email_confirm") else None
        return httpx.Response(200, json=user)

    def _link(self, request: httpx.Request) -> httpx.Response:
        if not self._authorized(request):
            return httpx.Response(401, json={"msg": "invalid JWT"})
        if self.fail_link:
            return httpx.Response(self.fail_link, json={"msg": "link error"})
        payload = json.loads(request.content)
        if payload.get("type") != "magiclink" or not self.find(payload.get("email", "")):
            return httpx.Response(404, json={"error_code": "user_not_found", "msg": "User not found"})
        token = uuid.uuid4().hex
        link = (f"{STORE_URL}/auth/v1/verify?token={token}&type=magiclink"
                f"&redirect_to={quote(payload.get('redirect_to', ''), safe='')}")
        self.links.append(link)
        return httpx.Response(200, json={
            "action_link": link,
            "email_otp": "123456",
            "hashed_token": token,
            "redirect_to": payload.get("redirect_to"),
            "verification_type": "magiclink",
        })


# ---------- Fixtures ----------
@pytest.fixture
def settings() -> Settings:
    return Settings(
        token_endpoint=TOKEN_URL,
        userinfo_endpoint=USERINFO_URL,
        authorize_endpoint=AUTHORIZE_URL,
        client_id=CLIENT_ID,
        client_secret=CLIENT_SECRET,
        app_redirect_url=APP_URL,
        identity_store_url=STORE_URL,
        identity_store_admin_key=ADMIN_KEY,
        http_timeout=2.0,
    )

@pytest.fixture
def client(settings: Settings) -> TestClient:
    return TestClient(create_app(settings), follow_redirects=False)

@pytest.fixture
def store(httpx_mock) -> FakeIdentityStore:
    fake = FakeIdentityStore()
    httpx_mock.add_callback(fake, url=STORE_PATTERN, is_reusable=True, is_optional=True)
    return fake

@pytest.fixture
def provider(httpx_mock):
    """
    Register provider responses: provider(token=..., userinfo=...).
    Pass a dict for a 200 JSON body or an httpx.Response for anything else.
    """
    def _add(token: Any = None, userinfo: Any = None) -> None:
        if token is not None:
            if isinstance(token, httpx.Response):
                httpx_mock.add_response(url=TOKEN_URL, method="POST",
                                        status_code=token.status_code, content=token.content)
            else:
                httpx_mock.add_response(url=TOKEN_URL, method="POST", json=token)
        if userinfo is not None:
            if isinstance(userinfo, httpx.Response):
                httpx_mock.add_response(url=USERINFO_URL, method="GET",
                                        status_code=userinfo.status_code, content=userinfo.content)
            else:
                httpx_mock.add_response(url=USERINFO_URL, method="GET", json=userinfo)
    return _add
