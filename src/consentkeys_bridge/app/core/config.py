# src/consentkeys_bridge/app/core/config.py
from __future__ import annotations

import os
from typing import Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_APP_URL = "http://localhost:5173"
DEFAULT_PROVIDER_NAME = "consentkeys"
CALLBACK_FUNCTION_PATH = "/functions/v1/consentkeys-callback"

# field name -> env var
_REQUIRED: Dict[str, str] = {
    "token_endpoint":           "CONSENT_KEYS_TOKEN_URL",
    "userinfo_endpoint":        "CONSENT_KEYS_USERINFO_URL",
    "client_id":                "CONSENT_KEYS_CLIENT_ID",
    "client_secret":            "CONSENT_KEYS_CLIENT_SECRET",
    "identity_store_url":       "SUPABASE_URL",
    "identity_store_admin_key": "SUPABASE_SERVICE_ROLE_KEY",
}

_OPTIONAL: Dict[str, str] = {
    "authorize_endpoint":    "CONSENT_KEYS_AUTHORIZE_URL",
    "app_redirect_url":      "APP_URL",
    "callback_redirect_uri": "OIDC_REDIRECT_URI",
    "provider_name":         "PROVIDER_NAME",
    "http_timeout":          "HTTP_TIMEOUT_SEC",
    "store_page_size":       "STORE_PAGE_SIZE",
    "store_max_pages":       "STORE_MAX_PAGES",
}


class ConfigError(RuntimeError):
    """Raised at startup when required configuration is missing or invalid."""


class Settings(BaseModel):
    """
    Immutable runtime configuration, built once at process start and handed
    to create_app(). Request handlers read it from app.state.settings.
    """
    model_config = ConfigDict(frozen=True)

    # ConsentKeys (OAuth/OIDC provider)
    token_endpoint: str
    userinfo_endpoint: str
    client_id: str
    client_secret: str = Field(repr=False)
    authorize_endpoint: Optional[str] = None
    scope: str = "openid email profile"

    # Where the magic link sends the browser after sign-in
    app_redirect_url: str = DEFAULT_APP_URL

    # Identity store (GoTrue admin API)
    identity_store_url: str
    identity_store_admin_key: str = Field(repr=False)

    # redirect_uri this service identifies itself with at the token endpoint
    callback_redirect_uri: Optional[str] = None

    provider_name: str = DEFAULT_PROVIDER_NAME
    http_timeout: float = Field(default=10.0, gt=0)
    store_page_size: int = Field(default=100, gt=0, le=1000)
    # upper bound on listing pages walked per lookup
    store_max_pages: int = Field(default=1000, gt=0)

    @property
    def redirect_uri(self) -> str:
        if self.callback_redirect_uri:
            return self.callback_redirect_uri
        return f"{self.identity_store_url.rstrip('/')}{CALLBACK_FUNCTION_PATH}"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Build Settings from environment variables (see _REQUIRED/_OPTIONAL).
        Raises ConfigError listing every missing required variable.
        """
        env = os.environ if environ is None else environ

        values: Dict[str, str] = {}
        missing = []
        for field, var in _REQUIRED.items():
            val = (env.get(var) or "").strip()
            if not val:
                missing.append(var)
            values[field] = val
        if missing:
            raise ConfigError(f"missing required configuration: {', '.join(missing)}")

        for field, var in _OPTIONAL.items():
            val = (env.get(var) or "").strip()
            if val:
                values[field] = val

        try:
            return cls(**values)
        except ValueError as ex:
            # pydantic ValidationError subclasses ValueError
            raise ConfigError(f"invalid configuration: {ex}") from ex
