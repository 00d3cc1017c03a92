# src/consentkeys_bridge/app/models.py
from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TokenResponse(BaseModel):
    """
    Provider token endpoint payload. Lives for one request; never logged.
    Only access_token is used; the rest are carried as sent (providers disagree
    on scope lists vs strings and integer vs fractional expires_in).
    """
    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(min_length=1, repr=False)
    token_type: Any = None
    expires_in: Any = None
    scope: Any = None
    id_token: Any = Field(default=None, repr=False)
    refresh_token: Any = Field(default=None, repr=False)


class ProviderIdentity(BaseModel):
    """Claims asserted by the provider's userinfo endpoint."""
    model_config = ConfigDict(extra="ignore")

    sub: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None

    @field_validator("sub", mode="before")
    @classmethod
    def _sub_as_str(cls, v: Any) -> Any:
        # some providers send numeric subject ids
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v


class Account(BaseModel):
    """An identity-store user, as returned by the admin API."""
    model_config = ConfigDict(extra="ignore")

    id: str
    email: Optional[str] = None
    user_metadata: Dict[str, Any] = Field(default_factory=dict)


class SignInLink(BaseModel):
    """Single-use magic link minted for one account."""
    model_config = ConfigDict(extra="ignore")

    action_link: str = Field(min_length=1)
    redirect_to: Optional[str] = None
