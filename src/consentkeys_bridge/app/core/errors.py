# src/consentkeys_bridge/app/core/errors.py
from __future__ import annotations

from typing import Optional


class BridgeError(Exception):
    """
    Base for every failure the callback pipeline reports to the caller.
    `message` is the plain-text body returned to the client; keep it free of
    upstream payloads and secrets.
    """
    status_code: int = 500
    default_message: str = "Internal error"
    kind: str = "bridge"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ClientError(BridgeError):
    status_code = 400
    default_message = "Missing code"
    kind = "client"


class UpstreamError(BridgeError):
    status_code = 500
    default_message = "Upstream request failed"
    kind = "upstream"


class ValidationError(BridgeError):
    status_code = 400
    default_message = "Email required"
    kind = "validation"


class ProvisioningError(BridgeError):
    status_code = 500
    default_message = "Create user failed"
    kind = "provisioning"


class LinkError(BridgeError):
    status_code = 500
    default_message = "Magic link failed"
    kind = "link"


class UnhandledFault(BridgeError):
    status_code = 500
    default_message = "Error: unexpected failure"
    kind = "unhandled"


# ------------------------
# Identity store client errors (never returned to callers as-is)
# ------------------------
class IdentityStoreError(Exception):
    def __init__(self, detail: str, *, status_code: Optional[int] = None, error_code: Optional[str] = None):
        self.detail = detail
        self.status_code = status_code
        self.error_code = error_code
        super().__init__(detail)


class DuplicateAccountError(IdentityStoreError):
    """Create was rejected because an account with that email already exists."""


class IdentityStoreUnavailable(IdentityStoreError):
    """Timeout or transport failure talking to the identity store."""
