"""
Remote Integration Primitives — sync kinds and the remote error taxonomy.

Every sync in the engine talks to Square through ``integrations.square``.
Failures coming back from that client are classified here so the rest of
the platform can decide, without inspecting HTTP details, whether to retry
(transient), surface (non-retryable rejection) or skip (authorization gap).
"""

from enum import Enum
from typing import Any


# ── Sync kinds ────────────────────────────────────────────────────────────


class SyncKind(str, Enum):
    """Sync kinds tracked in sync_history and serialized by the coordinator."""

    CATALOG = "catalog"
    INVENTORY = "inventory"
    COMMITTED_INVENTORY = "committed_inventory"
    SALES_VELOCITY = "sales_velocity"
    LOCATIONS = "locations"
    VENDORS = "vendors"


# ── Error taxonomy ────────────────────────────────────────────────────────

NON_RETRYABLE_STATUS_CODES = {400, 401, 403, 404, 409}
NON_RETRYABLE_ERROR_CODES = {
    "IDEMPOTENCY_KEY_REUSED",
    "VERSION_MISMATCH",
    "CONFLICT",
    "INVALID_REQUEST_ERROR",
}


class RemoteAPIError(Exception):
    """Error returned by the Square API (or the transport in front of it)."""

    def __init__(self, message: str, status_code: int | None = None, errors: list[dict[str, Any]] | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.errors = errors or []

    @property
    def error_codes(self) -> set[str]:
        codes = set()
        for err in self.errors:
            for key in ("code", "category"):
                if err.get(key):
                    codes.add(err[key])
        return codes

    def has_code(self, code: str) -> bool:
        return code in self.error_codes

    @property
    def retryable(self) -> bool:
        if self.error_codes & NON_RETRYABLE_ERROR_CODES:
            return False
        if self.status_code is None:
            return True
        return self.status_code not in NON_RETRYABLE_STATUS_CODES


class NonRetryableRemoteError(RemoteAPIError):
    """Validation, version or idempotency rejection. Never retried automatically."""

    @property
    def retryable(self) -> bool:
        return False


class RemoteAuthError(NonRetryableRemoteError):
    """401: token revoked or expired."""


class InsufficientScopesError(NonRetryableRemoteError):
    """403 INSUFFICIENT_SCOPES: the merchant did not grant a required OAuth scope."""


class RateLimitedError(RemoteAPIError):
    """429 from Square. ``retry_after`` is in seconds when the header was present."""

    def __init__(self, message: str, retry_after: float | None = None, **kwargs):
        super().__init__(message, status_code=429, **kwargs)
        self.retry_after = retry_after

    @property
    def retryable(self) -> bool:
        return True


class RemoteTimeoutError(RemoteAPIError):
    """Client-side timeout. Always retryable."""

    @property
    def retryable(self) -> bool:
        return True


class MerchantNotConfiguredError(Exception):
    """Merchant is unknown, inactive or has no Square credentials.

    Unrecoverable setup error: raised to the caller instead of being folded
    into a sync summary.
    """


def is_retryable(exc: BaseException) -> bool:
    """True when ``exc`` is a transient remote failure worth retrying."""
    return isinstance(exc, RemoteAPIError) and exc.retryable


def classify_response(status_code: int, body: dict[str, Any] | None, headers=None) -> RemoteAPIError:
    """Build the typed error for a non-2xx Square response."""
    errors = (body or {}).get("errors") or []
    detail = errors[0].get("detail") if errors else None
    message = f"Square API error {status_code}" + (f": {detail}" if detail else "")
    codes = {e.get("code") for e in errors}

    if status_code == 429:
        retry_after = None
        raw = (headers or {}).get("Retry-After")
        if raw:
            try:
                retry_after = float(raw)
            except ValueError:
                retry_after = None
        return RateLimitedError(message, retry_after=retry_after, errors=errors)
    if status_code == 401:
        return RemoteAuthError(message, status_code=status_code, errors=errors)
    if "INSUFFICIENT_SCOPES" in codes:
        return InsufficientScopesError(message, status_code=status_code, errors=errors)
    if status_code in NON_RETRYABLE_STATUS_CODES or codes & NON_RETRYABLE_ERROR_CODES:
        return NonRetryableRemoteError(message, status_code=status_code, errors=errors)
    return RemoteAPIError(message, status_code=status_code, errors=errors)
