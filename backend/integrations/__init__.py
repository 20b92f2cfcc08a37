"""
Square integration package.

  - base:   sync kinds + remote error taxonomy
  - square: async httpx client with tenacity retry for transient failures

Usage:
    from integrations.square import get_client_for_merchant

    client = await get_client_for_merchant(db, merchant_id)
    page = await client.list_catalog(["ITEM", "CATEGORY"])
"""

from integrations.base import (
    InsufficientScopesError,
    MerchantNotConfiguredError,
    NonRetryableRemoteError,
    RateLimitedError,
    RemoteAPIError,
    RemoteAuthError,
    RemoteTimeoutError,
    SyncKind,
    is_retryable,
)

__all__ = [
    "SyncKind",
    "RemoteAPIError",
    "NonRetryableRemoteError",
    "RemoteAuthError",
    "InsufficientScopesError",
    "RateLimitedError",
    "RemoteTimeoutError",
    "MerchantNotConfiguredError",
    "is_retryable",
]
