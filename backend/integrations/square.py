"""
Square API Integration Client

Handles the Square calls the sync engine needs: catalog, vendors, locations,
inventory counts, invoices and orders. Transient failures (timeouts, 5xx,
429) are retried here; everything else surfaces as a typed error from
``integrations.base``.
"""

import uuid
from datetime import datetime, timezone

import httpx
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from core.config import get_settings
from core.security import decrypt
from integrations.base import (
    MerchantNotConfiguredError,
    RateLimitedError,
    RemoteAPIError,
    RemoteTimeoutError,
    classify_response,
    is_retryable,
)

logger = structlog.get_logger()

settings = get_settings()

SQUARE_BASE_URL = (
    "https://connect.squareupsandbox.com/v2"
    if settings.square_environment == "sandbox"
    else "https://connect.squareup.com/v2"
)

_exponential = wait_exponential(min=1, max=10)


def _wait_for_retry(retry_state) -> float:
    exc = retry_state.outcome.exception()
    if isinstance(exc, RateLimitedError) and exc.retry_after:
        return exc.retry_after
    return _exponential(retry_state)


def parse_square_timestamp(value: str | None) -> datetime | None:
    """Parse an RFC 3339 timestamp from Square into a naive UTC datetime."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def to_square_timestamp(value: datetime) -> str:
    """Format a naive UTC datetime the way Square expects (RFC 3339, Z suffix)."""
    return value.replace(microsecond=0).isoformat() + "Z"


class SquareClient:
    """Client for Square API interactions."""

    def __init__(self, access_token_encrypted: str):
        self.access_token = decrypt(access_token_encrypted)
        self.headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
            "Square-Version": settings.square_api_version,
        }

    @retry(
        retry=retry_if_exception(is_retryable),
        stop=stop_after_attempt(3),
        wait=_wait_for_retry,
        reraise=True,
    )
    async def _request(self, method: str, path: str, params: dict | None = None, json: dict | None = None) -> dict:
        try:
            async with httpx.AsyncClient(timeout=settings.square_timeout_seconds) as client:
                response = await client.request(
                    method,
                    f"{SQUARE_BASE_URL}{path}",
                    headers=self.headers,
                    params=params,
                    json=json,
                )
        except httpx.TimeoutException as exc:
            raise RemoteTimeoutError(f"Square request timed out: {method} {path}") from exc
        except httpx.TransportError as exc:
            raise RemoteAPIError(f"Square transport error: {exc}") from exc

        try:
            body = response.json() if response.content else {}
        except ValueError:
            body = {}

        if response.status_code >= 400:
            error = classify_response(response.status_code, body, response.headers)
            logger.warning(
                "square.request_failed",
                method=method,
                path=path,
                status_code=response.status_code,
                codes=sorted(error.error_codes),
                retryable=error.retryable,
            )
            raise error
        return body

    # ── Catalog ────────────────────────────────────────────────────────

    async def list_catalog(self, types: list[str], cursor: str | None = None) -> dict:
        """Fetch one page of catalog objects of the given types, with their related objects."""
        params = {"types": ",".join(types), "include_related_objects": "true"}
        if cursor:
            params["cursor"] = cursor
        return await self._request("GET", "/catalog/list", params=params)

    async def search_catalog(
        self,
        object_types: list[str],
        begin_time: str,
        cursor: str | None = None,
        limit: int = 1000,
    ) -> dict:
        """Fetch catalog objects changed since ``begin_time``, deletion markers included."""
        body = {
            "object_types": object_types,
            "include_deleted_objects": True,
            "include_related_objects": True,
            "begin_time": begin_time,
            "limit": limit,
        }
        if cursor:
            body["cursor"] = cursor
        return await self._request("POST", "/catalog/search", json=body)

    # ── Vendors & Locations ────────────────────────────────────────────

    async def retrieve_vendor(self, vendor_id: str) -> dict | None:
        data = await self._request("GET", f"/vendors/{vendor_id}")
        return data.get("vendor")

    async def search_vendors(self, cursor: str | None = None) -> dict:
        body = {"cursor": cursor} if cursor else {}
        return await self._request("POST", "/vendors/search", json=body)

    async def list_locations(self) -> list[dict]:
        """Fetch all locations from Square."""
        data = await self._request("GET", "/locations")
        return data.get("locations", [])

    # ── Inventory ──────────────────────────────────────────────────────

    async def batch_retrieve_inventory_counts(
        self,
        catalog_object_ids: list[str],
        location_ids: list[str],
        states: list[str] | None = None,
        cursor: str | None = None,
    ) -> dict:
        body = {"catalog_object_ids": catalog_object_ids, "location_ids": location_ids}
        if states:
            body["states"] = states
        if cursor:
            body["cursor"] = cursor
        return await self._request("POST", "/inventory/counts/batch-retrieve", json=body)

    # ── Invoices & Orders ──────────────────────────────────────────────

    async def search_invoices(self, location_ids: list[str], cursor: str | None = None, limit: int = 200) -> dict:
        body = {
            "query": {
                "filter": {"location_ids": location_ids},
                "sort": {"field": "INVOICE_SORT_DATE", "order": "DESC"},
            },
            "limit": limit,
        }
        if cursor:
            body["cursor"] = cursor
        return await self._request("POST", "/invoices/search", json=body)

    async def get_invoice(self, invoice_id: str) -> dict | None:
        data = await self._request("GET", f"/invoices/{invoice_id}")
        return data.get("invoice")

    async def get_order(self, order_id: str) -> dict | None:
        data = await self._request("GET", f"/orders/{order_id}")
        return data.get("order")

    async def search_orders(
        self,
        location_ids: list[str],
        closed_at_start: str,
        closed_at_end: str,
        cursor: str | None = None,
        limit: int = 200,
    ) -> dict:
        """Fetch COMPLETED orders closed inside the given window."""
        body = {
            "location_ids": location_ids,
            "query": {
                "filter": {
                    "state_filter": {"states": ["COMPLETED"]},
                    "date_time_filter": {"closed_at": {"start_at": closed_at_start, "end_at": closed_at_end}},
                },
                "sort": {"sort_field": "CLOSED_AT", "sort_order": "DESC"},
            },
            "limit": limit,
        }
        if cursor:
            body["cursor"] = cursor
        return await self._request("POST", "/orders/search", json=body)


async def get_client_for_merchant(db: AsyncSession, merchant_id: uuid.UUID) -> SquareClient:
    """Build a client from the merchant's stored token.

    Raises MerchantNotConfiguredError when the merchant is missing, inactive
    or was never connected to Square.
    """
    from db.models import Merchant

    merchant = (await db.execute(select(Merchant).where(Merchant.merchant_id == merchant_id))).scalar_one_or_none()
    if merchant is None or merchant.status == "inactive":
        raise MerchantNotConfiguredError(f"Merchant {merchant_id} not found or inactive")
    if not merchant.access_token_encrypted:
        raise MerchantNotConfiguredError(f"Merchant {merchant_id} has no Square access token")
    return SquareClient(merchant.access_token_encrypted)
