"""
Tests for the Square API client.

Covers:
  - Error classification (retryable vs not, scopes, rate limits)
  - Retry behavior of _request against a mocked transport
  - Merchant client resolution
"""

import json
import uuid
from datetime import datetime

import httpx
import pytest

from core.security import encrypt
from integrations.base import (
    InsufficientScopesError,
    MerchantNotConfiguredError,
    NonRetryableRemoteError,
    RateLimitedError,
    RemoteAPIError,
    RemoteAuthError,
    RemoteTimeoutError,
    classify_response,
    is_retryable,
)
from integrations.square import SquareClient, get_client_for_merchant, parse_square_timestamp, to_square_timestamp


def _mock_transport(monkeypatch, responses):
    """Route every httpx.AsyncClient through a MockTransport replaying ``responses``."""
    seen: list[httpx.Request] = []
    real_client = httpx.AsyncClient

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return responses[min(len(seen), len(responses)) - 1]

    def factory(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(httpx, "AsyncClient", factory)
    return seen


# ── Classification ─────────────────────────────────────────────────────


class TestClassifyResponse:
    def test_rate_limit_reads_retry_after(self):
        error = classify_response(429, {}, {"Retry-After": "7"})
        assert isinstance(error, RateLimitedError)
        assert error.retry_after == 7.0
        assert error.retryable is True

    def test_unauthorized_is_not_retryable(self):
        error = classify_response(401, {"errors": [{"code": "UNAUTHORIZED", "category": "AUTHENTICATION_ERROR"}]})
        assert isinstance(error, RemoteAuthError)
        assert is_retryable(error) is False

    def test_insufficient_scopes(self):
        error = classify_response(403, {"errors": [{"code": "INSUFFICIENT_SCOPES", "detail": "INVOICES_READ"}]})
        assert isinstance(error, InsufficientScopesError)
        assert "INVOICES_READ" in str(error)

    def test_conflict_codes_are_not_retryable(self):
        for status, code in ((409, "CONFLICT"), (400, "VERSION_MISMATCH"), (422, "IDEMPOTENCY_KEY_REUSED")):
            error = classify_response(status, {"errors": [{"code": code}]})
            assert isinstance(error, NonRetryableRemoteError), code
            assert error.has_code(code)

    def test_server_errors_are_retryable(self):
        error = classify_response(503, {"errors": [{"code": "SERVICE_UNAVAILABLE", "category": "API_ERROR"}]})
        assert type(error) is RemoteAPIError
        assert error.retryable is True

    def test_timeouts_are_retryable(self):
        assert is_retryable(RemoteTimeoutError("timed out")) is True
        assert is_retryable(ValueError("not remote")) is False


# ── Requests ───────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_request_sends_auth_and_version_headers(monkeypatch):
    seen = _mock_transport(monkeypatch, [httpx.Response(200, json={"locations": [{"id": "LOC_1"}]})])
    client = SquareClient(encrypt("sq-secret-token"))

    locations = await client.list_locations()

    assert locations == [{"id": "LOC_1"}]
    assert seen[0].headers["Authorization"] == "Bearer sq-secret-token"
    assert seen[0].headers["Square-Version"] == "2025-10-16"
    assert seen[0].url.path == "/v2/locations"


@pytest.mark.asyncio
async def test_rate_limited_request_is_retried(monkeypatch):
    seen = _mock_transport(
        monkeypatch,
        [
            httpx.Response(429, headers={"Retry-After": "0.01"}, json={"errors": [{"code": "RATE_LIMITED"}]}),
            httpx.Response(200, json={"order": {"id": "ORD_1", "state": "COMPLETED"}}),
        ],
    )
    client = SquareClient(encrypt("token"))

    order = await client.get_order("ORD_1")

    assert order["id"] == "ORD_1"
    assert len(seen) == 2


@pytest.mark.asyncio
async def test_retries_stop_after_three_attempts(monkeypatch):
    seen = _mock_transport(monkeypatch, [httpx.Response(429, headers={"Retry-After": "0.01"})])
    client = SquareClient(encrypt("token"))

    with pytest.raises(RateLimitedError):
        await client.get_invoice("INV_1")
    assert len(seen) == 3


@pytest.mark.asyncio
async def test_non_retryable_error_raises_immediately(monkeypatch):
    seen = _mock_transport(
        monkeypatch,
        [httpx.Response(400, json={"errors": [{"code": "BAD_REQUEST", "category": "INVALID_REQUEST_ERROR"}]})],
    )
    client = SquareClient(encrypt("token"))

    with pytest.raises(NonRetryableRemoteError):
        await client.search_catalog(["ITEM"], begin_time="2026-01-01T00:00:00Z")
    assert len(seen) == 1


@pytest.mark.asyncio
async def test_search_catalog_requests_deleted_objects(monkeypatch):
    seen = _mock_transport(monkeypatch, [httpx.Response(200, json={"objects": []})])
    client = SquareClient(encrypt("token"))

    await client.search_catalog(["ITEM", "ITEM_VARIATION"], begin_time="2026-01-01T00:00:00Z", cursor="abc")

    body = json.loads(seen[0].content)
    assert body["include_deleted_objects"] is True
    assert body["begin_time"] == "2026-01-01T00:00:00Z"
    assert body["cursor"] == "abc"


@pytest.mark.asyncio
async def test_list_catalog_requests_related_objects(monkeypatch):
    seen = _mock_transport(monkeypatch, [httpx.Response(200, json={"objects": [], "related_objects": []})])
    client = SquareClient(encrypt("token"))

    await client.list_catalog(["ITEM", "IMAGE"], cursor="page-2")

    params = seen[0].url.params
    assert params["types"] == "ITEM,IMAGE"
    assert params["include_related_objects"] == "true"
    assert params["cursor"] == "page-2"


# ── Helpers ────────────────────────────────────────────────────────────


def test_square_timestamps_round_trip_as_naive_utc():
    assert parse_square_timestamp("2026-03-01T12:30:00-05:00") == datetime(2026, 3, 1, 17, 30)
    assert parse_square_timestamp(None) is None
    assert to_square_timestamp(datetime(2026, 3, 1, 17, 30, 5, 999)) == "2026-03-01T17:30:05Z"


@pytest.mark.asyncio
async def test_get_client_for_merchant(test_db, merchant_id):
    from db.models import Merchant

    client = await get_client_for_merchant(test_db, merchant_id)
    assert client.access_token == "sq-test-token"

    with pytest.raises(MerchantNotConfiguredError):
        await get_client_for_merchant(test_db, uuid.uuid4())

    merchant = await test_db.get(Merchant, merchant_id)
    merchant.access_token_encrypted = None
    await test_db.commit()
    with pytest.raises(MerchantNotConfiguredError, match="no Square access token"):
        await get_client_for_merchant(test_db, merchant_id)
