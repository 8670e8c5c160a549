"""Tests for request ID tracing middleware."""
import pytest


@pytest.mark.asyncio
async def test_response_includes_request_id(client):
    """Every response should have X-Request-ID header."""
    resp = await client.get("/health")
    assert "x-request-id" in resp.headers
    # Should be a valid UUID4-ish string
    rid = resp.headers["x-request-id"]
    assert len(rid) == 36  # UUID format


@pytest.mark.asyncio
async def test_client_request_id_honored(client):
    """If the sender supplies X-Request-ID, server should echo it back."""
    custom_id = "evt-trace-12345"
    resp = await client.get("/health", headers={"X-Request-ID": custom_id})
    assert resp.headers["x-request-id"] == custom_id


@pytest.mark.asyncio
async def test_unique_ids_per_request(client):
    """Each request gets a unique ID."""
    r1 = await client.get("/health")
    r2 = await client.get("/health")
    assert r1.headers["x-request-id"] != r2.headers["x-request-id"]


@pytest.mark.asyncio
async def test_rejected_webhook_still_carries_request_id(client):
    resp = await client.post("/api/v1/webhooks/generic", content=b"{}")
    assert resp.status_code == 401
    assert "x-request-id" in resp.headers


@pytest.mark.asyncio
async def test_unsafe_request_id_replaced(client):
    resp = await client.get("/health", headers={"X-Request-ID": "x" * 500})
    assert resp.headers["x-request-id"] != "x" * 500
    assert len(resp.headers["x-request-id"]) == 36
