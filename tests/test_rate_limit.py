"""Tests for rate limiting middleware."""
from __future__ import annotations

import pytest
from kontrivibe.middleware.rate_limit import RateLimitStore, _find_limit


def test_allows_within_limit():
    store = RateLimitStore()
    for i in range(5):
        allowed, count = store.check_and_record("test-key", 10, 60)
        assert allowed is True
        assert count == i + 1


def test_blocks_over_limit():
    store = RateLimitStore()
    for _ in range(10):
        store.check_and_record("block-key", 10, 60)
    allowed, count = store.check_and_record("block-key", 10, 60)
    assert allowed is False
    assert count == 10


def test_separate_keys():
    store = RateLimitStore()
    for _ in range(10):
        store.check_and_record("key-a", 10, 60)
    allowed, _ = store.check_and_record("key-b", 10, 60)
    assert allowed is True


def test_cleanup_removes_stale():
    store = RateLimitStore()
    store._windows["stale-key"]  # Create empty window
    store._cleanup_interval = 0  # Force cleanup on next check
    store.check_and_record("active-key", 10, 60)
    assert "stale-key" not in store._windows


def test_route_limits():
    assert _find_limit("/api/subscriptions/create") == ("/api/subscriptions/create", 5, 300)
    assert _find_limit("/api/auth/login")[0] == "/api/auth/"
    assert _find_limit("/api/subscriptions/status")[0] == "/api/"
    assert _find_limit("/api/webhooks/payment") is None
    assert _find_limit("/health") is None


# Integration tests via API client

@pytest.mark.asyncio
async def test_rate_limit_headers(client):
    resp = await client.get("/api/subscriptions/plans")
    assert resp.headers["x-ratelimit-limit"] == "120"
    assert "x-ratelimit-remaining" in resp.headers


@pytest.mark.asyncio
async def test_payment_creation_is_throttled(client, auth_headers, provider):
    body = {"subscriptionType": "weekly", "paymentMethod": "direct", "phone": "670000000"}
    for _ in range(5):
        resp = await client.post("/api/subscriptions/create", json=body, headers=auth_headers)
        assert resp.status_code == 400
    resp = await client.post("/api/subscriptions/create", json=body, headers=auth_headers)
    assert resp.status_code == 429
    assert resp.json()["error"] == "rate_limited"
    assert resp.headers["retry-after"] == "300"


@pytest.mark.asyncio
async def test_clients_are_keyed_by_forwarded_ip(client):
    for _ in range(10):
        await client.post("/api/auth/login", json={"email": "x@y.cm", "password": "p"},
                          headers={"X-Forwarded-For": "10.0.0.1"})
    blocked = await client.post("/api/auth/login", json={"email": "x@y.cm", "password": "p"},
                                headers={"X-Forwarded-For": "10.0.0.1"})
    other = await client.post("/api/auth/login", json={"email": "x@y.cm", "password": "p"},
                              headers={"X-Forwarded-For": "10.0.0.2"})
    assert blocked.status_code == 429
    assert other.status_code == 401


@pytest.mark.asyncio
async def test_health_not_rate_limited(client):
    for _ in range(5):
        resp = await client.get("/health")
        assert resp.status_code == 200
    resp = await client.get("/health")
    assert "x-ratelimit-limit" not in resp.headers
