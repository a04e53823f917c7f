"""Tests for the per-process token bucket and endpoint rate limiting."""

import pytest
from fastapi.testclient import TestClient

from authgate import app as app_module
from authgate.service.runtime import check_rate_limit, get_runtime
from authgate.storage.redis_cache import rate_key


@pytest.fixture
def client():
    return TestClient(app_module.app)


class TestLocalBucket:
    async def test_bucket_empties(self):
        runtime = get_runtime()
        results = [await check_rate_limit(runtime, "unit:bucket", 3, 60) for _ in range(4)]
        assert [allowed for allowed, _, _ in results] == [True, True, True, False]
        assert results[2][1] == 0
        assert results[3][2] >= 1

    async def test_keys_are_independent(self):
        runtime = get_runtime()
        assert (await check_rate_limit(runtime, "unit:a", 1, 60))[0]
        assert not (await check_rate_limit(runtime, "unit:a", 1, 60))[0]
        assert (await check_rate_limit(runtime, "unit:b", 1, 60))[0]

    async def test_non_positive_limit_disables(self):
        runtime = get_runtime()
        for _ in range(5):
            allowed, _, _ = await check_rate_limit(runtime, "unit:off", 0, 60)
            assert allowed

    async def test_cost_consumes_several_tokens(self):
        runtime = get_runtime()
        assert (await check_rate_limit(runtime, "unit:cost", 5, 60, cost=4))[0]
        assert not (await check_rate_limit(runtime, "unit:cost", 5, 60, cost=4))[0]


def test_redis_keys_hide_raw_identifiers():
    key = rate_key("login:person@example.com")
    assert key.startswith("rate:")
    assert "person" not in key


def test_login_is_rate_limited_per_email(client):
    statuses = []
    for _ in range(15):
        response = client.post(
            "/v1/auth/login", json={"email": "flood@example.com", "password": "Wrong!Passw0rd"}
        )
        statuses.append(response.status_code)
        if response.status_code == 429:
            assert response.json()["error"]["code"] == "rate_limited"
            assert int(response.headers["retry-after"]) >= 1
            break
    assert statuses[0] == 401
    assert statuses[-1] == 429

    other = client.post(
        "/v1/auth/login", json={"email": "other@example.com", "password": "Wrong!Passw0rd"}
    )
    assert other.status_code == 401
