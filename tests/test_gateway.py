"""
Tests for ApiGateway retry, auth and de-duplication behavior.
"""

import asyncio

import httpx
import pytest

from app.services.etsy.errors import (
    AuthExpiredError,
    NetworkError,
    PayloadValidationError,
    RateLimitedError,
    UnknownAPIError,
)
from app.services.etsy.gateway import ApiGateway

IMAGES = "/application/listings/5550001/images"
LISTINGS = "/application/shops/1001/listings"


class TestAuthRetry:
    """Tests for the single refresh on 401."""

    @pytest.mark.asyncio
    async def test_401_then_success_refreshes_once(self, gateway, owner, fake_etsy):
        """A 401 triggers one refresh and the request is replayed with the new token."""
        fake_etsy.queued.append(httpx.Response(401, json={"error": "invalid_token"}))

        result = await gateway.request(owner, IMAGES)

        assert result == {"count": 0, "results": []}
        assert fake_etsy.refresh_count == 1
        calls = fake_etsy.api_calls()
        assert len(calls) == 2
        assert calls[0].headers["authorization"] == "Bearer access-1"
        assert calls[1].headers["authorization"] == "Bearer refreshed-access-1"

    @pytest.mark.asyncio
    async def test_401_twice_raises_auth_expired(self, gateway, owner, fake_etsy, credential_store):
        """A second 401 after refresh invalidates the credential."""
        fake_etsy.queued.extend(
            [httpx.Response(401, json={}), httpx.Response(401, json={})]
        )

        with pytest.raises(AuthExpiredError) as exc_info:
            await gateway.request(owner, IMAGES)

        assert exc_info.value.is_retryable is False
        assert fake_etsy.refresh_count == 1
        assert len(fake_etsy.api_calls()) == 2
        assert (await credential_store.get(owner)).is_valid is False

    @pytest.mark.asyncio
    async def test_requests_carry_api_key(self, gateway, owner, fake_etsy):
        """Every call sends the application key header."""
        await gateway.request(owner, IMAGES)

        assert fake_etsy.api_calls()[0].headers["x-api-key"] == "test-key"


class TestRateLimitRetry:
    """Tests for 429 handling."""

    @pytest.mark.asyncio
    async def test_retry_after_delays_next_attempt(self, gateway, owner, fake_etsy, clock):
        """Retry-After: 2 holds the retry back at least two seconds."""
        start = clock.now
        fake_etsy.queued.append(httpx.Response(429, headers={"Retry-After": "2"}, json={}))

        await gateway.request(owner, IMAGES)

        assert len(fake_etsy.api_calls()) == 2
        assert clock.sleeps == [2.0]
        assert clock.now - start >= 2

    @pytest.mark.asyncio
    async def test_429_without_retry_after_uses_backoff(self, gateway, owner, fake_etsy, clock):
        """Without a header the exponential backoff schedule applies."""
        fake_etsy.queued.extend([httpx.Response(429, json={}), httpx.Response(429, json={})])

        await gateway.request(owner, IMAGES)

        assert clock.sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_persistent_429_raises_rate_limited(self, gateway, owner, fake_etsy):
        """After max_attempts a retryable RateLimitedError surfaces."""
        fake_etsy.queued.extend(
            [httpx.Response(429, headers={"Retry-After": "1"}, json={}) for _ in range(3)]
        )

        with pytest.raises(RateLimitedError) as exc_info:
            await gateway.request(owner, IMAGES)

        assert exc_info.value.is_retryable is True
        assert len(fake_etsy.api_calls()) == 3

    @pytest.mark.asyncio
    async def test_success_headers_update_budget(self, gateway, owner, fake_etsy, clock):
        """Budgets reported on a success delay later requests to the same endpoint."""
        fake_etsy.queued.append(
            httpx.Response(
                200,
                headers={"x-ratelimit-remaining": "0", "x-ratelimit-reset": "5"},
                json={"results": []},
            )
        )

        await gateway.request(owner, IMAGES)
        await gateway.request(owner, IMAGES)

        assert clock.sleeps == [5.0]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("remaining", ["NaN", "inf", "1e400"])
    async def test_non_finite_budget_on_create_returns_body(
        self, gateway, owner, fake_etsy, remaining
    ):
        """A created draft is returned even when its budget headers are nonsense."""
        fake_etsy.queued.append(
            httpx.Response(
                201,
                headers={"x-ratelimit-remaining": remaining, "x-ratelimit-reset": "nan"},
                json={"listing_id": 99},
            )
        )

        result = await gateway.request(owner, LISTINGS, method="POST", json={"title": "Mug"})

        assert result == {"listing_id": 99}
        assert len(fake_etsy.api_calls()) == 1


class TestTransientFailures:
    """Tests for 5xx and transport errors."""

    @pytest.mark.asyncio
    async def test_5xx_is_retried(self, gateway, owner, fake_etsy, clock):
        """A server error is retried after backoff."""
        fake_etsy.queued.append(httpx.Response(503, text="unavailable"))

        result = await gateway.request(owner, IMAGES)

        assert result["results"] == []
        assert clock.sleeps == [1.0]

    @pytest.mark.asyncio
    async def test_5xx_exhausts_attempts(self, gateway, owner, fake_etsy):
        """Persistent server errors end in a retryable NetworkError."""
        fake_etsy.queued.extend([httpx.Response(502, text="bad gateway") for _ in range(3)])

        with pytest.raises(NetworkError) as exc_info:
            await gateway.request(owner, IMAGES)

        assert exc_info.value.status_code == 502
        assert exc_info.value.is_retryable is True

    @pytest.mark.asyncio
    async def test_timeout_becomes_network_error(self, token_broker, rate_limiter, owner, clock):
        """Timeouts are retried and then reported as NetworkError."""
        attempts = []

        def timing_out(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            raise httpx.ReadTimeout("timed out", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(timing_out)) as client:
            gateway = ApiGateway(
                http_client=client,
                token_broker=token_broker,
                rate_limiter=rate_limiter,
                api_key="test-key",
                api_base="https://openapi.etsy.test/v3",
                max_attempts=3,
                sleep=clock.sleep,
            )
            with pytest.raises(NetworkError, match="ReadTimeout"):
                await gateway.request(owner, IMAGES)

        assert len(attempts) == 3
        assert clock.sleeps == [1.0, 2.0]


class TestClientErrors:
    """Tests for terminal 4xx responses."""

    @pytest.mark.asyncio
    async def test_4xx_is_payload_validation(self, gateway, owner, fake_etsy):
        """Other 4xx responses are not retried."""
        fake_etsy.queued.append(httpx.Response(400, json={"error": "title too long"}))

        with pytest.raises(PayloadValidationError) as exc_info:
            await gateway.request(owner, LISTINGS, "POST", json={"title": "x"})

        assert exc_info.value.status_code == 400
        assert exc_info.value.response_body == {"error": "title too long"}
        assert exc_info.value.is_retryable is False
        assert len(fake_etsy.api_calls()) == 1

    @pytest.mark.asyncio
    async def test_non_json_success(self, gateway, owner, fake_etsy):
        """A success without JSON is an unknown provider failure."""
        fake_etsy.queued.append(httpx.Response(200, text="<html>maintenance</html>"))

        with pytest.raises(UnknownAPIError):
            await gateway.request(owner, IMAGES)

    @pytest.mark.asyncio
    async def test_empty_body(self, gateway, owner, fake_etsy):
        """An empty success body is returned as an empty dict."""
        fake_etsy.queued.append(httpx.Response(204))

        assert await gateway.request(owner, IMAGES) == {}


class TestDeduplication:
    """Tests for in-flight request coalescing."""

    @pytest.mark.asyncio
    async def test_identical_gets_share_one_call(self, gateway, owner, fake_etsy):
        """Concurrent identical reads hit the network once."""
        fake_etsy.delay = 0.01

        results = await asyncio.gather(*(gateway.request(owner, IMAGES) for _ in range(5)))

        assert len(fake_etsy.api_calls()) == 1
        assert all(r == results[0] for r in results)
        assert gateway.in_flight_count == 0

    @pytest.mark.asyncio
    async def test_different_params_are_not_merged(self, gateway, owner, fake_etsy):
        """Reads with different query parameters are separate requests."""
        fake_etsy.delay = 0.01

        await asyncio.gather(
            gateway.request(owner, IMAGES, params={"limit": 1}),
            gateway.request(owner, IMAGES, params={"limit": 2}),
        )

        assert len(fake_etsy.api_calls()) == 2

    @pytest.mark.asyncio
    async def test_writes_are_never_merged(self, gateway, owner, fake_etsy):
        """Concurrent POSTs each create their own listing."""
        fake_etsy.delay = 0.01

        first, second = await asyncio.gather(
            gateway.request(owner, LISTINGS, "POST", json={"title": "a"}),
            gateway.request(owner, LISTINGS, "POST", json={"title": "a"}),
        )

        assert first["listing_id"] != second["listing_id"]
        assert len(fake_etsy.calls("POST", "/listings")) == 2
