"""
Pytest fixtures for the listing upload pipeline tests.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest
import pytest_asyncio

from app.services.cache import FileTier, MemoryTier, TieredCache
from app.services.etsy.client import EtsyListingClient
from app.services.etsy.gateway import ApiGateway
from app.services.etsy.rate_limiter import RateLimitTracker
from app.services.etsy.token_broker import InMemoryCredentialStore, TokenBroker
from app.services.etsy.types import Owner, Token
from app.services.queue.handlers import CreateListingHandler
from app.services.queue.media import InMemoryMediaRepository, MediaStore
from app.services.queue.store import InMemoryJobRepository, JobStore

TOKEN_URL = "https://api.etsy.test/v3/public/oauth/token"
API_BASE = "https://openapi.etsy.test/v3"


class FakeClock:
    """Monotonic clock whose sleep advances time instantly."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class FakeEtsy:
    """In-process stand-in for the Etsy API, used as an httpx MockTransport handler."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.queued: list[httpx.Response] = []
        self.route_failures: dict[tuple[str, str], list[httpx.Response]] = {}
        self.shipping_profiles = [{"shipping_profile_id": 777, "title": "Standard"}]
        self.next_listing_id = 5550001
        self.next_image_id = 9000
        self.listing_images: dict[int, list[dict]] = {}
        self.hide_images = False
        self.token_status = 200
        self.refresh_count = 0
        self.delay = 0.0

    def calls(self, method: str, suffix: str) -> list[httpx.Request]:
        return [
            r for r in self.requests if r.method == method and r.url.path.endswith(suffix)
        ]

    def api_calls(self) -> list[httpx.Request]:
        return [r for r in self.requests if not r.url.path.endswith("/oauth/token")]

    def fail_next(self, method: str, suffix: str, *responses: httpx.Response) -> None:
        """Answer the next matching requests with ``responses`` in order."""
        self.route_failures.setdefault((method, suffix), []).extend(responses)

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)

        path = request.url.path
        if path.endswith("/oauth/token"):
            self.refresh_count += 1
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_grant"})
            return httpx.Response(
                200,
                json={
                    "access_token": f"refreshed-access-{self.refresh_count}",
                    "refresh_token": f"refreshed-refresh-{self.refresh_count}",
                    "expires_in": 3600,
                },
            )

        if self.queued:
            return self.queued.pop(0)

        for (method, suffix), pending in self.route_failures.items():
            if pending and request.method == method and path.endswith(suffix):
                return pending.pop(0)

        parts = path.split("/")
        if path.endswith("/shipping-profiles"):
            return httpx.Response(200, json={"count": 1, "results": self.shipping_profiles})
        if request.method == "POST" and path.endswith("/listings"):
            listing_id = self.next_listing_id
            self.next_listing_id += 1
            self.listing_images[listing_id] = []
            return httpx.Response(201, json={"listing_id": listing_id, "state": "draft"})
        if request.method == "POST" and path.endswith("/images"):
            listing_id = int(parts[-2])
            image_id = self.next_image_id
            self.next_image_id += 1
            self.listing_images.setdefault(listing_id, []).append(
                {"listing_image_id": image_id, "listing_id": listing_id}
            )
            return httpx.Response(201, json={"listing_image_id": image_id})
        if request.method == "POST" and path.endswith("/videos"):
            return httpx.Response(201, json={"video_id": 4242})
        if request.method == "GET" and path.endswith("/images"):
            listing_id = int(parts[-2])
            images = [] if self.hide_images else self.listing_images.get(listing_id, [])
            return httpx.Response(200, json={"count": len(images), "results": images})
        if request.method == "PATCH":
            return httpx.Response(200, json={"listing_id": int(parts[-1]), "state": "active"})
        if request.method == "PUT" and path.endswith("/inventory"):
            return httpx.Response(200, json={"products": []})
        return httpx.Response(404, json={"error": f"no route for {request.method} {path}"})


def fresh_token(access: str = "access-1", hours: float = 1) -> Token:
    return Token(
        access_token=access,
        refresh_token="refresh-1",
        expires_at=datetime.now(timezone.utc) + timedelta(hours=hours),
    )


@pytest.fixture
def owner():
    """Shop owner used by most tests."""
    return Owner(user_id="user-1", shop_id=1001)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_etsy():
    return FakeEtsy()


@pytest.fixture
def credential_store(owner):
    return InMemoryCredentialStore({owner: fresh_token()})


@pytest_asyncio.fixture
async def http_client(fake_etsy):
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_etsy)) as client:
        yield client


@pytest.fixture
def rate_limiter(clock):
    return RateLimitTracker(max_wait_seconds=120, clock=clock, sleep=clock.sleep)


@pytest.fixture
def token_broker(credential_store, http_client):
    return TokenBroker(
        store=credential_store,
        http_client=http_client,
        client_id="test-key",
        token_url=TOKEN_URL,
        safety_margin_seconds=60,
    )


@pytest.fixture
def gateway(http_client, token_broker, rate_limiter, clock):
    return ApiGateway(
        http_client=http_client,
        token_broker=token_broker,
        rate_limiter=rate_limiter,
        api_key="test-key",
        api_base=API_BASE,
        max_attempts=3,
        backoff_base_seconds=1.0,
        sleep=clock.sleep,
    )


@pytest.fixture
def listing_client(gateway):
    return EtsyListingClient(gateway)


@pytest.fixture
def cache(tmp_path):
    return TieredCache(
        small=MemoryTier(1024 * 1024),
        large=FileTier(tmp_path / "cache"),
        prefix="test",
        size_threshold=1024,
        default_max_age=3600,
    )


@pytest.fixture
def job_repository():
    return InMemoryJobRepository()


@pytest.fixture
def job_store(job_repository):
    return JobStore(job_repository)


@pytest.fixture
def media_store():
    return MediaStore(InMemoryMediaRepository())


@pytest.fixture
def listing_handler(listing_client, media_store, cache, clock):
    return CreateListingHandler(
        client=listing_client,
        media_store=media_store,
        cache=cache,
        verify_attempts=3,
        verify_delay=2.0,
        sleep=clock.sleep,
    )


@pytest.fixture
def listing_payload():
    """Minimal valid create-listing payload without media."""
    return {
        "title": "Hand-thrown stoneware mug",
        "description": "Glazed in speckled white.",
        "price": 32.0,
        "quantity": 4,
        "taxonomy_id": 1062,
        "tags": ["mug", "ceramic"],
    }
