"""
Tests for TokenBroker refresh coalescing and invalidation.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from app.services.etsy.errors import AuthExpiredError, NetworkError
from app.services.etsy.token_broker import InMemoryCredentialStore, TokenBroker
from app.services.etsy.types import Owner, Token

TOKEN_URL = "https://api.etsy.test/v3/public/oauth/token"


def expired_token() -> Token:
    return Token(
        access_token="stale-access",
        refresh_token="refresh-1",
        expires_at=datetime.now(timezone.utc) - timedelta(minutes=5),
    )


def make_broker(store, http_client) -> TokenBroker:
    return TokenBroker(
        store=store,
        http_client=http_client,
        client_id="test-key",
        token_url=TOKEN_URL,
        safety_margin_seconds=60,
    )


class TestValidToken:
    """Tests for handing out unexpired tokens."""

    @pytest.mark.asyncio
    async def test_fresh_token_is_returned_without_refresh(self, token_broker, owner, fake_etsy):
        """A token well before expiry is used as stored."""
        assert await token_broker.get_valid_access_token(owner) == "access-1"
        assert fake_etsy.refresh_count == 0

    @pytest.mark.asyncio
    async def test_token_inside_safety_margin_is_refreshed(self, owner, http_client, fake_etsy):
        """A token expiring within the safety margin counts as expired."""
        store = InMemoryCredentialStore(
            {
                owner: Token(
                    access_token="almost",
                    refresh_token="refresh-1",
                    expires_at=datetime.now(timezone.utc) + timedelta(seconds=30),
                )
            }
        )
        broker = make_broker(store, http_client)

        assert await broker.get_valid_access_token(owner) == "refreshed-access-1"
        saved = await store.get(owner)
        assert saved.access_token == "refreshed-access-1"
        assert saved.refresh_token == "refreshed-refresh-1"

    @pytest.mark.asyncio
    async def test_missing_connection(self, http_client):
        """Owners without stored credentials must connect first."""
        broker = make_broker(InMemoryCredentialStore(), http_client)

        with pytest.raises(AuthExpiredError, match="No Etsy connection"):
            await broker.get_valid_access_token(Owner("nobody", 1))


class TestRefreshCoalescing:
    """Tests for single-flight refresh."""

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self, owner, http_client, fake_etsy):
        """Ten concurrent requests for an expired token cause exactly one refresh."""
        fake_etsy.delay = 0.01
        broker = make_broker(InMemoryCredentialStore({owner: expired_token()}), http_client)

        tokens = await asyncio.gather(
            *(broker.get_valid_access_token(owner) for _ in range(10))
        )

        assert fake_etsy.refresh_count == 1
        assert broker.refresh_calls == 1
        assert set(tokens) == {"refreshed-access-1"}

    @pytest.mark.asyncio
    async def test_different_owners_refresh_independently(self, http_client, fake_etsy):
        """Coalescing is per owner."""
        first, second = Owner("a", 1), Owner("b", 2)
        store = InMemoryCredentialStore({first: expired_token(), second: expired_token()})
        broker = make_broker(store, http_client)

        await asyncio.gather(
            broker.get_valid_access_token(first), broker.get_valid_access_token(second)
        )

        assert fake_etsy.refresh_count == 2

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_the_failure(self, owner, http_client, fake_etsy):
        """Every waiter sees the error of the shared refresh."""
        fake_etsy.delay = 0.01
        fake_etsy.token_status = 400
        broker = make_broker(InMemoryCredentialStore({owner: expired_token()}), http_client)

        results = await asyncio.gather(
            *(broker.get_valid_access_token(owner) for _ in range(5)),
            return_exceptions=True,
        )

        assert all(isinstance(r, AuthExpiredError) for r in results)
        assert fake_etsy.refresh_count == 1


class TestInvalidation:
    """Tests for terminal credential states."""

    @pytest.mark.asyncio
    async def test_rejected_refresh_marks_credential_invalid(self, owner, http_client, fake_etsy):
        """A provider rejection is terminal and never retried."""
        fake_etsy.token_status = 400
        store = InMemoryCredentialStore({owner: expired_token()})
        broker = make_broker(store, http_client)

        with pytest.raises(AuthExpiredError):
            await broker.get_valid_access_token(owner)
        with pytest.raises(AuthExpiredError):
            await broker.get_valid_access_token(owner)

        assert (await store.get(owner)).is_valid is False
        assert fake_etsy.refresh_count == 1

    @pytest.mark.asyncio
    async def test_invalid_token_is_never_returned(self, owner, http_client, fake_etsy):
        """An invalidated credential is rejected even if it has not expired."""
        store = InMemoryCredentialStore({owner: expired_token()})
        broker = make_broker(store, http_client)
        await broker.invalidate(owner)

        with pytest.raises(AuthExpiredError):
            await broker.get_valid_access_token(owner)
        assert fake_etsy.refresh_count == 0

    @pytest.mark.asyncio
    async def test_invalidate_drops_cached_token(self, token_broker, credential_store, owner):
        """Invalidation clears the in-memory copy as well as the stored one."""
        await token_broker.get_valid_access_token(owner)
        assert token_broker.cached_token(owner) is not None

        await token_broker.invalidate(owner)

        assert token_broker.cached_token(owner) is None
        assert (await credential_store.get(owner)).is_valid is False
        assert (await token_broker.stored_token(owner)).is_valid is False


class TestTransientRefreshFailure:
    """Tests for refresh failures that must not touch the credential."""

    @pytest.mark.asyncio
    async def test_network_error_leaves_credential_untouched(self, owner):
        """A transport failure during refresh is retryable and changes nothing."""

        def unreachable(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        original = expired_token()
        store = InMemoryCredentialStore({owner: original})
        async with httpx.AsyncClient(transport=httpx.MockTransport(unreachable)) as client:
            broker = make_broker(store, client)

            with pytest.raises(NetworkError) as exc_info:
                await broker.get_valid_access_token(owner)

        assert exc_info.value.is_retryable is True
        assert await store.get(owner) == original

    @pytest.mark.asyncio
    async def test_provider_5xx_leaves_credential_untouched(self, owner, http_client, fake_etsy):
        """A 5xx from the token endpoint is transient."""
        fake_etsy.token_status = 503
        original = expired_token()
        store = InMemoryCredentialStore({owner: original})
        broker = make_broker(store, http_client)

        with pytest.raises(NetworkError):
            await broker.get_valid_access_token(owner)

        assert await store.get(owner) == original
