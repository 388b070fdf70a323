"""OAuth access token lifecycle for Etsy shop connections."""

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol
import logging

import httpx
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.etsy_token import EtsyToken
from app.services.etsy.errors import AuthExpiredError, NetworkError
from app.services.etsy.inflight import InFlight
from app.services.etsy.types import Owner, Token

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CredentialStore(Protocol):
    """Durable storage for OAuth credentials."""

    async def get(self, owner: Owner) -> Optional[Token]: ...

    async def save(self, owner: Owner, token: Token) -> None: ...

    async def mark_invalid(self, owner: Owner) -> None: ...


class SqlAlchemyCredentialStore:
    """Credential store backed by the ``etsy_tokens`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @staticmethod
    def _filter(stmt, owner: Owner):
        stmt = stmt.where(EtsyToken.owner_id == owner.user_id)
        if owner.shop_id:
            stmt = stmt.where(EtsyToken.shop_id == owner.shop_id)
        return stmt

    async def get(self, owner: Owner) -> Optional[Token]:
        async with self._session_factory() as db:
            stmt = self._filter(select(EtsyToken), owner)
            result = await db.execute(stmt.order_by(EtsyToken.created_at.desc()).limit(1))
            row = result.scalar_one_or_none()

        if row is None:
            return None
        return Token(
            access_token=row.access_token,
            refresh_token=row.refresh_token,
            expires_at=row.expires_at,
            is_valid=row.is_valid,
        )

    async def save(self, owner: Owner, token: Token) -> None:
        async with self._session_factory() as db:
            async with db.begin():
                stmt = self._filter(select(EtsyToken), owner).with_for_update()
                row = (await db.execute(stmt.limit(1))).scalar_one_or_none()
                if row is None:
                    row = EtsyToken(owner_id=owner.user_id, shop_id=owner.shop_id)
                    db.add(row)
                row.access_token = token.access_token
                row.refresh_token = token.refresh_token
                row.expires_at = token.expires_at
                row.is_valid = token.is_valid
                row.last_refreshed_at = _utcnow()

    async def mark_invalid(self, owner: Owner) -> None:
        async with self._session_factory() as db:
            async with db.begin():
                await db.execute(self._filter(update(EtsyToken), owner).values(is_valid=False))


class InMemoryCredentialStore:
    """Process-local credential store for development and tests."""

    def __init__(self, tokens: Optional[dict[Owner, Token]] = None) -> None:
        self._tokens: dict[str, Token] = {o.key: t for o, t in (tokens or {}).items()}

    async def get(self, owner: Owner) -> Optional[Token]:
        return self._tokens.get(owner.key)

    async def save(self, owner: Owner, token: Token) -> None:
        self._tokens[owner.key] = token

    async def mark_invalid(self, owner: Owner) -> None:
        token = self._tokens.get(owner.key)
        if token is not None:
            self._tokens[owner.key] = token.invalidated()


class TokenBroker:
    """Hands out valid access tokens per owner.

    Features:
    - In-memory token cache with a safety margin before expiry
    - Refresh coalescing: one refresh call per owner at a time
    - Terminal invalidation when the provider rejects the refresh token
    """

    def __init__(
        self,
        store: CredentialStore,
        http_client: httpx.AsyncClient,
        client_id: str,
        token_url: str,
        safety_margin_seconds: int = 60,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._http = http_client
        self._client_id = client_id
        self._token_url = token_url
        self._safety_margin = timedelta(seconds=safety_margin_seconds)
        self._now = now
        self._cache: dict[str, Token] = {}
        self._refreshing = InFlight()
        self.refresh_calls = 0

    def _is_fresh(self, token: Token) -> bool:
        return token.is_valid and self._now() < token.expires_at - self._safety_margin

    async def get_valid_access_token(self, owner: Owner) -> str:
        """Get a valid access token for ``owner``, refreshing if needed.

        Raises:
            AuthExpiredError: If the owner has no usable connection.
            NetworkError: If a needed refresh could not reach the provider.
        """
        cached = self._cache.get(owner.key)
        if cached is not None and self._is_fresh(cached):
            return cached.access_token

        stored = await self._store.get(owner)
        if stored is None:
            raise AuthExpiredError("No Etsy connection found. Please connect your shop.")
        if not stored.is_valid:
            self._cache.pop(owner.key, None)
            raise AuthExpiredError()

        if self._is_fresh(stored):
            self._cache[owner.key] = stored
            return stored.access_token

        # A concurrent refresh may have finished while the store was read
        cached = self._cache.get(owner.key)
        if cached is not None and self._is_fresh(cached):
            return cached.access_token

        token = await self.refresh(owner)
        return token.access_token

    async def refresh(self, owner: Owner) -> Token:
        """Exchange the stored refresh token for a new pair.

        Concurrent callers for the same owner share a single in-flight
        refresh and receive its result.
        """
        return await self._refreshing.run(owner.key, lambda: self._refresh(owner))

    def is_refreshing(self, owner: Owner) -> bool:
        return owner.key in self._refreshing

    async def _refresh(self, owner: Owner) -> Token:
        stored = await self._store.get(owner)
        if stored is None or not stored.is_valid:
            raise AuthExpiredError()

        logger.info(f"Refreshing Etsy access token for {owner}")
        self.refresh_calls += 1
        try:
            response = await self._http.post(
                self._token_url,
                data={
                    "grant_type": "refresh_token",
                    "client_id": self._client_id,
                    "refresh_token": stored.refresh_token,
                },
            )
        except httpx.HTTPError as e:
            logger.warning(f"Token refresh for {owner} failed to reach Etsy: {e}")
            raise NetworkError(None, f"Token refresh failed: {e}") from e

        if response.status_code >= 500:
            raise NetworkError(
                response.status_code, f"Token refresh failed: {response.text}"
            )

        if not response.is_success:
            logger.error(
                f"Etsy rejected refresh token for {owner}: "
                f"{response.status_code} - {response.text}"
            )
            await self.invalidate(owner)
            raise AuthExpiredError()

        token_data = response.json()
        token = Token(
            access_token=token_data["access_token"],
            refresh_token=token_data.get("refresh_token", stored.refresh_token),
            expires_at=self._now() + timedelta(seconds=int(token_data["expires_in"])),
        )

        await self._store.save(owner, token)
        self._cache[owner.key] = token

        logger.info(f"Successfully refreshed Etsy access token for {owner}")
        return token

    async def invalidate(self, owner: Owner) -> None:
        """Drop the cached token and flag the stored credential invalid."""
        self._cache.pop(owner.key, None)
        await self._store.mark_invalid(owner)
        logger.warning(f"Invalidated Etsy credential for {owner}")

    def cached_token(self, owner: Owner) -> Optional[Token]:
        return self._cache.get(owner.key)

    async def stored_token(self, owner: Owner) -> Optional[Token]:
        """Cached token, else the durable one; never refreshes."""
        cached = self._cache.get(owner.key)
        if cached is not None:
            return cached
        return await self._store.get(owner)
