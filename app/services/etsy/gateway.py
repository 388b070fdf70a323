"""Single entry point for outbound Etsy API calls."""

import asyncio
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Optional
import logging

import httpx

from app.services.etsy.errors import (
    AuthExpiredError,
    NetworkError,
    PayloadValidationError,
    RateLimitedError,
    UnknownAPIError,
)
from app.services.etsy.inflight import InFlight
from app.services.etsy.rate_limiter import RateLimitTracker
from app.services.etsy.token_broker import TokenBroker
from app.services.etsy.types import Owner

logger = logging.getLogger(__name__)

IDEMPOTENT_METHODS = frozenset({"GET", "HEAD"})


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header given in seconds or as an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class ApiGateway:
    """Async gateway for Etsy API v3.

    Features:
    - De-duplication of identical in-flight reads per owner
    - Per-endpoint rate limit budgets and Retry-After handling
    - Bearer token from the TokenBroker, refreshed once on 401
    - Bounded retries with exponential backoff for 429, 5xx and timeouts
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        token_broker: TokenBroker,
        rate_limiter: RateLimitTracker,
        api_key: str,
        api_base: str = "https://openapi.etsy.com/v3",
        max_attempts: int = 4,
        backoff_base_seconds: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._http = http_client
        self._tokens = token_broker
        self._rate_limiter = rate_limiter
        self._api_key = api_key
        self._api_base = api_base.rstrip("/")
        self._max_attempts = max(1, max_attempts)
        self._backoff_base = backoff_base_seconds
        self._sleep = sleep
        self._in_flight = InFlight()

    @property
    def rate_limiter(self) -> RateLimitTracker:
        return self._rate_limiter

    @property
    def token_broker(self) -> TokenBroker:
        return self._tokens

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    async def request(
        self,
        owner: Owner,
        endpoint: str,
        method: str = "GET",
        *,
        params: Optional[dict] = None,
        json: Optional[dict] = None,
        data: Optional[dict] = None,
        files: Optional[dict] = None,
    ) -> dict:
        """Make an authenticated request to the Etsy API.

        Args:
            owner: User/shop the request acts for
            endpoint: API endpoint path (e.g., "/application/shops/123")
            method: HTTP method
            params: Query parameters
            json: JSON body
            data: Form fields (multipart when ``files`` is given)
            files: Multipart file parts

        Returns:
            Parsed JSON response (empty dict for empty bodies)

        Raises:
            RateLimitedError: Budget still exhausted after bounded retries
            NetworkError: Timeouts, transport errors or 5xx after retries
            AuthExpiredError: 401 persisted after a token refresh
            PayloadValidationError: Any other 4xx
        """
        method = method.upper()

        async def dispatch() -> dict:
            return await self._dispatch(owner, endpoint, method, params, json, data, files)

        if method not in IDEMPOTENT_METHODS:
            return await dispatch()

        key = (
            owner.key,
            method,
            endpoint,
            tuple(sorted((k, str(v)) for k, v in (params or {}).items())),
        )
        return await self._in_flight.run(key, dispatch)

    def _backoff_delay(self, attempt: int) -> float:
        return self._backoff_base * (2 ** (attempt - 1))

    async def _dispatch(
        self,
        owner: Owner,
        endpoint: str,
        method: str,
        params: Optional[dict],
        json: Optional[dict],
        data: Optional[dict],
        files: Optional[dict],
    ) -> dict:
        url = f"{self._api_base}{endpoint}"
        auth_retried = False
        attempt = 0

        while True:
            attempt += 1
            await self._rate_limiter.wait_for_slot(endpoint)
            access_token = await self._tokens.get_valid_access_token(owner)

            headers = {
                "Authorization": f"Bearer {access_token}",
                "x-api-key": self._api_key,
            }

            try:
                response = await self._http.request(
                    method=method,
                    url=url,
                    headers=headers,
                    params=params,
                    json=json,
                    data=data,
                    files=files,
                )
            except httpx.HTTPError as e:
                logger.warning(
                    f"Etsy {method} {endpoint} transport error (attempt {attempt}): {e!r}"
                )
                if attempt >= self._max_attempts:
                    raise NetworkError(None, f"Etsy request failed: {e!r}") from e
                await self._sleep(self._backoff_delay(attempt))
                continue

            status_code = response.status_code

            if status_code == 401:
                if auth_retried:
                    logger.error(f"Etsy {method} {endpoint} still unauthorized after refresh")
                    await self._tokens.invalidate(owner)
                    raise AuthExpiredError(response_body=_response_body(response))
                logger.warning("Got 401, attempting token refresh")
                auth_retried = True
                await self._tokens.refresh(owner)
                # The auth retry does not consume a transient attempt
                attempt -= 1
                continue

            if status_code == 429:
                retry_after = parse_retry_after(response.headers.get("retry-after"))
                delay = retry_after if retry_after is not None else self._backoff_delay(attempt)
                await self._rate_limiter.block_until(endpoint, delay)
                if attempt >= self._max_attempts:
                    raise RateLimitedError(
                        f"Rate limited on {endpoint} after {attempt} attempts",
                        retry_after=delay,
                        response_body=_response_body(response),
                    )
                continue

            if status_code >= 500:
                logger.warning(
                    f"Etsy {method} {endpoint} returned {status_code} (attempt {attempt})"
                )
                if attempt >= self._max_attempts:
                    raise NetworkError(status_code, response.text, _response_body(response))
                await self._sleep(self._backoff_delay(attempt))
                continue

            if not response.is_success:
                logger.error(f"Etsy API error: {status_code} - {response.text}")
                raise PayloadValidationError(
                    response.text, status_code=status_code, response_body=_response_body(response)
                )

            await self._rate_limiter.update_from_headers(endpoint, response.headers)

            if not response.content:
                return {}
            try:
                return response.json()
            except ValueError as e:
                raise UnknownAPIError(
                    status_code, "Etsy returned a non-JSON response", response.text
                ) from e
