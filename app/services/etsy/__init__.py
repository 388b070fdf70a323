"""Etsy integration services.

This package provides:
- Token broker with coalesced OAuth refreshes
- Per-endpoint rate limit tracking
- API gateway with retries, de-duplication and typed errors
- Listing client used by the upload queue
"""

from app.services.etsy.client import EtsyListingClient
from app.services.etsy.errors import (
    AuthExpiredError,
    EtsyAPIError,
    JobCancelledError,
    NetworkError,
    PayloadValidationError,
    RateLimitedError,
    UnknownAPIError,
)
from app.services.etsy.gateway import ApiGateway
from app.services.etsy.rate_limiter import RateLimitState, RateLimitTracker
from app.services.etsy.token_broker import (
    CredentialStore,
    InMemoryCredentialStore,
    SqlAlchemyCredentialStore,
    TokenBroker,
)
from app.services.etsy.types import Owner, Token

__all__ = [
    # Client
    "ApiGateway",
    "EtsyListingClient",
    # Errors
    "AuthExpiredError",
    "EtsyAPIError",
    "JobCancelledError",
    "NetworkError",
    "PayloadValidationError",
    "RateLimitedError",
    "UnknownAPIError",
    # Rate limiter
    "RateLimitState",
    "RateLimitTracker",
    # Tokens
    "CredentialStore",
    "InMemoryCredentialStore",
    "SqlAlchemyCredentialStore",
    "TokenBroker",
    "Owner",
    "Token",
]
