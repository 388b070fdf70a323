"""Shared API dependencies."""

import hmac
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from app.config import Settings, get_settings
from app.services.etsy.types import Owner
from app.services.pipeline import UploadPipeline

bearer_scheme = HTTPBearer(auto_error=False)


def get_pipeline(request: Request) -> UploadPipeline:
    """Pipeline built during application startup."""
    return request.app.state.pipeline


def _decode_token(token: str, settings: Settings) -> dict:
    """Decode and validate JWT token, return its claims."""
    payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    if payload.get("sub") is None:
        raise JWTError("No subject in token")
    return payload


async def get_current_owner(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    settings: Settings = Depends(get_settings),
) -> Owner:
    """Owner identity from the bearer token (``sub`` and optional ``shop_id``)."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if credentials is None or not credentials.credentials:
        raise credentials_exception

    try:
        payload = _decode_token(credentials.credentials, settings)
    except JWTError:
        raise credentials_exception

    shop_id = payload.get("shop_id")
    try:
        return Owner(user_id=str(payload["sub"]), shop_id=int(shop_id) if shop_id else None)
    except (TypeError, ValueError):
        raise credentials_exception


async def get_current_user(owner: Owner = Depends(get_current_owner)) -> str:
    """Authenticated owner user id."""
    return owner.user_id


async def verify_cron_key(
    x_api_key: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    """Accept only callers presenting the configured cron API key."""
    if not settings.CRON_API_KEY:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Cron trigger is not configured",
        )
    if not x_api_key or not hmac.compare_digest(x_api_key, settings.CRON_API_KEY):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )
