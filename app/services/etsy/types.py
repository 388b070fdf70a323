"""Value types shared by the Etsy gateway and the upload queue."""

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class Owner:
    """The user/shop identity a job or token belongs to."""

    user_id: str
    shop_id: Optional[int] = None

    @property
    def key(self) -> str:
        return f"{self.user_id}:{self.shop_id}" if self.shop_id else self.user_id

    def __str__(self) -> str:
        return self.key


@dataclass(frozen=True)
class Token:
    """OAuth credential pair for one owner."""

    access_token: str
    refresh_token: str
    expires_at: datetime
    is_valid: bool = True

    def invalidated(self) -> "Token":
        return replace(self, is_valid=False)

    def __repr__(self) -> str:
        return (
            f"Token(access_token={self.access_token[:8]}..., "
            f"expires_at={self.expires_at.isoformat()}, is_valid={self.is_valid})"
        )
