"""Etsy listing operations built on the API gateway."""

import json
from typing import Any, Optional
import logging

from app.services.etsy.gateway import ApiGateway
from app.services.etsy.types import Owner

logger = logging.getLogger(__name__)


class EtsyListingClient:
    """Listing, media and shop calls used by the upload pipeline."""

    def __init__(self, gateway: ApiGateway):
        """Initialize client with the shared gateway.

        Args:
            gateway: Gateway owning tokens, rate limits and retries
        """
        self.gateway = gateway

    async def get_shipping_profiles(self, owner: Owner, shop_id: int) -> list[dict]:
        """Get the shop's shipping profiles.

        Args:
            owner: Shop owner
            shop_id: Etsy shop ID

        Returns:
            List of shipping profile dicts
        """
        response = await self.gateway.request(
            owner, f"/application/shops/{shop_id}/shipping-profiles"
        )
        return response.get("results", [])

    async def create_draft_listing(self, owner: Owner, shop_id: int, listing: dict) -> dict:
        """Create a draft listing.

        Args:
            owner: Shop owner
            shop_id: Etsy shop ID
            listing: Listing fields (title, description, price, ...)

        Returns:
            Created listing data including listing_id
        """
        return await self.gateway.request(
            owner,
            f"/application/shops/{shop_id}/listings",
            "POST",
            json=listing,
        )

    async def upload_listing_image(
        self,
        owner: Owner,
        shop_id: int,
        listing_id: int,
        content: bytes,
        filename: str,
        mime_type: str,
        rank: int = 1,
    ) -> dict:
        """Upload one image to a listing (multipart).

        Returns:
            Listing image data including listing_image_id
        """
        return await self.gateway.request(
            owner,
            f"/application/shops/{shop_id}/listings/{listing_id}/images",
            "POST",
            data={"rank": str(rank)},
            files={"image": (filename, content, mime_type)},
        )

    async def upload_listing_video(
        self,
        owner: Owner,
        shop_id: int,
        listing_id: int,
        content: bytes,
        filename: str,
        mime_type: str,
    ) -> dict:
        """Upload the listing video (multipart).

        Returns:
            Listing video data including video_id
        """
        return await self.gateway.request(
            owner,
            f"/application/shops/{shop_id}/listings/{listing_id}/videos",
            "POST",
            data={"name": filename},
            files={"video": (filename, content, mime_type)},
        )

    async def update_listing_inventory(
        self,
        owner: Owner,
        listing_id: int,
        products: list[dict],
        price_on_property: Optional[list[int]] = None,
    ) -> dict:
        """Replace the listing inventory with variation products.

        Args:
            owner: Shop owner
            listing_id: Etsy listing ID
            products: Inventory products (property values, offerings)
            price_on_property: Property IDs that drive price

        Returns:
            Updated inventory data
        """
        body: dict[str, Any] = {"products": products}
        if price_on_property:
            body["price_on_property"] = price_on_property
        return await self.gateway.request(
            owner,
            f"/application/listings/{listing_id}/inventory",
            "PUT",
            json=body,
        )

    async def activate_listing(self, owner: Owner, shop_id: int, listing_id: int) -> dict:
        """Publish a draft listing."""
        return await self.gateway.request(
            owner,
            f"/application/shops/{shop_id}/listings/{listing_id}",
            "PATCH",
            data={"state": "active"},
        )

    async def get_listing_images(self, owner: Owner, listing_id: int) -> list[dict]:
        """Get images currently visible on a listing."""
        response = await self.gateway.request(
            owner, f"/application/listings/{listing_id}/images"
        )
        return response.get("results", [])

    async def get_listing(self, owner: Owner, listing_id: int) -> dict:
        """Get listing details.

        Args:
            owner: Shop owner
            listing_id: Etsy listing ID

        Returns:
            Listing data
        """
        return await self.gateway.request(owner, f"/application/listings/{listing_id}")


def encode_tags(tags: Any) -> list[str]:
    """Normalize tags given as a list or a JSON/comma separated string."""
    if not tags:
        return []
    if isinstance(tags, str):
        try:
            parsed = json.loads(tags)
        except ValueError:
            parsed = tags.split(",")
        tags = parsed if isinstance(parsed, list) else [parsed]
    return [str(t).strip() for t in tags if str(t).strip()][:13]
