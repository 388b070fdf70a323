"""Kind-specific job handlers.

A handler receives the job and its ``JobContext``, performs provider calls
through the listing client and returns the result stored under
``payload["result"]``. Errors are raised typed; the state machine decides
between retry and terminal failure.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional
import logging

from pydantic import ValidationError

from app.models.queue_job import JobKind
from app.models.queue_media import MediaKind
from app.schemas.queue import ListingPayload
from app.services.cache import TieredCache
from app.services.etsy.client import EtsyListingClient
from app.services.etsy.errors import EtsyAPIError, PayloadValidationError, UnknownAPIError
from app.services.etsy.types import Owner
from app.services.queue.media import DecodedMedia, MediaStore
from app.services.queue.state_machine import JobContext, JobHandler
from app.services.queue.types import Job

logger = logging.getLogger(__name__)

DRAFT_PROGRESS = 20
UPLOADS_DONE_PROGRESS = 80
ACTIVATED_PROGRESS = 90

SHIPPING_PROFILES_MAX_AGE_SECONDS = 24 * 3600


def _validation_summary(error: ValidationError) -> str:
    parts = []
    for item in error.errors()[:5]:
        location = ".".join(str(p) for p in item["loc"]) or "payload"
        parts.append(f"{location}: {item['msg']}")
    return "; ".join(parts)


class CreateListingHandler:
    """Creates a draft listing, uploads its media and optionally publishes it.

    Intermediate provider ids (``listing_id``, ``uploaded_media``) are saved
    into the job payload as soon as they exist, so a retried attempt picks
    up where the failed one stopped instead of creating a second draft.
    """

    kind = JobKind.CREATE_LISTING

    def __init__(
        self,
        client: EtsyListingClient,
        media_store: MediaStore,
        cache: Optional[TieredCache] = None,
        verify_attempts: int = 5,
        verify_delay: float = 3.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.client = client
        self.media_store = media_store
        self.cache = cache
        self.verify_attempts = verify_attempts
        self.verify_delay = verify_delay
        self._sleep = sleep

    async def __call__(self, job: Job, context: JobContext) -> dict:
        context.checkpoint()
        try:
            listing = ListingPayload.model_validate(job.payload)
        except ValidationError as e:
            raise PayloadValidationError(
                f"Invalid listing payload: {_validation_summary(e)}"
            ) from e

        shop_id = listing.shop_id or job.owner.shop_id
        if not shop_id:
            raise PayloadValidationError("No Etsy shop selected for this listing")

        # Decode everything before the first provider call so a bad upload
        # fails without leaving a half-built draft behind
        media = await self._load_media(job.owner, listing)

        listing_id = job.payload.get("listing_id")
        if listing_id is None:
            context.checkpoint()
            shipping_profile_id = listing.shipping_profile_id or await self.resolve_shipping_profile(
                job.owner, shop_id
            )
            context.checkpoint()
            draft = await self.client.create_draft_listing(
                job.owner, shop_id, listing.draft_fields(shipping_profile_id)
            )
            listing_id = draft.get("listing_id")
            if not listing_id:
                raise UnknownAPIError(None, "Draft listing response has no listing_id", draft)
            await context.save_payload(listing_id=listing_id)
            logger.info(f"Created draft listing {listing_id} for job {job.id}")
        await context.report(DRAFT_PROGRESS)

        uploaded: dict[str, Any] = dict(job.payload.get("uploaded_media") or {})
        for position, item in enumerate(media, start=1):
            context.checkpoint()
            if item.id not in uploaded:
                uploaded[item.id] = await self._upload(job.owner, shop_id, listing_id, item)
                await context.save_payload(uploaded_media=uploaded)
            await context.report(
                DRAFT_PROGRESS + (UPLOADS_DONE_PROGRESS - DRAFT_PROGRESS) * position // len(media)
            )

        if listing.variations is not None:
            context.checkpoint()
            await self.client.update_listing_inventory(
                job.owner,
                listing_id,
                listing.variations.products,
                listing.variations.price_on_property,
            )

        state = "draft"
        if listing.state == "active":
            context.checkpoint()
            await self.client.activate_listing(job.owner, shop_id, listing_id)
            state = "active"
        await context.report(ACTIVATED_PROGRESS)

        image_ids = [uploaded[m.id] for m in media if m.kind == MediaKind.IMAGE]
        video_ids = [uploaded[m.id] for m in media if m.kind == MediaKind.VIDEO]

        unverified = False
        if context.verify_uploads and image_ids:
            context.checkpoint()
            unverified = not await self.verify_images(job.owner, listing_id, image_ids)

        return {
            "listing_id": listing_id,
            "image_ids": image_ids,
            "video_id": video_ids[0] if video_ids else None,
            "state": state,
            "unverified": unverified,
        }

    async def _load_media(self, owner: Owner, listing: ListingPayload) -> list[DecodedMedia]:
        media = []
        for ref in listing.image_refs:
            item = await self.media_store.load(ref, owner.user_id)
            if item.kind != MediaKind.IMAGE:
                raise PayloadValidationError(f"Media {ref} is not an image ({item.mime_type})")
            media.append(item)
        if listing.video_ref:
            item = await self.media_store.load(listing.video_ref, owner.user_id)
            if item.kind != MediaKind.VIDEO:
                raise PayloadValidationError(
                    f"Media {listing.video_ref} is not a video ({item.mime_type})"
                )
            media.append(item)
        return media

    async def _upload(self, owner: Owner, shop_id: int, listing_id: int, item: DecodedMedia) -> Any:
        if item.kind == MediaKind.VIDEO:
            response = await self.client.upload_listing_video(
                owner, shop_id, listing_id, item.content, item.filename, item.mime_type
            )
            return response.get("video_id")
        response = await self.client.upload_listing_image(
            owner, shop_id, listing_id, item.content, item.filename, item.mime_type, item.rank
        )
        return response.get("listing_image_id")

    async def resolve_shipping_profile(self, owner: Owner, shop_id: int) -> int:
        """Return the shop's first shipping profile id, cached per shop.

        Raises:
            PayloadValidationError: If the shop has no shipping profile
        """
        cache_key = f"shipping_profiles_{shop_id}"
        profiles = None
        if self.cache is not None:
            profiles = self.cache.load(cache_key, SHIPPING_PROFILES_MAX_AGE_SECONDS)
        if profiles is None:
            profiles = await self.client.get_shipping_profiles(owner, shop_id)
            if self.cache is not None and profiles:
                self.cache.save(cache_key, profiles)

        for profile in profiles or []:
            profile_id = profile.get("shipping_profile_id")
            if profile_id:
                return profile_id
        raise PayloadValidationError(
            "No shipping profile found. Create at least one shipping profile on Etsy."
        )

    async def verify_images(self, owner: Owner, listing_id: int, image_ids: list[Any]) -> bool:
        """Poll the listing until the uploaded images are visible.

        Returns:
            True once every uploaded image is listed, False after the last
            attempt without confirmation
        """
        expected = {i for i in image_ids if i is not None}
        for attempt in range(1, self.verify_attempts + 1):
            try:
                visible = await self.client.get_listing_images(owner, listing_id)
            except EtsyAPIError as e:
                logger.warning(
                    f"Verification attempt {attempt} for listing {listing_id} failed: {e}"
                )
            else:
                seen = {img.get("listing_image_id") for img in visible}
                if expected <= seen and len(visible) >= len(image_ids):
                    logger.info(f"Verified {len(image_ids)} image(s) on listing {listing_id}")
                    return True
            if attempt < self.verify_attempts:
                await self._sleep(self.verify_delay)

        logger.warning(
            f"Could not confirm images on listing {listing_id} after "
            f"{self.verify_attempts} attempts"
        )
        return False


HANDLERS: dict[JobKind, type] = {
    JobKind.CREATE_LISTING: CreateListingHandler,
}


def build_handlers(**dependencies: Any) -> dict[JobKind, JobHandler]:
    """Instantiate every registered handler with shared dependencies."""
    return {kind: handler_cls(**dependencies) for kind, handler_cls in HANDLERS.items()}
