"""Construction of the upload pipeline's shared components.

Everything stateful (token cache, rate limit budgets, in-flight requests,
job index) lives on one ``UploadPipeline`` built at startup and handed to
the routes through ``app.state``.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional
import logging

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import Settings
from app.services.cache import FileTier, MemoryTier, TieredCache
from app.services.etsy.client import EtsyListingClient
from app.services.etsy.gateway import ApiGateway
from app.services.etsy.rate_limiter import RateLimitTracker
from app.services.etsy.token_broker import CredentialStore, SqlAlchemyCredentialStore, TokenBroker
from app.services.queue.handlers import build_handlers
from app.services.queue.manager import QueueManager
from app.services.queue.media import MediaRepository, MediaStore, SqlAlchemyMediaRepository
from app.services.queue.scheduler import QueueScheduler
from app.services.queue.store import JobRepository, JobStore, SqlAlchemyJobRepository
from app.services.queue.worker import ExternalUploadWorker

logger = logging.getLogger(__name__)


@dataclass
class UploadPipeline:
    """Shared components for one process."""

    settings: Settings
    http_client: httpx.AsyncClient
    cache: TieredCache
    rate_limiter: RateLimitTracker
    token_broker: TokenBroker
    gateway: ApiGateway
    client: EtsyListingClient
    job_store: JobStore
    media_store: MediaStore
    queue: QueueManager
    worker: ExternalUploadWorker
    scheduler: QueueScheduler
    owns_http_client: bool = True

    async def startup(self) -> None:
        recovered = await self.queue.recover_stale()
        if recovered:
            logger.info(f"Recovered {recovered} abandoned job(s) at startup")
        if self.settings.QUEUE_ENABLE_POLLER:
            self.scheduler.start()

    async def aclose(self) -> None:
        self.scheduler.stop()
        await self.queue.wait_idle()
        if self.owns_http_client:
            await self.http_client.aclose()


def build_pipeline(
    settings: Settings,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    job_repository: Optional[JobRepository] = None,
    media_repository: Optional[MediaRepository] = None,
    credential_store: Optional[CredentialStore] = None,
    cache: Optional[TieredCache] = None,
) -> UploadPipeline:
    """Wire the pipeline from settings.

    Repositories that are not passed in use SQLAlchemy over
    ``session_factory`` (the application's session maker by default).
    """
    if session_factory is None and None in (job_repository, media_repository, credential_store):
        from app.db.session import async_session_maker

        session_factory = async_session_maker

    owns_http_client = http_client is None
    if http_client is None:
        http_client = httpx.AsyncClient(timeout=settings.ETSY_REQUEST_TIMEOUT_SECONDS)

    if cache is None:
        cache = TieredCache(
            small=MemoryTier(settings.CACHE_SMALL_TIER_MAX_BYTES),
            large=FileTier(settings.CACHE_DIR),
            prefix=settings.CACHE_PREFIX,
            size_threshold=settings.CACHE_SIZE_THRESHOLD_BYTES,
            default_max_age=settings.CACHE_DEFAULT_MAX_AGE_SECONDS,
        )

    rate_limiter = RateLimitTracker(max_wait_seconds=settings.ETSY_MAX_RATE_LIMIT_WAIT_SECONDS)
    token_broker = TokenBroker(
        store=credential_store or SqlAlchemyCredentialStore(session_factory),
        http_client=http_client,
        client_id=settings.ETSY_API_KEY,
        token_url=settings.ETSY_TOKEN_URL,
        safety_margin_seconds=settings.ETSY_TOKEN_SAFETY_MARGIN_SECONDS,
    )
    gateway = ApiGateway(
        http_client=http_client,
        token_broker=token_broker,
        rate_limiter=rate_limiter,
        api_key=settings.ETSY_API_KEY,
        api_base=settings.ETSY_API_BASE,
        max_attempts=settings.ETSY_MAX_REQUEST_ATTEMPTS,
        backoff_base_seconds=settings.ETSY_BACKOFF_BASE_SECONDS,
    )
    client = EtsyListingClient(gateway)

    job_store = JobStore(job_repository or SqlAlchemyJobRepository(session_factory))
    media_store = MediaStore(media_repository or SqlAlchemyMediaRepository(session_factory))
    handlers = build_handlers(
        client=client,
        media_store=media_store,
        cache=cache,
        verify_attempts=settings.VERIFY_POLL_ATTEMPTS,
        verify_delay=settings.VERIFY_POLL_DELAY_SECONDS,
    )

    retry_delay = timedelta(seconds=settings.QUEUE_RETRY_DELAY_SECONDS)
    queue = QueueManager(
        store=job_store,
        handlers=handlers,
        max_concurrent=settings.QUEUE_MAX_CONCURRENT,
        max_retries=settings.QUEUE_MAX_RETRIES,
        retry_delay=retry_delay,
        stale_after=timedelta(minutes=settings.QUEUE_STALE_AFTER_MINUTES),
    )
    worker = ExternalUploadWorker(
        store=job_store,
        handlers=handlers,
        batch_size=settings.CRON_BATCH_SIZE,
        retry_delay=retry_delay,
    )

    return UploadPipeline(
        settings=settings,
        http_client=http_client,
        cache=cache,
        rate_limiter=rate_limiter,
        token_broker=token_broker,
        gateway=gateway,
        client=client,
        job_store=job_store,
        media_store=media_store,
        queue=queue,
        worker=worker,
        scheduler=QueueScheduler(queue, settings.QUEUE_POLL_INTERVAL_SECONDS),
        owns_http_client=owns_http_client,
    )
