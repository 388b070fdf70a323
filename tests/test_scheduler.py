"""
Tests for the queue poller and pipeline lifecycle.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from app.config import Settings
from app.services.pipeline import build_pipeline
from app.services.queue.media import InMemoryMediaRepository
from app.services.queue.scheduler import POLL_JOB_ID, QueueScheduler, poll_upload_queue
from app.services.queue.store import InMemoryJobRepository


class TestPollJob:
    """Tests for the scheduled poll function."""

    @pytest.mark.asyncio
    async def test_poll_dispatches(self):
        manager = MagicMock()
        manager.process_queue = AsyncMock(return_value=2)

        await poll_upload_queue(manager)

        manager.process_queue.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_poll_never_raises(self):
        """Errors are logged instead of propagating into the scheduler."""
        manager = MagicMock()
        manager.process_queue = AsyncMock(side_effect=RuntimeError("database down"))

        await poll_upload_queue(manager)


class TestQueueScheduler:
    """Tests for QueueScheduler start/stop."""

    @pytest.mark.asyncio
    async def test_start_registers_single_instance_job(self):
        scheduler = QueueScheduler(MagicMock(), interval_seconds=5)

        scheduler.start()
        try:
            job = scheduler.get_scheduler().get_job(POLL_JOB_ID)
            assert scheduler.is_running()
            assert job.max_instances == 1
            assert job.coalesce is True
            assert job.trigger.interval.total_seconds() == 5
        finally:
            scheduler.stop()

        assert scheduler.is_running() is False

    @pytest.mark.asyncio
    async def test_start_twice_is_harmless(self):
        scheduler = QueueScheduler(MagicMock())

        scheduler.start()
        scheduler.start()
        try:
            assert len(scheduler.get_scheduler().get_jobs()) == 1
        finally:
            scheduler.stop()


class TestPipelineLifecycle:
    """Tests for pipeline startup and shutdown."""

    @pytest.mark.asyncio
    async def test_startup_and_close(self, http_client, credential_store, cache):
        settings = Settings(QUEUE_ENABLE_POLLER=True, QUEUE_POLL_INTERVAL_SECONDS=60)
        pipeline = build_pipeline(
            settings,
            http_client=http_client,
            job_repository=InMemoryJobRepository(),
            media_repository=InMemoryMediaRepository(),
            credential_store=credential_store,
            cache=cache,
        )

        await pipeline.startup()
        assert pipeline.scheduler.is_running()

        await pipeline.aclose()
        assert pipeline.scheduler.is_running() is False
        assert http_client.is_closed is False
