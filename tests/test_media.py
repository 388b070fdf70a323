"""
Tests for chunked media registration and reconstruction.
"""

import base64

import pytest

from app.models.queue_media import MediaKind
from app.services.etsy.errors import PayloadValidationError
from app.services.queue.media import ChunkedMedia, decode_base64, strip_data_url

CONTENT = bytes(range(256)) * 4
ENCODED = base64.b64encode(CONTENT).decode()


def split(value: str, parts: int) -> list[str]:
    size = -(-len(value) // parts)
    return [value[i : i + size] for i in range(0, len(value), size)]


class TestChunkedMedia:
    """Tests for ordered chunk reassembly."""

    def test_out_of_order_chunks_reassemble(self):
        """Chunks may arrive in any order; assembly follows the index."""
        chunks = split(ENCODED, 4)
        sequence = ChunkedMedia("m1", len(chunks))
        for index in reversed(range(len(chunks))):
            sequence.add(index, chunks[index])

        assert sequence.is_complete
        assert sequence.assemble() == CONTENT

    def test_missing_chunk_is_reported(self):
        """A gap in the sequence fails instead of producing a truncated file."""
        chunks = split(ENCODED, 3)
        sequence = ChunkedMedia("m1", 3)
        sequence.add(0, chunks[0])
        sequence.add(2, chunks[2])

        assert sequence.missing() == [1]
        with pytest.raises(PayloadValidationError, match=r"missing chunk\(s\) \[1\] of 3"):
            sequence.assemble()

    def test_index_out_of_range(self):
        sequence = ChunkedMedia("m1", 2)

        with pytest.raises(PayloadValidationError, match="out of range"):
            sequence.add(2, "AAAA")

    def test_zero_chunks_rejected(self):
        with pytest.raises(PayloadValidationError):
            ChunkedMedia("m1", 0)


class TestDecoding:
    """Tests for base64 helpers."""

    def test_data_url_prefix_is_stripped(self):
        assert strip_data_url("data:image/png;base64,QUJD") == "QUJD"
        assert strip_data_url("QUJD") == "QUJD"

    def test_decode_data_url(self):
        assert decode_base64("data:image/png;base64,QUJD", "m1") == b"ABC"

    def test_invalid_base64(self):
        with pytest.raises(PayloadValidationError, match="not valid base64"):
            decode_base64("not base64!!", "m1")


class TestMediaStore:
    """Tests for MediaStore registration and loading."""

    @pytest.mark.asyncio
    async def test_inline_media(self, media_store):
        """Inline data is decoded on load with a default filename."""
        record = await media_store.register("user-1", "image/png", rank=2, inline_data=ENCODED)

        media = await media_store.load(record.id, "user-1")

        assert media.kind == MediaKind.IMAGE
        assert media.content == CONTENT
        assert media.filename == "image_2.png"
        assert record.chunks_count == 0

    @pytest.mark.asyncio
    async def test_chunked_media(self, media_store):
        """Chunks uploaded separately are reconstructed in order."""
        chunks = split(ENCODED, 3)
        record = await media_store.register(
            "user-1", "video/mp4", filename="demo.mp4", chunks_count=len(chunks)
        )
        for index in (2, 0, 1):
            await media_store.add_chunk(record.id, index, chunks[index])

        media = await media_store.load(record.id, "user-1")

        assert media.kind == MediaKind.VIDEO
        assert media.filename == "demo.mp4"
        assert media.content == CONTENT

    @pytest.mark.asyncio
    async def test_resent_chunk_replaces_earlier_copy(self, media_store):
        """Uploading the same index twice keeps the latest data."""
        chunks = split(ENCODED, 2)
        record = await media_store.register("user-1", "image/jpeg", chunks_count=2)
        await media_store.add_chunk(record.id, 0, "garbage")
        await media_store.add_chunk(record.id, 0, chunks[0])
        await media_store.add_chunk(record.id, 1, chunks[1])

        media = await media_store.load(record.id)

        assert media.content == CONTENT

    @pytest.mark.asyncio
    async def test_incomplete_upload_fails_load(self, media_store):
        chunks = split(ENCODED, 3)
        record = await media_store.register("user-1", "image/png", chunks_count=3)
        await media_store.add_chunk(record.id, 0, chunks[0])

        with pytest.raises(PayloadValidationError, match="Incomplete upload"):
            await media_store.load(record.id)

    @pytest.mark.asyncio
    async def test_unsupported_mime_type(self, media_store):
        """Only the supported image and video types are accepted."""
        with pytest.raises(PayloadValidationError, match="Unsupported media type"):
            await media_store.register("user-1", "application/pdf", inline_data=ENCODED)

    @pytest.mark.asyncio
    async def test_media_needs_content(self, media_store):
        with pytest.raises(PayloadValidationError):
            await media_store.register("user-1", "image/png")

    @pytest.mark.asyncio
    async def test_foreign_owner_cannot_load(self, media_store):
        """Media is scoped to the owner who registered it."""
        record = await media_store.register("user-1", "image/png", inline_data=ENCODED)

        with pytest.raises(PayloadValidationError, match="not found"):
            await media_store.load(record.id, "user-2")

    @pytest.mark.asyncio
    async def test_chunk_for_unknown_media(self, media_store):
        with pytest.raises(PayloadValidationError, match="not found"):
            await media_store.add_chunk("missing", 0, "AAAA")

    @pytest.mark.asyncio
    async def test_chunk_index_checked_against_record(self, media_store):
        record = await media_store.register("user-1", "image/png", chunks_count=2)

        with pytest.raises(PayloadValidationError, match="out of range"):
            await media_store.add_chunk(record.id, 5, "AAAA")

    @pytest.mark.asyncio
    async def test_discard(self, media_store):
        record = await media_store.register("user-1", "image/png", inline_data=ENCODED)

        await media_store.discard([record.id])

        assert await media_store.get(record.id) is None
