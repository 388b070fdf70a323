"""Media blobs referenced by listing jobs.

Clients upload large media as ordered base64 chunks. A blob is only
reconstructed once every chunk ``0..count-1`` is present; a gap is an
incomplete upload and fails the job instead of uploading a truncated file.
"""

import asyncio
import base64
import binascii
from dataclasses import dataclass
from typing import Optional, Protocol
from uuid import uuid4
import logging

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.queue_media import MediaKind, QueueMedia, QueueMediaChunk
from app.services.etsy.errors import PayloadValidationError

logger = logging.getLogger(__name__)

SUPPORTED_MIME_TYPES = {
    "image/jpeg": MediaKind.IMAGE,
    "image/png": MediaKind.IMAGE,
    "image/gif": MediaKind.IMAGE,
    "image/webp": MediaKind.IMAGE,
    "video/mp4": MediaKind.VIDEO,
    "video/quicktime": MediaKind.VIDEO,
}


def strip_data_url(value: str) -> str:
    """Remove a ``data:<mime>;base64,`` prefix if present."""
    if value.startswith("data:") and "," in value:
        return value.split(",", 1)[1]
    return value


def decode_base64(value: str, label: str) -> bytes:
    try:
        return base64.b64decode(strip_data_url(value).strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise PayloadValidationError(f"Media {label} is not valid base64: {e}") from e


class ChunkedMedia:
    """Ordered base64 chunk sequence for one media blob."""

    def __init__(self, media_id: str, chunks_count: int):
        if chunks_count < 1:
            raise PayloadValidationError(f"Media {media_id} declares no chunks")
        self.media_id = media_id
        self.chunks_count = chunks_count
        self._chunks: dict[int, str] = {}

    def add(self, index: int, data: str) -> None:
        if not 0 <= index < self.chunks_count:
            raise PayloadValidationError(
                f"Chunk index {index} out of range for media {self.media_id} "
                f"({self.chunks_count} chunks)"
            )
        self._chunks[index] = data

    def missing(self) -> list[int]:
        return [i for i in range(self.chunks_count) if i not in self._chunks]

    @property
    def is_complete(self) -> bool:
        return not self.missing()

    def assemble(self) -> bytes:
        """Concatenate chunks in index order and decode.

        Raises:
            PayloadValidationError: If any chunk is missing or the result
                is not valid base64.
        """
        missing = self.missing()
        if missing:
            raise PayloadValidationError(
                f"Incomplete upload for media {self.media_id}: "
                f"missing chunk(s) {missing[:10]} of {self.chunks_count}"
            )
        joined = "".join(self._chunks[i] for i in range(self.chunks_count))
        return decode_base64(joined, self.media_id)


@dataclass
class MediaRecord:
    """Stored media metadata."""

    id: str
    owner_id: str
    kind: MediaKind
    mime_type: str
    filename: Optional[str] = None
    rank: int = 1
    chunks_count: int = 0
    inline_data: Optional[str] = None


@dataclass
class DecodedMedia:
    """Media ready for upload."""

    id: str
    kind: MediaKind
    mime_type: str
    filename: str
    rank: int
    content: bytes


class MediaRepository(Protocol):
    """Durable storage for media records and chunks."""

    async def create(self, record: MediaRecord) -> None: ...

    async def get(self, media_id: str) -> Optional[MediaRecord]: ...

    async def put_chunk(self, media_id: str, index: int, data: str) -> None: ...

    async def get_chunks(self, media_id: str) -> list[tuple[int, str]]: ...

    async def delete(self, media_id: str) -> None: ...


class SqlAlchemyMediaRepository:
    """Media repository backed by ``queue_media`` and ``queue_media_chunks``."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def create(self, record: MediaRecord) -> None:
        async with self._session_factory() as db:
            db.add(
                QueueMedia(
                    id=record.id,
                    owner_id=record.owner_id,
                    kind=record.kind,
                    mime_type=record.mime_type,
                    filename=record.filename,
                    rank=record.rank,
                    chunks_count=record.chunks_count,
                    inline_data=record.inline_data,
                )
            )
            await db.commit()

    async def get(self, media_id: str) -> Optional[MediaRecord]:
        async with self._session_factory() as db:
            row = await db.get(QueueMedia, media_id)
            if row is None:
                return None
            return MediaRecord(
                id=row.id,
                owner_id=row.owner_id,
                kind=row.kind,
                mime_type=row.mime_type,
                filename=row.filename,
                rank=row.rank,
                chunks_count=row.chunks_count,
                inline_data=row.inline_data,
            )

    async def put_chunk(self, media_id: str, index: int, data: str) -> None:
        async with self._session_factory() as db:
            stmt = pg_insert(QueueMediaChunk).values(
                media_id=media_id, chunk_index=index, data=data
            )
            # Re-sent chunks replace the earlier copy
            stmt = stmt.on_conflict_do_update(
                constraint="uq_media_chunk_index", set_={"data": stmt.excluded.data}
            )
            await db.execute(stmt)
            await db.commit()

    async def get_chunks(self, media_id: str) -> list[tuple[int, str]]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(QueueMediaChunk.chunk_index, QueueMediaChunk.data)
                .where(QueueMediaChunk.media_id == media_id)
                .order_by(QueueMediaChunk.chunk_index)
            )
            return [(index, data) for index, data in result.all()]

    async def delete(self, media_id: str) -> None:
        async with self._session_factory() as db:
            await db.execute(delete(QueueMediaChunk).where(QueueMediaChunk.media_id == media_id))
            await db.execute(delete(QueueMedia).where(QueueMedia.id == media_id))
            await db.commit()


class InMemoryMediaRepository:
    """Process-local media repository for development and tests."""

    def __init__(self) -> None:
        self._records: dict[str, MediaRecord] = {}
        self._chunks: dict[str, dict[int, str]] = {}
        self._lock = asyncio.Lock()

    async def create(self, record: MediaRecord) -> None:
        async with self._lock:
            self._records[record.id] = record
            self._chunks.setdefault(record.id, {})

    async def get(self, media_id: str) -> Optional[MediaRecord]:
        return self._records.get(media_id)

    async def put_chunk(self, media_id: str, index: int, data: str) -> None:
        async with self._lock:
            self._chunks.setdefault(media_id, {})[index] = data

    async def get_chunks(self, media_id: str) -> list[tuple[int, str]]:
        return sorted(self._chunks.get(media_id, {}).items())

    async def delete(self, media_id: str) -> None:
        async with self._lock:
            self._records.pop(media_id, None)
            self._chunks.pop(media_id, None)


class MediaStore:
    """Registers, receives and reconstructs job media."""

    def __init__(self, repository: MediaRepository):
        self._repo = repository

    async def register(
        self,
        owner_id: str,
        mime_type: str,
        filename: Optional[str] = None,
        rank: int = 1,
        chunks_count: int = 0,
        inline_data: Optional[str] = None,
    ) -> MediaRecord:
        """Create a media record; content arrives inline or as chunks.

        Raises:
            PayloadValidationError: Unsupported MIME type or no content.
        """
        kind = SUPPORTED_MIME_TYPES.get(mime_type)
        if kind is None:
            raise PayloadValidationError(f"Unsupported media type: {mime_type}")
        if inline_data is None and chunks_count < 1:
            raise PayloadValidationError("Media needs inline data or at least one chunk")

        record = MediaRecord(
            id=str(uuid4()),
            owner_id=owner_id,
            kind=kind,
            mime_type=mime_type,
            filename=filename,
            rank=rank,
            chunks_count=0 if inline_data is not None else chunks_count,
            inline_data=inline_data,
        )
        await self._repo.create(record)
        logger.info(f"Registered {kind.value} media {record.id} ({chunks_count} chunks)")
        return record

    async def get(self, media_id: str) -> Optional[MediaRecord]:
        return await self._repo.get(media_id)

    async def add_chunk(self, media_id: str, index: int, data: str) -> None:
        record = await self._repo.get(media_id)
        if record is None:
            raise PayloadValidationError(f"Media {media_id} not found")
        if not 0 <= index < record.chunks_count:
            raise PayloadValidationError(
                f"Chunk index {index} out of range for media {media_id} "
                f"({record.chunks_count} chunks)"
            )
        await self._repo.put_chunk(media_id, index, data)

    async def load(self, media_id: str, owner_id: Optional[str] = None) -> DecodedMedia:
        """Reconstruct a media blob for upload.

        Raises:
            PayloadValidationError: Unknown media, foreign owner, unsupported
                type, missing chunks or undecodable content.
        """
        record = await self._repo.get(media_id)
        if record is None or (owner_id is not None and record.owner_id != owner_id):
            raise PayloadValidationError(f"Media {media_id} not found")
        if record.mime_type not in SUPPORTED_MIME_TYPES:
            raise PayloadValidationError(f"Unsupported media type: {record.mime_type}")

        if record.inline_data is not None:
            content = decode_base64(record.inline_data, media_id)
        else:
            sequence = ChunkedMedia(media_id, record.chunks_count)
            for index, data in await self._repo.get_chunks(media_id):
                sequence.add(index, data)
            content = sequence.assemble()

        extension = record.mime_type.split("/")[1]
        return DecodedMedia(
            id=record.id,
            kind=record.kind,
            mime_type=record.mime_type,
            filename=record.filename or f"{record.kind.value}_{record.rank}.{extension}",
            rank=record.rank,
            content=content,
        )

    async def discard(self, media_ids: list[str]) -> None:
        for media_id in media_ids:
            await self._repo.delete(media_id)
