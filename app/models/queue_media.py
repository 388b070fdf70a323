"""Media blobs referenced by queued listing jobs, stored as base64 chunks."""

import enum
from typing import Optional

from sqlalchemy import Enum, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base, TimestampMixin


class MediaKind(str, enum.Enum):
    """Media kind enumeration."""

    IMAGE = "image"
    VIDEO = "video"


class QueueMedia(Base, TimestampMixin):
    """One image or video awaiting upload."""

    __tablename__ = "queue_media"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    kind: Mapped[MediaKind] = mapped_column(
        Enum(MediaKind, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    mime_type: Mapped[str] = mapped_column(String(100), nullable=False)
    filename: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    rank: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    chunks_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Small media may be stored inline instead of chunked
    inline_data: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    chunks: Mapped[list["QueueMediaChunk"]] = relationship(
        "QueueMediaChunk", back_populates="media", cascade="all, delete-orphan"
    )


class QueueMediaChunk(Base):
    """A base64 slice of a media blob, ordered by chunk_index."""

    __tablename__ = "queue_media_chunks"
    __table_args__ = (
        UniqueConstraint("media_id", "chunk_index", name="uq_media_chunk_index"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    media_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("queue_media.id", ondelete="CASCADE"), nullable=False
    )
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    data: Mapped[str] = mapped_column(Text, nullable=False)

    media: Mapped["QueueMedia"] = relationship("QueueMedia", back_populates="chunks")
