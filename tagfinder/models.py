"""SQLAlchemy async models."""
import enum
from sqlalchemy import (
    Column, Integer, String, Text, Float, DateTime, ForeignKey, Index,
    CheckConstraint, UniqueConstraint, Enum as SAEnum,
)
from sqlalchemy.orm import relationship
from tagfinder.db import Base, utcnow


class ImageStatus(str, enum.Enum):
    """Image lifecycle. Only INDEXED images are visible to search."""
    PENDING = "pending"
    INDEXED = "indexed"
    FAILED = "failed"


class JobStatus(str, enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class Image(Base):
    """One ingested picture, identified by the sha256 of its bytes."""
    __tablename__ = "images"

    id = Column(Integer, primary_key=True)
    storage_key = Column(Text, nullable=False)
    sha256 = Column(String(64), nullable=False)
    status = Column(
        SAEnum(ImageStatus, name="image_status", values_callable=_enum_values),
        default=ImageStatus.PENDING,
        nullable=False,
    )
    caption = Column(Text, nullable=True)
    flag_count = Column(Integer, default=0, nullable=False)  # Moderation signal, never touched by the worker
    source = Column(String(32), nullable=True)  # e.g. "upload", "seed", "reddit"
    source_ref = Column(Text, nullable=True)
    source_url = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    # Relationships
    image_tags = relationship("ImageTag", back_populates="image", cascade="all, delete-orphan", passive_deletes=True)
    job = relationship("TagJob", back_populates="image", uselist=False, cascade="all, delete-orphan", passive_deletes=True)

    __table_args__ = (
        Index("images_storage_key_unique", "storage_key", unique=True),
        Index("images_sha256_unique", "sha256", unique=True),
        Index("images_status_idx", "status"),
        Index("images_created_at_id_idx", "created_at", "id"),
        UniqueConstraint("source", "source_ref", name="images_source_source_ref_unique"),
    )

    def __repr__(self):
        return f"<Image(id={self.id}, sha256='{self.sha256[:8]}', status='{self.status}')>"


class Tag(Base):
    """A normalized single-token tag name."""
    __tablename__ = "tags"

    id = Column(Integer, primary_key=True)
    name = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    image_tags = relationship("ImageTag", back_populates="tag", cascade="all, delete-orphan", passive_deletes=True)

    __table_args__ = (
        Index("tags_name_unique", "name", unique=True),
    )


class ImageTag(Base):
    """Join row between an image and a tag. Confidence is display-only."""
    __tablename__ = "image_tags"

    image_id = Column(Integer, ForeignKey("images.id", ondelete="CASCADE"), primary_key=True)
    tag_id = Column(Integer, ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True)
    confidence = Column(Float, default=1.0, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    image = relationship("Image", back_populates="image_tags")
    tag = relationship("Tag", back_populates="image_tags")

    __table_args__ = (
        CheckConstraint(
            "confidence >= 0 AND confidence <= 1",
            name="image_tags_confidence_between_0_and_1",
        ),
        Index("image_tags_tag_id_image_id_idx", "tag_id", "image_id"),
    )


class TagJob(Base):
    """Queue entry; at most one per image."""
    __tablename__ = "tag_jobs"

    id = Column(Integer, primary_key=True)
    image_id = Column(Integer, ForeignKey("images.id", ondelete="CASCADE"), nullable=False)
    status = Column(
        SAEnum(JobStatus, name="tag_job_status", values_callable=_enum_values),
        default=JobStatus.QUEUED,
        nullable=False,
    )
    attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    image = relationship("Image", back_populates="job")

    __table_args__ = (
        Index("tag_jobs_image_id_unique", "image_id", unique=True),
        Index("tag_jobs_status_created_at_idx", "status", "created_at"),
    )

    def __repr__(self):
        return f"<TagJob(id={self.id}, image_id={self.image_id}, status='{self.status}')>"
