"""Pydantic schemas for search, image detail and ingestion results."""
import base64
import binascii
import json
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import List, Optional

from tagfinder.models import ImageStatus
from tagfinder.settings import settings


class TagOut(BaseModel):
    """Tag attached to an image."""
    id: int
    name: str
    confidence: float


class ImageOut(BaseModel):
    """Image row output schema."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    storage_key: str
    sha256: str
    status: ImageStatus
    caption: Optional[str] = None
    flag_count: int = 0
    source: Optional[str] = None
    source_ref: Optional[str] = None
    source_url: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class ImageDetailOut(BaseModel):
    """Image detail: the image row plus its tags."""
    image: ImageOut
    tags: List[TagOut]


class SearchCursor(BaseModel):
    """Sort key of the last row on a page: (match_count, created_at_ms, id)."""
    match_count: int = Field(ge=1)
    created_at_ms: int = Field(ge=0)
    id: int = Field(ge=1)

    def encode(self) -> str:
        """Opaque URL-safe token for this cursor."""
        raw = json.dumps([self.match_count, self.created_at_ms, self.id], separators=(",", ":"))
        return base64.urlsafe_b64encode(raw.encode("ascii")).decode("ascii").rstrip("=")

    @classmethod
    def decode(cls, token: str) -> "SearchCursor":
        padded = token + "=" * (-len(token) % 4)
        try:
            match_count, created_at_ms, image_id = json.loads(base64.urlsafe_b64decode(padded))
        except (binascii.Error, ValueError, TypeError) as e:
            raise ValueError(f"Invalid search cursor: {token!r}") from e
        return cls(match_count=match_count, created_at_ms=created_at_ms, id=image_id)


class SearchRequest(BaseModel):
    """Validated search input."""
    query: str
    limit: int = Field(ge=1)
    cursor: Optional[SearchCursor] = None

    @field_validator("limit")
    @classmethod
    def limit_within_max(cls, value: int) -> int:
        if value > settings.SEARCH_MAX_LIMIT:
            raise ValueError(f"limit must be at most {settings.SEARCH_MAX_LIMIT}")
        return value


class SearchItem(BaseModel):
    """One ranked search hit."""
    id: int
    storage_key: str
    caption: Optional[str] = None
    created_at: datetime
    match_count: int
    render_url: str


class SearchPage(BaseModel):
    """A page of search results."""
    items: List[SearchItem] = Field(default_factory=list)
    next_cursor: Optional[SearchCursor] = None
    total_count: int = 0


class IngestResult(BaseModel):
    """Outcome of ingesting one image."""
    image_id: int
    sha256: str
    storage_key: str
    created: bool  # False when identical bytes were already ingested
    enqueued: bool


class SeedEntry(BaseModel):
    """One image in a seed manifest: a file next to seed.json and its tags."""
    file: str = Field(min_length=1)
    tags: List[str] = Field(default_factory=list)


class SeedManifest(BaseModel):
    """Contents of seed.json."""
    images: List[SeedEntry]
