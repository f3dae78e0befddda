"""Typed view over records of the remote bulk listing API.

Only the fields the merge engine reads are declared; everything else in the
listing is ignored. Records wrapped as ``{"raw": {...}}`` by upstream
normalizers are unwrapped transparently.
"""

from datetime import datetime
from typing import Any, Optional

import structlog
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from genledger.models.history import ensure_utc
from genledger.services.correlation.extractors import strip_query

IMAGE_MEDIA_TYPES = frozenset({"MEDIA_POST_TYPE_IMAGE", "image"})
VIDEO_MEDIA_TYPES = frozenset({"MEDIA_POST_TYPE_VIDEO", "video"})

logger = structlog.get_logger()


class ListingPost(BaseModel):
    """One image or video record from the listing."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Optional[str] = None
    media_type: Optional[str] = Field(default=None, alias="mediaType")
    media_url: Optional[str] = Field(default=None, alias="mediaUrl")
    thumbnail_image_url: Optional[str] = Field(default=None, alias="thumbnailImageUrl")
    prompt: Optional[str] = None
    original_prompt: Optional[str] = Field(default=None, alias="originalPrompt")
    create_time: Optional[datetime] = Field(default=None, alias="createTime")
    resolution: Optional[Any] = None
    model_name: Optional[str] = Field(default=None, alias="modelName")
    mode: Optional[str] = None
    user_id: Optional[str] = Field(default=None, alias="userId")
    original_post_id: Optional[str] = Field(default=None, alias="originalPostId")
    audio_urls: Optional[list[str]] = Field(default=None, alias="audioUrls")
    child_posts: list["ListingPost"] = Field(default_factory=list, alias="childPosts")
    videos: list["ListingPost"] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _unwrap_raw(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("raw"), dict):
            return data["raw"]
        return data

    @field_validator("child_posts", "videos", mode="before")
    @classmethod
    def _none_to_list(cls, v: Any) -> Any:
        return v if isinstance(v, list) else []

    @field_validator("create_time", mode="after")
    @classmethod
    def _utc_create_time(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    @property
    def is_image(self) -> bool:
        return self.media_type in IMAGE_MEDIA_TYPES

    @property
    def is_video(self) -> bool:
        return self.media_type in VIDEO_MEDIA_TYPES

    @property
    def target_image_id(self) -> Optional[str]:
        """Id of the ImageEntry this record belongs to (None for other media types)."""
        if self.is_image:
            return self.id
        if self.is_video:
            return self.original_post_id
        return None

    @property
    def clean_media_url(self) -> Optional[str]:
        return strip_query(self.media_url)

    @property
    def best_prompt(self) -> Optional[str]:
        """Image records prefer ``prompt``; empty strings count as absent."""
        return self.prompt or self.original_prompt or None

    @property
    def best_video_prompt(self) -> Optional[str]:
        return self.original_prompt or self.prompt or None

    def video_records(self) -> list["ListingPost"]:
        """Video sub-records of an image post, de-duplicated by id.

        A standalone video post is its own (single) video record.
        """
        if self.is_video:
            return [self]
        seen: set[str] = set()
        records = []
        for video in [c for c in self.child_posts if c.is_video] + self.videos:
            if not video.id or video.id in seen:
                continue
            seen.add(video.id)
            records.append(video)
        return records


def parse_listing(posts: list[Any]) -> list[ListingPost]:
    """Validate raw listing records, passing through already-typed ones.

    Records that fail validation are logged and dropped.
    """
    records = []
    for post in posts:
        if isinstance(post, ListingPost):
            records.append(post)
            continue
        try:
            records.append(ListingPost.model_validate(post))
        except ValidationError as e:
            logger.warning("listing.invalid_record", error=str(e))
    return records
