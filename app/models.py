import re
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, field_validator

from .transform import DEFAULT_MARGIN, Corner

DEFAULT_FILENAME = "watermarked.mp4"
_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def sanitize_filename(name: Optional[str]) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        return DEFAULT_FILENAME
    return _UNSAFE_FILENAME_CHARS.sub("_", cleaned)


class WatermarkOptions(BaseModel):
    """Placement and naming options shared by the synchronous and job endpoints."""

    model_config = ConfigDict(frozen=True)

    position: Corner = Corner.BOTTOM_RIGHT
    margin: int = Field(DEFAULT_MARGIN, ge=0, le=10000)
    wm_width: Optional[int] = Field(None, gt=0, le=10000)
    filename: str = DEFAULT_FILENAME

    @field_validator("position", mode="before")
    @classmethod
    def _normalize_position(cls, value):
        if value is None or (isinstance(value, str) and not value.strip()):
            return Corner.BOTTOM_RIGHT
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("wm_width", mode="before")
    @classmethod
    def _blank_width_is_unset(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("filename", mode="before")
    @classmethod
    def _sanitize_filename(cls, value):
        return sanitize_filename(value)


class VideoSource(BaseModel):
    """Remote input for a watermark request; uploads are persisted by the route instead."""

    url: HttpUrl

    @field_validator("url", mode="before")
    @classmethod
    def _strip(cls, value):
        return value.strip() if isinstance(value, str) else value
