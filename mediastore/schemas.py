from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

RELATIVE_PATH_SEPARATOR = "/"


class MediaCategory(str, Enum):
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    DOWNLOAD = "download"

    @classmethod
    def from_dir_type(cls, dir_type: int) -> "MediaCategory":
        return _DIR_TYPES.get(dir_type, cls.DOWNLOAD)

    @property
    def dir_type(self) -> int:
        for dir_type, category in _DIR_TYPES.items():
            if category is self:
                return dir_type
        return 3


_DIR_TYPES = {
    0: MediaCategory.IMAGE,
    1: MediaCategory.AUDIO,
    2: MediaCategory.VIDEO,
}


class TagSet(BaseModel):
    """ID3 fields a caller may ask to embed before the file is committed."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)

    title: Optional[str] = None
    artist: Optional[str] = None
    album: Optional[str] = None
    comment: Optional[str] = None
    artist_id: Optional[str] = Field(default=None, alias="artistId")
    playlist_id: Optional[str] = Field(default=None, alias="playlistId")
    album_id: Optional[str] = Field(default=None, alias="albumId")
    music_id: Optional[str] = Field(default=None, alias="musicId")

    @field_validator("*", mode="before")
    @classmethod
    def _stringify_scalars(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    def is_empty(self) -> bool:
        return all(value is None for value in self.model_dump().values())

    def profile_url(self, template: str) -> str:
        return template.format(
            artist_id=self.artist_id or "",
            playlist_id=self.playlist_id or "",
            album_id=self.album_id or "",
            music_id=self.music_id or "",
        )


class IngestRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    staging_path: str = Field(alias="path", min_length=1)
    display_name: str = Field(alias="name", min_length=1)
    app_folder: str = Field(alias="appFolder")
    category: MediaCategory = Field(alias="dirType")
    base_directory: str = Field(alias="dirName", min_length=1)
    volume: Optional[str] = Field(default=None, alias="externalVolumeName")
    tags: Optional[TagSet] = Field(default=None, alias="id3v2Tags")

    @field_validator("category", mode="before")
    @classmethod
    def _coerce_dir_type(cls, value: Any) -> Any:
        if isinstance(value, MediaCategory):
            return value
        if isinstance(value, str) and value.strip().lstrip("-").isdigit():
            value = int(value)
        if isinstance(value, int) and not isinstance(value, bool):
            return MediaCategory.from_dir_type(value)
        return value

    @field_validator("tags", mode="before")
    @classmethod
    def _decode_tags(cls, value: Any) -> Any:
        if isinstance(value, str):
            if not value.strip():
                return None
            return json.loads(value)
        return value

    @field_serializer("category")
    def _serialize_category(self, category: MediaCategory) -> int:
        return category.dir_type

    @property
    def staging_file(self) -> Path:
        return Path(self.staging_path)

    def to_job_input(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


@dataclass(frozen=True)
class StorageIdentity:
    display_name: str
    relative_path: str
    category: MediaCategory
    volume: str


@dataclass(frozen=True)
class StoreEntry:
    uri: str
    pending: bool
    display_name: str
    relative_path: str
    volume: str
    collection: str
    size_bytes: Optional[int] = None
