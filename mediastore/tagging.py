from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import Optional

from mutagen import MutagenError
from mutagen.id3 import COMM, ID3, TALB, TIT2, TPE1, WXXX
from mutagen.mp3 import MP3

from .config import settings
from .errors import TagEmbedFailure
from .logging_utils import get_logger
from .schemas import TagSet

TEMP_SUFFIX = ".tmp"
TEXT_ENCODING_UTF8 = 3


class TagEmbedder:
    """Rewrites the ID3v2 block of a staging file before it is committed.

    Embedding is best effort: ``embed`` never raises, it logs and leaves the file
    as it was when the container cannot be parsed or the new tag cannot be saved.
    """

    def __init__(
        self,
        *,
        url_template: Optional[str] = None,
        id3_version: Optional[int] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.url_template = url_template or settings.tag_profile_url_template
        self.id3_version = id3_version or settings.tag_id3_version
        self.logger = logger or get_logger(__name__)

    def embed(self, path: Path, tags: Optional[TagSet]) -> bool:
        if tags is None or tags.is_empty():
            return False
        try:
            self.write_tags(path, tags)
        except TagEmbedFailure as exc:
            self.logger.warning("tag_embed.skipped path=%s error=%s", path, str(exc))
            return False
        self.logger.info("tag_embed.complete path=%s", path)
        return True

    def write_tags(self, path: Path, tags: TagSet) -> None:
        try:
            MP3(str(path))
        except (MutagenError, OSError) as exc:
            self.logger.warning("tag_embed.parse_failed path=%s error=%s", path, str(exc))
            raise TagEmbedFailure(f"not a tagged audio container: {path}") from exc

        id3 = self.build_tag_block(tags)
        if self.id3_version == 3:
            id3.update_to_v23()
        tmp_path = path.with_name(path.name + TEMP_SUFFIX)
        try:
            shutil.copyfile(path, tmp_path)
            id3.save(str(tmp_path), v2_version=self.id3_version)
            os.replace(tmp_path, path)
        except (MutagenError, OSError) as exc:
            self.logger.warning("tag_embed.save_failed path=%s error=%s", path, str(exc))
            try:
                tmp_path.unlink(missing_ok=True)
            except OSError:
                self.logger.warning("tag_embed.tmp_cleanup_failed path=%s", tmp_path)
            raise TagEmbedFailure(f"failed to save tags into {path}") from exc

    def build_tag_block(self, tags: TagSet) -> ID3:
        id3 = ID3()
        if tags.title is not None:
            id3.add(TIT2(encoding=TEXT_ENCODING_UTF8, text=[tags.title]))
        if tags.comment is not None:
            id3.add(
                COMM(encoding=TEXT_ENCODING_UTF8, lang="eng", desc="", text=[tags.comment])
            )
        if tags.album is not None:
            id3.add(TALB(encoding=TEXT_ENCODING_UTF8, text=[tags.album]))
        if tags.artist is not None:
            id3.add(TPE1(encoding=TEXT_ENCODING_UTF8, text=[tags.artist]))
        id3.add(
            WXXX(
                encoding=TEXT_ENCODING_UTF8,
                desc="",
                url=tags.profile_url(self.url_template),
            )
        )
        return id3
