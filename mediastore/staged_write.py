from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Optional

from .content_index import ContentIndex
from .errors import StoreWriteFailure
from .identity import INDEX_ERRORS, scope_for
from .logging_utils import get_logger
from .schemas import StorageIdentity

COPY_CHUNK_BYTES = 1024 * 1024


class StagedWriter:
    """Creates an entry hidden from readers, fills it, then reveals it.

    A failure after the create step leaves the entry pending; nothing here
    removes it again.
    """

    def __init__(
        self,
        index: ContentIndex,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.index = index
        self.logger = logger or get_logger(__name__)

    def write(self, identity: StorageIdentity, source_path: Path) -> str:
        uri = self.create(identity)
        size_bytes = self.fill(uri, source_path)
        if self.index.supports_pending:
            self.reveal(uri, size_bytes)
        return uri

    def create(self, identity: StorageIdentity) -> str:
        scope = scope_for(identity)
        try:
            uri = self.index.insert(
                scope,
                {
                    "display_name": identity.display_name,
                    "relative_path": identity.relative_path,
                    "is_pending": self.index.supports_pending,
                },
            )
        except INDEX_ERRORS as exc:
            raise StoreWriteFailure(f"create failed in {scope}: {exc}") from exc
        self.logger.info(
            "staged_write.created uri=%s pending=%s", uri, self.index.supports_pending
        )
        return uri

    def fill(self, uri: str, source_path: Path) -> int:
        try:
            with source_path.open("rb") as source, self.index.open_write_stream(uri) as sink:
                shutil.copyfileobj(source, sink, COPY_CHUNK_BYTES)
                size_bytes = sink.tell()
        except INDEX_ERRORS as exc:
            self.logger.error("staged_write.fill_failed uri=%s error=%s", uri, str(exc))
            raise StoreWriteFailure(f"fill failed for {uri}: {exc}") from exc
        self.logger.info("staged_write.filled uri=%s bytes=%s", uri, size_bytes)
        return size_bytes

    def reveal(self, uri: str, size_bytes: int) -> None:
        try:
            updated = self.index.update(
                uri, {"is_pending": False, "size_bytes": size_bytes}
            )
        except INDEX_ERRORS as exc:
            raise StoreWriteFailure(f"reveal failed for {uri}: {exc}") from exc
        if updated != 1:
            raise StoreWriteFailure(f"reveal touched {updated} entries for {uri}")
        self.logger.info("staged_write.revealed uri=%s", uri)
