from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from .config import settings
from .content_index import ContentIndex, Selection, build_scope_uri, collection_for
from .errors import ConflictResolutionFailure
from .logging_utils import get_logger
from .schemas import RELATIVE_PATH_SEPARATOR, IngestRequest, StorageIdentity

INDEX_ERRORS = (SQLAlchemyError, OSError, KeyError, ValueError)


def build_relative_path(base_directory: str, app_folder: str) -> str:
    if not app_folder.strip():
        return base_directory
    return base_directory + RELATIVE_PATH_SEPARATOR + app_folder


def scope_for(identity: StorageIdentity) -> str:
    return build_scope_uri(identity.volume, collection_for(identity.category))


def selection_for(identity: StorageIdentity) -> Selection:
    return Selection(
        display_name=identity.display_name,
        relative_path=identity.relative_path,
    )


class IdentityResolver:
    def __init__(
        self,
        index: ContentIndex,
        *,
        primary_volume: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.index = index
        self.primary_volume = primary_volume or settings.primary_volume
        self.logger = logger or get_logger(__name__)

    def resolve_volume(self, requested: Optional[str]) -> str:
        if requested is None:
            return self.primary_volume
        wanted = requested.lower()
        for name in self.index.external_volume_names():
            if name.lower() == wanted:
                return name
        self.logger.info(
            "identity.volume_fallback requested=%s volume=%s",
            requested,
            self.primary_volume,
        )
        return self.primary_volume

    def resolve(self, request: IngestRequest) -> StorageIdentity:
        try:
            volume = self.resolve_volume(request.volume)
        except INDEX_ERRORS as exc:
            raise ConflictResolutionFailure(f"volume lookup failed: {exc}") from exc
        return StorageIdentity(
            display_name=request.display_name,
            relative_path=build_relative_path(
                request.base_directory, request.app_folder
            ),
            category=request.category,
            volume=volume,
        )

    def lookup(self, identity: StorageIdentity) -> Optional[str]:
        scope = scope_for(identity)
        try:
            matches = self.index.query(scope, selection_for(identity))
        except INDEX_ERRORS as exc:
            raise ConflictResolutionFailure(
                f"lookup failed for {identity.display_name}: {exc}"
            ) from exc
        self.logger.debug(
            "identity.lookup scope=%s display_name=%s matches=%s",
            scope,
            identity.display_name,
            len(matches),
        )
        return matches[0] if matches else None


class ConflictEraser:
    def __init__(
        self,
        resolver: IdentityResolver,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.resolver = resolver
        self.logger = logger or get_logger(__name__)

    def erase(self, identity: StorageIdentity) -> bool:
        existing = self.resolver.lookup(identity)
        if existing is None:
            self.logger.info(
                "conflict.none display_name=%s relative_path=%s",
                identity.display_name,
                identity.relative_path,
            )
            return False

        scope = scope_for(identity)
        try:
            removed = self.resolver.index.delete(scope, selection_for(identity))
        except INDEX_ERRORS as exc:
            raise ConflictResolutionFailure(
                f"delete failed for {existing}: {exc}"
            ) from exc
        self.logger.info(
            "conflict.evicted uri=%s display_name=%s removed=%s",
            existing,
            identity.display_name,
            removed,
        )
        return removed > 0
