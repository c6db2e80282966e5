from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, BinaryIO, Dict, List, Optional, Protocol, Sequence, Tuple
from urllib.parse import quote, unquote

from sqlalchemy import DateTime, bindparam, text
from sqlalchemy.engine import Connection, Engine

from .config import settings
from .db import get_engine
from .logging_utils import get_logger
from .schemas import RELATIVE_PATH_SEPARATOR, MediaCategory, StoreEntry

CONTENT_URI_PREFIX = "content://media/"
FILE_URI_PREFIX = "file://"
COLLECTIONS = {
    MediaCategory.IMAGE: "images",
    MediaCategory.AUDIO: "audio",
    MediaCategory.VIDEO: "video",
    MediaCategory.DOWNLOAD: "downloads",
}
KNOWN_COLLECTIONS = frozenset(COLLECTIONS.values())
INDEXED_MUTABLE_ATTRS = {"display_name", "relative_path", "is_pending", "size_bytes"}
DIRECT_MUTABLE_ATTRS = {"is_pending", "size_bytes"}
logger = get_logger(__name__)


@dataclass(frozen=True)
class Selection:
    """Exact-match predicate on display name and relative path."""

    display_name: str
    relative_path: str


class ContentIndex(Protocol):
    supports_pending: bool

    def external_volume_names(self) -> List[str]:
        ...

    def insert(self, scope_uri: str, attrs: Dict[str, Any]) -> str:
        ...

    def query(self, scope_uri: str, selection: Selection) -> List[str]:
        ...

    def delete(self, uri: str, selection: Selection) -> int:
        ...

    def update(self, uri: str, attrs: Dict[str, Any]) -> int:
        ...

    def open_write_stream(self, uri: str) -> BinaryIO:
        ...

    def open_read_stream(self, uri: str) -> BinaryIO:
        ...

    def get_entry(self, uri: str, *, include_pending: bool = False) -> Optional[StoreEntry]:
        ...

    def list_entries(
        self, scope_uri: str, selection: Optional[Selection] = None
    ) -> List[StoreEntry]:
        ...


def collection_for(category: MediaCategory) -> str:
    return COLLECTIONS.get(category, COLLECTIONS[MediaCategory.DOWNLOAD])


def build_scope_uri(volume: str, collection: str) -> str:
    return f"{CONTENT_URI_PREFIX}{volume}/{collection}"


def parse_content_uri(uri: str) -> Tuple[str, str, Optional[int]]:
    """Split a content uri into (volume, collection, entry_id or None)."""
    if not uri.startswith(CONTENT_URI_PREFIX):
        raise ValueError(f"not a content uri: {uri}")
    parts = uri[len(CONTENT_URI_PREFIX):].split("/")
    if len(parts) not in (2, 3) or not all(parts):
        raise ValueError(f"malformed content uri: {uri}")
    volume, collection = parts[0], parts[1]
    if collection not in KNOWN_COLLECTIONS:
        raise ValueError(f"unknown collection {collection!r} in {uri}")
    entry_id: Optional[int] = None
    if len(parts) == 3:
        if not parts[2].isdigit():
            raise ValueError(f"malformed entry id in {uri}")
        entry_id = int(parts[2])
    return volume, collection, entry_id


def normalize_relative_path(relative_path: str) -> str:
    cleaned = relative_path.strip(RELATIVE_PATH_SEPARATOR)
    return f"{cleaned}{RELATIVE_PATH_SEPARATOR}" if cleaned else ""


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _safe_join(root: Path, *parts: str) -> Path:
    root_resolved = root.resolve()
    candidate = root_resolved.joinpath(*parts).resolve()
    if candidate != root_resolved and root_resolved not in candidate.parents:
        raise ValueError(f"path escapes store root: {'/'.join(parts)}")
    return candidate


class IndexedContentStore:
    """Content index backed by the ``media_entries`` table and a blob directory.

    Entries are addressed as ``content://media/<volume>/<collection>/<entry_id>``.
    Pending entries are only reachable through the writer operations
    (``update`` and ``open_write_stream``) and ``get_entry(include_pending=True)``.
    """

    supports_pending = True

    def __init__(
        self,
        engine: Optional[Engine] = None,
        root_dir: Optional[str] = None,
        volumes: Optional[Sequence[str]] = None,
    ) -> None:
        self.engine = engine if engine is not None else get_engine()
        self.root_dir = Path(root_dir or settings.store_root_dir).resolve()
        self._volumes = (
            list(volumes) if volumes is not None else settings.external_volume_names
        )

    def external_volume_names(self) -> List[str]:
        return list(self._volumes)

    def _check_volume(self, volume: str) -> None:
        if volume not in self._volumes:
            raise ValueError(f"unknown volume: {volume}")

    def _blob_path(self, volume: str, collection: str, entry_id: int) -> Path:
        return self.root_dir / volume / collection / str(entry_id)

    def _where(
        self,
        uri: str,
        selection: Optional[Selection],
        *,
        include_pending: bool = False,
    ) -> Tuple[str, Dict[str, Any]]:
        volume, collection, entry_id = parse_content_uri(uri)
        clauses = ["volume = :volume", "collection = :collection"]
        params: Dict[str, Any] = {"volume": volume, "collection": collection}
        if entry_id is not None:
            clauses.append("entry_id = :entry_id")
            params["entry_id"] = entry_id
        if selection is not None:
            clauses.append("display_name = :display_name")
            clauses.append("relative_path = :relative_path")
            params["display_name"] = selection.display_name
            params["relative_path"] = normalize_relative_path(selection.relative_path)
        if not include_pending:
            clauses.append("is_pending = :is_pending")
            params["is_pending"] = False
        return " AND ".join(clauses), params

    def insert(self, scope_uri: str, attrs: Dict[str, Any]) -> str:
        volume, collection, entry_id = parse_content_uri(scope_uri)
        if entry_id is not None:
            raise ValueError(f"insert requires a collection uri, got {scope_uri}")
        self._check_volume(volume)
        display_name = str(attrs.get("display_name") or "")
        if not display_name:
            raise ValueError("display_name is required")
        now = _now_utc()
        with self.engine.begin() as conn:
            new_id = conn.execute(
                text(
                    """
                    INSERT INTO media_entries
                      (volume, collection, display_name, relative_path, is_pending,
                       created_at, updated_at)
                    VALUES
                      (:volume, :collection, :display_name, :relative_path, :is_pending,
                       :created_at, :updated_at)
                    RETURNING entry_id
                    """
                ).bindparams(
                    bindparam("created_at", type_=DateTime(timezone=True)),
                    bindparam("updated_at", type_=DateTime(timezone=True)),
                ),
                {
                    "volume": volume,
                    "collection": collection,
                    "display_name": display_name,
                    "relative_path": normalize_relative_path(
                        str(attrs.get("relative_path") or "")
                    ),
                    "is_pending": bool(attrs.get("is_pending", False)),
                    "created_at": now,
                    "updated_at": now,
                },
            ).scalar_one()
        logger.debug("content_index.insert uri=%s/%s", scope_uri, new_id)
        return f"{scope_uri}/{new_id}"

    def query(self, scope_uri: str, selection: Selection) -> List[str]:
        volume, collection, _entry_id = parse_content_uri(scope_uri)
        where, params = self._where(scope_uri, selection)
        with self.engine.connect() as conn:
            ids = conn.execute(
                text(
                    f"""
                    SELECT entry_id
                    FROM media_entries
                    WHERE {where}
                    ORDER BY entry_id ASC
                    """
                ),
                params,
            ).scalars().all()
        base = build_scope_uri(volume, collection)
        return [f"{base}/{entry_id}" for entry_id in ids]

    def delete(self, uri: str, selection: Selection) -> int:
        volume, collection, _entry_id = parse_content_uri(uri)
        where, params = self._where(uri, selection)
        with self.engine.begin() as conn:
            ids = self._delete_rows(conn, where, params)
        self._unlink_blobs(volume, collection, ids)
        return len(ids)

    def _delete_rows(
        self, conn: Connection, where: str, params: Dict[str, Any]
    ) -> List[int]:
        ids = list(
            conn.execute(
                text(f"SELECT entry_id FROM media_entries WHERE {where}"),
                params,
            ).scalars()
        )
        if ids:
            conn.execute(
                text("DELETE FROM media_entries WHERE entry_id IN :ids").bindparams(
                    bindparam("ids", expanding=True)
                ),
                {"ids": ids},
            )
        return ids

    def _unlink_blobs(self, volume: str, collection: str, ids: Sequence[int]) -> None:
        for entry_id in ids:
            self._blob_path(volume, collection, entry_id).unlink(missing_ok=True)

    def update(self, uri: str, attrs: Dict[str, Any]) -> int:
        _volume, _collection, entry_id = parse_content_uri(uri)
        if entry_id is None:
            raise ValueError(f"update requires an entry uri, got {uri}")
        unknown = set(attrs) - INDEXED_MUTABLE_ATTRS
        if unknown:
            raise ValueError(f"unsupported entry attributes: {sorted(unknown)}")

        set_clauses = ["updated_at = :updated_at"]
        params: Dict[str, Any] = {"entry_id": entry_id, "updated_at": _now_utc()}
        for key, value in attrs.items():
            if key == "relative_path":
                value = normalize_relative_path(str(value))
            elif key == "is_pending":
                value = bool(value)
            set_clauses.append(f"{key} = :{key}")
            params[key] = value

        with self.engine.begin() as conn:
            result = conn.execute(
                text(
                    f"""
                    UPDATE media_entries
                    SET {", ".join(set_clauses)}
                    WHERE entry_id = :entry_id
                    """
                ).bindparams(bindparam("updated_at", type_=DateTime(timezone=True))),
                params,
            )
        return result.rowcount

    def open_write_stream(self, uri: str) -> BinaryIO:
        entry = self.get_entry(uri, include_pending=True)
        if entry is None:
            raise KeyError(f"entry not found: {uri}")
        volume, collection, entry_id = parse_content_uri(uri)
        path = self._blob_path(volume, collection, entry_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        return path.open("wb")

    def open_read_stream(self, uri: str) -> BinaryIO:
        entry = self.get_entry(uri)
        if entry is None:
            raise KeyError(f"entry not found: {uri}")
        volume, collection, entry_id = parse_content_uri(uri)
        return self._blob_path(volume, collection, entry_id).open("rb")

    def get_entry(self, uri: str, *, include_pending: bool = False) -> Optional[StoreEntry]:
        _volume, _collection, entry_id = parse_content_uri(uri)
        if entry_id is None:
            raise ValueError(f"expected an entry uri, got {uri}")
        entries = self._select_entries(uri, None, include_pending=include_pending)
        return entries[0] if entries else None

    def list_entries(
        self, scope_uri: str, selection: Optional[Selection] = None
    ) -> List[StoreEntry]:
        return self._select_entries(scope_uri, selection)

    def _select_entries(
        self,
        uri: str,
        selection: Optional[Selection],
        *,
        include_pending: bool = False,
    ) -> List[StoreEntry]:
        where, params = self._where(uri, selection, include_pending=include_pending)
        with self.engine.connect() as conn:
            rows = conn.execute(
                text(
                    f"""
                    SELECT entry_id, volume, collection, display_name, relative_path,
                           is_pending, size_bytes
                    FROM media_entries
                    WHERE {where}
                    ORDER BY entry_id ASC
                    """
                ),
                params,
            ).mappings()
            return [
                StoreEntry(
                    uri=f"{build_scope_uri(row['volume'], row['collection'])}/{row['entry_id']}",
                    pending=bool(row["is_pending"]),
                    display_name=row["display_name"],
                    relative_path=row["relative_path"],
                    volume=row["volume"],
                    collection=row["collection"],
                    size_bytes=row["size_bytes"],
                )
                for row in rows
            ]

    def purge_pending(self, min_age_s: int, *, dry_run: bool = False) -> int:
        """Remove pending entries older than ``min_age_s`` left behind by failed jobs."""
        cutoff = _now_utc() - timedelta(seconds=max(0, int(min_age_s)))
        stale_query = text(
            """
            SELECT entry_id, volume, collection
            FROM media_entries
            WHERE is_pending = :is_pending AND created_at <= :cutoff
            ORDER BY entry_id ASC
            """
        ).bindparams(bindparam("cutoff", type_=DateTime(timezone=True)))
        with self.engine.begin() as conn:
            stale = conn.execute(
                stale_query, {"is_pending": True, "cutoff": cutoff}
            ).fetchall()
            if stale and not dry_run:
                conn.execute(
                    text("DELETE FROM media_entries WHERE entry_id IN :ids").bindparams(
                        bindparam("ids", expanding=True)
                    ),
                    {"ids": [row[0] for row in stale]},
                )
        if not dry_run:
            for entry_id, volume, collection in stale:
                self._blob_path(volume, collection, entry_id).unlink(missing_ok=True)
        logger.info(
            "content_index.purge_pending count=%s min_age_s=%s dry_run=%s",
            len(stale),
            min_age_s,
            dry_run,
        )
        return len(stale)


class DirectFilesystemStore:
    """Writes straight to ``<root>/<volume>/<relative_path>/<display_name>``.

    There is no pending state: an inserted entry is an empty file that readers can
    already see, and ``update`` only accepts the pending/size bookkeeping the
    staged writer sends. Collections share one directory tree per volume.
    """

    supports_pending = False

    def __init__(
        self,
        root_dir: Optional[str] = None,
        volumes: Optional[Sequence[str]] = None,
    ) -> None:
        self.root_dir = Path(root_dir or settings.store_root_dir).resolve()
        self._volumes = (
            list(volumes) if volumes is not None else settings.external_volume_names
        )

    def external_volume_names(self) -> List[str]:
        return list(self._volumes)

    def _file_path(self, scope: str, selection: Selection) -> Path:
        volume, _collection, entry_id = parse_content_uri(scope)
        if entry_id is not None:
            raise ValueError(f"expected a collection uri, got {scope}")
        if volume not in self._volumes:
            raise ValueError(f"unknown volume: {volume}")
        relative = normalize_relative_path(selection.relative_path)
        parts = [part for part in relative.split(RELATIVE_PATH_SEPARATOR) if part]
        return _safe_join(self.root_dir, volume, *parts, selection.display_name)

    @staticmethod
    def _to_uri(path: Path) -> str:
        return FILE_URI_PREFIX + quote(str(path))

    @staticmethod
    def _from_uri(uri: str) -> Path:
        if not uri.startswith(FILE_URI_PREFIX):
            raise ValueError(f"not a file uri: {uri}")
        return Path(unquote(uri[len(FILE_URI_PREFIX):]))

    def insert(self, scope_uri: str, attrs: Dict[str, Any]) -> str:
        display_name = str(attrs.get("display_name") or "")
        if not display_name:
            raise ValueError("display_name is required")
        path = self._file_path(
            scope_uri,
            Selection(display_name, str(attrs.get("relative_path") or "")),
        )
        path.parent.mkdir(parents=True, exist_ok=True)
        path.touch(exist_ok=False)
        return self._to_uri(path)

    def query(self, scope_uri: str, selection: Selection) -> List[str]:
        path = self._file_path(scope_uri, selection)
        return [self._to_uri(path)] if path.is_file() else []

    def delete(self, uri: str, selection: Selection) -> int:
        if uri.startswith(FILE_URI_PREFIX):
            path = self._from_uri(uri)
            if path.name != selection.display_name:
                return 0
        else:
            path = self._file_path(uri, selection)
        if not path.is_file():
            return 0
        path.unlink()
        return 1

    def update(self, uri: str, attrs: Dict[str, Any]) -> int:
        unsupported = set(attrs) - DIRECT_MUTABLE_ATTRS
        if unsupported:
            raise ValueError(
                f"direct filesystem store cannot update {sorted(unsupported)}"
            )
        return 1 if self._from_uri(uri).is_file() else 0

    def open_write_stream(self, uri: str) -> BinaryIO:
        return self._from_uri(uri).open("wb")

    def open_read_stream(self, uri: str) -> BinaryIO:
        path = self._from_uri(uri)
        if not path.is_file():
            raise KeyError(f"entry not found: {uri}")
        return path.open("rb")

    def _entry_for(self, path: Path, collection: str) -> StoreEntry:
        relative = path.relative_to(self.root_dir)
        volume = relative.parts[0]
        folder = RELATIVE_PATH_SEPARATOR.join(relative.parts[1:-1])
        return StoreEntry(
            uri=self._to_uri(path),
            pending=False,
            display_name=path.name,
            relative_path=normalize_relative_path(folder),
            volume=volume,
            collection=collection,
            size_bytes=path.stat().st_size,
        )

    def get_entry(self, uri: str, *, include_pending: bool = False) -> Optional[StoreEntry]:
        path = self._from_uri(uri)
        if not path.is_file():
            return None
        return self._entry_for(path, collection="")

    def list_entries(
        self, scope_uri: str, selection: Optional[Selection] = None
    ) -> List[StoreEntry]:
        volume, collection, _entry_id = parse_content_uri(scope_uri)
        if selection is not None:
            path = self._file_path(scope_uri, selection)
            return [self._entry_for(path, collection)] if path.is_file() else []
        volume_root = self.root_dir / volume
        if not volume_root.is_dir():
            return []
        return [
            self._entry_for(path, collection)
            for path in sorted(volume_root.rglob("*"))
            if path.is_file()
        ]


def build_content_index(backend: Optional[str] = None) -> ContentIndex:
    selected = backend or settings.store_backend
    if selected == "indexed":
        return IndexedContentStore()
    if selected == "direct":
        return DirectFilesystemStore()
    raise ValueError(f"unknown store backend: {selected}")
