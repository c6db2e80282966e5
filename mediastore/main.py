from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from rq.exceptions import InvalidJobOperation, NoSuchJobError

from .config import settings
from .content_index import (
    KNOWN_COLLECTIONS,
    ContentIndex,
    IndexedContentStore,
    Selection,
    build_content_index,
    build_scope_uri,
)
from .db import fetch_db_info
from .schemas import IngestRequest
from .worker import cancel_media_ingest, enqueue_media_ingest, get_media_ingest_job

app = FastAPI(title="Media Store API")


def get_content_index() -> ContentIndex:
    return build_content_index()


@app.get("/health")
def health(index: ContentIndex = Depends(get_content_index)) -> dict:
    payload = {"status": "ok", "backend": settings.store_backend}
    if isinstance(index, IndexedContentStore):
        try:
            payload["db"] = fetch_db_info(index.engine)
        except Exception as exc:  # pragma: no cover - safety
            raise HTTPException(status_code=503, detail=str(exc)) from exc
    return payload


@app.post("/ingest/media")
def ingest_media_endpoint(payload: IngestRequest) -> dict:
    job_id = enqueue_media_ingest(payload.to_job_input())
    return {"job_id": job_id, "queue": settings.ingest_queue_name}


@app.get("/ingest/media/{job_id}")
def get_ingest_media_endpoint(job_id: str) -> dict:
    try:
        return get_media_ingest_job(job_id)
    except NoSuchJobError as exc:
        raise HTTPException(status_code=404, detail=f"ingest job not found: {job_id}") from exc


@app.post("/ingest/media/{job_id}/cancel")
def cancel_ingest_media_endpoint(job_id: str) -> dict:
    try:
        cancel_media_ingest(job_id)
    except NoSuchJobError as exc:
        raise HTTPException(status_code=404, detail=f"ingest job not found: {job_id}") from exc
    except InvalidJobOperation as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {"job_id": job_id, "cancel_requested": True}


@app.get("/media/{volume}/{collection}")
def list_media_endpoint(
    volume: str,
    collection: str,
    display_name: Optional[str] = Query(None),
    relative_path: Optional[str] = Query(None),
    index: ContentIndex = Depends(get_content_index),
) -> dict:
    if collection not in KNOWN_COLLECTIONS:
        raise HTTPException(status_code=404, detail=f"unknown collection: {collection}")
    if volume not in index.external_volume_names():
        raise HTTPException(status_code=404, detail=f"unknown volume: {volume}")
    if display_name is not None and relative_path is not None:
        entries = index.list_entries(
            build_scope_uri(volume, collection),
            Selection(display_name=display_name, relative_path=relative_path),
        )
    else:
        entries = [
            entry
            for entry in index.list_entries(build_scope_uri(volume, collection))
            if (display_name is None or entry.display_name == display_name)
            and (
                relative_path is None
                or entry.relative_path.strip("/") == relative_path.strip("/")
            )
        ]
    return {
        "items": [
            {
                "uri": entry.uri,
                "display_name": entry.display_name,
                "relative_path": entry.relative_path,
                "volume": entry.volume,
                "collection": entry.collection,
                "size_bytes": entry.size_bytes,
            }
            for entry in entries
        ]
    }
