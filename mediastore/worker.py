from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Dict, Literal, Mapping, Optional, Protocol

from pydantic import ValidationError
from redis import Redis
from rq import Queue, get_current_job
from rq.job import Job, JobStatus

from .config import settings
from .content_index import ContentIndex, build_content_index
from .errors import InputMissing, JobCancelled, LocalCleanupFailure, MediaIngestError
from .identity import ConflictEraser, IdentityResolver
from .logging_utils import get_logger, job_context
from .schemas import IngestRequest
from .staged_write import StagedWriter
from .tagging import TagEmbedder

INGEST_STATE = Literal[
    "idle",
    "tag_embedding",
    "conflict_resolution",
    "staged_write",
    "visible",
    "local_cleanup",
    "done",
    "failed",
]
STATE_IDLE: INGEST_STATE = "idle"
STATE_TAG_EMBEDDING: INGEST_STATE = "tag_embedding"
STATE_CONFLICT_RESOLUTION: INGEST_STATE = "conflict_resolution"
STATE_STAGED_WRITE: INGEST_STATE = "staged_write"
STATE_VISIBLE: INGEST_STATE = "visible"
STATE_LOCAL_CLEANUP: INGEST_STATE = "local_cleanup"
STATE_DONE: INGEST_STATE = "done"
STATE_FAILED: INGEST_STATE = "failed"

JOB_RESULT = Literal["success", "failure"]
RESULT_SUCCESS: JOB_RESULT = "success"
RESULT_FAILURE: JOB_RESULT = "failure"

JOB_FUNCTION = "mediastore.worker.process_media_ingest"
logger = get_logger(__name__)


class CancellationToken(Protocol):
    def is_cancelled(self) -> bool:
        ...


class NeverCancelled:
    def is_cancelled(self) -> bool:
        return False


class EventCancellationToken:
    def __init__(self, event: Optional[threading.Event] = None) -> None:
        self.event = event or threading.Event()

    def cancel(self) -> None:
        self.event.set()

    def is_cancelled(self) -> bool:
        return self.event.is_set()


class RqJobCancellationToken:
    """Reports cancellation once the rq job has been cancelled by the scheduler."""

    def __init__(self, job: Optional[Job]) -> None:
        self._job = job

    def is_cancelled(self) -> bool:
        if self._job is None:
            return False
        return self._job.get_status(refresh=True) == JobStatus.CANCELED


class MediaIngestWorker:
    """Commits one staged media file into the store.

    Steps run in a fixed order (tag embedding, conflict eviction, staged write,
    staging file cleanup). Every error is turned into ``RESULT_FAILURE``; the
    staging file is only removed after the new entry is visible.
    """

    def __init__(
        self,
        index: ContentIndex,
        *,
        embedder: Optional[TagEmbedder] = None,
        cancel_token: Optional[CancellationToken] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.logger = logger or get_logger(__name__)
        self.index = index
        self.embedder = embedder or TagEmbedder(logger=self.logger)
        self.resolver = IdentityResolver(index, logger=self.logger)
        self.eraser = ConflictEraser(self.resolver, logger=self.logger)
        self.writer = StagedWriter(index, logger=self.logger)
        self.cancel_token = cancel_token or NeverCancelled()
        self.state: INGEST_STATE = STATE_IDLE
        self.committed_uri: Optional[str] = None

    def _enter(self, state: INGEST_STATE, *, checkpoint: bool = True) -> None:
        if checkpoint and self.cancel_token.is_cancelled():
            raise JobCancelled(f"cancelled before {state}")
        self.logger.debug("ingest_job.state from=%s to=%s", self.state, state)
        self.state = state

    def _fail(self, message: str, *args: Any) -> JOB_RESULT:
        failed_at = self.state
        self.state = STATE_FAILED
        self.logger.error("ingest_job.failed state=%s " + message, failed_at, *args)
        return RESULT_FAILURE

    @staticmethod
    def parse_input(job_input: Mapping[str, Any]) -> IngestRequest:
        try:
            return IngestRequest.model_validate(dict(job_input))
        except ValidationError as exc:
            raise InputMissing(str(exc)) from exc
        except (TypeError, ValueError) as exc:
            raise InputMissing(
                f"job input must be a mapping, got {type(job_input).__name__}"
            ) from exc

    def run(self, job_input: Mapping[str, Any]) -> JOB_RESULT:
        self.state = STATE_IDLE
        self.committed_uri = None
        try:
            request = self.parse_input(job_input)
        except InputMissing as exc:
            return self._fail("error=input_missing detail=%s", str(exc))

        staging_path = request.staging_file
        self.logger.info(
            "ingest_job.start name=%s path=%s category=%s",
            request.display_name,
            staging_path,
            request.category.value,
        )
        try:
            self._enter(STATE_TAG_EMBEDDING)
            self._embed_tags(staging_path, request)

            self._enter(STATE_CONFLICT_RESOLUTION)
            identity = self.resolver.resolve(request)
            self.eraser.erase(identity)

            self._enter(STATE_STAGED_WRITE)
            uri = self.writer.write(identity, staging_path)
            self._enter(STATE_VISIBLE, checkpoint=False)
        except MediaIngestError as exc:
            return self._fail("error=%s detail=%s", type(exc).__name__, str(exc))
        except Exception as exc:
            self.logger.exception("ingest_job.unexpected_error error=%s", str(exc))
            return self._fail("error=%s detail=%s", type(exc).__name__, str(exc))

        self.committed_uri = uri
        self._enter(STATE_LOCAL_CLEANUP, checkpoint=False)
        try:
            self._delete_staging_file(staging_path)
        except LocalCleanupFailure as exc:
            self.logger.warning("ingest_job.cleanup_failed error=%s", str(exc))
        self._enter(STATE_DONE, checkpoint=False)
        self.logger.info(
            "ingest_job.complete name=%s uri=%s", request.display_name, uri
        )
        return RESULT_SUCCESS

    def _embed_tags(self, staging_path: Path, request: IngestRequest) -> None:
        try:
            self.embedder.embed(staging_path, request.tags)
        except Exception as exc:
            self.logger.exception(
                "ingest_job.tag_embed_error path=%s error=%s", staging_path, str(exc)
            )

    @staticmethod
    def _delete_staging_file(path: Path) -> None:
        try:
            if path.exists():
                path.unlink()
        except OSError as exc:
            raise LocalCleanupFailure(f"could not delete {path}: {exc}") from exc


def process_media_ingest(job_input: Dict[str, Any]) -> JOB_RESULT:
    """rq entry point; always returns a result instead of raising."""
    job = get_current_job()
    with job_context(job.id if job is not None else None):
        try:
            index = build_content_index()
        except Exception as exc:
            logger.exception("ingest_job.backend_unavailable error=%s", str(exc))
            return RESULT_FAILURE
        worker = MediaIngestWorker(index, cancel_token=RqJobCancellationToken(job))
        return worker.run(job_input)


def _redis() -> Redis:
    return Redis.from_url(settings.redis_url)


def enqueue_media_ingest(job_input: Mapping[str, Any]) -> str:
    queue = Queue(settings.ingest_queue_name, connection=_redis())
    rq_job = queue.enqueue(
        JOB_FUNCTION,
        dict(job_input),
        job_timeout=settings.ingest_job_timeout_s,
        result_ttl=settings.ingest_result_ttl_s,
    )
    logger.info(
        "ingest_job.enqueued job_id=%s queue=%s name=%s",
        rq_job.id,
        settings.ingest_queue_name,
        job_input.get("name"),
    )
    return rq_job.id


def get_media_ingest_job(job_id: str) -> Dict[str, Any]:
    job = Job.fetch(job_id, connection=_redis())
    status = job.get_status(refresh=True)
    return {
        "job_id": job.id,
        "status": status.value if status is not None else None,
        "result": job.return_value(),
    }


def cancel_media_ingest(job_id: str) -> None:
    job = Job.fetch(job_id, connection=_redis())
    job.cancel()
    logger.info("ingest_job.cancel_requested job_id=%s", job_id)
