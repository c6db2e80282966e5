from __future__ import annotations

import contextvars
import logging
from contextlib import contextmanager
from typing import Iterator, Optional

_job_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "job_id", default="-"
)
_configured = False


class JobIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "job_id"):
            record.job_id = _job_id_var.get("-")
        return True


def configure_logging(level: str = "INFO") -> None:
    global _configured
    root = logging.getLogger()
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    if not _configured:
        if not root.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(
                logging.Formatter(
                    "%(asctime)s %(levelname)s [%(name)s] [job=%(job_id)s] %(message)s"
                )
            )
            root.addHandler(handler)
        for handler in root.handlers:
            handler.addFilter(JobIdFilter())
        _configured = True

    root.setLevel(numeric_level)


def set_job_id(job_id: str) -> contextvars.Token[str]:
    return _job_id_var.set(job_id)


def reset_job_id(token: contextvars.Token[str]) -> None:
    _job_id_var.reset(token)


def get_job_id() -> str:
    return _job_id_var.get("-")


@contextmanager
def job_context(job_id: Optional[str]) -> Iterator[str]:
    """Bind ``job_id`` to every log record emitted inside the block."""
    bound = job_id or "-"
    token = set_job_id(bound)
    try:
        yield bound
    finally:
        reset_job_id(token)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    return logging.getLogger(name)
