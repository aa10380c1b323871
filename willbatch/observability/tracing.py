"""Job context binding for structured logs."""
from __future__ import annotations

import contextlib
import time
from typing import Iterator, Optional

import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars

LOGGER = structlog.get_logger("willbatch.trace")


def set_context(*, job_id: str, job_type: str, run_id: Optional[str] = None) -> None:
    bind_contextvars(job_id=job_id, job_type=job_type)
    if run_id is not None:
        bind_contextvars(run_id=run_id)
    LOGGER.debug("trace_context", job_id=job_id, job_type=job_type)


def clear_context() -> None:
    clear_contextvars()


@contextlib.contextmanager
def span(*, name: str, job_id: Optional[str] = None) -> Iterator[None]:
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        LOGGER.info("trace_span", span=name, job_id=job_id, elapsed_ms=elapsed_ms)
