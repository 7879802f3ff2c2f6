from __future__ import annotations

import functools
import time
import uuid
from typing import Any, Callable, Dict, TypeVar

import structlog

from healthcast.observability.metrics import JOB_SECONDS

F = TypeVar("F", bound=Callable[..., Any])

logger = structlog.get_logger("job")


def _outcome_fields(res: Any) -> Dict[str, int]:
    """Batch summaries report their own counts; anything sized reports its length."""
    fields: Dict[str, int] = {}
    for attr in ("succeeded", "failed", "total_points"):
        value = getattr(res, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            fields[attr] = value
    if hasattr(res, "__len__"):
        fields["result_size"] = len(res)
    return fields


def log_job(name: str) -> Callable[[F], F]:
    """
    Wrap a batch entry point.

    Every event logged while the job runs (including per-entity events from
    the orchestrator) carries ``job`` and a short ``run_id``. Wall time goes to
    the ``healthcast_job_seconds`` histogram, split by ok/error.
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any):
            start = time.perf_counter()
            with structlog.contextvars.bound_contextvars(job=name, run_id=uuid.uuid4().hex[:12]):
                logger.info("job.start")
                try:
                    result = func(*args, **kwargs)
                except Exception:
                    elapsed = time.perf_counter() - start
                    JOB_SECONDS.labels(job=name, status="error").observe(elapsed)
                    logger.exception("job.error", duration_ms=round(elapsed * 1000, 2))
                    raise
                elapsed = time.perf_counter() - start
                JOB_SECONDS.labels(job=name, status="ok").observe(elapsed)
                logger.info("job.completed", duration_ms=round(elapsed * 1000, 2), **_outcome_fields(result))
            return result

        return wrapper  # type: ignore[return-value]

    return decorator
