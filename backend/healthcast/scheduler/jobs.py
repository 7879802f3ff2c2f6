from __future__ import annotations

import structlog

from healthcast.config import get_settings
from healthcast.db.session import get_sessionmaker
from healthcast.schemas.forecast import BatchSummary
from healthcast.services.orchestrator import ForecastOrchestrator
from healthcast.services.store import SqlForecastStore, SqlHistorySource

logger = structlog.get_logger(__name__)


def regenerate_forecasts(horizon: int | None = None) -> BatchSummary:
    """
    Nightly job: refresh the forecast of every disease/service that has history.

    Entities whose stored forecast is still fresh come back as cache hits, so a
    rerun within the TTL is cheap.
    """
    settings = get_settings()
    factory = get_sessionmaker()
    history = SqlHistorySource(factory)
    orchestrator = ForecastOrchestrator(history, SqlForecastStore(factory), settings=settings)
    entities = history.entities()
    logger.info("nightly_forecasts.start", entities=len(entities))
    summary = orchestrator.generate_batch(entities, horizon or settings.DEFAULT_HORIZON)
    logger.info(
        "nightly_forecasts.done",
        succeeded=summary.succeeded,
        failed=summary.failed,
        total_points=summary.total_points,
    )
    return summary
