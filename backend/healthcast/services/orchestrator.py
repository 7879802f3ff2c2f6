from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, List, Mapping, Optional, Protocol, Tuple

import structlog

from healthcast.config import Settings, get_settings
from healthcast.observability.instrument import log_job
from healthcast.observability.metrics import FIT_SECONDS, record_outcome
from healthcast.schemas.forecast import (
    BatchSummary,
    Entity,
    ForecastRecord,
    Observation,
    ReliabilityReport,
    Result,
    Severity,
)
from healthcast.services.forecast import ForecastEngine, SeasonalForecastEngine
from healthcast.services.formatting import aggregate_monthly, format_observations
from healthcast.services.severity import classify
from healthcast.services.store import ForecastStore, HistorySource
from healthcast.services.validation import backtest, rolling_backtest

logger = structlog.get_logger(__name__)


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


def _error_text(exc: BaseException) -> str:
    return f"{exc.__class__.__name__}: {exc}" if str(exc) else exc.__class__.__name__


class ForecastOrchestrator:
    """
    Runs forecasts for many diseases/services one entity at a time.

    Per entity: a forecast younger than the cache TTL is returned as-is; a
    series shorter than FORECAST_MIN_POINTS is reported as insufficient;
    otherwise the engine is fit, backtested and the stored forecast replaced.
    Consecutive engine runs are spaced by FORECAST_PACING_SECONDS. Any failure
    is captured in that entity's Result and never aborts the batch.
    """

    def __init__(
        self,
        history: HistorySource,
        store: ForecastStore,
        engine: ForecastEngine | None = None,
        settings: Settings | None = None,
        clock: Clock | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings or get_settings()
        self.history = history
        self.store = store
        self.engine = engine or SeasonalForecastEngine(self.settings)
        self.clock = clock or SystemClock()
        self.sleep = sleep

    @log_job("forecast.batch")
    def generate_batch(self, entities: Iterable[Entity], horizon: int | None = None) -> BatchSummary:
        horizon = self.settings.DEFAULT_HORIZON if horizon is None else int(horizon)

        results: List[Result] = []
        generations = 0
        for entity in entities:
            if horizon < 1:
                results.append(self._rejected(entity, f"horizon must be >= 1 (got {horizon})"))
                continue
            result, invoked = self._process(entity, horizon, pace=generations > 0)
            generations += int(invoked)
            results.append(result)

        summary = summarize(results)
        logger.info(
            "batch.completed",
            entities=len(results),
            succeeded=summary.succeeded,
            failed=summary.failed,
            total_points=summary.total_points,
            average_r_squared=summary.average_r_squared,
        )
        return summary

    def generate(self, entity: Entity, horizon: int | None = None) -> Result:
        return self.generate_batch([entity], horizon).results[0]

    @log_job("forecast.reliability")
    def reliability(self, entity: Entity, folds: int = 5, horizon: int = 7) -> ReliabilityReport:
        """Rolling-origin backtest of the engine over the entity's full history."""
        series = self.prepare_series(entity, self.history.fetch(entity))
        report = rolling_backtest(series, self.engine, folds=folds, horizon=horizon)
        logger.info(
            "reliability.computed",
            entity=entity.label,
            folds=len(report.folds),
            score=report.score,
            avg_mape=report.avg_mape,
        )
        return report

    def _rejected(self, entity: Entity, reason: str) -> Result:
        logger.error("batch.entity_rejected", entity=entity.label, reason=reason)
        record_outcome(entity.kind, "failed")
        return Result(entity=entity, success=False, error=f"ValueError: {reason}")

    def _process(self, entity: Entity, horizon: int, pace: bool) -> Tuple[Result, bool]:
        invoked = False
        pause = self.settings.FORECAST_PACING_SECONDS if pace else 0.0
        try:
            with self.store.entity_lock(entity):
                early, series = self._screen(entity)
                if early is not None:
                    return early, False
                if pause <= 0:
                    invoked = True
                    return self._generate(entity, series, horizon), True

            # lock released while pausing; freshness is checked again below
            logger.info("batch.pacing", entity=entity.label, seconds=pause)
            self.sleep(pause)

            with self.store.entity_lock(entity):
                cached = self._cached_result(entity)
                if cached is not None:
                    record_outcome(entity.kind, "cached")
                    return cached, False
                invoked = True
                return self._generate(entity, series, horizon), True
        except Exception as exc:
            logger.exception("batch.entity_failed", entity=entity.label)
            record_outcome(entity.kind, "failed")
            return Result(entity=entity, success=False, error=_error_text(exc)), invoked

    def _screen(self, entity: Entity) -> Tuple[Optional[Result], List[Observation]]:
        """Cache hit or insufficient history short-circuit; otherwise the prepared series."""
        cached = self._cached_result(entity)
        if cached is not None:
            record_outcome(entity.kind, "cached")
            return cached, []

        series = self.prepare_series(entity, self.history.fetch(entity))
        if len(series) < self.settings.FORECAST_MIN_POINTS:
            logger.warning(
                "batch.insufficient_data",
                entity=entity.label,
                points=len(series),
                required=self.settings.FORECAST_MIN_POINTS,
            )
            record_outcome(entity.kind, "insufficient")
            return (
                Result(
                    entity=entity,
                    success=False,
                    data_quality="insufficient",
                    data_points_count=len(series),
                    error=(
                        f"Insufficient historical data ({len(series)} points). "
                        f"Minimum {self.settings.FORECAST_MIN_POINTS} required."
                    ),
                ),
                series,
            )
        return None, series

    def _generate(self, entity: Entity, series: List[Observation], horizon: int) -> Result:
        result = self._forecast_and_store(entity, series, horizon)
        record_outcome(entity.kind, "cached" if result.cached else "fresh")
        return result

    def prepare_series(self, entity: Entity, rows: Iterable[Mapping[str, Any]]) -> List[Observation]:
        series = format_observations(rows)
        if entity.granularity == "monthly":
            # appointment volumes are continuous; disease reports are sparse
            series = aggregate_monthly(series, fill_gaps=entity.kind == "service")
        return series

    def _cached_result(self, entity: Entity) -> Optional[Result]:
        record = self.store.latest(entity)
        if record is None:
            return None
        age = self.clock.now() - record.generated_at
        if age >= timedelta(hours=self.settings.FORECAST_CACHE_TTL_HOURS):
            return None
        age_hours = round(max(age.total_seconds(), 0.0) / 3600.0, 2)
        logger.info("batch.cache_hit", entity=entity.label, cache_age_hours=age_hours)
        return self._result_from_record(entity, record, cached=True, cache_age_hours=age_hours)

    def _forecast_and_store(self, entity: Entity, series: List[Observation], horizon: int) -> Result:
        started = time.perf_counter()
        raw = self.engine.forecast(series, horizon, label=entity.label)
        accuracy = backtest(series, horizon, self.engine, self.settings)
        FIT_SECONDS.labels(kind=entity.kind).observe(time.perf_counter() - started)

        record = ForecastRecord(
            entity_key=entity.key,
            points=raw.points,
            model_version=raw.model_version,
            trend=raw.trend,
            seasonality_detected=raw.seasonality_detected,
            data_quality=self._data_quality(len(series), raw.fallback_used),
            data_points_count=len(series),
            generated_at=self.clock.now(),
            accuracy=accuracy,
        )
        ttl = timedelta(hours=self.settings.FORECAST_CACHE_TTL_HOURS)
        stored = self.store.replace(entity, record, fresh_within=ttl)
        if stored.generated_at != record.generated_at:
            # another writer refreshed this entity first; its forecast stands
            age_hours = round(max((record.generated_at - stored.generated_at).total_seconds(), 0.0) / 3600.0, 2)
            logger.info("batch.concurrent_refresh", entity=entity.label, version=stored.version)
            return self._result_from_record(entity, stored, cached=True, cache_age_hours=age_hours)
        logger.info(
            "batch.entity_generated",
            entity=entity.label,
            points=len(stored.points),
            model_version=stored.model_version,
            r_squared=accuracy.r_squared if accuracy else None,
            data_quality=stored.data_quality,
        )
        return self._result_from_record(entity, stored, cached=False, cache_age_hours=None)

    def _data_quality(self, n: int, fallback_used: bool) -> str:
        if n < self.settings.FORECAST_MIN_POINTS:
            return "insufficient"
        if fallback_used:
            return "low"
        if n < self.settings.HIGH_QUALITY_MIN_POINTS:
            return "medium"
        return "high"

    def _projected_severity(self, entity: Entity, record: ForecastRecord) -> Optional[Severity]:
        if not record.points:
            return None
        peak = max(p.predicted for p in record.points)
        return classify(int(round(peak)), self.history.population(entity.locality))

    def _result_from_record(
        self, entity: Entity, record: ForecastRecord, cached: bool, cache_age_hours: Optional[float]
    ) -> Result:
        return Result(
            entity=entity,
            success=True,
            cached=cached,
            cache_age_hours=cache_age_hours,
            data_quality=record.data_quality,
            data_points_count=record.data_points_count,
            points=record.points,
            accuracy=record.accuracy,
            trend=record.trend,
            seasonality_detected=record.seasonality_detected,
            model_version=record.model_version,
            projected_severity=self._projected_severity(entity, record),
        )


def summarize(results: List[Result]) -> BatchSummary:
    succeeded = [r for r in results if r.success]
    scored = [r.accuracy.r_squared for r in succeeded if r.accuracy is not None]
    return BatchSummary(
        results=results,
        succeeded=len(succeeded),
        failed=len(results) - len(succeeded),
        total_points=sum(len(r.points) for r in results),
        average_r_squared=round(sum(scored) / len(scored), 4) if scored else None,
    )


__all__ = ["Clock", "SystemClock", "ForecastOrchestrator", "summarize"]
