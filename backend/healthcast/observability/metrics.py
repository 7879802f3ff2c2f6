from __future__ import annotations

from prometheus_client import Counter, Histogram

FORECASTS_TOTAL = Counter(
    "healthcast_forecasts_total",
    "Forecast requests handled by the orchestrator",
    ["kind", "outcome"],
)
FALLBACKS_TOTAL = Counter(
    "healthcast_forecast_fallbacks_total",
    "Engine fits that degraded to the flat-mean forecast",
    ["engine"],
)
FIT_SECONDS = Histogram(
    "healthcast_forecast_fit_seconds",
    "Wall time spent fitting and backtesting one entity",
    ["kind"],
)
JOB_SECONDS = Histogram(
    "healthcast_job_seconds",
    "Wall time of a whole batch job",
    ["job", "status"],
    buckets=(1, 5, 15, 30, 60, 120, 300, 600, 1800),
)


def record_outcome(kind: str, outcome: str) -> None:
    """outcome is one of fresh, cached, insufficient, failed."""
    FORECASTS_TOTAL.labels(kind=kind, outcome=outcome).inc()
