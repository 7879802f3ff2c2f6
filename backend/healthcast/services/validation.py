from __future__ import annotations

import math
from typing import List, Optional, Sequence

import numpy as np
import structlog

from healthcast.config import Settings, get_settings
from healthcast.errors import DimensionMismatchError, EmptyInputError, InsufficientDataError
from healthcast.schemas.forecast import AccuracyReport, Observation, ReliabilityReport
from healthcast.services.forecast import ForecastEngine

logger = structlog.get_logger(__name__)


def interpret_r_squared(r_squared: float) -> str:
    if r_squared >= 0.9:
        return "Excellent"
    if r_squared >= 0.8:
        return "Good"
    if r_squared >= 0.6:
        return "Fair"
    return "Poor"


def interpret_mape(mape: float) -> str:
    if mape < 10:
        return "Excellent"
    if mape < 20:
        return "Good"
    if mape < 50:
        return "Fair"
    return "Poor"


def _mape(a: np.ndarray, p: np.ndarray) -> float:
    # Defined over non-zero actuals only; an all-zero actual series scores 0.
    nonzero = a != 0
    if not nonzero.any():
        return 0.0
    return float(np.mean(np.abs((a[nonzero] - p[nonzero]) / a[nonzero])) * 100.0)


def _r_squared(a: np.ndarray, p: np.ndarray) -> tuple[float, float]:
    ss_res = float(np.sum((a - p) ** 2))
    ss_tot = float(np.sum((a - a.mean()) ** 2))
    if ss_tot == 0.0:
        r2 = 1.0 if ss_res == 0.0 else 0.0
        return r2, r2
    raw = 1.0 - ss_res / ss_tot
    return max(0.0, min(1.0, raw)), raw


def validate(actual: Sequence[float], predicted: Sequence[float]) -> AccuracyReport:
    """Compare a held-out actual sequence with its forecast.

    R^2 is clamped to [0, 1]: a model worse than the mean baseline reports 0.
    The unclamped value is kept in ``r_squared_raw``.
    """
    if len(actual) == 0 or len(predicted) == 0:
        raise EmptyInputError("actual and predicted must be non-empty")
    if len(actual) != len(predicted):
        raise DimensionMismatchError(
            f"length mismatch: actual ({len(actual)}) vs predicted ({len(predicted)})"
        )
    if len(actual) < 2:
        raise InsufficientDataError("need at least 2 points for meaningful metrics")

    a = np.asarray(actual, dtype=float)
    p = np.asarray(predicted, dtype=float)
    err = a - p
    mse = float(np.mean(err ** 2))
    r2, r2_raw = _r_squared(a, p)
    return AccuracyReport(
        mse=mse,
        rmse=math.sqrt(mse),
        mae=float(np.mean(np.abs(err))),
        mape=_mape(a, p),
        r_squared=r2,
        r_squared_raw=r2_raw,
        interpretation=interpret_r_squared(r2),
    )


def holdout_size(n: int, horizon: int, fraction: float = 0.2, minimum: int = 2) -> int:
    """Suffix length used for backtesting; 0 when the series cannot spare one."""
    size = max(minimum, min(horizon, int(n * fraction)))
    # keep at least two training points for the engine
    size = min(size, n - 2)
    return size if size >= minimum else 0


def backtest(
    series: List[Observation],
    horizon: int,
    engine: ForecastEngine,
    settings: Settings | None = None,
) -> Optional[AccuracyReport]:
    """Forecast a held-out suffix from the training prefix and score it."""
    settings = settings or get_settings()
    size = holdout_size(
        len(series), horizon, settings.BACKTEST_HOLDOUT_FRACTION, settings.BACKTEST_MIN_HOLDOUT
    )
    if size == 0:
        logger.info("backtest.skipped", points=len(series), reason="series too short for holdout")
        return None

    train, test = series[:-size], series[-size:]
    raw = engine.forecast(train, size, label="backtest")
    actual = [float(o.count) for o in test]
    predicted = [pt.predicted for pt in raw.points]
    report = validate(actual, predicted)
    logger.info(
        "backtest.completed",
        train_points=len(train),
        test_points=size,
        r_squared=round(report.r_squared, 4),
        mape=round(report.mape, 2),
        fallback=raw.fallback_used,
    )
    return report


def _split_rolling_origin(series: List[Observation], fold_idx: int, horizon: int):
    """For fold t: test is the (t+1)-th block of size horizon from the end."""
    start = len(series) - (fold_idx + 1) * horizon
    if start <= 0:
        return [], []
    return series[:start], series[start:start + horizon]


def rolling_backtest(
    series: List[Observation],
    engine: ForecastEngine,
    folds: int = 5,
    horizon: int = 7,
    min_train: int = 8,
) -> ReliabilityReport:
    """
    Expanding-window rolling-origin backtest with aggregate metrics and a 0-100 score.
    Score = 100 - mean MAPE / 2 - instability, where instability is the MAPE spread / 10.
    """
    horizon = max(2, int(horizon))
    reports: List[AccuracyReport] = []
    for t in range(max(0, int(folds))):
        train, test = _split_rolling_origin(series, t, horizon)
        if len(test) < horizon or len(train) < min_train:
            break
        raw = engine.forecast(train, horizon, label=f"fold-{t}")
        reports.append(validate([float(o.count) for o in test], [pt.predicted for pt in raw.points]))

    if not reports:
        return ReliabilityReport(folds=[], score=0)

    mapes = [r.mape for r in reports]
    avg_mape = float(np.mean(mapes))
    instability = (max(mapes) - min(mapes)) / 10.0 if len(mapes) >= 2 else 0.0
    score = int(max(0, min(100, 100 - avg_mape / 2.0 - instability)))
    return ReliabilityReport(
        folds=reports,
        avg_mae=float(np.mean([r.mae for r in reports])),
        avg_rmse=float(np.mean([r.rmse for r in reports])),
        avg_mape=avg_mape,
        score=score,
    )


__all__ = [
    "validate",
    "interpret_r_squared",
    "interpret_mape",
    "holdout_size",
    "backtest",
    "rolling_backtest",
]
