# healthcast/services/forecast.py
from __future__ import annotations

import abc
import statistics
import warnings
from datetime import date
from typing import List, NamedTuple, Optional, Tuple

import numpy as np
import pandas as pd
import structlog
from statsmodels.tsa.seasonal import seasonal_decompose
from statsmodels.tsa.statespace.sarimax import SARIMAX

from healthcast.config import Settings, get_settings
from healthcast.errors import FittingDegenerateError, InsufficientDataError
from healthcast.observability.metrics import FALLBACKS_TOTAL
from healthcast.schemas.forecast import ForecastPoint, Observation, RawForecast

logger = structlog.get_logger(__name__)

MODEL_VERSION = "seasonal-sarimax-1.0"
FALLBACK_MODEL_VERSION = "flat-mean-1.0"
NAIVE_MODEL_VERSION = "naive-trend-1.0"

# SARIMAX needs a handful of points before the likelihood is worth optimizing
MIN_FIT_POINTS = 4


class Cadence(NamedTuple):
    name: str
    step: pd.DateOffset
    seasonal_period: Optional[int]


DAILY = Cadence("daily", pd.DateOffset(days=1), 7)
WEEKLY = Cadence("weekly", pd.DateOffset(weeks=1), 52)
MONTHLY = Cadence("monthly", pd.DateOffset(months=1), 12)


def infer_cadence(periods: List[date]) -> Cadence:
    """Pick step and seasonal period from the median gap between observations."""
    if len(periods) < 2:
        return DAILY
    ordinals = np.array([p.toordinal() for p in periods], dtype=float)
    gap = float(np.median(np.diff(ordinals)))
    if gap <= 2:
        return DAILY
    if 5 <= gap <= 9:
        return WEEKLY
    if 25 <= gap <= 35:
        return MONTHLY
    return Cadence("irregular", pd.DateOffset(days=max(1, int(round(gap)))), None)


def future_periods(last: date, cadence: Cadence, horizon: int) -> List[date]:
    anchor = pd.Timestamp(last)
    return [(anchor + cadence.step * i).date() for i in range(1, horizon + 1)]


def z_multiplier(confidence_level: float) -> float:
    p = min(0.5 + confidence_level / 2.0, 1.0 - 1e-9)
    return statistics.NormalDist().inv_cdf(p)


def seasonal_strength(seasonal: np.ndarray, resid: np.ndarray) -> float:
    """max(0, 1 - Var(R) / Var(S + R)); 0 when the detrended series is flat."""
    mask = np.isfinite(seasonal) & np.isfinite(resid)
    if mask.sum() < 2:
        return 0.0
    s, r = seasonal[mask], resid[mask]
    total = float(np.var(s + r))
    if total <= 1e-12:
        return 0.0
    return max(0.0, 1.0 - float(np.var(r)) / total)


def classify_trend(values: np.ndarray, trend_component: Optional[np.ndarray], deadband: float) -> str:
    y = trend_component if trend_component is not None else values
    y = y[np.isfinite(y)]
    mean = float(np.mean(values)) if len(values) else 0.0
    if len(y) < 2 or mean <= 0:
        return "stable"
    slope = float(np.polyfit(np.arange(len(y), dtype=float), y, 1)[0])
    relative_change = slope * (len(y) - 1) / mean
    if relative_change > deadband:
        return "increasing"
    if relative_change < -deadband:
        return "decreasing"
    return "stable"


def build_points(
    periods: List[date], mean: np.ndarray, std_error: float, confidence_level: float
) -> List[ForecastPoint]:
    margin = z_multiplier(confidence_level) * max(std_error, 0.0)
    points: List[ForecastPoint] = []
    for period, m in zip(periods, mean):
        predicted = round(max(0.0, float(m)), 4)
        points.append(
            ForecastPoint(
                period=period,
                predicted=predicted,
                lower_bound=round(max(0.0, predicted - margin), 4),
                upper_bound=round(predicted + margin, 4),
                confidence_level=confidence_level,
            )
        )
    return points


def _check_inputs(series: List[Observation], horizon: int) -> None:
    if len(series) < 2:
        raise InsufficientDataError(f"at least 2 observations required, got {len(series)}")
    if horizon < 1:
        raise ValueError("horizon must be >= 1")


class ForecastEngine(abc.ABC):
    """Strategy seam: anything that turns a formatted series into a RawForecast."""

    name = "base"

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

    @abc.abstractmethod
    def forecast(self, series: List[Observation], horizon: int, label: str = "") -> RawForecast:
        raise NotImplementedError


class SeasonalForecastEngine(ForecastEngine):
    """
    Seasonal ARIMA forecaster.

    The cadence of the series decides the seasonal period (7 for daily data, 12
    for monthly). When the series spans two full cycles it is decomposed into
    trend/seasonal/residual; a strong seasonal component switches SARIMAX to
    seasonal differencing. Bounds come from the in-sample residual spread.
    Degenerate fits fall back to a flat forecast at the series mean.
    """

    name = "sarimax"

    def __init__(self, settings: Settings | None = None, order: Tuple[int, int, int] = (1, 1, 1)):
        super().__init__(settings)
        self.order = order

    def forecast(self, series: List[Observation], horizon: int, label: str = "") -> RawForecast:
        _check_inputs(series, horizon)
        values = np.asarray([o.count for o in series], dtype=float)
        cadence = infer_cadence([o.period for o in series])
        periods = future_periods(series[-1].period, cadence, horizon)
        level = self.settings.FORECAST_CONFIDENCE_LEVEL

        trend_component = None
        seasonal = False
        period = cadence.seasonal_period
        if period and len(values) >= 2 * period and np.var(values) > 0:
            decomposition = seasonal_decompose(values, model="additive", period=period, extrapolate_trend="freq")
            trend_component = np.asarray(decomposition.trend, dtype=float)
            strength = seasonal_strength(
                np.asarray(decomposition.seasonal, dtype=float),
                np.asarray(decomposition.resid, dtype=float),
            )
            seasonal = strength > self.settings.SEASONALITY_STRENGTH_THRESHOLD
            logger.debug("forecast.seasonality", label=label, period=period, strength=round(strength, 4))

        trend = classify_trend(values, trend_component, self.settings.TREND_DEADBAND)

        try:
            mean, std_error = self._fit(values, horizon, period if seasonal else None)
        except FittingDegenerateError as exc:
            logger.warning("forecast.fallback", label=label, reason=str(exc), points=len(values))
            FALLBACKS_TOTAL.labels(engine=self.name).inc()
            return flat_forecast(values, periods, level, trend=trend, seasonality_detected=seasonal)

        return RawForecast(
            points=build_points(periods, mean, std_error, level),
            model_version=MODEL_VERSION,
            trend=trend,
            seasonality_detected=seasonal,
            seasonal_period=period if seasonal else None,
            fallback_used=False,
        )

    def _fit(self, values: np.ndarray, horizon: int, period: Optional[int]) -> Tuple[np.ndarray, float]:
        if len(values) < MIN_FIT_POINTS:
            raise FittingDegenerateError(f"{len(values)} points is too few to fit SARIMAX")
        if float(np.var(values)) == 0.0:
            raise FittingDegenerateError("series has zero variance")

        seasonal_order = (0, 1, 1, period) if period else (0, 0, 0, 0)
        burn_in = self.order[1] + (period or 0)
        try:
            with warnings.catch_warnings():
                # statsmodels is chatty about convergence on short count series
                warnings.simplefilter("ignore")
                model = SARIMAX(
                    values,
                    order=self.order,
                    seasonal_order=seasonal_order,
                    enforce_stationarity=False,
                    enforce_invertibility=False,
                )
                fit = model.fit(disp=False)
                mean = np.asarray(fit.forecast(steps=horizon), dtype=float)
                resid = np.asarray(fit.resid, dtype=float)[burn_in:]
        except Exception as exc:
            raise FittingDegenerateError(f"SARIMAX fit failed: {exc}") from exc

        if mean.shape[0] != horizon or not np.all(np.isfinite(mean)):
            raise FittingDegenerateError("SARIMAX produced non-finite forecasts")
        cap = float(values.max()) * self.settings.EXPLOSION_FACTOR
        if float(mean.max()) > cap:
            raise FittingDegenerateError(
                f"forecast peak {mean.max():.1f} exceeds {self.settings.EXPLOSION_FACTOR:g}x historical max"
            )

        resid = resid[np.isfinite(resid)]
        std_error = float(np.std(resid, ddof=1)) if len(resid) > 1 else float(np.std(values))
        if not np.isfinite(std_error):
            std_error = float(np.std(values))
        return mean, std_error


class NaiveTrendEngine(ForecastEngine):
    """Last observed value carried forward along the slope of the recent window."""

    name = "naive-trend"

    def __init__(self, settings: Settings | None = None, window: int = 7):
        super().__init__(settings)
        self.window = window

    def forecast(self, series: List[Observation], horizon: int, label: str = "") -> RawForecast:
        _check_inputs(series, horizon)
        values = np.asarray([o.count for o in series], dtype=float)
        cadence = infer_cadence([o.period for o in series])
        periods = future_periods(series[-1].period, cadence, horizon)

        recent = values[-self.window:]
        slope = float(np.polyfit(np.arange(len(recent), dtype=float), recent, 1)[0]) if len(recent) >= 2 else 0.0
        mean = values[-1] + slope * np.arange(1, horizon + 1, dtype=float)

        return RawForecast(
            points=build_points(periods, mean, float(np.std(values)), self.settings.FORECAST_CONFIDENCE_LEVEL),
            model_version=NAIVE_MODEL_VERSION,
            trend=classify_trend(values, None, self.settings.TREND_DEADBAND),
            seasonality_detected=False,
            fallback_used=False,
        )


def flat_forecast(
    values: np.ndarray,
    periods: List[date],
    confidence_level: float,
    trend: str = "stable",
    seasonality_detected: bool = False,
) -> RawForecast:
    mean = np.full(len(periods), float(np.mean(values)))
    return RawForecast(
        points=build_points(periods, mean, float(np.std(values)), confidence_level),
        model_version=FALLBACK_MODEL_VERSION,
        trend=trend,
        seasonality_detected=seasonality_detected,
        fallback_used=True,
    )


__all__ = [
    "ForecastEngine",
    "SeasonalForecastEngine",
    "NaiveTrendEngine",
    "flat_forecast",
    "infer_cadence",
    "future_periods",
    "classify_trend",
    "seasonal_strength",
    "z_multiplier",
    "MODEL_VERSION",
    "FALLBACK_MODEL_VERSION",
    "NAIVE_MODEL_VERSION",
]
