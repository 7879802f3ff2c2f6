# healthcast/schemas/forecast.py
from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator

TrendLiteral = Literal["increasing", "decreasing", "stable"]
DataQualityLiteral = Literal["insufficient", "low", "medium", "high"]
InterpretationLiteral = Literal["Excellent", "Good", "Fair", "Poor"]
KindLiteral = Literal["disease", "service"]
GranularityLiteral = Literal["daily", "monthly"]

EntityKey = Tuple[str, str, Optional[str]]


class Severity(str, Enum):
    MILD = "mild"
    MODERATE = "moderate"
    SEVERE = "severe"
    CRITICAL = "critical"


class Observation(BaseModel):
    model_config = ConfigDict(frozen=True)

    period: date
    count: int = Field(..., ge=0)


class ForecastPoint(BaseModel):
    period: date
    predicted: float = Field(..., ge=0)
    lower_bound: float = Field(..., ge=0)
    upper_bound: float
    confidence_level: float = Field(0.95, gt=0, le=1)

    @model_validator(mode="after")
    def _check_bounds(self):
        if self.upper_bound < self.predicted:
            raise ValueError("upper_bound must be >= predicted")
        if self.lower_bound > self.predicted:
            raise ValueError("lower_bound must be <= predicted")
        return self

    class Config:
        from_attributes = True


class AccuracyReport(BaseModel):
    mse: float
    rmse: float
    mae: float
    mape: float = Field(..., description="Mean Absolute Percentage Error (%) over non-zero actuals")
    r_squared: float = Field(..., ge=0, le=1)
    r_squared_raw: float = Field(..., description="Unclamped 1 - SS_res/SS_tot")
    interpretation: InterpretationLiteral


class ReliabilityReport(BaseModel):
    folds: List[AccuracyReport] = []
    avg_mae: Optional[float] = None
    avg_rmse: Optional[float] = None
    avg_mape: Optional[float] = None
    score: int = Field(0, ge=0, le=100)


class RawForecast(BaseModel):
    points: List[ForecastPoint]
    model_version: str
    trend: TrendLiteral
    seasonality_detected: bool
    seasonal_period: Optional[int] = None
    fallback_used: bool = False


class Entity(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: KindLiteral
    name: str = Field(..., min_length=1)
    locality: Optional[str] = None
    granularity: GranularityLiteral = "daily"

    @property
    def key(self) -> EntityKey:
        return (self.kind, self.name, self.locality)

    @property
    def label(self) -> str:
        return f"{self.kind}:{self.name}@{self.locality or 'system-wide'}"


class ForecastRecord(BaseModel):
    entity_key: EntityKey
    points: List[ForecastPoint]
    model_version: str
    trend: TrendLiteral
    seasonality_detected: bool
    data_quality: DataQualityLiteral
    data_points_count: int = Field(..., ge=0)
    generated_at: datetime
    accuracy: Optional[AccuracyReport] = None
    version: int = 1

    @model_validator(mode="after")
    def _check_periods(self):
        periods = [p.period for p in self.points]
        if any(a >= b for a, b in zip(periods, periods[1:])):
            raise ValueError("forecast periods must be strictly increasing")
        return self


class Result(BaseModel):
    entity: Entity
    success: bool
    cached: bool = False
    cache_age_hours: Optional[float] = None
    data_quality: DataQualityLiteral = "insufficient"
    data_points_count: int = 0
    points: List[ForecastPoint] = []
    accuracy: Optional[AccuracyReport] = None
    trend: Optional[TrendLiteral] = None
    seasonality_detected: Optional[bool] = None
    model_version: Optional[str] = None
    projected_severity: Optional[Severity] = None
    error: Optional[str] = None

    @property
    def predictions_count(self) -> int:
        return len(self.points)


class BatchSummary(BaseModel):
    results: List[Result]
    succeeded: int
    failed: int
    total_points: int
    average_r_squared: Optional[float] = None

    def __len__(self) -> int:
        return len(self.results)


__all__ = [
    "TrendLiteral",
    "DataQualityLiteral",
    "InterpretationLiteral",
    "KindLiteral",
    "GranularityLiteral",
    "EntityKey",
    "Severity",
    "Observation",
    "ForecastPoint",
    "AccuracyReport",
    "ReliabilityReport",
    "RawForecast",
    "Entity",
    "ForecastRecord",
    "Result",
    "BatchSummary",
]
