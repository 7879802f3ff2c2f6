from __future__ import annotations
from sqlalchemy import (
    Boolean, Column, Date, DateTime, Float, ForeignKey, Integer, String, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from healthcast.db.base import Base

# Locality value for forecasts that are not filtered by locality. Keeps the
# unique constraint effective, since NULLs never collide in SQL.
SYSTEM_WIDE = "__system__"


class StoredForecast(Base):
    __tablename__ = "forecast_records"

    id = Column(Integer, primary_key=True)
    kind = Column(String(16), nullable=False)
    name = Column(String(64), nullable=False)
    locality = Column(String(128), nullable=False, default=SYSTEM_WIDE)
    version = Column(Integer, nullable=False, default=1)
    model_version = Column(String(64), nullable=False)
    trend = Column(String(16), nullable=False)
    seasonality_detected = Column(Boolean, nullable=False, default=False)
    data_quality = Column(String(16), nullable=False)
    data_points_count = Column(Integer, nullable=False)
    mse = Column(Float, nullable=True)
    rmse = Column(Float, nullable=True)
    mae = Column(Float, nullable=True)
    mape = Column(Float, nullable=True)
    r_squared = Column(Float, nullable=True)
    r_squared_raw = Column(Float, nullable=True)
    generated_at = Column(DateTime(timezone=True), nullable=False)

    points = relationship(
        "StoredForecastPoint",
        cascade="all,delete-orphan",
        order_by="StoredForecastPoint.period",
        back_populates="record",
    )

    __table_args__ = (UniqueConstraint("kind", "name", "locality", name="uq_forecast_entity"),)


class StoredForecastPoint(Base):
    __tablename__ = "forecast_points"

    id = Column(Integer, primary_key=True)
    record_id = Column(Integer, ForeignKey("forecast_records.id", ondelete="CASCADE"), nullable=False, index=True)
    period = Column(Date, nullable=False)
    predicted = Column(Float, nullable=False)
    lower_bound = Column(Float, nullable=False)
    upper_bound = Column(Float, nullable=False)
    confidence_level = Column(Float, nullable=False)

    record = relationship("StoredForecast", back_populates="points")
