from __future__ import annotations

import math
import numbers
from collections import defaultdict
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Mapping

import pandas as pd

from healthcast.errors import MalformedInputError
from healthcast.schemas.forecast import Observation


def _field(row: Any, key: str) -> Any:
    if isinstance(row, Mapping):
        return row.get(key)
    return getattr(row, key, None)


def _parse_day(value: Any) -> date | None:
    """Accept date/datetime/Timestamp, epoch milliseconds or an ISO string; return the calendar day."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, numbers.Real):
        if not math.isfinite(value):
            return None
        try:
            ts = pd.to_datetime(value, unit="ms", utc=True)
        except (ValueError, OverflowError, pd.errors.OutOfBoundsDatetime):
            return None
        return ts.date()
    if isinstance(value, str):
        if not value.strip():
            return None
        ts = pd.to_datetime(value.strip(), errors="coerce")
        if ts is pd.NaT or pd.isna(ts):
            return None
        return ts.date()
    return None


def _parse_count(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    try:
        f = float(value)
    except (TypeError, ValueError):
        return None
    if not f.is_integer() or f < 0:
        return None
    return int(f)


def format_observations(
    rows: Iterable[Any],
    date_key: str = "date",
    count_key: str = "count",
) -> List[Observation]:
    """Normalize raw {date, count} rows into a strictly ascending series.

    Duplicate days are merged by summing their counts. Rows may be mappings or
    ORM objects; dates may already be parsed or ISO strings.
    """
    totals: Dict[date, int] = defaultdict(int)
    for idx, row in enumerate(rows):
        day = _parse_day(_field(row, date_key))
        if day is None:
            raise MalformedInputError(f"row {idx}: missing or unparseable {date_key!r}")
        count = _parse_count(_field(row, count_key))
        if count is None:
            raise MalformedInputError(f"row {idx}: {count_key!r} must be a non-negative integer")
        totals[day] += count

    return [Observation(period=d, count=c) for d, c in sorted(totals.items())]


def aggregate_monthly(observations: List[Observation], fill_gaps: bool = False) -> List[Observation]:
    """Bucket a formatted series into calendar months keyed by the 1st.

    Disease surveillance keeps only months with reports (fill_gaps=False);
    appointment volumes are zero-filled across the whole range.
    """
    if not observations:
        return []
    s = to_series(observations)
    monthly = s.resample("MS").sum()
    if not fill_gaps:
        present = sorted({pd.Timestamp(o.period).to_period("M") for o in observations})
        monthly = monthly[monthly.index.to_period("M").isin(present)]
    return [Observation(period=ts.date(), count=int(v)) for ts, v in monthly.items()]


def to_series(observations: List[Observation]) -> pd.Series:
    if not observations:
        return pd.Series(dtype=float)
    idx = pd.DatetimeIndex([o.period for o in observations], name="period")
    return pd.Series([float(o.count) for o in observations], index=idx, dtype=float)


__all__ = ["format_observations", "aggregate_monthly", "to_series"]
