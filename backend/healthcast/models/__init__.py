from .locality import Locality
from .case_count import CaseCount
from .stored_forecast import StoredForecast, StoredForecastPoint, SYSTEM_WIDE


__all__ = ["Locality", "CaseCount", "StoredForecast", "StoredForecastPoint", "SYSTEM_WIDE"]
