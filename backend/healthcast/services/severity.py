"""Population-normalized risk classification for case counts.

With a known population the label comes from the attack ratio
``count / population * 100``:

    ratio >= 70        critical
    50 <= ratio < 70   severe
    ratio < 50         moderate

Without a usable population (catch-all zones, missing census data) the
absolute count is banded instead:

    count >= 50        critical
    20 <= count < 50   severe
    5 <= count < 20    moderate
    count < 5          mild
"""
from __future__ import annotations

from typing import Iterable, List, Optional, Tuple

from healthcast.errors import MalformedInputError
from healthcast.schemas.forecast import Observation, Severity

CRITICAL_RATIO = 70.0
SEVERE_RATIO = 50.0

# (minimum count, label), checked top-down
ABSOLUTE_BANDS: Tuple[Tuple[int, Severity], ...] = (
    (50, Severity.CRITICAL),
    (20, Severity.SEVERE),
    (5, Severity.MODERATE),
    (0, Severity.MILD),
)


def severity_percentage(count: int, population: Optional[int]) -> Optional[float]:
    if population is None or population <= 0 or count < 0:
        return None
    return (count / population) * 100.0


def classify(count: int, population: Optional[int]) -> Severity:
    if count < 0:
        raise MalformedInputError(f"count must be non-negative, got {count}")

    ratio = severity_percentage(count, population)
    if ratio is None:
        for floor, label in ABSOLUTE_BANDS:
            if count >= floor:
                return label
        return Severity.MILD  # pragma: no cover - bands end at zero

    if ratio >= CRITICAL_RATIO:
        return Severity.CRITICAL
    if ratio >= SEVERE_RATIO:
        return Severity.SEVERE
    return Severity.MODERATE


def tag_observations(
    observations: Iterable[Observation], population: Optional[int]
) -> List[Tuple[Observation, Severity]]:
    return [(obs, classify(obs.count, population)) for obs in observations]


__all__ = ["classify", "severity_percentage", "tag_observations", "ABSOLUTE_BANDS"]
