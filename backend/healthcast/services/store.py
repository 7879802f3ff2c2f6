from __future__ import annotations

import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Protocol, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from healthcast.db.session import session_scope
from healthcast.errors import PersistenceError
from healthcast.models import CaseCount, Locality, StoredForecast, StoredForecastPoint, SYSTEM_WIDE
from healthcast.schemas.forecast import (
    AccuracyReport,
    Entity,
    EntityKey,
    ForecastPoint,
    ForecastRecord,
)
from healthcast.services.validation import interpret_r_squared

logger = structlog.get_logger(__name__)

SessionFactory = Callable[[], Session]

_LOCKS: Dict[Tuple[str, EntityKey], threading.Lock] = {}
_LOCKS_GUARD = threading.Lock()


def _bind_key(session_factory: SessionFactory) -> str:
    """Identify the database behind a session factory without connecting to it."""
    with session_factory() as session:
        bind = session.get_bind()
    url = getattr(bind, "url", None)
    return str(url) if url is not None else f"bind-{id(bind)}"


class HistorySource(Protocol):
    def fetch(self, entity: Entity) -> List[Mapping[str, Any]]: ...

    def population(self, locality: Optional[str]) -> Optional[int]: ...


class ForecastStore(Protocol):
    def latest(self, entity: Entity) -> Optional[ForecastRecord]: ...

    def replace(
        self, entity: Entity, record: ForecastRecord, fresh_within: Optional[timedelta] = None
    ) -> ForecastRecord: ...

    def entity_lock(self, entity: Entity): ...


def _as_utc(dt: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class SqlHistorySource:
    """Reads historical counts from ``case_counts`` (optionally filtered by locality)."""

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    def fetch(self, entity: Entity) -> List[Dict[str, Any]]:
        stmt = (
            select(CaseCount.record_date, CaseCount.count)
            .where(CaseCount.kind == entity.kind, CaseCount.name == entity.name)
            .order_by(CaseCount.record_date.asc())
        )
        if entity.locality is not None:
            stmt = stmt.join(Locality, Locality.id == CaseCount.locality_id).where(
                Locality.name == entity.locality
            )
        try:
            with self._session_factory() as session:
                rows = session.execute(stmt).all()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to load history for {entity.label}: {exc}") from exc
        return [{"date": r.record_date, "count": r.count} for r in rows]

    def population(self, locality: Optional[str]) -> Optional[int]:
        if locality is None:
            return None
        try:
            with self._session_factory() as session:
                return session.execute(
                    select(Locality.population).where(Locality.name == locality)
                ).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to load population for {locality}: {exc}") from exc

    def entities(self) -> List[Entity]:
        """Every (kind, name) with history, system-wide. Diseases forecast monthly."""
        try:
            with self._session_factory() as session:
                pairs = session.execute(
                    select(CaseCount.kind, CaseCount.name).distinct().order_by(CaseCount.kind, CaseCount.name)
                ).all()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to list entities: {exc}") from exc
        return [
            Entity(kind=kind, name=name, granularity="monthly" if kind == "disease" else "daily")
            for kind, name in pairs
        ]


class SqlForecastStore:
    """
    Holds at most one live forecast per entity key.

    ``replace`` is an upsert: the existing row is updated in place (its version
    bumped, its points swapped) inside a single transaction, so readers never
    see an entity without a forecast.

    ``entity_lock`` serializes the freshness-check/generate/replace sequence for
    one key. Locks live in a process-wide registry keyed by the database the
    session factory is bound to, so every store over the same database shares
    them. Writers in other processes are caught by the ``fresh_within``
    re-check that ``replace`` performs inside its own transaction.
    """

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory
        self._bind_key = _bind_key(session_factory)

    def lock_for(self, entity: Entity) -> threading.Lock:
        with _LOCKS_GUARD:
            return _LOCKS.setdefault((self._bind_key, entity.key), threading.Lock())

    @contextmanager
    def entity_lock(self, entity: Entity) -> Iterator[None]:
        with self.lock_for(entity):
            yield

    @staticmethod
    def _lookup(entity: Entity):
        return select(StoredForecast).where(
            StoredForecast.kind == entity.kind,
            StoredForecast.name == entity.name,
            StoredForecast.locality == (entity.locality or SYSTEM_WIDE),
        )

    def _find(self, session: Session, entity: Entity) -> Optional[StoredForecast]:
        return session.execute(self._lookup(entity).with_for_update()).scalars().first()

    def latest(self, entity: Entity) -> Optional[ForecastRecord]:
        try:
            with self._session_factory() as session:
                row = session.execute(self._lookup(entity)).scalars().first()
                return _to_record(entity, row) if row is not None else None
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to read forecast for {entity.label}: {exc}") from exc

    def replace(
        self,
        entity: Entity,
        record: ForecastRecord,
        fresh_within: Optional[timedelta] = None,
    ) -> ForecastRecord:
        """
        Store ``record`` as the entity's live forecast and return what is stored.

        With ``fresh_within`` set, a stored forecast generated less than that
        long before ``record`` is kept and returned unchanged. Callers detect
        this by comparing ``generated_at``.
        """
        for attempt in (1, 2):
            try:
                stored, written = self._replace_once(entity, record, fresh_within)
                break
            except IntegrityError as exc:
                # lost the first-insert race to another writer; its row now exists
                if attempt == 2:
                    raise PersistenceError(f"failed to store forecast for {entity.label}: {exc}") from exc
                logger.warning("store.insert_conflict", entity=entity.label)
            except SQLAlchemyError as exc:
                raise PersistenceError(f"failed to store forecast for {entity.label}: {exc}") from exc
        if written:
            logger.info("store.replaced", entity=entity.label, version=stored.version, points=len(stored.points))
        else:
            logger.info(
                "store.kept_fresh",
                entity=entity.label,
                version=stored.version,
                generated_at=stored.generated_at.isoformat(),
            )
        return stored

    def _replace_once(
        self, entity: Entity, record: ForecastRecord, fresh_within: Optional[timedelta]
    ) -> Tuple[ForecastRecord, bool]:
        with session_scope(self._session_factory) as session:
            row = self._find(session, entity)
            if row is None:
                row = StoredForecast(
                    kind=entity.kind,
                    name=entity.name,
                    locality=entity.locality or SYSTEM_WIDE,
                    version=1,
                )
                session.add(row)
            else:
                if fresh_within is not None and (
                    _as_utc(record.generated_at) - _as_utc(row.generated_at) < fresh_within
                ):
                    return _to_record(entity, row), False
                row.version = (row.version or 0) + 1
                row.points.clear()
            _apply(row, record)
            session.flush()
            return _to_record(entity, row), True


def _apply(row: StoredForecast, record: ForecastRecord) -> None:
    row.model_version = record.model_version
    row.trend = record.trend
    row.seasonality_detected = record.seasonality_detected
    row.data_quality = record.data_quality
    row.data_points_count = record.data_points_count
    row.generated_at = _as_utc(record.generated_at)
    acc = record.accuracy
    row.mse = acc.mse if acc else None
    row.rmse = acc.rmse if acc else None
    row.mae = acc.mae if acc else None
    row.mape = acc.mape if acc else None
    row.r_squared = acc.r_squared if acc else None
    row.r_squared_raw = acc.r_squared_raw if acc else None
    for p in record.points:
        row.points.append(
            StoredForecastPoint(
                period=p.period,
                predicted=p.predicted,
                lower_bound=p.lower_bound,
                upper_bound=p.upper_bound,
                confidence_level=p.confidence_level,
            )
        )


def _to_record(entity: Entity, row: StoredForecast) -> ForecastRecord:
    accuracy = None
    if row.r_squared is not None:
        accuracy = AccuracyReport(
            mse=row.mse or 0.0,
            rmse=row.rmse or 0.0,
            mae=row.mae or 0.0,
            mape=row.mape or 0.0,
            r_squared=row.r_squared,
            r_squared_raw=row.r_squared if row.r_squared_raw is None else row.r_squared_raw,
            interpretation=interpret_r_squared(row.r_squared),
        )
    points = sorted(row.points, key=lambda p: p.period)
    return ForecastRecord(
        entity_key=entity.key,
        points=[ForecastPoint.model_validate(p) for p in points],
        model_version=row.model_version,
        trend=row.trend,
        seasonality_detected=bool(row.seasonality_detected),
        data_quality=row.data_quality,
        data_points_count=row.data_points_count,
        generated_at=_as_utc(row.generated_at),
        accuracy=accuracy,
        version=row.version,
    )


__all__ = ["HistorySource", "ForecastStore", "SqlHistorySource", "SqlForecastStore"]
