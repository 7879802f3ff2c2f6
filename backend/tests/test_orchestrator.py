from __future__ import annotations

import threading
from datetime import date

import pytest
from sqlalchemy.orm import sessionmaker

import healthcast.db.session as db_session
from healthcast.config import Settings
from healthcast.errors import PersistenceError
from healthcast.models import StoredForecast, StoredForecastPoint
from healthcast.schemas.forecast import AccuracyReport, Entity, Result, Severity
from healthcast.services.forecast import NaiveTrendEngine, SeasonalForecastEngine
from healthcast.services.orchestrator import ForecastOrchestrator, summarize
from healthcast.services.store import SqlForecastStore, SqlHistorySource
from _helpers import rows, seed_counts, weekly_pattern


class CountingEngine(NaiveTrendEngine):
    def __init__(self, settings):
        super().__init__(settings)
        self.calls = 0
        self._calls_lock = threading.Lock()

    def forecast(self, series, horizon, label=""):
        with self._calls_lock:
            self.calls += 1
        return super().forecast(series, horizon, label)


class DictHistory:
    """History source backed by a dict of name -> raw rows."""

    def __init__(self, data, populations=None):
        self.data = data
        self.populations = populations or {}

    def fetch(self, entity):
        return self.data.get(entity.name, [])

    def population(self, locality):
        return self.populations.get(locality)


class FailingStore(SqlForecastStore):
    def __init__(self, session_factory, failing_names):
        super().__init__(session_factory)
        self.failing_names = set(failing_names)

    def replace(self, entity, record, fresh_within=None):
        if entity.name in self.failing_names:
            raise PersistenceError("disk full")
        return super().replace(entity, record, fresh_within)


class BlindCacheStore(SqlForecastStore):
    """Never reports a cached forecast, like a reader racing another process."""

    def latest(self, entity):
        return None


class SleepRecorder:
    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)


def _service(name, **kw):
    return Entity(kind="service", name=name, **kw)


@pytest.fixture
def engine(settings):
    return CountingEngine(settings)


def _orchestrator(session_factory, history, engine, settings, clock, sleep=None, store=None):
    return ForecastOrchestrator(
        history,
        store or SqlForecastStore(session_factory),
        engine=engine,
        settings=settings,
        clock=clock,
        sleep=sleep or SleepRecorder(),
    )


def test_fresh_forecast_is_generated_and_stored(session_factory, engine, settings, clock, db):
    history = DictHistory({"clinic": rows(range(1, 21))})
    orch = _orchestrator(session_factory, history, engine, settings, clock)

    result = orch.generate(_service("clinic"), horizon=5)

    assert result.success is True
    assert result.cached is False
    assert result.cache_age_hours is None
    assert result.predictions_count == 5
    assert result.data_points_count == 20
    assert result.data_quality == "high"
    assert result.accuracy is not None
    assert result.trend == "increasing"
    # one forecast plus one backtest fit
    assert engine.calls == 2
    assert db.query(StoredForecast).count() == 1
    assert db.query(StoredForecastPoint).count() == 5


def test_second_request_within_ttl_is_served_from_cache(session_factory, engine, settings, clock):
    history = DictHistory({"clinic": rows(range(1, 21))})
    orch = _orchestrator(session_factory, history, engine, settings, clock)
    first = orch.generate(_service("clinic"), horizon=5)
    calls_after_first = engine.calls

    clock.advance(hours=3)
    second = orch.generate(_service("clinic"), horizon=5)

    assert second.success is True
    assert second.cached is True
    assert second.cache_age_hours == pytest.approx(3.0)
    assert engine.calls == calls_after_first
    assert [p.predicted for p in second.points] == [p.predicted for p in first.points]


def test_cached_record_ignores_requested_horizon(session_factory, engine, settings, clock):
    history = DictHistory({"clinic": rows(range(1, 21))})
    orch = _orchestrator(session_factory, history, engine, settings, clock)
    orch.generate(_service("clinic"), horizon=5)

    again = orch.generate(_service("clinic"), horizon=12)

    assert again.cached is True
    assert again.predictions_count == 5


def test_expired_cache_regenerates_and_replaces(session_factory, engine, settings, clock, db):
    history = DictHistory({"clinic": rows(range(1, 21))})
    store = SqlForecastStore(session_factory)
    orch = _orchestrator(session_factory, history, engine, settings, clock, store=store)
    orch.generate(_service("clinic"), horizon=5)
    calls_after_first = engine.calls

    clock.advance(hours=25)
    result = orch.generate(_service("clinic"), horizon=8)

    assert result.cached is False
    assert result.predictions_count == 8
    assert engine.calls > calls_after_first
    assert db.query(StoredForecast).count() == 1
    assert db.query(StoredForecastPoint).count() == 8
    assert store.latest(_service("clinic")).version == 2


def test_short_history_is_reported_not_forecast(session_factory, engine, settings, clock):
    history = DictHistory({"clinic": rows([3, 4, 5, 6, 7])})
    orch = _orchestrator(session_factory, history, engine, settings, clock)

    result = orch.generate(_service("clinic"), horizon=5)

    assert result.success is False
    assert result.data_quality == "insufficient"
    assert result.data_points_count == 5
    assert result.points == []
    assert "Minimum 7 required" in result.error
    assert engine.calls == 0


def test_medium_quality_between_min_and_high_thresholds(session_factory, engine, settings, clock):
    history = DictHistory({"clinic": rows(range(1, 11))})
    result = _orchestrator(session_factory, history, engine, settings, clock).generate(_service("clinic"), 3)
    assert result.data_quality == "medium"


def test_one_bad_entity_does_not_abort_batch(session_factory, engine, settings, clock):
    history = DictHistory(
        {
            "a": rows(range(1, 21)),
            "b": [{"date": "not-a-date", "count": 1}],
            "c": rows(range(5, 25)),
        }
    )
    orch = _orchestrator(session_factory, history, engine, settings, clock)

    summary = orch.generate_batch([_service("a"), _service("b"), _service("c")], horizon=4)

    assert len(summary) == 3
    assert [r.success for r in summary.results] == [True, False, True]
    assert "MalformedInputError" in summary.results[1].error
    assert summary.succeeded == 2
    assert summary.failed == 1
    assert summary.total_points == 8


def test_store_failure_is_isolated(session_factory, engine, settings, clock):
    history = DictHistory({"a": rows(range(1, 21)), "b": rows(range(1, 21))})
    store = FailingStore(session_factory, failing_names={"a"})
    orch = _orchestrator(session_factory, history, engine, settings, clock, store=store)

    summary = orch.generate_batch([_service("a"), _service("b")], horizon=3)

    assert summary.results[0].success is False
    assert "PersistenceError" in summary.results[0].error
    assert summary.results[1].success is True


def test_pacing_between_engine_runs_only(session_factory, engine, clock):
    settings = Settings(ENV="test", FORECAST_PACING_SECONDS=5.0)
    history = DictHistory(
        {
            "a": rows(range(1, 21)),
            "short": rows([1, 2]),
            "b": rows(range(1, 21)),
            "c": rows(range(1, 21)),
        }
    )
    sleep = SleepRecorder()
    orch = _orchestrator(session_factory, history, engine, settings, clock, sleep=sleep)
    entities = [_service("a"), _service("short"), _service("b"), _service("c")]

    orch.generate_batch(entities, horizon=3)
    assert sleep.calls == [5.0, 5.0]

    # everything is now cached: no further delays
    orch.generate_batch(entities, horizon=3)
    assert sleep.calls == [5.0, 5.0]


def test_pacing_pause_runs_without_holding_entity_lock(session_factory, engine, clock):
    settings = Settings(ENV="test", FORECAST_PACING_SECONDS=5.0)
    history = DictHistory({"a": rows(range(1, 21)), "b": rows(range(1, 21)), "c": rows(range(1, 21))})
    store = SqlForecastStore(session_factory)
    entities = [_service("a"), _service("b"), _service("c")]
    held_during_pause = []

    def sleep(seconds):
        held_during_pause.append(any(store.lock_for(e).locked() for e in entities))

    orch = _orchestrator(session_factory, history, engine, settings, clock, sleep=sleep, store=store)
    summary = orch.generate_batch(entities, horizon=3)

    assert summary.succeeded == 3
    assert held_during_pause == [False, False]


def test_forecast_refreshed_during_pause_is_served_from_cache(session_factory, engine, clock, settings):
    paced = Settings(ENV="test", FORECAST_PACING_SECONDS=5.0)
    history = DictHistory({"a": rows(range(1, 21)), "b": rows(range(1, 21))})
    other_engine = CountingEngine(settings)
    other = _orchestrator(session_factory, history, other_engine, settings, clock)

    def sleep(seconds):
        other.generate(_service("b"), horizon=3)

    orch = _orchestrator(session_factory, history, engine, paced, clock, sleep=sleep)
    summary = orch.generate_batch([_service("a"), _service("b")], horizon=3)

    assert [r.success for r in summary.results] == [True, True]
    assert summary.results[1].cached is True
    assert engine.calls == 2
    assert other_engine.calls == 2


def test_freshly_stored_forecast_from_another_writer_is_kept(session_factory, engine, settings, clock, db):
    history = DictHistory({"clinic": rows(range(1, 21))})
    first = _orchestrator(session_factory, history, engine, settings, clock).generate(_service("clinic"), 5)

    clock.advance(hours=2)
    blind = _orchestrator(session_factory, history, engine, settings, clock, store=BlindCacheStore(session_factory))
    result = blind.generate(_service("clinic"), horizon=9)

    assert result.success is True
    assert result.cached is True
    assert result.cache_age_hours == pytest.approx(2.0)
    assert result.predictions_count == first.predictions_count == 5
    row = db.query(StoredForecast).one()
    assert row.version == 1
    assert db.query(StoredForecastPoint).count() == 5


def test_two_stores_racing_on_one_entity_generate_once(tmp_path, settings, clock):
    db_engine = db_session._build_engine(f"sqlite:///{tmp_path / 'race.db'}")
    db_session.init_db(db_engine)
    factory = sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False, future=True)
    history = DictHistory({"clinic": rows(range(1, 21))})
    engine = CountingEngine(settings)
    start = threading.Barrier(2)
    results = []

    def run():
        # each worker owns its own store over the shared database
        orch = _orchestrator(factory, history, engine, settings, clock)
        start.wait()
        results.append(orch.generate(_service("clinic"), horizon=5))

    try:
        workers = [threading.Thread(target=run) for _ in range(2)]
        for w in workers:
            w.start()
        for w in workers:
            w.join(timeout=30)

        assert len(results) == 2
        assert all(r.success for r in results)
        assert sorted(r.cached for r in results) == [False, True]
        # one forecast plus one backtest fit, once
        assert engine.calls == 2
        with factory() as session:
            stored = session.query(StoredForecast).all()
            assert [r.version for r in stored] == [1]
    finally:
        db_engine.dispose()


def test_non_positive_horizon_fails_each_entity_without_raising(session_factory, engine, settings, clock):
    history = DictHistory({"a": rows(range(1, 21)), "b": rows(range(1, 21))})
    orch = _orchestrator(session_factory, history, engine, settings, clock)

    summary = orch.generate_batch([_service("a"), _service("b")], horizon=-1)

    assert summary.failed == 2
    assert summary.succeeded == 0
    assert all("horizon must be >= 1" in r.error for r in summary.results)
    assert engine.calls == 0


def test_reliability_backtests_over_rolling_origins(session_factory, engine, settings, clock):
    history = DictHistory({"clinic": rows(range(1, 41))})
    orch = _orchestrator(session_factory, history, engine, settings, clock)

    report = orch.reliability(_service("clinic"), folds=3, horizon=4)

    assert len(report.folds) == 3
    assert engine.calls == 3
    assert report.avg_mape == pytest.approx(0.0, abs=1e-6)
    assert report.score == 100


def test_reliability_without_enough_history_scores_zero(session_factory, engine, settings, clock):
    orch = _orchestrator(session_factory, DictHistory({"clinic": rows([1, 2, 3])}), engine, settings, clock)

    report = orch.reliability(_service("clinic"), folds=3, horizon=4)

    assert report.folds == []
    assert report.score == 0


def test_projected_severity_uses_locality_population(session_factory, db, engine, settings, clock):
    seed_counts(db, "disease", "dengue", [80] * 20, locality="Poblacion", population=100)
    history = SqlHistorySource(session_factory)
    orch = _orchestrator(session_factory, history, engine, settings, clock)

    result = orch.generate(Entity(kind="disease", name="dengue", locality="Poblacion"), horizon=3)

    assert result.success is True
    assert result.projected_severity == Severity.CRITICAL


def test_prepare_series_monthly_granularity(session_factory, engine, settings, clock):
    orch = _orchestrator(session_factory, DictHistory({}), engine, settings, clock)
    raw = [
        {"date": "2025-01-03", "count": 2},
        {"date": "2025-01-28", "count": 1},
        {"date": "2025-03-10", "count": 4},
    ]

    disease = orch.prepare_series(Entity(kind="disease", name="measles", granularity="monthly"), raw)
    service = orch.prepare_series(Entity(kind="service", name="clinic", granularity="monthly"), raw)

    assert [(o.period, o.count) for o in disease] == [(date(2025, 1, 1), 3), (date(2025, 3, 1), 4)]
    assert [o.count for o in service] == [3, 0, 4]


def test_end_to_end_with_seasonal_engine(session_factory, db, settings, clock):
    seed_counts(db, "service", "prenatal", weekly_pattern(6))
    history = SqlHistorySource(session_factory)
    orch = ForecastOrchestrator(
        history,
        SqlForecastStore(session_factory),
        engine=SeasonalForecastEngine(settings),
        settings=settings,
        clock=clock,
        sleep=SleepRecorder(),
    )

    summary = orch.generate_batch(history.entities(), horizon=14)

    assert summary.succeeded == 1
    result = summary.results[0]
    assert result.predictions_count == 14
    assert result.data_points_count == 42
    assert result.data_quality in ("high", "low")
    assert result.accuracy is not None
    assert all(p.predicted >= 0 and p.lower_bound <= p.predicted <= p.upper_bound for p in result.points)


def _result(success, r2=None):
    accuracy = None
    if r2 is not None:
        accuracy = AccuracyReport(
            mse=1.0, rmse=1.0, mae=1.0, mape=1.0, r_squared=r2, r_squared_raw=r2, interpretation="Good"
        )
    return Result(entity=_service("x"), success=success, accuracy=accuracy)


def test_summarize_averages_r_squared_over_successes():
    summary = summarize([_result(True, 0.8), _result(True, 0.6), _result(False), _result(True)])

    assert summary.succeeded == 3
    assert summary.failed == 1
    assert summary.average_r_squared == pytest.approx(0.7)


def test_summarize_without_scores():
    assert summarize([_result(False)]).average_r_squared is None
