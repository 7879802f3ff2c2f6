from __future__ import annotations

import argparse
import json
import sys
from typing import List, Optional

from healthcast.config import get_settings
from healthcast.db.session import get_sessionmaker, init_db
from healthcast.observability.logging import configure_logging
from healthcast.schemas.forecast import Entity
from healthcast.services.orchestrator import ForecastOrchestrator
from healthcast.services.store import SqlForecastStore, SqlHistorySource


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="healthcast", description="Disease and service demand forecasting")
    sub = parser.add_subparsers(dest="command", required=True)

    gen = sub.add_parser("generate", help="Generate forecasts for one entity or every entity with history")
    gen.add_argument("--kind", choices=["disease", "service"], default=None)
    gen.add_argument("--name", default=None, help="Disease type or service name (e.g., dengue)")
    gen.add_argument("--locality", default=None, help="Restrict history to one locality")
    gen.add_argument(
        "--granularity",
        choices=["daily", "monthly"],
        default=None,
        help="Defaults to monthly for diseases, daily for services",
    )
    gen.add_argument("--horizon", type=int, default=None, help="Periods to forecast")
    gen.add_argument("--no-pacing", action="store_true", help="Skip the delay between entities")

    rel = sub.add_parser("reliability", help="Rolling-origin backtest of one entity's forecasts")
    rel.add_argument("--kind", choices=["disease", "service"], default="disease")
    rel.add_argument("--name", required=True, help="Disease type or service name")
    rel.add_argument("--locality", default=None, help="Restrict history to one locality")
    rel.add_argument("--granularity", choices=["daily", "monthly"], default=None)
    rel.add_argument("--folds", type=int, default=5, help="Number of rolling origins")
    rel.add_argument("--horizon", type=int, default=7, help="Periods per fold")

    sub.add_parser("scheduler", help="Run the nightly regeneration scheduler (blocking)")
    return parser


def _entities(args: argparse.Namespace, history: SqlHistorySource) -> List[Entity]:
    if args.name:
        kind = args.kind or "disease"
        granularity = args.granularity or ("monthly" if kind == "disease" else "daily")
        return [Entity(kind=kind, name=args.name, locality=args.locality, granularity=granularity)]
    entities = history.entities()
    if args.kind:
        entities = [e for e in entities if e.kind == args.kind]
    return entities


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL)

    if args.command == "scheduler":
        from healthcast.scheduler.setup import run_scheduler  # pylint: disable=import-outside-toplevel

        init_db()
        run_scheduler(settings)
        return 0

    init_db()
    factory = get_sessionmaker()
    history = SqlHistorySource(factory)
    if args.command == "reliability":
        entity = _entities(args, history)[0]
        report = ForecastOrchestrator(history, SqlForecastStore(factory), settings=settings).reliability(
            entity, folds=args.folds, horizon=args.horizon
        )
        payload = {"entity": entity.model_dump(mode="json"), **report.model_dump(mode="json")}
        json.dump(payload, sys.stdout, indent=2)
        sys.stdout.write("\n")
        return 0

    if args.no_pacing:
        settings = settings.model_copy(update={"FORECAST_PACING_SECONDS": 0.0})
    orchestrator = ForecastOrchestrator(history, SqlForecastStore(factory), settings=settings)
    summary = orchestrator.generate_batch(_entities(args, history), args.horizon)
    json.dump(summary.model_dump(mode="json"), sys.stdout, indent=2)
    sys.stdout.write("\n")
    return 0 if summary.failed == 0 else 1
