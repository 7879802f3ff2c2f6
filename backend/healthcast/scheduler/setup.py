from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.schedulers.base import BaseScheduler
from apscheduler.schedulers.blocking import BlockingScheduler
from pytz import timezone

from healthcast.config import Settings, get_settings
from healthcast.db.session import DATABASE_URL
from healthcast.scheduler.jobs import regenerate_forecasts


def build_scheduler(settings: Settings | None = None, scheduler_cls=BlockingScheduler) -> BaseScheduler:
    settings = settings or get_settings()
    return scheduler_cls(
        jobstores={
            "default": SQLAlchemyJobStore(
                url=(settings.SCHEDULER_DB_URL or settings.DATABASE_URL or DATABASE_URL)
            )
        },
        timezone=timezone(settings.SCHEDULER_TZ),
    )


def configure_jobs(scheduler: BaseScheduler, settings: Settings | None = None) -> None:
    """
    Register all recurring jobs with the scheduler.

    - nightly-forecasts: regenerate forecasts for every entity with history
    """
    settings = settings or get_settings()
    scheduler.add_job(
        regenerate_forecasts,
        "cron",
        id="nightly-forecasts",
        hour=settings.SCHEDULER_HOUR,
        minute=settings.SCHEDULER_MINUTE,
        replace_existing=True,
        misfire_grace_time=3600,
        coalesce=True,
        max_instances=1,
    )


def run_scheduler(settings: Settings | None = None) -> None:
    """Block and run the scheduler if SCHEDULER_ENABLED is true."""
    settings = settings or get_settings()
    if not settings.SCHEDULER_ENABLED:
        return
    scheduler = build_scheduler(settings)
    configure_jobs(scheduler, settings)
    scheduler.start()
