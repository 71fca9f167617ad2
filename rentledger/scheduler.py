# rentledger/scheduler.py
from __future__ import annotations

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger
from flask import Flask

from rentledger.services.overdue import sweep_overdue_bills


def _sweep_job(app: Flask) -> None:
    with app.app_context():
        sweep_overdue_bills()


def build_scheduler(app: Flask) -> BlockingScheduler:
    """One interval job: the overdue sweep. Overlapping runs are coalesced."""
    minutes = max(1, int(app.config.get("OVERDUE_SWEEP_INTERVAL_MINUTES", 60)))
    scheduler = BlockingScheduler(timezone="UTC")
    scheduler.add_job(
        _sweep_job,
        trigger=IntervalTrigger(minutes=minutes),
        args=[app],
        id="overdue_sweep",
        name="overdue_sweep",
        coalesce=True,
        max_instances=1,
        misfire_grace_time=600,
        replace_existing=True,
    )
    return scheduler
