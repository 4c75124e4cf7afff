"""
APScheduler-based interval scheduler for the session memory retention sweep.

This module wraps APScheduler to run the usage-weighted memory sweep over every
session at a fixed interval (`memory.sweep_interval_minutes` in config.json).
The asyncio scheduler variant is used so it shares FastAPI's event loop; the
sweep itself is synchronous and is handed to the scheduler's default thread
pool executor. The retention rule lives in services.session_memory; this module
only covers scheduling and lifecycle wiring aligned with app startup and
shutdown.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import CONFIG
from services.session_memory import SessionMemoryStore


def run_sweep_job(memory_store: SessionMemoryStore, logger: logging.Logger) -> int:
    """
    Execute one sweep over all sessions and log a one-line summary.

    A failing sweep is logged with its traceback and reported as zero removals so
    the scheduler keeps triggering future runs.
    """
    max_age_days = CONFIG.get('memory', {}).get('max_age_days', 7)
    try:
        removed = memory_store.sweep_all(timedelta(days=max_age_days))
    except Exception as exc:
        logger.warning("memory_sweep failed: %s", exc, exc_info=True)
        return 0
    logger.info(
        "memory_sweep summary: sessions=%s removed=%s base_max_age_days=%s",
        len(memory_store.session_ids()),
        removed,
        max_age_days,
    )
    return removed


def start_memory_scheduler(app, memory_store: SessionMemoryStore) -> AsyncIOScheduler:
    """
    Start the memory sweep scheduler and store it on the app state.

    The scheduler instance is attached to `app.state.memory_scheduler` for later shutdown.
    """
    interval_minutes = CONFIG.get('memory', {}).get('sweep_interval_minutes', 60)
    scheduler = AsyncIOScheduler()
    logger = logging.getLogger(__name__)
    scheduler.add_job(
        run_sweep_job,
        trigger=IntervalTrigger(minutes=interval_minutes),
        args=[memory_store, logger],
        id="memory_sweep",
        coalesce=True,
        max_instances=1,
    )
    scheduler.start()
    setattr(app.state, "memory_scheduler", scheduler)
    logger.info("memory_sweep scheduled every %s minute(s)", interval_minutes)
    return scheduler


def shutdown_memory_scheduler(app) -> None:
    """Stop the memory sweep scheduler if it was started."""
    scheduler = getattr(app.state, "memory_scheduler", None)
    if scheduler is None:
        return
    if scheduler.running:
        scheduler.shutdown(wait=False)
    app.state.memory_scheduler = None
