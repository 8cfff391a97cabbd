"""
Periodic background jobs of the engine
"""

import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from reservation_engine.core.config import settings

logger = logging.getLogger(__name__)


class SchedulerService:
    def __init__(self):
        self.scheduler = AsyncIOScheduler()
        self._jobs_registered = False

    def register_jobs(self):
        if self._jobs_registered:
            logger.warning("Jobs already registered")
            return

        from reservation_engine.jobs.cache_gc_job import cache_gc_job

        if settings.enable_cache_gc and settings.cache_gc_interval_seconds > 0:
            self.scheduler.add_job(
                cache_gc_job,
                IntervalTrigger(seconds=settings.cache_gc_interval_seconds),
                id="cache_gc",
                name="Evict unobserved cache entries",
                replace_existing=True,
            )
            logger.info(
                f"Registered cache gc job (every {settings.cache_gc_interval_seconds} seconds)"
            )
        else:
            logger.info("Cache gc disabled in settings")

        self._jobs_registered = True

    def start(self):
        """Must be called from inside a running event loop"""
        if not self.scheduler.running:
            self.register_jobs()
            self.scheduler.start()
            logger.info("Scheduler started")
        else:
            logger.warning("Scheduler already running")

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

    def get_jobs(self):
        return self.scheduler.get_jobs()

    def reload(self):
        """Re-register jobs after a settings change"""
        self.scheduler.remove_all_jobs()
        self._jobs_registered = False
        self.register_jobs()
        logger.info("Scheduler jobs reloaded")


scheduler_service = SchedulerService()
