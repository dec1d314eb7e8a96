"""Scheduler implementation for the smart routing service.

This module provides a scheduler service that owns the APScheduler instance
running background jobs such as the routing match-count flush.
"""

import logging
from typing import Any, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from app.core.config import settings

logger = logging.getLogger(__name__)


class SchedulerService:
    """
    Scheduler service for managing background tasks.

    Jobs are registered by their owners (for example
    ``MatchCountBatcher.start``) against ``scheduler`` once it is running.
    The default in-memory job store is used: jobs are bound methods of
    live objects and are re-registered at every startup.
    """

    def __init__(self):
        """Initialize the scheduler service."""
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.is_running = False

    def initialize(self) -> None:
        """
        Initialize the scheduler.

        This sets up APScheduler with the configured job defaults,
        but does not start it yet.
        """
        if self.scheduler:
            logger.warning("Scheduler already initialized")
            return

        try:
            # Let AsyncIOScheduler use its default executor suitable for asyncio
            self.scheduler = AsyncIOScheduler(
                job_defaults={
                    'coalesce': settings.SCHEDULER_JOB_COALESCE,
                    'max_instances': settings.SCHEDULER_JOB_MAX_INSTANCES,
                    'misfire_grace_time': settings.SCHEDULER_MISFIRE_GRACE_TIME
                },
                timezone='UTC'
            )
            logger.info("Scheduler initialized successfully with default executor")
        except Exception as e:
            logger.error(f"Error initializing scheduler: {e}", exc_info=True)
            self.scheduler = None
            raise

    def start(self) -> AsyncIOScheduler:
        """
        Start the scheduler.

        Must be called from within the running event loop.

        Returns:
            The running AsyncIOScheduler, for job registration
        """
        if not self.scheduler:
            self.initialize()

        if self.is_running:
            logger.warning("Scheduler already running")
            return self.scheduler

        try:
            self.scheduler.start()
            self.is_running = True
            logger.info("Scheduler started")
        except Exception as e:
            logger.error(f"Error starting scheduler: {e}", exc_info=True)
            self.is_running = False
            raise
        return self.scheduler

    def shutdown(self) -> None:
        """
        Shutdown the scheduler gracefully.

        This stops the scheduler and all running jobs.
        """
        if not self.scheduler or not self.is_running:
            logger.warning("Scheduler not running, nothing to shut down")
            return

        try:
            self.scheduler.shutdown(wait=False)
            self.is_running = False
            self.scheduler = None
            logger.info("Scheduler shut down successfully")
        except Exception as e:
            logger.error(f"Error shutting down scheduler: {e}", exc_info=True)
            raise

    def get_status(self) -> Dict[str, Any]:
        """
        Get the current status of the scheduler.

        Returns:
            Dict with information about the scheduler status and jobs
        """
        job_details: List[Dict[str, Any]] = []
        if self.scheduler and self.is_running:
            for job in self.scheduler.get_jobs():
                job_details.append({
                    'job_id': job.id,
                    'name': job.name,
                    'next_run_time': job.next_run_time.isoformat() if job.next_run_time else None
                })

        return {
            'running': self.is_running,
            'jobs': job_details
        }


# Create global instance of the scheduler service
scheduler_service = SchedulerService()
