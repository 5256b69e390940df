"""Recurring triggers for the line monitor."""

import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger


logger = structlog.get_logger(__name__)


class JobScheduler:
    """Manages recurring jobs using APScheduler."""

    def __init__(self, scheduler: Optional[AsyncIOScheduler] = None):
        self.scheduler = scheduler or AsyncIOScheduler(timezone=timezone.utc)
        self.jobs: Dict[str, Dict[str, Any]] = {}
        self.running = False

    async def start(self):
        """Start the job scheduler."""
        if self.running:
            logger.warning("Scheduler already running")
            return

        self.scheduler.start()
        self.running = True
        logger.info("Job scheduler started")

    async def stop(self):
        """Stop the job scheduler."""
        if not self.running:
            return

        self.scheduler.shutdown(wait=False)
        self.running = False
        logger.info("Job scheduler stopped")

    def register_recurring(
        self,
        job_key: str,
        seconds: int,
        func: Callable,
        args: Optional[tuple] = None,
        kwargs: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
    ) -> bool:
        """
        Register an interval job under ``job_key`` unless one already exists.

        Returns True when a job was added, False when the key was already taken.
        """
        if job_key in self.jobs or self.scheduler.get_job(job_key) is not None:
            logger.debug("Recurring job already registered", job_id=job_key)
            return False

        job = self.scheduler.add_job(
            func=func,
            trigger=IntervalTrigger(seconds=seconds),
            id=job_key,
            args=args or (),
            kwargs=kwargs or {},
            name=description or job_key,
            max_instances=1,
            coalesce=True,
            replace_existing=False,
        )

        self.jobs[job_key] = {
            "job": job,
            "type": "interval",
            "seconds": seconds,
            "description": description,
            "added_at": datetime.now(timezone.utc),
        }

        logger.info("Added recurring job", job_id=job_key, interval_seconds=seconds, description=description)
        return True

    def remove_job(self, job_id: str) -> bool:
        """Remove a recurring job."""
        if job_id not in self.jobs:
            logger.warning("Job not found", job_id=job_id)
            return False

        self.scheduler.remove_job(job_id)
        del self.jobs[job_id]
        logger.info("Removed job", job_id=job_id)
        return True

    def get_job_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Get status information for a job."""
        if job_id not in self.jobs:
            return None

        job_info = self.jobs[job_id]
        scheduler_job = self.scheduler.get_job(job_id)
        if scheduler_job is None:
            return None

        # Jobs added before start() have no next_run_time yet.
        next_run = getattr(scheduler_job, "next_run_time", None)
        return {
            "job_id": job_id,
            "name": scheduler_job.name,
            "type": job_info["type"],
            "interval_seconds": job_info["seconds"],
            "next_run": next_run.isoformat() if next_run else None,
            "added_at": job_info["added_at"].isoformat(),
            "description": job_info.get("description"),
        }

    def list_jobs(self) -> List[Dict[str, Any]]:
        """List all recurring jobs."""
        job_statuses = []
        for job_id in self.jobs:
            status = self.get_job_status(job_id)
            if status:
                job_statuses.append(status)
        return job_statuses

    def get_scheduler_status(self) -> Dict[str, Any]:
        """Get overall scheduler status."""
        next_runs = [
            getattr(job, "next_run_time", None) for job in self.scheduler.get_jobs()
        ]
        next_run = min((t for t in next_runs if t), default=None)
        return {
            "running": self.running,
            "job_count": len(self.jobs),
            "next_run": next_run.isoformat() if next_run else None,
        }

    async def run_job_once(self, job_id: str) -> bool:
        """Run a recurring job's function immediately."""
        if job_id not in self.jobs:
            logger.warning("Job not found", job_id=job_id)
            return False

        scheduler_job = self.scheduler.get_job(job_id)
        if scheduler_job is None:
            logger.error("Scheduler job not found", job_id=job_id)
            return False

        if asyncio.iscoroutinefunction(scheduler_job.func):
            await scheduler_job.func(*scheduler_job.args, **scheduler_job.kwargs)
        else:
            scheduler_job.func(*scheduler_job.args, **scheduler_job.kwargs)
        logger.info("Executed job manually", job_id=job_id)
        return True
