"""
APScheduler setup for workflow timing.

Two kinds of jobs:
- A once-a-minute tick that starts `schedule`-triggered workflows whose cron is due
- One-shot resumption jobs for runs suspended at long delays, kept in a
  SQLAlchemy job store so they survive restarts
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED
from apscheduler.jobstores.base import JobLookupError
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from ..core.config import settings
from ..core.logging_config import get_logger
from ..schemas.execution import RunContinuation

logger = get_logger("scheduler")

TICK_JOB_ID = "workflow_schedule_tick"
RESUME_JOBSTORE = "resumptions"


async def schedule_tick():
    """Fire every schedule-triggered workflow due in the current minute"""
    from .dispatcher import get_dispatcher

    await get_dispatcher().dispatch_schedule_tick(datetime.now(timezone.utc))


async def resume_suspended_run(continuation: Dict[str, Any]):
    """Job target for a suspended run; takes the continuation as a plain dict so it pickles cleanly"""
    from .dispatcher import get_dispatcher

    await get_dispatcher().resume(RunContinuation.model_validate(continuation))


def job_listener(event):
    if event.exception:
        logger.error(f"Job {event.job_id} failed with exception: {event.exception}", job_id=event.job_id)
    elif event.job_id != TICK_JOB_ID:
        logger.info(f"Job {event.job_id} executed successfully", job_id=event.job_id)


class WorkflowScheduler:
    """Wraps an AsyncIOScheduler; must be started from inside the running event loop"""

    def __init__(self, database_url: Optional[str] = None, scheduler: Optional[AsyncIOScheduler] = None):
        if scheduler is None:
            scheduler = AsyncIOScheduler(
                timezone="UTC",
                jobstores={
                    "default": MemoryJobStore(),
                    RESUME_JOBSTORE: SQLAlchemyJobStore(
                        url=database_url or settings.DATABASE_URL,
                        tablename="workflow_scheduled_jobs"
                    ),
                },
                job_defaults={
                    "coalesce": True,
                    "max_instances": 1,
                    "misfire_grace_time": 30
                }
            )
        self.scheduler = scheduler
        self.scheduler.add_listener(job_listener, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR)

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def start(self):
        if self.scheduler.running:
            logger.warning("Workflow scheduler already running")
            return

        self.scheduler.add_job(
            func=schedule_tick,
            trigger=CronTrigger(second=0, timezone="UTC"),
            id=TICK_JOB_ID,
            name="Start due schedule-triggered workflows",
            replace_existing=True
        )
        self.scheduler.start()
        logger.info(f"Workflow scheduler started with {len(self.scheduler.get_jobs())} job(s)")

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Workflow scheduler stopped")

    def schedule_resume(self, continuation: RunContinuation) -> str:
        """Queue a suspended run to resume at its continuation's resume_at"""
        job_id = f"resume:{continuation.run_id}"
        self.scheduler.add_job(
            func=resume_suspended_run,
            trigger=DateTrigger(run_date=continuation.resume_at),
            args=[continuation.model_dump(mode="json")],
            id=job_id,
            name=f"Resume run {continuation.run_id}",
            jobstore=RESUME_JOBSTORE,
            replace_existing=True,
            misfire_grace_time=None  # no limit
        )
        logger.info(
            f"Run {continuation.run_id} suspended until {continuation.resume_at.isoformat()}",
            resume_node_id=continuation.resume_node_id
        )
        return job_id

    def expedite_resume(self, run_id: str) -> bool:
        """Move a pending resumption to now, e.g. so an aborted run finishes promptly"""
        try:
            self.scheduler.reschedule_job(
                f"resume:{run_id}",
                jobstore=RESUME_JOBSTORE,
                trigger=DateTrigger(run_date=datetime.now(timezone.utc))
            )
            return True
        except JobLookupError:
            return False
