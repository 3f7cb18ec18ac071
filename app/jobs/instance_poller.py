"""
Instance State Poller

Periodically asks the messaging gateway for the state of instances that
are still waiting to connect and reconciles the answers. Scheduled with
APScheduler; `run_once` can also be called directly.
"""

from datetime import datetime
from typing import Callable, Optional
import logging

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.core.database import AsyncSessionLocal
from app.services.errors import NotFoundError
from app.services.gateway_client import MessagingGateway
from app.services.instance_service import InstanceService, ReconcileOutcome


logger = logging.getLogger(__name__)

POLLER_JOB_ID = "instance_state_poller"


class InstanceStatePoller:
    """
    Reconciles `created` / `connecting` instances against the gateway.

    Instances the gateway cannot report on are flagged stale and keep their
    local state; they are never moved to `disconnected` by the poller.
    """

    def __init__(
        self,
        gateway: MessagingGateway,
        session_factory=AsyncSessionLocal,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        """
        Args:
            gateway: Messaging gateway capability
            session_factory: Callable returning an async session context manager
            clock: Returns the current naive UTC time
        """
        self.gateway = gateway
        self.session_factory = session_factory
        self.clock = clock
        self._last_run: Optional[datetime] = None
        self._last_summary: Optional[dict] = None
        self._run_count = 0
        self._error_count = 0

    async def run_once(self) -> dict:
        """
        Execute a single polling pass.

        Returns:
            Summary with the number of instances checked per outcome
        """
        start_time = self.clock()
        summary = {outcome.value: 0 for outcome in ReconcileOutcome}
        summary.update({"checked": 0, "errors": 0})

        async with self.session_factory() as db:
            service = InstanceService(db, self.gateway, clock=self.clock)
            instance_ids = await service.list_pollable_instance_ids()

            for instance_id in instance_ids:
                try:
                    outcome = await service.refresh_state(instance_id)
                except NotFoundError:
                    # Deleted since the pass started
                    continue
                except Exception as e:
                    summary["errors"] += 1
                    self._error_count += 1
                    logger.error(f"Polling instance {instance_id} failed: {e}")
                    await db.rollback()
                    continue

                summary["checked"] += 1
                summary[outcome.value] += 1

        summary["started_at"] = start_time.isoformat()
        summary["duration_seconds"] = (self.clock() - start_time).total_seconds()

        self._last_run = self.clock()
        self._last_summary = summary
        self._run_count += 1

        if instance_ids:
            logger.info(
                f"Instance poll completed: checked={summary['checked']}, "
                f"applied={summary['applied']}, stale={summary['stale']}, errors={summary['errors']}"
            )
        return summary

    def get_status(self) -> dict:
        return {
            "last_run": self._last_run.isoformat() if self._last_run else None,
            "run_count": self._run_count,
            "error_count": self._error_count,
            "last_summary": self._last_summary,
        }


def setup_poller_scheduler(poller: InstanceStatePoller, interval_seconds: int) -> AsyncIOScheduler:
    """
    Build an AsyncIOScheduler running `poller.run_once` every `interval_seconds`.

    The caller starts and shuts down the scheduler (see the app lifespan).
    """
    scheduler = AsyncIOScheduler(
        jobstores={"default": MemoryJobStore()},
        executors={"default": AsyncIOExecutor()},
        job_defaults={
            "coalesce": True,  # Combine missed ticks into one
            "max_instances": 1,  # Never overlap passes
            "misfire_grace_time": interval_seconds,
        },
        timezone="UTC",
    )

    scheduler.add_job(
        poller.run_once,
        trigger=IntervalTrigger(seconds=interval_seconds),
        id=POLLER_JOB_ID,
        name="Instance State Poller",
        replace_existing=True,
    )
    logger.info(f"Scheduled instance state poller every {interval_seconds}s")
    return scheduler


def get_scheduler_status(scheduler: Optional[AsyncIOScheduler], poller: Optional[InstanceStatePoller]) -> dict:
    """Status of the poller job for the health endpoint."""
    if scheduler is None:
        return {"status": "not_initialized", "jobs": []}

    jobs = []
    for job in scheduler.get_jobs():
        # Pending jobs have no next_run_time until the scheduler starts
        next_run = getattr(job, "next_run_time", None)
        jobs.append({
            "id": job.id,
            "name": job.name,
            "next_run": next_run.isoformat() if next_run else None,
            "trigger": str(job.trigger),
        })

    status = {
        "status": "running" if scheduler.running else "stopped",
        "jobs": jobs,
    }
    if poller is not None:
        status["poller"] = poller.get_status()
    return status
