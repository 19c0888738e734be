"""OrchestrationScheduler: APScheduler host for the periodic loops.

Jobs:
- ``_global:follow_ups``         due check-ins, every follow_up_poll_interval_s
- ``_global:completion_check``   OWNED tasks finished in the tracker
- ``{tenant_id}:stale_contexts`` idle-out abandoned conversations, per tenant
- ``escalate:{task_id}``         single-shot claim timeout

Jobs live in the in-memory job store; nothing survives a restart.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from taskowner.config import settings
from taskowner.core.conversation import ConversationContextManager
from taskowner.core.follow_ups import FollowUpScheduler
from taskowner.core.orchestrator import TaskOwnershipOrchestrator
from taskowner.tenants import TenantRegistry

logger = structlog.get_logger()

_MISFIRE_GRACE_TIME_S = 300


class OrchestrationScheduler:
    def __init__(
        self,
        registry: TenantRegistry,
        orchestrator: TaskOwnershipOrchestrator,
        follow_ups: FollowUpScheduler,
        contexts: ConversationContextManager,
        scheduler: AsyncIOScheduler | None = None,
    ) -> None:
        from apscheduler.events import EVENT_JOB_MISSED

        self.scheduler = scheduler or AsyncIOScheduler(
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": _MISFIRE_GRACE_TIME_S,
            }
        )
        self.scheduler.add_listener(self._on_job_missed, EVENT_JOB_MISSED)
        self._registry = registry
        self._orchestrator = orchestrator
        self._follow_ups = follow_ups
        self._contexts = contexts
        self._running = False

    @staticmethod
    def _on_job_missed(event: Any) -> None:
        logger.warning(
            "scheduler_job_missed",
            job_id=event.job_id,
            scheduled_run_time=str(event.scheduled_run_time),
        )

    def register_jobs(self) -> int:
        """Add the interval jobs. Returns the number registered."""
        self.scheduler.add_job(
            self._run_follow_ups,
            trigger=IntervalTrigger(seconds=settings.follow_up_poll_interval_s),
            id="_global:follow_ups",
            name="Due follow-up sweep",
            replace_existing=True,
        )
        self.scheduler.add_job(
            self._run_completion_check,
            trigger=IntervalTrigger(seconds=settings.completion_check_interval_s),
            id="_global:completion_check",
            name="Tracker completion check",
            replace_existing=True,
        )
        total = 2
        for runtime in self._registry.all():
            self.schedule_tenant(str(runtime.id))
            total += 1
        return total

    def schedule_tenant(self, tenant_id: str) -> None:
        self.scheduler.add_job(
            self._run_stale_sweep,
            trigger=IntervalTrigger(seconds=settings.stale_context_sweep_interval_s),
            args=[tenant_id],
            id=f"{tenant_id}:stale_contexts",
            name=f"Stale conversation sweep ({tenant_id})",
            replace_existing=True,
        )

    async def start(self) -> None:
        total = self.register_jobs()
        self.scheduler.start()
        self._running = True
        logger.info("orchestration_scheduler_started", total_jobs=total)

    async def stop(self) -> None:
        if self._running:
            self.scheduler.shutdown(wait=False)
            self._running = False
            logger.info("orchestration_scheduler_stopped")

    def schedule_once(self, job_id: str, run_at: datetime, func: Callable[..., Any], *args: Any) -> None:
        """Single-shot job; re-arming the same id replaces the earlier one."""
        self.scheduler.add_job(
            func,
            trigger=DateTrigger(run_date=run_at),
            args=list(args),
            id=job_id,
            name=job_id,
            replace_existing=True,
        )

    def list_jobs(self) -> list[dict[str, Any]]:
        jobs = []
        for job in self.scheduler.get_jobs():
            # Jobs added before start() have no next_run_time yet
            next_run = getattr(job, "next_run_time", None)
            jobs.append({
                "id": job.id,
                "name": job.name,
                "next_run": next_run.isoformat() if next_run else None,
            })
        return jobs

    async def _run_follow_ups(self) -> None:
        try:
            handled = await self._follow_ups.process_due_follow_ups()
            if handled:
                logger.info("follow_up_sweep_complete", handled=handled)
        except Exception as e:
            logger.error("follow_up_sweep_failed", error=str(e))

    async def _run_completion_check(self) -> None:
        try:
            await self._orchestrator.check_completed_tasks()
        except Exception as e:
            logger.error("completion_check_failed", error=str(e))

    async def _run_stale_sweep(self, tenant_id: str) -> None:
        try:
            await self._contexts.expire_stale_contexts(tenant_id)
        except Exception as e:
            logger.error("stale_context_sweep_failed", tenant_id=tenant_id, error=str(e))
