"""Background job scheduler for orderflow (daily subscription sweep, cart cleanup)."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, List, Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.schedulers.asyncio import AsyncIOScheduler

if TYPE_CHECKING:
    from orderflow.controller import OrderProgressController
    from orderflow.subscriptions import SubscriptionLifecycleManager

logger = logging.getLogger("orderflow.scheduler")

JobCallable = Callable[[], Awaitable[object] | object]

CHECK_SUBSCRIPTIONS_JOB = "check_subscriptions"
CLEAN_STALE_CARTS_JOB = "clean_stale_carts"


class OrderflowScheduler:
    """Cron-style background jobs on the running asyncio loop."""

    def __init__(self, timezone: str = "UTC"):
        self._timezone = timezone
        self._started = False
        self._job_ids: List[str] = []
        self._scheduler = AsyncIOScheduler(
            executors={"default": AsyncIOExecutor()},
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 60 * 5,
            },
            timezone=timezone,
        )

    def add_cron_job(
        self,
        func: JobCallable,
        job_id: str,
        *,
        hour: int = 0,
        minute: int = 0,
        day_of_week: str = "*",
        **kwargs: Any,
    ) -> None:
        """Register a cron-style job."""
        self._scheduler.add_job(
            func,
            "cron",
            id=job_id,
            hour=hour,
            minute=minute,
            day_of_week=day_of_week,
            replace_existing=True,
            **kwargs,
        )
        if job_id not in self._job_ids:
            self._job_ids.append(job_id)
        logger.info("Registered cron job: %s", job_id)

    @property
    def job_ids(self) -> List[str]:
        return list(self._job_ids)

    async def start(self) -> None:
        if self._started:
            return
        self._scheduler.start()
        self._started = True
        logger.info("Scheduler started")

    async def shutdown(self, wait: bool = True) -> None:
        if not self._started:
            return
        self._scheduler.shutdown(wait=wait)
        self._started = False
        logger.info("Scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._started and bool(self._scheduler.running)


def register_default_jobs(
    scheduler: OrderflowScheduler,
    subscriptions: "SubscriptionLifecycleManager",
    controller: Optional["OrderProgressController"] = None,
    hour: int = 3,
) -> None:
    """Daily subscription sweep and, when a controller is given, stale cart cleanup."""

    async def check_subscriptions() -> None:
        summary = await subscriptions.check_subscriptions()
        if summary.errors:
            logger.warning("Subscription check finished with %d errors", len(summary.errors))

    scheduler.add_cron_job(check_subscriptions, CHECK_SUBSCRIPTIONS_JOB, hour=hour)

    if controller is not None:
        async def clean_stale_carts() -> None:
            removed = await controller.clean_stale_carts()
            logger.info("Removed %d stale cart orders", len(removed))

        scheduler.add_cron_job(clean_stale_carts, CLEAN_STALE_CARTS_JOB, hour=hour, minute=30)
