"""
Scheduler Service for the Listing Harvest Pipeline

Daemon loop that runs the recurring jobs at their configured frequencies:

- transactions: incremental government feed (recent months)
- resolve: name cascade for newly discovered or still unresolved complexes
- collect: quick count-check collection
- score: bargain scoring once listings have settled

A job is due when its last completed (or partial) run in the ledger is
older than its frequency. Jobs run one at a time in the order above.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from supabase import Client

from harvest_config import CollectMode, CollectorConfig, RunKind, get_config
from .collection_orchestrator import CollectionOrchestrator
from .db_utils import parse_timestamp

logger = logging.getLogger(__name__)


@dataclass
class ScheduledJob:
    """One recurring job"""
    kind: str
    frequency_hours: float
    run: Callable[[], Awaitable[Any]]


@dataclass
class JobOutcome:
    kind: str
    success: bool
    error: Optional[str] = None


class SchedulerService:
    """
    Runs due jobs through the collection orchestrator.
    """

    def __init__(
        self,
        supabase_client: Client,
        config: Optional[CollectorConfig] = None,
        orchestrator: Optional[CollectionOrchestrator] = None
    ):
        self.supabase = supabase_client
        self.config = config or get_config()
        self.orchestrator = orchestrator or CollectionOrchestrator(supabase_client, self.config)
        self._lock = asyncio.Lock()

    def jobs(self) -> List[ScheduledJob]:
        schedule = self.config.schedule
        o = self.orchestrator
        return [
            ScheduledJob(RunKind.TRANSACTIONS.value, schedule.transactions_hours,
                         lambda: o.run_transactions(incremental=True)),
            ScheduledJob(RunKind.RESOLVE.value, schedule.resolve_hours,
                         lambda: o.run_resolve(strategy='names')),
            ScheduledJob(RunKind.COLLECT.value, schedule.quick_collect_hours,
                         lambda: o.run_collect(CollectMode.QUICK.value)),
            ScheduledJob(RunKind.SCORE.value, schedule.score_hours,
                         lambda: o.run_score()),
        ]

    async def is_due(self, job: ScheduledJob, now: Optional[datetime] = None) -> bool:
        """
        Check if a job should run based on its last finished run.

        Args:
            job: Job to check
            now: Reference time

        Returns:
            True if the job has never finished or its frequency has elapsed
        """
        last_run = await self.orchestrator.ledger.get_last_run(job.kind)
        if not last_run:
            logger.info(f"{job.kind} has never completed, due now")
            return True

        started = parse_timestamp(last_run.get('started_at'))
        if started is None:
            return True
        now = now or datetime.now(timezone.utc)
        hours = (now - started).total_seconds() / 3600
        if hours >= job.frequency_hours:
            logger.info(f"{job.kind} is due: {hours:.1f}h since last run (every {job.frequency_hours}h)")
            return True
        logger.debug(f"{job.kind} not due: {hours:.1f}h since last run (every {job.frequency_hours}h)")
        return False

    async def run_due_jobs(self, now: Optional[datetime] = None) -> List[JobOutcome]:
        """Run every due job in order; a failing job does not stop the others"""
        outcomes = []
        async with self._lock:
            for job in self.jobs():
                if not await self.is_due(job, now):
                    continue
                try:
                    await job.run()
                    outcomes.append(JobOutcome(job.kind, True))
                except Exception as e:
                    logger.error(f"Error running scheduled {job.kind}: {e}")
                    outcomes.append(JobOutcome(job.kind, False, str(e)))
        return outcomes

    async def status(self) -> Dict[str, Optional[Dict]]:
        """Last finished run per job kind"""
        return {job.kind: await self.orchestrator.ledger.get_last_run(job.kind) for job in self.jobs()}

    async def run_continuous(self, check_interval_seconds: Optional[int] = None,
                             max_iterations: Optional[int] = None) -> None:
        """
        Check for due jobs forever (or max_iterations times).

        Args:
            check_interval_seconds: Seconds between checks (config default)
            max_iterations: Stop after this many checks
        """
        interval = check_interval_seconds or self.config.schedule.check_interval_seconds
        logger.info(f"Starting scheduler (check interval: {interval}s)")

        iteration = 0
        while max_iterations is None or iteration < max_iterations:
            try:
                for outcome in await self.run_due_jobs():
                    logger.info(f"Scheduled {outcome.kind}: {'ok' if outcome.success else 'failed'}")
            except asyncio.CancelledError:
                logger.info("Scheduler cancelled, shutting down")
                break
            iteration += 1
            if max_iterations is None or iteration < max_iterations:
                await asyncio.sleep(interval)

        logger.info("Scheduler stopped")
