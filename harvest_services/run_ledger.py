"""
Run Ledger for the Harvest Pipeline

Every invocation is recorded in collection_runs:

1. Created as 'running' once the kind-scoped lock is held
2. Progress counters written every N units
3. Finished as 'completed', or 'partial' when too many units were skipped
   or errored
4. Marked 'failed' with an error summary on a fatal error (never left
   'running')
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from supabase import Client

from harvest_config import CollectorConfig, get_config
from .state_store import RunLock

logger = logging.getLogger(__name__)

RUN_COUNTERS = (
    'complexes_scanned', 'articles_found', 'articles_new', 'articles_updated',
    'articles_removed', 'price_changes', 'bargains_detected', 'skipped', 'errors',
)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class CollectionRun:
    """In-memory view of a collection_runs row"""
    run_type: str
    id: Optional[int] = None
    status: str = 'running'
    total_targets: int = 0
    processed: int = 0
    complexes_scanned: int = 0
    articles_found: int = 0
    articles_new: int = 0
    articles_updated: int = 0
    articles_removed: int = 0
    price_changes: int = 0
    bargains_detected: int = 0
    skipped: int = 0
    errors: int = 0
    notes: Optional[str] = None
    error_summary: Optional[str] = None
    started_at: str = field(default_factory=utc_now)
    finished_at: Optional[str] = None
    error_messages: List[str] = field(default_factory=list)

    def add(self, **counts: int) -> None:
        """Add to the named counters"""
        for name, value in counts.items():
            if name not in RUN_COUNTERS:
                raise KeyError(f"Unknown run counter: {name}")
            setattr(self, name, getattr(self, name) + (value or 0))

    def counters(self) -> Dict[str, int]:
        return {name: getattr(self, name) for name in RUN_COUNTERS}

    def to_row(self) -> Dict[str, Any]:
        row = asdict(self)
        row.pop('id')
        row.pop('error_messages')
        return row


class RunLedger:
    """
    Reads and writes run records.

    Store errors while writing progress are logged and swallowed so a ledger
    hiccup never aborts a harvest; creating the run row is the exception.
    """

    def __init__(self, supabase_client: Client, config: Optional[CollectorConfig] = None):
        self.supabase = supabase_client
        self.config = config or get_config()

    async def start(self, run_type: str, total_targets: int = 0, notes: Optional[str] = None) -> CollectionRun:
        run = CollectionRun(run_type=run_type, total_targets=total_targets, notes=notes)
        response = self.supabase.table('collection_runs').insert(run.to_row()).execute()
        if response.data:
            run.id = response.data[0].get('id')
        logger.info(f"Started {run_type} run {run.id}")
        return run

    async def progress(self, run: CollectionRun, force: bool = False) -> None:
        """Write counters when processed hits the progress cadence"""
        every = self.config.reconcile.progress_every
        if not force and (every <= 0 or run.processed % every != 0):
            return
        await self._write(run, {
            'processed': run.processed,
            'total_targets': run.total_targets,
            **run.counters(),
        })

    def final_status(self, run: CollectionRun) -> str:
        if run.total_targets <= 0:
            return 'completed'
        degraded = (run.errors + run.skipped) / run.total_targets
        return 'partial' if degraded > self.config.reconcile.partial_error_ratio else 'completed'

    async def finish(self, run: CollectionRun) -> CollectionRun:
        run.status = self.final_status(run)
        run.finished_at = utc_now()
        if run.error_messages and not run.error_summary:
            run.error_summary = '; '.join(run.error_messages[:5])
        await self._write(run, {
            'status': run.status,
            'finished_at': run.finished_at,
            'processed': run.processed,
            'total_targets': run.total_targets,
            'notes': run.notes,
            'error_summary': run.error_summary,
            **run.counters(),
        })
        logger.info(f"Run {run.id} ({run.run_type}) finished: {run.status}")
        return run

    async def fail(self, run: CollectionRun, error: BaseException) -> CollectionRun:
        run.status = 'failed'
        run.finished_at = utc_now()
        run.error_summary = f"{type(error).__name__}: {error}"
        await self._write(run, {
            'status': run.status,
            'finished_at': run.finished_at,
            'processed': run.processed,
            'error_summary': run.error_summary,
            **run.counters(),
        })
        logger.error(f"Run {run.id} ({run.run_type}) failed: {run.error_summary}")
        return run

    async def _write(self, run: CollectionRun, data: Dict[str, Any]) -> None:
        if run.id is None:
            return
        try:
            self.supabase.table('collection_runs').update(data).eq('id', run.id).execute()
        except Exception as e:
            logger.error(f"Error updating run {run.id}: {e}")

    async def get_last_run(self, run_type: str, statuses=('completed', 'partial')) -> Optional[Dict]:
        """Most recent finished run of a kind"""
        try:
            response = self.supabase.table('collection_runs').select('*').eq(
                'run_type', run_type
            ).in_('status', list(statuses)).order('started_at', desc=True).limit(1).execute()
            return response.data[0] if response.data else None
        except Exception as e:
            logger.error(f"Error getting last {run_type} run: {e}")
            return None

    async def history(self, run_type: Optional[str] = None, limit: int = 20) -> List[Dict]:
        try:
            query = self.supabase.table('collection_runs').select('*')
            if run_type:
                query = query.eq('run_type', run_type)
            response = query.order('started_at', desc=True).limit(limit).execute()
            return response.data or []
        except Exception as e:
            logger.error(f"Error getting run history: {e}")
            return []


@asynccontextmanager
async def tracked_run(
    ledger: RunLedger,
    run_type: str,
    lock: Optional[RunLock] = None,
    mode: str = '',
    notes: Optional[str] = None
):
    """
    Lock, create the run record, and settle it on exit.

    A clean exit finishes the run as completed/partial; any exception marks
    it failed and propagates. The lock is always released.
    """
    if lock is not None:
        lock.acquire(mode)
    run = None
    try:
        run = await ledger.start(run_type, notes=notes)
        yield run
    except BaseException as e:
        if run is not None:
            await ledger.fail(run, e)
        raise
    else:
        await ledger.finish(run)
    finally:
        if lock is not None:
            lock.release()
