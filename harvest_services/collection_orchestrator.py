"""
Collection Orchestrator for the Listing Harvest Pipeline

Runs every pipeline job through the run ledger:

- collect: full | incremental | quick | single | poll complex scans
- discover: region hierarchy walk and complex upsert
- transactions: government sale feed ingestion
- resolve: name cascade or transaction fingerprint resolution
- score: composite bargain scoring

Every job except a single-complex collect holds its kind's run lock. Jobs
over an ordered work list save a checkpoint after each unit, honour
--resume, and clear the checkpoint once the whole list is done.
"""

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Optional, Union

from supabase import Client

from harvest_config import CollectMode, CollectorConfig, RunKind, get_config
from .bargain_scoring_service import BargainScoringService, ScoringResult
from .browser_session import BrowserSession
from .db_utils import fetch_all_rows
from .discovery_service import DiscoveryResult, DiscoveryService
from .entity_resolver_service import EntityResolverService, ResolveResult, load_resolution_targets
from .errors import CollectorSetupError, TargetNotFoundError
from .fingerprint_matcher import FingerprintMatcher, FingerprintResult
from .harvester import OUTCOME_EXHAUSTED, OUTCOME_SKIPPED, BatchHarvester, Harvester
from .land_sources import FinLandClient, ListingSource, MobileLandClient
from .listing_models import ListingQuery
from .reconciliation_service import (
    MODE_DIFF,
    MODE_FULL,
    QuickCheckResult,
    ReconcileCounts,
    ReconciliationService,
)
from .run_ledger import CollectionRun, RunLedger, tracked_run
from .state_store import CellCache, CheckpointStore, FileStateStore, RunLock, StateStore
from .tile_poll_service import PollResult, TilePollService
from .transaction_feed_service import (
    TaskOutcome,
    TransactionFeedResult,
    TransactionFeedService,
    build_tasks,
    month_list,
)

logger = logging.getLogger(__name__)

COMPLEX_COLUMNS = 'id, hscp_no, complex_name, sgg_cd, deal_count, last_collected_at'


@dataclass
class CollectResult:
    """Result of a collect run"""
    mode: str
    targets: int = 0
    processed: int = 0
    skipped: int = 0
    exhausted: int = 0
    errors: int = 0
    counts: ReconcileCounts = field(default_factory=ReconcileCounts)
    quick: Optional[QuickCheckResult] = None
    poll: Optional[PollResult] = None
    run_id: Optional[int] = None
    status: Optional[str] = None
    duration_seconds: float = 0.0
    limiter_summary: str = ''


class CollectionOrchestrator:
    """
    Entry point for every pipeline job.

    Args:
        supabase_client: Supabase client
        config: Collector configuration
        state_store: Key-value store for locks, checkpoints and the cell cache
        source: Listing source for complex scans (built from collect_source by default)
        session: Browser session shared by the browser source and fingerprinting
    """

    def __init__(
        self,
        supabase_client: Client,
        config: Optional[CollectorConfig] = None,
        state_store: Optional[StateStore] = None,
        source: Optional[ListingSource] = None,
        session: Optional[BrowserSession] = None
    ):
        self.supabase = supabase_client
        self.config = config or get_config()
        self.store = state_store or FileStateStore(self.config.state_path)
        self.ledger = RunLedger(supabase_client, self.config)
        self.checkpoints = CheckpointStore(self.store)
        self.reconciler = ReconciliationService(supabase_client, self.config)
        self._source = source
        self._session = session
        self._owns_session = session is None

    # ------------------------------------------------------------------
    # Shared plumbing
    # ------------------------------------------------------------------

    @property
    def session(self) -> BrowserSession:
        if self._session is None:
            self._session = BrowserSession(self.config.browser)
        return self._session

    @property
    def source(self) -> ListingSource:
        if self._source is None:
            name = self.config.collect_source
            settings = self.config.get_source(name)
            if name == 'fin_land':
                self._source = FinLandClient(self.session, settings, self.config.bargain_keywords)
            else:
                self._source = MobileLandClient(settings, self.config.bargain_keywords, self.config.user_agents)
        return self._source

    def fin_source(self) -> FinLandClient:
        if isinstance(self._source, FinLandClient):
            return self._source
        return FinLandClient(self.session, self.config.get_source('fin_land'), self.config.bargain_keywords)

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()

    def _lock(self, kind: str) -> RunLock:
        return RunLock(self.store, kind, self.config.state.lock_stale_seconds)

    @asynccontextmanager
    async def _tracked(self, kind: str, mode: str = '', use_lock: bool = True,
                       dry_run: bool = False, notes: Optional[str] = None):
        """tracked_run, except dry runs hold the lock but leave no run record"""
        lock = self._lock(kind) if use_lock else None
        if not dry_run:
            async with tracked_run(self.ledger, kind, lock, mode, notes) as run:
                yield run
            return

        if lock is not None:
            lock.acquire(mode)
        try:
            yield CollectionRun(run_type=kind, notes=notes)
        finally:
            if lock is not None:
                lock.release()

    @staticmethod
    def _banner(title: str) -> None:
        logger.info("=" * 60)
        logger.info(title)
        logger.info("=" * 60)

    # ------------------------------------------------------------------
    # Collect
    # ------------------------------------------------------------------

    async def load_complexes(self, hscp_no: Optional[str] = None) -> List[Dict]:
        """Active complexes ordered by hscp_no"""
        def build():
            query = self.supabase.table('complexes').select(COMPLEX_COLUMNS).eq('is_active', True)
            if hscp_no:
                query = query.eq('hscp_no', str(hscp_no))
            return query.order('hscp_no')
        return fetch_all_rows(build)

    async def _declared_count(self, hscp_no: str) -> int:
        source = self.source
        if hasattr(source, 'count_articles'):
            return await source.count_articles(hscp_no)
        page = await source.fetch_page(ListingQuery.for_complex(hscp_no, sort=source.default_sort), 1)
        return page.total_count or 0

    async def quick_check(self, complexes: List[Dict], harvester: Harvester) -> QuickCheckResult:
        """Count-check every complex and return the ones to rescan"""
        settings = harvester.settings
        batcher = BatchHarvester(harvester.limiter, settings.batch_size, settings.round_pause)
        keys = [str(c['hscp_no']) for c in complexes]
        outcome = await batcher.run(keys, self._declared_count)
        declared = {key: -1 for key in keys}
        declared.update({key: int(value) for key, value in outcome.results.items()})
        result = self.reconciler.select_for_rescan(complexes, declared)
        logger.info(f"Quick check: {result.checked} checked, {result.mismatched} count changes, "
                    f"{result.stale} stale, {result.errors} errors")
        return result

    async def _scan(
        self,
        run: CollectionRun,
        result: CollectResult,
        harvester: Harvester,
        targets: List[Dict],
        reconcile_mode: str,
        checkpoint_kind: Optional[str] = None
    ) -> None:
        source = harvester.source
        page_size = harvester.settings.page_size
        log_every = self.config.reconcile.log_every

        for index, complex_row in enumerate(targets, 1):
            hscp_no = str(complex_row['hscp_no'])
            query = ListingQuery.for_complex(hscp_no, sort=source.default_sort, page_size=page_size)
            unit_errors = 0
            try:
                harvest = await harvester.harvest(query)
                counts = await self.reconciler.reconcile(complex_row, harvest, reconcile_mode)
                result.counts.merge(counts)
                unit_errors = harvest.errors + counts.errors
                if harvest.outcome == OUTCOME_SKIPPED:
                    result.skipped += 1
                    run.add(skipped=1)
                elif harvest.outcome == OUTCOME_EXHAUSTED:
                    result.exhausted += 1
                    run.add(skipped=1)
                run.add(
                    complexes_scanned=1,
                    articles_found=counts.found,
                    articles_new=counts.new,
                    articles_updated=counts.updated,
                    articles_removed=counts.removed,
                    price_changes=counts.price_changed,
                    bargains_detected=counts.bargains_detected,
                )
            except CollectorSetupError:
                raise
            except Exception as e:
                unit_errors += 1
                logger.error(f"Error collecting complex {hscp_no}: {e}")
                run.error_messages.append(f"{hscp_no}: {e}")

            if unit_errors:
                result.errors += 1
                run.add(errors=1)
            result.processed += 1
            run.processed += 1
            if checkpoint_kind:
                self.checkpoints.save(checkpoint_kind, hscp_no)
            await self.ledger.progress(run)
            if log_every and index % log_every == 0:
                c = result.counts
                logger.info(f"[{index}/{len(targets)}] {c.new} new, {c.updated} updated, {c.removed} removed, "
                            f"{result.skipped} skipped, {result.errors} errors")

    async def run_collect(
        self,
        mode: str,
        resume: bool = False,
        limit: Optional[int] = None,
        hscp_no: Optional[str] = None,
        region: Optional[str] = None,
        refresh_cells: bool = False
    ) -> CollectResult:
        """
        Run a collect job.

        Args:
            mode: full | incremental | quick | single | poll
            resume: Continue after the mode's checkpoint (full / incremental)
            limit: Maximum number of complexes
            hscp_no: Target complex for single mode
            region: Region filter for poll mode
            refresh_cells: Rebuild the active-cell cache in poll mode

        Returns:
            CollectResult

        Raises:
            TargetNotFoundError: single mode named an unknown complex
            RunLockHeldError: another collect run is active
        """
        mode = CollectMode(mode).value
        self._banner(f"Starting {mode} collection")
        start_time = time.time()
        result = CollectResult(mode=mode)
        single = mode == CollectMode.SINGLE.value

        if single and not hscp_no:
            raise TargetNotFoundError("single mode needs a complex id (--hscp)")

        checkpoint_kind = None
        if mode in (CollectMode.FULL.value, CollectMode.INCREMENTAL.value):
            checkpoint_kind = f"{RunKind.COLLECT.value}-{mode}"

        settings = self.config.get_source(self.config.collect_source)
        try:
            async with self._tracked(RunKind.COLLECT.value, mode, use_lock=not single) as run:
                result.run_id = run.id
                harvester = Harvester(self.source, settings=settings)
                reconcile_mode = MODE_FULL if mode == CollectMode.FULL.value else MODE_DIFF

                if single:
                    targets = await self.load_complexes(hscp_no)
                    if not targets:
                        raise TargetNotFoundError(f"Unknown or inactive complex: {hscp_no}")
                elif mode == CollectMode.POLL.value:
                    poller = TilePollService(
                        self.supabase, self.config,
                        cell_cache=CellCache(self.store, self.config.tiles.cell_cache_key)
                    )
                    result.poll = await poller.run(region, refresh_cells)
                    targets = result.poll.promoted
                else:
                    targets = await self.load_complexes()
                    if checkpoint_kind and resume:
                        last = self.checkpoints.load(checkpoint_kind)
                        if last:
                            targets = [t for t in targets if str(t['hscp_no']) > last]
                            logger.info(f"Resuming after complex {last}: {len(targets)} remaining")
                    if mode == CollectMode.QUICK.value:
                        result.quick = await self.quick_check(targets, harvester)
                        targets = result.quick.promoted

                truncated = bool(limit) and len(targets) > limit
                if limit:
                    targets = targets[:limit]
                result.targets = len(targets)
                run.total_targets = len(targets)
                if result.quick and result.quick.errors:
                    # Failed count checks are units the run could not cover
                    run.total_targets += result.quick.errors
                    run.add(errors=result.quick.errors)
                logger.info(f"{len(targets)} complexes to scan ({reconcile_mode} reconciliation)")

                await self._scan(run, result, harvester, targets, reconcile_mode, checkpoint_kind)
                await self.ledger.progress(run, force=True)
                if checkpoint_kind and not truncated:
                    self.checkpoints.clear(checkpoint_kind)

                c = result.counts
                run.notes = (f"{mode}: {c.new} new, {c.updated} updated, {c.unchanged} unchanged, "
                             f"{c.removed} removed, {result.skipped} skipped, {result.exhausted} exhausted")
                result.limiter_summary = harvester.limiter.summary()
            result.status = run.status
        finally:
            result.duration_seconds = time.time() - start_time
            await self.close()

        logger.info(f"Collection ({mode}) {result.status} in {result.duration_seconds:.1f}s: "
                    f"{result.processed}/{result.targets} complexes, {result.skipped} skipped, "
                    f"{result.errors} errors; {result.limiter_summary}")
        return result

    # ------------------------------------------------------------------
    # Discover
    # ------------------------------------------------------------------

    async def run_discover(self, sido: Optional[str] = None, resume: bool = False,
                           dry_run: bool = False,
                           service: Optional[DiscoveryService] = None) -> DiscoveryResult:
        """Walk the region hierarchy and upsert complexes"""
        self._banner("Starting complex discovery")
        kind = RunKind.DISCOVER.value
        async with self._tracked(kind, 'dry-run' if dry_run else 'discover', dry_run=dry_run) as run:
            resume_after = self.checkpoints.load(kind) if resume else None
            if resume_after:
                logger.info(f"Resuming after sub-district {resume_after}")

            async def on_dong(cortar_no: str) -> None:
                run.processed += 1
                if not dry_run:
                    self.checkpoints.save(kind, cortar_no)
                await self.ledger.progress(run)

            service = service or DiscoveryService(self.supabase, self.config)
            result = await service.run(sido, resume_after, dry_run, on_dong)
            run.total_targets = result.dongs
            run.add(errors=result.errors)
            run.notes = (f"{result.found} complexes, {result.new} new, {result.updated} updated, "
                         f"{result.deactivated} deactivated")
            if not dry_run:
                self.checkpoints.clear(kind)
        return result

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def run_transactions(
        self,
        months: Optional[int] = None,
        incremental: bool = False,
        sgg: Optional[str] = None,
        resume: bool = False,
        today: Optional[date] = None,
        service: Optional[TransactionFeedService] = None
    ) -> TransactionFeedResult:
        """Ingest the government sale feed for (sgg_cd, month) tasks"""
        self._banner("Starting transaction feed collection")
        kind = RunKind.TRANSACTIONS.value
        feed = self.config.transactions
        month_count = feed.incremental_months if incremental else (months or feed.months_back)

        async with self._tracked(kind, 'incremental' if incremental else f"{month_count} months") as run:
            service = service or TransactionFeedService(self.supabase, self.config)
            codes = [sgg] if sgg else await service.load_sgg_codes()
            resume_after = self.checkpoints.load(kind) if resume else None
            tasks = build_tasks(codes, month_list(today or date.today(), month_count), resume_after)
            run.total_targets = len(tasks)
            logger.info(f"{len(tasks)} tasks: {len(codes)} administrative codes x {month_count} months"
                        + (f", resuming after {resume_after}" if resume_after else ''))

            async def on_task(key: str, outcome: TaskOutcome) -> None:
                run.processed += 1
                if outcome.error:
                    run.add(errors=1)
                    run.error_messages.append(f"{key}: {outcome.error}")
                self.checkpoints.save(kind, key)
                await self.ledger.progress(run)

            result = await service.run(tasks, on_task)
            run.notes = (f"{result.inserted} new, {result.duplicates} duplicates, "
                         f"{result.api_calls} API calls"
                         + (", daily limit reached" if result.limit_reached else ''))
            if not result.limit_reached:
                self.checkpoints.clear(kind)
        return result

    # ------------------------------------------------------------------
    # Resolve
    # ------------------------------------------------------------------

    async def run_resolve(
        self,
        strategy: str = 'names',
        dry_run: bool = False,
        resume: bool = False,
        limit: Optional[int] = None,
        hscp_no: Optional[str] = None,
        reset: bool = False
    ) -> Union[ResolveResult, FingerprintResult]:
        """
        Resolve complexes to transaction names.

        Args:
            strategy: 'names' (cascade) or 'fingerprint'
            dry_run: Report matches without writing
            resume: Continue after the strategy's checkpoint
            limit: Maximum number of complexes
            hscp_no: Resolve one complex (no lock)
            reset: Fingerprint only; clear existing resolutions first

        Returns:
            ResolveResult or FingerprintResult
        """
        fingerprint = strategy == 'fingerprint'
        kind = RunKind.FINGERPRINT.value if fingerprint else RunKind.RESOLVE.value
        self._banner(f"Starting {'fingerprint' if fingerprint else 'name'} resolution")

        try:
            async with self._tracked(kind, strategy, use_lock=not hscp_no, dry_run=dry_run) as run:
                if hscp_no:
                    known = await self.load_complexes(hscp_no)
                    if not known:
                        raise TargetNotFoundError(f"Unknown or inactive complex: {hscp_no}")

                matcher = FingerprintMatcher(self.supabase, self.fin_source(), config=self.config) if fingerprint else None
                if matcher is not None and reset and not (resume or hscp_no or dry_run):
                    await matcher.reset()
                    self.checkpoints.clear(kind)

                resume_after = self.checkpoints.load(kind) if resume and not hscp_no else None
                targets = await load_resolution_targets(
                    self.supabase, hscp_no=hscp_no, resume_after=resume_after, limit=None
                )
                truncated = bool(limit) and len(targets) > limit
                if limit:
                    targets = targets[:limit]
                run.total_targets = len(targets)
                logger.info(f"{len(targets)} complexes to resolve"
                            + (f", resuming after {resume_after}" if resume_after else ''))

                async def on_resolved(complex_row: Dict, accepted: Optional[str]) -> None:
                    run.processed += 1
                    if not dry_run and not hscp_no:
                        self.checkpoints.save(kind, str(complex_row['hscp_no']))
                    await self.ledger.progress(run)

                if matcher is not None:
                    result = await matcher.run(targets, dry_run, on_resolved)
                else:
                    resolver = EntityResolverService(self.supabase, self.config)
                    result = await resolver.resolve(targets, dry_run, on_resolved)

                run.add(errors=result.errors)
                run.notes = (f"{strategy}: {result.matched}/{result.targets} matched, "
                             f"{result.unresolved} unresolved, "
                             f"{result.backfilled_transactions} transactions linked")
                if not dry_run and not hscp_no and not truncated:
                    self.checkpoints.clear(kind)
        finally:
            await self.close()
        return result

    # ------------------------------------------------------------------
    # Score
    # ------------------------------------------------------------------

    async def run_score(self, dry_run: bool = False, top_n: int = 20,
                        today: Optional[date] = None) -> ScoringResult:
        """Recompute bargain scores for every active sale listing"""
        self._banner("Starting bargain scoring" + (" (dry run)" if dry_run else ''))
        kind = RunKind.SCORE.value
        async with self._tracked(kind, 'dry-run' if dry_run else 'commit', dry_run=dry_run) as run:
            service = BargainScoringService(self.supabase, self.config)
            result = await service.run(dry_run=dry_run, top_n=top_n, today=today)
            run.total_targets = result.scored
            run.processed = result.scored
            run.notes = (f"{result.scored} scored, "
                         + ', '.join(f"{k}: {v}" for k, v in sorted(result.type_counts.items()))
                         + f", {result.detections_inserted} price detections")
        return result

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def history(self, kind: Optional[str] = None, limit: int = 20) -> List[Dict]:
        return await self.ledger.history(kind, limit)
