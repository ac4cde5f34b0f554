"""
Rate-Limited Harvester

Harvester pages through one scope (a complex or a grid cell) and reports
what it got together with a per-scope outcome:

- ok: the source reported no further pages
- skipped: a page ran out of retries (throttles / transient errors)
- exhausted: the page cap was reached, output is incomplete

A non-retryable source error stops the scope and is counted in `errors`.
Only an ok scope with zero errors is complete, and only complete scopes may
drive removals downstream.

BatchHarvester runs single-request units (count checks, transaction
samples) in concurrent rounds sharing one RateLimiter.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, Sequence, TypeVar

from harvest_config.collector_config import SourceSettings
from .errors import CollectorSetupError, SourceError, ThrottledError, TransientSourceError
from .land_sources import ListingSource, SourcePage
from .listing_models import ListingQuery, ListingRecord
from .rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

OUTCOME_OK = 'ok'
OUTCOME_SKIPPED = 'skipped'
OUTCOME_EXHAUSTED = 'exhausted'

K = TypeVar('K')
V = TypeVar('V')


@dataclass
class HarvestResult:
    """Harvested items and outcome for one scope"""
    scope_id: str
    items: List[ListingRecord] = field(default_factory=list)
    total_count: Optional[int] = None
    pages: int = 0
    outcome: str = OUTCOME_OK
    errors: int = 0
    error: Optional[str] = None
    stopped_at_known: bool = False
    trade_types: Optional[FrozenSet[str]] = None  # None when every trade type was fetched

    @property
    def is_complete(self) -> bool:
        return self.outcome == OUTCOME_OK and self.errors == 0


class Harvester:
    """
    Pages one scope at a time through a listing source.

    Args:
        source: ListingSource to page through
        limiter: RateLimiter owned by this harvester
        settings: SourceSettings (page cap, retry budget via rate_limit)
    """

    def __init__(
        self,
        source: ListingSource,
        limiter: Optional[RateLimiter] = None,
        settings: Optional[SourceSettings] = None
    ):
        self.source = source
        self.settings = settings or SourceSettings(name=source.name, base_url='')
        self.limiter = limiter or RateLimiter(self.settings.rate_limit, name=source.name)

    async def harvest(
        self,
        query: ListingQuery,
        stop_at: Optional[Callable[[ListingRecord], bool]] = None,
        max_pages: Optional[int] = None
    ) -> HarvestResult:
        """
        Harvest every page of a scope.

        Args:
            query: Scope and filters
            stop_at: Optional predicate; the first matching item ends the scan
                (the item itself is not returned)
            max_pages: Overrides the configured page cap

        Returns:
            HarvestResult
        """
        page_cap = max_pages or self.settings.max_pages
        result = HarvestResult(scope_id=query.scope_id, trade_types=self.source.trade_scope(query))
        page_no = 1
        cursor = None

        while True:
            if page_no > page_cap:
                result.outcome = OUTCOME_EXHAUSTED
                logger.warning(f"[{self.source.name}] {query.scope_id}: page cap {page_cap} reached")
                break

            page = await self._fetch_with_retry(query, page_no, cursor, result)
            if page is None:
                break

            result.pages += 1
            if page.total_count is not None:
                result.total_count = page.total_count

            for record in page.items:
                if stop_at is not None and stop_at(record):
                    result.stopped_at_known = True
                    break
                result.items.append(record)

            if result.stopped_at_known or not page.items or not page.has_more:
                break
            if result.total_count is not None and len(result.items) >= result.total_count:
                break

            page_no += 1
            cursor = page.cursor

        return result

    async def _fetch_with_retry(
        self,
        query: ListingQuery,
        page_no: int,
        cursor: Any,
        result: HarvestResult
    ) -> Optional[SourcePage]:
        max_attempts = self.limiter.settings.max_attempts
        last_error: Optional[Exception] = None

        for attempt in range(1, max_attempts + 1):
            await self.limiter.maybe_batch_rest()
            await self.limiter.wait()
            self.limiter.record_request()
            try:
                page = await self.source.fetch_page(query, page_no, cursor)
            except ThrottledError as e:
                last_error = e
                await self.limiter.on_throttle()
                continue
            except TransientSourceError as e:
                last_error = e
                logger.warning(f"[{self.source.name}] {query.scope_id} page {page_no} "
                               f"attempt {attempt}/{max_attempts}: {e}")
                await self.limiter.backoff_after_error()
                continue
            except SourceError as e:
                result.errors += 1
                result.error = str(e)
                logger.error(f"[{self.source.name}] Error harvesting {query.scope_id} page {page_no}: {e}")
                return None

            self.limiter.on_success()
            return page

        result.outcome = OUTCOME_SKIPPED
        result.error = f"retries exhausted: {last_error}"
        logger.warning(f"[{self.source.name}] Skipping {query.scope_id} at page {page_no}: {result.error}")
        return None


@dataclass
class BatchResult:
    """Per-unit results of a concurrent batch run"""
    results: Dict[Any, Any] = field(default_factory=dict)
    failed: Dict[Any, str] = field(default_factory=dict)
    rounds: int = 0
    throttled_rounds: int = 0


class BatchHarvester:
    """
    Concurrent rounds of single-request units.

    Each round fans out `batch_size` units with asyncio.gather. If any unit in
    a round is throttled, the limiter is told once for the whole round and
    only the throttled units are retried, within the attempt budget. A round
    without throttles counts as one success for the limiter.
    """

    def __init__(self, limiter: RateLimiter, batch_size: int = 20, round_pause: float = 0.2):
        self.limiter = limiter
        self.batch_size = max(1, batch_size)
        self.round_pause = round_pause

    async def run(
        self,
        keys: Sequence[K],
        fetch: Callable[[K], Awaitable[V]],
        on_batch: Optional[Callable[[Dict[Any, Any]], Awaitable[None]]] = None
    ) -> BatchResult:
        """
        Args:
            keys: Units to fetch
            fetch: Coroutine function fetching one unit
            on_batch: Optional callback receiving each batch's successful results

        Returns:
            BatchResult with results per key and failure reasons
        """
        outcome = BatchResult()
        for start in range(0, len(keys), self.batch_size):
            batch = list(keys[start:start + self.batch_size])
            batch_results = await self._run_round(batch, fetch, outcome)
            if on_batch is not None and batch_results:
                await on_batch(batch_results)
            await self.limiter.maybe_batch_rest()
            await self.limiter.pause(self.round_pause)
        return outcome

    async def _run_round(self, batch: List[K], fetch, outcome: BatchResult) -> Dict[Any, Any]:
        max_attempts = self.limiter.settings.max_attempts
        pending = batch
        succeeded: Dict[Any, Any] = {}
        attempt = 1

        while pending:
            outcome.rounds += 1
            for _ in pending:
                self.limiter.record_request()
            values = await asyncio.gather(*(fetch(key) for key in pending), return_exceptions=True)

            throttled, transient = [], []
            for key, value in zip(pending, values):
                if isinstance(value, CollectorSetupError):
                    raise value
                if isinstance(value, ThrottledError):
                    throttled.append(key)
                elif isinstance(value, TransientSourceError):
                    transient.append(key)
                elif isinstance(value, Exception):
                    outcome.failed[key] = str(value)
                elif isinstance(value, BaseException):
                    raise value
                else:
                    succeeded[key] = value
                    outcome.results[key] = value

            retry = throttled + transient
            if not throttled:
                self.limiter.on_success()
            if not retry:
                break
            if attempt >= max_attempts:
                for key in retry:
                    outcome.failed[key] = 'retries exhausted'
                break

            if throttled:
                outcome.throttled_rounds += 1
                await self.limiter.on_throttle()
                await self.limiter.wait()
            else:
                await self.limiter.backoff_after_error()
            pending = retry
            attempt += 1

        return succeeded
