"""
Fingerprint Matcher

Resolves complexes to transaction names without comparing names: a sample
of the complex's own recent sales (year, month, floor, price) is looked up
in the government corpus of the same administrative code. Every matching
transaction row is one vote for its name, and the plurality name wins:

- accepted with 2 or more votes
- accepted with a single vote only when it is the sole candidate
- on a tied top count the name first seen wins
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from supabase import Client

from harvest_config import CollectorConfig, get_config
from .db_utils import round_half_up
from .entity_resolver_service import EntityResolverService, OnResolved
from .harvester import BatchHarvester
from .land_sources import FinLandClient
from .rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransactionSample:
    deal_year: int
    deal_month: int
    floor: int
    deal_amount: int  # 10,000 won units


@dataclass
class FingerprintResult:
    """Aggregate outcome of a fingerprint pass"""
    targets: int = 0
    matched: int = 0
    unresolved: int = 0
    no_samples: int = 0
    errors: int = 0
    backfilled_transactions: int = 0
    matches: List[tuple] = field(default_factory=list)  # (hscp_no, complex_name, apt_nm)
    dry_run: bool = False


def parse_sample(raw: Dict[str, Any]) -> Optional[TransactionSample]:
    """{tradeDate: 'YYYY-MM-DD', dealPrice: won, floor} -> sample, or None if incomplete"""
    trade_date = str(raw.get('tradeDate') or '')
    parts = trade_date.split('-') if '-' in trade_date else [trade_date[:4], trade_date[4:6]]
    try:
        year = int(parts[0])
        month = int(parts[1])
        floor = int(str(raw.get('floor')).strip())
        amount = int(round_half_up(float(raw.get('dealPrice')) / 10000))
    except (TypeError, ValueError, IndexError):
        return None
    if not (year and month and floor and amount):
        return None
    return TransactionSample(deal_year=year, deal_month=month, floor=floor, deal_amount=amount)


def tally_votes(sample_hits: Iterable[Sequence[str]]) -> Optional[str]:
    """
    Pick the plurality name from the rows each sample matched.

    Args:
        sample_hits: apt_nm of every matching transaction row, per sample

    Returns:
        Accepted name, or None
    """
    votes: Counter = Counter()
    for hits in sample_hits:
        votes.update(hits)
    if not votes:
        return None

    # most_common keeps first-seen order among equal counts
    best_name, best_votes = votes.most_common(1)[0]
    if best_votes >= 2 or len(votes) == 1:
        return best_name
    return None


class FingerprintMatcher:
    """
    Transaction-fingerprint resolution of complexes.

    Args:
        supabase_client: Supabase client
        source: Browser source used to sample each complex's sales
        limiter: RateLimiter for the sampling batches
        config: Collector configuration
    """

    def __init__(
        self,
        supabase_client: Client,
        source: FinLandClient,
        limiter: Optional[RateLimiter] = None,
        config: Optional[CollectorConfig] = None
    ):
        self.supabase = supabase_client
        self.config = config or get_config()
        self.source = source
        self.limiter = limiter or RateLimiter(self.config.get_source('fin_land').rate_limit, name='fingerprint')
        self.resolver = EntityResolverService(supabase_client, self.config)

    async def reset(self) -> None:
        """Clear every resolved name and transaction link before a full rematch"""
        self.supabase.table('complexes').update({'rt_apt_nm': None}).eq('is_active', True).execute()
        self.supabase.table('real_transactions').update({'complex_id': None}).gt('complex_id', 0).execute()
        logger.info("Cleared resolved names and transaction links")

    async def sample_hits(self, sgg_cd: str, sample: TransactionSample) -> List[str]:
        """apt_nm of every transaction row matching one sample"""
        tolerance = self.config.resolver.fingerprint_price_tolerance
        response = self.supabase.table('real_transactions').select('apt_nm').eq(
            'sgg_cd', sgg_cd
        ).eq('deal_year', sample.deal_year).eq('deal_month', sample.deal_month).eq(
            'floor', sample.floor
        ).gte('deal_amount', sample.deal_amount - tolerance).lte(
            'deal_amount', sample.deal_amount + tolerance
        ).order('id').execute()
        return [row['apt_nm'] for row in response.data or [] if row.get('apt_nm')]

    async def match_complex(self, complex_row: Dict, raw_samples: List[Dict]) -> Optional[str]:
        samples = [s for s in (parse_sample(raw) for raw in raw_samples) if s is not None]
        hits = [await self.sample_hits(complex_row['sgg_cd'], s) for s in samples]
        return tally_votes(hits)

    async def run(
        self,
        targets: List[Dict],
        dry_run: bool = False,
        on_resolved: Optional[OnResolved] = None
    ) -> FingerprintResult:
        """
        Sample, vote and accept for every target, in order.

        Args:
            targets: Complex rows from load_resolution_targets
            dry_run: Compute matches without writing
            on_resolved: Awaited after each complex with its accepted name (or None)

        Returns:
            FingerprintResult
        """
        settings = self.config.resolver
        result = FingerprintResult(targets=len(targets), dry_run=dry_run)
        by_hscp = {str(t['hscp_no']): t for t in targets}
        keys = list(by_hscp)
        batcher = BatchHarvester(self.limiter, settings.fingerprint_batch_size, settings.fingerprint_round_pause)
        processed = 0

        async def fetch(hscp_no: str):
            return await self.source.sample_transactions(hscp_no, settings.fingerprint_sample_size)

        for start in range(0, len(keys), settings.fingerprint_batch_size):
            batch_keys = keys[start:start + settings.fingerprint_batch_size]
            outcome = await batcher.run(batch_keys, fetch)

            for hscp_no in batch_keys:
                complex_row = by_hscp[hscp_no]
                accepted = None
                if hscp_no in outcome.failed:
                    result.errors += 1
                    logger.warning(f"Sampling failed for complex {hscp_no}: {outcome.failed[hscp_no]}")
                elif not outcome.results.get(hscp_no):
                    result.no_samples += 1
                    result.unresolved += 1
                else:
                    try:
                        accepted = await self.match_complex(complex_row, outcome.results[hscp_no])
                        if accepted is None:
                            result.unresolved += 1
                        else:
                            result.matched += 1
                            result.matches.append((hscp_no, complex_row.get('complex_name'), accepted))
                            if not dry_run:
                                result.backfilled_transactions += await self.resolver.accept(complex_row, accepted)
                    except Exception as e:
                        accepted = None
                        result.errors += 1
                        logger.error(f"Error matching complex {hscp_no}: {e}")

                if on_resolved is not None:
                    await on_resolved(complex_row, accepted)

            processed += len(batch_keys)
            if settings.progress_every and processed % settings.progress_every < len(batch_keys):
                logger.info(f"Fingerprint {processed}/{len(keys)}: {result.matched} matched, "
                            f"{result.unresolved} unresolved, {result.errors} errors")

        logger.info(f"Fingerprint matching: {result.matched}/{result.targets} matched, "
                    f"{result.unresolved} unresolved ({result.no_samples} without samples), "
                    f"{result.errors} errors")
        return result
