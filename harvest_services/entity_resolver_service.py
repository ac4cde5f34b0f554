"""
Entity Resolver Service

Joins harvested complexes to the government transaction corpus. For every
active complex with an administrative code (sgg_cd) and no resolved name,
the name cascade in name_matching runs against that code's transactions
only. An accepted name is cached on the complex (rt_apt_nm) and used to
backfill complex_id on every matching transaction.

Unresolved complexes are reported in aggregate; ambiguity is not an error.
"""

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from supabase import Client

from harvest_config import CollectorConfig, get_config
from .db_utils import chunked, fetch_all_rows
from .name_matching import STRATEGIES, Match, TransactionCorpus, resolve_name

logger = logging.getLogger(__name__)

TARGET_COLUMNS = 'id, hscp_no, complex_name, sgg_cd, sector, rt_apt_nm'

OnResolved = Callable[[Dict, Optional[str]], Awaitable[None]]


@dataclass
class ResolveResult:
    """Aggregate outcome of a resolution pass"""
    targets: int = 0
    matched: int = 0
    unresolved: int = 0
    errors: int = 0
    backfilled_transactions: int = 0
    strategies: Dict[str, int] = field(default_factory=lambda: {name: 0 for name in STRATEGIES})
    matches: List[Tuple[str, str, str, str]] = field(default_factory=list)  # (hscp_no, complex, apt_nm, strategy)
    dry_run: bool = False


async def load_resolution_targets(
    supabase: Client,
    hscp_no: Optional[str] = None,
    resume_after: Optional[str] = None,
    limit: Optional[int] = None,
    include_resolved: bool = False
) -> List[Dict]:
    """
    Active complexes eligible for resolution, ordered by hscp_no.

    Args:
        supabase: Supabase client
        hscp_no: Restrict to one complex (resolved or not)
        resume_after: Skip complexes up to and including this hscp_no
        limit: Maximum number of targets
        include_resolved: Also return complexes that already have rt_apt_nm

    Returns:
        Complex rows
    """
    def build():
        query = supabase.table('complexes').select(TARGET_COLUMNS).eq('is_active', True)
        if hscp_no:
            query = query.eq('hscp_no', str(hscp_no))
        elif not include_resolved:
            query = query.is_('rt_apt_nm', 'null')
        return query.order('hscp_no')

    rows = [row for row in fetch_all_rows(build) if row.get('sgg_cd')]
    if resume_after and not hscp_no:
        rows = [row for row in rows if str(row['hscp_no']) > str(resume_after)]
    if limit:
        rows = rows[:limit]
    return rows


class EntityResolverService:
    """
    Name-cascade resolution of complexes against government transactions.
    """

    def __init__(self, supabase_client: Client, config: Optional[CollectorConfig] = None):
        self.supabase = supabase_client
        self.config = config or get_config()
        self._corpora: Dict[str, TransactionCorpus] = {}

    async def load_corpus(self, sgg_cd: str) -> TransactionCorpus:
        """Transaction names of one administrative code (cached per pass)"""
        if sgg_cd not in self._corpora:
            rows = fetch_all_rows(
                lambda: self.supabase.table('real_transactions').select(
                    'apt_nm, umd_nm, exclu_use_ar'
                ).eq('sgg_cd', sgg_cd).order('id')
            )
            self._corpora[sgg_cd] = TransactionCorpus.from_rows(rows)
            logger.debug(f"Loaded {len(rows)} transactions for {sgg_cd}")
        return self._corpora[sgg_cd]

    async def listing_area_ranges(self, complex_ids: List[int]) -> Dict[int, Tuple[float, float]]:
        """(min, max) exclusive area of each complex's active listings"""
        ranges: Dict[int, Tuple[float, float]] = {}
        for batch in chunked(complex_ids, self.config.reconcile.lookup_batch_size):
            rows = fetch_all_rows(
                lambda: self.supabase.table('articles').select(
                    'complex_id, exclusive_space'
                ).in_('complex_id', batch).eq('article_status', 'active').gt(
                    'exclusive_space', 0
                ).order('id')
            )
            for row in rows:
                area = float(row['exclusive_space'])
                low, high = ranges.get(row['complex_id'], (area, area))
                ranges[row['complex_id']] = (min(low, area), max(high, area))
        return ranges

    async def accept(self, complex_row: Dict, apt_nm: str) -> int:
        """
        Cache the resolved name and backfill complex_id on its transactions.

        Returns:
            Number of transactions linked
        """
        self.supabase.table('complexes').update({'rt_apt_nm': apt_nm}).eq(
            'id', complex_row['id']
        ).execute()
        response = self.supabase.table('real_transactions').update({
            'complex_id': complex_row['id'],
        }).eq('sgg_cd', complex_row['sgg_cd']).eq('apt_nm', apt_nm).execute()
        return len(response.data or [])

    async def resolve(
        self,
        targets: List[Dict],
        dry_run: bool = False,
        on_resolved: Optional[OnResolved] = None
    ) -> ResolveResult:
        """
        Run the name cascade over the given targets, in order.

        Args:
            targets: Complex rows from load_resolution_targets
            dry_run: Compute matches without writing
            on_resolved: Awaited after each complex with its accepted name (or None)

        Returns:
            ResolveResult
        """
        result = ResolveResult(targets=len(targets), dry_run=dry_run)
        self._corpora = {}
        areas = await self.listing_area_ranges([t['id'] for t in targets]) if targets else {}
        progress_every = self.config.resolver.progress_every

        for index, complex_row in enumerate(targets, 1):
            accepted: Optional[str] = None
            try:
                corpus = await self.load_corpus(complex_row['sgg_cd'])
                match: Optional[Match] = resolve_name(
                    complex_row.get('complex_name') or '',
                    corpus,
                    sector=complex_row.get('sector'),
                    listing_area_range=areas.get(complex_row['id']),
                    settings=self.config.resolver
                )
                if match is None:
                    result.unresolved += 1
                else:
                    result.matched += 1
                    result.strategies[match.strategy] += 1
                    result.matches.append((
                        str(complex_row['hscp_no']), complex_row.get('complex_name'), match.apt_nm, match.strategy
                    ))
                    accepted = match.apt_nm
                    if not dry_run:
                        result.backfilled_transactions += await self.accept(complex_row, match.apt_nm)
            except Exception as e:
                result.errors += 1
                logger.error(f"Error resolving complex {complex_row.get('hscp_no')}: {e}")

            if on_resolved is not None:
                await on_resolved(complex_row, accepted)
            if progress_every and index % progress_every == 0:
                logger.info(f"Resolved {index}/{len(targets)}: {result.matched} matched, "
                            f"{result.unresolved} unresolved")

        logger.info(f"Name resolution: {result.matched}/{result.targets} matched "
                    f"({', '.join(f'{k}: {v}' for k, v in result.strategies.items())}), "
                    f"{result.unresolved} unresolved, {result.errors} errors")
        return result
