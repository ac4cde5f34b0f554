"""
Complex Discovery Service

Walks the region hierarchy (country -> region -> sub-region -> sub-district)
and upserts every apartment and officetel complex it lists:

1. Region levels are fetched breadth-first in concurrent batches
2. Each sub-district's complex lists are fetched per property type and
   upserted on hscp_no, one commit per complex
3. After a complete, unfiltered pass with no errors, active complexes the
   pass did not see are deactivated (complexes are never deleted)

New complexes keep the default deal_count of 0, so the next quick check
promotes them to a full scan.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from supabase import Client

from harvest_config import CollectorConfig, get_config
from .db_utils import chunked, fetch_all_rows
from .harvester import BatchHarvester
from .land_sources import RegionClient
from .rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

LAT_RANGE = (30.0, 40.0)
LON_RANGE = (124.0, 132.0)

OnDong = Callable[[str], Awaitable[None]]


@dataclass(frozen=True)
class DongRef:
    """One sub-district to scan"""
    cortar_no: str
    name: str
    sido: str
    sigungu: str


@dataclass
class DiscoveryResult:
    """Aggregate outcome of a discovery pass"""
    sido: int = 0
    sigungu: int = 0
    dongs: int = 0
    processed: int = 0
    found: int = 0
    new: int = 0
    updated: int = 0
    errors: int = 0
    deactivated: int = 0
    complete: bool = False
    dry_run: bool = False
    failed_regions: List[str] = field(default_factory=list)


def parse_address(cortar_address: Optional[str]) -> Tuple[Optional[str], Optional[str], Optional[str]]:
    """
    Split a region address into (city, division, sector).

    '서울시 강남구 개포동' -> ('서울시', '강남구', '개포동')
    '경기도 성남시 분당구 야탑동' -> ('경기도', '성남시 분당구', '야탑동')
    """
    if not cortar_address or not cortar_address.strip():
        return None, None, None
    tokens = cortar_address.split()
    if len(tokens) < 2:
        return tokens[0], None, None
    return tokens[0], ' '.join(tokens[1:-1]) or None, tokens[-1]


def _coordinate(value: Any, bounds: Tuple[float, float]) -> Optional[float]:
    try:
        value = float(value)
    except (TypeError, ValueError):
        return None
    low, high = bounds
    return value if low < value < high else None


def complex_row(item: Dict[str, Any], cortar_no: str, property_type: str) -> Optional[Dict[str, Any]]:
    """
    Map a region complex-list entry to a complexes row.

    Unknown values are left out of the row so an upsert never blanks
    columns a previous pass filled in.
    """
    hscp_no = item.get('complexNo')
    if hscp_no in (None, ''):
        return None
    hscp_no = str(hscp_no)
    city, division, sector = parse_address(item.get('cortarAddress'))

    row = {
        'hscp_no': hscp_no,
        'complex_name': item.get('complexName') or f"단지_{hscp_no}",
        'property_type': item.get('realEstateTypeCode') or property_type,
        'lat': _coordinate(item.get('latitude'), LAT_RANGE),
        'lon': _coordinate(item.get('longitude'), LON_RANGE),
        'city': city,
        'division': division,
        'sector': sector,
        'address': item.get('cortarAddress') or None,
        'total_dong': item.get('totalBuildingCount'),
        'total_households': item.get('totalHouseholdCount'),
        'building_date': item.get('useApproveYmd') or None,
        'lease_count': item.get('leaseCount'),
        'rent_count': item.get('rentCount'),
        'cortar_no': cortar_no,
        'sgg_cd': cortar_no[:5] if cortar_no else None,
        'is_active': True,
    }
    return {key: value for key, value in row.items() if value is not None}


class DiscoveryService:
    """
    Region hierarchy walk and complex upsert.

    Args:
        supabase_client: Supabase client
        config: Collector configuration
        client: RegionClient (built from the 'regions' source settings by default)
        limiter: RateLimiter shared by every region request
    """

    def __init__(
        self,
        supabase_client: Client,
        config: Optional[CollectorConfig] = None,
        client: Optional[RegionClient] = None,
        limiter: Optional[RateLimiter] = None
    ):
        self.supabase = supabase_client
        self.config = config or get_config()
        source = self.config.get_source('regions')
        self.client = client or RegionClient(
            source.base_url, self.config.user_agents, source.request_timeout, source.throttle_statuses
        )
        self.limiter = limiter or RateLimiter(source.rate_limit, name='regions')
        self.batcher = BatchHarvester(self.limiter, source.batch_size, source.round_pause)

    async def _children(self, codes: List[str], result: DiscoveryResult) -> Dict[str, List[Dict]]:
        outcome = await self.batcher.run(codes, self.client.list_regions)
        for code, reason in outcome.failed.items():
            result.errors += 1
            result.failed_regions.append(code)
            logger.error(f"Error listing regions under {code}: {reason}")
        return outcome.results

    async def walk_regions(self, result: DiscoveryResult, sido_filter: Optional[str] = None) -> List[DongRef]:
        """Every sub-district under the root, optionally restricted to regions matching sido_filter"""
        root = self.config.discovery.root_cortar_no
        top = (await self._children([root], result)).get(root, [])
        sidos = [s for s in top if not sido_filter or sido_filter in (s.get('cortarName') or '')]
        if sido_filter and not sidos:
            available = ', '.join(s.get('cortarName') or '?' for s in top)
            logger.warning(f"No region matches '{sido_filter}'. Available: {available}")
        result.sido = len(sidos)

        sido_names = {s['cortarNo']: s.get('cortarName') for s in sidos}
        sigungu_lists = await self._children(list(sido_names), result)
        sigungus: Dict[str, Tuple[str, str]] = {}
        for sido_no in sido_names:
            for sigungu in sigungu_lists.get(sido_no, []):
                sigungus[sigungu['cortarNo']] = (sido_names[sido_no], sigungu.get('cortarName'))
        result.sigungu = len(sigungus)

        dong_lists = await self._children(list(sigungus), result)
        dongs = []
        for sigungu_no, (sido_name, sigungu_name) in sigungus.items():
            for dong in dong_lists.get(sigungu_no, []):
                dongs.append(DongRef(
                    cortar_no=str(dong['cortarNo']),
                    name=dong.get('cortarName') or '',
                    sido=sido_name or '',
                    sigungu=sigungu_name or '',
                ))
        dongs.sort(key=lambda d: d.cortar_no)
        result.dongs = len(dongs)
        logger.info(f"Regions: {result.sido} top-level, {result.sigungu} sub-regions, {result.dongs} sub-districts")
        return dongs

    async def _list_dong(self, cortar_no: str) -> List[Tuple[str, List[Dict]]]:
        lists = []
        for property_type in self.config.discovery.property_types:
            lists.append((property_type, await self.client.list_complexes(cortar_no, property_type)))
        return lists

    async def load_known(self) -> Set[str]:
        rows = fetch_all_rows(lambda: self.supabase.table('complexes').select('hscp_no').order('id'))
        return {str(row['hscp_no']) for row in rows}

    def _upsert(self, row: Dict[str, Any], known: Set[str], result: DiscoveryResult) -> None:
        try:
            self.supabase.table('complexes').upsert(row, on_conflict='hscp_no').execute()
        except Exception as e:
            result.errors += 1
            logger.error(f"Error upserting complex {row['hscp_no']}: {e}")
            return
        if row['hscp_no'] in known:
            result.updated += 1
        else:
            result.new += 1
            known.add(row['hscp_no'])

    async def deactivate_unseen(self, seen: Set[str]) -> int:
        """Mark active complexes missing from a complete pass inactive"""
        rows = fetch_all_rows(
            lambda: self.supabase.table('complexes').select('id, hscp_no').eq('is_active', True).order('id')
        )
        unseen = sorted(str(row['hscp_no']) for row in rows if str(row['hscp_no']) not in seen)
        deactivated = 0
        for batch in chunked(unseen, self.config.reconcile.lookup_batch_size):
            try:
                self.supabase.table('complexes').update({'is_active': False}).in_('hscp_no', batch).execute()
                deactivated += len(batch)
            except Exception as e:
                logger.error(f"Error deactivating {len(batch)} complexes: {e}")
        return deactivated

    async def run(
        self,
        sido_filter: Optional[str] = None,
        resume_after: Optional[str] = None,
        dry_run: bool = False,
        on_dong: Optional[OnDong] = None
    ) -> DiscoveryResult:
        """
        Walk the hierarchy and upsert complexes.

        Args:
            sido_filter: Only walk top-level regions whose name contains this
            resume_after: Skip sub-districts up to and including this cortar_no
            dry_run: Count complexes without writing
            on_dong: Awaited with each sub-district's cortar_no once it is processed

        Returns:
            DiscoveryResult
        """
        result = DiscoveryResult(dry_run=dry_run)
        dongs = await self.walk_regions(result, sido_filter)
        walk_failed = bool(result.failed_regions)
        if resume_after:
            dongs = [d for d in dongs if d.cortar_no > resume_after]

        known = set() if dry_run else await self.load_known()
        seen: Set[str] = set()
        batch_size = self.batcher.batch_size
        progress_every = self.config.discovery.progress_every

        for start in range(0, len(dongs), batch_size):
            batch = dongs[start:start + batch_size]
            outcome = await self.batcher.run([d.cortar_no for d in batch], self._list_dong)

            for dong in batch:
                if dong.cortar_no in outcome.failed:
                    result.errors += 1
                    logger.error(f"Error listing complexes in {dong.sigungu} {dong.name}: "
                                 f"{outcome.failed[dong.cortar_no]}")
                else:
                    for property_type, items in outcome.results.get(dong.cortar_no, []):
                        for item in items:
                            row = complex_row(item, dong.cortar_no, property_type)
                            if row is None or row['hscp_no'] in seen:
                                continue
                            seen.add(row['hscp_no'])
                            result.found += 1
                            if not dry_run:
                                self._upsert(row, known, result)

                result.processed += 1
                if on_dong is not None:
                    await on_dong(dong.cortar_no)

            if progress_every and result.processed % progress_every < len(batch):
                logger.info(f"Discovery {result.processed}/{len(dongs)}: {result.found} found, "
                            f"{result.new} new, {result.errors} errors")

        result.complete = not walk_failed and result.errors == 0 and not sido_filter and not resume_after
        if result.complete and not dry_run and seen:
            result.deactivated = await self.deactivate_unseen(seen)
        elif not dry_run:
            logger.info("Partial discovery pass, no complexes deactivated")

        logger.info(f"Discovery: {result.found} complexes in {result.processed} sub-districts, "
                    f"{result.new} new, {result.updated} updated, {result.deactivated} deactivated, "
                    f"{result.errors} errors")
        return result
