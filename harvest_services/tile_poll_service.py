"""
Tile Poll Service

Fast detection of new listings. Every grid cell is read newest-first and
paging stops at the first listing already known to the store (an id at or
below the highest stored id, or an active listing). Complex names of the
new listings are mapped to stored complexes, which the orchestrator then
diff-scans.

Cells that returned nothing on the last full pass are remembered in the
active-cell cache and skipped until the cache is refreshed.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from supabase import Client

from harvest_config import CollectorConfig, get_config, iter_cells, select_regions
from harvest_config.regions import Cell
from .db_utils import chunked, fetch_all_rows
from .harvester import OUTCOME_SKIPPED, Harvester
from .land_sources import MobileLandClient
from .listing_models import ListingQuery, ListingRecord, PropertyType, TradeType
from .state_store import CellCache

logger = logging.getLogger(__name__)


@dataclass
class PollResult:
    """Outcome of one polling pass"""
    cells_total: int = 0
    cells_scanned: int = 0
    cells_skipped_cached: int = 0
    cells_with_new: int = 0
    cells_failed: int = 0
    new_articles: int = 0
    complex_names: Dict[str, Set[str]] = field(default_factory=dict)  # complex name -> new article numbers
    promoted: List[Dict] = field(default_factory=list)
    unmapped: List[str] = field(default_factory=list)
    cache_saved: bool = False


def _numeric(article_no: str) -> Optional[int]:
    return int(article_no) if article_no and article_no.isdigit() else None


class TilePollService:
    """
    Newest-first cell scan that promotes complexes with unseen listings.

    Args:
        supabase_client: Supabase client
        config: Collector configuration
        harvester: Harvester over the tile source (built from 'mobile_tiles' by default)
        cell_cache: Active-cell cache; without one every cell is scanned
    """

    def __init__(
        self,
        supabase_client: Client,
        config: Optional[CollectorConfig] = None,
        harvester: Optional[Harvester] = None,
        cell_cache: Optional[CellCache] = None
    ):
        self.supabase = supabase_client
        self.config = config or get_config()
        if harvester is None:
            settings = self.config.get_source('mobile_tiles')
            source = MobileLandClient(settings, self.config.bargain_keywords,
                                      self.config.user_agents, zoom=self.config.tiles.zoom)
            harvester = Harvester(source, settings=settings)
        self.harvester = harvester
        self.cell_cache = cell_cache

    async def load_known(self) -> Tuple[int, Set[str]]:
        """(highest numeric article number, active article numbers)"""
        rows = fetch_all_rows(
            lambda: self.supabase.table('articles').select('id, article_no, article_status').order('id')
        )
        max_no = 0
        active = set()
        for row in rows:
            article_no = str(row['article_no'])
            number = _numeric(article_no)
            if number is not None and number > max_no:
                max_no = number
            if row.get('article_status') == 'active':
                active.add(article_no)
        return max_no, active

    def _query(self, cell: Cell) -> ListingQuery:
        tiles = self.config.tiles
        property_types = tuple(PropertyType(p) for p in tiles.property_types.split(':') if p)
        return ListingQuery.for_cell(
            cell.cell_id,
            (cell.lat, cell.lon, cell.top, cell.right),
            trade_type=TradeType(tiles.trade_type),
            property_types=property_types,
        )

    async def scan(self, region_filter: Optional[str] = None, refresh_cells: bool = False) -> PollResult:
        """
        Scan the grid for listings newer than anything stored.

        Args:
            region_filter: Only scan regions whose name contains this
            refresh_cells: Ignore the active-cell cache and rebuild it

        Returns:
            PollResult with the new listings grouped by complex name
        """
        result = PollResult()
        max_no, active = await self.load_known()
        logger.info(f"Known listings: highest id {max_no}, {len(active)} active")

        def is_known(record: ListingRecord) -> bool:
            number = _numeric(record.article_no)
            return (number is not None and number <= max_no) or record.article_no in active

        cached = None if refresh_cells or self.cell_cache is None else self.cell_cache.load()
        cached_ids = set(cached) if cached is not None else None
        full_pass = cached_ids is None and not region_filter
        live_cells: List[str] = []
        pages_per_tile = self.config.tiles.pages_per_tile

        for region in select_regions(region_filter):
            region_new = 0
            for cell in iter_cells(region):
                result.cells_total += 1
                if cached_ids is not None and cell.cell_id not in cached_ids:
                    result.cells_skipped_cached += 1
                    continue

                harvest = await self.harvester.harvest(self._query(cell), stop_at=is_known, max_pages=pages_per_tile)
                result.cells_scanned += 1
                if harvest.outcome == OUTCOME_SKIPPED or harvest.errors:
                    result.cells_failed += 1
                if harvest.items or harvest.stopped_at_known or harvest.outcome == OUTCOME_SKIPPED or harvest.errors:
                    live_cells.append(cell.cell_id)

                if harvest.items:
                    result.cells_with_new += 1
                for record in harvest.items:
                    result.new_articles += 1
                    region_new += 1
                    name = record.complex_name or 'Unknown'
                    result.complex_names.setdefault(name, set()).add(record.article_no)

                if result.cells_scanned % 20 == 0:
                    logger.info(f"{result.cells_scanned} cells scanned: {result.new_articles} new listings "
                                f"in {len(result.complex_names)} complexes")
            logger.info(f"[{region.name}] {region_new} new listings")

        if full_pass and self.cell_cache is not None:
            self.cell_cache.save(live_cells)
            result.cache_saved = True
            logger.info(f"Active-cell cache saved: {len(live_cells)}/{result.cells_total} cells")

        logger.info(f"Tile scan: {result.cells_scanned} cells scanned ({result.cells_skipped_cached} skipped "
                    f"by cache, {result.cells_failed} failed), {result.new_articles} new listings "
                    f"in {len(result.complex_names)} complexes")
        return result

    async def map_complexes(self, names: List[str]) -> Tuple[List[Dict], List[str]]:
        """Active complexes whose name matches a detected name, plus the names with no match"""
        rows: Dict[int, Dict] = {}
        for batch in chunked(sorted(names), self.config.reconcile.lookup_batch_size):
            response = self.supabase.table('complexes').select(
                'id, hscp_no, complex_name, deal_count, last_collected_at'
            ).in_('complex_name', batch).eq('is_active', True).execute()
            for row in response.data or []:
                rows[row['id']] = row
        matched = {row['complex_name'] for row in rows.values()}
        unmapped = [name for name in sorted(names) if name not in matched]
        return sorted(rows.values(), key=lambda r: str(r['hscp_no'])), unmapped

    async def run(self, region_filter: Optional[str] = None, refresh_cells: bool = False) -> PollResult:
        """Scan the grid and resolve the complexes to promote"""
        result = await self.scan(region_filter, refresh_cells)
        if result.complex_names:
            result.promoted, result.unmapped = await self.map_complexes(list(result.complex_names))
            logger.info(f"Mapped {len(result.complex_names)} complex names to {len(result.promoted)} "
                        f"complexes ({len(result.unmapped)} unmapped)")
        return result
