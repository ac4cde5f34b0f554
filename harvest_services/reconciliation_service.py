"""
Reconciliation Service for the Listing Harvest Pipeline

Applies a harvested scope to the store:

1. Snapshot the complex's known listings (active ones are the removal baseline)
2. Upsert every harvested listing on article_no, one commit per item
3. Record price changes, source-supplied price history and bargain detections
4. After a complete diff scan, mark baseline listings that were not seen as
   removed and refresh the complex's collection stamp and listing count

Partial scans (skipped, exhausted or errored) upsert what they saw but never
remove anything and leave the complex stamps untouched.
"""

import logging
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set

from supabase import Client

from harvest_config import CollectorConfig, get_config
from .db_utils import chunked, fetch_all_rows, parse_timestamp
from .harvester import HarvestResult
from .listing_models import TRACKED_FIELDS, ListingRecord

logger = logging.getLogger(__name__)

MODE_FULL = 'full'
MODE_DIFF = 'diff'

SNAPSHOT_COLUMNS = (
    'id, article_no, complex_id, article_status, deal_price, warranty_price, rent_price, '
    'exclusive_space, target_floor, total_floor, description, is_bargain, trade_type'
)


@dataclass
class ReconcileCounts:
    """Per-scope (or aggregated) reconciliation counters"""
    found: int = 0
    new: int = 0
    updated: int = 0
    unchanged: int = 0
    removed: int = 0
    price_changed: int = 0
    bargains_detected: int = 0
    history_inserted: int = 0
    errors: int = 0

    def merge(self, other: 'ReconcileCounts') -> 'ReconcileCounts':
        for f in fields(self):
            setattr(self, f.name, getattr(self, f.name) + getattr(other, f.name))
        return self


@dataclass
class QuickCheckResult:
    """Outcome of comparing declared listing counts with stored counts"""
    checked: int = 0
    mismatched: int = 0
    stale: int = 0
    errors: int = 0
    promoted: List[Dict] = field(default_factory=list)


def _same(old: Any, new: Any) -> bool:
    if old is None or new is None:
        return old is None and new is None
    if isinstance(old, (int, float)) and isinstance(new, (int, float)) and not isinstance(old, bool):
        return float(old) == float(new)
    return old == new


def _price(row: Dict) -> Optional[int]:
    return row.get('deal_price') or row.get('warranty_price')


class ReconciliationService:
    """
    Diff-based reconciliation of harvested listings against the store.
    """

    def __init__(self, supabase_client: Client, config: Optional[CollectorConfig] = None):
        self.supabase = supabase_client
        self.config = config or get_config()

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    async def load_snapshot(self, complex_id: int) -> Dict[str, Dict]:
        """Locally known listings of a complex keyed by article_no"""
        rows = fetch_all_rows(
            lambda: self.supabase.table('articles').select(SNAPSHOT_COLUMNS).eq(
                'complex_id', complex_id
            ).order('id')
        )
        return {str(row['article_no']): row for row in rows}

    async def _lookup_outside_snapshot(self, article_nos: List[str]) -> Dict[str, Dict]:
        """Listings known under another complex or previously removed"""
        found: Dict[str, Dict] = {}
        for batch in chunked(article_nos, self.config.reconcile.lookup_batch_size):
            response = self.supabase.table('articles').select(SNAPSHOT_COLUMNS).in_(
                'article_no', batch
            ).execute()
            for row in response.data or []:
                found[str(row['article_no'])] = row
        return found

    # ------------------------------------------------------------------
    # Reconcile one scope
    # ------------------------------------------------------------------

    async def reconcile(self, complex_row: Dict, harvest: HarvestResult, mode: str = MODE_DIFF) -> ReconcileCounts:
        """
        Apply one complex's harvest to the store.

        Args:
            complex_row: Complex row (id, hscp_no, deal_count)
            harvest: Harvester output for the complex
            mode: 'diff' (removals allowed on complete scans) or 'full' (never removes)

        Returns:
            ReconcileCounts for the scope
        """
        counts = ReconcileCounts()
        complex_id = complex_row['id']
        now = datetime.now(timezone.utc).isoformat()

        snapshot = await self.load_snapshot(complex_id)
        baseline = {
            no: row.get('trade_type') for no, row in snapshot.items() if row.get('article_status') == 'active'
        }

        missing = list(dict.fromkeys(
            item.article_no for item in harvest.items if item.article_no not in snapshot
        ))
        known = dict(snapshot)
        if missing:
            try:
                known.update(await self._lookup_outside_snapshot(missing))
            except Exception as e:
                logger.error(f"Error looking up listings for complex {complex_id}: {e}")
                counts.errors += 1
                return counts

        seen: Set[str] = set()
        for item in harvest.items:
            if item.article_no in seen:
                continue
            seen.add(item.article_no)
            counts.found += 1
            try:
                await self._apply_item(complex_id, item, known.get(item.article_no), counts, now)
            except Exception as e:
                counts.errors += 1
                logger.error(f"Error reconciling article {item.article_no}: {e}")

        if not harvest.is_complete:
            logger.info(f"Complex {complex_row.get('hscp_no')}: {harvest.outcome} scan "
                        f"({harvest.errors} errors), no removals")
            return counts

        if mode == MODE_DIFF:
            counts.removed = await self._remove_unseen(complex_row, baseline, seen, harvest, now)

        await self._update_complex(complex_row, harvest, seen, now)
        return counts

    async def _apply_item(
        self,
        complex_id: int,
        item: ListingRecord,
        existing: Optional[Dict],
        counts: ReconcileCounts,
        now: str
    ) -> None:
        row = item.to_row()
        row.update({
            'complex_id': complex_id,
            'article_status': 'active',
            'last_seen_at': now,
            'removed_at': None,
        })

        if existing is None:
            row['initial_price'] = item.comparable_price
            row['first_seen_at'] = now
            response = self.supabase.table('articles').upsert(row, on_conflict='article_no').execute()
            article_id = response.data[0]['id']
            counts.new += 1
            if item.is_bargain:
                counts.bargains_detected += self._insert_detection(article_id, complex_id, item)
            counts.history_inserted += self._insert_api_history(article_id, item, set())
            return

        article_id = existing['id']
        # A scan only raises the flag; price-based flags belong to the scoring run
        row['is_bargain'] = item.is_bargain or bool(existing.get('is_bargain'))
        changed = (
            existing.get('article_status') != 'active'
            or existing.get('complex_id') != complex_id
            or any(not _same(existing.get(name), row.get(name)) for name in TRACKED_FIELDS)
        )

        if changed:
            self.supabase.table('articles').upsert(row, on_conflict='article_no').execute()
            counts.updated += 1
        else:
            self.supabase.table('articles').update({'last_seen_at': now}).eq('id', article_id).execute()
            counts.unchanged += 1

        old_price = _price(existing)
        new_price = item.comparable_price
        if old_price and new_price and old_price != new_price:
            self.supabase.table('price_history').insert({
                'article_id': article_id,
                'deal_price': new_price,
                'formatted_price': item.formatted_price,
                'source': 'scan_detected',
                'recorded_at': now,
            }).execute()
            counts.price_changed += 1
            counts.history_inserted += 1

        if item.is_bargain and not existing.get('is_bargain'):
            counts.bargains_detected += self._insert_detection(article_id, complex_id, item)

        if item.price_changes:
            counts.history_inserted += self._insert_api_history(
                article_id, item, self._known_history_dates(article_id)
            )

    def _insert_detection(self, article_id: int, complex_id: int, item: ListingRecord) -> int:
        """Insert a keyword detection unless one exists. Returns rows inserted."""
        response = self.supabase.table('bargain_detections').upsert({
            'article_id': article_id,
            'complex_id': complex_id,
            'detection_type': 'keyword',
            'keyword': item.bargain_keyword,
            'deal_price': item.comparable_price,
        }, on_conflict='article_id,detection_type', ignore_duplicates=True).execute()
        return len(response.data or [])

    def _known_history_dates(self, article_id: int) -> Set[str]:
        response = self.supabase.table('price_history').select('modified_date').eq(
            'article_id', article_id
        ).eq('source', 'api_history').execute()
        return {row['modified_date'] for row in response.data or [] if row.get('modified_date')}

    def _insert_api_history(self, article_id: int, item: ListingRecord, known_dates: Set[str]) -> int:
        rows = []
        for change in item.price_changes:
            if not change.modified_date or change.modified_date in known_dates or change.price is None:
                continue
            known_dates.add(change.modified_date)
            rows.append({
                'article_id': article_id,
                'deal_price': change.price,
                'formatted_price': change.formatted_price,
                'source': 'api_history',
                'modified_date': change.modified_date,
            })
        if rows:
            self.supabase.table('price_history').insert(rows).execute()
        return len(rows)

    async def _remove_unseen(
        self,
        complex_row: Dict,
        baseline: Dict[str, Optional[str]],
        seen: Set[str],
        harvest: HarvestResult,
        now: str
    ) -> int:
        if not seen:
            logger.warning(f"Complex {complex_row.get('hscp_no')}: saw 0 items (source declared "
                           f"{harvest.total_count}), skipping removals")
            return 0

        if harvest.trade_types is not None:
            baseline = {no: tt for no, tt in baseline.items() if tt in harvest.trade_types}

        unseen = sorted(set(baseline) - seen)
        removed = 0
        for batch in chunked(unseen, self.config.reconcile.lookup_batch_size):
            try:
                self.supabase.table('articles').update({
                    'article_status': 'removed',
                    'removed_at': now,
                }).in_('article_no', batch).eq('article_status', 'active').execute()
                removed += len(batch)
            except Exception as e:
                logger.error(f"Error removing {len(batch)} articles of complex {complex_row.get('id')}: {e}")
        return removed

    async def _update_complex(self, complex_row: Dict, harvest: HarvestResult, seen: Set[str], now: str) -> None:
        total = harvest.total_count if harvest.total_count is not None else len(seen)
        try:
            self.supabase.table('complexes').update({
                'last_collected_at': now,
                'prev_deal_count': complex_row.get('deal_count'),
                'deal_count': total,
            }).eq('id', complex_row['id']).execute()
        except Exception as e:
            logger.error(f"Error updating complex {complex_row['id']}: {e}")

    # ------------------------------------------------------------------
    # Quick check
    # ------------------------------------------------------------------

    def select_for_rescan(
        self,
        complexes: List[Dict],
        declared_counts: Dict[str, int],
        now: Optional[datetime] = None
    ) -> QuickCheckResult:
        """
        Promote complexes whose declared count differs from the stored
        deal_count, or whose last collection is older than the staleness window.

        Args:
            complexes: Complex rows (hscp_no, deal_count, last_collected_at)
            declared_counts: hscp_no -> declared total (-1 when the check failed)
            now: Reference time

        Returns:
            QuickCheckResult
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(hours=self.config.reconcile.staleness_hours)
        result = QuickCheckResult()

        for row in complexes:
            hscp_no = str(row['hscp_no'])
            declared = declared_counts.get(hscp_no, -1)
            result.checked += 1
            if declared < 0:
                result.errors += 1
                continue

            if declared != (row.get('deal_count') or 0):
                result.mismatched += 1
                result.promoted.append(row)
                continue

            collected = parse_timestamp(row.get('last_collected_at'))
            if collected is None or collected < cutoff:
                result.stale += 1
                result.promoted.append(row)

        return result
