"""
Bargain Scoring Service

Batch recomputation of the composite bargain score over every active sale
listing with a positive price. Four bounded sub-scores are summed:

- complex (max 40): discount against same-size peers in the same complex
- tx (max 35): discount against recent completed sales of the same complex
- drops (max 20): number of downward asking price moves
- magnitude (max 5): cumulative drop from the first known price

A listing is a 'price' bargain at or above the threshold, a 'keyword'
bargain when the listing text carried a lexicon keyword, 'both' or 'none'.

All scores are committed through one RPC executed as a single transaction,
so a failure leaves no partial scores behind.
"""

import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from supabase import Client

from harvest_config import CollectorConfig, ScoringSettings, get_config
from .db_utils import chunked, fetch_all_rows, parse_timestamp, round_half_up
from .errors import ScoringCommitError

logger = logging.getLogger(__name__)

BUCKETS = (('0-19', 0, 19), ('20-39', 20, 39), ('40-49', 40, 49),
           ('50-69', 50, 69), ('70-89', 70, 89), ('90-100', 90, 100))

TYPE_BOTH = 'both'
TYPE_PRICE = 'price'
TYPE_KEYWORD = 'keyword'
TYPE_NONE = 'none'


@dataclass
class ScoreBreakdown:
    """Score of one listing"""
    article_id: int
    complex: int = 0
    tx: int = 0
    drops: int = 0
    magnitude: int = 0
    total: int = 0
    bargain_type: str = TYPE_NONE
    keyword: Optional[str] = None
    complex_id: Optional[int] = None
    deal_price: Optional[int] = None
    exclusive_space: Optional[float] = None

    @property
    def is_bargain(self) -> bool:
        return self.bargain_type != TYPE_NONE

    def to_payload(self) -> Dict:
        return {
            'article_id': self.article_id,
            'bargain_score': self.total,
            'score_factors': {
                'complex': self.complex,
                'tx': self.tx,
                'drops': self.drops,
                'magnitude': self.magnitude,
            },
            'bargain_type': self.bargain_type,
            'is_bargain': self.is_bargain,
        }


@dataclass
class ScoringResult:
    """Outcome of a scoring run"""
    scored: int = 0
    distribution: Dict[str, int] = field(default_factory=lambda: {name: 0 for name, _, _ in BUCKETS})
    type_counts: Dict[str, int] = field(default_factory=lambda: {
        TYPE_KEYWORD: 0, TYPE_PRICE: 0, TYPE_BOTH: 0, TYPE_NONE: 0
    })
    top: List[ScoreBreakdown] = field(default_factory=list)
    detections_inserted: int = 0
    committed: bool = False
    dry_run: bool = False


# ----------------------------------------------------------------------
# Sub-scores
# ----------------------------------------------------------------------

def discount_score(price: float, reference: Optional[float], cap: int, saturation: float) -> int:
    """
    Linear discount score: `cap` points at a `saturation` discount.

    Returns 0 when there is no reference or the price is not below it.
    """
    if not reference or reference <= 0 or price >= reference:
        return 0
    return min(int(round_half_up((1 - price / reference) / saturation * cap)), cap)


def count_drops(prices: Sequence[Optional[int]]) -> int:
    """Downward transitions in a time-ordered price sequence"""
    drops = 0
    previous = None
    for price in prices:
        if price is None:
            continue
        if previous is not None and price < previous:
            drops += 1
        previous = price
    return drops


def drop_score(drops: int, settings: ScoringSettings) -> int:
    return min(drops * settings.drop_points, settings.drop_cap)


def magnitude_score(price: float, first_price: Optional[float], settings: ScoringSettings) -> int:
    if not first_price or price >= first_price:
        return 0
    drop_pct = round_half_up((1 - price / first_price) * 100, 1)
    return min(int(round_half_up(drop_pct / settings.magnitude_divisor)), settings.magnitude_cap)


def classify(total: int, keyword: Optional[str], threshold: int) -> str:
    priced = total >= threshold
    if priced and keyword:
        return TYPE_BOTH
    if priced:
        return TYPE_PRICE
    if keyword:
        return TYPE_KEYWORD
    return TYPE_NONE


def bucket_for(total: int) -> str:
    for name, low, high in BUCKETS:
        if low <= total <= high:
            return name
    return BUCKETS[-1][0]


def months_back(today: date, months: int) -> int:
    """YYYYMM of the first day `months` months before today's month"""
    index = today.year * 12 + (today.month - 1) - months
    return (index // 12) * 100 + (index % 12) + 1


def _history_time(entry: Dict) -> Optional[datetime]:
    if entry.get('source') == 'api_history' and entry.get('modified_date'):
        try:
            return datetime.strptime(str(entry['modified_date'])[:8], '%Y%m%d').replace(tzinfo=timezone.utc)
        except ValueError:
            pass
    return parse_timestamp(entry.get('recorded_at'))


def price_sequence(listing: Dict, history: List[Dict]) -> List[int]:
    """
    Initial price at first sighting followed by the recorded price history,
    ordered by time.
    """
    epoch = datetime.min.replace(tzinfo=timezone.utc)
    points: List[Tuple[datetime, int, Optional[int]]] = []
    if listing.get('initial_price'):
        points.append((parse_timestamp(listing.get('first_seen_at')) or epoch, 0, listing['initial_price']))
    for entry in history:
        points.append((_history_time(entry) or epoch, 1, entry.get('deal_price')))
    points.sort(key=lambda p: (p[0], p[1]))
    return [price for _, _, price in points if price]


def score_listing(
    listing: Dict,
    peer_prices: Sequence[int],
    tx_prices: Sequence[int],
    history: List[Dict],
    settings: ScoringSettings
) -> ScoreBreakdown:
    """
    Score one listing.

    Args:
        listing: Article row (id, deal_price, initial_price, first_seen_at, bargain_keyword)
        peer_prices: Prices of same-size active sale listings in the complex (excluding itself)
        tx_prices: Recent completed sale prices in won for the same complex and size
        history: price_history rows of the listing
        settings: Scoring settings

    Returns:
        ScoreBreakdown
    """
    price = listing['deal_price']
    breakdown = ScoreBreakdown(
        article_id=listing['id'],
        keyword=listing.get('bargain_keyword'),
        complex_id=listing.get('complex_id'),
        deal_price=price,
        exclusive_space=listing.get('exclusive_space'),
    )

    if len(peer_prices) >= settings.min_peers:
        peer_avg = round_half_up(sum(peer_prices) / len(peer_prices))
        breakdown.complex = discount_score(price, peer_avg, settings.complex_cap, settings.complex_saturation)

    if tx_prices:
        tx_avg = round_half_up(sum(tx_prices) / len(tx_prices))
        breakdown.tx = discount_score(price, tx_avg, settings.tx_cap, settings.tx_saturation)

    sequence = price_sequence(listing, history)
    breakdown.drops = drop_score(count_drops(sequence), settings)
    breakdown.magnitude = magnitude_score(price, sequence[0] if sequence else None, settings)

    breakdown.total = min(breakdown.complex + breakdown.tx + breakdown.drops + breakdown.magnitude, 100)
    breakdown.bargain_type = classify(breakdown.total, breakdown.keyword, settings.threshold)
    return breakdown


def _within(area: Optional[float], other: Optional[float], window: float) -> bool:
    if area is None or other is None:
        return False
    return abs(float(other) - float(area)) <= window


class BargainScoringService:
    """
    Loads active sale listings with their peers, transactions and history,
    scores them, and commits every score in one transaction.
    """

    def __init__(self, supabase_client: Client, config: Optional[CollectorConfig] = None):
        self.supabase = supabase_client
        self.config = config or get_config()
        self.settings = self.config.scoring

    async def load_listings(self) -> List[Dict]:
        return fetch_all_rows(
            lambda: self.supabase.table('articles').select(
                'id, complex_id, deal_price, exclusive_space, bargain_keyword, initial_price, first_seen_at'
            ).eq('article_status', 'active').eq('trade_type', self.settings.sale_trade_type).gt(
                'deal_price', 0
            ).order('id')
        )

    async def load_history(self, article_ids: List[int]) -> Dict[int, List[Dict]]:
        history: Dict[int, List[Dict]] = defaultdict(list)
        for batch in chunked(article_ids, self.config.reconcile.lookup_batch_size):
            rows = fetch_all_rows(
                lambda: self.supabase.table('price_history').select(
                    'article_id, deal_price, source, modified_date, recorded_at'
                ).in_('article_id', batch).order('id')
            )
            for row in rows:
                history[row['article_id']].append(row)
        return history

    async def load_transactions(self, complex_ids: List[int], today: Optional[date] = None) -> Dict[int, List[Dict]]:
        """Recent non-cancelled transactions linked to the given complexes"""
        cutoff = months_back(today or date.today(), self.settings.tx_lookback_months)
        by_complex: Dict[int, List[Dict]] = defaultdict(list)
        for batch in chunked(complex_ids, self.config.reconcile.lookup_batch_size):
            rows = fetch_all_rows(
                lambda: self.supabase.table('real_transactions').select(
                    'complex_id, exclu_use_ar, deal_amount, deal_year, deal_month, cdeal_type'
                ).in_('complex_id', batch).gte('deal_year', cutoff // 100).order('id')
            )
            for row in rows:
                if row.get('cdeal_type') == 'O':
                    continue
                if int(row['deal_year']) * 100 + int(row['deal_month']) < cutoff:
                    continue
                by_complex[row['complex_id']].append(row)
        return by_complex

    def compute(
        self,
        listings: List[Dict],
        transactions: Dict[int, List[Dict]],
        history: Dict[int, List[Dict]]
    ) -> List[ScoreBreakdown]:
        """Score every listing (no I/O)"""
        window = self.settings.area_window
        by_complex: Dict[int, List[Dict]] = defaultdict(list)
        for listing in listings:
            by_complex[listing.get('complex_id')].append(listing)

        scores = []
        for listing in listings:
            area = listing.get('exclusive_space')
            peers = [
                p['deal_price'] for p in by_complex[listing.get('complex_id')]
                if p['id'] != listing['id'] and p.get('deal_price') and _within(area, p.get('exclusive_space'), window)
            ]
            tx_prices = [
                int(tx['deal_amount']) * 10000 for tx in transactions.get(listing.get('complex_id'), [])
                if tx.get('deal_amount') and _within(area, tx.get('exclu_use_ar'), window)
            ]
            scores.append(score_listing(listing, peers, tx_prices, history.get(listing['id'], []), self.settings))
        return scores

    async def commit(self, scores: List[ScoreBreakdown]) -> int:
        """
        Apply all scores in one database transaction.

        Returns:
            Number of price detections inserted

        Raises:
            ScoringCommitError: the transaction failed and was rolled back
        """
        try:
            response = self.supabase.rpc('apply_bargain_scores', {
                'p_scores': [s.to_payload() for s in scores],
            }).execute()
        except Exception as e:
            raise ScoringCommitError(f"Score commit rolled back: {e}") from e

        data = response.data
        if isinstance(data, list):
            data = data[0] if data else {}
        return int((data or {}).get('detections_inserted') or 0)

    async def run(self, dry_run: bool = False, top_n: int = 20, today: Optional[date] = None) -> ScoringResult:
        """
        Score all active sale listings.

        Args:
            dry_run: Compute and report without writing
            top_n: Number of top scores to keep in the result
            today: Reference date for the transaction lookback

        Returns:
            ScoringResult
        """
        result = ScoringResult(dry_run=dry_run)

        listings = await self.load_listings()
        logger.info(f"Scoring {len(listings)} active sale listings")
        complex_ids = sorted({l['complex_id'] for l in listings if l.get('complex_id') is not None})
        transactions = await self.load_transactions(complex_ids, today)
        history = await self.load_history([l['id'] for l in listings])

        scores = self.compute(listings, transactions, history)
        result.scored = len(scores)
        counts = Counter()
        for score in scores:
            result.distribution[bucket_for(score.total)] += 1
            counts[score.bargain_type] += 1
        result.type_counts.update(counts)
        result.top = sorted(scores, key=lambda s: (-s.total, s.article_id))[:top_n]

        if dry_run:
            logger.info("Dry run: no scores written")
            return result

        result.detections_inserted = await self.commit(scores)
        result.committed = True
        logger.info(f"Committed {len(scores)} scores, {result.detections_inserted} new price detections")
        return result
