"""
Shared fixtures: an in-memory supabase client with the query-builder surface
the services use, a recording sleeper, fake listing sources and a fake
browser.
"""

import copy
import random
from typing import Any, Callable, Dict, List, Optional

import pytest

from harvest_config import build_config, set_config
from harvest_services.errors import SourceError
from harvest_services.land_sources import ListingSource, SourcePage
from harvest_services.listing_models import ListingRecord, PriceChange
from harvest_services.state_store import MemoryStateStore


# ----------------------------------------------------------------------
# Fake supabase client
# ----------------------------------------------------------------------

class FakeResponse:
    def __init__(self, data, count=None):
        self.data = data
        self.count = count


def _matches(row: Dict, filters: List) -> bool:
    for op, column, value in filters:
        current = row.get(column)
        if op == 'eq' and current != value:
            return False
        if op == 'neq' and current == value:
            return False
        if op == 'in' and current not in value:
            return False
        if op == 'is' and value == 'null' and current is not None:
            return False
        if op in ('gt', 'gte', 'lt', 'lte'):
            if current is None:
                return False
            if op == 'gt' and not current > value:
                return False
            if op == 'gte' and not current >= value:
                return False
            if op == 'lt' and not current < value:
                return False
            if op == 'lte' and not current <= value:
                return False
    return True


class FakeQuery:
    """Chainable builder over one table of a FakeSupabase"""

    def __init__(self, db: 'FakeSupabase', table: str):
        self.db = db
        self.table_name = table
        self.action = 'select'
        self.payload: Any = None
        self.filters: List = []
        self.orders: List = []
        self.limit_n: Optional[int] = None
        self.range_bounds = None
        self.count_mode = None
        self.on_conflict: Optional[str] = None
        self.ignore_duplicates = False

    # Actions
    def select(self, columns='*', count=None):
        self.action = 'select'
        self.count_mode = count
        return self

    def insert(self, rows):
        self.action, self.payload = 'insert', rows
        return self

    def upsert(self, rows, on_conflict=None, ignore_duplicates=False):
        self.action, self.payload = 'upsert', rows
        self.on_conflict = on_conflict
        self.ignore_duplicates = ignore_duplicates
        return self

    def update(self, values):
        self.action, self.payload = 'update', values
        return self

    def delete(self):
        self.action = 'delete'
        return self

    # Filters
    def eq(self, column, value):
        self.filters.append(('eq', column, value))
        return self

    def neq(self, column, value):
        self.filters.append(('neq', column, value))
        return self

    def in_(self, column, values):
        self.filters.append(('in', column, list(values)))
        return self

    def is_(self, column, value):
        self.filters.append(('is', column, value))
        return self

    def gt(self, column, value):
        self.filters.append(('gt', column, value))
        return self

    def gte(self, column, value):
        self.filters.append(('gte', column, value))
        return self

    def lt(self, column, value):
        self.filters.append(('lt', column, value))
        return self

    def lte(self, column, value):
        self.filters.append(('lte', column, value))
        return self

    def order(self, column, desc=False):
        self.orders.append((column, desc))
        return self

    def limit(self, n):
        self.limit_n = n
        return self

    def range(self, start, end):
        self.range_bounds = (start, end)
        return self

    def execute(self):
        self.db.check_failure(self.table_name, self.action)
        rows = self.db.tables.setdefault(self.table_name, [])
        handler = getattr(self, f"_execute_{self.action}")
        return handler(rows)

    def _execute_select(self, rows):
        result = [row for row in rows if _matches(row, self.filters)]
        for column, desc in reversed(self.orders):
            result.sort(key=lambda r: (r.get(column) is None, r.get(column)), reverse=desc)
        count = len(result) if self.count_mode else None
        if self.range_bounds is not None:
            start, end = self.range_bounds
            result = result[start:end + 1]
        if self.limit_n is not None:
            result = result[:self.limit_n]
        return FakeResponse([copy.deepcopy(r) for r in result], count)

    def _execute_insert(self, rows):
        payload = self.payload if isinstance(self.payload, list) else [self.payload]
        inserted = [self.db.add_row(self.table_name, row) for row in payload]
        return FakeResponse([copy.deepcopy(r) for r in inserted])

    def _execute_upsert(self, rows):
        payload = self.payload if isinstance(self.payload, list) else [self.payload]
        keys = [k.strip() for k in (self.on_conflict or 'id').split(',')]
        written = []
        for new in payload:
            existing = next(
                (r for r in rows if all(r.get(k) == new.get(k) for k in keys) and all(k in new for k in keys)),
                None
            )
            if existing is None:
                written.append(self.db.add_row(self.table_name, new))
            elif not self.ignore_duplicates:
                existing.update(copy.deepcopy(new))
                written.append(existing)
        return FakeResponse([copy.deepcopy(r) for r in written])

    def _execute_update(self, rows):
        updated = []
        for row in rows:
            if _matches(row, self.filters):
                row.update(copy.deepcopy(self.payload))
                updated.append(row)
        return FakeResponse([copy.deepcopy(r) for r in updated])

    def _execute_delete(self, rows):
        deleted = [row for row in rows if _matches(row, self.filters)]
        self.db.tables[self.table_name] = [row for row in rows if not _matches(row, self.filters)]
        return FakeResponse([copy.deepcopy(r) for r in deleted])


class FakeRpc:
    def __init__(self, db: 'FakeSupabase', name: str, params: Dict):
        self.db = db
        self.name = name
        self.params = params

    def execute(self):
        self.db.check_failure('rpc', self.name)
        handler = self.db.rpc_handlers[self.name]
        return FakeResponse(handler(self.db, self.params))


def apply_bargain_scores(db: 'FakeSupabase', params: Dict):
    """In-memory version of the apply_bargain_scores SQL function"""
    articles = {row['id']: row for row in db.tables.setdefault('articles', [])}
    detections = db.tables.setdefault('bargain_detections', [])
    updated, inserted = 0, 0
    for score in params['p_scores']:
        article = articles.get(score['article_id'])
        if article is None:
            continue
        article.update({
            'bargain_score': score['bargain_score'],
            'score_factors': copy.deepcopy(score['score_factors']),
            'bargain_type': score['bargain_type'],
            'is_bargain': score['is_bargain'],
        })
        updated += 1
        if score['bargain_type'] in ('price', 'both'):
            exists = any(d['article_id'] == article['id'] and d['detection_type'] == 'price' for d in detections)
            if not exists:
                db.add_row('bargain_detections', {
                    'article_id': article['id'],
                    'complex_id': article.get('complex_id'),
                    'detection_type': 'price',
                    'deal_price': article.get('deal_price'),
                    'bargain_score': score['bargain_score'],
                })
                inserted += 1
    return [{'articles_updated': updated, 'detections_inserted': inserted}]


class FakeSupabase:
    """
    In-memory stand-in for the supabase client.

    Rows are plain dicts with an auto-increment `id`. fail(table, action)
    makes the next matching call raise.
    """

    def __init__(self):
        self.tables: Dict[str, List[Dict]] = {}
        self._next_id: Dict[str, int] = {}
        self._failures: Dict[tuple, int] = {}
        self.rpc_handlers: Dict[str, Callable] = {'apply_bargain_scores': apply_bargain_scores}

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def rpc(self, name: str, params: Dict) -> FakeRpc:
        return FakeRpc(self, name, params)

    def add_row(self, table: str, row: Dict) -> Dict:
        row = copy.deepcopy(row)
        if row.get('id') is None:
            self._next_id[table] = self._next_id.get(table, 0) + 1
            row['id'] = self._next_id[table]
        else:
            self._next_id[table] = max(self._next_id.get(table, 0), row['id'])
        self.tables.setdefault(table, []).append(row)
        return row

    def seed(self, table: str, rows: List[Dict]) -> List[Dict]:
        return [self.add_row(table, row) for row in rows]

    def rows(self, table: str, **filters) -> List[Dict]:
        return [
            r for r in self.tables.get(table, [])
            if all(r.get(k) == v for k, v in filters.items())
        ]

    def fail(self, table: str, action: str, times: int = 1) -> None:
        self._failures[(table, action)] = times

    def check_failure(self, table: str, action: str) -> None:
        remaining = self._failures.get((table, action), 0)
        if remaining:
            self._failures[(table, action)] = remaining - 1
            raise RuntimeError(f"simulated {action} failure on {table}")


# ----------------------------------------------------------------------
# Sleeper and sources
# ----------------------------------------------------------------------

class RecordingSleeper:
    """Async sleep replacement that only records durations"""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def make_listing(article_no, price=500000000, space=84.0, description=None, keyword=None,
                 complex_name=None, price_changes=None, trade_type='A1') -> ListingRecord:
    return ListingRecord(
        article_no=str(article_no),
        trade_type=trade_type,
        deal_price=price if trade_type == 'A1' else None,
        warranty_price=price if trade_type != 'A1' else None,
        exclusive_space=space,
        target_floor=5,
        total_floor=15,
        description=description,
        complex_name=complex_name,
        bargain_keyword=keyword,
        price_changes=[PriceChange(*pc) for pc in (price_changes or [])],
    )


class FakeSource(ListingSource):
    """
    Page-numbered listing source over an in-memory scope map.

    failures[(scope_id, page_no)] is a list of exceptions raised, in order,
    before the page is served.
    """

    name = 'fake'

    def __init__(self, scopes: Optional[Dict[str, List[ListingRecord]]] = None, page_size: int = 2,
                 declared: Optional[Dict[str, int]] = None):
        self.scopes = scopes or {}
        self.page_size = page_size
        self.declared = declared or {}
        self.failures: Dict[tuple, List[Exception]] = {}
        self.count_failures = set()
        self.calls: List[tuple] = []

    async def fetch_page(self, query, page_no, cursor=None):
        self.calls.append((query.scope_id, page_no))
        queue = self.failures.get((query.scope_id, page_no))
        if queue:
            raise queue.pop(0)
        items = self.scopes.get(query.scope_id, [])
        start = (page_no - 1) * self.page_size
        return SourcePage(
            items=list(items[start:start + self.page_size]),
            total_count=self.declared.get(query.scope_id, len(items)),
            has_more=start + self.page_size < len(items),
        )

    async def count_articles(self, hscp_no):
        if hscp_no in self.count_failures:
            raise SourceError(f"count failed for {hscp_no}")
        return self.declared.get(hscp_no, len(self.scopes.get(hscp_no, [])))


class FakePage:
    """Playwright page stand-in; evaluate() answers from a handler"""

    def __init__(self, handler: Optional[Callable] = None, healthy: bool = True):
        self.handler = handler or (lambda script, arg: 1)
        self.healthy = healthy
        self.visited: List[str] = []

    def set_default_navigation_timeout(self, timeout):
        self.timeout = timeout

    async def goto(self, url, wait_until=None):
        self.visited.append(url)

    async def evaluate(self, script, arg=None):
        if not self.healthy:
            raise RuntimeError("Target page has been closed")
        return self.handler(script, arg)


class FakeContext:
    def __init__(self, page: FakePage):
        self.page = page

    async def new_page(self):
        return self.page


class FakeBrowser:
    def __init__(self, page: FakePage):
        self.page = page
        self.closed = False

    async def new_context(self):
        return FakeContext(self.page)

    async def close(self):
        self.closed = True


# ----------------------------------------------------------------------
# Fixtures
# ----------------------------------------------------------------------

FAST_RATE_LIMIT = {
    'base_delay': 0.0, 'max_delay': 0.0, 'throttle_step': 0.0, 'delay_decay': 0.0,
    'short_cooldown': 0.0, 'medium_cooldown': 0.0, 'long_cooldown': 0.0, 'post_cooldown_offset': 0.0,
    'batch_rest': 0.0, 'batch_rest_jitter': 0.0, 'error_backoff': 0.0,
}


def fast_config(**overrides):
    """Configuration with every delay at zero"""
    sources = {
        name: {'rate_limit': dict(FAST_RATE_LIMIT), 'round_pause': 0.0, 'page_size': 2, 'max_pages': 10}
        for name in ('mobile_land', 'mobile_tiles', 'fin_land', 'regions', 'transactions')
    }
    yaml_config = {
        'sources': sources,
        'reconcile': {'progress_every': 1},
        'transactions': {'error_pause': 0.0, 'error_long_pause': 0.0},
        'browser': {'warmup_wait': 0.0},
    }
    yaml_config.update(overrides)
    return build_config(yaml_config)


@pytest.fixture
def config():
    cfg = fast_config()
    set_config(cfg)
    return cfg


@pytest.fixture
def supabase():
    return FakeSupabase()


@pytest.fixture
def sleeper():
    return RecordingSleeper()


@pytest.fixture
def rng():
    return random.Random(42)


@pytest.fixture
def state_store():
    return MemoryStateStore()
