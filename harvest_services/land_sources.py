"""
Listing Sources

Two sources feed the harvester:

- MobileLandClient: request-based mobile endpoints (page-numbered complex
  listings, tile article lists). Blocking requests calls run in a worker
  thread through asyncio.to_thread.
- FinLandClient: cursor-paged complex listings, count checks and complex
  transaction samples, executed inside the shared BrowserSession.

RegionClient walks the region hierarchy for complex discovery.

Sources raise ThrottledError on a throttle signal, TransientSourceError on
network hiccups and SourceError on any other failure; retry policy belongs
to the harvester.
"""

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional, Sequence

import requests

from harvest_config.collector_config import SourceSettings
from .browser_session import BrowserSession
from .errors import SourceError, ThrottledError, TransientSourceError
from .listing_models import (
    ListingQuery,
    ListingRecord,
    ScopeKind,
    SortOrder,
    listing_from_fin,
    listing_from_mobile,
)

logger = logging.getLogger(__name__)


@dataclass
class SourcePage:
    """One page of a scope"""
    items: List[ListingRecord] = field(default_factory=list)
    total_count: Optional[int] = None  # None when the source does not declare a total
    has_more: bool = False
    cursor: Any = None


class ListingSource(ABC):
    """Page-at-a-time listing source"""

    name = 'source'
    default_sort = SortOrder.PRICE

    def trade_scope(self, query: ListingQuery) -> Optional[FrozenSet[str]]:
        """Trade types a scan of `query` returns; None when the source returns all of them"""
        return None

    @abstractmethod
    async def fetch_page(self, query: ListingQuery, page_no: int, cursor: Any = None) -> SourcePage:
        ...


class _JsonHttpClient:
    """Shared requests plumbing: rotating user agent, throttle detection"""

    def __init__(self, base_url: str, timeout: int, throttle_statuses: Sequence[int],
                 user_agents: Sequence[str], http: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.throttle_statuses = set(throttle_statuses)
        self.user_agents = list(user_agents)
        self.session = http or requests.Session()
        self.session.headers.update({
            'Accept': 'application/json, text/plain, */*',
            'Accept-Language': 'ko-KR,ko;q=0.9,en-US;q=0.8',
        })

    def _headers(self) -> Dict[str, str]:
        headers = {}
        if self.user_agents:
            headers['User-Agent'] = random.choice(self.user_agents)
        return headers

    def _get_json(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.get(
                url,
                params=params,
                headers=self._headers(),
                timeout=self.timeout,
                allow_redirects=False
            )
        except requests.RequestException as e:
            raise TransientSourceError(f"Request to {path} failed: {e}") from e

        if response.status_code in self.throttle_statuses:
            raise ThrottledError(f"HTTP {response.status_code} from {path}", response.status_code)
        if response.status_code >= 300:
            raise SourceError(f"HTTP {response.status_code} from {path}", response.status_code)
        try:
            return response.json()
        except ValueError as e:
            raise SourceError(f"Invalid JSON from {path}: {e}", response.status_code) from e

    async def get_json(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        return await asyncio.to_thread(self._get_json, path, params)


def _to_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


class MobileLandClient(ListingSource):
    """Request-based mobile listing source"""

    name = 'mobile_land'
    default_sort = SortOrder.PRICE

    def __init__(
        self,
        settings: SourceSettings,
        keywords: Sequence[str],
        user_agents: Sequence[str] = (),
        zoom: int = 13,
        http: Optional[requests.Session] = None
    ):
        self.settings = settings
        self.keywords = list(keywords)
        self.zoom = zoom
        self.client = _JsonHttpClient(
            settings.base_url, settings.request_timeout, settings.throttle_statuses, user_agents, http
        )

    def trade_scope(self, query: ListingQuery) -> Optional[FrozenSet[str]]:
        return frozenset([query.trade_type.value])

    async def fetch_page(self, query: ListingQuery, page_no: int, cursor: Any = None) -> SourcePage:
        if query.scope_kind == ScopeKind.CELL:
            return await self._fetch_cell_page(query, page_no)
        return await self._fetch_complex_page(query, page_no)

    async def _fetch_complex_page(self, query: ListingQuery, page_no: int) -> SourcePage:
        data = await self.client.get_json('/complex/getComplexArticleList', {
            'hscpNo': query.scope_id,
            'tradTpCd': query.trade_type.value,
            'order': query.sort.value,
            'showR0': 'N',
            'page': page_no,
        })
        result = data.get('result')
        if not result:
            return SourcePage(items=[], total_count=0, has_more=False)

        raw_items = result.get('list') or []
        total = _to_int(result.get('totAtclCnt'))
        page_size = self.settings.page_size
        items = [
            listing_from_mobile(item, query.trade_type.value, self.keywords)
            for item in raw_items if item.get('atclNo')
        ]
        return SourcePage(
            items=items,
            total_count=total,
            has_more=len(raw_items) == page_size and page_no * page_size < total,
        )

    async def _fetch_cell_page(self, query: ListingQuery, page_no: int) -> SourcePage:
        if not query.bbox:
            raise SourceError(f"Cell query {query.scope_id} has no bounding box")
        bottom, left, top, right = query.bbox
        data = await self.client.get_json('/cluster/ajax/articleList', {
            'rletTpCd': query.property_type_param,
            'tradTpCd': query.trade_type.value,
            'z': self.zoom,
            'lat': (bottom + top) / 2,
            'lon': (left + right) / 2,
            'btm': bottom,
            'lft': left,
            'top': top,
            'rgt': right,
            'sort': query.sort.value,
            'page': page_no,
        })
        raw_items = data.get('body') or []
        items = [
            listing_from_mobile(item, query.trade_type.value, self.keywords)
            for item in raw_items if item.get('atclNo')
        ]
        return SourcePage(items=items, total_count=None, has_more=bool(data.get('more')))


class RegionClient:
    """Region hierarchy and per-district complex lists"""

    def __init__(self, base_url: str, user_agents: Sequence[str] = (), timeout: int = 30,
                 throttle_statuses: Sequence[int] = (302, 307, 429),
                 http: Optional[requests.Session] = None):
        self.client = _JsonHttpClient(base_url, timeout, throttle_statuses, user_agents, http)

    async def list_regions(self, cortar_no: str) -> List[Dict[str, Any]]:
        """Child regions of a region code ({cortarNo, cortarName, ...})"""
        data = await self.client.get_json('/api/regions/list', {'cortarNo': cortar_no})
        return data.get('regionList') or []

    async def list_complexes(self, cortar_no: str, real_estate_type: str) -> List[Dict[str, Any]]:
        data = await self.client.get_json('/api/regions/complexes', {
            'cortarNo': cortar_no,
            'realEstateType': real_estate_type,
            'order': '',
        })
        return data.get('complexList') or []


# Scripts executed in the browser page. Each returns a plain object so
# failures come back as data rather than page exceptions.

ARTICLE_LIST_SCRIPT = """
async ({ complexNumber, lastInfo, size, sortType }) => {
  try {
    const res = await fetch('/front-api/v1/complex/article/list', {
      method: 'POST',
      headers: { 'Content-Type': 'application/json' },
      body: JSON.stringify({
        complexNumber: String(complexNumber),
        tradeTypes: [], pyeongTypes: [], dongNumbers: [],
        size, articleSortType: sortType, lastInfo,
      }),
    });
    if (!res.ok) return { ok: false, status: res.status, error: `HTTP_${res.status}` };
    const data = await res.json();
    if (!data.isSuccess) return { ok: false, status: res.status, error: data.detailCode || 'API_ERROR' };
    return {
      ok: true,
      totalCount: data.result?.totalCount || 0,
      hasNextPage: data.result?.hasNextPage || false,
      articles: data.result?.list || [],
      lastInfo: data.result?.lastInfo || [],
    };
  } catch (e) {
    return { ok: false, status: 0, error: e.message };
  }
}
"""

REAL_PRICE_SCRIPT = """
async ({ complexNumber, count }) => {
  const fetchPyeong = async (pn) => {
    try {
      const r = await fetch(
        `/front-api/v1/complex/pyeong/realPrice?complexNumber=${complexNumber}&pyeongTypeNumber=${pn}&page=1&size=${count}&tradeType=A1`
      );
      if (r.status === 429) return { throttled: true, list: [] };
      if (!r.ok) return { throttled: false, list: [] };
      const d = await r.json();
      return { throttled: false, list: (d.result?.list || []).filter(i => !i.isDelete && i.floor) };
    } catch { return { throttled: false, list: [] }; }
  };
  const txs = [];
  let throttled = false;
  const collect = (results) => {
    for (const res of results) {
      throttled = throttled || res.throttled;
      for (const item of res.list) {
        if (txs.length >= count) return;
        txs.push({ tradeDate: item.tradeDate, dealPrice: item.dealPrice, floor: item.floor });
      }
    }
  };
  collect([await fetchPyeong(1)]);
  if (txs.length < count) collect(await Promise.all([2, 3, 4, 5].map(fetchPyeong)));
  if (txs.length === 0) collect(await Promise.all([6, 7, 8, 9, 10].map(fetchPyeong)));
  return { throttled: throttled && txs.length === 0, transactions: txs };
}
"""


class FinLandClient(ListingSource):
    """Cursor-paged listing source executed inside the browser session"""

    name = 'fin_land'
    default_sort = SortOrder.RANKING

    def __init__(self, session: BrowserSession, settings: SourceSettings, keywords: Sequence[str]):
        self.session = session
        self.settings = settings
        self.keywords = list(keywords)
        self.throttle_statuses = set(settings.throttle_statuses)

    async def _article_list(self, complex_number: str, last_info: Any, size: int, sort: SortOrder) -> Dict[str, Any]:
        result = await self.session.evaluate(ARTICLE_LIST_SCRIPT, {
            'complexNumber': str(complex_number),
            'lastInfo': last_info or [],
            'size': size,
            'sortType': sort.value,
        })
        if result.get('ok'):
            return result

        status = result.get('status') or 0
        error = result.get('error') or 'unknown error'
        if status in self.throttle_statuses or 'TOO_MANY' in error or 'RATE_LIMIT' in error:
            raise ThrottledError(f"Throttled on complex {complex_number}: {error}", status)
        if status == 0:
            raise TransientSourceError(f"Fetch failed on complex {complex_number}: {error}")
        raise SourceError(f"Article list failed on complex {complex_number}: {error}", status)

    async def fetch_page(self, query: ListingQuery, page_no: int, cursor: Any = None) -> SourcePage:
        if query.scope_kind != ScopeKind.COMPLEX:
            raise SourceError(f"{self.name} only supports complex scopes")
        sort = query.sort if query.sort == SortOrder.RANKING else self.default_sort
        result = await self._article_list(query.scope_id, cursor, self.settings.page_size, sort)
        items = [listing_from_fin(item, self.keywords) for item in result.get('articles') or []]
        return SourcePage(
            items=[i for i in items if i.article_no and i.article_no != 'None'],
            total_count=_to_int(result.get('totalCount')),
            has_more=bool(result.get('hasNextPage')),
            cursor=result.get('lastInfo') or [],
        )

    async def count_articles(self, hscp_no: str) -> int:
        """Declared listing total for one complex (size-1 request)"""
        result = await self._article_list(hscp_no, [], 1, self.default_sort)
        return _to_int(result.get('totalCount'))

    async def sample_transactions(self, hscp_no: str, count: int = 20) -> List[Dict[str, Any]]:
        """
        Recent completed sales of a complex: [{tradeDate, dealPrice, floor}].

        Area type 1 is tried first, then 2-5, then 6-10 when still empty.
        """
        result = await self.session.evaluate(REAL_PRICE_SCRIPT, {
            'complexNumber': str(hscp_no),
            'count': count,
        })
        if result.get('throttled'):
            raise ThrottledError(f"Throttled sampling complex {hscp_no}", 429)
        return result.get('transactions') or []
