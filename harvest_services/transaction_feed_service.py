"""
Government Transaction Feed Service

Ingests the public apartment sale dataset into real_transactions. Work is a
list of (administrative code, year-month) tasks; each task pages through the
XML feed and inserts its rows, ignoring rows already stored under the
natural key.

The feed allows a fixed number of calls per day. The run stops cleanly a
margin below the limit so the remaining tasks can be resumed the next day.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from datetime import date
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import requests
from bs4 import BeautifulSoup
from supabase import Client

from harvest_config import CollectorConfig, get_config
from .db_utils import chunked, fetch_all_rows
from .errors import (
    CollectorError,
    MissingCredentialError,
    SourceError,
    ThrottledError,
    TransientSourceError,
)
from .rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

NATURAL_KEY = 'sgg_cd,apt_nm,exclu_use_ar,deal_year,deal_month,deal_day,floor,deal_amount'
OK_RESULT_CODES = ('0', '00', '000')

# feed tag -> real_transactions column
TEXT_FIELDS = {
    'umdNm': 'umd_nm',
    'jibun': 'jibun',
    'aptDong': 'apt_dong',
    'dealingGbn': 'dealing_gbn',
    'buyerGbn': 'buyer_gbn',
    'slerGbn': 'sler_gbn',
    'estateAgentSggNm': 'estate_agent_sgg_nm',
    'cdealType': 'cdeal_type',
    'cdealDay': 'cdeal_day',
    'landLeaseholdGbn': 'land_leasehold_gbn',
    'rgstDate': 'rgst_date',
}
INT_FIELDS = {
    'floor': 'floor',
    'buildYear': 'build_year',
    'dealDay': 'deal_day',
}

OnTask = Callable[[str, 'TaskOutcome'], Awaitable[None]]


class DailyLimitReached(CollectorError):
    """The feed's daily call budget (minus the safety margin) is used up"""


@dataclass
class TaskOutcome:
    """Result of one (sgg_cd, year-month) task"""
    key: str
    fetched: int = 0
    inserted: int = 0
    duplicates: int = 0
    total_count: int = 0
    error: Optional[str] = None


@dataclass
class TransactionFeedResult:
    """Aggregate outcome of a feed run"""
    tasks: int = 0
    completed: int = 0
    fetched: int = 0
    inserted: int = 0
    duplicates: int = 0
    errors: int = 0
    api_calls: int = 0
    limit_reached: bool = False


def month_list(today: date, months: int) -> List[str]:
    """YYYYMM strings from the current month backwards"""
    result = []
    year, month = today.year, today.month
    for _ in range(max(months, 0)):
        result.append(f"{year}{month:02d}")
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    return result


def task_key(sgg_cd: str, deal_ymd: str) -> str:
    return f"{sgg_cd}_{deal_ymd}"


def build_tasks(sgg_codes: List[str], months: List[str], resume_after: Optional[str] = None) -> List[Tuple[str, str]]:
    """
    Ordered (sgg_cd, YYYYMM) tasks. Keys are fixed width, so ordering by key
    is stable and resume can compare keys directly.
    """
    tasks = sorted({(str(sgg), str(ym)) for sgg in sgg_codes for ym in months})
    if resume_after:
        tasks = [t for t in tasks if task_key(*t) > resume_after]
    return tasks


def parse_deal_amount(text: Optional[str]) -> Optional[int]:
    """'82,500' -> 82500 (10,000 won units)"""
    if not text:
        return None
    try:
        return int(text.replace(',', '').strip())
    except ValueError:
        return None


def _to_int(value: Optional[str]) -> Optional[int]:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def _to_float(value: Optional[str]) -> Optional[float]:
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        return None


def parse_feed_page(text: str) -> Tuple[List[Dict[str, str]], int]:
    """
    Parse one XML response.

    Args:
        text: Response body

    Returns:
        (items as tag -> text dicts, declared totalCount)

    Raises:
        ThrottledError: the body is an HTML block page
        SourceError: the result code is not a success code
    """
    head = text.lstrip()[:20].upper()
    if head.startswith('<!DOCTYPE') or head.startswith('<HTML'):
        raise ThrottledError("WAF blocked (HTML response)")

    soup = BeautifulSoup(text, 'xml')
    header = soup.find('header')
    code_tag = header.find('resultCode') if header else soup.find('resultCode')
    code = code_tag.get_text(strip=True) if code_tag else ''
    if code not in OK_RESULT_CODES:
        msg_tag = soup.find('resultMsg')
        message = msg_tag.get_text(strip=True) if msg_tag else 'no result message'
        raise SourceError(f"API {code or '?'}: {message}")

    items = []
    for item in soup.find_all('item'):
        items.append({
            child.name: child.get_text(strip=True)
            for child in item.find_all(recursive=False)
        })
    total_tag = soup.find('totalCount')
    total = _to_int(total_tag.get_text(strip=True)) if total_tag else None
    return items, total or 0


def transaction_row(item: Dict[str, str], sgg_cd: str) -> Optional[Dict[str, Any]]:
    """Map one feed item to a real_transactions row (None when the key fields are missing)"""
    sgg = (item.get('sggCd') or sgg_cd or '').strip()
    apt_nm = (item.get('aptNm') or '').strip()
    deal_year = _to_int(item.get('dealYear'))
    deal_month = _to_int(item.get('dealMonth'))
    if not (sgg and apt_nm and deal_year and deal_month):
        return None

    amount_text = (item.get('dealAmount') or '').strip()
    row: Dict[str, Any] = {
        'sgg_cd': sgg,
        'apt_nm': apt_nm,
        'exclu_use_ar': _to_float(item.get('excluUseAr')),
        'deal_year': deal_year,
        'deal_month': deal_month,
        'deal_amount': parse_deal_amount(amount_text),
        'deal_amount_text': amount_text or None,
    }
    for tag, column in INT_FIELDS.items():
        row[column] = _to_int(item.get(tag))
    for tag, column in TEXT_FIELDS.items():
        value = (item.get(tag) or '').strip()
        row[column] = value or None
    return row


class TransactionFeedService:
    """
    Government sale feed ingestion.

    Args:
        supabase_client: Supabase client
        config: Collector configuration
        service_key: Feed API key (defaults to DATA_GO_KR_SERVICE_KEY)
        http: requests session
        limiter: RateLimiter for feed calls
    """

    def __init__(
        self,
        supabase_client: Client,
        config: Optional[CollectorConfig] = None,
        service_key: Optional[str] = None,
        http: Optional[requests.Session] = None,
        limiter: Optional[RateLimiter] = None
    ):
        self.supabase = supabase_client
        self.config = config or get_config()
        self.settings = self.config.transactions
        self.service_key = service_key or os.getenv('DATA_GO_KR_SERVICE_KEY')
        if not self.service_key:
            raise MissingCredentialError("DATA_GO_KR_SERVICE_KEY is not set")
        self.http = http or requests.Session()
        self.limiter = limiter or RateLimiter(
            self.config.get_source('transactions').rate_limit, name='transactions'
        )
        self.api_calls = 0

    @property
    def call_budget(self) -> int:
        return self.settings.daily_limit - self.settings.limit_margin

    async def load_sgg_codes(self) -> List[str]:
        """Distinct administrative codes of active complexes"""
        rows = fetch_all_rows(
            lambda: self.supabase.table('complexes').select('sgg_cd').eq('is_active', True).order('id')
        )
        return sorted({row['sgg_cd'] for row in rows if row.get('sgg_cd')})

    def _get(self, sgg_cd: str, deal_ymd: str, page_no: int) -> str:
        try:
            response = self.http.get(self.settings.base_url, params={
                'serviceKey': self.service_key,
                'LAWD_CD': sgg_cd,
                'DEAL_YMD': deal_ymd,
                'pageNo': page_no,
                'numOfRows': self.settings.rows_per_page,
            }, headers={'Accept': 'application/xml'}, timeout=self.settings.request_timeout)
        except requests.RequestException as e:
            raise TransientSourceError(f"Feed request failed: {e}") from e

        if response.status_code == 429:
            raise ThrottledError(f"HTTP 429 for {sgg_cd}/{deal_ymd}", 429)
        if response.status_code >= 500:
            raise TransientSourceError(f"HTTP {response.status_code} for {sgg_cd}/{deal_ymd}")
        if response.status_code >= 300:
            raise SourceError(f"HTTP {response.status_code} for {sgg_cd}/{deal_ymd}", response.status_code)
        return response.text

    async def fetch_page(self, sgg_cd: str, deal_ymd: str, page_no: int) -> Tuple[List[Dict[str, str]], int]:
        """One feed page, retried on throttles and transient errors"""
        max_attempts = self.limiter.settings.max_attempts
        last_error: Optional[Exception] = None

        for attempt in range(1, max_attempts + 1):
            if self.api_calls >= self.call_budget:
                raise DailyLimitReached(
                    f"Daily API budget reached ({self.api_calls}/{self.settings.daily_limit})"
                )
            await self.limiter.wait()
            self.api_calls += 1
            self.limiter.record_request()
            try:
                text = await asyncio.to_thread(self._get, sgg_cd, deal_ymd, page_no)
                page = parse_feed_page(text)
            except ThrottledError as e:
                last_error = e
                await self.limiter.on_throttle()
                continue
            except TransientSourceError as e:
                last_error = e
                logger.warning(f"{sgg_cd}/{deal_ymd} page {page_no} attempt {attempt}/{max_attempts}: {e}")
                await self.limiter.backoff_after_error()
                continue

            self.limiter.on_success()
            return page

        raise SourceError(f"Retries exhausted for {sgg_cd}/{deal_ymd} page {page_no}: {last_error}")

    async def fetch_all(self, sgg_cd: str, deal_ymd: str) -> Tuple[List[Dict[str, str]], int]:
        """Every page of one task"""
        items, total = await self.fetch_page(sgg_cd, deal_ymd, 1)
        rows_per_page = self.settings.rows_per_page
        pages = -(-total // rows_per_page) if total else 1
        for page_no in range(2, pages + 1):
            page_items, _ = await self.fetch_page(sgg_cd, deal_ymd, page_no)
            if not page_items:
                break
            items.extend(page_items)
        return items, total

    async def store(self, rows: List[Dict[str, Any]]) -> int:
        """Insert rows, ignoring natural-key duplicates. Returns rows inserted."""
        inserted = 0
        for batch in chunked(rows, self.settings.upsert_batch_size):
            response = self.supabase.table('real_transactions').upsert(
                batch, on_conflict=NATURAL_KEY, ignore_duplicates=True
            ).execute()
            inserted += len(response.data or [])
        return inserted

    async def run_task(self, sgg_cd: str, deal_ymd: str) -> TaskOutcome:
        outcome = TaskOutcome(key=task_key(sgg_cd, deal_ymd))
        items, outcome.total_count = await self.fetch_all(sgg_cd, deal_ymd)
        rows = [row for row in (transaction_row(item, sgg_cd) for item in items) if row is not None]
        outcome.fetched = len(rows)
        if rows:
            outcome.inserted = await self.store(rows)
            outcome.duplicates = len(rows) - outcome.inserted
        return outcome

    async def run(
        self,
        tasks: List[Tuple[str, str]],
        on_task: Optional[OnTask] = None
    ) -> TransactionFeedResult:
        """
        Run tasks in order until done or the daily budget is used up.

        Args:
            tasks: Ordered (sgg_cd, YYYYMM) pairs from build_tasks
            on_task: Awaited after each task with its key and outcome

        Returns:
            TransactionFeedResult
        """
        result = TransactionFeedResult(tasks=len(tasks))
        consecutive_errors = 0

        for index, (sgg_cd, deal_ymd) in enumerate(tasks, 1):
            key = task_key(sgg_cd, deal_ymd)
            try:
                outcome = await self.run_task(sgg_cd, deal_ymd)
            except DailyLimitReached as e:
                result.limit_reached = True
                logger.warning(f"{e}; resume tomorrow from after the last completed task")
                break
            except Exception as e:
                outcome = TaskOutcome(key=key, error=str(e))
                logger.error(f"Error collecting transactions {key}: {e}")

            if outcome.error:
                result.errors += 1
                consecutive_errors += 1
                if consecutive_errors >= self.settings.error_long_pause_after:
                    logger.warning(f"{consecutive_errors} consecutive errors, "
                                   f"pausing {self.settings.error_long_pause:.0f}s")
                    await self.limiter.pause(self.settings.error_long_pause)
                    consecutive_errors = 0
                elif consecutive_errors >= self.settings.error_pause_after:
                    await self.limiter.pause(self.settings.error_pause)
            else:
                consecutive_errors = 0
                result.completed += 1
                result.fetched += outcome.fetched
                result.inserted += outcome.inserted
                result.duplicates += outcome.duplicates
                logger.info(f"[{index}/{len(tasks)} API:{self.api_calls}] {key}: "
                            f"{outcome.total_count} rows, {outcome.inserted} new")

            if on_task is not None:
                await on_task(key, outcome)

        result.api_calls = self.api_calls
        logger.info(f"Transaction feed: {result.completed}/{result.tasks} tasks, {result.inserted} new, "
                    f"{result.duplicates} duplicates, {result.errors} errors, {result.api_calls} API calls")
        return result
