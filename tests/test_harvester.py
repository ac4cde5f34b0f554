"""
Tests for the paging harvester and the concurrent batch harvester.
"""

import pytest

from conftest import FAST_RATE_LIMIT, FakeSource, make_listing
from harvest_config import RateLimitSettings, SourceSettings
from harvest_services.errors import (
    MissingCredentialError,
    SourceError,
    ThrottledError,
    TransientSourceError,
)
from harvest_services.harvester import (
    OUTCOME_EXHAUSTED,
    OUTCOME_OK,
    OUTCOME_SKIPPED,
    BatchHarvester,
    Harvester,
)
from harvest_services.listing_models import ListingQuery
from harvest_services.rate_limiter import RateLimiter


def make_harvester(source, sleeper, max_pages=10, max_attempts=3):
    rate_limit = RateLimitSettings(**{**FAST_RATE_LIMIT, 'max_attempts': max_attempts})
    settings = SourceSettings(name='fake', base_url='', max_pages=max_pages, rate_limit=rate_limit)
    limiter = RateLimiter(rate_limit, sleep=sleeper, name='fake')
    return Harvester(source, limiter, settings)


def listings(*numbers):
    return [make_listing(n) for n in numbers]


class TestHarvester:

    @pytest.mark.asyncio
    async def test_pages_until_source_reports_no_more(self, sleeper):
        source = FakeSource({'1001': listings(1, 2, 3, 4, 5)})
        harvester = make_harvester(source, sleeper)

        result = await harvester.harvest(ListingQuery.for_complex('1001'))

        assert [i.article_no for i in result.items] == ['1', '2', '3', '4', '5']
        assert result.pages == 3
        assert result.total_count == 5
        assert result.outcome == OUTCOME_OK
        assert result.is_complete

    @pytest.mark.asyncio
    async def test_empty_scope_is_complete(self, sleeper):
        harvester = make_harvester(FakeSource({}), sleeper)

        result = await harvester.harvest(ListingQuery.for_complex('404'))

        assert result.items == []
        assert result.is_complete

    @pytest.mark.asyncio
    async def test_result_carries_source_trade_scope(self, sleeper):
        source = FakeSource({'1001': listings('A')})
        source.trade_scope = lambda query: frozenset([query.trade_type.value])

        result = await make_harvester(source, sleeper).harvest(ListingQuery.for_complex('1001'))

        assert result.trade_types == frozenset(['A1'])
        assert (await make_harvester(FakeSource({}), sleeper).harvest(
            ListingQuery.for_complex('1001'))).trade_types is None

    @pytest.mark.asyncio
    async def test_throttled_page_is_retried(self, sleeper):
        source = FakeSource({'1001': listings(1, 2, 3)})
        source.failures[('1001', 2)] = [ThrottledError('429', 429)]
        harvester = make_harvester(source, sleeper)

        result = await harvester.harvest(ListingQuery.for_complex('1001'))

        assert len(result.items) == 3
        assert result.is_complete
        assert harvester.limiter.stats.total_throttles == 1
        assert source.calls == [('1001', 1), ('1001', 2), ('1001', 2)]

    @pytest.mark.asyncio
    async def test_transient_error_is_retried(self, sleeper):
        source = FakeSource({'1001': listings(1)})
        source.failures[('1001', 1)] = [TransientSourceError('connection reset')]
        harvester = make_harvester(source, sleeper)

        result = await harvester.harvest(ListingQuery.for_complex('1001'))

        assert result.is_complete
        assert len(result.items) == 1

    @pytest.mark.asyncio
    async def test_scope_skipped_when_retries_run_out(self, sleeper):
        source = FakeSource({'1001': listings(1, 2, 3)})
        source.failures[('1001', 2)] = [ThrottledError('429', 429) for _ in range(3)]
        harvester = make_harvester(source, sleeper, max_attempts=3)

        result = await harvester.harvest(ListingQuery.for_complex('1001'))

        assert result.outcome == OUTCOME_SKIPPED
        assert not result.is_complete
        assert [i.article_no for i in result.items] == ['1', '2']
        assert 'retries exhausted' in result.error

    @pytest.mark.asyncio
    async def test_page_cap_marks_scope_exhausted(self, sleeper):
        source = FakeSource({'1001': listings(1, 2, 3, 4, 5)})
        harvester = make_harvester(source, sleeper, max_pages=2)

        result = await harvester.harvest(ListingQuery.for_complex('1001'))

        assert result.outcome == OUTCOME_EXHAUSTED
        assert len(result.items) == 4
        assert not result.is_complete

    @pytest.mark.asyncio
    async def test_max_pages_argument_overrides_settings(self, sleeper):
        source = FakeSource({'1001': listings(1, 2, 3, 4, 5)})
        harvester = make_harvester(source, sleeper, max_pages=10)

        result = await harvester.harvest(ListingQuery.for_complex('1001'), max_pages=1)

        assert result.outcome == OUTCOME_EXHAUSTED
        assert result.pages == 1

    @pytest.mark.asyncio
    async def test_source_error_stops_scope_and_counts_error(self, sleeper):
        source = FakeSource({'1001': listings(1, 2, 3)})
        source.failures[('1001', 2)] = [SourceError('HTTP 500', 500)]
        harvester = make_harvester(source, sleeper)

        result = await harvester.harvest(ListingQuery.for_complex('1001'))

        assert result.errors == 1
        assert result.error == 'HTTP 500'
        assert len(result.items) == 2
        assert not result.is_complete
        assert source.calls == [('1001', 1), ('1001', 2)]

    @pytest.mark.asyncio
    async def test_stop_at_known_item(self, sleeper):
        source = FakeSource({'cell': listings(30, 29, 28, 27)})
        harvester = make_harvester(source, sleeper)

        result = await harvester.harvest(
            ListingQuery.for_complex('cell'),
            stop_at=lambda item: int(item.article_no) <= 28
        )

        assert [i.article_no for i in result.items] == ['30', '29']
        assert result.stopped_at_known is True
        assert source.calls == [('cell', 1), ('cell', 2)]


class TestBatchHarvester:

    def make_batcher(self, sleeper, batch_size=2, max_attempts=3):
        rate_limit = RateLimitSettings(**{**FAST_RATE_LIMIT, 'max_attempts': max_attempts})
        return BatchHarvester(RateLimiter(rate_limit, sleep=sleeper), batch_size=batch_size, round_pause=0)

    @pytest.mark.asyncio
    async def test_collects_results_per_key(self, sleeper):
        batcher = self.make_batcher(sleeper)

        async def fetch(key):
            return key * 10

        result = await batcher.run([1, 2, 3], fetch)

        assert result.results == {1: 10, 2: 20, 3: 30}
        assert result.failed == {}
        assert result.rounds == 2

    @pytest.mark.asyncio
    async def test_only_throttled_units_are_retried(self, sleeper):
        batcher = self.make_batcher(sleeper)
        attempts = {}

        async def fetch(key):
            attempts[key] = attempts.get(key, 0) + 1
            if key == 'b' and attempts[key] == 1:
                raise ThrottledError('429', 429)
            return key.upper()

        result = await batcher.run(['a', 'b'], fetch)

        assert result.results == {'a': 'A', 'b': 'B'}
        assert attempts == {'a': 1, 'b': 2}
        assert result.throttled_rounds == 1
        assert batcher.limiter.stats.total_throttles == 1

    @pytest.mark.asyncio
    async def test_source_error_fails_unit_without_retry(self, sleeper):
        batcher = self.make_batcher(sleeper)
        calls = []

        async def fetch(key):
            calls.append(key)
            if key == 'bad':
                raise SourceError('HTTP 404', 404)
            return key

        result = await batcher.run(['ok', 'bad'], fetch)

        assert result.results == {'ok': 'ok'}
        assert result.failed == {'bad': 'HTTP 404'}
        assert calls == ['ok', 'bad']

    @pytest.mark.asyncio
    async def test_retry_budget_exhausted(self, sleeper):
        batcher = self.make_batcher(sleeper, max_attempts=2)

        async def fetch(key):
            raise ThrottledError('429', 429)

        result = await batcher.run(['x'], fetch)

        assert result.failed == {'x': 'retries exhausted'}

    @pytest.mark.asyncio
    async def test_on_batch_receives_each_round(self, sleeper):
        batcher = self.make_batcher(sleeper, batch_size=2)
        batches = []

        async def fetch(key):
            return key

        async def on_batch(results):
            batches.append(sorted(results))

        await batcher.run([1, 2, 3], fetch, on_batch=on_batch)

        assert batches == [[1, 2], [3]]

    @pytest.mark.asyncio
    async def test_setup_error_aborts(self, sleeper):
        batcher = self.make_batcher(sleeper)

        async def fetch(key):
            raise MissingCredentialError('no key')

        with pytest.raises(MissingCredentialError):
            await batcher.run(['x'], fetch)
