"""
Tests for the collection orchestrator: locking, the run ledger, checkpoints
and the job wiring.
"""

from datetime import date, datetime, timezone

import pytest

from conftest import FAST_RATE_LIMIT, FakeSource, fast_config, make_listing
from harvest_config import RateLimitSettings
from harvest_services.collection_orchestrator import CollectionOrchestrator
from harvest_services.discovery_service import DiscoveryService
from harvest_services.errors import RunLockHeldError, TargetNotFoundError
from harvest_services.rate_limiter import RateLimiter
from harvest_services.state_store import CheckpointStore, RunLock
from harvest_services.transaction_feed_service import TransactionFeedService

from test_discovery import FakeRegionClient
from test_transaction_feed import FakeFeed


def recent():
    return datetime.now(timezone.utc).isoformat()


@pytest.fixture
def collect_db(supabase):
    supabase.seed('complexes', [
        {'hscp_no': '1001', 'complex_name': '래미안', 'sgg_cd': '11680', 'is_active': True,
         'deal_count': 2, 'last_collected_at': recent()},
        {'hscp_no': '1002', 'complex_name': '자이', 'sgg_cd': '11680', 'is_active': True,
         'deal_count': 1, 'last_collected_at': recent()},
        {'hscp_no': '1003', 'complex_name': '힐스테이트', 'sgg_cd': '11650', 'is_active': True,
         'deal_count': 3, 'last_collected_at': recent()},
        {'hscp_no': '1004', 'complex_name': '철거단지', 'sgg_cd': '11650', 'is_active': False},
    ])
    return supabase


@pytest.fixture
def source():
    return FakeSource({
        '1001': [make_listing('a1'), make_listing('a2')],
        '1002': [make_listing('b1')],
        '1003': [make_listing('c1'), make_listing('c2'), make_listing('c3')],
    })


@pytest.fixture
def orchestrator(collect_db, config, state_store, source):
    return CollectionOrchestrator(collect_db, config, state_store, source=source)


def scanned(source):
    return sorted({scope for scope, _ in source.calls})


class TestCollect:

    @pytest.mark.asyncio
    async def test_full_collect_records_run(self, orchestrator, collect_db):
        result = await orchestrator.run_collect('full')

        assert result.targets == 3
        assert result.processed == 3
        assert result.counts.new == 6
        assert result.status == 'completed'
        run = collect_db.rows('collection_runs')[0]
        assert run['id'] == result.run_id
        assert run['run_type'] == 'collect'
        assert run['status'] == 'completed'
        assert run['complexes_scanned'] == 3
        assert run['articles_new'] == 6
        assert run['finished_at'] is not None

    @pytest.mark.asyncio
    async def test_held_lock_fails_fast(self, orchestrator, collect_db, config, state_store, source):
        RunLock(state_store, 'collect', config.state.lock_stale_seconds).acquire('incremental')

        with pytest.raises(RunLockHeldError):
            await orchestrator.run_collect('full')

        assert collect_db.rows('collection_runs') == []
        assert source.calls == []

    @pytest.mark.asyncio
    async def test_lock_released_after_run(self, orchestrator, state_store):
        await orchestrator.run_collect('incremental')

        assert state_store.get('lock:collect') is None

    @pytest.mark.asyncio
    async def test_resume_skips_processed_complexes(self, orchestrator, state_store, source):
        CheckpointStore(state_store).save('collect-incremental', '1001')

        result = await orchestrator.run_collect('incremental', resume=True)

        assert result.targets == 2
        assert scanned(source) == ['1002', '1003']

    @pytest.mark.asyncio
    async def test_checkpoint_cleared_on_completion(self, orchestrator, state_store):
        await orchestrator.run_collect('full')

        assert CheckpointStore(state_store).load('collect-full') is None

    @pytest.mark.asyncio
    async def test_limit_keeps_checkpoint(self, orchestrator, state_store, source):
        result = await orchestrator.run_collect('full', limit=2)

        assert result.targets == 2
        assert scanned(source) == ['1001', '1002']
        assert CheckpointStore(state_store).load('collect-full') == '1002'

    @pytest.mark.asyncio
    async def test_quick_rescans_changed_counts(self, orchestrator, source):
        source.declared['1002'] = 4
        source.count_failures.add('1003')

        result = await orchestrator.run_collect('quick')

        assert result.quick.checked == 3
        assert result.quick.mismatched == 1
        assert result.quick.errors == 1
        assert scanned(source) == ['1002']

    @pytest.mark.asyncio
    async def test_quick_count_failures_reach_the_run(self, orchestrator, collect_db, source):
        source.declared['1002'] = 4
        source.count_failures.update({'1001', '1003'})

        await orchestrator.run_collect('quick')

        run = collect_db.rows('collection_runs')[0]
        assert run['errors'] == 2
        assert run['total_targets'] == 3
        assert run['status'] == 'partial'

    @pytest.mark.asyncio
    async def test_single_mode_without_target(self, orchestrator, collect_db):
        with pytest.raises(TargetNotFoundError):
            await orchestrator.run_collect('single')

        assert collect_db.rows('collection_runs') == []

    @pytest.mark.asyncio
    async def test_single_mode_unknown_target_marks_run_failed(self, orchestrator, collect_db):
        with pytest.raises(TargetNotFoundError):
            await orchestrator.run_collect('single', hscp_no='1004')

        run = collect_db.rows('collection_runs')[0]
        assert run['status'] == 'failed'
        assert 'TargetNotFoundError' in run['error_summary']

    @pytest.mark.asyncio
    async def test_single_mode_ignores_lock(self, orchestrator, config, state_store, source):
        RunLock(state_store, 'collect', config.state.lock_stale_seconds).acquire('full')

        result = await orchestrator.run_collect('single', hscp_no='1002')

        assert result.processed == 1
        assert scanned(source) == ['1002']

    @pytest.mark.asyncio
    async def test_unit_error_counted_and_run_continues(self, orchestrator, collect_db, source):
        collect_db.fail('articles', 'select')

        result = await orchestrator.run_collect('full')

        assert result.processed == 3
        assert result.errors == 1
        assert collect_db.rows('collection_runs')[0]['errors'] == 1


class TestOtherJobs:

    @pytest.mark.asyncio
    async def test_discover_with_injected_service(self, orchestrator, collect_db, config, sleeper, state_store):
        limiter = RateLimiter(RateLimitSettings(**FAST_RATE_LIMIT), sleep=sleeper)
        service = DiscoveryService(collect_db, config, FakeRegionClient(), limiter)

        result = await orchestrator.run_discover(service=service)

        assert result.found == 3
        run = collect_db.rows('collection_runs', run_type='discover')[0]
        assert run['status'] == 'completed'
        assert run['processed'] == 2
        assert CheckpointStore(state_store).load('discover') is None

    @pytest.mark.asyncio
    async def test_transactions_checkpoint_and_limit(self, orchestrator, collect_db, sleeper, state_store):
        config = fast_config(transactions={
            'daily_limit': 3, 'limit_margin': 1, 'error_pause': 0.0, 'error_long_pause': 0.0,
        })
        orchestrator.config = config
        limiter = RateLimiter(RateLimitSettings(**FAST_RATE_LIMIT), sleep=sleeper, name='transactions')
        service = TransactionFeedService(collect_db, config, service_key='test-key', http=FakeFeed(), limiter=limiter)

        result = await orchestrator.run_transactions(
            months=3, sgg='11680', today=date(2026, 10, 19), service=service
        )

        assert result.limit_reached is True
        assert result.completed == 2
        assert CheckpointStore(state_store).load('transactions') == '11680_202609'
        run = collect_db.rows('collection_runs', run_type='transactions')[0]
        assert run['total_targets'] == 3
        assert 'daily limit reached' in run['notes']

    @pytest.mark.asyncio
    async def test_transactions_resume(self, orchestrator, collect_db, config, sleeper, state_store):
        CheckpointStore(state_store).save('transactions', '11680_202609')
        limiter = RateLimiter(RateLimitSettings(**FAST_RATE_LIMIT), sleep=sleeper, name='transactions')
        http = FakeFeed()
        service = TransactionFeedService(collect_db, config, service_key='test-key', http=http, limiter=limiter)

        await orchestrator.run_transactions(
            months=3, sgg='11680', resume=True, today=date(2026, 10, 19), service=service
        )

        assert [call[:2] for call in http.calls] == [('11680', '202610')]
        assert CheckpointStore(state_store).load('transactions') is None

    @pytest.mark.asyncio
    async def test_resolve_dry_run_leaves_no_trace(self, orchestrator, collect_db, state_store):
        collect_db.seed('real_transactions', [{'sgg_cd': '11680', 'apt_nm': '래미안', 'umd_nm': '역삼동'}])

        result = await orchestrator.run_resolve(strategy='names', dry_run=True)

        assert result.matched == 1
        assert collect_db.rows('collection_runs') == []
        assert collect_db.rows('complexes', hscp_no='1001')[0].get('rt_apt_nm') is None
        assert CheckpointStore(state_store).load('resolve') is None

    @pytest.mark.asyncio
    async def test_resolve_writes_run(self, orchestrator, collect_db):
        collect_db.seed('real_transactions', [{'sgg_cd': '11680', 'apt_nm': '래미안', 'umd_nm': '역삼동'}])

        result = await orchestrator.run_resolve(strategy='names')

        assert result.matched == 1
        run = collect_db.rows('collection_runs', run_type='resolve')[0]
        assert run['status'] == 'completed'
        assert run['processed'] == 3
        assert collect_db.rows('complexes', hscp_no='1001')[0]['rt_apt_nm'] == '래미안'

    @pytest.mark.asyncio
    async def test_score_dry_run_has_no_ledger_row(self, orchestrator, collect_db):
        collect_db.seed('articles', [{'article_no': 'a1', 'complex_id': 1, 'trade_type': 'A1',
                                      'article_status': 'active', 'deal_price': 500000000,
                                      'exclusive_space': 84.0}])

        result = await orchestrator.run_score(dry_run=True, today=date(2026, 10, 19))

        assert result.scored == 1
        assert collect_db.rows('collection_runs') == []

    @pytest.mark.asyncio
    async def test_history_newest_first(self, orchestrator):
        await orchestrator.run_collect('full')
        await orchestrator.run_score(today=date(2026, 10, 19))

        runs = await orchestrator.history()
        collects = await orchestrator.history('collect')

        assert [r['run_type'] for r in runs] == ['score', 'collect']
        assert [r['run_type'] for r in collects] == ['collect']
