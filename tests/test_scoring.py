"""
Tests for the composite bargain score and the scoring run.
"""

from datetime import date

import pytest

from conftest import fast_config
from harvest_config import ScoringSettings
from harvest_services.bargain_scoring_service import (
    TYPE_BOTH,
    TYPE_KEYWORD,
    TYPE_NONE,
    TYPE_PRICE,
    BargainScoringService,
    bucket_for,
    classify,
    count_drops,
    discount_score,
    drop_score,
    magnitude_score,
    months_back,
    price_sequence,
    score_listing,
)
from harvest_services.errors import ScoringCommitError

SETTINGS = ScoringSettings()


class TestSubScores:

    def test_complex_discount_saturates_at_twenty_percent(self):
        assert discount_score(480000000, 600000000, 40, 0.20) == 40
        assert discount_score(300000000, 600000000, 40, 0.20) == 40

    def test_complex_discount_is_linear(self):
        assert discount_score(540000000, 600000000, 40, 0.20) == 20

    def test_no_discount_when_price_not_below_reference(self):
        assert discount_score(600000000, 600000000, 40, 0.20) == 0
        assert discount_score(650000000, 600000000, 40, 0.20) == 0
        assert discount_score(500000000, None, 40, 0.20) == 0

    def test_count_drops_ignores_rises_and_gaps(self):
        assert count_drops([500, 450, 470, None, 430]) == 2
        assert count_drops([]) == 0

    def test_drop_score_capped(self):
        assert drop_score(1, SETTINGS) == 4
        assert drop_score(7, SETTINGS) == 20

    def test_magnitude_score(self):
        assert magnitude_score(450000000, 500000000, SETTINGS) == 2
        assert magnitude_score(300000000, 500000000, SETTINGS) == 5
        assert magnitude_score(500000000, 500000000, SETTINGS) == 0

    def test_threshold_boundary(self):
        assert classify(49, None, 50) == TYPE_NONE
        assert classify(50, None, 50) == TYPE_PRICE
        assert classify(49, '급매', 50) == TYPE_KEYWORD
        assert classify(80, '급매', 50) == TYPE_BOTH

    def test_buckets(self):
        assert bucket_for(0) == '0-19'
        assert bucket_for(49) == '40-49'
        assert bucket_for(50) == '50-69'
        assert bucket_for(100) == '90-100'

    def test_months_back(self):
        assert months_back(date(2026, 10, 19), 6) == 202604
        assert months_back(date(2026, 3, 1), 6) == 202509


class TestScoreListing:

    def test_drop_scenario(self):
        listing = {'id': 1, 'deal_price': 450000000, 'initial_price': 500000000,
                   'first_seen_at': '2026-01-01T00:00:00+00:00'}
        history = [{'deal_price': 450000000, 'source': 'scan_detected', 'recorded_at': '2026-02-01T00:00:00+00:00'}]

        score = score_listing(listing, [], [], history, SETTINGS)

        assert score.drops == 4
        assert score.magnitude == 2
        assert score.complex == 0
        assert score.total == 6

    def test_peers_below_minimum_are_ignored(self):
        listing = {'id': 1, 'deal_price': 480000000}

        score = score_listing(listing, [600000000], [], [], SETTINGS)

        assert score.complex == 0

    def test_total_capped_at_hundred(self):
        listing = {'id': 1, 'deal_price': 100000000, 'initial_price': 900000000,
                   'first_seen_at': '2026-01-01T00:00:00+00:00'}
        history = [
            {'deal_price': price, 'source': 'scan_detected', 'recorded_at': f'2026-0{m}-01T00:00:00+00:00'}
            for m, price in enumerate([800000000, 700000000, 600000000, 500000000, 100000000], start=2)
        ]

        score = score_listing(listing, [600000000, 600000000], [600000000], history, SETTINGS)

        assert score.total == 100
        assert score.bargain_type == TYPE_PRICE

    def test_price_sequence_orders_api_history_by_modified_date(self):
        listing = {'initial_price': 500000000, 'first_seen_at': '2026-03-01T00:00:00+00:00'}
        history = [
            {'deal_price': 450000000, 'source': 'scan_detected', 'recorded_at': '2026-04-01T00:00:00+00:00'},
            {'deal_price': 550000000, 'source': 'api_history', 'modified_date': '20260101'},
        ]

        assert price_sequence(listing, history) == [550000000, 500000000, 450000000]


@pytest.fixture
def scoring_db(supabase):
    base = {'trade_type': 'A1', 'article_status': 'active', 'exclusive_space': 84.0}
    supabase.seed('articles', [
        {**base, 'article_no': 'a1', 'complex_id': 1, 'deal_price': 480000000},
        {**base, 'article_no': 'a2', 'complex_id': 1, 'deal_price': 600000000},
        {**base, 'article_no': 'a3', 'complex_id': 1, 'deal_price': 600000000},
        {**base, 'article_no': 'lease', 'complex_id': 1, 'deal_price': 100000000, 'trade_type': 'B1'},
        {**base, 'article_no': 'gone', 'complex_id': 1, 'deal_price': 100000000, 'article_status': 'removed'},
        {**base, 'article_no': 'zero', 'complex_id': 1, 'deal_price': 0},
        {**base, 'article_no': 'kw', 'complex_id': 2, 'deal_price': 700000000, 'bargain_keyword': '급매'},
    ])
    supabase.seed('real_transactions', [
        {'complex_id': 1, 'exclu_use_ar': 84.9, 'deal_amount': 60000, 'deal_year': 2026, 'deal_month': 8},
        {'complex_id': 1, 'exclu_use_ar': 84.9, 'deal_amount': 30000, 'deal_year': 2026, 'deal_month': 9, 'cdeal_type': 'O'},
        {'complex_id': 1, 'exclu_use_ar': 84.9, 'deal_amount': 30000, 'deal_year': 2025, 'deal_month': 1},
        {'complex_id': 1, 'exclu_use_ar': 59.0, 'deal_amount': 30000, 'deal_year': 2026, 'deal_month': 8},
    ])
    return supabase


def article(supabase, article_no):
    return supabase.rows('articles', article_no=article_no)[0]


class TestScoringService:

    @pytest.mark.asyncio
    async def test_run_scores_and_commits(self, scoring_db, config):
        service = BargainScoringService(scoring_db, config)

        result = await service.run(today=date(2026, 10, 19))

        assert result.scored == 4
        assert result.committed is True
        assert result.detections_inserted == 1
        assert result.type_counts[TYPE_PRICE] == 1
        assert result.type_counts[TYPE_KEYWORD] == 1
        assert result.type_counts[TYPE_NONE] == 2
        assert result.distribution['70-89'] == 1
        assert result.distribution['0-19'] == 3
        assert result.top[0].article_id == article(scoring_db, 'a1')['id']

        a1 = article(scoring_db, 'a1')
        assert a1['bargain_score'] == 75
        assert a1['score_factors'] == {'complex': 40, 'tx': 35, 'drops': 0, 'magnitude': 0}
        assert a1['bargain_type'] == TYPE_PRICE
        assert a1['is_bargain'] is True
        assert article(scoring_db, 'kw')['bargain_type'] == TYPE_KEYWORD
        assert article(scoring_db, 'a2')['is_bargain'] is False
        assert 'bargain_score' not in article(scoring_db, 'lease')

        detections = scoring_db.rows('bargain_detections', detection_type='price')
        assert [d['article_id'] for d in detections] == [a1['id']]

    @pytest.mark.asyncio
    async def test_rerun_adds_no_duplicate_detections(self, scoring_db, config):
        service = BargainScoringService(scoring_db, config)
        await service.run(today=date(2026, 10, 19))

        result = await service.run(today=date(2026, 10, 19))

        assert result.detections_inserted == 0
        assert len(scoring_db.rows('bargain_detections')) == 1

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, scoring_db, config):
        service = BargainScoringService(scoring_db, config)

        result = await service.run(dry_run=True, today=date(2026, 10, 19))

        assert result.committed is False
        assert result.top[0].total == 75
        assert all('bargain_score' not in row for row in scoring_db.tables['articles'])

    @pytest.mark.asyncio
    async def test_commit_failure_leaves_no_scores(self, scoring_db, config):
        scoring_db.fail('rpc', 'apply_bargain_scores')
        service = BargainScoringService(scoring_db, config)

        with pytest.raises(ScoringCommitError):
            await service.run(today=date(2026, 10, 19))

        assert all('bargain_score' not in row for row in scoring_db.tables['articles'])
        assert scoring_db.rows('bargain_detections') == []

    @pytest.mark.asyncio
    async def test_threshold_from_config(self, scoring_db):
        service = BargainScoringService(scoring_db, fast_config(scoring={'threshold': 80}))

        result = await service.run(dry_run=True, today=date(2026, 10, 19))

        assert result.type_counts[TYPE_PRICE] == 0
