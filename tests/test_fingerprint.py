"""
Tests for transaction-fingerprint resolution.
"""

import pytest

from conftest import FAST_RATE_LIMIT
from harvest_config import RateLimitSettings
from harvest_services.errors import SourceError
from harvest_services.fingerprint_matcher import (
    FingerprintMatcher,
    TransactionSample,
    parse_sample,
    tally_votes,
)
from harvest_services.rate_limiter import RateLimiter


class TestParseSample:

    def test_dashed_trade_date(self):
        sample = parse_sample({'tradeDate': '2024-03-15', 'dealPrice': 850000000, 'floor': '7'})

        assert sample == TransactionSample(deal_year=2024, deal_month=3, floor=7, deal_amount=85000)

    def test_compact_trade_date(self):
        sample = parse_sample({'tradeDate': '20240415', 'dealPrice': 900000000, 'floor': 3})

        assert (sample.deal_year, sample.deal_month) == (2024, 4)

    def test_price_rounds_half_up(self):
        sample = parse_sample({'tradeDate': '2024-03-15', 'dealPrice': 850005000, 'floor': 7})

        assert sample.deal_amount == 85001

    @pytest.mark.parametrize('raw', [
        {'tradeDate': '2024-03-15', 'dealPrice': None, 'floor': 7},
        {'tradeDate': '', 'dealPrice': 850000000, 'floor': 7},
        {'tradeDate': '2024-03-15', 'dealPrice': 850000000, 'floor': '저'},
    ])
    def test_incomplete_sample_dropped(self, raw):
        assert parse_sample(raw) is None


class TestTallyVotes:

    def test_plurality_with_two_votes(self):
        assert tally_votes([['A', 'B'], ['A']]) == 'A'

    def test_single_vote_accepted_when_sole_candidate(self):
        assert tally_votes([['A'], []]) == 'A'

    def test_single_vote_rejected_with_rival(self):
        assert tally_votes([['A', 'B']]) is None

    def test_tie_goes_to_first_seen_name(self):
        assert tally_votes([['B'], ['A'], ['A'], ['B']]) == 'B'

    def test_every_matching_row_votes(self):
        assert tally_votes([['A', 'A', 'B']]) == 'A'

    def test_no_hits(self):
        assert tally_votes([[], []]) is None


class FakeSampler:
    """Stands in for the browser source's transaction sampling"""

    def __init__(self, samples, failures=None):
        self.samples = samples
        self.failures = failures or {}
        self.calls = []

    async def sample_transactions(self, hscp_no, count=20):
        self.calls.append((hscp_no, count))
        if hscp_no in self.failures:
            raise self.failures[hscp_no]
        return self.samples.get(hscp_no, [])


@pytest.fixture
def fingerprint_db(supabase):
    supabase.seed('complexes', [
        {'hscp_no': '1001', 'complex_name': '센트럴', 'sgg_cd': '11680', 'is_active': True},
        {'hscp_no': '1002', 'complex_name': '빈단지', 'sgg_cd': '11680', 'is_active': True},
        {'hscp_no': '1003', 'complex_name': '오류단지', 'sgg_cd': '11680', 'is_active': True},
    ])
    supabase.seed('real_transactions', [
        {'sgg_cd': '11680', 'apt_nm': '역삼센트럴아이파크', 'deal_year': 2024, 'deal_month': 3, 'floor': 7, 'deal_amount': 85000},
        {'sgg_cd': '11680', 'apt_nm': '역삼센트럴아이파크', 'deal_year': 2024, 'deal_month': 4, 'floor': 3, 'deal_amount': 90000},
        {'sgg_cd': '11680', 'apt_nm': '역삼자이', 'deal_year': 2024, 'deal_month': 3, 'floor': 7, 'deal_amount': 85001},
        {'sgg_cd': '11650', 'apt_nm': '잠원한신', 'deal_year': 2024, 'deal_month': 4, 'floor': 3, 'deal_amount': 90000},
    ])
    return supabase


def make_matcher(supabase, config, sleeper, sampler):
    limiter = RateLimiter(RateLimitSettings(**FAST_RATE_LIMIT), sleep=sleeper)
    return FingerprintMatcher(supabase, sampler, limiter, config)


class TestFingerprintMatcher:

    def samples(self):
        return {
            '1001': [
                {'tradeDate': '2024-03-15', 'dealPrice': 850000000, 'floor': '7'},
                {'tradeDate': '2024-04-02', 'dealPrice': 900000000, 'floor': '3'},
            ],
        }

    @pytest.mark.asyncio
    async def test_votes_and_accepts_plurality(self, fingerprint_db, config, sleeper):
        sampler = FakeSampler(self.samples(), failures={'1003': SourceError('HTTP 500', 500)})
        matcher = make_matcher(fingerprint_db, config, sleeper, sampler)
        targets = fingerprint_db.tables['complexes']

        result = await matcher.run(targets)

        assert result.matched == 1
        assert result.no_samples == 1
        assert result.unresolved == 1
        assert result.errors == 1
        assert result.matches == [('1001', '센트럴', '역삼센트럴아이파크')]
        complex_row = fingerprint_db.rows('complexes', hscp_no='1001')[0]
        assert complex_row['rt_apt_nm'] == '역삼센트럴아이파크'
        assert len(fingerprint_db.rows('real_transactions', complex_id=complex_row['id'])) == 2
        assert result.backfilled_transactions == 2

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, fingerprint_db, config, sleeper):
        matcher = make_matcher(fingerprint_db, config, sleeper, FakeSampler(self.samples()))

        result = await matcher.run(fingerprint_db.tables['complexes'][:1], dry_run=True)

        assert result.matched == 1
        assert fingerprint_db.rows('complexes', hscp_no='1001')[0].get('rt_apt_nm') is None

    @pytest.mark.asyncio
    async def test_sample_size_passed_to_source(self, fingerprint_db, config, sleeper):
        sampler = FakeSampler({})
        matcher = make_matcher(fingerprint_db, config, sleeper, sampler)

        await matcher.run(fingerprint_db.tables['complexes'][:1])

        assert sampler.calls == [('1001', config.resolver.fingerprint_sample_size)]

    @pytest.mark.asyncio
    async def test_reset_clears_names_and_links(self, fingerprint_db, config, sleeper):
        matcher = make_matcher(fingerprint_db, config, sleeper, FakeSampler(self.samples()))
        await matcher.run(fingerprint_db.tables['complexes'][:1])

        await matcher.reset()

        assert all(row.get('rt_apt_nm') is None for row in fingerprint_db.tables['complexes'])
        assert all(row.get('complex_id') is None for row in fingerprint_db.tables['real_transactions'])

    @pytest.mark.asyncio
    async def test_each_matching_row_is_a_vote(self, fingerprint_db, config, sleeper):
        fingerprint_db.seed('real_transactions', [
            {'sgg_cd': '11680', 'apt_nm': '역삼래미안', 'deal_year': 2025, 'deal_month': 6, 'floor': 9, 'deal_amount': 120000},
            {'sgg_cd': '11680', 'apt_nm': '역삼래미안', 'deal_year': 2025, 'deal_month': 6, 'floor': 9, 'deal_amount': 120000},
            {'sgg_cd': '11680', 'apt_nm': '역삼푸르지오', 'deal_year': 2025, 'deal_month': 6, 'floor': 9, 'deal_amount': 119999},
        ])
        matcher = make_matcher(fingerprint_db, config, sleeper, FakeSampler({}))
        complex_row = fingerprint_db.rows('complexes', hscp_no='1001')[0]

        accepted = await matcher.match_complex(
            complex_row, [{'tradeDate': '2025-06-20', 'dealPrice': 1200000000, 'floor': '9'}]
        )

        assert accepted == '역삼래미안'
