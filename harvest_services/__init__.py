"""
Listing Harvest Services

Collection and intelligence pipeline for real-estate listings: rate-limited
harvesting, diff-based reconciliation, transaction feed ingestion, entity
resolution, bargain scoring, and the run ledger that ties them together.
"""

# Harvesting
from .rate_limiter import RateLimiter, RateLimiterStats
from .harvester import Harvester, HarvestResult, BatchHarvester, BatchResult
from .land_sources import ListingSource, SourcePage, MobileLandClient, FinLandClient, RegionClient
from .browser_session import BrowserSession
from .listing_models import ListingQuery, ListingRecord, RawRecord, TradeType, PropertyType, SortOrder

# Reconciliation and feeds
from .reconciliation_service import ReconciliationService, ReconcileCounts, QuickCheckResult
from .transaction_feed_service import TransactionFeedService, TransactionFeedResult
from .discovery_service import DiscoveryService, DiscoveryResult
from .tile_poll_service import TilePollService, PollResult

# Intelligence
from .entity_resolver_service import EntityResolverService, ResolveResult
from .fingerprint_matcher import FingerprintMatcher, FingerprintResult
from .bargain_scoring_service import BargainScoringService, ScoringResult, ScoreBreakdown

# Runs
from .state_store import StateStore, FileStateStore, MemoryStateStore, RunLock, CheckpointStore, CellCache
from .run_ledger import RunLedger, CollectionRun, tracked_run
from .collection_orchestrator import CollectionOrchestrator, CollectResult
from .scheduler_service import SchedulerService
from .errors import (
    CollectorError,
    CollectorSetupError,
    RunLockHeldError,
    MissingCredentialError,
    SessionUnavailableError,
    TargetNotFoundError,
    SourceError,
    ThrottledError,
    TransientSourceError,
    ScoringCommitError,
)

__all__ = [
    # Harvesting
    'RateLimiter',
    'RateLimiterStats',
    'Harvester',
    'HarvestResult',
    'BatchHarvester',
    'BatchResult',
    'ListingSource',
    'SourcePage',
    'MobileLandClient',
    'FinLandClient',
    'RegionClient',
    'BrowserSession',
    'ListingQuery',
    'ListingRecord',
    'RawRecord',
    'TradeType',
    'PropertyType',
    'SortOrder',

    # Reconciliation and feeds
    'ReconciliationService',
    'ReconcileCounts',
    'QuickCheckResult',
    'TransactionFeedService',
    'TransactionFeedResult',
    'DiscoveryService',
    'DiscoveryResult',
    'TilePollService',
    'PollResult',

    # Intelligence
    'EntityResolverService',
    'ResolveResult',
    'FingerprintMatcher',
    'FingerprintResult',
    'BargainScoringService',
    'ScoringResult',
    'ScoreBreakdown',

    # Runs
    'StateStore',
    'FileStateStore',
    'MemoryStateStore',
    'RunLock',
    'CheckpointStore',
    'CellCache',
    'RunLedger',
    'CollectionRun',
    'tracked_run',
    'CollectionOrchestrator',
    'CollectResult',
    'SchedulerService',

    # Errors
    'CollectorError',
    'CollectorSetupError',
    'RunLockHeldError',
    'MissingCredentialError',
    'SessionUnavailableError',
    'TargetNotFoundError',
    'SourceError',
    'ThrottledError',
    'TransientSourceError',
    'ScoringCommitError',
]

__version__ = '1.0.0'
