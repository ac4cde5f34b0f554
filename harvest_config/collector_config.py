"""
Collector Configuration for the Listing Harvest Pipeline

This module loads configuration from collector_config.yaml and provides
typed access to source, rate limiting, reconciliation, resolver and
scoring settings.

Pipeline Overview:
- Harvester: adaptive rate-limited paging against the listing sources
- Reconciliation: full / incremental (diff) / quick (count check) scans
- Entity Resolver: name cascade and transaction fingerprint matching
- Scoring: composite bargain score over active sale listings
"""

import os
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)


class CollectMode(str, Enum):
    """Collection modes for the harvester"""
    FULL = 'full'
    INCREMENTAL = 'incremental'
    QUICK = 'quick'
    SINGLE = 'single'
    POLL = 'poll'


class RunKind(str, Enum):
    """Run kinds tracked by the run ledger (one lock and checkpoint per kind)"""
    COLLECT = 'collect'
    DISCOVER = 'discover'
    TRANSACTIONS = 'transactions'
    RESOLVE = 'resolve'
    FINGERPRINT = 'fingerprint'
    SCORE = 'score'


DEFAULT_BARGAIN_KEYWORDS = [
    '급매', '급처분', '급전', '급히', '마이너스피', '마피', '급급', '손절', '최저가', '급하게',
]

DEFAULT_USER_AGENTS = [
    'Mozilla/5.0 (iPhone; CPU iPhone OS 17_4 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.4 Mobile/15E148 Safari/604.1',
    'Mozilla/5.0 (iPhone; CPU iPhone OS 16_6 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/16.6 Mobile/15E148 Safari/604.1',
    'Mozilla/5.0 (Linux; Android 14; SM-S928B) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0.0.0 Mobile Safari/537.36',
    'Mozilla/5.0 (Linux; Android 14; Pixel 8 Pro) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/121.0.0.0 Mobile Safari/537.36',
    'Mozilla/5.0 (Linux; Android 13; SM-A546B) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Mobile Safari/537.36',
]


@dataclass
class RateLimitSettings:
    """Adaptive delay and circuit breaker profile for one source"""
    base_delay: float = 4.0  # seconds
    max_delay: float = 12.0
    throttle_step: float = 2.0  # added to the delay on every throttle signal
    delay_decay: float = 0.2  # removed from the delay on every success
    jitter: float = 0.15  # +/- fraction applied to every sleep

    # Circuit breaker
    short_cooldown_after: int = 3
    short_cooldown: float = 45.0
    medium_cooldown_after: int = 5
    medium_cooldown: float = 300.0
    long_cooldown_after: int = 10
    long_cooldown: float = 600.0
    post_cooldown_offset: float = 2.0  # delay resets to base + offset after a long cooldown

    # Batch rest (caps sustained load regardless of throttling)
    batch_size: int = 20
    batch_rest: float = 40.0
    batch_rest_jitter: float = 15.0

    # Retry budget per request
    max_attempts: int = 3
    error_backoff: float = 5.0

    def __post_init__(self):
        """Validate settings after initialization"""
        assert self.base_delay >= 0, f"Base delay must be non-negative: {self.base_delay}"
        assert self.max_delay >= self.base_delay, f"Max delay below base delay: {self.max_delay}"
        assert 0 <= self.jitter < 1, f"Jitter must be in [0, 1): {self.jitter}"
        assert self.short_cooldown_after <= self.medium_cooldown_after <= self.long_cooldown_after, \
            "Cooldown thresholds must be ascending"
        assert self.max_attempts >= 1, f"Need at least one attempt: {self.max_attempts}"

    @property
    def post_cooldown_floor(self) -> float:
        return min(self.base_delay + self.post_cooldown_offset, self.max_delay)


@dataclass
class SourceSettings:
    """Endpoint and paging settings for a listing source"""
    name: str
    base_url: str
    page_size: int = 20
    max_pages: int = 50  # safety cap per scope
    batch_size: int = 20  # concurrent requests per round (batch variant)
    round_pause: float = 0.2  # seconds between concurrent rounds
    request_timeout: int = 30
    throttle_statuses: List[int] = field(default_factory=lambda: [302, 307, 429])
    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)


@dataclass
class TileSettings:
    """Geographic cell polling settings"""
    pages_per_tile: int = 3
    zoom: int = 13
    property_types: str = 'APT:OPST'
    trade_type: str = 'A1'
    cell_cache_key: str = 'cells:poll'


@dataclass
class TransactionFeedSettings:
    """Government transaction feed settings"""
    base_url: str = 'https://apis.data.go.kr/1613000/RTMSDataSvcAptTrade/getRTMSDataSvcAptTrade'
    rows_per_page: int = 1000
    daily_limit: int = 10000
    limit_margin: int = 100
    months_back: int = 12
    incremental_months: int = 2
    request_timeout: int = 30
    upsert_batch_size: int = 500

    # Pauses after consecutive failed tasks
    error_pause_after: int = 3
    error_pause: float = 15.0
    error_long_pause_after: int = 5
    error_long_pause: float = 60.0


@dataclass
class DiscoverySettings:
    """Region hierarchy walk settings"""
    root_cortar_no: str = '0000000000'
    property_types: List[str] = field(default_factory=lambda: ['APT', 'OPST'])
    progress_every: int = 100


@dataclass
class ReconcileSettings:
    """Reconciliation and run bookkeeping settings"""
    staleness_hours: float = 24.0  # quick check promotes complexes not collected within this window
    progress_every: int = 10  # update the run record every N units
    log_every: int = 50
    partial_error_ratio: float = 0.5  # (errors + skipped) / total above this marks the run partial
    lookup_batch_size: int = 200  # keeps .in_() query strings short


@dataclass
class ResolverSettings:
    """Entity resolution settings"""
    min_name_length: int = 2
    containment_ratio: float = 0.3
    token_min_name_length: int = 3
    token_min_tokens: int = 2
    jaccard_threshold: float = 0.7
    area_low_factor: float = 0.8
    area_high_factor: float = 1.2

    # Fingerprint matching
    fingerprint_sample_size: int = 20
    fingerprint_price_tolerance: int = 1  # in 10,000 won units
    fingerprint_batch_size: int = 100
    fingerprint_round_pause: float = 0.1
    progress_every: int = 200


@dataclass
class ScoringSettings:
    """Composite bargain score settings"""
    threshold: int = 50
    complex_cap: int = 40
    complex_saturation: float = 0.20  # discount at which the complex score saturates
    tx_cap: int = 35
    tx_saturation: float = 0.15
    drop_cap: int = 20
    drop_points: int = 4
    magnitude_cap: int = 5
    magnitude_divisor: float = 5.0
    area_window: float = 3.0  # square meters
    min_peers: int = 2
    tx_lookback_months: int = 6
    sale_trade_type: str = 'A1'

    def __post_init__(self):
        total = self.complex_cap + self.tx_cap + self.drop_cap + self.magnitude_cap
        assert total == 100, f"Sub-score caps must add up to 100: {total}"
        assert 0 < self.threshold <= 100, f"Invalid threshold: {self.threshold}"


@dataclass
class StateSettings:
    """File-backed state store (locks, checkpoints, cell cache)"""
    state_dir: str = 'state'
    lock_stale_seconds: int = 3600


@dataclass
class BrowserSettings:
    """Browser session settings for the client-side session source"""
    headless: bool = False
    launch_args: List[str] = field(default_factory=lambda: ['--disable-blink-features=AutomationControlled'])
    warmup_url: str = 'https://fin.land.naver.com/complexes/22627'
    warmup_wait: float = 2.0
    navigation_timeout: int = 30000  # milliseconds
    max_recreate_attempts: int = 3


@dataclass
class ScheduleSettings:
    """Daemon frequencies"""
    quick_collect_hours: float = 6.0
    transactions_hours: float = 24.0
    resolve_hours: float = 24.0
    score_hours: float = 6.0
    check_interval_seconds: int = 300


@dataclass
class CollectorConfig:
    """Main configuration class for the harvest pipeline"""

    sources: Dict[str, SourceSettings] = field(default_factory=dict)
    tiles: TileSettings = field(default_factory=TileSettings)
    transactions: TransactionFeedSettings = field(default_factory=TransactionFeedSettings)
    discovery: DiscoverySettings = field(default_factory=DiscoverySettings)
    reconcile: ReconcileSettings = field(default_factory=ReconcileSettings)
    resolver: ResolverSettings = field(default_factory=ResolverSettings)
    scoring: ScoringSettings = field(default_factory=ScoringSettings)
    state: StateSettings = field(default_factory=StateSettings)
    browser: BrowserSettings = field(default_factory=BrowserSettings)
    schedule: ScheduleSettings = field(default_factory=ScheduleSettings)

    # Which source backs complex scans ('fin_land' or 'mobile_land')
    collect_source: str = 'fin_land'

    bargain_keywords: List[str] = field(default_factory=lambda: list(DEFAULT_BARGAIN_KEYWORDS))
    user_agents: List[str] = field(default_factory=lambda: list(DEFAULT_USER_AGENTS))

    # Logging
    log_file: str = 'harvest.log'
    log_level: str = 'INFO'

    def get_source(self, name: str) -> SourceSettings:
        """Get settings for a listing source by name"""
        if name not in self.sources:
            raise ValueError(f"Unknown source: {name}. Known: {', '.join(self.sources)}")
        return self.sources[name]

    @property
    def state_path(self) -> Path:
        return Path(self.state.state_dir)


def _load_yaml_config() -> Dict:
    """Load configuration from YAML file"""
    config_path = Path(os.getenv('HARVEST_CONFIG', Path(__file__).parent / 'collector_config.yaml'))

    if not config_path.exists():
        logger.warning(f"Config file not found at {config_path}, using defaults")
        return {}

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            config = yaml.safe_load(f)
            logger.info(f"Loaded configuration from {config_path}")
            return config or {}
    except Exception as e:
        logger.error(f"Error loading config from {config_path}: {e}")
        return {}


_DEFAULT_SOURCES = {
    'mobile_land': {
        'base_url': 'https://m.land.naver.com',
        'page_size': 20,
        'max_pages': 50,
        'batch_size': 20,
        'round_pause': 2.0,
        'rate_limit': {},
    },
    'mobile_tiles': {
        'base_url': 'https://m.land.naver.com',
        'page_size': 20,
        'max_pages': 3,
        'rate_limit': {'base_delay': 3.0, 'max_delay': 10.0, 'batch_size': 25, 'batch_rest': 35.0},
    },
    'fin_land': {
        'base_url': 'https://fin.land.naver.com',
        'page_size': 30,
        'max_pages': 100,
        'batch_size': 20,
        'round_pause': 0.2,
        'rate_limit': {
            'base_delay': 0.1, 'max_delay': 5.0, 'throttle_step': 1.0, 'delay_decay': 0.05,
            'batch_size': 500, 'batch_rest': 5.0, 'batch_rest_jitter': 2.0, 'error_backoff': 2.0,
        },
    },
    'regions': {
        'base_url': 'https://new.land.naver.com',
        'batch_size': 10,
        'round_pause': 0.05,
        'rate_limit': {'base_delay': 0.3, 'max_delay': 8.0, 'throttle_step': 1.0, 'batch_size': 300, 'batch_rest': 10.0},
    },
    'transactions': {
        'base_url': 'https://apis.data.go.kr',
        'page_size': 1000,
        'max_pages': 50,
        'rate_limit': {
            'base_delay': 1.0, 'max_delay': 10.0, 'throttle_step': 2.0,
            'batch_size': 200, 'batch_rest': 10.0, 'batch_rest_jitter': 5.0,
        },
    },
}


def _build_source(name: str, source_yaml: Dict) -> SourceSettings:
    """Create SourceSettings from YAML config merged over the built-in defaults"""
    default = _DEFAULT_SOURCES.get(name, {})
    merged = {**default, **(source_yaml or {})}
    rate_yaml = {**default.get('rate_limit', {}), **((source_yaml or {}).get('rate_limit') or {})}

    return SourceSettings(
        name=name,
        base_url=merged.get('base_url', ''),
        page_size=merged.get('page_size', 20),
        max_pages=merged.get('max_pages', 50),
        batch_size=merged.get('batch_size', 20),
        round_pause=merged.get('round_pause', 0.2),
        request_timeout=merged.get('request_timeout', 30),
        throttle_statuses=merged.get('throttle_statuses', [302, 307, 429]),
        rate_limit=RateLimitSettings(**rate_yaml),
    )


def _section(cls, yaml_section: Optional[Dict]):
    """Build a settings dataclass from a YAML section, ignoring unknown keys"""
    known = set(cls.__dataclass_fields__)
    values = {k: v for k, v in (yaml_section or {}).items() if k in known}
    unknown = set(yaml_section or {}) - known
    if unknown:
        logger.warning(f"Ignoring unknown {cls.__name__} keys: {', '.join(sorted(unknown))}")
    return cls(**values)


def _build_config_from_yaml(yaml_config: Dict) -> CollectorConfig:
    """Build CollectorConfig from YAML configuration"""
    source_yaml = yaml_config.get('sources', {}) or {}
    source_names = list(dict.fromkeys(list(_DEFAULT_SOURCES) + list(source_yaml)))
    sources = {name: _build_source(name, source_yaml.get(name)) for name in source_names}

    state = _section(StateSettings, yaml_config.get('state'))
    state.state_dir = os.getenv('HARVEST_STATE_DIR', state.state_dir)

    browser = _section(BrowserSettings, yaml_config.get('browser'))
    headless_env = os.getenv('HARVEST_BROWSER_HEADLESS')
    if headless_env is not None:
        browser.headless = headless_env.lower() in ('1', 'true', 'yes')

    scoring = _section(ScoringSettings, yaml_config.get('scoring'))
    if os.getenv('HARVEST_SCORE_THRESHOLD'):
        scoring.threshold = int(os.environ['HARVEST_SCORE_THRESHOLD'])

    logging_config = yaml_config.get('logging', {}) or {}

    return CollectorConfig(
        sources=sources,
        tiles=_section(TileSettings, yaml_config.get('tiles')),
        transactions=_section(TransactionFeedSettings, yaml_config.get('transactions')),
        discovery=_section(DiscoverySettings, yaml_config.get('discovery')),
        reconcile=_section(ReconcileSettings, yaml_config.get('reconcile')),
        resolver=_section(ResolverSettings, yaml_config.get('resolver')),
        scoring=scoring,
        state=state,
        browser=browser,
        schedule=_section(ScheduleSettings, yaml_config.get('schedule')),
        collect_source=yaml_config.get('collect_source', 'fin_land'),
        bargain_keywords=yaml_config.get('bargain_keywords') or list(DEFAULT_BARGAIN_KEYWORDS),
        user_agents=yaml_config.get('user_agents') or list(DEFAULT_USER_AGENTS),

        # Logging
        log_file=logging_config.get('log_file', 'harvest.log'),
        log_level=os.getenv('HARVEST_LOG_LEVEL', logging_config.get('log_level', 'INFO')),
    )


# Global configuration instance
_config: Optional[CollectorConfig] = None


def get_config(reload: bool = False) -> CollectorConfig:
    """
    Get the global configuration instance.

    Args:
        reload: If True, reload configuration from YAML file

    Returns:
        CollectorConfig instance
    """
    global _config
    if _config is None or reload:
        yaml_config = _load_yaml_config()
        _config = _build_config_from_yaml(yaml_config)
    return _config


def reload_config() -> CollectorConfig:
    """Force reload configuration from YAML file"""
    return get_config(reload=True)


def set_config(config: CollectorConfig) -> None:
    """Set the global configuration instance (useful for testing)"""
    global _config
    _config = config


def build_config(yaml_config: Optional[Dict] = None) -> CollectorConfig:
    """Build a configuration from an in-memory dict without touching the singleton"""
    return _build_config_from_yaml(yaml_config or {})
