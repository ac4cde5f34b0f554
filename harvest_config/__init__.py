"""
Configuration module for the listing harvest pipeline.
"""

from .collector_config import (
    CollectorConfig,
    CollectMode,
    RunKind,
    RateLimitSettings,
    SourceSettings,
    ScoringSettings,
    ResolverSettings,
    ReconcileSettings,
    build_config,
    get_config,
    reload_config,
    set_config,
)
from .regions import REGIONS, Region, Cell, iter_cells, select_regions

__all__ = [
    'CollectorConfig',
    'CollectMode',
    'RunKind',
    'RateLimitSettings',
    'SourceSettings',
    'ScoringSettings',
    'ResolverSettings',
    'ReconcileSettings',
    'build_config',
    'get_config',
    'reload_config',
    'set_config',
    'REGIONS',
    'Region',
    'Cell',
    'iter_cells',
    'select_regions',
]
