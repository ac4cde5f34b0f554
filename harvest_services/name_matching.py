"""
Complex name matching against the government transaction corpus.

Pure functions; the entity resolver loads one administrative code's corpus
at a time and runs the cascade for every unresolved complex in it:

1. exact       normalized name equality
2. contains    either name contains the other (length ratio >= 0.3)
3. ordinal     same as 2 with a trailing "N차" removed
4. dong        containment among the complex's sub-district names
5. dong_area   unique sub-district name whose traded areas overlap the
               complex's listed areas
6. token       token-set Jaccard >= 0.7

Ties inside a step go to the name with the most transactions.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

from harvest_config import ResolverSettings

_PAREN_RE = re.compile(r'\([^)]*\)')
_PUNCT_RE = re.compile(r'[\s,·.\-]')
_ORDINAL_SUFFIX_RE = re.compile(r'\d+차$')
_GA_SUFFIX_RE = re.compile(r'\d+가$')
_ORDINAL_RE = re.compile(r'(\d+)차')
_TOKEN_RE = re.compile(r'[가-힣]+|[A-Za-z]+|\d+[가-힣]*')

STRATEGIES = ('exact', 'contains', 'ordinal', 'dong', 'dong_area', 'token')


def normalize_name(name: Optional[str]) -> str:
    """Strip parentheticals, whitespace and , · . - separators"""
    if not name:
        return ''
    return _PUNCT_RE.sub('', _PAREN_RE.sub('', name))


def strip_ordinal(normalized: str) -> str:
    return _ORDINAL_SUFFIX_RE.sub('', normalized)


def strip_ga(sector: Optional[str]) -> str:
    """'종로1가' -> '종로'"""
    if not sector:
        return ''
    return _GA_SUFFIX_RE.sub('', sector.strip())


def token_normalize(name: Optional[str]) -> str:
    return _ORDINAL_RE.sub(r'\1단지', normalize_name(name))


def tokenize(normalized: str) -> Set[str]:
    """Hangul runs, Latin runs and number+unit chunks; short non-numeric tokens dropped"""
    tokens = set()
    for part in _TOKEN_RE.findall(normalized):
        part = part.lower()
        if len(part) >= 2 or any(ch.isdigit() for ch in part):
            tokens.add(part)
    return tokens


def jaccard(a: Set[str], b: Set[str]) -> float:
    if not a and not b:
        return 0.0
    union = len(a | b)
    return len(a & b) / union if union else 0.0


@dataclass
class Match:
    apt_nm: str
    strategy: str


@dataclass
class TransactionCorpus:
    """Transaction names of one administrative code"""
    volumes: Dict[str, int] = field(default_factory=dict)
    by_dong: Dict[str, Dict[str, int]] = field(default_factory=dict)
    area_ranges: Dict[str, Tuple[float, float]] = field(default_factory=dict)
    _norms: Dict[str, str] = field(default_factory=dict, repr=False)

    @classmethod
    def from_rows(cls, rows: Iterable[Dict]) -> 'TransactionCorpus':
        """Build from real_transactions rows (apt_nm, umd_nm, exclu_use_ar)"""
        corpus = cls()
        for row in rows:
            apt_nm = row.get('apt_nm')
            if not apt_nm:
                continue
            corpus.volumes[apt_nm] = corpus.volumes.get(apt_nm, 0) + 1
            dong = row.get('umd_nm')
            if dong:
                names = corpus.by_dong.setdefault(dong.strip(), {})
                names[apt_nm] = names.get(apt_nm, 0) + 1
            area = row.get('exclu_use_ar')
            if area is not None:
                area = float(area)
                low, high = corpus.area_ranges.get(apt_nm, (area, area))
                corpus.area_ranges[apt_nm] = (min(low, area), max(high, area))
        corpus._norms = {name: normalize_name(name) for name in corpus.volumes}
        return corpus

    def norm(self, apt_nm: str) -> str:
        if apt_nm not in self._norms:
            self._norms[apt_nm] = normalize_name(apt_nm)
        return self._norms[apt_nm]


def _best(candidates: Dict[str, int]) -> Optional[str]:
    if not candidates:
        return None
    return sorted(candidates.items(), key=lambda kv: (-kv[1], kv[0]))[0][0]


def _containment(
    name_norm: str,
    pool: Dict[str, int],
    corpus: TransactionCorpus,
    settings: ResolverSettings
) -> Dict[str, int]:
    if len(name_norm) < settings.min_name_length:
        return {}
    hits = {}
    for apt_nm, volume in pool.items():
        other = corpus.norm(apt_nm)
        if len(other) < settings.min_name_length:
            continue
        shorter, longer = sorted((len(name_norm), len(other)))
        if shorter / longer < settings.containment_ratio:
            continue
        if name_norm in other or other in name_norm:
            hits[apt_nm] = volume
    return hits


def resolve_name(
    complex_name: str,
    corpus: TransactionCorpus,
    sector: Optional[str] = None,
    listing_area_range: Optional[Tuple[float, float]] = None,
    settings: Optional[ResolverSettings] = None
) -> Optional[Match]:
    """
    Run the matching cascade for one complex.

    Args:
        complex_name: Listing-side complex name
        corpus: Transaction names of the complex's administrative code
        sector: Listing-side sub-district name
        listing_area_range: (min, max) exclusive area of the complex's active listings
        settings: Thresholds

    Returns:
        Match, or None when no step accepts
    """
    settings = settings or ResolverSettings()
    name_norm = normalize_name(complex_name)
    if not name_norm or not corpus.volumes:
        return None

    # 1. exact
    exact = {n: v for n, v in corpus.volumes.items() if corpus.norm(n) == name_norm}
    if exact:
        return Match(_best(exact), 'exact')

    # 2. containment
    hit = _best(_containment(name_norm, corpus.volumes, corpus, settings))
    if hit:
        return Match(hit, 'contains')

    # 3. containment without the ordinal suffix
    stripped = strip_ordinal(name_norm)
    if stripped != name_norm:
        hit = _best(_containment(stripped, corpus.volumes, corpus, settings))
        if hit:
            return Match(hit, 'ordinal')

    # 4. containment within the sub-district
    dong = strip_ga(sector)
    dong_pool = corpus.by_dong.get(dong, {}) if dong else {}
    if dong_pool:
        hits = _containment(name_norm, dong_pool, corpus, settings)
        if not hits and stripped != name_norm:
            hits = _containment(stripped, dong_pool, corpus, settings)
        hit = _best(hits)
        if hit:
            return Match(hit, 'dong')

    # 5. unique sub-district name with overlapping traded areas
    if dong_pool and listing_area_range:
        low, high = listing_area_range
        overlapping = []
        for apt_nm in dong_pool:
            area = corpus.area_ranges.get(apt_nm)
            if area is None:
                continue
            tx_low, tx_high = area
            if tx_low <= high * settings.area_high_factor and tx_high >= low * settings.area_low_factor:
                overlapping.append(apt_nm)
        if len(overlapping) == 1:
            return Match(overlapping[0], 'dong_area')

    # 6. token-set similarity
    if len(name_norm) >= settings.token_min_name_length:
        own_tokens = tokenize(token_normalize(complex_name))
        if len(own_tokens) >= settings.token_min_tokens:
            best_name, best_score = None, 0.0
            for apt_nm in sorted(corpus.volumes):
                if len(corpus.norm(apt_nm)) < settings.token_min_name_length:
                    continue
                tokens = tokenize(token_normalize(apt_nm))
                if len(tokens) < settings.token_min_tokens:
                    continue
                score = jaccard(own_tokens, tokens)
                if score >= settings.jaccard_threshold and score > best_score:
                    best_name, best_score = apt_nm, score
            if best_name:
                return Match(best_name, 'token')

    return None


def summarize(matches: List[Optional[Match]]) -> Dict[str, int]:
    """Counts per strategy plus 'unresolved'"""
    summary = {name: 0 for name in STRATEGIES}
    summary['unresolved'] = 0
    for match in matches:
        if match is None:
            summary['unresolved'] += 1
        else:
            summary[match.strategy] += 1
    return summary
