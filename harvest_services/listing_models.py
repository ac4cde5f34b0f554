"""
Listing Models and Field Parsing

Typed listing records, the raw payload kept alongside them for audit, the
parameterized source query, and the parsing helpers shared by every source
(price text, floor text, bargain keyword rule).
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple


class TradeType(str, Enum):
    SALE = 'A1'
    LEASE = 'B1'
    MONTHLY = 'B2'


class PropertyType(str, Enum):
    APARTMENT = 'APT'
    OFFICETEL = 'OPST'


class SortOrder(str, Enum):
    PRICE = 'prc'
    DATES = 'dates'
    RANKING = 'RANKING_DESC'


class ScopeKind(str, Enum):
    COMPLEX = 'complex'
    CELL = 'cell'


@dataclass(frozen=True)
class ListingQuery:
    """
    Parameterized listing-search request.

    Filters and sorts come from the enumerations above; sources render them
    into request parameters, never by concatenating strings.
    """
    scope_kind: ScopeKind
    scope_id: str
    trade_type: TradeType = TradeType.SALE
    sort: SortOrder = SortOrder.PRICE
    property_types: Tuple[PropertyType, ...] = (PropertyType.APARTMENT, PropertyType.OFFICETEL)
    page_size: int = 20
    bbox: Optional[Tuple[float, float, float, float]] = None  # (bottom, left, top, right)

    @classmethod
    def for_complex(cls, hscp_no: str, **kwargs) -> 'ListingQuery':
        return cls(scope_kind=ScopeKind.COMPLEX, scope_id=str(hscp_no), **kwargs)

    @classmethod
    def for_cell(cls, cell_id: str, bbox: Tuple[float, float, float, float], **kwargs) -> 'ListingQuery':
        kwargs.setdefault('sort', SortOrder.DATES)
        return cls(scope_kind=ScopeKind.CELL, scope_id=cell_id, bbox=bbox, **kwargs)

    @property
    def property_type_param(self) -> str:
        return ':'.join(p.value for p in self.property_types)


@dataclass
class RawRecord:
    """Untouched source payload retained for audit"""
    source: str
    external_id: str
    payload: Dict[str, Any]
    fetched_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


@dataclass
class PriceChange:
    """Source-supplied asking price history entry"""
    price: Optional[int]
    formatted_price: Optional[str]
    modified_date: Optional[str]  # YYYYMMDD


@dataclass
class ListingRecord:
    """Normalized listing as harvested"""
    article_no: str
    trade_type: str = TradeType.SALE.value
    deal_price: Optional[int] = None
    warranty_price: Optional[int] = None
    rent_price: Optional[int] = None
    formatted_price: Optional[str] = None
    exclusive_space: Optional[float] = None
    supply_space: Optional[float] = None
    floor_info: Optional[str] = None
    target_floor: Optional[int] = None
    total_floor: Optional[int] = None
    description: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    complex_name: Optional[str] = None
    city: Optional[str] = None
    division: Optional[str] = None
    sector: Optional[str] = None
    bargain_keyword: Optional[str] = None
    price_changes: List[PriceChange] = field(default_factory=list)
    raw: Optional[RawRecord] = None

    @property
    def is_bargain(self) -> bool:
        return self.bargain_keyword is not None

    @property
    def comparable_price(self) -> Optional[int]:
        """Price used for change detection (sale price, else deposit)"""
        return self.deal_price if self.deal_price else self.warranty_price

    def to_row(self) -> Dict[str, Any]:
        """Column values for the articles table (complex id and timestamps added by the caller)"""
        return {
            'article_no': self.article_no,
            'trade_type': self.trade_type,
            'deal_price': self.deal_price,
            'warranty_price': self.warranty_price,
            'rent_price': self.rent_price,
            'formatted_price': self.formatted_price,
            'exclusive_space': self.exclusive_space,
            'supply_space': self.supply_space,
            'floor_info': self.floor_info,
            'target_floor': self.target_floor,
            'total_floor': self.total_floor,
            'description': self.description,
            'tag_list': self.tags or None,
            'is_bargain': self.is_bargain,
            'bargain_keyword': self.bargain_keyword,
            'raw_data': self.raw.payload if self.raw else None,
        }


# Fields compared to decide whether a re-sighting actually changed the row
TRACKED_FIELDS = (
    'deal_price', 'warranty_price', 'rent_price', 'exclusive_space',
    'target_floor', 'total_floor', 'description', 'is_bargain',
)


_PRICE_EOK_RE = re.compile(r'(\d+)억\s*(\d+)?')
_PRICE_PLAIN_RE = re.compile(r'^(\d+)$')


def parse_price(text: Optional[str]) -> Optional[int]:
    """
    Parse Korean price text into 10,000-won units.

    "5억 2,000" -> 52000, "9억" -> 90000, "8500" -> 8500.
    """
    if not text:
        return None
    cleaned = str(text).replace(',', '').strip()
    match = _PRICE_EOK_RE.search(cleaned)
    if match:
        return int(match.group(1)) * 10000 + (int(match.group(2)) if match.group(2) else 0)
    plain = _PRICE_PLAIN_RE.match(cleaned)
    return int(plain.group(1)) if plain else None


def parse_floor(info: Optional[str]) -> Tuple[Optional[int], Optional[int]]:
    """Parse "current/total" floor text; non-numeric parts (e.g. "저") become None"""
    if not info:
        return None, None
    parts = str(info).split('/')
    if len(parts) != 2:
        return None, None
    return _to_int(parts[0]), _to_int(parts[1])


def detect_keyword(
    description: Optional[str],
    tags: Optional[Sequence[str]],
    keywords: Sequence[str]
) -> Optional[str]:
    """First bargain lexicon hit in the description, then in the tags"""
    if description:
        for keyword in keywords:
            if keyword in description:
                return keyword
    for tag in tags or []:
        if not isinstance(tag, str):
            continue
        for keyword in keywords:
            if keyword in tag:
                return keyword
    return None


def _to_int(value: Any) -> Optional[int]:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def _to_float(value: Any) -> Optional[float]:
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        return None


def listing_from_mobile(item: Dict[str, Any], trade_type: str, keywords: Sequence[str]) -> ListingRecord:
    """Map a mobile-source article list item"""
    description = item.get('atclFetrDesc') or None
    tags = item.get('tagList') or []
    current_floor, total_floor = parse_floor(item.get('flrInfo'))
    price = parse_price(item.get('prcInfo'))

    record = ListingRecord(
        article_no=str(item.get('atclNo')),
        trade_type=trade_type,
        deal_price=price * 10000 if price is not None and trade_type == TradeType.SALE.value else None,
        warranty_price=price * 10000 if price is not None and trade_type != TradeType.SALE.value else None,
        rent_price=_to_int(item.get('rentPrc')),
        formatted_price=item.get('prcInfo') or None,
        exclusive_space=_to_float(item.get('spc2')),
        supply_space=_to_float(item.get('spc1')),
        floor_info=item.get('flrInfo') or None,
        target_floor=current_floor,
        total_floor=total_floor,
        description=description,
        tags=[t for t in tags if isinstance(t, str)],
        complex_name=item.get('atclNm') or None,
        bargain_keyword=detect_keyword(description, tags, keywords),
        raw=RawRecord(source='mobile_land', external_id=str(item.get('atclNo')), payload=item),
    )
    return record


def listing_from_fin(item: Dict[str, Any], keywords: Sequence[str]) -> ListingRecord:
    """Map a browser-source (cursor paged) article list item"""
    rep = item.get('representativeArticleInfo') or item
    detail = rep.get('articleDetail') or {}
    price_info = rep.get('priceInfo') or {}
    space_info = rep.get('spaceInfo') or {}
    floor_info = detail.get('floorDetailInfo') or {}
    address = rep.get('address') or {}
    description = detail.get('articleFeatureDescription') or None

    target_floor = _to_int(floor_info.get('targetFloor'))
    total_floor = _to_int(floor_info.get('totalFloor'))
    floor_text = None
    if floor_info.get('targetFloor') is not None and total_floor is not None:
        floor_text = f"{floor_info.get('targetFloor')}/{total_floor}"

    changes = []
    for pc in price_info.get('priceChangeHistories') or []:
        value = pc.get('dealPrice')
        if value is None:
            value = pc.get('warrantyPrice')
        if value is None:
            value = pc.get('rentPrice')
        changes.append(PriceChange(
            price=_to_int(value),
            formatted_price=pc.get('formattedPrice'),
            modified_date=pc.get('modifiedDate'),
        ))

    return ListingRecord(
        article_no=str(rep.get('articleNumber')),
        trade_type=rep.get('tradeType') or TradeType.SALE.value,
        deal_price=_to_int(price_info.get('dealPrice')),
        warranty_price=_to_int(price_info.get('warrantyPrice')),
        rent_price=_to_int(price_info.get('rentPrice')),
        formatted_price=price_info.get('formattedDealPrice') or None,
        exclusive_space=_to_float(space_info.get('exclusiveSpace')),
        supply_space=_to_float(space_info.get('supplySpace')),
        floor_info=floor_text,
        target_floor=target_floor,
        total_floor=total_floor,
        description=description,
        complex_name=rep.get('complexName'),
        city=address.get('city'),
        division=address.get('division'),
        sector=address.get('sector'),
        bargain_keyword=detect_keyword(description, None, keywords),
        price_changes=changes,
        raw=RawRecord(source='fin_land', external_id=str(rep.get('articleNumber')), payload=item),
    )
