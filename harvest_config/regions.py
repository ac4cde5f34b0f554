"""
Geographic tile grid for cell-based polling.

Each region is a lat/lon bounding box walked in square cells of `step`
degrees. Cell ids are stable strings so the active-cell cache survives
restarts.
"""

import math
from dataclasses import dataclass
from typing import Iterator, List, Optional


@dataclass(frozen=True)
class Region:
    name: str
    lat_min: float
    lat_max: float
    lon_min: float
    lon_max: float
    step: float


@dataclass(frozen=True)
class Cell:
    """One bounding-box tile"""
    region: str
    lat: float  # bottom edge
    lon: float  # left edge
    step: float

    @property
    def cell_id(self) -> str:
        return f"{self.lat:.4f},{self.lon:.4f},{self.step:.4f}"

    @property
    def top(self) -> float:
        return self.lat + self.step

    @property
    def right(self) -> float:
        return self.lon + self.step

    @property
    def center(self):
        return self.lat + self.step / 2, self.lon + self.step / 2


REGIONS: List[Region] = [
    Region('서울/경기/인천', 37.20, 37.75, 126.60, 127.40, 0.04),
    Region('부산/울산/경남', 34.90, 35.60, 128.70, 129.40, 0.05),
    Region('대구/경북', 35.70, 36.20, 128.40, 129.10, 0.05),
    Region('대전/세종/충남', 36.20, 36.65, 126.70, 127.50, 0.05),
    Region('충북', 36.50, 37.00, 127.30, 127.90, 0.05),
    Region('광주/전남', 34.70, 35.25, 126.60, 127.10, 0.05),
    Region('전북', 35.60, 36.10, 126.80, 127.30, 0.05),
    Region('강원', 37.30, 37.95, 127.60, 129.10, 0.06),
    Region('제주', 33.20, 33.55, 126.15, 126.95, 0.05),
]


def iter_cells(region: Region) -> Iterator[Cell]:
    """Walk a region's grid row by row. Indices avoid float accumulation drift."""
    lat_steps = math.ceil((region.lat_max - region.lat_min) / region.step - 1e-9)
    lon_steps = math.ceil((region.lon_max - region.lon_min) / region.step - 1e-9)
    for i in range(lat_steps):
        lat = round(region.lat_min + i * region.step, 6)
        for j in range(lon_steps):
            lon = round(region.lon_min + j * region.step, 6)
            yield Cell(region=region.name, lat=lat, lon=lon, step=region.step)


def select_regions(name_filter: Optional[str] = None) -> List[Region]:
    """Regions whose name contains the filter (all regions when no filter)"""
    if not name_filter:
        return list(REGIONS)
    return [r for r in REGIONS if name_filter in r.name]
