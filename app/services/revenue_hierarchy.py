"""
Revenue hierarchy resolver.

Raw revenue rows for a therapy overlap: a company may report Q1 US sales, a
full-year European figure and a consolidated worldwide total for the same
year. For display we need exactly one figure per (calendar quarter, region).

Candidates are ranked by a fixed precedence (1 = best):

    1. quarterly + regional
    2. quarterly + global
    3. annual + regional
    4. annual + global

Annual figures are spread evenly across their four quarters (``isInterpolated``)
and every output row carries a confidence score derived from its level.
Global data is only a per-quarter fallback when no regional row exists for
that quarter; it never overrides regional data.

Everything here is pure and synchronous; rows are never mutated.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Iterable, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import TherapyRevenue
from app.services.periods import ParsedPeriod, Region, parse_period, standardize_region

logger = logging.getLogger(__name__)


class DataGranularity(str, Enum):
    QUARTERLY = "quarterly"
    ANNUAL = "annual"


class GeographicScope(str, Enum):
    REGIONAL = "regional"
    GLOBAL = "global"


class HierarchyLevel(IntEnum):
    QUARTERLY_REGIONAL = 1
    QUARTERLY_GLOBAL = 2
    ANNUAL_REGIONAL = 3
    ANNUAL_GLOBAL = 4


_BASE_CONFIDENCE = {
    HierarchyLevel.QUARTERLY_REGIONAL: 95,
    HierarchyLevel.QUARTERLY_GLOBAL: 85,
    HierarchyLevel.ANNUAL_REGIONAL: 75,
    HierarchyLevel.ANNUAL_GLOBAL: 65,
}
INTERPOLATION_PENALTY = 10


@dataclass(frozen=True)
class ProcessedRevenue:
    """Display-ready quarterly figure. Recomputed on demand, never persisted."""

    id: str
    therapy_id: str
    period: str  # "YYYY-QN"
    region: Region
    revenue_millions_usd: float
    sources: list[str]
    last_updated: datetime | None

    hierarchy_level: HierarchyLevel
    data_granularity: DataGranularity
    geographic_scope: GeographicScope
    original_period: str
    is_interpolated: bool
    confidence: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "therapy_id": self.therapy_id,
            "period": self.period,
            "region": self.region.value,
            "revenue_millions_usd": self.revenue_millions_usd,
            "sources": list(self.sources),
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
            "hierarchy_level": int(self.hierarchy_level),
            "hierarchy_level_name": self.hierarchy_level.name.lower(),
            "data_granularity": self.data_granularity.value,
            "geographic_scope": self.geographic_scope.value,
            "original_period": self.original_period,
            "is_interpolated": self.is_interpolated,
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class _Candidate:
    row: Any
    parsed: ParsedPeriod
    region: Region
    level: HierarchyLevel


def geographic_scope(region: Region) -> GeographicScope:
    return GeographicScope.GLOBAL if region == Region.GLOBAL else GeographicScope.REGIONAL


def hierarchy_level(granularity: DataGranularity, scope: GeographicScope) -> HierarchyLevel:
    if granularity == DataGranularity.QUARTERLY:
        if scope == GeographicScope.REGIONAL:
            return HierarchyLevel.QUARTERLY_REGIONAL
        return HierarchyLevel.QUARTERLY_GLOBAL
    if scope == GeographicScope.REGIONAL:
        return HierarchyLevel.ANNUAL_REGIONAL
    return HierarchyLevel.ANNUAL_GLOBAL


def calculate_confidence(level: HierarchyLevel, is_interpolated: bool) -> int:
    """Base score for the level, minus the interpolation penalty, clamped to [10, 100]."""
    score = _BASE_CONFIDENCE[level]
    if is_interpolated:
        score -= INTERPOLATION_PENALTY
    return max(10, min(100, score))


def generate_quarterly_timeline(
    start_year: int,
    start_quarter: int,
    end_year: int,
    end_quarter: int,
) -> list[tuple[int, int]]:
    """Every (year, quarter) from start to end inclusive."""
    timeline: list[tuple[int, int]] = []
    year, quarter = start_year, start_quarter
    while year < end_year or (year == end_year and quarter <= end_quarter):
        timeline.append((year, quarter))
        quarter += 1
        if quarter > 4:
            quarter = 1
            year += 1
    return timeline


def _build_candidates(therapy_id: str, rows: Iterable[Any]) -> list[_Candidate]:
    candidates: list[_Candidate] = []
    for row in rows:
        try:
            parsed = parse_period(row.period)
        except ValueError as exc:
            logger.warning("Skipping revenue row %s for therapy %s: %s", getattr(row, "id", None), therapy_id, exc)
            continue
        region = standardize_region(row.region)
        granularity = DataGranularity.ANNUAL if parsed.is_annual else DataGranularity.QUARTERLY
        level = hierarchy_level(granularity, geographic_scope(region))
        candidates.append(_Candidate(row=row, parsed=parsed, region=region, level=level))
    return candidates


def _applies_to(candidate: _Candidate, year: int, quarter: int) -> bool:
    if candidate.parsed.year != year:
        return False
    return candidate.parsed.is_annual or candidate.parsed.quarter == quarter


def select_best_per_region(candidates: Sequence[_Candidate], year: int, quarter: int) -> list[_Candidate]:
    """One candidate per region for the quarter; Global only when no regional row applies."""
    by_region: dict[Region, list[_Candidate]] = {}
    for candidate in candidates:
        if _applies_to(candidate, year, quarter):
            by_region.setdefault(candidate.region, []).append(candidate)
    if not by_region:
        return []

    regional = [(region, group) for region, group in by_region.items() if region != Region.GLOBAL]
    if regional:
        # min() keeps the first of equal levels, so ties resolve by input order
        return [min(group, key=lambda c: c.level) for _, group in regional]

    global_group = by_region.get(Region.GLOBAL)
    if global_group:
        return [min(global_group, key=lambda c: c.level)]
    return []


def _to_processed(candidate: _Candidate, year: int, quarter: int) -> ProcessedRevenue:
    period = f"{year}-Q{quarter}"
    row = candidate.row
    is_interpolated = candidate.parsed.is_annual
    revenue = float(row.revenue_millions_usd)
    if is_interpolated:
        revenue = revenue / 4
    return ProcessedRevenue(
        id=f"{row.id}-processed-{period}",
        therapy_id=str(row.therapy_id),
        period=period,
        region=candidate.region,
        revenue_millions_usd=revenue,
        sources=list(row.sources or []),
        last_updated=getattr(row, "last_updated", None),
        hierarchy_level=candidate.level,
        data_granularity=DataGranularity.ANNUAL if is_interpolated else DataGranularity.QUARTERLY,
        geographic_scope=geographic_scope(candidate.region),
        original_period=row.period,
        is_interpolated=is_interpolated,
        confidence=calculate_confidence(candidate.level, is_interpolated),
    )


def process_therapy_revenue(therapy_id: str, rows: Iterable[Any]) -> list[ProcessedRevenue]:
    """Resolve one therapy's raw rows into one figure per (quarter, region)."""
    candidates = _build_candidates(therapy_id, rows)
    if not candidates:
        return []

    min_year = min(c.parsed.year for c in candidates)
    max_year = max(c.parsed.year for c in candidates)
    quarterly = [c for c in candidates if not c.parsed.is_annual]

    start_quarters = [c.parsed.quarter for c in quarterly if c.parsed.year == min_year]
    end_quarters = [c.parsed.quarter for c in quarterly if c.parsed.year == max_year]
    start_quarter = min(start_quarters) if start_quarters else 1
    end_quarter = max(end_quarters) if end_quarters else 4

    processed: list[ProcessedRevenue] = []
    for year, quarter in generate_quarterly_timeline(min_year, start_quarter, max_year, end_quarter):
        for candidate in select_best_per_region(candidates, year, quarter):
            processed.append(_to_processed(candidate, year, quarter))
    return processed


def process_revenue_with_hierarchy(rows: Iterable[Any]) -> list[ProcessedRevenue]:
    """Resolve raw rows for any number of therapies; sorted by therapy, then period."""
    by_therapy: dict[str, list[Any]] = {}
    for row in rows:
        by_therapy.setdefault(str(row.therapy_id), []).append(row)

    processed: list[ProcessedRevenue] = []
    for therapy_id, therapy_rows in by_therapy.items():
        processed.extend(process_therapy_revenue(therapy_id, therapy_rows))

    # Stable sort: regions within a quarter keep their resolution order
    return sorted(processed, key=lambda p: (p.therapy_id, p.period))


async def load_revenue_timeline(db: AsyncSession, therapy_id: UUID | None = None) -> list[ProcessedRevenue]:
    """Read raw TherapyRevenue rows and resolve them for display."""
    stmt = select(TherapyRevenue).order_by(TherapyRevenue.last_updated, TherapyRevenue.id)
    if therapy_id is not None:
        stmt = stmt.where(TherapyRevenue.therapy_id == therapy_id)
    result = await db.execute(stmt)
    rows = result.scalars().all()
    return process_revenue_with_hierarchy(rows)
