"""Period and region normalization for reported revenue figures.

Pure functions: free-text periods ("Q3 2024", "3Q24 FY2024", "2023") become a
(year, quarter) pair, free-text regions map onto a small fixed enum.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum

from app.errors import ParseError

logger = logging.getLogger(__name__)


class Region(str, Enum):
    US = "United States"
    EUROPE = "Europe"
    OTHER = "Other"
    GLOBAL = "Global"


@dataclass(frozen=True)
class ParsedPeriod:
    year: int
    quarter: int | None  # 1-4, None for annual data
    is_annual: bool
    standardized: str  # "YYYY-QN" for quarterly, "YYYY" for annual


_YEAR_RE = re.compile(r"(\d{4})")

# Tried in order; first match with a quarter in 1..4 wins.
_QUARTER_PATTERNS = (
    re.compile(r"Q([1-4])"),            # Q1, Q2, Q3, Q4
    re.compile(r"(\d)(?:ST|ND|RD|TH)?Q"),  # 1Q, 2Q, 1STQ, 3RDQ
    re.compile(r"QUARTER\s*([1-4])"),   # QUARTER 1, QUARTER2
)

_REGION_ALIASES: dict[str, Region] = {
    # US variations
    "us": Region.US,
    "usa": Region.US,
    "u.s.": Region.US,
    "united states": Region.US,
    "united states of america": Region.US,
    "north america": Region.US,
    "america": Region.US,
    # Europe variations
    "eu": Region.EUROPE,
    "europe": Region.EUROPE,
    "european union": Region.EUROPE,
    "ema": Region.EUROPE,
    # Other variations
    "other": Region.OTHER,
    "rest of world": Region.OTHER,
    "row": Region.OTHER,
    "international": Region.OTHER,
    "apac": Region.OTHER,
    "asia pacific": Region.OTHER,
    "asia": Region.OTHER,
    "japan": Region.OTHER,
    "china": Region.OTHER,
    # Global variations
    "global": Region.GLOBAL,
    "worldwide": Region.GLOBAL,
    "total": Region.GLOBAL,
    "consolidated": Region.GLOBAL,
}


def parse_period(period: str) -> ParsedPeriod:
    """Parse a reported period string.

    Raises :class:`ParseError` when no four-digit year is present. A quarter
    number outside 1-4 is ignored and the period is treated as annual.
    """
    normalized = (period or "").strip().upper()

    year_match = _YEAR_RE.search(normalized)
    if not year_match:
        raise ParseError(f"Invalid period format: {period!r}")
    year = int(year_match.group(1))

    for pattern in _QUARTER_PATTERNS:
        match = pattern.search(normalized)
        if match:
            quarter = int(match.group(1))
            if 1 <= quarter <= 4:
                return ParsedPeriod(
                    year=year,
                    quarter=quarter,
                    is_annual=False,
                    standardized=f"{year}-Q{quarter}",
                )

    return ParsedPeriod(year=year, quarter=None, is_annual=True, standardized=str(year))


def standardize_region(region: str) -> Region:
    """Map a free-text region onto :class:`Region`; unknown input becomes OTHER."""
    normalized = " ".join((region or "").strip().lower().split())
    mapped = _REGION_ALIASES.get(normalized)
    if mapped is None:
        logger.warning("Unknown region %r, mapping to %s", region, Region.OTHER.value)
        return Region.OTHER
    return mapped
