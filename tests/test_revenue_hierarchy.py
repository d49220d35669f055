"""Unit tests for app.services.revenue_hierarchy (pure resolver, no DB)."""
from __future__ import annotations

from datetime import datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.services.periods import Region
from app.services.revenue_hierarchy import (
    DataGranularity,
    GeographicScope,
    HierarchyLevel,
    calculate_confidence,
    generate_quarterly_timeline,
    load_revenue_timeline,
    process_revenue_with_hierarchy,
    process_therapy_revenue,
)


def _row(row_id, period, region, revenue, therapy_id="t1"):
    return SimpleNamespace(
        id=row_id,
        therapy_id=therapy_id,
        period=period,
        region=region,
        revenue_millions_usd=revenue,
        sources=[f"src-{row_id}"],
        last_updated=datetime(2024, 1, 1),
    )


def _by_key(processed):
    return {(p.period, p.region): p for p in processed}


# --- calculate_confidence / timeline ---

def test_confidence_by_level():
    assert calculate_confidence(HierarchyLevel.QUARTERLY_REGIONAL, False) == 95
    assert calculate_confidence(HierarchyLevel.QUARTERLY_GLOBAL, False) == 85
    assert calculate_confidence(HierarchyLevel.ANNUAL_REGIONAL, True) == 65
    assert calculate_confidence(HierarchyLevel.ANNUAL_GLOBAL, True) == 55


def test_timeline_spans_years():
    assert generate_quarterly_timeline(2023, 3, 2024, 2) == [(2023, 3), (2023, 4), (2024, 1), (2024, 2)]


def test_timeline_single_quarter():
    assert generate_quarterly_timeline(2024, 2, 2024, 2) == [(2024, 2)]


# --- process_therapy_revenue ---

def test_quarterly_regional_beats_global_annual():
    rows = [_row("r1", "2023-Q1", "US", 100), _row("r2", "2023", "Global", 380)]
    processed = process_therapy_revenue("t1", rows)

    # Timeline ends at the latest observed quarter (Q1), and Global is not used where regional data exists
    assert len(processed) == 1
    q1 = processed[0]
    assert q1.period == "2023-Q1"
    assert q1.region == Region.US
    assert q1.revenue_millions_usd == 100
    assert q1.hierarchy_level == HierarchyLevel.QUARTERLY_REGIONAL
    assert q1.confidence == 95
    assert q1.is_interpolated is False
    assert q1.id == "r1-processed-2023-Q1"


def test_global_annual_fills_quarters_without_regional_data():
    rows = [
        _row("r1", "2023-Q1", "US", 100),
        _row("r2", "2023-Q4", "Europe", 50),
        _row("r3", "2023", "Global", 380),
    ]
    by_key = _by_key(process_therapy_revenue("t1", rows))

    assert set(by_key) == {
        ("2023-Q1", Region.US),
        ("2023-Q2", Region.GLOBAL),
        ("2023-Q3", Region.GLOBAL),
        ("2023-Q4", Region.EUROPE),
    }
    q2 = by_key[("2023-Q2", Region.GLOBAL)]
    assert q2.revenue_millions_usd == 95
    assert q2.is_interpolated is True
    assert q2.hierarchy_level == HierarchyLevel.ANNUAL_GLOBAL
    assert q2.geographic_scope == GeographicScope.GLOBAL
    assert q2.confidence == 55
    assert q2.original_period == "2023"


def test_annual_regional_only_is_spread_over_four_quarters():
    processed = process_therapy_revenue("t1", [_row("r1", "2024", "US", 400)])

    assert [p.period for p in processed] == ["2024-Q1", "2024-Q2", "2024-Q3", "2024-Q4"]
    for p in processed:
        assert p.revenue_millions_usd == 100
        assert p.is_interpolated is True
        assert p.hierarchy_level == HierarchyLevel.ANNUAL_REGIONAL
        assert p.data_granularity == DataGranularity.ANNUAL
        assert p.confidence == 65


def test_regional_quarterly_and_global_quarterly_for_other_region():
    """Global quarterly data is not reported next to regional data in the same quarter."""
    rows = [
        _row("r1", "Q2 2024", "usa", 60),
        _row("r2", "Q2 2024", "worldwide", 90),
        _row("r3", "Q2 2024", "EU", 20),
    ]
    processed = process_therapy_revenue("t1", rows)
    assert [(p.period, p.region) for p in processed] == [("2024-Q2", Region.US), ("2024-Q2", Region.EUROPE)]


def test_quarterly_regional_wins_over_annual_regional_same_region():
    rows = [_row("r1", "2024", "US", 400), _row("r2", "Q2 2024", "US", 130)]
    by_key = _by_key(process_therapy_revenue("t1", rows))
    assert by_key[("2024-Q2", Region.US)].revenue_millions_usd == 130
    assert by_key[("2024-Q2", Region.US)].confidence == 95


def test_unparseable_rows_are_skipped():
    rows = [_row("bad", "banana", "US", 10), _row("r1", "Q1 2024", "US", 50)]
    processed = process_therapy_revenue("t1", rows)
    assert [p.id for p in processed] == ["r1-processed-2024-Q1"]


def test_no_parseable_rows_yields_nothing():
    assert process_therapy_revenue("t1", [_row("bad", "soon", "US", 10)]) == []


def test_ties_resolve_to_first_seen_row():
    rows = [_row("first", "Q1 2024", "US", 10), _row("second", "Q1 2024", "usa", 20)]
    processed = process_therapy_revenue("t1", rows)
    assert len(processed) == 1
    assert processed[0].id == "first-processed-2024-Q1"


def test_input_rows_are_not_mutated():
    row = _row("r1", "2024", "US", 400)
    process_therapy_revenue("t1", [row])
    assert row.period == "2024"
    assert row.revenue_millions_usd == 400


# --- process_revenue_with_hierarchy ---

def test_multiple_therapies_sorted_by_therapy_then_period():
    rows = [
        _row("b1", "Q2 2024", "US", 5, therapy_id="b"),
        _row("a2", "Q2 2024", "US", 7, therapy_id="a"),
        _row("a1", "Q1 2024", "US", 6, therapy_id="a"),
    ]
    processed = process_revenue_with_hierarchy(rows)
    assert [(p.therapy_id, p.period) for p in processed] == [
        ("a", "2024-Q1"),
        ("a", "2024-Q2"),
        ("b", "2024-Q2"),
    ]


def test_to_dict_is_json_friendly():
    processed = process_therapy_revenue("t1", [_row("r1", "Q1 2024", "US", 50)])
    out = processed[0].to_dict()
    assert out["region"] == "United States"
    assert out["hierarchy_level"] == 1
    assert out["hierarchy_level_name"] == "quarterly_regional"
    assert out["last_updated"] == "2024-01-01T00:00:00"


@pytest.mark.asyncio
async def test_load_revenue_timeline_reads_rows():
    db = AsyncMock()
    result = MagicMock()
    result.scalars.return_value.all.return_value = [_row("r1", "2024", "US", 400)]
    db.execute = AsyncMock(return_value=result)

    processed = await load_revenue_timeline(db)
    assert len(processed) == 4
    db.execute.assert_awaited_once()
