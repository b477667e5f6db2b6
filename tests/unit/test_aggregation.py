from __future__ import annotations

import asyncio
from decimal import Decimal

from adseries.aggregation import AdTotals, DailySummary, PlatformSummary, add_ad, afold, fold


def test_fold_is_sequential_and_order_preserving():
    assert fold(["a", "b", "c"], "", lambda acc, item: acc + item) == "abc"


def test_afold():
    async def records():
        for value in (1, 2, 3):
            yield value

    assert asyncio.run(afold(records(), 0, lambda acc, value: acc + value)) == 6


def test_ad_totals(sample_rows):
    totals = fold(sample_rows, AdTotals(), add_ad).as_dict()
    assert totals["count"] == 4
    assert totals["total_cost"] == 1350
    assert totals["total_play_count"] == 820
    assert totals["avg_play_count"] == 205
    assert totals["unique_advertisers"] == 1


def test_ad_totals_tolerates_bad_values():
    totals = AdTotals().add({"cost": "oops", "play_count": None}).add({"cost": Decimal("2.5")})
    assert totals.total_cost == 2.5
    assert totals.total_play_count == 0
    assert AdTotals().as_dict()["avg_cost"] == 0


def test_daily_summary():
    rows = [
        {"date": "2024-02-02", "total_ads": 10, "total_cost": 100},
        {"date": "2024-02-01", "total_ads": 30, "total_cost": 50},
    ]
    stats = fold(rows, DailySummary(), lambda acc, row: acc.add(row)).as_dict()
    assert stats["total_records"] == 2
    assert stats["avg_daily_ads"] == 20
    assert stats["date_range"] == "2024-02-01 - 2024-02-02"
    assert DailySummary().as_dict()["date_range"] is None


def test_platform_summary_ranks_by_cost():
    rows = [
        {"app_name": "TikTok", "ad_count": 2, "total_cost": 100, "total_play_count": 1000},
        {"app_name": "Instagram", "ad_count": 1, "total_cost": 500, "total_play_count": 10},
        {"app_name": "TikTok", "ad_count": 2, "total_cost": 100, "total_play_count": 1000},
    ]
    ranked = fold(rows, PlatformSummary(), lambda acc, row: acc.add(row)).ranked()
    assert [row["platform"] for row in ranked] == ["Instagram", "TikTok"]
    tiktok = ranked[1]
    assert tiktok["total_ads"] == 4
    assert tiktok["avg_play_per_ad"] == 500
    assert tiktok["record_count"] == 2
