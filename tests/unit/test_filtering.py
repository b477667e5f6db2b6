from __future__ import annotations

import pytest

from adseries.errors import InvalidArgumentError
from adseries.filtering import DateRange, FilterSpec, compose, take_matching, text_matcher


def test_min_play_count_excludes_smaller_rows_and_keeps_order(sample_rows):
    spec = FilterSpec.from_params({"minPlayCount": "100"})
    predicate = compose(spec)
    kept = [row["date"] for row in sample_rows if predicate(row)]
    assert kept == ["2024-02-02", "2024-02-03", "2024-02-04"]


def test_empty_spec_accepts_everything(sample_rows):
    predicate = compose(FilterSpec())
    assert all(predicate(row) for row in sample_rows)


def test_clauses_are_conjunctive(sample_rows):
    predicate = compose(FilterSpec(platform="TikTok", min_cost=100))
    assert [row["date"] for row in sample_rows if predicate(row)] == ["2024-02-01", "2024-02-03"]


def test_missing_numeric_field_fails_threshold():
    predicate = compose(FilterSpec(min_play_count=1))
    assert not predicate({"app_name": "TikTok"})
    assert not predicate({"play_count": "n/a"})


def test_date_range_compares_at_bound_precision():
    window = DateRange("2024-02", "2024-03-10")
    assert window.contains("2024-02-01")
    assert window.contains("2024-03-10")
    assert not window.contains("2024-03-11")
    assert not window.contains(None)


def test_date_range_rejects_inverted_bounds():
    with pytest.raises(InvalidArgumentError):
        DateRange("2024-05", "2024-04")


def test_from_params_parses_strings_and_defaults_limit():
    spec = FilterSpec.from_params(
        {"platform": " TikTok ", "minCost": "12.5", "start": "2024-01", "genre": ""},
        default_limit=1000,
    )
    assert spec.platform == "TikTok"
    assert spec.genre is None
    assert spec.min_cost == 12.5
    assert spec.date_range == DateRange("2024-01", "2024-01")
    assert spec.limit == 1000


@pytest.mark.parametrize("params", [{"limit": "abc"}, {"minPlayCount": "many"}, {"limit": "-1"}])
def test_from_params_rejects_bad_values(params):
    with pytest.raises(InvalidArgumentError):
        FilterSpec.from_params(params)


def test_extra_predicate_runs_after_spec_clauses():
    seen = []

    def extra(record):
        seen.append(record["id"])
        return True

    predicate = compose(FilterSpec(platform="TikTok"), extra)
    for record in ({"id": 1, "app_name": "TikTok"}, {"id": 2, "app_name": "Instagram"}):
        predicate(record)
    assert seen == [1]


def test_take_matching_respects_limit(sample_rows):
    predicate = compose(FilterSpec(platform="TikTok"))
    assert len(list(take_matching(sample_rows, predicate, limit=2))) == 2
    assert list(take_matching(sample_rows, predicate, limit=0)) == []


def test_text_matcher_matches_any_term():
    matcher = text_matcher("serum lipstick")
    assert matcher({"product_name": "Night Serum"})
    assert not matcher({"product_name": "Shampoo", "ad_sentence": "clean hair"})
    assert text_matcher("   ")({})
