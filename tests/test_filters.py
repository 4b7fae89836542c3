"""
Tests for filter specifications and the filter-expression tree.

These tests verify:
    - Boundary validation of open-ended filter dicts
    - Split between pushable (store) and residual (in-memory) leaves
    - Calendar-accurate age/seniority arithmetic
    - In-memory evaluation, including missing data
"""

from datetime import date

import pandas as pd
import pytest

from employee_survey.core.filters import (
    AllOf,
    FilterSpec,
    FilterSpecError,
    InclusionFilter,
    YearsRangeFilter,
    apply_filter,
    as_date,
    build_filter_tree,
    pushable_predicates,
    residual_filters,
    years_between,
)
from employee_survey.core.store import StorePredicate


class TestFilterSpecValidation:
    """FilterSpec.from_dict is the single validation point."""

    def test_none_and_empty_dict_are_empty_specs(self):
        assert FilterSpec.from_dict(None).is_empty()
        assert FilterSpec.from_dict({}).is_empty()

    def test_unknown_key_rejected(self):
        with pytest.raises(FilterSpecError):
            FilterSpec.from_dict({"sexe": ["F"], "shoe_size": [42]})

    def test_lists_are_cleaned(self):
        spec = FilterSpec.from_dict({"sexe": [" F ", "F", "", None, "M"], "fonctions": []})
        assert spec.sexe == ["F", "M"]
        assert spec.fonctions is None

    def test_scalar_is_wrapped_in_list(self):
        spec = FilterSpec.from_dict({"societe_ids": "soc-1"})
        assert spec.societe_ids == ["soc-1"]

    def test_bounds_coerced_to_int(self):
        spec = FilterSpec.from_dict({"age_min": "30", "age_max": 45.0})
        assert spec.age_min == 30
        assert spec.age_max == 45

    @pytest.mark.parametrize("bad", ["thirty", -1, 2.5, True])
    def test_invalid_bounds_rejected(self, bad):
        with pytest.raises(FilterSpecError):
            FilterSpec.from_dict({"seniority_min": bad})

    def test_min_greater_than_max_rejected(self):
        with pytest.raises(FilterSpecError):
            FilterSpec.from_dict({"age_min": 50, "age_max": 40})

    def test_round_trip_through_dict(self):
        raw = {"direction_ids": ["d1"], "sexe": ["F"], "age_min": 25}
        assert FilterSpec.from_dict(raw).to_dict() == raw

    def test_default_societe_only_when_absent(self):
        spec = FilterSpec.from_dict({"sexe": ["F"]}).with_default_societe("soc-9")
        assert spec.societe_ids == ["soc-9"]

        explicit = FilterSpec.from_dict({"societe_ids": ["soc-1"]}).with_default_societe("soc-9")
        assert explicit.societe_ids == ["soc-1"]

    def test_demographic_constraint_detection(self):
        assert not FilterSpec.from_dict({"direction_ids": ["d1"]}).has_demographic_constraints()
        assert FilterSpec.from_dict({"cost_centers": ["CC1"]}).has_demographic_constraints()
        assert FilterSpec.from_dict({"seniority_max": 3}).has_demographic_constraints()


class TestFilterTree:
    """Leaves are tagged pushable or residual."""

    def test_empty_spec_builds_empty_conjunction(self):
        tree = build_filter_tree(FilterSpec())
        assert isinstance(tree, AllOf)
        assert tree.children == ()
        assert pushable_predicates(tree) == []
        assert residual_filters(tree) == []

    def test_inclusion_lists_are_pushable(self):
        spec = FilterSpec.from_dict({"direction_ids": ["d1", "d2"], "types_contrat": ["CDI"]})
        preds = pushable_predicates(build_filter_tree(spec))
        assert StorePredicate("direction_id", "in", ("d1", "d2")) in preds
        assert StorePredicate("type_contrat", "in", ("CDI",)) in preds

    def test_age_and_seniority_are_residual(self):
        spec = FilterSpec.from_dict({"sexe": ["F"], "age_min": 30, "seniority_max": 5})
        tree = build_filter_tree(spec)
        residual = residual_filters(tree)
        assert YearsRangeFilter(date_column="date_naissance", min_years=30) in residual
        assert YearsRangeFilter(date_column="date_entree", max_years=5) in residual
        assert all(isinstance(p, StorePredicate) for p in pushable_predicates(tree))
        assert len(pushable_predicates(tree)) == 1

    def test_org_only_tree_drops_demographics(self):
        spec = FilterSpec.from_dict({"service_ids": ["s1"], "sexe": ["F"], "age_min": 30})
        tree = build_filter_tree(spec, demographics=False)
        assert tree.children == (InclusionFilter(column="service_id", values=("s1",)),)


class TestYearsBetween:
    """Whole-year arithmetic is calendar accurate."""

    def test_anniversary_today_counts(self):
        assert years_between(date(1990, 10, 17), date(2026, 10, 17)) == 36

    def test_anniversary_tomorrow_does_not_count(self):
        assert years_between(date(1990, 10, 18), date(2026, 10, 17)) == 35

    def test_earlier_month(self):
        assert years_between(date(1990, 11, 1), date(2026, 10, 17)) == 35

    def test_leap_day_birthday(self):
        assert years_between(date(2000, 2, 29), date(2025, 2, 28)) == 24
        assert years_between(date(2000, 2, 29), date(2025, 3, 1)) == 25


class TestAsDate:
    """Stored dates and timestamps reduce to a calendar date."""

    @pytest.mark.parametrize(
        "value, expected",
        [
            ("1990-10-17", date(1990, 10, 17)),
            ("1990-10-17T00:00:00+00:00", date(1990, 10, 17)),
            (pd.Timestamp("1990-10-17 12:00"), date(1990, 10, 17)),
            (date(1990, 10, 17), date(1990, 10, 17)),
            (None, None),
            (float("nan"), None),
            (pd.NaT, None),
            ("not-a-date", None),
            ("1990-02-30", None),
        ],
    )
    def test_as_date(self, value, expected):
        assert as_date(value) == expected


class TestEvaluation:
    """In-memory evaluation of the tree."""

    @pytest.fixture
    def frame(self):
        return pd.DataFrame.from_records([
            {"id": "a", "sexe": "F", "direction_id": "d1", "date_naissance": "1990-10-17", "date_entree": "2020-01-01"},
            {"id": "b", "sexe": "M", "direction_id": "d1", "date_naissance": "1990-10-18", "date_entree": None},
            {"id": "c", "sexe": "F", "direction_id": "d2", "date_naissance": None, "date_entree": "2010-05-05"},
            {"id": "d", "sexe": None, "direction_id": "d2", "date_naissance": "1980-01-01", "date_entree": "not-a-date"},
        ])

    def test_or_within_and_across(self, frame, today):
        spec = FilterSpec.from_dict({"sexe": ["F", "M"], "direction_ids": ["d1"]})
        out = apply_filter(frame, build_filter_tree(spec), today=today)
        assert list(out["id"]) == ["a", "b"]

    def test_age_min_boundary(self, frame, today):
        exactly_36 = apply_filter(frame, build_filter_tree(FilterSpec(age_min=36)), today=today)
        assert "a" in set(exactly_36["id"])

        at_least_37 = apply_filter(frame, build_filter_tree(FilterSpec(age_min=37)), today=today)
        assert "a" not in set(at_least_37["id"])

    def test_age_max_inclusive(self, frame, today):
        out = apply_filter(frame, build_filter_tree(FilterSpec(age_max=36)), today=today)
        assert set(out["id"]) == {"a", "b"}

    def test_missing_or_bad_date_never_satisfies_a_bound(self, frame, today):
        out = apply_filter(frame, build_filter_tree(FilterSpec(seniority_min=0)), today=today)
        assert set(out["id"]) == {"a", "c"}

    def test_mixed_date_formats_in_one_column(self, today):
        frame = pd.DataFrame.from_records([
            {"id": "a", "date_naissance": "1980-01-01"},
            {"id": "b", "date_naissance": "1980-01-01T00:00:00+00:00"},
            {"id": "c", "date_naissance": "1980-01-01 08:30:00"},
            {"id": "d", "date_naissance": pd.Timestamp("1980-01-01")},
            {"id": "e", "date_naissance": date(1980, 1, 1)},
            {"id": "f", "date_naissance": "01/01/1980"},
        ])
        out = apply_filter(frame, build_filter_tree(FilterSpec(age_min=30)), today=today)
        assert list(out["id"]) == ["a", "b", "c", "d", "e"]

    def test_timestamp_date_part_is_taken_as_written(self, today):
        frame = pd.DataFrame.from_records([
            {"id": "a", "date_entree": "2016-10-17T23:30:00-05:00"},
        ])
        out = apply_filter(frame, build_filter_tree(FilterSpec(seniority_min=10)), today=today)
        assert list(out["id"]) == ["a"]

    def test_residual_only_ignores_pushable_leaves(self, frame, today):
        spec = FilterSpec.from_dict({"direction_ids": ["d2"], "age_min": 40})
        out = apply_filter(frame, build_filter_tree(spec), today=today, residual_only=True)
        assert list(out["id"]) == ["d"]

    def test_absent_column_matches_nothing(self, today):
        frame = pd.DataFrame.from_records([{"id": "x", "direction_id": "d1"}])
        out = apply_filter(frame, build_filter_tree(FilterSpec(sexe=["F"])), today=today)
        assert out.empty

    def test_empty_spec_keeps_everything(self, frame, today):
        out = apply_filter(frame, build_filter_tree(FilterSpec()), today=today)
        assert len(out) == len(frame)
