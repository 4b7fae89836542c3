"""
Tests for population fetching, previews and filter options against the in-memory store.
"""

import pytest

from employee_survey.core.filters import FilterSpec
from employee_survey.core.population import (
    DEMOGRAPHIC_COLUMNS,
    ORGANIZATIONS_TABLE,
    TOKENS_TABLE,
    fetch_population,
    load_filter_options,
    preview_population,
)
from employee_survey.core.store import StorePredicate

from conftest import FakeStore, make_identity


@pytest.fixture
def store():
    identities = [
        make_identity(0, sexe="F", direction_id="d1", date_naissance="1990-10-17", fonction="Cadre"),
        make_identity(1, sexe="M", direction_id="d1", date_naissance="1990-10-18", fonction="Agent"),
        make_identity(2, sexe="F", direction_id="d2", date_naissance="1970-01-01", fonction="Agent"),
        make_identity(3, sexe="F", direction_id="d2", date_naissance=None, fonction="Cadre"),
        make_identity(4, sexe="M", direction_id="d1", active=False),
        make_identity(5, sexe="F", direction_id="d1", societe_id="soc-2"),
    ]
    organizations = [
        {"id": "d1", "name": "Direction Finance", "type": "direction", "parent_id": "soc-1"},
        {"id": "d2", "name": "Direction RH", "type": "direction", "parent_id": "soc-1"},
    ]
    return FakeStore({TOKENS_TABLE: identities, ORGANIZATIONS_TABLE: organizations})


def _ids(df):
    return sorted(df["id"]) if not df.empty else []


class TestFetchPopulation:
    """Active identities matching every constraint."""

    def test_no_filter_returns_all_active(self, store, today):
        df = fetch_population(FilterSpec(), store=store, today=today)
        assert _ids(df) == ["tok-0", "tok-1", "tok-2", "tok-3", "tok-5"]

    def test_inclusion_lists_are_pushed_to_the_store(self, store, today):
        spec = FilterSpec.from_dict({"societe_ids": ["soc-1"], "sexe": ["F"]})
        df = fetch_population(spec, store=store, today=today)
        assert _ids(df) == ["tok-0", "tok-2", "tok-3"]

        _, table, predicates = store.calls[-1]
        assert table == TOKENS_TABLE
        assert StorePredicate("active", "eq", True) in predicates
        assert StorePredicate("sexe", "in", ("F",)) in predicates

    def test_or_within_and_across_dimensions(self, store, today):
        spec = FilterSpec.from_dict({"direction_ids": ["d1", "d2"], "fonctions": ["Cadre"]})
        assert _ids(fetch_population(spec, store=store, today=today)) == ["tok-0", "tok-3"]

    def test_age_filter_applied_after_fetch(self, store, today):
        spec = FilterSpec.from_dict({"societe_ids": ["soc-1"], "age_min": 36})
        # tok-1 turns 36 tomorrow, tok-3 has no birth date
        assert _ids(fetch_population(spec, store=store, today=today)) == ["tok-0", "tok-2"]

    def test_empty_result(self, store, today):
        spec = FilterSpec.from_dict({"direction_ids": ["nowhere"]})
        assert fetch_population(spec, store=store, today=today).empty

    def test_falls_back_to_org_filters_without_demographic_columns(self, store, today, caplog):
        store.drop_columns(TOKENS_TABLE, DEMOGRAPHIC_COLUMNS)
        spec = FilterSpec.from_dict({"direction_ids": ["d2"], "sexe": ["M"], "age_min": 99})

        with caplog.at_level("WARNING"):
            df = fetch_population(spec, store=store, today=today)

        assert _ids(df) == ["tok-2", "tok-3"]
        assert "Ignoring demographic constraints" in caplog.text


class TestPreview:
    """Counts and pulse sample sizes."""

    def test_classic_survey_has_no_sample_size(self, store, today):
        preview = preview_population(FilterSpec(societe_ids=["soc-1"]), store=store, today=today)
        assert preview.total_filtered == 4
        assert preview.sample_size is None

    def test_pulse_survey_sample_size(self, store, today):
        preview = preview_population(
            FilterSpec(societe_ids=["soc-1"]),
            survey_type="pulse",
            sample_percentage=30,
            store=store,
            today=today,
        )
        # round(4 * 0.3) = 1
        assert preview.total_filtered == 4
        assert preview.sample_size == 1

    def test_pulse_survey_on_empty_population(self, store, today):
        preview = preview_population(
            FilterSpec(direction_ids=["nowhere"]),
            survey_type="pulse",
            sample_percentage=50,
            store=store,
            today=today,
        )
        assert preview.total_filtered == 0
        assert preview.sample_size == 0


class TestFilterOptions:
    """Distinct values per dimension for building filters."""

    def test_distinct_values_and_org_names(self, store):
        options = load_filter_options(["soc-1"], store=store)

        assert [(d.id, d.name) for d in options.directions] == [
            ("d1", "Direction Finance"),
            ("d2", "Direction RH"),
        ]
        assert options.categorical["sexe"] == ["F", "M"]
        assert options.categorical["fonctions"] == ["Agent", "Cadre"]
        assert options.categorical["cost_centers"] == []
        assert options.has_date_naissance is True
        assert options.has_date_entree is False
        assert options.total_tokens == 4

    def test_unknown_org_unit_uses_its_id_as_name(self, store):
        store.tables[TOKENS_TABLE].append(make_identity(9, direction_id="d9"))
        options = load_filter_options(store=store)
        assert ("d9", "d9") in [(d.id, d.name) for d in options.directions]

    def test_without_demographic_columns(self, store):
        store.drop_columns(TOKENS_TABLE, DEMOGRAPHIC_COLUMNS)
        options = load_filter_options(["soc-1"], store=store)
        assert options.has_demographics is False
        assert options.categorical["sexe"] == []
        assert [d.id for d in options.directions] == ["d1", "d2"]
