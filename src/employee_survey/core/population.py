from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Optional

import logging

import pandas as pd

from employee_survey.core.filters import (
    BIRTH_DATE_COL,
    DEMOGRAPHIC_FILTER_COLUMNS,
    HIRE_DATE_COL,
    FilterSpec,
    apply_filter,
    build_filter_tree,
    pushable_predicates,
    residual_filters,
)
from employee_survey.core.sampling import target_sample_size
from employee_survey.core.store import (
    MissingColumnError,
    StorePredicate,
    SurveyStore,
    get_store,
)

logger = logging.getLogger(__name__)

TOKENS_TABLE = "anonymous_tokens"
ORGANIZATIONS_TABLE = "organizations"

BASE_COLUMNS = [
    "id",
    "token",
    "email",
    "employee_name",
    "societe_id",
    "direction_id",
    "department_id",
    "service_id",
]
DEMOGRAPHIC_COLUMNS = [
    "sexe",
    BIRTH_DATE_COL,
    HIRE_DATE_COL,
    "fonction",
    "lieu_travail",
    "type_contrat",
    "temps_travail",
    "cost_center",
]

ORG_UNIT_COLUMNS = ["direction_id", "department_id", "service_id"]

PULSE_SURVEY_TYPE = "pulse"


@dataclass
class PopulationPreview:
    total_filtered: int
    sample_size: Optional[int]


@dataclass
class OrgUnitOption:
    id: str
    name: str
    parent_id: Optional[str] = None


@dataclass
class FilterOptions:
    """Distinct values available for each filter dimension."""
    directions: List[OrgUnitOption] = field(default_factory=list)
    departments: List[OrgUnitOption] = field(default_factory=list)
    services: List[OrgUnitOption] = field(default_factory=list)
    categorical: Dict[str, List[str]] = field(default_factory=dict)
    has_date_naissance: bool = False
    has_date_entree: bool = False
    has_demographics: bool = True
    total_tokens: int = 0


# ---------------------------------------------------------------------------
# Population fetch
# ---------------------------------------------------------------------------

def _active_predicate() -> StorePredicate:
    return StorePredicate("active", "eq", True)


def fetch_population(
    spec: Optional[FilterSpec] = None,
    *,
    store: Optional[SurveyStore] = None,
    today: Optional[date] = None,
) -> pd.DataFrame:
    """
    Return the active identities matching every supplied constraint.

    Inclusion lists are pushed to the store; age/seniority ranges are applied
    on the fetched rows. If the store has no demographic columns yet, the
    query is retried with organizational filters only.
    """
    spec = spec or FilterSpec()
    store = store or get_store()

    tree = build_filter_tree(spec)
    predicates = [_active_predicate()] + pushable_predicates(tree)

    logger.info("Fetching population (filters=%s)", spec.to_dict())
    try:
        df = store.select(
            TOKENS_TABLE,
            columns=BASE_COLUMNS + DEMOGRAPHIC_COLUMNS,
            predicates=predicates,
        )
    except MissingColumnError as exc:
        logger.warning(
            "Demographic columns unavailable (%s); falling back to organizational filters only.", exc
        )
        return _fetch_population_org_only(spec, store)

    if df.empty:
        return df

    if residual_filters(tree):
        before = len(df)
        df = apply_filter(df, tree, today=today, residual_only=True)
        logger.info("Age/seniority filter kept %d of %d identities", len(df), before)

    return df.reset_index(drop=True)


def _fetch_population_org_only(spec: FilterSpec, store: SurveyStore) -> pd.DataFrame:
    if spec.has_demographic_constraints():
        logger.warning("Ignoring demographic constraints: %s", _demographic_part(spec))

    org_tree = build_filter_tree(spec, demographics=False)
    df = store.select(
        TOKENS_TABLE,
        columns=BASE_COLUMNS,
        predicates=[_active_predicate()] + pushable_predicates(org_tree),
    )
    return df.reset_index(drop=True)


def _demographic_part(spec: FilterSpec) -> Dict[str, object]:
    data = spec.to_dict()
    return {k: v for k, v in data.items() if k in DEMOGRAPHIC_FILTER_COLUMNS or k.endswith(("_min", "_max"))}


def preview_population(
    spec: Optional[FilterSpec] = None,
    *,
    survey_type: Optional[str] = None,
    sample_percentage: Optional[float] = None,
    store: Optional[SurveyStore] = None,
    today: Optional[date] = None,
) -> PopulationPreview:
    """How many identities a filter selects, and the sample size for pulse surveys."""
    population = fetch_population(spec, store=store, today=today)
    total = len(population)

    sample_size: Optional[int] = None
    if survey_type == PULSE_SURVEY_TYPE and sample_percentage:
        sample_size = min(target_sample_size(total, float(sample_percentage)), total)

    return PopulationPreview(total_filtered=total, sample_size=sample_size)


# ---------------------------------------------------------------------------
# Filter options
# ---------------------------------------------------------------------------

def _distinct(df: pd.DataFrame, column: str) -> List[str]:
    if column not in df.columns:
        return []
    values = {str(v).strip() for v in df[column].dropna() if str(v).strip()}
    return sorted(values)


def _org_options(ids: List[str], org_df: pd.DataFrame) -> List[OrgUnitOption]:
    lookup: Dict[str, Dict[str, object]] = {}
    if not org_df.empty:
        for rec in org_df.to_dict(orient="records"):
            lookup[str(rec["id"])] = rec

    options: List[OrgUnitOption] = []
    for unit_id in ids:
        rec = lookup.get(unit_id, {})
        parent = rec.get("parent_id")
        options.append(
            OrgUnitOption(
                id=unit_id,
                name=str(rec.get("name") or unit_id),
                parent_id=str(parent) if parent is not None and not pd.isna(parent) else None,
            )
        )
    return options


def load_filter_options(
    societe_ids: Optional[List[str]] = None,
    *,
    store: Optional[SurveyStore] = None,
) -> FilterOptions:
    store = store or get_store()

    predicates = [_active_predicate()]
    if societe_ids:
        predicates.append(StorePredicate("societe_id", "in", tuple(societe_ids)))

    has_demo = True
    try:
        tokens = store.select(
            TOKENS_TABLE,
            columns=ORG_UNIT_COLUMNS + DEMOGRAPHIC_COLUMNS,
            predicates=predicates,
        )
    except MissingColumnError as exc:
        logger.warning("Demographic columns unavailable (%s); listing org units only.", exc)
        has_demo = False
        tokens = store.select(TOKENS_TABLE, columns=ORG_UNIT_COLUMNS, predicates=predicates)

    unit_ids: List[str] = []
    for col in ORG_UNIT_COLUMNS:
        for unit_id in _distinct(tokens, col):
            if unit_id not in unit_ids:
                unit_ids.append(unit_id)

    org_df = pd.DataFrame()
    if unit_ids:
        org_df = store.select(
            ORGANIZATIONS_TABLE,
            columns=["id", "name", "type", "parent_id"],
            predicates=[StorePredicate("id", "in", tuple(unit_ids))],
        )

    categorical: Dict[str, List[str]] = {}
    for name, column in DEMOGRAPHIC_FILTER_COLUMNS.items():
        categorical[name] = _distinct(tokens, column) if has_demo else []

    def _has_dates(column: str) -> bool:
        return has_demo and column in tokens.columns and bool(tokens[column].notna().any())

    return FilterOptions(
        directions=_org_options(_distinct(tokens, "direction_id"), org_df),
        departments=_org_options(_distinct(tokens, "department_id"), org_df),
        services=_org_options(_distinct(tokens, "service_id"), org_df),
        categorical=categorical,
        has_date_naissance=_has_dates(BIRTH_DATE_COL),
        has_date_entree=_has_dates(HIRE_DATE_COL),
        has_demographics=has_demo,
        total_tokens=len(tokens),
    )
