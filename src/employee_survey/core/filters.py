"""
Filter specifications and the filter-expression tree.

A FilterSpec is the validated form of the filter object stored on a survey
(or sent by a caller). It is turned into a small tree whose leaves are either:

  - pushable: "column IN (values)", sent to the store as a predicate
  - residual: "whole years since <date column> within [min, max]", which the
    store cannot express and which is evaluated on the fetched rows

All leaves are combined with AND. Within one inclusion list values are OR'ed.
"""

from __future__ import annotations

from abc import ABC
from dataclasses import dataclass, fields
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple

import logging

import pandas as pd

from employee_survey.core.store import StorePredicate

logger = logging.getLogger(__name__)

# FilterSpec field -> store column, organizational levels top-down
ORG_FILTER_COLUMNS: Dict[str, str] = {
    "societe_ids": "societe_id",
    "direction_ids": "direction_id",
    "department_ids": "department_id",
    "service_ids": "service_id",
}

# FilterSpec field -> store column, categorical demographics
DEMOGRAPHIC_FILTER_COLUMNS: Dict[str, str] = {
    "sexe": "sexe",
    "fonctions": "fonction",
    "lieux_travail": "lieu_travail",
    "types_contrat": "type_contrat",
    "temps_travail": "temps_travail",
    "cost_centers": "cost_center",
}

BIRTH_DATE_COL = "date_naissance"
HIRE_DATE_COL = "date_entree"

# (min field, max field, date column)
RANGE_FILTERS: Tuple[Tuple[str, str, str], ...] = (
    ("age_min", "age_max", BIRTH_DATE_COL),
    ("seniority_min", "seniority_max", HIRE_DATE_COL),
)


class FilterSpecError(ValueError):
    """Raised when a filter specification cannot be validated."""


@dataclass
class FilterSpec:
    """
    One optional field per supported dimension.

    None (or an empty list) means "no restriction" on that dimension. Bounds
    are inclusive whole years.
    """
    societe_ids: Optional[List[str]] = None
    direction_ids: Optional[List[str]] = None
    department_ids: Optional[List[str]] = None
    service_ids: Optional[List[str]] = None

    sexe: Optional[List[str]] = None
    fonctions: Optional[List[str]] = None
    lieux_travail: Optional[List[str]] = None
    types_contrat: Optional[List[str]] = None
    temps_travail: Optional[List[str]] = None
    cost_centers: Optional[List[str]] = None

    age_min: Optional[int] = None
    age_max: Optional[int] = None
    seniority_min: Optional[int] = None
    seniority_max: Optional[int] = None

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "FilterSpec":
        """Validate an open-ended filter dict once, at the boundary."""
        if raw is None:
            return cls()
        if not isinstance(raw, dict):
            raise FilterSpecError(f"Filter specification must be a mapping, got {type(raw).__name__}")

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(raw) - known)
        if unknown:
            raise FilterSpecError(f"Unknown filter keys: {unknown}")

        kwargs: Dict[str, Any] = {}
        for name in list(ORG_FILTER_COLUMNS) + list(DEMOGRAPHIC_FILTER_COLUMNS):
            if name in raw:
                kwargs[name] = _clean_values(name, raw[name])
        for min_name, max_name, _ in RANGE_FILTERS:
            for name in (min_name, max_name):
                if name in raw:
                    kwargs[name] = _clean_bound(name, raw[name])

        spec = cls(**kwargs)
        spec.validate()
        return spec

    def validate(self) -> None:
        for min_name, max_name, _ in RANGE_FILTERS:
            lo = getattr(self, min_name)
            hi = getattr(self, max_name)
            if lo is not None and hi is not None and lo > hi:
                raise FilterSpecError(f"{min_name}={lo} is greater than {max_name}={hi}")

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None or value == []:
                continue
            out[f.name] = list(value) if isinstance(value, list) else value
        return out

    def is_empty(self) -> bool:
        return not self.to_dict()

    def with_default_societe(self, societe_id: Optional[str]) -> "FilterSpec":
        """Restrict to the survey's societe when no societe filter was given."""
        if self.societe_ids or not societe_id:
            return self
        data = self.to_dict()
        data["societe_ids"] = [str(societe_id)]
        return FilterSpec.from_dict(data)

    def has_demographic_constraints(self) -> bool:
        if any(getattr(self, name) for name in DEMOGRAPHIC_FILTER_COLUMNS):
            return True
        return any(
            getattr(self, lo) is not None or getattr(self, hi) is not None
            for lo, hi, _ in RANGE_FILTERS
        )


def _clean_values(name: str, value: Any) -> Optional[List[str]]:
    if value is None:
        return None
    if isinstance(value, (str, int)):
        value = [value]
    if not isinstance(value, (list, tuple, set)):
        raise FilterSpecError(f"{name} must be a list of values, got {type(value).__name__}")
    cleaned: List[str] = []
    for v in value:
        if v is None:
            continue
        s = str(v).strip()
        if s and s not in cleaned:
            cleaned.append(s)
    return cleaned or None


def _clean_bound(name: str, value: Any) -> Optional[int]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    if isinstance(value, bool):
        raise FilterSpecError(f"{name} must be a whole number of years")
    try:
        as_float = float(value)
    except (TypeError, ValueError) as exc:
        raise FilterSpecError(f"{name} must be a whole number of years, got {value!r}") from exc
    if as_float != int(as_float) or as_float < 0:
        raise FilterSpecError(f"{name} must be a non-negative whole number, got {value!r}")
    return int(as_float)


# ---------------------------------------------------------------------------
# Expression tree
# ---------------------------------------------------------------------------

class FilterNode(ABC):
    """Base class for filter-expression nodes."""

    pushable: bool = False


@dataclass(frozen=True)
class InclusionFilter(FilterNode):
    """column IN values. Pushed down to the store."""

    column: str
    values: Tuple[str, ...]
    pushable = True


@dataclass(frozen=True)
class YearsRangeFilter(FilterNode):
    """
    Whole years elapsed since 'date_column' within [min_years, max_years].

    Residual: requires date arithmetic against today's date. Rows without a
    usable date never satisfy the range.
    """

    date_column: str
    min_years: Optional[int] = None
    max_years: Optional[int] = None
    pushable = False


@dataclass(frozen=True)
class AllOf(FilterNode):
    """Conjunction of child nodes. An empty conjunction matches everything."""

    children: Tuple[FilterNode, ...] = ()


def build_filter_tree(spec: FilterSpec, *, demographics: bool = True) -> AllOf:
    """
    Build the conjunction of every supplied constraint.

    With demographics=False only organizational leaves are kept (used when the
    store schema has no demographic columns).
    """
    leaves: List[FilterNode] = []

    for name, column in ORG_FILTER_COLUMNS.items():
        values = getattr(spec, name)
        if values:
            leaves.append(InclusionFilter(column=column, values=tuple(values)))

    if demographics:
        for name, column in DEMOGRAPHIC_FILTER_COLUMNS.items():
            values = getattr(spec, name)
            if values:
                leaves.append(InclusionFilter(column=column, values=tuple(values)))

        for min_name, max_name, column in RANGE_FILTERS:
            lo = getattr(spec, min_name)
            hi = getattr(spec, max_name)
            if lo is not None or hi is not None:
                leaves.append(YearsRangeFilter(date_column=column, min_years=lo, max_years=hi))

    return AllOf(children=tuple(leaves))


def _leaves(node: FilterNode) -> List[FilterNode]:
    if isinstance(node, AllOf):
        out: List[FilterNode] = []
        for child in node.children:
            out.extend(_leaves(child))
        return out
    return [node]


def pushable_predicates(tree: FilterNode) -> List[StorePredicate]:
    preds: List[StorePredicate] = []
    for leaf in _leaves(tree):
        if isinstance(leaf, InclusionFilter):
            preds.append(StorePredicate(leaf.column, "in", leaf.values))
    return preds


def residual_filters(tree: FilterNode) -> List[FilterNode]:
    return [leaf for leaf in _leaves(tree) if not leaf.pushable]


# ---------------------------------------------------------------------------
# In-memory evaluation
# ---------------------------------------------------------------------------

def years_between(reference: date, today: date) -> int:
    """
    Calendar-accurate whole years from 'reference' to 'today'.

    One year is removed when today's (month, day) falls before the
    anniversary, so a birthday today counts as a completed year.
    """
    years = today.year - reference.year
    if (today.month, today.day) < (reference.month, reference.day):
        years -= 1
    return years


def as_date(value: Any) -> Optional[date]:
    """
    Calendar date of a stored date or timestamp, None when unusable.

    Values are parsed one by one: a column may mix plain dates and ISO
    timestamps ("1980-01-01T00:00:00+00:00"). The date part is taken as
    written, without time zone conversion.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return None if pd.isna(value) else value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, float) and pd.isna(value):
        return None
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        return None


def _years_series(dates: pd.Series, today: date) -> pd.Series:
    def _years(value: Any) -> Optional[int]:
        reference = as_date(value)
        return years_between(reference, today) if reference is not None else None

    return dates.apply(_years)


def _evaluate_leaf(leaf: FilterNode, frame: pd.DataFrame, today: date) -> pd.Series:
    if isinstance(leaf, InclusionFilter):
        if leaf.column not in frame.columns:
            logger.warning("Filter column %s missing from data; no row can match.", leaf.column)
            return pd.Series(False, index=frame.index)
        wanted = set(leaf.values)
        return frame[leaf.column].apply(lambda v: v is not None and not pd.isna(v) and str(v) in wanted)

    if isinstance(leaf, YearsRangeFilter):
        if leaf.date_column not in frame.columns:
            logger.warning("Date column %s missing from data; no row can match.", leaf.date_column)
            return pd.Series(False, index=frame.index)
        years = _years_series(frame[leaf.date_column], today)
        mask = years.notna()
        if leaf.min_years is not None:
            mask &= years.apply(lambda y: y is not None and not pd.isna(y) and y >= leaf.min_years)
        if leaf.max_years is not None:
            mask &= years.apply(lambda y: y is not None and not pd.isna(y) and y <= leaf.max_years)
        return mask.astype(bool)

    if isinstance(leaf, AllOf):
        return evaluate(leaf, frame, today=today)

    raise TypeError(f"Unsupported filter node: {type(leaf).__name__}")


def evaluate(
    tree: FilterNode,
    frame: pd.DataFrame,
    *,
    today: Optional[date] = None,
    residual_only: bool = False,
) -> pd.Series:
    """
    Boolean mask of rows satisfying the tree.

    residual_only=True skips pushable leaves (the store already applied them).
    """
    today = today or date.today()
    mask = pd.Series(True, index=frame.index)
    for leaf in _leaves(tree):
        if residual_only and leaf.pushable:
            continue
        mask &= _evaluate_leaf(leaf, frame, today)
    return mask


def apply_filter(
    frame: pd.DataFrame,
    tree: FilterNode,
    *,
    today: Optional[date] = None,
    residual_only: bool = False,
) -> pd.DataFrame:
    if frame.empty:
        return frame
    mask = evaluate(tree, frame, today=today, residual_only=residual_only)
    return frame[mask].copy()
