"""
Shared fixtures: an in-memory stand-in for the PostgREST store.

FakeStore implements the SurveyStore interface (select / select_one / count /
insert / delete) over plain lists of dicts, supports the predicate operators
the package uses, and can simulate a schema without demographic columns or a
failing insert.
"""

import itertools
import random
from datetime import date
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd
import pytest

from employee_survey.core.store import MissingColumnError, StoreError, StorePredicate


TODAY = date(2026, 10, 17)


def _matches(row: Dict[str, Any], pred: StorePredicate) -> bool:
    value = row.get(pred.column)
    if pred.operator == "eq":
        if isinstance(pred.value, bool):
            return value is pred.value
        return value is not None and str(value) == str(pred.value)
    if pred.operator == "neq":
        return value is None or str(value) != str(pred.value)
    if pred.operator == "in":
        return value is not None and str(value) in {str(v) for v in pred.value}
    if pred.operator == "is":
        return value is None if pred.value is None else value is pred.value
    if pred.operator == "gte":
        return value is not None and value >= pred.value
    if pred.operator == "lte":
        return value is not None and value <= pred.value
    raise StoreError(f"FakeStore: unsupported operator {pred.operator}")


class FakeStore:
    def __init__(self, tables: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self.tables: Dict[str, List[Dict[str, Any]]] = {k: list(v) for k, v in (tables or {}).items()}
        self.missing_columns: Dict[str, set] = {}
        self.fail_inserts: Dict[str, int] = {}
        self.fail_deletes: set = set()
        self.calls: List[tuple] = []
        self._ids = itertools.count(1)

    # -- configuration helpers ---------------------------------------------

    def drop_columns(self, table: str, columns: Sequence[str]) -> None:
        self.missing_columns.setdefault(table, set()).update(columns)
        for row in self.tables.get(table, []):
            for col in columns:
                row.pop(col, None)

    def fail_insert_after(self, table: str, successful_calls: int) -> None:
        self.fail_inserts[table] = successful_calls

    def fail_delete(self, table: str) -> None:
        self.fail_deletes.add(table)

    # -- SurveyStore interface -----------------------------------------------

    def _check_columns(self, table: str, columns: Sequence[str], predicates: Sequence[StorePredicate]) -> None:
        missing = self.missing_columns.get(table, set())
        wanted = set(columns) | {p.column for p in predicates}
        bad = sorted(wanted & missing)
        if bad:
            raise MissingColumnError(f"column {table}.{bad[0]} does not exist")

    def _rows(self, table: str, predicates: Sequence[StorePredicate]) -> List[Dict[str, Any]]:
        return [r for r in self.tables.get(table, []) if all(_matches(r, p) for p in predicates)]

    def select(self, table, *, columns=("*",), predicates=(), order=None, max_rows=None):
        self.calls.append(("select", table, tuple(predicates)))
        plain = [c for c in columns if "(" not in c]
        embedded = [c for c in columns if "(" in c]
        self._check_columns(table, [c for c in plain if c != "*"], predicates)

        rows = self._rows(table, predicates)
        if order:
            col, _, direction = order.partition(".")
            rows = sorted(rows, key=lambda r: r.get(col) or 0, reverse=direction == "desc")
        if max_rows is not None:
            rows = rows[:max_rows]

        out = []
        for row in rows:
            rec = dict(row) if "*" in plain else {c: row.get(c) for c in plain}
            for emb in embedded:
                child_table = emb.split("(", 1)[0]
                rec[child_table] = [dict(c) for c in self.tables.get(child_table, []) if c.get("question_id") == row.get("id")]
            out.append(rec)

        if not out:
            return pd.DataFrame(columns=[c for c in plain if c != "*"])
        return pd.DataFrame.from_records(out)

    def select_one(self, table, *, columns=("*",), predicates=()):
        df = self.select(table, columns=columns, predicates=predicates, max_rows=1)
        if df.empty:
            return None
        return {k: (None if isinstance(v, float) and v != v else v) for k, v in df.iloc[0].to_dict().items()}

    def count(self, table, *, predicates=()):
        self.calls.append(("count", table, tuple(predicates)))
        return len(self._rows(table, predicates))

    def insert(self, table, rows, *, returning=False):
        self.calls.append(("insert", table, len(rows)))
        if table in self.fail_inserts:
            if self.fail_inserts[table] <= 0:
                raise StoreError(f"insert {table} failed (status=500)")
            self.fail_inserts[table] -= 1

        stored = []
        for row in rows:
            rec = dict(row)
            rec.setdefault("id", f"{table}-{next(self._ids)}")
            self.tables.setdefault(table, []).append(rec)
            stored.append(dict(rec))
        return stored if returning else []

    def delete(self, table, *, predicates):
        self.calls.append(("delete", table, tuple(predicates)))
        if not predicates:
            raise StoreError("Refusing to delete without predicates.")
        if table in self.fail_deletes:
            raise StoreError(f"delete {table} failed (status=500)")
        keep = [r for r in self.tables.get(table, []) if not all(_matches(r, p) for p in predicates)]
        self.tables[table] = keep


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def make_identity(idx: int, **attrs) -> Dict[str, Any]:
    row = {
        "id": f"tok-{idx}",
        "token": f"secret-{idx}",
        "email": None,
        "employee_name": None,
        "societe_id": "soc-1",
        "direction_id": None,
        "department_id": None,
        "service_id": None,
        "active": True,
        "sexe": None,
        "date_naissance": None,
        "date_entree": None,
        "fonction": None,
        "lieu_travail": None,
        "type_contrat": None,
        "temps_travail": None,
        "cost_center": None,
    }
    row.update(attrs)
    return row


def make_responses(survey_id: str, count: int, start: int = 0, **attrs) -> List[Dict[str, Any]]:
    rows = []
    for i in range(start, start + count):
        row = {
            "id": f"{survey_id}-r{i}",
            "survey_id": survey_id,
            "token_id": f"tok-{i}",
            "societe_id": "soc-1",
            "direction_id": None,
            "department_id": None,
            "service_id": None,
        }
        row.update(attrs)
        rows.append(row)
    return rows


@pytest.fixture
def today() -> date:
    return TODAY


@pytest.fixture
def rng() -> random.Random:
    return random.Random(20261017)


@pytest.fixture
def fake_store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def gendered_population() -> pd.DataFrame:
    """100 identities: 60 sexe=F, 40 sexe=M, nothing else populated."""
    rows = [make_identity(i, sexe="F" if i < 60 else "M") for i in range(100)]
    return pd.DataFrame.from_records(rows)
