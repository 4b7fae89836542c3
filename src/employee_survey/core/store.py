from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import logging

import pandas as pd
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from employee_survey.config import (
    SURVEY_STORE_API_KEY,
    SURVEY_STORE_PAGE_SIZE,
    SURVEY_STORE_TIMEOUT_SECONDS,
    SURVEY_STORE_URL,
)

logger = logging.getLogger(__name__)

# PostgreSQL "undefined_column"; PostgREST forwards it as the error code.
UNDEFINED_COLUMN_CODE = "42703"
UNIQUE_VIOLATION_CODE = "23505"

# Characters that force double-quoting inside PostgREST filter values
_RESERVED_CHARS = set(',.:()"\\ ')

SUPPORTED_OPERATORS = ("eq", "neq", "in", "gte", "lte", "is")

# Unique key appended to every paged select; offset paging needs a total order
PAGING_ORDER_KEY = "id"


class StoreError(Exception):
    """Raised when store calls fail or return unexpected shapes."""


class MissingColumnError(StoreError):
    """Raised when a query references a column the store schema does not have."""


class ConflictError(StoreError):
    """Raised when a write violates a uniqueness constraint."""


@dataclass(frozen=True)
class StorePredicate:
    """
    One filter pushed down to the store.

    Examples:
        StorePredicate("active", "eq", True)        -> active=eq.true
        StorePredicate("sexe", "in", ("F", "M"))    -> sexe=in.(F,M)
    """
    column: str
    operator: str
    value: Any

    def to_param(self) -> Tuple[str, str]:
        if self.operator not in SUPPORTED_OPERATORS:
            raise StoreError(f"Unsupported predicate operator: {self.operator}")
        if self.operator == "in":
            values = ",".join(_format_value(v) for v in self.value)
            return self.column, f"in.({values})"
        return self.column, f"{self.operator}.{_format_value(self.value)}"


def _format_value(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    text = str(value)
    if any(ch in _RESERVED_CHARS for ch in text):
        escaped = text.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return text


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float):
        return value != value
    return False


def _build_retry_session() -> requests.Session:
    """
    Build a requests Session with conservative retries.
    Only reads are retried; inserts and deletes are not idempotent from the
    caller's point of view.
    """
    session = requests.Session()

    retry = Retry(
        total=5,
        connect=5,
        read=5,
        status=5,
        backoff_factor=0.6,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset({"GET", "HEAD"}),
        raise_on_status=False,
    )

    adapter = HTTPAdapter(max_retries=retry, pool_connections=10, pool_maxsize=10)
    session.mount("https://", adapter)
    session.mount("http://", adapter)

    return session


_SESSION: Optional[requests.Session] = None


def _get_session() -> requests.Session:
    global _SESSION
    if _SESSION is None:
        _SESSION = _build_retry_session()
    return _SESSION


def _stable_order(order: Optional[str]) -> str:
    """Caller's order plus the unique key as a final tie-break."""
    if not order:
        return f"{PAGING_ORDER_KEY}.asc"
    keys = [part.strip().split(".", 1)[0] for part in order.split(",")]
    if PAGING_ORDER_KEY in keys:
        return order
    return f"{order},{PAGING_ORDER_KEY}.asc"


def _total_from_content_range(content_range: Optional[str]) -> Optional[int]:
    # "0-24/25", "*/0"; "0-24/*" when the server did not count
    _, _, total = (content_range or "").partition("/")
    try:
        return int(total)
    except ValueError:
        return None


def _raise_for_error(resp: requests.Response, action: str) -> None:
    if resp.status_code < 400:
        return

    detail: Dict[str, Any] = {}
    try:
        payload = resp.json()
        if isinstance(payload, dict):
            detail = payload
    except ValueError:
        pass

    code = str(detail.get("code") or "")
    message = str(detail.get("message") or (resp.text or "")[:200])

    # PostgREST reports unknown columns either with the Postgres code or, for
    # schema-cache misses, with a message naming the column.
    lowered = message.lower()
    if code == UNDEFINED_COLUMN_CODE or ("column" in lowered and "does not exist" in lowered):
        raise MissingColumnError(f"{action}: {message}")

    if resp.status_code == 409 or code == UNIQUE_VIOLATION_CODE:
        raise ConflictError(f"{action}: {message}")

    raise StoreError(f"{action} failed (status={resp.status_code}, code={code or '-'}): {message}")


class SurveyStore:
    """
    Thin client over a PostgREST-compatible REST API.

    Every call maps onto one HTTP request (or one page of requests for
    selects). No caching: each call reads current data.
    """

    def __init__(
        self,
        base_url: str = SURVEY_STORE_URL,
        api_key: str = SURVEY_STORE_API_KEY,
        *,
        timeout_seconds: int = SURVEY_STORE_TIMEOUT_SECONDS,
        page_size: int = SURVEY_STORE_PAGE_SIZE,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not base_url:
            raise StoreError("Missing store URL. Expected SURVEY_STORE_URL to be set.")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = int(timeout_seconds)
        self.page_size = max(1, int(page_size))
        self._session = session

    # -- plumbing -----------------------------------------------------------

    @property
    def session(self) -> requests.Session:
        return self._session if self._session is not None else _get_session()

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
            headers["Authorization"] = f"Bearer {self.api_key}"
        if extra:
            headers.update(extra)
        return headers

    def _url(self, table: str) -> str:
        return f"{self.base_url}/{table}"

    @staticmethod
    def _params(predicates: Iterable[StorePredicate]) -> List[Tuple[str, str]]:
        return [p.to_param() for p in predicates]

    # -- reads --------------------------------------------------------------

    def select(
        self,
        table: str,
        *,
        columns: Sequence[str] = ("*",),
        predicates: Sequence[StorePredicate] = (),
        order: Optional[str] = None,
        max_rows: Optional[int] = None,
    ) -> pd.DataFrame:
        """
        Select rows with paging; returns a DataFrame (empty when nothing matched).

        'columns' may use PostgREST embedding syntax, e.g.
        "question_options(id,text_fr,sort_order)". Pages are ordered by
        'order' with the table's id as tie-break, and paging ends at the
        total reported in Content-Range (or at an empty page when the
        server reports none), so a server-side row cap below page_size
        does not truncate the result.
        """
        base_params = [("select", ",".join(columns))] + self._params(predicates)
        base_params.append(("order", _stable_order(order)))

        all_records: List[Dict[str, Any]] = []
        offset = 0
        total: Optional[int] = None

        while True:
            limit = self.page_size
            if max_rows is not None:
                limit = min(limit, max_rows - len(all_records))
                if limit <= 0:
                    break
            if total is not None and offset >= total:
                break

            params = base_params + [("offset", str(offset)), ("limit", str(limit))]
            try:
                resp = self.session.get(
                    self._url(table),
                    params=params,
                    headers=self._headers({"Prefer": "count=exact"}),
                    timeout=self.timeout_seconds,
                )
            except requests.RequestException as exc:
                raise StoreError(f"HTTP error while selecting from {table}: {exc}") from exc

            _raise_for_error(resp, f"select {table}")

            try:
                records = resp.json()
            except ValueError as exc:
                preview = (resp.text or "")[:200]
                raise StoreError(f"Non-JSON response from store (status={resp.status_code}). Preview: {preview}") from exc

            if not isinstance(records, list):
                raise StoreError(f"Unexpected select payload type for {table}: {type(records)}")

            if not records:
                break
            all_records.extend(records)
            offset += len(records)
            total = _total_from_content_range(resp.headers.get("Content-Range"))

        logger.debug("Selected %d rows from %s", len(all_records), table)
        if not all_records:
            return pd.DataFrame(columns=[c for c in columns if c != "*" and "(" not in c])
        return pd.DataFrame.from_records(all_records)

    def select_one(
        self,
        table: str,
        *,
        columns: Sequence[str] = ("*",),
        predicates: Sequence[StorePredicate] = (),
    ) -> Optional[Dict[str, Any]]:
        df = self.select(table, columns=columns, predicates=predicates, max_rows=1)
        if df.empty:
            return None
        return {k: (None if _is_missing(v) else v) for k, v in df.iloc[0].to_dict().items()}

    def count(self, table: str, *, predicates: Sequence[StorePredicate] = ()) -> int:
        params = [("select", "id")] + self._params(predicates)
        try:
            resp = self.session.head(
                self._url(table),
                params=params,
                headers=self._headers({"Prefer": "count=exact"}),
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise StoreError(f"HTTP error while counting {table}: {exc}") from exc

        _raise_for_error(resp, f"count {table}")

        content_range = resp.headers.get("Content-Range", "")
        total = _total_from_content_range(content_range)
        if total is None:
            raise StoreError(f"Store did not return an exact count for {table} (Content-Range={content_range!r})")
        return total

    # -- writes -------------------------------------------------------------

    def insert(
        self,
        table: str,
        rows: Sequence[Dict[str, Any]],
        *,
        returning: bool = False,
    ) -> List[Dict[str, Any]]:
        if not rows:
            return []
        prefer = "return=representation" if returning else "return=minimal"
        try:
            resp = self.session.post(
                self._url(table),
                json=list(rows),
                headers=self._headers({"Prefer": prefer, "Content-Type": "application/json"}),
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise StoreError(f"HTTP error while inserting into {table}: {exc}") from exc

        _raise_for_error(resp, f"insert {table}")

        if not returning:
            return []
        try:
            data = resp.json()
        except ValueError as exc:
            raise StoreError(f"Non-JSON insert response from store for {table}") from exc
        return data if isinstance(data, list) else [data]

    def delete(self, table: str, *, predicates: Sequence[StorePredicate]) -> None:
        if not predicates:
            # An unfiltered delete would wipe the table
            raise StoreError(f"Refusing to delete from {table} without predicates.")
        try:
            resp = self.session.delete(
                self._url(table),
                params=self._params(predicates),
                headers=self._headers({"Prefer": "return=minimal"}),
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise StoreError(f"HTTP error while deleting from {table}: {exc}") from exc

        _raise_for_error(resp, f"delete {table}")


_STORE: Optional[SurveyStore] = None


def get_store() -> SurveyStore:
    """Process-wide store built from config (lazy)."""
    global _STORE
    if _STORE is None:
        _STORE = SurveyStore()
    return _STORE


def chunked(values: Sequence[Any], size: int) -> List[List[Any]]:
    """Split long IN-lists so request URLs stay a sane length."""
    size = max(1, int(size))
    return [list(values[i:i + size]) for i in range(0, len(values), size)]
