from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

import json
import logging

import pandas as pd

from employee_survey.core.store import StorePredicate, SurveyStore, chunked, get_store

logger = logging.getLogger(__name__)

SURVEYS_TABLE = "surveys"
QUESTIONS_TABLE = "questions"
RESPONSES_TABLE = "responses"
ANSWERS_TABLE = "answers"

SURVEY_COLUMNS = [
    "id",
    "title_fr",
    "title_en",
    "status",
    "survey_type",
    "sample_percentage",
    "filters",
    "societe_id",
    "wave_group_id",
    "wave_number",
    "published_at",
]
QUESTION_COLUMNS = [
    "id",
    "survey_id",
    "type",
    "text_fr",
    "text_en",
    "question_code",
    "sort_order",
    "question_options(id,text_fr,text_en,sort_order)",
]
ANSWER_COLUMNS = ["response_id", "question_id", "numeric_value", "text_value", "selected_option_ids"]

# Keeps IN-lists short enough for a GET query string
IN_LIST_CHUNK_SIZE = 200


class SurveyNotFoundError(LookupError):
    """Raised when a survey id does not exist in the store."""


class SurveyDataError(ValueError):
    """Raised when stored survey/question records have an unexpected shape."""


class QuestionType(str, Enum):
    SINGLE_CHOICE = "single_choice"
    MULTIPLE_CHOICE = "multiple_choice"
    LIKERT = "likert"
    LIKERT_5 = "likert_5"
    FREE_TEXT = "free_text"

    @property
    def is_choice(self) -> bool:
        return self in (QuestionType.SINGLE_CHOICE, QuestionType.MULTIPLE_CHOICE)

    @property
    def is_likert(self) -> bool:
        return self in (QuestionType.LIKERT, QuestionType.LIKERT_5)

    @property
    def scale(self) -> Optional[Tuple[int, int]]:
        """Inclusive (min, max) of a Likert scale."""
        if self is QuestionType.LIKERT:
            return 1, 10
        if self is QuestionType.LIKERT_5:
            return 1, 5
        return None


LIKERT_TYPES = [QuestionType.LIKERT.value, QuestionType.LIKERT_5.value]


@dataclass
class QuestionOption:
    id: str
    text_fr: str
    text_en: Optional[str] = None
    sort_order: int = 0


@dataclass
class Question:
    id: str
    type: QuestionType
    text_fr: str
    text_en: Optional[str] = None
    question_code: Optional[str] = None
    sort_order: int = 0
    options: List[QuestionOption] = field(default_factory=list)

    @classmethod
    def from_record(cls, rec: Dict[str, Any]) -> "Question":
        try:
            qtype = QuestionType(str(rec.get("type")))
        except ValueError as exc:
            raise SurveyDataError(f"Unknown question type {rec.get('type')!r} for question {rec.get('id')}") from exc

        raw_options = rec.get("question_options") or []
        if not isinstance(raw_options, list):
            raw_options = []
        options = [
            QuestionOption(
                id=str(o["id"]),
                text_fr=str(o.get("text_fr") or ""),
                text_en=_clean_optional(o.get("text_en")),
                sort_order=_as_int(o.get("sort_order")),
            )
            for o in raw_options
        ]
        options.sort(key=lambda o: o.sort_order)

        return cls(
            id=str(rec["id"]),
            type=qtype,
            text_fr=str(rec.get("text_fr") or ""),
            text_en=_clean_optional(rec.get("text_en")),
            question_code=_clean_optional(rec.get("question_code")),
            sort_order=_as_int(rec.get("sort_order")),
            options=options,
        )


@dataclass
class SurveyInfo:
    id: str
    title_fr: str
    title_en: Optional[str] = None
    status: str = "draft"
    survey_type: Optional[str] = None
    sample_percentage: Optional[float] = None
    filters: Dict[str, Any] = field(default_factory=dict)
    societe_id: Optional[str] = None
    wave_group_id: Optional[str] = None
    wave_number: int = 1
    published_at: Optional[str] = None

    @classmethod
    def from_record(cls, rec: Dict[str, Any]) -> "SurveyInfo":
        filters = rec.get("filters")
        if isinstance(filters, str):
            try:
                filters = json.loads(filters)
            except ValueError as exc:
                raise SurveyDataError(f"Survey {rec.get('id')} has malformed filters JSON") from exc
        if not isinstance(filters, dict):
            filters = {}

        pct = rec.get("sample_percentage")
        return cls(
            id=str(rec["id"]),
            title_fr=str(rec.get("title_fr") or ""),
            title_en=_clean_optional(rec.get("title_en")),
            status=str(rec.get("status") or "draft"),
            survey_type=_clean_optional(rec.get("survey_type")),
            sample_percentage=float(pct) if _present(pct) else None,
            filters=filters,
            societe_id=_clean_optional(rec.get("societe_id")),
            wave_group_id=_clean_optional(rec.get("wave_group_id")),
            wave_number=_as_int(rec.get("wave_number"), default=1),
            published_at=_clean_optional(rec.get("published_at")),
        )


# ---------------------------------------------------------------------------
# Record helpers
# ---------------------------------------------------------------------------

def _present(value: Any) -> bool:
    if value is None:
        return False
    try:
        return not bool(pd.isna(value))
    except (TypeError, ValueError):
        return True


def _clean_optional(value: Any) -> Optional[str]:
    if not _present(value):
        return None
    s = str(value).strip()
    return s or None


def _as_int(value: Any, default: int = 0) -> int:
    if not _present(value):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


# ---------------------------------------------------------------------------
# Loaders
# ---------------------------------------------------------------------------

def load_survey(survey_id: str, *, store: Optional[SurveyStore] = None) -> SurveyInfo:
    store = store or get_store()
    rec = store.select_one(
        SURVEYS_TABLE,
        columns=SURVEY_COLUMNS,
        predicates=[StorePredicate("id", "eq", survey_id)],
    )
    if rec is None:
        raise SurveyNotFoundError(f"Survey {survey_id} not found")
    return SurveyInfo.from_record(rec)


def load_questions(
    survey_id: str,
    *,
    types: Optional[Sequence[str]] = None,
    store: Optional[SurveyStore] = None,
) -> List[Question]:
    """Questions of a survey ordered by sort_order, optionally restricted by type."""
    store = store or get_store()
    predicates = [StorePredicate("survey_id", "eq", survey_id)]
    if types:
        predicates.append(StorePredicate("type", "in", tuple(types)))

    df = store.select(QUESTIONS_TABLE, columns=QUESTION_COLUMNS, predicates=predicates, order="sort_order.asc")
    if df.empty:
        return []
    questions = [Question.from_record(rec) for rec in df.to_dict(orient="records")]
    questions.sort(key=lambda q: q.sort_order)
    return questions


def load_answers(
    response_ids: Sequence[str],
    *,
    question_ids: Optional[Sequence[str]] = None,
    store: Optional[SurveyStore] = None,
) -> pd.DataFrame:
    """Answers of the given responses, fetched in chunks."""
    store = store or get_store()
    if not response_ids:
        return pd.DataFrame(columns=ANSWER_COLUMNS)

    frames: List[pd.DataFrame] = []
    for chunk in chunked(list(response_ids), IN_LIST_CHUNK_SIZE):
        predicates = [StorePredicate("response_id", "in", tuple(chunk))]
        if question_ids:
            predicates.append(StorePredicate("question_id", "in", tuple(question_ids)))
        frames.append(store.select(ANSWERS_TABLE, columns=ANSWER_COLUMNS, predicates=predicates))

    frames = [f for f in frames if not f.empty]
    if not frames:
        return pd.DataFrame(columns=ANSWER_COLUMNS)
    return pd.concat(frames, ignore_index=True)
