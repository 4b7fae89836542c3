from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Sequence, Union

import logging

import pandas as pd

from employee_survey.core.anonymity import anonymity_message, can_show_results
from employee_survey.core.filters import (
    FilterSpec,
    apply_filter,
    build_filter_tree,
    pushable_predicates,
)
from employee_survey.core.population import DEMOGRAPHIC_COLUMNS, TOKENS_TABLE
from employee_survey.core.rounding import round_half_up, round_half_up_int
from employee_survey.core.store import (
    MissingColumnError,
    StorePredicate,
    SurveyStore,
    chunked,
    get_store,
)
from employee_survey.core.survey_loader import (
    IN_LIST_CHUNK_SIZE,
    RESPONSES_TABLE,
    Question,
    QuestionType,
    load_answers,
    load_questions,
    load_survey,
)

logger = logging.getLogger(__name__)

RESPONSE_COLUMNS = ["id", "token_id", "societe_id", "direction_id", "department_id", "service_id"]


@dataclass
class OptionCount:
    option_id: str
    text_fr: str
    text_en: Optional[str]
    count: int
    percentage: int


@dataclass
class QuestionAggregate:
    question_id: str
    type: QuestionType
    text_fr: str
    text_en: Optional[str]
    sort_order: int
    total_answers: int


@dataclass
class ChoiceAggregate(QuestionAggregate):
    options: List[OptionCount] = field(default_factory=list)


@dataclass
class LikertAggregate(QuestionAggregate):
    scale_min: int = 1
    scale_max: int = 10
    # None when no valid value was given
    average: Optional[float] = None
    distribution: Dict[int, int] = field(default_factory=dict)


@dataclass
class FreeTextAggregate(QuestionAggregate):
    responses: List[str] = field(default_factory=list)


@dataclass
class SurveyResults:
    response_count: int
    questions: List[QuestionAggregate]
    anonymity_blocked: bool = False


@dataclass
class AnonymityBlocked:
    """Too few respondents: no per-question data at all."""
    response_count: int
    reason: str
    anonymity_blocked: bool = True


AggregationOutcome = Union[SurveyResults, AnonymityBlocked]


# ---------------------------------------------------------------------------
# Per-type aggregation
# ---------------------------------------------------------------------------

def _selected_ids(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return [str(v) for v in value if v is not None]
    if isinstance(value, float) and pd.isna(value):
        return []
    # A single id stored as a scalar
    return [str(value)]


def _aggregate_choice(question: Question, q_answers: pd.DataFrame) -> ChoiceAggregate:
    answered = len(q_answers)
    counts: Counter = Counter()
    if "selected_option_ids" in q_answers.columns:
        for selection in q_answers["selected_option_ids"]:
            counts.update(_selected_ids(selection))

    options = [
        OptionCount(
            option_id=o.id,
            text_fr=o.text_fr,
            text_en=o.text_en,
            count=counts.get(o.id, 0),
            percentage=round_half_up_int(counts.get(o.id, 0) / answered * 100) if answered > 0 else 0,
        )
        for o in question.options
    ]

    return ChoiceAggregate(
        question_id=question.id,
        type=question.type,
        text_fr=question.text_fr,
        text_en=question.text_en,
        sort_order=question.sort_order,
        total_answers=answered,
        options=options,
    )


def likert_values(question: Question, q_answers: pd.DataFrame) -> List[int]:
    """Valid numeric answers on the question's scale; nulls and off-scale values dropped."""
    scale = question.type.scale
    if scale is None or "numeric_value" not in q_answers.columns:
        return []
    lo, hi = scale

    values: List[int] = []
    dropped = 0
    for raw in q_answers["numeric_value"]:
        if raw is None or pd.isna(raw):
            continue
        try:
            num = float(raw)
        except (TypeError, ValueError):
            dropped += 1
            continue
        if num != int(num) or not lo <= num <= hi:
            dropped += 1
            continue
        values.append(int(num))

    if dropped:
        logger.warning("Question %s: ignored %d value(s) outside the %d-%d scale", question.id, dropped, lo, hi)
    return values


def _aggregate_likert(question: Question, q_answers: pd.DataFrame) -> LikertAggregate:
    lo, hi = question.type.scale or (1, 10)
    values = likert_values(question, q_answers)

    distribution = {v: 0 for v in range(lo, hi + 1)}
    for v in values:
        distribution[v] += 1

    average = round_half_up(sum(values) / len(values), 1) if values else None

    return LikertAggregate(
        question_id=question.id,
        type=question.type,
        text_fr=question.text_fr,
        text_en=question.text_en,
        sort_order=question.sort_order,
        total_answers=len(values),
        scale_min=lo,
        scale_max=hi,
        average=average,
        distribution=distribution,
    )


def _aggregate_free_text(question: Question, q_answers: pd.DataFrame) -> FreeTextAggregate:
    texts: List[str] = []
    if "text_value" in q_answers.columns:
        for raw in q_answers["text_value"]:
            if raw is None or (isinstance(raw, float) and pd.isna(raw)):
                continue
            if str(raw).strip():
                texts.append(str(raw))

    return FreeTextAggregate(
        question_id=question.id,
        type=question.type,
        text_fr=question.text_fr,
        text_en=question.text_en,
        sort_order=question.sort_order,
        total_answers=len(texts),
        responses=texts,
    )


# ---------------------------------------------------------------------------
# Survey-level aggregation
# ---------------------------------------------------------------------------

def aggregate_responses(
    questions: Sequence[Question],
    responses: pd.DataFrame,
    answers: pd.DataFrame,
    *,
    response_filter: Optional[FilterSpec] = None,
    today: Optional[date] = None,
    lang: str = "fr",
) -> AggregationOutcome:
    """
    Per-question statistics for one survey instance.

    The response filter is applied first, then the anonymity threshold is
    checked on what remains: every filtered slice is protected on its own.
    """
    if response_filter is not None and not response_filter.is_empty():
        responses = apply_filter(responses, build_filter_tree(response_filter), today=today)

    n = len(responses)
    if not can_show_results(n):
        logger.info("Results blocked: %d response(s) below the anonymity threshold", n)
        return AnonymityBlocked(response_count=n, reason=anonymity_message(lang, n))

    if "response_id" in answers.columns and "id" in responses.columns:
        kept_ids = set(responses["id"].astype(str))
        answers = answers[answers["response_id"].astype(str).isin(kept_ids)]

    by_question: Dict[str, pd.DataFrame] = {}
    if not answers.empty and "question_id" in answers.columns:
        for qid, grp in answers.groupby(answers["question_id"].astype(str)):
            by_question[str(qid)] = grp

    empty = answers.iloc[0:0]
    results: List[QuestionAggregate] = []
    for question in sorted(questions, key=lambda q: q.sort_order):
        q_answers = by_question.get(question.id, empty)
        if question.type.is_choice:
            results.append(_aggregate_choice(question, q_answers))
        elif question.type.is_likert:
            results.append(_aggregate_likert(question, q_answers))
        else:
            results.append(_aggregate_free_text(question, q_answers))

    return SurveyResults(response_count=n, questions=results)


# ---------------------------------------------------------------------------
# Store-backed entry point
# ---------------------------------------------------------------------------

def _attach_demographics(responses: pd.DataFrame, store: SurveyStore) -> pd.DataFrame:
    """Join each response with its identity's demographic attributes."""
    if responses.empty or "token_id" not in responses.columns:
        return responses

    token_ids = [str(t) for t in responses["token_id"].dropna().unique()]
    frames: List[pd.DataFrame] = []
    try:
        for chunk in chunked(token_ids, IN_LIST_CHUNK_SIZE):
            frames.append(
                store.select(
                    TOKENS_TABLE,
                    columns=["id"] + DEMOGRAPHIC_COLUMNS,
                    predicates=[StorePredicate("id", "in", tuple(chunk))],
                )
            )
    except MissingColumnError as exc:
        # Demographic slices then match nothing and stay blocked
        logger.warning("Cannot slice responses by demographics: %s", exc)
        return responses

    frames = [f for f in frames if not f.empty]
    if not frames:
        return responses

    demo = pd.concat(frames, ignore_index=True).rename(columns={"id": "token_id"})
    demo["token_id"] = demo["token_id"].astype(str)
    merged = responses.assign(token_id=responses["token_id"].astype(str)).merge(demo, on="token_id", how="left")
    return merged


def load_survey_results(
    survey_id: str,
    *,
    response_filter: Optional[FilterSpec] = None,
    store: Optional[SurveyStore] = None,
    today: Optional[date] = None,
    lang: str = "fr",
) -> AggregationOutcome:
    """Read current responses/answers for a survey and aggregate them."""
    store = store or get_store()
    load_survey(survey_id, store=store)

    spec = response_filter or FilterSpec()
    predicates = [StorePredicate("survey_id", "eq", survey_id)]
    predicates += pushable_predicates(build_filter_tree(spec, demographics=False))

    logger.info("Loading responses for survey=%s (filters=%s)", survey_id, spec.to_dict())
    responses = store.select(RESPONSES_TABLE, columns=RESPONSE_COLUMNS, predicates=predicates)

    if spec.has_demographic_constraints():
        responses = _attach_demographics(responses, store)

    responses = apply_filter(responses, build_filter_tree(spec), today=today)
    if not can_show_results(len(responses)):
        # Skip loading questions/answers we are not allowed to show
        return aggregate_responses([], responses, pd.DataFrame(), lang=lang)

    questions = load_questions(survey_id, store=store)
    answers = load_answers([str(r) for r in responses["id"]], store=store)
    return aggregate_responses(questions, responses, answers, lang=lang)
