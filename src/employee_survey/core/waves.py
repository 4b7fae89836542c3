from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import logging

import pandas as pd

from employee_survey.core.aggregation import likert_values
from employee_survey.core.anonymity import can_show_results
from employee_survey.core.rounding import round_half_up
from employee_survey.core.store import StorePredicate, SurveyStore, get_store
from employee_survey.core.survey_loader import (
    LIKERT_TYPES,
    RESPONSES_TABLE,
    SURVEY_COLUMNS,
    SURVEYS_TABLE,
    Question,
    SurveyInfo,
    load_answers,
    load_questions,
    load_survey,
)

logger = logging.getLogger(__name__)

WAVE_GROUPS_TABLE = "wave_groups"


class WaveGroupError(Exception):
    """Raised when a survey's wave group is missing or inconsistent."""


@dataclass
class WaveInput:
    """Everything needed to align one wave: its survey, response count, Likert questions and answers."""
    survey: SurveyInfo
    response_count: int
    questions: List[Question] = field(default_factory=list)
    answers: pd.DataFrame = field(default_factory=pd.DataFrame)


@dataclass
class QuestionAverage:
    reference_question_id: str
    question_code: Optional[str]
    text_fr: str
    sort_order: int
    matched_question_id: Optional[str]
    # None means "no data", never zero
    average: Optional[float]
    answer_count: int


@dataclass
class WaveResult:
    survey_id: str
    title: str
    wave_number: int
    status: str
    published_at: Optional[str]
    response_count: int
    anonymity_blocked: bool
    question_averages: List[QuestionAverage]


@dataclass
class QuestionTrend:
    """
    Change of one question's average between the first and last unblocked
    waves that have a value. delta is None when fewer than two such waves.
    """
    reference_question_id: str
    question_code: Optional[str]
    wave_start: Optional[int]
    wave_end: Optional[int]
    value_start: Optional[float]
    value_end: Optional[float]
    delta: Optional[float]
    direction: Optional[str]  # 'increase', 'decrease', 'no_change'


@dataclass
class WaveComparison:
    wave_group_id: str
    wave_group_name: Optional[str]
    current_survey_id: str
    reference_questions: List[Question]
    waves: List[WaveResult]
    trends: List[QuestionTrend]


def trend_direction(delta: float, tolerance: float = 0.1) -> str:
    """Label a change in a question's mean score; moves of one tenth or less are 'no_change'."""
    if delta > tolerance:
        return "increase"
    if delta < -tolerance:
        return "decrease"
    return "no_change"


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------

def match_question(
    reference: Question,
    position: int,
    local_questions: Sequence[Question],
) -> Optional[Question]:
    """
    Find the local question equivalent to 'reference'.

    Stable question code first; otherwise the local Likert question at the
    same ordinal position; None when neither exists.
    """
    if reference.question_code:
        for q in local_questions:
            if q.question_code == reference.question_code:
                return q
    if 0 <= position < len(local_questions):
        return local_questions[position]
    return None


def _likert_only(questions: Sequence[Question]) -> List[Question]:
    return sorted((q for q in questions if q.type.is_likert), key=lambda q: q.sort_order)


def _null_average(ref: Question) -> QuestionAverage:
    return QuestionAverage(
        reference_question_id=ref.id,
        question_code=ref.question_code,
        text_fr=ref.text_fr,
        sort_order=ref.sort_order,
        matched_question_id=None,
        average=None,
        answer_count=0,
    )


def align_waves(reference_questions: Sequence[Question], waves: Sequence[WaveInput]) -> List[WaveResult]:
    """
    Per-wave averages aligned on the reference question list.

    Each wave is checked against the anonymity threshold on its own; blocked
    waves report None for every reference question.
    """
    refs = _likert_only(reference_questions)

    ordered = sorted(waves, key=lambda w: w.survey.wave_number)
    numbers = [w.survey.wave_number for w in ordered]
    if len(numbers) != len(set(numbers)):
        raise WaveGroupError(f"Duplicate wave numbers in group: {numbers}")

    results: List[WaveResult] = []
    for wave in ordered:
        blocked = not can_show_results(wave.response_count)
        averages: List[QuestionAverage] = []

        if blocked:
            averages = [_null_average(ref) for ref in refs]
        else:
            local = _likert_only(wave.questions)
            by_question: Dict[str, pd.DataFrame] = {}
            if not wave.answers.empty and "question_id" in wave.answers.columns:
                for qid, grp in wave.answers.groupby(wave.answers["question_id"].astype(str)):
                    by_question[str(qid)] = grp

            for position, ref in enumerate(refs):
                matched = match_question(ref, position, local)
                if matched is None:
                    averages.append(_null_average(ref))
                    continue

                values = likert_values(matched, by_question.get(matched.id, pd.DataFrame()))
                averages.append(
                    QuestionAverage(
                        reference_question_id=ref.id,
                        question_code=ref.question_code,
                        text_fr=ref.text_fr,
                        sort_order=ref.sort_order,
                        matched_question_id=matched.id,
                        average=round_half_up(sum(values) / len(values), 1) if values else None,
                        answer_count=len(values),
                    )
                )

        results.append(
            WaveResult(
                survey_id=wave.survey.id,
                title=wave.survey.title_fr,
                wave_number=wave.survey.wave_number,
                status=wave.survey.status,
                published_at=wave.survey.published_at,
                response_count=wave.response_count,
                anonymity_blocked=blocked,
                question_averages=averages,
            )
        )

    return results


def compute_trends(
    reference_questions: Sequence[Question],
    wave_results: Sequence[WaveResult],
    tolerance: float = 0.1,
) -> List[QuestionTrend]:
    """First-to-last change per reference question over unblocked waves."""
    refs = _likert_only(reference_questions)
    ordered = sorted(wave_results, key=lambda w: w.wave_number)

    trends: List[QuestionTrend] = []
    for ref in refs:
        points = []
        for wave in ordered:
            if wave.anonymity_blocked:
                continue
            qa = next((a for a in wave.question_averages if a.reference_question_id == ref.id), None)
            if qa is not None and qa.average is not None:
                points.append((wave.wave_number, qa.average))

        if len(points) < 2:
            trends.append(
                QuestionTrend(
                    reference_question_id=ref.id,
                    question_code=ref.question_code,
                    wave_start=None,
                    wave_end=None,
                    value_start=None,
                    value_end=None,
                    delta=None,
                    direction=None,
                )
            )
            continue

        (w0, v0), (w1, v1) = points[0], points[-1]
        # Averages carry one decimal; keep the difference on that grid
        delta = round(v1 - v0, 1)
        trends.append(
            QuestionTrend(
                reference_question_id=ref.id,
                question_code=ref.question_code,
                wave_start=w0,
                wave_end=w1,
                value_start=v0,
                value_end=v1,
                delta=delta,
                direction=trend_direction(delta, tolerance=tolerance),
            )
        )

    return trends


# ---------------------------------------------------------------------------
# Store-backed entry point
# ---------------------------------------------------------------------------

def _load_wave_input(survey: SurveyInfo, store: SurveyStore) -> WaveInput:
    total = store.count(RESPONSES_TABLE, predicates=[StorePredicate("survey_id", "eq", survey.id)])
    if not can_show_results(total):
        return WaveInput(survey=survey, response_count=total)

    responses = store.select(
        RESPONSES_TABLE,
        columns=["id"],
        predicates=[StorePredicate("survey_id", "eq", survey.id)],
    )
    response_ids = [str(r) for r in responses["id"]] if not responses.empty else []

    questions = load_questions(survey.id, types=LIKERT_TYPES, store=store)
    answers = load_answers(response_ids, question_ids=[q.id for q in questions], store=store) if questions else pd.DataFrame()
    return WaveInput(survey=survey, response_count=total, questions=questions, answers=answers)


def load_wave_comparison(survey_id: str, *, store: Optional[SurveyStore] = None) -> WaveComparison:
    """Compare the Likert questions of 'survey_id' across every wave of its group."""
    store = store or get_store()

    survey = load_survey(survey_id, store=store)
    if not survey.wave_group_id:
        raise WaveGroupError(f"Survey {survey_id} does not belong to a wave group")

    group = store.select_one(
        WAVE_GROUPS_TABLE,
        columns=["id", "name"],
        predicates=[StorePredicate("id", "eq", survey.wave_group_id)],
    )
    group_name = str(group["name"]) if group and group.get("name") else None

    wave_df = store.select(
        SURVEYS_TABLE,
        columns=SURVEY_COLUMNS,
        predicates=[StorePredicate("wave_group_id", "eq", survey.wave_group_id)],
        order="wave_number.asc",
    )
    wave_surveys = [SurveyInfo.from_record(rec) for rec in wave_df.to_dict(orient="records")] if not wave_df.empty else []

    reference = load_questions(survey_id, types=LIKERT_TYPES, store=store)
    logger.info(
        "Wave comparison for survey=%s group=%s (%d waves, %d reference questions)",
        survey_id, survey.wave_group_id, len(wave_surveys), len(reference),
    )

    inputs = [_load_wave_input(ws, store) for ws in wave_surveys]
    waves = align_waves(reference, inputs)
    trends = compute_trends(reference, waves)

    return WaveComparison(
        wave_group_id=survey.wave_group_id,
        wave_group_name=group_name,
        current_survey_id=survey_id,
        reference_questions=reference,
        waves=waves,
        trends=trends,
    )
