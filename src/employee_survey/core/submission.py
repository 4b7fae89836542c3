from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

import logging

from employee_survey.core.population import TOKENS_TABLE
from employee_survey.core.store import (
    ConflictError,
    StoreError,
    StorePredicate,
    SurveyStore,
    get_store,
)
from employee_survey.core.survey_loader import (
    ANSWERS_TABLE,
    RESPONSES_TABLE,
    SURVEYS_TABLE,
    Question,
    QuestionType,
    load_questions,
    load_survey,
)

logger = logging.getLogger(__name__)

PUBLISHED_STATUS = "published"


class SubmissionError(Exception):
    """Raised when a submission cannot be recorded."""


class EmptySubmissionError(SubmissionError):
    """Raised when the token or the answers are missing."""


class InvalidTokenError(SubmissionError):
    """Raised when the access token is unknown."""


class SurveyNotOpenError(SubmissionError):
    """Raised when the survey is not accepting answers."""


class DuplicateSubmissionError(SubmissionError):
    """Raised when the token already answered this survey. The first response is kept."""


class InvalidAnswerError(SubmissionError):
    """Raised when an answer does not fit its question."""


def _lookup_token(token: str, store: SurveyStore) -> Optional[Dict[str, Any]]:
    return store.select_one(
        TOKENS_TABLE,
        columns=["id", "societe_id", "direction_id", "department_id", "service_id"],
        predicates=[StorePredicate("token", "eq", token.strip())],
    )


def validate_token(survey_id: str, token: str, *, store: Optional[SurveyStore] = None) -> bool:
    """True when the token exists and belongs to the survey's societe."""
    if not token or not token.strip():
        return False
    store = store or get_store()

    token_rec = _lookup_token(token, store)
    if token_rec is None:
        return False

    survey = store.select_one(
        SURVEYS_TABLE,
        columns=["societe_id"],
        predicates=[StorePredicate("id", "eq", survey_id)],
    )
    if survey is None:
        return False
    return survey.get("societe_id") == token_rec.get("societe_id")


# ---------------------------------------------------------------------------
# Answer normalization
# ---------------------------------------------------------------------------

def normalize_answer(question: Question, raw: Dict[str, Any]) -> Dict[str, Any]:
    """
    Keep only the value field matching the question's declared type.

    choice -> selected_option_ids, likert -> numeric_value, free text -> text_value
    """
    row: Dict[str, Any] = {
        "question_id": question.id,
        "numeric_value": None,
        "text_value": None,
        "selected_option_ids": None,
    }

    if question.type.is_choice:
        selected = raw.get("selected_option_ids") or []
        if isinstance(selected, str):
            selected = [selected]
        selected = [str(s) for s in selected]
        declared = {o.id for o in question.options}
        unknown = [s for s in selected if s not in declared]
        if unknown:
            raise InvalidAnswerError(f"Question {question.id}: unknown option(s) {unknown}")
        if question.type is QuestionType.SINGLE_CHOICE and len(selected) > 1:
            raise InvalidAnswerError(f"Question {question.id}: single choice with {len(selected)} selections")
        row["selected_option_ids"] = selected
        return row

    if question.type.is_likert:
        value = raw.get("numeric_value")
        if value is not None:
            lo, hi = question.type.scale
            try:
                num = float(value)
            except (TypeError, ValueError) as exc:
                raise InvalidAnswerError(f"Question {question.id}: numeric value expected, got {value!r}") from exc
            if num != int(num) or not lo <= num <= hi:
                raise InvalidAnswerError(f"Question {question.id}: {value!r} is outside the {lo}-{hi} scale")
            row["numeric_value"] = int(num)
        return row

    text = raw.get("text_value")
    row["text_value"] = str(text) if text is not None else None
    return row


def _normalize_answers(answers: Sequence[Dict[str, Any]], questions: List[Question]) -> List[Dict[str, Any]]:
    by_id = {q.id: q for q in questions}
    rows: List[Dict[str, Any]] = []
    seen = set()
    for raw in answers:
        qid = str(raw.get("question_id") or "")
        question = by_id.get(qid)
        if question is None:
            raise InvalidAnswerError(f"Answer references unknown question {qid!r}")
        if qid in seen:
            raise InvalidAnswerError(f"Question {qid} answered more than once")
        seen.add(qid)
        rows.append(normalize_answer(question, raw))
    return rows


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------

def submit_response(
    survey_id: str,
    token: str,
    answers: Sequence[Dict[str, Any]],
    *,
    store: Optional[SurveyStore] = None,
) -> str:
    """
    Record one anonymous submission and return the new response id.

    The response row references the identity and copies its organizational
    units. A second submission with the same token is rejected.
    """
    if not token or not token.strip():
        raise EmptySubmissionError("Missing token")
    if not answers:
        raise EmptySubmissionError("No answers provided")

    store = store or get_store()

    token_rec = _lookup_token(token, store)
    if token_rec is None:
        raise InvalidTokenError("Invalid token")

    survey = load_survey(survey_id, store=store)
    if survey.status != PUBLISHED_STATUS:
        raise SurveyNotOpenError(f"Survey {survey_id} is not open for answers (status={survey.status})")

    token_id = str(token_rec["id"])
    existing = store.select_one(
        RESPONSES_TABLE,
        columns=["id"],
        predicates=[
            StorePredicate("survey_id", "eq", survey_id),
            StorePredicate("token_id", "eq", token_id),
        ],
    )
    if existing is not None:
        raise DuplicateSubmissionError("This token has already answered this survey")

    rows = _normalize_answers(answers, load_questions(survey_id, store=store))

    response_row = {
        "survey_id": survey_id,
        "token_id": token_id,
        "societe_id": token_rec.get("societe_id"),
        "direction_id": token_rec.get("direction_id"),
        "department_id": token_rec.get("department_id"),
        "service_id": token_rec.get("service_id"),
    }
    try:
        created = store.insert(RESPONSES_TABLE, [response_row], returning=True)
    except ConflictError as exc:
        # Concurrent submission with the same token won the race
        raise DuplicateSubmissionError("This token has already answered this survey") from exc
    except StoreError as exc:
        raise SubmissionError(f"Could not record response: {exc}") from exc

    if not created or "id" not in created[0]:
        raise SubmissionError("Store did not return the new response id")
    response_id = str(created[0]["id"])

    for row in rows:
        row["response_id"] = response_id
    try:
        store.insert(ANSWERS_TABLE, rows)
    except StoreError as exc:
        logger.error("Answer insert failed for response=%s; rolling back: %s", response_id, exc)
        try:
            store.delete(RESPONSES_TABLE, predicates=[StorePredicate("id", "eq", response_id)])
        except StoreError as delete_exc:
            # The empty response still blocks this token and counts toward n
            logger.error(
                "Rollback failed: orphan response=%s (survey=%s, token_id=%s) must be removed: %s",
                response_id, survey_id, token_id, delete_exc,
            )
        raise SubmissionError(f"Could not record answers: {exc}") from exc

    logger.info("Recorded response=%s for survey=%s (%d answers)", response_id, survey_id, len(rows))
    return response_id
