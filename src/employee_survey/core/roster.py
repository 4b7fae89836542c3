from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Dict, List, Optional

import logging
import random

from employee_survey.config import ROSTER_BATCH_SIZE
from employee_survey.core.filters import FilterSpec
from employee_survey.core.population import PULSE_SURVEY_TYPE, fetch_population
from employee_survey.core.sampling import sample_population
from employee_survey.core.store import StoreError, StorePredicate, SurveyStore, get_store
from employee_survey.core.survey_loader import load_survey

logger = logging.getLogger(__name__)

ROSTER_TABLE = "survey_tokens"

SELECTED_BY_SAMPLE = "sample"
SELECTED_BY_FILTER = "filter"


class RosterWriteError(Exception):
    """
    Raised when the roster could not be fully replaced.

    The previous roster may already be gone; callers must retry the whole
    generation rather than use what was written.
    """

    def __init__(self, message: str, inserted: int = 0):
        super().__init__(message)
        self.inserted = inserted


@dataclass
class RosterResult:
    survey_id: str
    survey_type: Optional[str]
    selected_by: str
    total_filtered: int
    inserted: int


def replace_roster(
    survey_id: str,
    token_ids: List[str],
    selected_by: str,
    *,
    store: SurveyStore,
    batch_size: int = ROSTER_BATCH_SIZE,
) -> int:
    """Clear the survey's roster, then insert the new one in batches."""
    try:
        store.delete(ROSTER_TABLE, predicates=[StorePredicate("survey_id", "eq", survey_id)])
    except StoreError as exc:
        raise RosterWriteError(f"Could not clear roster for survey {survey_id}: {exc}") from exc

    inserted = 0
    for start in range(0, len(token_ids), batch_size):
        batch: List[Dict[str, str]] = [
            {"survey_id": survey_id, "token_id": token_id, "selected_by": selected_by}
            for token_id in token_ids[start:start + batch_size]
        ]
        try:
            store.insert(ROSTER_TABLE, batch)
        except StoreError as exc:
            logger.error(
                "Roster insert failed for survey=%s after %d of %d rows: %s",
                survey_id, inserted, len(token_ids), exc,
            )
            raise RosterWriteError(
                f"Roster for survey {survey_id} is incomplete ({inserted}/{len(token_ids)} rows): {exc}",
                inserted=inserted,
            ) from exc
        inserted += len(batch)

    return inserted


def generate_roster(
    survey_id: str,
    *,
    store: Optional[SurveyStore] = None,
    rng: Optional[random.Random] = None,
    today: Optional[date] = None,
) -> RosterResult:
    """
    Select the eligible identities for a survey and persist them as its roster.

    Filters come from the survey record, defaulting to the survey's societe.
    Pulse surveys with a sample percentage are sampled.
    """
    store = store or get_store()
    survey = load_survey(survey_id, store=store)

    spec = FilterSpec.from_dict(survey.filters).with_default_societe(survey.societe_id)
    population = fetch_population(spec, store=store, today=today)

    is_pulse = survey.survey_type == PULSE_SURVEY_TYPE and bool(survey.sample_percentage)
    if is_pulse:
        population = sample_population(population, float(survey.sample_percentage), rng=rng)
    selected_by = SELECTED_BY_SAMPLE if survey.survey_type == PULSE_SURVEY_TYPE else SELECTED_BY_FILTER

    token_ids = [str(t) for t in population["id"]] if not population.empty else []
    logger.info(
        "Generating roster for survey=%s: %d identities (selected_by=%s)",
        survey_id, len(token_ids), selected_by,
    )

    inserted = replace_roster(survey_id, token_ids, selected_by, store=store)

    return RosterResult(
        survey_id=survey_id,
        survey_type=survey.survey_type,
        selected_by=selected_by,
        total_filtered=len(token_ids),
        inserted=inserted,
    )
