from __future__ import annotations

from typing import Optional

from employee_survey.config import ANONYMITY_THRESHOLD


def can_show_results(respondent_count: int) -> bool:
    """True when a group has enough respondents for its results to be shown."""
    return respondent_count >= ANONYMITY_THRESHOLD


def anonymity_message(lang: str = "fr", response_count: Optional[int] = None) -> str:
    """Explain why results are hidden."""
    if lang.lower() == "en":
        msg = f"Results not available to preserve anonymity (fewer than {ANONYMITY_THRESHOLD} respondents)"
        if response_count is not None:
            msg += f", {response_count} received"
        return msg

    msg = f"Résultats non disponibles pour préserver l'anonymat (moins de {ANONYMITY_THRESHOLD} répondants)"
    if response_count is not None:
        msg += f", {response_count} reçus"
    return msg
