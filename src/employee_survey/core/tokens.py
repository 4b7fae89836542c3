from __future__ import annotations

import uuid
from typing import Optional

from employee_survey.config import SURVEY_PUBLIC_BASE_URL


def generate_anonymous_token() -> str:
    """Random UUID with no link to the employee's identity."""
    return str(uuid.uuid4())


def generate_survey_link(survey_id: str, token: str, base_url: Optional[str] = None) -> str:
    base = (base_url or SURVEY_PUBLIC_BASE_URL).rstrip("/")
    return f"{base}/s/{survey_id}?t={token}"
