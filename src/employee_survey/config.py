from __future__ import annotations

import os

# ---------------------------------------------------------------------------
# App identity
# ---------------------------------------------------------------------------

APP_NAME = "Employee Survey Engine"
APP_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Relational store (PostgREST-compatible REST endpoint)
#
# Every table is reached under {SURVEY_STORE_URL}/{table}. The API key is sent
# both as 'apikey' and as a bearer token, which is what hosted PostgREST
# gateways expect for a service role.
# ---------------------------------------------------------------------------

SURVEY_STORE_URL = os.getenv("SURVEY_STORE_URL", "").strip().rstrip("/")
SURVEY_STORE_API_KEY = os.getenv("SURVEY_STORE_API_KEY", "").strip()

SURVEY_STORE_TIMEOUT_SECONDS = int(os.getenv("SURVEY_STORE_TIMEOUT_SECONDS", "60"))

# Rows per page when paging through large selects (identity tables can hold
# tens of thousands of rows).
SURVEY_STORE_PAGE_SIZE = int(os.getenv("SURVEY_STORE_PAGE_SIZE", "1000"))

# Public base URL used to build respondent links (…/s/<survey>?t=<token>)
SURVEY_PUBLIC_BASE_URL = os.getenv("SURVEY_PUBLIC_BASE_URL", "http://localhost:3000").strip().rstrip("/")

# ---------------------------------------------------------------------------
# Anonymity policy
#
# Fixed for every survey and every filtered slice; not read from the
# environment.
# ---------------------------------------------------------------------------

ANONYMITY_THRESHOLD = 10

# ---------------------------------------------------------------------------
# Sampling policy (pulse surveys)
#
# These are tunable heuristics, not derived values:
#   - a dimension is used for stratification only if at least
#     SAMPLING_MIN_COVERAGE of the population has a value for it
#   - at most SAMPLING_MAX_DIMENSIONS dimensions are combined, lowest
#     cardinality first
# ---------------------------------------------------------------------------

SAMPLING_MIN_COVERAGE = 0.10
SAMPLING_MAX_DIMENSIONS = 3

# Candidate stratification dimensions, in tie-break order.
SAMPLING_DIMENSIONS = (
    "sexe",
    "fonction",
    "lieu_travail",
    "type_contrat",
    "temps_travail",
    "cost_center",
    "direction_id",
    "department_id",
)

# ---------------------------------------------------------------------------
# Roster persistence
# ---------------------------------------------------------------------------

ROSTER_BATCH_SIZE = 500
