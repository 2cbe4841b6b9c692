"""
Order Hub - Engine Configuration

All tunable constants for the case lifecycle engine. Every value can be
overridden through the environment (a .env file is honoured).

Sections:
- Database
- Matching thresholds (single auto-accept constant for every matching path)
- Committee (evaluator pool, timeouts, agreement ratio)
- Escalation phases
- Step retry / backoff policies
- Case write (optimistic concurrency) retry
- Admission limits
- Collaborator endpoints
"""

import os
from datetime import timedelta
from typing import List

from dotenv import load_dotenv

load_dotenv()


def _env_float(name: str, default: float) -> float:
    return float(os.environ.get(name, default))


def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(name, default))


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.environ.get(name)
    if not raw:
        return list(default)
    return [part.strip() for part in raw.split(",") if part.strip()]


# =============================================================================
# DATABASE
# =============================================================================

MONGO_URL = os.environ.get("MONGO_URL", "mongodb://localhost:27017")
DB_NAME = os.environ.get("DB_NAME", "order_hub")

# Use in-memory collaborators and stores instead of Mongo / HTTP services
USE_MOCKS = os.environ.get("ORDERHUB_USE_MOCKS", "false").lower() == "true"


# =============================================================================
# MATCHING
# =============================================================================

# One auto-accept constant shared by item and customer matching
MATCH_AUTO_ACCEPT_THRESHOLD = _env_float("MATCH_AUTO_ACCEPT_THRESHOLD", 0.85)
MATCH_MIN_CANDIDATE_SCORE = _env_float("MATCH_MIN_CANDIDATE_SCORE", 0.5)
MATCH_MAX_CANDIDATES = _env_int("MATCH_MAX_CANDIDATES", 5)
MATCH_AMBIGUITY_MARGIN = _env_float("MATCH_AMBIGUITY_MARGIN", 0.1)

IDENTIFIER_MATCH_CONFIDENCE = 1.0
SECONDARY_IDENTIFIER_MATCH_CONFIDENCE = 0.95


# =============================================================================
# COMMITTEE
# =============================================================================

DEFAULT_EVALUATOR_POOL = [
    "azure-gpt-5.1",
    "azure-claude-opus-4.5",
    "azure-deepseek-v3.2",
    "gemini-2.5-pro",
    "xai-grok-4-reasoning",
]

COMMITTEE_EVALUATOR_POOL = _env_list("COMMITTEE_EVALUATOR_POOL", DEFAULT_EVALUATOR_POOL)
COMMITTEE_SIZE = _env_int("COMMITTEE_SIZE", 3)
COMMITTEE_MIN_SUCCESSFUL = _env_int("COMMITTEE_MIN_SUCCESSFUL", 2)
COMMITTEE_TIMEOUT_SECONDS = _env_float("COMMITTEE_TIMEOUT_SECONDS", 30.0)
COMMITTEE_MIN_AGREEMENT_RATIO = _env_float("COMMITTEE_MIN_AGREEMENT_RATIO", 0.66)
# Winner weight below this always needs a human, even with agreement
COMMITTEE_MIN_WINNER_WEIGHT = _env_float("COMMITTEE_MIN_WINNER_WEIGHT", 0.5)


# =============================================================================
# ESCALATION
# =============================================================================

ESCALATION_REMINDER_AFTER = timedelta(hours=_env_float("ESCALATION_REMINDER_HOURS", 24))
ESCALATION_ESCALATE_AFTER = timedelta(hours=_env_float("ESCALATION_ESCALATE_HOURS", 24))
ESCALATION_CANCEL_AFTER = timedelta(days=_env_float("ESCALATION_CANCEL_DAYS", 5))
ESCALATION_SECONDARY_RECIPIENT = os.environ.get("ESCALATION_SECONDARY_RECIPIENT", "ops-manager")


# =============================================================================
# STEP RETRY POLICIES
# =============================================================================

STEP_RETRY_MAX_ATTEMPTS = _env_int("STEP_RETRY_MAX_ATTEMPTS", 3)
STEP_RETRY_INITIAL_SECONDS = _env_float("STEP_RETRY_INITIAL_SECONDS", 5.0)
STEP_RETRY_BACKOFF = _env_float("STEP_RETRY_BACKOFF", 2.0)
STEP_RETRY_MAX_SECONDS = _env_float("STEP_RETRY_MAX_SECONDS", 30.0)
STEP_TIMEOUT_SECONDS = _env_float("STEP_TIMEOUT_SECONDS", 120.0)

SUBMIT_RETRY_MAX_ATTEMPTS = _env_int("SUBMIT_RETRY_MAX_ATTEMPTS", 5)
SUBMIT_RETRY_MAX_SECONDS = _env_float("SUBMIT_RETRY_MAX_SECONDS", 60.0)

AUDIT_TIMEOUT_SECONDS = _env_float("AUDIT_TIMEOUT_SECONDS", 60.0)

SUBMISSION_QUEUE_DEFAULT_DELAY_SECONDS = _env_float("SUBMISSION_QUEUE_DEFAULT_DELAY_SECONDS", 300.0)
SUBMISSION_QUEUE_MAX_ROUNDS = _env_int("SUBMISSION_QUEUE_MAX_ROUNDS", 12)


# =============================================================================
# CASE WRITES (optimistic concurrency)
# =============================================================================

CASE_WRITE_MAX_ATTEMPTS = _env_int("CASE_WRITE_MAX_ATTEMPTS", 3)
CASE_WRITE_RETRY_DELAY_SECONDS = _env_float("CASE_WRITE_RETRY_DELAY_SECONDS", 0.05)


# =============================================================================
# ADMISSION LIMITS
# =============================================================================

MAX_CONCURRENT_STEPS = _env_int("MAX_CONCURRENT_STEPS", 20)
MAX_CONCURRENT_EXTERNAL_CALLS = _env_int("MAX_CONCURRENT_EXTERNAL_CALLS", 5)


# =============================================================================
# COLLABORATORS
# =============================================================================

PARSER_SERVICE_URL = os.environ.get("PARSER_SERVICE_URL", "http://localhost:7071/api")
CATALOG_SERVICE_URL = os.environ.get("CATALOG_SERVICE_URL", "http://localhost:7073/api")
ORDER_SYSTEM_URL = os.environ.get("ORDER_SYSTEM_URL", "http://localhost:7074/api")
ORDER_SYSTEM_TOKEN = os.environ.get("ORDER_SYSTEM_TOKEN", "")
NOTIFY_WEBHOOK_URL = os.environ.get("NOTIFY_WEBHOOK_URL", "")
EVALUATOR_API_BASE = os.environ.get("EVALUATOR_API_BASE", "http://localhost:4000/v1")
EVALUATOR_API_KEY = os.environ.get("EVALUATOR_API_KEY", "")

COLLABORATOR_TIMEOUT_SECONDS = _env_float("COLLABORATOR_TIMEOUT_SECONDS", 30.0)
