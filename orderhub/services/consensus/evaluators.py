"""
Order Hub - Evaluator Pool

Independent automated proposal generators for the column-mapping review.

Each evaluator receives the same evidence pack and answers with a JSON
object:

    {"mappings": [{"field": "...", "selected_column_id": "col_2" | null,
                   "confidence": 0.0-1.0, "reasoning": "..."}],
     "issues": [...], "overall_confidence": 0.0-1.0}

Evaluators are grouped into families (openai, anthropic, ...). A committee
never seats two evaluators of the same family, so correlated mistakes are
less likely to look like agreement.
"""

import json
import logging
import random
from typing import Any, Dict, List, Optional

import httpx

from orderhub.services import config
from orderhub.services.errors import PermanentStepError, TransientStepError

logger = logging.getLogger(__name__)


# =============================================================================
# FAMILIES AND WEIGHTS
# =============================================================================

# Substring -> family. First match wins.
EVALUATOR_FAMILIES = [
    ("gpt", "openai"),
    ("claude", "anthropic"),
    ("deepseek", "deepseek"),
    ("gemini", "google"),
    ("grok", "xai"),
]

# Substring -> voting weight. First match wins, default 1.0.
EVALUATOR_WEIGHTS = [
    ("gpt-5.1", 1.1),
    ("claude-opus", 1.2),
    ("claude-sonnet", 1.1),
    ("deepseek", 1.0),
    ("gemini", 1.05),
    ("grok", 1.0),
]


def get_evaluator_family(evaluator_id: str) -> str:
    lowered = evaluator_id.lower()
    for pattern, family in EVALUATOR_FAMILIES:
        if pattern in lowered:
            return family
    return evaluator_id


def get_evaluator_weight(evaluator_id: str) -> float:
    lowered = evaluator_id.lower()
    for pattern, weight in EVALUATOR_WEIGHTS:
        if pattern in lowered:
            return weight
    return 1.0


# =============================================================================
# OUTPUT PARSING
# =============================================================================

def parse_evaluator_output(response_text: str) -> Dict[str, Any]:
    """
    Extract and normalize the JSON answer from a model response.

    Tolerates text around the JSON object. Confidences are clamped to [0, 1].
    """
    response_text = (response_text or "").strip()
    if response_text.startswith("{"):
        json_str = response_text
    elif "{" in response_text:
        start = response_text.find("{")
        end = response_text.rfind("}") + 1
        json_str = response_text[start:end]
    else:
        raise ValueError(f"No JSON found in response: {response_text[:200]}")

    data = json.loads(json_str)
    mappings = []
    for mapping in data.get("mappings", []):
        if not mapping.get("field"):
            continue
        confidence = max(0.0, min(1.0, float(mapping.get("confidence", 0.0))))
        mappings.append({
            "field": mapping["field"],
            "selected_column_id": mapping.get("selected_column_id"),
            "confidence": confidence,
            "reasoning": mapping.get("reasoning", ""),
        })

    return {
        "mappings": mappings,
        "issues": list(data.get("issues", [])),
        "overall_confidence": max(0.0, min(1.0, float(data.get("overall_confidence", 0.0)))),
    }


# =============================================================================
# EVALUATORS
# =============================================================================

SYSTEM_PROMPT = """You review how spreadsheet columns map to order fields.

You receive candidate column headers, sample values and column statistics.
For every target field choose the column id that holds it, or null if no
column does.

You MUST respond with ONLY a JSON object in this exact format:
{"mappings": [{"field": "FIELD", "selected_column_id": "COLUMN_ID or null",
  "confidence": 0.XX, "reasoning": "short reason"}],
 "issues": ["..."], "overall_confidence": 0.XX}

RESPOND ONLY WITH THE JSON OBJECT, NO OTHER TEXT."""


class ChatCompletionEvaluator:
    """Evaluator backed by an OpenAI-compatible chat-completions endpoint."""

    def __init__(self, evaluator_id: str, api_base: str = config.EVALUATOR_API_BASE,
                 api_key: str = config.EVALUATOR_API_KEY, timeout: float = config.COMMITTEE_TIMEOUT_SECONDS,
                 transport: httpx.AsyncBaseTransport = None):
        self.evaluator_id = evaluator_id
        self.family = get_evaluator_family(evaluator_id)
        self.api_base = api_base.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    @property
    def is_healthy(self) -> bool:
        return bool(self.api_key)

    async def evaluate(self, evidence_pack: Dict[str, Any]) -> Dict[str, Any]:
        """Returns {"output": parsed answer, "raw_response": model text}."""
        body = {
            "model": self.evaluator_id,
            "temperature": 0,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": json.dumps(evidence_pack, ensure_ascii=False)},
            ],
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(f"{self.api_base}/chat/completions", json=body, headers=headers)
        except httpx.TransportError as e:
            raise TransientStepError(f"Evaluator {self.evaluator_id} unreachable: {e}")

        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientStepError(f"Evaluator {self.evaluator_id} returned {resp.status_code}",
                                     status_code=resp.status_code)
        if resp.status_code != 200:
            raise PermanentStepError(f"Evaluator {self.evaluator_id} rejected request: {resp.status_code}",
                                     status_code=resp.status_code)

        response_text = resp.json()["choices"][0]["message"]["content"]
        logger.info("Evaluator %s raw response: %s", self.evaluator_id, response_text[:500])
        return {"output": parse_evaluator_output(response_text), "raw_response": response_text}


class StaticEvaluator:
    """
    Evaluator with canned answers, for demo mode and tests.

    `answer` is either a parsed output dict or a callable taking the
    evidence pack. `error` makes every call raise it.
    """

    def __init__(self, evaluator_id: str, answer: Any = None, error: Optional[Exception] = None,
                 healthy: bool = True, family: Optional[str] = None):
        self.evaluator_id = evaluator_id
        self.family = family or get_evaluator_family(evaluator_id)
        self.answer = answer
        self.error = error
        self.healthy = healthy
        self.calls = 0

    @property
    def is_healthy(self) -> bool:
        return self.healthy

    async def evaluate(self, evidence_pack: Dict[str, Any]) -> Dict[str, Any]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        answer = self.answer(evidence_pack) if callable(self.answer) else self.answer
        raw = json.dumps(answer or {"mappings": [], "issues": [], "overall_confidence": 0.0})
        return {"output": parse_evaluator_output(raw), "raw_response": raw}


def header_matching_answer(evidence_pack: Dict[str, Any]) -> Dict[str, Any]:
    """Demo answer: pick the column whose header names the field."""
    mappings = []
    for target in evidence_pack.get("target_fields", []):
        chosen = None
        for column in evidence_pack.get("columns", []):
            header = column.get("header", "").lower().replace(" ", "_")
            if target in header or header in target:
                chosen = column["id"]
                break
        mappings.append({
            "field": target,
            "selected_column_id": chosen,
            "confidence": 0.9 if chosen else 0.0,
            "reasoning": "header match" if chosen else "no matching header",
        })
    return {"mappings": mappings, "issues": [], "overall_confidence": 0.9}


# =============================================================================
# POOL
# =============================================================================

class EvaluatorPool:
    """Configured evaluators plus diverse random selection."""

    def __init__(self, evaluators: List[Any]):
        self._evaluators = {e.evaluator_id: e for e in evaluators}

    @classmethod
    def from_config(cls, evaluator_ids: List[str] = None, use_mocks: bool = config.USE_MOCKS) -> "EvaluatorPool":
        evaluator_ids = evaluator_ids or config.COMMITTEE_EVALUATOR_POOL
        if use_mocks:
            return cls([StaticEvaluator(eid, answer=header_matching_answer) for eid in evaluator_ids])
        return cls([ChatCompletionEvaluator(eid) for eid in evaluator_ids])

    def get(self, evaluator_id: str):
        return self._evaluators.get(evaluator_id)

    @property
    def evaluator_ids(self) -> List[str]:
        return list(self._evaluators.keys())

    def healthy_ids(self) -> List[str]:
        return [eid for eid, e in self._evaluators.items() if e.is_healthy]

    def select(self, count: int = config.COMMITTEE_SIZE, rng: random.Random = None) -> List[str]:
        """
        Random subset of healthy evaluators, at most one per family.

        Returns fewer than `count` ids when the healthy pool cannot fill a
        diverse committee.
        """
        rng = rng or random.Random()
        shuffled = self.healthy_ids()
        rng.shuffle(shuffled)

        selected = []
        used_families = set()
        for evaluator_id in shuffled:
            if len(selected) >= count:
                break
            family = self._evaluators[evaluator_id].family
            if family in used_families:
                continue
            selected.append(evaluator_id)
            used_families.add(family)

        if len(selected) < count:
            logger.warning("Only %d diverse healthy evaluator(s) available (wanted %d)", len(selected), count)
        return selected
