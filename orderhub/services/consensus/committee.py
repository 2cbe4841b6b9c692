"""
Order Hub - Mapping Review Committee

Runs one column-mapping review task:

1. The caller picks the evaluator subset once (EvaluatorPool.select) and
   pins it in workflow history; this module never re-rolls it.
2. Every seated evaluator gets the same evidence pack, concurrently, each
   call bounded by COMMITTEE_TIMEOUT_SECONDS.
3. Inputs, raw outputs and errors go to the evidence trail per evaluator,
   then the aggregated decision.

Evaluator failures are not step failures: too few answers means the case
goes to human review with a reason.

The committee is constructed once by the server and injected into the case
steps; it holds no module-level client state.
"""

import asyncio
import logging
import random
from typing import Any, Dict, List

from orderhub.services import config
from orderhub.services.case_models import CanonicalOrder
from orderhub.services.evidence_store import decision_path, evaluator_input_path, evaluator_output_path

from .aggregator import CommitteeResult, aggregate_votes
from .evaluators import EvaluatorPool, get_evaluator_weight

logger = logging.getLogger(__name__)

# Order fields the committee maps spreadsheet columns onto
TARGET_FIELDS = ["customer_name", "sku", "gtin", "description", "quantity", "unit_price"]

MAX_SAMPLE_VALUES = 5


def _column_stats(samples: List[str]) -> Dict[str, Any]:
    values = [s for s in samples if s not in (None, "")]
    numeric = 0
    for value in values:
        try:
            float(str(value).replace(",", ""))
            numeric += 1
        except ValueError:
            pass
    return {
        "non_empty": len(values),
        "numeric_ratio": round(numeric / len(values), 2) if values else 0.0,
        "distinct": len(set(values)),
    }


class Committee:
    """Evaluator committee for the mapping review."""

    def __init__(
        self,
        pool: EvaluatorPool,
        evidence_store,
        size: int = config.COMMITTEE_SIZE,
        min_successful: int = config.COMMITTEE_MIN_SUCCESSFUL,
        timeout: float = config.COMMITTEE_TIMEOUT_SECONDS,
        min_agreement_ratio: float = config.COMMITTEE_MIN_AGREEMENT_RATIO,
        min_winner_weight: float = config.COMMITTEE_MIN_WINNER_WEIGHT,
        target_fields: List[str] = None,
    ):
        self.pool = pool
        self.evidence_store = evidence_store
        self.size = size
        self.min_successful = min_successful
        self.timeout = timeout
        self.min_agreement_ratio = min_agreement_ratio
        self.min_winner_weight = min_winner_weight
        self.target_fields = target_fields or list(TARGET_FIELDS)

    def select_evaluators(self, rng: random.Random = None) -> List[str]:
        """Random diverse subset. Call through the workflow's side_effect so replay reuses it."""
        return self.pool.select(self.size, rng=rng)

    def build_evidence_pack(self, case_id: str, canonical: CanonicalOrder) -> Dict[str, Any]:
        return {
            "case_id": case_id,
            "target_fields": list(self.target_fields),
            "columns": [
                {
                    "id": column.id,
                    "header": column.header,
                    "samples": column.samples[:MAX_SAMPLE_VALUES],
                    "stats": _column_stats(column.samples),
                }
                for column in canonical.columns
            ],
            "current_mapping": dict(canonical.column_mapping),
            "detected_language": canonical.detected_language,
            "constraints": {
                "one_column_per_field": True,
                "null_when_absent": True,
            },
        }

    async def run(self, case_id: str, task_id: str, evaluator_ids: List[str],
                  evidence_pack: Dict[str, Any]) -> CommitteeResult:
        """Call the seated evaluators and aggregate. Never raises for evaluator failures."""
        if len(evaluator_ids) < self.min_successful:
            logger.warning("Case %s: only %d evaluator(s) seated, skipping committee", case_id, len(evaluator_ids))
            result = aggregate_votes(
                task_id, evaluator_ids, outputs={},
                failures={eid: "not called" for eid in evaluator_ids},
                min_successful=self.min_successful,
            )
            result.reason = (
                f"Evaluator pool exhausted: {len(evaluator_ids)} healthy evaluator(s), "
                f"minimum {self.min_successful}"
            )
            await self.evidence_store.put(case_id, decision_path(task_id), result.to_dict())
            return result

        calls = [self._call_one(case_id, task_id, eid, evidence_pack) for eid in evaluator_ids]
        answers = await asyncio.gather(*calls)

        outputs = {eid: answer["output"] for eid, answer in zip(evaluator_ids, answers) if "output" in answer}
        failures = {eid: answer["error"] for eid, answer in zip(evaluator_ids, answers) if "error" in answer}

        result = aggregate_votes(
            task_id,
            evaluator_ids,
            outputs,
            failures=failures,
            weights={eid: get_evaluator_weight(eid) for eid in evaluator_ids},
            min_successful=self.min_successful,
            min_agreement_ratio=self.min_agreement_ratio,
            min_winner_weight=self.min_winner_weight,
        )
        await self.evidence_store.put(case_id, decision_path(task_id), result.to_dict())
        return result

    async def _call_one(self, case_id: str, task_id: str, evaluator_id: str,
                        evidence_pack: Dict[str, Any]) -> Dict[str, Any]:
        await self.evidence_store.put(case_id, evaluator_input_path(task_id, evaluator_id), evidence_pack)

        evaluator = self.pool.get(evaluator_id)
        if evaluator is None:
            answer = {"error": f"Evaluator {evaluator_id} is not configured"}
        else:
            try:
                answer = await asyncio.wait_for(evaluator.evaluate(evidence_pack), self.timeout)
            except asyncio.TimeoutError:
                logger.warning("Case %s: evaluator %s timed out after %.0fs", case_id, evaluator_id, self.timeout)
                answer = {"error": f"timeout after {self.timeout:.0f}s"}
            except Exception as e:
                logger.warning("Case %s: evaluator %s failed: %s", case_id, evaluator_id, str(e))
                answer = {"error": str(e) or type(e).__name__}

        await self.evidence_store.put(case_id, evaluator_output_path(task_id, evaluator_id), answer)
        return answer
