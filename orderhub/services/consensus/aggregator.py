"""
Order Hub - Consensus Aggregator

Reconciles the mapping proposals of the seated evaluators.

Per target field every evaluator votes for a source column or abstains
(null column, or field missing from its answer). Vote weight is the
evaluator weight times its confidence; the winner is the column with the
highest total weight.

Field classification, over the n non-abstaining votes with c votes for the
most popular column:
- unanimous:    c == n
- majority:     c > n / 2
- no_consensus: n == 0, or every evaluator picked a different column
- split:        anything else
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from orderhub.services import config
from orderhub.services.case_models import CommitteeSummary

from .evaluators import get_evaluator_weight

logger = logging.getLogger(__name__)


class ConsensusType(str, Enum):
    UNANIMOUS = "unanimous"
    MAJORITY = "majority"
    SPLIT = "split"
    NO_CONSENSUS = "no_consensus"


NEEDS_HUMAN_CLASSIFICATIONS = (ConsensusType.SPLIT, ConsensusType.NO_CONSENSUS)


def classify_votes(choices: List[Optional[str]]) -> ConsensusType:
    """Classify one field's column choices. None is an abstention."""
    votes = [c for c in choices if c is not None]
    if not votes:
        return ConsensusType.NO_CONSENSUS
    top_count = Counter(votes).most_common(1)[0][1]
    if top_count == len(votes):
        return ConsensusType.UNANIMOUS
    if top_count * 2 > len(votes):
        return ConsensusType.MAJORITY
    if top_count == 1:
        return ConsensusType.NO_CONSENSUS
    return ConsensusType.SPLIT


# =============================================================================
# RESULTS
# =============================================================================

@dataclass
class FieldVote:
    field: str
    choices: Dict[str, Optional[str]]
    tallies: List[Dict[str, Any]]
    winner: Optional[str]
    winner_weight: float
    margin: float
    classification: ConsensusType
    agreement: float
    requires_human: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field,
            "choices": dict(self.choices),
            "tallies": list(self.tallies),
            "winner": self.winner,
            "winner_weight": round(self.winner_weight, 4),
            "margin": round(self.margin, 4),
            "classification": self.classification.value,
            "agreement": round(self.agreement, 4),
            "requires_human": self.requires_human,
        }


@dataclass
class CommitteeResult:
    task_id: str
    evaluator_ids: List[str]
    successful_ids: List[str] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)
    fields: Dict[str, FieldVote] = field(default_factory=dict)
    consensus: ConsensusType = ConsensusType.NO_CONSENSUS
    agreement_ratio: float = 0.0
    overall_confidence: float = 0.0
    requires_human: bool = True
    reason: Optional[str] = None

    @property
    def winners(self) -> Dict[str, Optional[str]]:
        return {name: vote.winner for name, vote in self.fields.items()}

    @property
    def disagreements(self) -> List[Dict[str, Any]]:
        """Every evaluator's choice for each field that needs a human."""
        return [
            {"field": name, "classification": vote.classification.value, "choices": dict(vote.choices)}
            for name, vote in self.fields.items() if vote.requires_human
        ]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "evaluator_ids": list(self.evaluator_ids),
            "successful_ids": list(self.successful_ids),
            "failures": dict(self.failures),
            "fields": {name: vote.to_dict() for name, vote in self.fields.items()},
            "consensus": self.consensus.value,
            "agreement_ratio": round(self.agreement_ratio, 4),
            "overall_confidence": round(self.overall_confidence, 4),
            "requires_human": self.requires_human,
            "reason": self.reason,
            "disagreements": self.disagreements,
        }

    def to_summary(self) -> CommitteeSummary:
        return CommitteeSummary(
            task_id=self.task_id,
            evaluator_ids=list(self.evaluator_ids),
            requires_human=self.requires_human,
            reason=self.reason,
            agreement_ratio=round(self.agreement_ratio, 4),
            fields={name: vote.to_dict() for name, vote in self.fields.items()},
        )


# =============================================================================
# AGGREGATION
# =============================================================================

def _field_vote(field_name: str, outputs: Dict[str, Dict[str, Any]], weights: Dict[str, float],
                min_winner_weight: float) -> FieldVote:
    choices: Dict[str, Optional[str]] = {}
    tallies: Dict[str, Dict[str, Any]] = {}

    for evaluator_id, output in outputs.items():
        mapping = next((m for m in output.get("mappings", []) if m["field"] == field_name), None)
        column_id = mapping.get("selected_column_id") if mapping else None
        choices[evaluator_id] = column_id
        if column_id is None:
            continue
        tally = tallies.setdefault(column_id, {"column_id": column_id, "weight": 0.0, "confidence": 0.0, "evaluators": []})
        tally["weight"] += weights.get(evaluator_id, 1.0) * mapping["confidence"]
        tally["confidence"] = max(tally["confidence"], mapping["confidence"])
        tally["evaluators"].append(evaluator_id)

    ranked = sorted(tallies.values(), key=lambda t: t["weight"], reverse=True)
    winner = ranked[0]["column_id"] if ranked else None
    winner_weight = ranked[0]["weight"] if ranked else 0.0
    runner_up = ranked[1]["weight"] if len(ranked) > 1 else 0.0

    classification = classify_votes(list(choices.values()))
    voting = [c for c in choices.values() if c is not None]
    if classification == ConsensusType.NO_CONSENSUS or not voting:
        agreement = 0.0
    else:
        agreement = Counter(voting).most_common(1)[0][1] / len(voting)

    requires_human = classification in NEEDS_HUMAN_CLASSIFICATIONS or winner_weight < min_winner_weight
    return FieldVote(
        field=field_name,
        choices=choices,
        tallies=ranked,
        winner=winner,
        winner_weight=winner_weight,
        margin=winner_weight - runner_up,
        classification=classification,
        agreement=agreement,
        requires_human=requires_human,
    )


def _overall_consensus(fields: Dict[str, FieldVote]) -> ConsensusType:
    if not fields:
        return ConsensusType.NO_CONSENSUS
    kinds = {vote.classification for vote in fields.values()}
    if kinds == {ConsensusType.UNANIMOUS}:
        return ConsensusType.UNANIMOUS
    if ConsensusType.NO_CONSENSUS in kinds:
        return ConsensusType.NO_CONSENSUS
    if ConsensusType.SPLIT in kinds:
        return ConsensusType.SPLIT
    return ConsensusType.MAJORITY


def aggregate_votes(
    task_id: str,
    evaluator_ids: List[str],
    outputs: Dict[str, Dict[str, Any]],
    failures: Dict[str, str] = None,
    weights: Dict[str, float] = None,
    min_successful: int = config.COMMITTEE_MIN_SUCCESSFUL,
    min_agreement_ratio: float = config.COMMITTEE_MIN_AGREEMENT_RATIO,
    min_winner_weight: float = config.COMMITTEE_MIN_WINNER_WEIGHT,
) -> CommitteeResult:
    """
    Aggregate evaluator outputs into a committee decision.

    `outputs` maps evaluator id -> parsed answer for the evaluators that
    responded. Fewer than `min_successful` answers always needs a human,
    whatever the votes say.
    """
    failures = dict(failures or {})
    weights = weights or {eid: get_evaluator_weight(eid) for eid in evaluator_ids}

    field_names: List[str] = []
    for output in outputs.values():
        for mapping in output.get("mappings", []):
            if mapping["field"] not in field_names:
                field_names.append(mapping["field"])

    fields = {name: _field_vote(name, outputs, weights, min_winner_weight) for name in field_names}
    agreement_ratio = sum(v.agreement for v in fields.values()) / len(fields) if fields else 0.0
    overall_confidence = (
        sum(o.get("overall_confidence", 0.0) for o in outputs.values()) / len(outputs) if outputs else 0.0
    )

    reasons = []
    if len(outputs) < min_successful:
        reasons.append(
            f"Only {len(outputs)} of {len(evaluator_ids)} evaluator(s) responded (minimum {min_successful})"
        )
    else:
        contested = [name for name, v in fields.items() if v.classification in NEEDS_HUMAN_CLASSIFICATIONS]
        if contested:
            reasons.append(f"Evaluators disagree on: {', '.join(contested)}")
        weak = [name for name, v in fields.items()
                if v.requires_human and v.classification not in NEEDS_HUMAN_CLASSIFICATIONS]
        if weak:
            reasons.append(f"Low-confidence winner for: {', '.join(weak)}")
        if agreement_ratio < min_agreement_ratio:
            reasons.append(f"Agreement ratio {agreement_ratio:.2f} below {min_agreement_ratio:.2f}")

    result = CommitteeResult(
        task_id=task_id,
        evaluator_ids=list(evaluator_ids),
        successful_ids=list(outputs.keys()),
        failures=failures,
        fields=fields,
        consensus=_overall_consensus(fields),
        agreement_ratio=agreement_ratio,
        overall_confidence=overall_confidence,
        requires_human=bool(reasons),
        reason="; ".join(reasons) if reasons else None,
    )
    logger.info(
        "Committee %s: consensus=%s agreement=%.2f requires_human=%s",
        task_id, result.consensus.value, agreement_ratio, result.requires_human,
    )
    return result
