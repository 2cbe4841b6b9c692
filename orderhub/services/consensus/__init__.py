"""
Order Hub - Evaluator Committee

- EvaluatorPool: configured evaluators, diverse random selection
- aggregate_votes: weighted voting and consensus classification
- Committee: runs one review task and writes the evidence trail
"""

from .aggregator import CommitteeResult, ConsensusType, FieldVote, aggregate_votes, classify_votes
from .committee import TARGET_FIELDS, Committee
from .evaluators import (
    ChatCompletionEvaluator,
    EvaluatorPool,
    StaticEvaluator,
    get_evaluator_family,
    get_evaluator_weight,
    header_matching_answer,
    parse_evaluator_output,
)

__all__ = [
    'Committee',
    'CommitteeResult',
    'ConsensusType',
    'FieldVote',
    'aggregate_votes',
    'classify_votes',
    'TARGET_FIELDS',
    'EvaluatorPool',
    'ChatCompletionEvaluator',
    'StaticEvaluator',
    'get_evaluator_family',
    'get_evaluator_weight',
    'header_matching_answer',
    'parse_evaluator_output',
]
