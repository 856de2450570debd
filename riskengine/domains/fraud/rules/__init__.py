"""Fraud rule evaluators.

Exports EVALUATORS, the dispatch table from rule category to the evaluator
that checks rules of that category, plus the evaluator classes and pattern
detectors for direct use.
"""

from ..models import RuleCategory
from .amount import AmountEvaluator
from .base import RuleEnvironment, RuleEvaluator
from .behavior import BehaviorEvaluator
from .device import DeviceEvaluator
from .geography import GeographyEvaluator, detect_country_hop
from .pattern import (
    PATTERN_DETECTORS,
    PatternEvaluator,
    detect_deposit_then_withdrawal,
    detect_rapid_succession,
    detect_round_amounts,
    detect_splitting,
)
from .velocity import VelocityEvaluator

EVALUATORS: dict[RuleCategory, RuleEvaluator] = {
    evaluator.category: evaluator
    for evaluator in (
        VelocityEvaluator(),
        PatternEvaluator(),
        AmountEvaluator(),
        GeographyEvaluator(),
        DeviceEvaluator(),
        BehaviorEvaluator(),
    )
}

_missing = set(RuleCategory) - EVALUATORS.keys()
if _missing:
    raise RuntimeError(f"No rule evaluator for categories: {sorted(_missing)}")

__all__ = [
    "EVALUATORS",
    "RuleEnvironment",
    "RuleEvaluator",
    "AmountEvaluator",
    "BehaviorEvaluator",
    "DeviceEvaluator",
    "GeographyEvaluator",
    "PatternEvaluator",
    "VelocityEvaluator",
    "PATTERN_DETECTORS",
    "detect_country_hop",
    "detect_deposit_then_withdrawal",
    "detect_rapid_succession",
    "detect_round_amounts",
    "detect_splitting",
]
