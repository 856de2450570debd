"""Pattern rules: suspicious shapes in amounts and timing."""

from collections.abc import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from ..models import FraudRule, RuleCategory, TransactionContext
from .base import RuleEnvironment, RuleEvaluator

RAPID_SUCCESSION_SECONDS = 120
DEPOSIT_WITHDRAWAL_SECONDS = 600
SPLITTING_THRESHOLDS = (10000, 5000, 3000)


def detect_rapid_succession(context: TransactionContext) -> bool:
    elapsed = context.time_since_last_transaction
    return elapsed is not None and elapsed < RAPID_SUCCESSION_SECONDS


def detect_round_amounts(context: TransactionContext) -> bool:
    amount = context.amount
    return amount >= 100 and (amount % 100 == 0 or amount % 1000 == 0)


def detect_splitting(context: TransactionContext) -> bool:
    """Amounts just under a reporting threshold, repeated within the day."""
    if context.daily_transaction_count <= 2:
        return False
    return any(
        threshold * 0.9 < context.amount < threshold for threshold in SPLITTING_THRESHOLDS
    )


def detect_deposit_then_withdrawal(context: TransactionContext) -> bool:
    elapsed = context.time_since_last_transaction
    return (
        context.type == "withdrawal"
        and context.last_transaction_type == "deposit"
        and elapsed is not None
        and elapsed < DEPOSIT_WITHDRAWAL_SECONDS
    )


PATTERN_DETECTORS: dict[str, Callable[[TransactionContext], bool]] = {
    "rapid_succession": detect_rapid_succession,
    "round_amounts": detect_round_amounts,
    "splitting": detect_splitting,
    "unusual_sequence": detect_deposit_then_withdrawal,
}


class PatternEvaluator(RuleEvaluator):
    """Triggers when any listed pattern is present. Unknown names never match."""

    category = RuleCategory.PATTERN

    async def matches(
        self,
        rule: FraudRule,
        context: TransactionContext,
        session: AsyncSession,
        env: RuleEnvironment,
    ) -> bool:
        for pattern in rule.conditions.patterns:
            detector = PATTERN_DETECTORS.get(pattern)
            if detector is not None and detector(context):
                return True
        return False
