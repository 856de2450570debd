"""Amount rules: absolute bounds and amounts relative to balance or history."""

from sqlalchemy.ext.asyncio import AsyncSession

from ..models import FraudRule, RuleCategory, TransactionContext
from .base import RuleEnvironment, RuleEvaluator


class AmountEvaluator(RuleEvaluator):
    category = RuleCategory.AMOUNT

    async def matches(
        self,
        rule: FraudRule,
        context: TransactionContext,
        session: AsyncSession,
        env: RuleEnvironment,
    ) -> bool:
        t = rule.thresholds
        amount = context.amount

        if t.max_amount is not None and amount > t.max_amount:
            return True
        if t.min_amount is not None and amount < t.min_amount:
            return True

        if t.max_percentage_of_balance is not None:
            balance = context.account_balance
            if balance > 0 and amount / balance > t.max_percentage_of_balance / 100:
                return True

        if t.max_multiple_of_average is not None:
            average = context.avg_transaction_amount
            if average > 0 and amount > average * t.max_multiple_of_average:
                return True

        return False
