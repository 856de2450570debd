"""Velocity rules: transaction counts and volume over time."""

from sqlalchemy.ext.asyncio import AsyncSession

from ..models import FraudRule, RuleCategory, TransactionContext
from .base import RuleEnvironment, RuleEvaluator


class VelocityEvaluator(RuleEvaluator):
    """Daily/hourly limits plus an optional per-rule time window."""

    category = RuleCategory.VELOCITY

    async def matches(
        self,
        rule: FraudRule,
        context: TransactionContext,
        session: AsyncSession,
        env: RuleEnvironment,
    ) -> bool:
        t = rule.thresholds

        if (
            t.max_daily_transactions is not None
            and context.daily_transaction_count > t.max_daily_transactions
        ):
            return True
        if t.max_daily_volume is not None and context.daily_transaction_volume > t.max_daily_volume:
            return True
        if (
            t.max_hourly_transactions is not None
            and context.hourly_transaction_count > t.max_hourly_transactions
        ):
            return True

        if rule.time_window and t.max_transactions_in_window is not None:
            user_id = context.user.id if context.user else context.user_id
            count = await env.count_in_window(session, user_id, rule.window_minutes)
            if count > t.max_transactions_in_window:
                return True

        return False
