"""Behaviour rules driven by the behavioural analysis of the same request."""

from sqlalchemy.ext.asyncio import AsyncSession

from ..models import FraudRule, RuleCategory, TransactionContext
from .base import RuleEnvironment, RuleEvaluator


class BehaviorEvaluator(RuleEvaluator):
    """Deviation above a threshold, or a named risk factor from the analysis."""

    category = RuleCategory.BEHAVIOR

    async def matches(
        self,
        rule: FraudRule,
        context: TransactionContext,
        session: AsyncSession,
        env: RuleEnvironment,
    ) -> bool:
        c = rule.conditions
        analysis = context.behavioral_analysis

        if c.check_abnormal_behavior:
            threshold = (
                c.abnormal_threshold
                if c.abnormal_threshold is not None
                else env.config.rules.abnormal_behavior_threshold
            )
            deviation = analysis.deviation_score if analysis else 0.0
            if deviation > threshold:
                return True

        if c.behavioral_patterns and analysis is not None:
            factors = set(analysis.risk_factors)
            if any(pattern in factors for pattern in c.behavioral_patterns):
                return True

        return False
