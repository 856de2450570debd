"""Geography rules: risky countries, mismatches and impossible travel."""

from datetime import UTC, datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from ..models import FraudRule, RuleCategory, TransactionContext
from .base import RuleEnvironment, RuleEvaluator


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=UTC)


def detect_country_hop(context: TransactionContext, max_hours: float) -> bool:
    """A different country from the last known location within ``max_hours``."""
    last = context.last_location
    if last is None or not context.ip_country:
        return False
    if context.ip_country == last.country:
        return False

    current = _aware(context.timestamp or datetime.now(UTC))
    elapsed = abs(current - _aware(last.timestamp))
    return elapsed < timedelta(hours=max_hours)


class GeographyEvaluator(RuleEvaluator):
    category = RuleCategory.GEOGRAPHY

    async def matches(
        self,
        rule: FraudRule,
        context: TransactionContext,
        session: AsyncSession,
        env: RuleEnvironment,
    ) -> bool:
        c = rule.conditions

        if c.high_risk_countries is not None:
            country = context.ip_country or context.metadata.destination_country
            if country and country in c.high_risk_countries:
                return True

        if c.check_country_mismatch:
            user_country = context.user.country if context.user else None
            if user_country and context.ip_country and user_country != context.ip_country:
                return True

        if c.check_impossible_travel and detect_country_hop(
            context, env.config.rules.impossible_travel_hours
        ):
            return True

        return False
