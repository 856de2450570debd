"""Abstract base class for rule category evaluators."""

from abc import ABC, abstractmethod
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from riskengine.shared.cache import Cache

from ..config import ScoringConfig
from ..models import FraudRule, RuleCategory, TransactionContext
from ..repositories import Repositories


@dataclass
class RuleEnvironment:
    """Collaborators an evaluator may consult while checking one rule.

    ``config`` is the snapshot taken at the start of the evaluation run so
    a hot reload never changes thresholds halfway through.
    """

    repositories: Repositories
    cache: Cache
    config: ScoringConfig

    async def count_in_window(
        self, session: AsyncSession, user_id: str | None, minutes: int
    ) -> int:
        """Transactions the user made in the last ``minutes``, cached briefly."""
        if not user_id:
            return 0

        async def _count() -> int:
            return await self.repositories.transactions.count_transactions_in_window(
                session, user_id, minutes
            )

        return int(
            await self.cache.get_or_compute(
                f"txn_count_{user_id}_{minutes}", self.config.cache.velocity_seconds, _count
            )
        )


class RuleEvaluator(ABC):
    """Decides whether a stored rule of one category matches a transaction.

    Evaluators are stateless; the rule record carries the thresholds and
    conditions, the environment carries storage and configuration.
    """

    category: RuleCategory

    @abstractmethod
    async def matches(
        self,
        rule: FraudRule,
        context: TransactionContext,
        session: AsyncSession,
        env: RuleEnvironment,
    ) -> bool:
        """Return True when ``rule`` triggers for ``context``."""
        ...
