"""Rule-based fraud detection over stored, operator-managed rules.

Rules live in the database; each is checked by the evaluator registered for
its category in ``rules.EVALUATORS``. Alongside the stored rules this module
runs the velocity checks that are driven purely by configuration: sliding
windows, burst detection and cross-account activity.
"""

import re
from datetime import UTC, datetime, timedelta

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from riskengine.shared.cache import Cache, MemoryCache

from .config import ConfigProvider
from .models import (
    BurstResult,
    CrossAccountResult,
    FraudRule,
    RuleAction,
    RuleCategory,
    RuleDetail,
    RuleEvaluation,
    RuleSeverity,
    SlidingWindowResult,
    TransactionContext,
    WindowBreach,
    WindowStat,
)
from .repositories import Repositories
from .rules import EVALUATORS, RuleEnvironment

logger = structlog.get_logger()

ACTIVE_RULES_CACHE_KEY = "active_fraud_rules"
MINUTES_PER_DAY = 1440

DEFAULT_RULES: list[dict] = [
    {
        "name": "High Daily Transaction Volume",
        "category": RuleCategory.VELOCITY,
        "severity": RuleSeverity.HIGH,
        "thresholds": {"max_daily_volume": 50000},
        "base_score": 60,
    },
    {
        "name": "Rapid Transactions",
        "category": RuleCategory.PATTERN,
        "severity": RuleSeverity.MEDIUM,
        "conditions": {"patterns": ["rapid_succession"]},
        "base_score": 40,
    },
    {
        "name": "Large Transaction Amount",
        "category": RuleCategory.AMOUNT,
        "severity": RuleSeverity.HIGH,
        "thresholds": {"max_amount": 25000},
        "base_score": 50,
    },
    {
        "name": "High Risk Country",
        "category": RuleCategory.GEOGRAPHY,
        "severity": RuleSeverity.HIGH,
        "conditions": {"high_risk_countries": ["NG", "PK", "ID"]},
        "base_score": 45,
    },
    {
        "name": "VPN/Proxy Detection",
        "category": RuleCategory.DEVICE,
        "severity": RuleSeverity.MEDIUM,
        "conditions": {"block_vpn": True, "block_proxy": True},
        "base_score": 35,
    },
]


def rule_code_for(name: str) -> str:
    """``"VPN/Proxy Detection"`` -> ``"VPN_PROXY_DETECTION"``."""
    return re.sub(r"[^A-Z0-9]+", "_", name.upper()).strip("_")


class RuleEngineService:
    """Evaluates the active rule set and the configured velocity checks."""

    def __init__(
        self,
        repositories: Repositories,
        cache: Cache | None = None,
        provider: ConfigProvider | None = None,
    ) -> None:
        self._repos = repositories
        self._cache = cache or MemoryCache()
        self._provider = provider or ConfigProvider()

    def _environment(self) -> RuleEnvironment:
        return RuleEnvironment(
            repositories=self._repos, cache=self._cache, config=self._provider.current
        )

    async def evaluate(self, context: TransactionContext, session: AsyncSession) -> RuleEvaluation:
        env = self._environment()
        result = RuleEvaluation()
        total = 0.0

        for rule in await self.get_active_rules(session):
            try:
                evaluator = EVALUATORS[rule.category]
                if not await evaluator.matches(rule, context, session, env):
                    continue

                score = round(rule.base_score * rule.calculate_score(context), 2)
                result.triggered_rules.append(rule.code)
                result.rule_scores[rule.code] = score
                result.rule_details[rule.code] = RuleDetail(
                    name=rule.name,
                    category=rule.category,
                    severity=rule.severity,
                    score=score,
                    actions=list(rule.actions),
                )
                total += score

                if rule.is_blocking:
                    result.blocking_rules.append(rule.code)

                await self._repos.rules.record_trigger(session, rule.code, datetime.now(UTC))
                self._execute_actions(rule, context)
            except Exception:
                logger.exception("rule_evaluation_error", rule_code=rule.code)

        result.total_score = min(100.0, round(total, 2))

        logger.info(
            "rules_evaluated",
            transaction_id=context.transaction_id,
            total_score=result.total_score,
            triggered_count=len(result.triggered_rules),
            blocking_count=len(result.blocking_rules),
        )
        return result

    async def get_active_rules(self, session: AsyncSession) -> list[FraudRule]:
        """Active rules, most severe first, then by base score."""

        async def _load() -> list[dict]:
            rules = await self._repos.rules.active_rules(session)
            ordered = sorted(
                (r for r in rules if r.is_active),
                key=lambda r: (r.severity.rank, r.base_score),
                reverse=True,
            )
            return [r.model_dump(mode="json") for r in ordered]

        cached = await self._cache.get_or_compute(
            ACTIVE_RULES_CACHE_KEY, self._provider.current.cache.rules_seconds, _load
        )
        return [FraudRule.model_validate(raw) for raw in cached]

    def _execute_actions(self, rule: FraudRule, context: TransactionContext) -> None:
        for action in rule.actions:
            if action == RuleAction.NOTIFY:
                logger.info(
                    "rule_notification",
                    rule_code=rule.code,
                    transaction_id=context.transaction_id,
                )
            elif action == RuleAction.FLAG:
                logger.info(
                    "transaction_flagged_by_rule",
                    rule_code=rule.code,
                    transaction_id=context.transaction_id,
                )
            # block and review are applied by the decision step

    async def create_default_rules(self, session: AsyncSession) -> list[FraudRule]:
        """Install the built-in starter rules, skipping codes that already exist."""
        created: list[FraudRule] = []
        for definition in DEFAULT_RULES:
            code = rule_code_for(definition["name"])
            if await self._repos.rules.get_by_code(session, code) is not None:
                continue
            rule = FraudRule(
                code=code,
                description=f"Default rule: {definition['name']}",
                actions=[RuleAction.FLAG, RuleAction.NOTIFY],
                **definition,
            )
            created.append(await self._repos.rules.add(session, rule))

        if created:
            await self._cache.forget(ACTIVE_RULES_CACHE_KEY)
            logger.info("default_rules_created", codes=[r.code for r in created])
        return created

    async def evaluate_sliding_windows(
        self, context: TransactionContext, session: AsyncSession
    ) -> SlidingWindowResult:
        env = self._environment()
        user_id = context.user.id if context.user else context.user_id
        result = SlidingWindowResult()

        for label, window in env.config.velocity.sliding_windows.items():
            count = await env.count_in_window(session, user_id, window.minutes)
            volume = context.daily_transaction_volume
            # Only a daily volume is known, so shorter windows get a pro-rated share
            if window.minutes < MINUTES_PER_DAY and volume > 0:
                volume = volume * (window.minutes / MINUTES_PER_DAY)

            stat = WindowStat(
                exceeded=count > window.max_count or volume > window.max_volume,
                count=count,
                volume=round(volume, 2),
                max_count=window.max_count,
                max_volume=window.max_volume,
            )
            result.windows[label] = stat
            if stat.exceeded:
                result.breaches.append(_breach(label, stat))

        return result

    def detect_burst(self, context: TransactionContext) -> BurstResult:
        threshold = self._provider.current.velocity.burst_ratio_threshold
        current_rate = float(context.hourly_transaction_count)
        baseline = context.avg_daily_transaction_count / 24.0

        if baseline <= 0:
            return BurstResult(details={"reason": "no_baseline"})

        ratio = current_rate / baseline
        return BurstResult(
            burst_detected=ratio > threshold,
            burst_ratio=round(ratio, 4),
            details={
                "current_rate": current_rate,
                "baseline_rate": round(baseline, 4),
                "threshold": threshold,
            },
        )

    async def detect_cross_account_activity(
        self, context: TransactionContext, session: AsyncSession
    ) -> CrossAccountResult:
        """Other users seen on the same device or IP within the configured window."""
        config = self._provider.current
        cross = config.velocity.cross_account
        if not cross.enabled:
            return CrossAccountResult(details={"reason": "disabled"})

        fingerprint = context.device_data.fingerprint
        ip_address = context.device_data.ip_address or context.ip_address
        user_id = context.user.id if context.user else context.user_id
        minutes = cross.time_window_minutes
        since = datetime.now(UTC) - timedelta(minutes=minutes)
        ttl = config.cache.cross_account_seconds

        shared_device_users = 0
        shared_ip_users = 0

        if fingerprint:

            async def _device_users() -> int:
                return await self._repos.devices.count_distinct_users(
                    session, fingerprint_hash=fingerprint, exclude_user_id=user_id, since=since
                )

            shared_device_users = int(
                await self._cache.get_or_compute(
                    f"cross_device_{fingerprint}_{minutes}", ttl, _device_users
                )
            )

        if ip_address:

            async def _ip_users() -> int:
                return await self._repos.devices.count_distinct_users(
                    session, ip_address=ip_address, exclude_user_id=user_id, since=since
                )

            shared_ip_users = int(
                await self._cache.get_or_compute(f"cross_ip_{ip_address}_{minutes}", ttl, _ip_users)
            )

        detected = (
            shared_device_users >= cross.shared_device_threshold
            or shared_ip_users >= cross.shared_ip_threshold
        )
        if detected:
            logger.warning(
                "cross_account_activity_detected",
                user_id=user_id,
                shared_device_users=shared_device_users,
                shared_ip_users=shared_ip_users,
            )

        return CrossAccountResult(
            detected=detected,
            details={
                "shared_device_users": shared_device_users,
                "shared_ip_users": shared_ip_users,
                "device_threshold": cross.shared_device_threshold,
                "ip_threshold": cross.shared_ip_threshold,
            },
        )


def _breach(label: str, stat: WindowStat) -> WindowBreach:
    count_ratio = stat.count / stat.max_count if stat.max_count > 0 else 0.0
    volume_ratio = stat.volume / stat.max_volume if stat.max_volume > 0 else 0.0
    if count_ratio >= volume_ratio:
        return WindowBreach(
            window=label,
            metric="count",
            current=stat.count,
            threshold=stat.max_count,
            ratio=round(count_ratio, 4),
        )
    return WindowBreach(
        window=label,
        metric="volume",
        current=stat.volume,
        threshold=stat.max_volume,
        ratio=round(volume_ratio, 4),
    )
