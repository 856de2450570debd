"""Unit tests for the per-category rule evaluators."""

from datetime import timedelta

import pytest

from riskengine.domains.fraud.config import ScoringConfig
from riskengine.domains.fraud.models import (
    BehavioralResult,
    DeviceData,
    DeviceFingerprint,
    FraudRule,
    LastLocation,
    RuleCategory,
    RuleConditions,
    RuleThresholds,
    TransactionContext,
    UserRecord,
)
from riskengine.domains.fraud.rules import (
    EVALUATORS,
    PATTERN_DETECTORS,
    RuleEnvironment,
    detect_country_hop,
    detect_round_amounts,
    detect_splitting,
)
from riskengine.shared.cache import MemoryCache
from tests.conftest import NOW


@pytest.fixture
def env(repos) -> RuleEnvironment:
    return RuleEnvironment(repositories=repos, cache=MemoryCache(), config=ScoringConfig())


def _rule(category: RuleCategory, **kwargs) -> FraudRule:
    return FraudRule(code="TEST", name="Test", category=category, base_score=50, **kwargs)


async def _matches(rule: FraudRule, context: TransactionContext, env: RuleEnvironment) -> bool:
    return await EVALUATORS[rule.category].matches(rule, context, None, env)


class TestDispatchTable:
    def test_every_category_has_an_evaluator(self):
        assert set(EVALUATORS) == set(RuleCategory)


class TestVelocity:
    @pytest.mark.asyncio
    async def test_daily_limits(self, env):
        rule = _rule(RuleCategory.VELOCITY, thresholds=RuleThresholds(max_daily_transactions=5))
        assert await _matches(rule, TransactionContext(daily_transaction_count=6), env)
        assert not await _matches(rule, TransactionContext(daily_transaction_count=5), env)

    @pytest.mark.asyncio
    async def test_time_window_uses_repository_count(self, env, repos):
        repos.transactions.window_counts[10080] = 21
        rule = _rule(
            RuleCategory.VELOCITY,
            time_window="7d",
            thresholds=RuleThresholds(max_transactions_in_window=20),
        )
        assert await _matches(rule, TransactionContext(user_id="user-1"), env)

    @pytest.mark.asyncio
    async def test_time_window_without_user(self, env):
        rule = _rule(
            RuleCategory.VELOCITY,
            time_window="1h",
            thresholds=RuleThresholds(max_transactions_in_window=0),
        )
        assert not await _matches(rule, TransactionContext(), env)


class TestPattern:
    @pytest.mark.asyncio
    async def test_rapid_succession(self, env):
        rule = _rule(RuleCategory.PATTERN, conditions=RuleConditions(patterns=["rapid_succession"]))
        assert await _matches(rule, TransactionContext(time_since_last_transaction=30), env)
        assert not await _matches(rule, TransactionContext(time_since_last_transaction=600), env)

    @pytest.mark.asyncio
    async def test_unknown_pattern_never_matches(self, env):
        rule = _rule(RuleCategory.PATTERN, conditions=RuleConditions(patterns=["no_such_thing"]))
        assert not await _matches(rule, TransactionContext(time_since_last_transaction=1), env)

    def test_detectors(self):
        assert detect_round_amounts(TransactionContext(amount=5000))
        assert not detect_round_amounts(TransactionContext(amount=50))
        assert detect_splitting(TransactionContext(amount=9500, daily_transaction_count=3))
        assert not detect_splitting(TransactionContext(amount=9500, daily_transaction_count=2))
        assert PATTERN_DETECTORS["unusual_sequence"](
            TransactionContext(
                type="withdrawal", last_transaction_type="deposit", time_since_last_transaction=300
            )
        )


class TestAmount:
    @pytest.mark.asyncio
    async def test_bounds(self, env):
        rule = _rule(
            RuleCategory.AMOUNT, thresholds=RuleThresholds(max_amount=1000, min_amount=1)
        )
        assert await _matches(rule, TransactionContext(amount=1001), env)
        assert await _matches(rule, TransactionContext(amount=0.5), env)
        assert not await _matches(rule, TransactionContext(amount=500), env)

    @pytest.mark.asyncio
    async def test_relative_to_balance_and_average(self, env):
        rule = _rule(
            RuleCategory.AMOUNT,
            thresholds=RuleThresholds(max_percentage_of_balance=50, max_multiple_of_average=3),
        )
        assert await _matches(rule, TransactionContext(amount=600, account_balance=1000), env)
        assert await _matches(rule, TransactionContext(amount=400, avg_transaction_amount=100), env)
        ordinary = TransactionContext(amount=200, account_balance=1000, avg_transaction_amount=100)
        assert not await _matches(rule, ordinary, env)


class TestGeography:
    @pytest.mark.asyncio
    async def test_high_risk_country_uses_destination_fallback(self, env):
        rule = _rule(
            RuleCategory.GEOGRAPHY, conditions=RuleConditions(high_risk_countries=["NG"])
        )
        assert await _matches(rule, TransactionContext(ip_country="NG"), env)
        ctx = TransactionContext()
        ctx.metadata.destination_country = "NG"
        assert await _matches(rule, ctx, env)

    @pytest.mark.asyncio
    async def test_country_mismatch(self, env):
        rule = _rule(RuleCategory.GEOGRAPHY, conditions=RuleConditions(check_country_mismatch=True))
        ctx = TransactionContext(user=UserRecord(id="u", country="US"), ip_country="BR")
        assert await _matches(rule, ctx, env)

    def test_country_hop(self):
        ctx = TransactionContext(
            ip_country="FR",
            timestamp=NOW,
            last_location=LastLocation(country="US", timestamp=NOW - timedelta(hours=1)),
        )
        assert detect_country_hop(ctx, 2.0)
        ctx.last_location.timestamp = NOW - timedelta(hours=3)
        assert not detect_country_hop(ctx, 2.0)


class TestDevice:
    @pytest.mark.asyncio
    async def test_anonymising_networks(self, env):
        rule = _rule(RuleCategory.DEVICE, conditions=RuleConditions(block_vpn=True))
        assert await _matches(rule, TransactionContext(device_data=DeviceData(is_vpn=True)), env)
        tor = TransactionContext(device_data=DeviceData(is_tor=True))
        assert not await _matches(rule, tor, env)

    @pytest.mark.asyncio
    async def test_require_trusted_device(self, env, repos):
        repos.devices.items["dev-1"] = DeviceFingerprint(
            id="dev-1", fingerprint_hash="h", is_trusted=True
        )
        rule = _rule(RuleCategory.DEVICE, conditions=RuleConditions(require_trusted_device=True))

        trusted = TransactionContext(device_data=DeviceData(fingerprint_id="dev-1"))
        unknown = TransactionContext(device_data=DeviceData(fingerprint_id="dev-2"))
        assert not await _matches(rule, trusted, env)
        assert await _matches(rule, unknown, env)


class TestBehavior:
    @pytest.mark.asyncio
    async def test_deviation_threshold(self, env):
        rule = _rule(RuleCategory.BEHAVIOR, conditions=RuleConditions(check_abnormal_behavior=True))
        high = TransactionContext(
            behavioral_analysis=BehavioralResult(risk_score=50, deviation_score=75)
        )
        low = TransactionContext(
            behavioral_analysis=BehavioralResult(risk_score=50, deviation_score=60)
        )
        assert await _matches(rule, high, env)
        assert not await _matches(rule, low, env)
        assert not await _matches(rule, TransactionContext(), env)

    @pytest.mark.asyncio
    async def test_named_risk_factor(self, env):
        rule = _rule(
            RuleCategory.BEHAVIOR,
            conditions=RuleConditions(behavioral_patterns=["unusual_location"]),
        )
        ctx = TransactionContext(
            behavioral_analysis=BehavioralResult(risk_score=40, risk_factors=["unusual_location"])
        )
        assert await _matches(rule, ctx, env)
