"""Unit tests for the transaction and user scoring pipeline."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from riskengine.domains.fraud import (
    EntityNotFoundError,
    create_fraud_detection_service,
)
from riskengine.domains.fraud.models import (
    AccountRecord,
    Decision,
    EntityType,
    FraudRule,
    FraudScore,
    HistoricalTransaction,
    RiskLevel,
    RuleCategory,
    RuleConditions,
    RuleEvaluation,
    RuleSeverity,
    RuleThresholds,
    TransactionRecord,
    UserRecord,
)
from riskengine.domains.fraud.service import (
    FAIL_SAFE_REASON,
    FraudDetectionService,
    analyze_transaction_patterns,
)
from riskengine.shared.cache import MemoryCache
from riskengine.shared.events import FraudEventType
from tests.conftest import NOW, make_repositories


class RecordingSink:
    """Remembers each event with the number of commits made before it was published."""

    def __init__(self, session) -> None:
        self._session = session
        self.published: list[tuple[FraudEventType, int]] = []

    async def publish(self, event) -> None:
        self.published.append((event.event_type, self._session.commit.await_count))

    def fraud_events(self) -> list[FraudEventType]:
        return [t for t, _ in self.published if t != FraudEventType.ANOMALY_DETECTED]


def _amount_rule(base_score: float, **kwargs) -> FraudRule:
    return FraudRule(
        code=kwargs.pop("code", "LARGE_AMOUNT"),
        name="Large Amount",
        category=RuleCategory.AMOUNT,
        severity=RuleSeverity.HIGH,
        thresholds=RuleThresholds(max_amount=1000),
        base_score=base_score,
        **kwargs,
    )


def _vpn_rule() -> FraudRule:
    return FraudRule(
        code="VPN_BLOCK",
        name="VPN Block",
        category=RuleCategory.DEVICE,
        conditions=RuleConditions(block_vpn=True),
        base_score=35,
        is_blocking=True,
    )


def _build(session, rules=None, provider=None):
    repos = make_repositories(rules)
    sink = RecordingSink(session)
    service = create_fraud_detection_service(
        repos, cache=MemoryCache(), events=sink, provider=provider
    )
    return service, repos, sink


def _transaction(repos, amount: float = 100.0, **kwargs) -> TransactionRecord:
    txn = TransactionRecord(
        id=kwargs.pop("id", "txn-1"),
        user_id="user-1",
        amount=amount,
        type="transfer",
        created_at=kwargs.pop("created_at", NOW),
        **kwargs,
    )
    return repos.transactions.add(txn)


class TestScoreAggregation:
    def test_weight_redistribution_without_ml(self, repos, provider):
        service = create_fraud_detection_service(repos, provider=provider)
        # (80 * 0.35 + 40 * 0.25 + 20 * 0.20) / 0.8
        assert service.calculate_total_score(80, 40, 20, None) == 52.5

    def test_weighted_sum_with_ml(self, repos, provider):
        service = create_fraud_detection_service(repos, provider=provider)
        assert service.calculate_total_score(80, 40, 20, 50) == 52.0

    def test_total_is_clamped(self, repos, provider):
        service = create_fraud_detection_service(repos, provider=provider)
        assert service.calculate_total_score(100, 100, 100, None) == 100.0
        assert service.calculate_total_score(0, 0, 0, 0) == 0.0


class TestMakeDecision:
    @pytest.mark.parametrize(
        "score,decision",
        [
            (100, Decision.BLOCK),
            (80, Decision.BLOCK),
            (79.99, Decision.REVIEW),
            (60, Decision.REVIEW),
            (59.99, Decision.CHALLENGE),
            (40, Decision.CHALLENGE),
            (39.99, Decision.ALLOW),
            (0, Decision.ALLOW),
        ],
    )
    def test_thresholds(self, repos, provider, score, decision):
        service = create_fraud_detection_service(repos, provider=provider)
        assert service.make_decision(score, RuleEvaluation()) == decision

    def test_blocking_rule_forces_block(self, repos, provider):
        service = create_fraud_detection_service(repos, provider=provider)
        rules = RuleEvaluation(blocking_rules=["VPN_BLOCK"])
        assert service.make_decision(0, rules) == Decision.BLOCK

    def test_thresholds_follow_config_swap(self, repos, provider):
        service = create_fraud_detection_service(repos, provider=provider)
        provider.current.decisions.block = 90
        assert service.make_decision(85, RuleEvaluation()) == Decision.REVIEW


class TestAnalyzeTransaction:
    @pytest.mark.asyncio
    async def test_low_risk_transaction_is_allowed(self, mock_db_session):
        service, repos, sink = _build(mock_db_session)
        txn = _transaction(repos)

        score = await service.analyze_transaction(txn, None, mock_db_session)

        # New profile 30, no fingerprint 50, no rules: (30 * 0.25 + 50 * 0.2) / 0.8
        assert score.total_score == 21.88
        assert score.risk_level == RiskLevel.LOW
        assert score.decision == Decision.ALLOW
        assert score.id == "1"
        assert score.entity_type == EntityType.TRANSACTION
        assert score.entity_snapshot["amount"] == 100.0
        assert [c.component for c in score.score_breakdown] == ["behavioral", "device"]
        assert repos.scores.items["1"].decision == Decision.ALLOW
        assert "txn-1" not in repos.transactions.annotations
        assert sink.fraud_events() == []
        assert repos.profiles.items["user-1"].total_transaction_count == 1
        mock_db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_blocking_rule_blocks_and_publishes_after_commit(self, mock_db_session):
        service, repos, sink = _build(mock_db_session, rules=[_vpn_rule()])
        txn = _transaction(repos)

        score = await service.analyze_transaction(
            txn, {"device_data": {"is_vpn": True}}, mock_db_session
        )

        assert score.decision == Decision.BLOCK
        assert score.triggered_rules == ["VPN_BLOCK"]
        assert score.decision_factors["blocking_rules"] == ["VPN_BLOCK"]
        assert repos.transactions.annotations["txn-1"]["status"] == "blocked"
        assert repos.transactions.annotations["txn-1"]["metadata"]["fraud_score_id"] == "1"
        assert sink.fraud_events() == [
            FraudEventType.TRANSACTION_BLOCKED,
            FraudEventType.FRAUD_DETECTED,
        ]
        assert all(commits == 1 for _, commits in sink.published)

    @pytest.mark.asyncio
    async def test_high_risk_opens_case_and_requests_review(self, mock_db_session):
        service, repos, sink = _build(mock_db_session, rules=[_amount_rule(100)])
        txn = _transaction(repos, amount=5000)

        score = await service.analyze_transaction(txn, None, mock_db_session)

        # (100 * 0.35 + 30 * 0.25 + 50 * 0.2) / 0.8
        assert score.total_score == 65.63
        assert score.risk_level == RiskLevel.HIGH
        assert score.decision == Decision.REVIEW
        annotation = repos.transactions.annotations["txn-1"]
        assert annotation["status"] is None
        assert annotation["metadata"]["requires_review"] is True
        assert repos.cases.items["1"].total_score == 65.63
        assert sink.fraud_events() == [FraudEventType.FRAUD_DETECTED]
        assert score.decision_factors["top_rules"] == {"LARGE_AMOUNT": 100.0}

    @pytest.mark.asyncio
    async def test_medium_score_requests_challenge(self, mock_db_session):
        service, repos, sink = _build(mock_db_session, rules=[_amount_rule(50)])
        txn = _transaction(repos, amount=5000)

        score = await service.analyze_transaction(txn, None, mock_db_session)

        assert score.total_score == 43.75
        assert score.decision == Decision.CHALLENGE
        assert repos.transactions.annotations["txn-1"]["status"] == "pending_challenge"
        assert sink.fraud_events() == [FraudEventType.CHALLENGE_REQUIRED]
        assert repos.cases.items == {}

    @pytest.mark.asyncio
    async def test_user_hint_is_used(self, mock_db_session):
        service, repos, _ = _build(mock_db_session)
        txn = _transaction(repos)
        user = {"id": "user-1", "created_at": NOW.isoformat(), "uses_2fa": True}

        await service.analyze_transaction(txn, {"user": user}, mock_db_session)

        assert repos.profiles.items["user-1"].uses_2fa is True

    @pytest.mark.asyncio
    async def test_user_hint_for_another_user_is_ignored(self, mock_db_session):
        service, repos, _ = _build(mock_db_session)
        txn = _transaction(repos)
        other = {"id": "user-2", "created_at": NOW.isoformat(), "uses_2fa": True}

        await service.analyze_transaction(txn, {"user": other}, mock_db_session)

        assert "user-2" not in repos.profiles.items
        assert repos.profiles.items["user-1"].uses_2fa is False

    def test_user_hint_without_id_takes_transaction_owner(self):
        txn = TransactionRecord(id="txn-1", user_id="user-1", created_at=NOW)

        user = FraudDetectionService.resolve_user(txn, {"kyc_level": "full"})

        assert user.id == "user-1"
        assert user.kyc_level == "full"

    @pytest.mark.asyncio
    async def test_failure_records_fail_safe_review(self, mock_db_session):
        service, repos, sink = _build(mock_db_session)
        repos.rules.active_rules = AsyncMock(side_effect=RuntimeError("rules store down"))
        txn = _transaction(repos)

        score = await service.analyze_transaction(txn, None, mock_db_session)

        assert score.total_score == 50.0
        assert score.risk_level == RiskLevel.MEDIUM
        assert score.decision == Decision.REVIEW
        assert score.decision_factors == {"error": FAIL_SAFE_REASON}
        assert score.id is not None
        mock_db_session.rollback.assert_awaited()
        mock_db_session.commit.assert_awaited_once()
        assert sink.published == []

    @pytest.mark.asyncio
    async def test_fail_safe_survives_storage_outage(self, mock_db_session):
        service, repos, _ = _build(mock_db_session)
        repos.scores.add = AsyncMock(side_effect=RuntimeError("database unavailable"))
        txn = _transaction(repos)

        score = await service.analyze_transaction(txn, None, mock_db_session)

        assert score.decision == Decision.REVIEW
        assert score.total_score == 50.0
        assert score.id is None
        mock_db_session.commit.assert_not_awaited()


class TestPrepareContext:
    @pytest.mark.asyncio
    async def test_velocity_history_and_temporal_features(self, mock_db_session):
        service, repos, _ = _build(mock_db_session)
        _transaction(repos, id="prev", amount=40, created_at=NOW - timedelta(minutes=10))
        txn = _transaction(repos)

        ctx = await service.prepare_context(txn, UserRecord(id="user-1"), {}, mock_db_session)

        assert ctx.daily_transaction_count == 2
        assert ctx.daily_transaction_volume == 140.0
        assert ctx.hourly_transaction_count == 2
        assert ctx.time_since_last_transaction == 600.0
        assert ctx.last_transaction_type == "transfer"
        assert ctx.user_transaction_count == 2
        assert (ctx.hour_of_day, ctx.day_of_week, ctx.is_weekend) == (14, 3, False)

    @pytest.mark.asyncio
    async def test_hints_override_and_ip_enrichment(self, mock_db_session):
        service, repos, _ = _build(mock_db_session)
        txn = _transaction(repos)
        hints = {"daily_transaction_count": 99, "ip_address": "203.0.113.7", "lat": 42.36}

        ctx = await service.prepare_context(txn, UserRecord(id="user-1"), hints, mock_db_session)

        assert ctx.daily_transaction_count == 99
        assert ctx.lat == 42.36
        assert ctx.ip_country == "US"
        assert ctx.device_data.ip_address == "203.0.113.7"

    @pytest.mark.asyncio
    async def test_balance_loaded_from_account(self, mock_db_session):
        service, repos, _ = _build(mock_db_session)
        repos.accounts.add(AccountRecord(id="acc-1", user_id="user-1", balance=2500.0))
        txn = _transaction(repos, account_id="acc-1")

        ctx = await service.prepare_context(txn, UserRecord(id="user-1"), {}, mock_db_session)

        assert ctx.account_balance == 2500.0

    @pytest.mark.asyncio
    async def test_balance_hint_and_foreign_account(self, mock_db_session):
        service, repos, _ = _build(mock_db_session)
        repos.accounts.add(AccountRecord(id="acc-1", user_id="user-1", balance=2500.0))
        repos.accounts.add(AccountRecord(id="acc-2", user_id="user-2", balance=9000.0))
        user = UserRecord(id="user-1")
        txn = _transaction(repos, account_id="acc-1")
        hints = {"account_balance": 40.0}

        hinted = await service.prepare_context(txn, user, hints, mock_db_session)
        foreign = await service.prepare_context(
            _transaction(repos, id="txn-2", account_id="acc-2"), user, {}, mock_db_session
        )

        assert hinted.account_balance == 40.0
        assert foreign.account_balance == 0.0

    @pytest.mark.asyncio
    async def test_balance_rule_sees_stored_balance(self, mock_db_session):
        rule = FraudRule(
            code="BALANCE_DRAIN",
            name="Balance Drain",
            category=RuleCategory.AMOUNT,
            thresholds=RuleThresholds(max_percentage_of_balance=80),
            base_score=30,
        )
        service, repos, _ = _build(mock_db_session, rules=[rule])
        repos.accounts.add(AccountRecord(id="acc-1", user_id="user-1", balance=500.0))
        txn = _transaction(repos, amount=450.0, account_id="acc-1")

        score = await service.analyze_transaction(txn, None, mock_db_session)

        assert "BALANCE_DRAIN" in score.triggered_rules

    @pytest.mark.asyncio
    async def test_daily_counts_are_cached(self, mock_db_session):
        service, repos, _ = _build(mock_db_session)
        txn = _transaction(repos)
        user = UserRecord(id="user-1")

        first = await service.prepare_context(txn, user, {}, mock_db_session)
        _transaction(repos, id="txn-2", created_at=NOW + timedelta(minutes=1))
        second = await service.prepare_context(txn, user, {}, mock_db_session)

        assert first.daily_transaction_count == second.daily_transaction_count == 1


class TestAnalyzeUser:
    @pytest.mark.asyncio
    async def test_new_unverified_user(self, mock_db_session):
        service, repos, _ = _build(mock_db_session)
        user = UserRecord(id="user-1", created_at=datetime.now(UTC) - timedelta(days=3))

        score = await service.analyze_user(user, {"channel": "mobile"}, mock_db_session)

        assert score.entity_type == EntityType.USER
        assert score.total_score == 55.0
        assert score.decision == Decision.ALLOW
        assert score.decision_factors == {
            "factors": ["new_account", "no_kyc"],
            "context": {"channel": "mobile"},
        }
        assert repos.scores.items[score.id] is score

    @pytest.mark.asyncio
    async def test_suspicious_history_requires_review(self, mock_db_session):
        service, repos, _ = _build(mock_db_session)
        now = datetime.now(UTC)
        for i in range(5):
            _transaction(repos, id=f"t{i}", amount=500, created_at=now - timedelta(minutes=i))
        user = UserRecord(id="user-1", created_at=now - timedelta(days=3))

        score = await service.analyze_user(user, None, mock_db_session)

        assert score.total_score == 90.0
        assert score.decision == Decision.REVIEW
        assert "suspicious_patterns" in score.decision_factors["factors"]

    @pytest.mark.asyncio
    async def test_established_verified_user(self, mock_db_session):
        service, _, _ = _build(mock_db_session)
        user = UserRecord(
            id="user-1", created_at=datetime.now(UTC) - timedelta(days=400), kyc_level="full"
        )
        score = await service.analyze_user(user, None, mock_db_session)
        assert score.total_score == 0.0
        assert score.risk_level == RiskLevel.VERY_LOW


class TestRecalculate:
    @pytest.mark.asyncio
    async def test_new_score_links_previous(self, mock_db_session):
        service, repos, _ = _build(mock_db_session)
        txn = _transaction(repos)
        original = await service.analyze_transaction(txn, None, mock_db_session)

        recalculated = await service.recalculate_score(original, mock_db_session)

        assert recalculated.id != original.id
        assert recalculated.metadata["previous_fraud_score_id"] == original.id
        assert recalculated.metadata["recalculation_reason"] == "Manual recalculation requested"
        assert repos.scores.items[recalculated.id].metadata["previous_fraud_score_id"] == "1"

    @pytest.mark.asyncio
    async def test_user_score_returned_unchanged(self, mock_db_session):
        service, _, _ = _build(mock_db_session)
        score = FraudScore(id="7", entity_id="user-1", entity_type=EntityType.USER)
        assert await service.recalculate_score(score, mock_db_session) is score

    @pytest.mark.asyncio
    async def test_missing_transaction(self, mock_db_session):
        service, _, _ = _build(mock_db_session)
        score = FraudScore(id="7", entity_id="gone", entity_type=EntityType.TRANSACTION)
        with pytest.raises(EntityNotFoundError):
            await service.recalculate_score(score, mock_db_session)


class TestIndicatorsAndActivity:
    def test_fraud_indicators(self):
        saturday_night = datetime(2026, 1, 17, 3, 0, tzinfo=UTC)
        txn = TransactionRecord(
            id="t", user_id="u", amount=20000, created_at=saturday_night
        )
        user = UserRecord(id="u", created_at=datetime.now(UTC))

        indicators = FraudDetectionService.get_fraud_indicators(txn, user)

        assert indicators.transaction_indicators == ["high_value_transaction", "round_amount"]
        assert indicators.user_indicators == ["new_account", "no_kyc"]
        assert indicators.contextual_indicators == ["weekend_transaction", "unusual_hour"]

    def test_transaction_patterns(self):
        history = [
            HistoricalTransaction(id=str(i), amount=100, created_at=NOW - timedelta(minutes=i))
            for i in range(5)
        ]
        assert analyze_transaction_patterns(history) == 35.0
        assert analyze_transaction_patterns([]) == 0.0

    @pytest.mark.asyncio
    async def test_user_activity(self, mock_db_session):
        service, repos, _ = _build(mock_db_session)
        for i in range(5):
            _transaction(repos, id=f"t{i}", created_at=NOW + timedelta(minutes=i))

        activity = await service.analyze_user_activity(
            "user-1", NOW - timedelta(days=1), NOW + timedelta(days=1), mock_db_session
        )

        assert activity.behavioral_analysis.transaction_count == 5
        assert activity.risk_indicators == ["unusual_patterns_detected"]
        assert activity.recommendations == ["Review account for suspicious activity"]
